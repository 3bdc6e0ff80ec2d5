"""Tests for the deduplicating provider-event log."""

import asyncio
from datetime import datetime, timezone

import pytest

from call_reconciler.event_store import (
    EventStore,
    classify_poll_payload,
    classify_webhook_event,
    compute_digest,
)
from call_reconciler.models import EventSource, EventType, RecordResult

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

ENDED = {
    "event": "call_ended",
    "call": {"call_id": "call_1", "call_status": "ended", "disconnection_reason": "dial_no_answer"},
}


class TestDigest:
    def test_key_order_does_not_matter(self):
        reordered = {"call": dict(reversed(list(ENDED["call"].items()))), "event": "call_ended"}
        assert compute_digest(reordered) == compute_digest(ENDED)

    def test_volatile_keys_are_ignored(self):
        redelivered = {**ENDED, "delivery_attempt": 3, "sent_at": "2026-01-15T12:00:05Z"}
        assert compute_digest(redelivered) == compute_digest(ENDED)

    def test_content_change_changes_digest(self):
        analyzed = {**ENDED, "call": {**ENDED["call"], "call_analysis": {"call_successful": False}}}
        assert compute_digest(analyzed) != compute_digest(ENDED)


class TestClassify:
    def test_webhook_events(self):
        assert classify_webhook_event({"event": "call_started"}) == EventType.STARTED
        assert classify_webhook_event({"event": "call_ended"}) == EventType.ENDED
        assert classify_webhook_event({"event": "call_analyzed"}) == EventType.ANALYZED
        assert classify_webhook_event({"event": "transcript_updated"}) is None
        assert classify_webhook_event({}) is None

    def test_poll_payloads(self):
        assert classify_poll_payload({"call_id": "c", "call_status": "ongoing"}) == EventType.STARTED
        assert classify_poll_payload({"call_id": "c", "call_status": "ended"}) == EventType.ENDED
        analyzed = {"call_id": "c", "call_status": "ended", "call_analysis": {"call_successful": True}}
        assert classify_poll_payload(analyzed) == EventType.ANALYZED


@pytest.mark.asyncio
async def test_record_then_duplicate(db):
    store = EventStore(db)
    assert await store.record("call_1", EventType.ENDED, ENDED, EventSource.WEBHOOK, NOW) == RecordResult.ACCEPTED
    assert await store.record("call_1", EventType.ENDED, ENDED, EventSource.WEBHOOK, NOW) == RecordResult.DUPLICATE

    events = await db.get_events("call_1")
    assert len(events) == 1
    assert events[0].payload == ENDED
    assert events[0].received_at == NOW


@pytest.mark.asyncio
async def test_same_content_from_other_channel_is_duplicate(db):
    store = EventStore(db)
    await store.record("call_1", EventType.ENDED, ENDED, EventSource.WEBHOOK, NOW)
    result = await store.record("call_1", EventType.ENDED, ENDED, EventSource.POLL, NOW)
    assert result == RecordResult.DUPLICATE


@pytest.mark.asyncio
async def test_distinct_events_are_kept(db):
    store = EventStore(db)
    await store.record("call_1", EventType.ENDED, ENDED, EventSource.WEBHOOK, NOW)
    await store.record("call_1", EventType.ANALYZED, ENDED, EventSource.WEBHOOK, NOW)
    await store.record("call_2", EventType.ENDED, ENDED, EventSource.WEBHOOK, NOW)
    assert len(await db.get_events("call_1")) == 2
    assert len(await db.get_events("call_2")) == 1


@pytest.mark.asyncio
async def test_concurrent_redeliveries_record_once(db):
    store = EventStore(db)
    results = await asyncio.gather(
        *(store.record("call_1", EventType.ENDED, ENDED, EventSource.WEBHOOK) for _ in range(5))
    )
    assert results.count(RecordResult.ACCEPTED) == 1
    assert results.count(RecordResult.DUPLICATE) == 4
