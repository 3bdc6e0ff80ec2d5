"""Tests for the task executor: claiming, placement and retry budget."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from call_reconciler.executor import TaskExecutor
from call_reconciler.models import (
    CallOutcome,
    CallStatus,
    CallTask,
    Contact,
    EventSource,
    EventType,
    TaskKind,
    TaskStatus,
)
from call_reconciler.retell_client import ProviderError

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


async def add_task(db, contact_id="c1", **kwargs) -> CallTask:
    fields = dict(
        tenant_id="t1",
        contact_id=contact_id,
        kind=TaskKind.INITIAL_REMINDER,
        scheduled_for=NOW,
    )
    fields.update(kwargs)
    task = CallTask(**fields)
    assert await db.insert_task_if_absent(task)
    return task


@pytest.mark.asyncio
async def test_due_task_places_call(engine):
    task = await add_task(engine.db)

    stats = await engine.executor.run_cycle(NOW)
    assert stats["placed"] == 1

    session = await engine.db.get_session_by_call_id("call_1")
    assert session.task_id == task.id
    assert session.contact_id == "c1"
    assert session.status == CallStatus.QUEUED
    assert session.outcome == CallOutcome.UNKNOWN
    assert session.created_at == NOW
    assert session.next_poll_at == NOW + timedelta(seconds=30)
    assert (await engine.db.get_task(task.id)).status == TaskStatus.COMPLETED

    tenant, contact, context = engine.provider.placed[0]
    assert tenant.id == "t1"
    assert contact.phone == "+447700900001"
    assert context["contact_name"] == "Jane Doe"
    assert context["task_kind"] == "initial_reminder"
    assert context["attempt"] == 1


@pytest.mark.asyncio
async def test_future_task_waits(engine):
    await add_task(engine.db, scheduled_for=NOW + timedelta(hours=2))
    stats = await engine.executor.run_cycle(NOW)
    assert stats["placed"] == 0
    assert engine.provider.placed == []


@pytest.mark.asyncio
async def test_failed_placement_is_retried_then_exhausted(engine):
    task = await add_task(engine.db, max_attempts=2)
    engine.provider.place_error = ProviderError("Retell API error: 500 - internal")

    stats = await engine.executor.run_cycle(NOW)
    assert stats["failed"] == 1
    retried = await engine.db.get_task(task.id)
    assert retried.status == TaskStatus.PENDING
    assert retried.attempts == 1
    assert retried.last_error == "Retell API error: 500 - internal"

    stats = await engine.executor.run_cycle(NOW + timedelta(minutes=1))
    assert stats["exhausted"] == 1
    exhausted = await engine.db.get_task(task.id)
    assert exhausted.status == TaskStatus.FAILED
    assert exhausted.attempts == 2

    assert [name for name, _ in engine.observed] == ["task_exhausted"]
    _, fields = engine.observed[0]
    assert fields["task_id"] == task.id
    assert fields["attempts"] == 2
    assert await engine.db.get_sessions_for_contact("c1") == []


@pytest.mark.asyncio
async def test_placement_timeout_counts_as_failure(engine):
    task = await add_task(engine.db)
    engine.provider.place_error = asyncio.TimeoutError()

    await engine.executor.run_cycle(NOW)
    failed = await engine.db.get_task(task.id)
    assert failed.attempts == 1
    assert failed.last_error == "placement timed out"


@pytest.mark.asyncio
async def test_invalid_phone_is_never_dialled(engine):
    await engine.db.upsert_contact(Contact(id="c2", tenant_id="t1", name="Bad Number", phone="123"))
    task = await add_task(engine.db, contact_id="c2", max_attempts=1)

    stats = await engine.executor.run_cycle(NOW)
    assert stats["exhausted"] == 1
    assert engine.provider.placed == []
    assert "invalid phone number" in (await engine.db.get_task(task.id)).last_error


@pytest.mark.asyncio
async def test_missing_contact_fails_task(engine):
    task = await add_task(engine.db, contact_id="ghost")

    stats = await engine.executor.run_cycle(NOW)
    assert stats["exhausted"] == 1
    failed = await engine.db.get_task(task.id)
    assert failed.status == TaskStatus.FAILED
    assert failed.attempts == 1
    assert failed.last_error == "contact not found"
    assert engine.provider.placed == []
    assert [name for name, _ in engine.observed] == ["task_exhausted"]
    _, fields = engine.observed[0]
    assert fields["attempts"] == 1
    assert fields["last_attempt_at"] == NOW.isoformat()


@pytest.mark.asyncio
async def test_unexpected_placement_error_releases_task(engine):
    task = await add_task(engine.db, max_attempts=2)
    engine.provider.place_error = ValueError("Expecting value: line 1 column 1 (char 0)")

    stats = await engine.executor.run_cycle(NOW)
    assert stats["failed"] == 1
    retried = await engine.db.get_task(task.id)
    assert retried.status == TaskStatus.PENDING
    assert retried.attempts == 1
    assert retried.last_error.startswith("ValueError: ")

    engine.provider.place_error = None
    stats = await engine.executor.run_cycle(NOW + timedelta(minutes=1))
    assert stats["placed"] == 1


@pytest.mark.asyncio
async def test_concurrent_executors_place_one_call(engine):
    task = await add_task(engine.db)
    other = TaskExecutor(engine.settings, engine.db, engine.provider, engine.backoff)

    sessions = await asyncio.gather(
        engine.executor.execute(task, NOW),
        other.execute(task, NOW),
    )
    assert len([s for s in sessions if s is not None]) == 1
    assert len(engine.provider.placed) == 1
    assert len(await engine.db.get_sessions_for_contact("c1")) == 1


@pytest.mark.asyncio
async def test_stale_processing_task_is_released(engine):
    task = await add_task(engine.db)
    # Claimed by a worker that never finished
    await engine.db.claim_task(task.id, NOW - timedelta(minutes=20))

    stats = await engine.executor.run_cycle(NOW)
    assert stats["released"] == 1
    assert stats["placed"] == 1
    completed = await engine.db.get_task(task.id)
    assert completed.status == TaskStatus.COMPLETED
    assert completed.attempts == 1


@pytest.mark.asyncio
async def test_expired_lease_can_exhaust_task(engine):
    task = await add_task(engine.db, max_attempts=1)
    await engine.db.claim_task(task.id, NOW - timedelta(minutes=20))

    stats = await engine.executor.run_cycle(NOW)
    assert stats["released"] == 1
    assert stats["exhausted"] == 1
    assert stats["placed"] == 0
    failed = await engine.db.get_task(task.id)
    assert failed.status == TaskStatus.FAILED
    assert failed.attempts == 1
    assert engine.provider.placed == []
    assert [name for name, _ in engine.observed] == ["task_exhausted"]
    assert engine.observed[0][1]["last_error"] == "processing lease expired"


@pytest.mark.asyncio
async def test_follow_up_call_does_not_chain(engine):
    follow_up = await add_task(engine.db, kind=TaskKind.FOLLOW_UP, sequence=1)
    session = await engine.executor.execute(follow_up, NOW)
    assert session.task_id == follow_up.id

    payload = {"call_id": session.provider_call_id, "call_status": "ended", "disconnection_reason": "dial_no_answer"}
    result = await engine.reconciler.ingest(payload, EventSource.POLL, EventType.ENDED, now=NOW)
    assert result.session.outcome == CallOutcome.NO_ANSWER
    assert result.follow_up is None
    assert await engine.db.get_active_task("c1", TaskKind.FOLLOW_UP) is None
