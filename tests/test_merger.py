"""Tests for outcome precedence and the merge rule."""

import random
from datetime import datetime, timedelta, timezone
from itertools import permutations

import pytest

from call_reconciler.merger import (
    NEEDS_RETRY_OUTCOMES,
    TERMINAL_OUTCOMES,
    is_terminal,
    merge,
    polling_finished,
    rank,
)
from call_reconciler.models import CallEvidence, CallOutcome, CallSession, CallStatus, EventSource

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
POLL = EventSource.POLL
WEBHOOK = EventSource.WEBHOOK

# Fields whose value legitimately depends on which event arrived last
ORDER_DEPENDENT = {"last_webhook_payload", "last_poll_payload", "updated_at"}


def new_session(**kwargs) -> CallSession:
    fields = dict(
        tenant_id="t1",
        contact_id="c1",
        provider_call_id="call_1",
        next_poll_at=NOW + timedelta(seconds=30),
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(kwargs)
    return CallSession(**fields)


def evidence(status=CallStatus.COMPLETED, **kwargs) -> CallEvidence:
    kwargs.setdefault("raw", {"call_id": "call_1", "call_status": "ended"})
    return CallEvidence(status=status, **kwargs)


def apply_all(session, events):
    for source, candidate, ev in events:
        session = merge(session, candidate, ev, source, NOW).session
    return session


class TestRanking:
    def test_declared_order(self):
        ordered = [
            CallOutcome.UNKNOWN,
            CallOutcome.FAILED,
            CallOutcome.ANSWERED,
            CallOutcome.BUSY,
            CallOutcome.NO_ANSWER,
            CallOutcome.VOICEMAIL,
            CallOutcome.CONFIRMED,
            CallOutcome.CANCELLED,
            CallOutcome.RESCHEDULED,
        ]
        assert [rank(o) for o in ordered] == list(range(9))

    def test_terminal_and_retry_sets_are_disjoint(self):
        assert not TERMINAL_OUTCOMES & NEEDS_RETRY_OUTCOMES

    def test_failed_is_terminal_only_with_failed_status(self):
        assert is_terminal(CallOutcome.FAILED, CallStatus.FAILED) is True
        assert is_terminal(CallOutcome.FAILED, CallStatus.COMPLETED) is False
        assert is_terminal(CallOutcome.CONFIRMED) is True
        assert is_terminal(CallOutcome.VOICEMAIL, CallStatus.COMPLETED) is False


class TestMerge:
    def test_higher_rank_replaces_outcome(self):
        result = merge(new_session(), CallOutcome.VOICEMAIL, evidence(), POLL, NOW)
        assert result.changed is True
        assert result.previous_outcome == CallOutcome.UNKNOWN
        assert result.outcome == CallOutcome.VOICEMAIL
        assert result.session.status == CallStatus.COMPLETED
        assert result.session.source_of_truth == POLL
        assert result.session.webhook_verified is False
        # Not terminal, not verified: polling carries on
        assert result.session.next_poll_at is not None

    def test_lower_rank_never_downgrades(self):
        session = new_session(outcome=CallOutcome.CONFIRMED, status=CallStatus.COMPLETED)
        payload = {"call_id": "call_1", "call_status": "ended", "disconnection_reason": "voicemail_reached"}
        result = merge(session, CallOutcome.VOICEMAIL, evidence(raw=payload), POLL, NOW)
        assert result.changed is False
        assert result.outcome == CallOutcome.CONFIRMED
        # Evidence is still recorded
        assert result.session.last_poll_payload == payload

    def test_webhook_terminal_stops_polling(self):
        result = merge(
            new_session(), CallOutcome.CONFIRMED, evidence(status=CallStatus.ONGOING), WEBHOOK, NOW
        )
        assert result.session.status == CallStatus.COMPLETED
        assert result.session.webhook_verified is True
        assert result.session.source_of_truth == WEBHOOK
        assert result.session.next_poll_at is None

    def test_unknown_webhook_does_not_verify(self):
        result = merge(
            new_session(), CallOutcome.UNKNOWN, evidence(status=CallStatus.ONGOING), WEBHOOK, NOW
        )
        assert result.changed is False
        assert result.session.webhook_verified is False
        assert result.session.next_poll_at is not None

    def test_equal_rank_webhook_verifies_poll_result(self):
        polled = merge(new_session(), CallOutcome.NO_ANSWER, evidence(), POLL, NOW).session
        result = merge(polled, CallOutcome.NO_ANSWER, evidence(), WEBHOOK, NOW)
        assert result.changed is False
        assert result.session.webhook_verified is True
        assert result.session.source_of_truth == WEBHOOK
        assert result.session.next_poll_at is None

    def test_lower_rank_webhook_still_verifies(self):
        polled = merge(new_session(), CallOutcome.VOICEMAIL, evidence(), POLL, NOW).session
        result = merge(polled, CallOutcome.NO_ANSWER, evidence(), WEBHOOK, NOW)
        assert result.outcome == CallOutcome.VOICEMAIL
        assert result.session.source_of_truth == POLL
        assert result.session.webhook_verified is True
        assert result.session.next_poll_at is None

    def test_provider_failure_is_terminal(self):
        result = merge(new_session(), CallOutcome.FAILED, evidence(status=CallStatus.FAILED), POLL, NOW)
        assert result.session.status == CallStatus.FAILED
        assert polling_finished(result.session) is True
        assert result.session.next_poll_at is None

    def test_input_session_is_not_modified(self):
        session = new_session()
        merge(session, CallOutcome.CONFIRMED, evidence(transcript="hello"), WEBHOOK, NOW)
        assert session.outcome == CallOutcome.UNKNOWN
        assert session.transcript is None
        assert session.next_poll_at is not None

    def test_timing_fields_merge(self):
        session = new_session(started_at=NOW, transcript="Agent: Hi")
        ev = evidence(
            started_at=NOW - timedelta(seconds=5),
            ended_at=NOW + timedelta(seconds=60),
            duration_seconds=65,
            transcript="Agent: Hi\nUser: Yes, see you then",
        )
        merged = merge(session, CallOutcome.UNKNOWN, ev, POLL, NOW).session
        assert merged.started_at == NOW - timedelta(seconds=5)
        assert merged.ended_at == NOW + timedelta(seconds=60)
        assert merged.duration_seconds == 65
        assert merged.transcript == "Agent: Hi\nUser: Yes, see you then"

        shorter = evidence(duration_seconds=10, transcript="Agent")
        again = merge(merged, CallOutcome.UNKNOWN, shorter, POLL, NOW).session
        assert again.duration_seconds == 65
        assert again.transcript == "Agent: Hi\nUser: Yes, see you then"

    def test_replaying_an_event_is_a_no_op(self):
        ev = evidence(duration_seconds=20, transcript="Agent: Hi")
        once = merge(new_session(), CallOutcome.BUSY, ev, WEBHOOK, NOW).session
        twice = merge(once, CallOutcome.BUSY, ev, WEBHOOK, NOW).session
        assert twice.model_dump() == once.model_dump()


class TestOrderIndependence:
    def test_final_outcome_is_highest_offered(self):
        offered = [
            CallOutcome.NO_ANSWER,
            CallOutcome.ANSWERED,
            CallOutcome.CONFIRMED,
            CallOutcome.FAILED,
            CallOutcome.UNKNOWN,
        ]
        for order in permutations(offered):
            session = new_session()
            for i, outcome in enumerate(order):
                source = WEBHOOK if i % 2 else POLL
                session = merge(session, outcome, evidence(), source, NOW).session
                assert rank(session.outcome) == max(rank(o) for o in order[: i + 1])
            assert session.outcome == CallOutcome.CONFIRMED
            assert session.next_poll_at is None

    def test_random_sequences_over_all_outcomes(self):
        rng = random.Random(42)
        outcomes = list(CallOutcome)
        for _ in range(200):
            offered = [rng.choice(outcomes) for _ in range(rng.randint(1, 8))]
            session = new_session()
            for outcome in offered:
                source = rng.choice([POLL, WEBHOOK])
                session = merge(session, outcome, evidence(), source, NOW).session
            assert session.outcome == max(offered, key=rank)

    @pytest.mark.parametrize(
        "first, second",
        [
            ((WEBHOOK, CallOutcome.CONFIRMED), (POLL, CallOutcome.VOICEMAIL)),
            ((POLL, CallOutcome.VOICEMAIL), (WEBHOOK, CallOutcome.NO_ANSWER)),
            ((POLL, CallOutcome.NO_ANSWER), (WEBHOOK, CallOutcome.NO_ANSWER)),
            ((POLL, CallOutcome.UNKNOWN), (WEBHOOK, CallOutcome.BUSY)),
        ],
    )
    def test_two_events_commute(self, first, second):
        ev_first = evidence(started_at=NOW, transcript="Agent: Hello, this is the clinic")
        ev_second = evidence(ended_at=NOW + timedelta(seconds=45), duration_seconds=45)
        events_a = [(first[0], first[1], ev_first), (second[0], second[1], ev_second)]
        events_b = list(reversed(events_a))

        a = apply_all(new_session(), events_a)
        b = apply_all(new_session(), events_b)
        assert a.model_dump(exclude=ORDER_DEPENDENT) == b.model_dump(exclude=ORDER_DEPENDENT)

    def test_all_interleavings_agree(self):
        events = [
            (POLL, CallOutcome.UNKNOWN, evidence(status=CallStatus.ONGOING, started_at=NOW)),
            (POLL, CallOutcome.VOICEMAIL, evidence(ended_at=NOW + timedelta(seconds=40), duration_seconds=40)),
            (WEBHOOK, CallOutcome.NO_ANSWER, evidence(transcript="short")),
            (WEBHOOK, CallOutcome.ANSWERED, evidence(transcript="a longer transcript")),
        ]
        finals = [
            apply_all(new_session(), list(order)).model_dump(exclude=ORDER_DEPENDENT)
            for order in permutations(events)
        ]
        assert all(f == finals[0] for f in finals)
        assert finals[0]["outcome"] == CallOutcome.VOICEMAIL
        assert finals[0]["webhook_verified"] is True
        assert finals[0]["source_of_truth"] == POLL
        assert finals[0]["next_poll_at"] is None
