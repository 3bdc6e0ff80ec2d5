"""
The shared ingestion pipeline behind both channels:

    Event Store → Outcome Extractor → Precedence Merger → Follow-up Scheduler

Recording the event, merging it into the session and scheduling any
follow-up happen in one transaction, so a crash can never leave an event
marked as processed without its effects.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import structlog

from call_reconciler.backoff import PollBackoff
from call_reconciler.clock import utcnow
from call_reconciler.database import Database
from call_reconciler.event_store import EventStore
from call_reconciler.extractor import extract_evidence, extract_outcome
from call_reconciler.follow_up import FollowUpScheduler
from call_reconciler.merger import MergeResult, merge, polling_finished
from call_reconciler.models import (
    ACTIVE_STATUSES,
    CallOutcome,
    CallSession,
    CallTask,
    EventSource,
    EventType,
    RecordResult,
)
from call_reconciler.observability import Observability
from call_reconciler.payloads import provider_call_id_of

log = structlog.get_logger(__name__)


@dataclass
class IngestResult:
    session: Optional[CallSession]
    record: Optional[RecordResult] = None
    merge: Optional[MergeResult] = None
    follow_up: Optional[CallTask] = None

    @property
    def found(self) -> bool:
        return self.session is not None

    @property
    def changed(self) -> bool:
        return bool(self.merge and self.merge.changed)


class Reconciler:
    def __init__(
        self,
        db: Database,
        follow_ups: FollowUpScheduler,
        backoff: PollBackoff,
        observability: Optional[Observability] = None,
    ):
        self.db = db
        self.events = EventStore(db)
        self.follow_ups = follow_ups
        self.backoff = backoff
        self.observability = observability or Observability()

    async def ingest(
        self,
        payload: dict[str, Any],
        source: EventSource,
        event_type: EventType,
        provider_call_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> IngestResult:
        """Record one raw provider event and apply it to its session."""
        now = now or utcnow()
        call_id = provider_call_id or provider_call_id_of(payload)

        async with self.db.transaction():
            session = await self.db.get_session_by_call_id(call_id) if call_id else None
            if session is None:
                log.warning("ingest_unknown_call", call_id=call_id, source=source.value)
                return IngestResult(session=None)

            recorded = await self.events.record(call_id, event_type, payload, source, now)
            if recorded == RecordResult.DUPLICATE:
                return IngestResult(session=session, record=recorded)

            candidate = extract_outcome(payload)
            evidence = extract_evidence(payload)
            result = merge(session, candidate, evidence, source, now)
            await self.db.save_session(result.session)

            follow_up = None
            if result.changed:
                follow_up = await self.follow_ups.on_outcome_transition(result.session, now)

        log.info(
            "event_reconciled",
            call_id=call_id,
            source=source.value,
            event_type=event_type.value,
            candidate=candidate.value,
            outcome=result.outcome.value,
            changed=result.changed,
        )
        if result.changed:
            self.observability.outcome_transition(result.session, result.previous_outcome, source)

        return IngestResult(
            session=result.session, record=recorded, merge=result, follow_up=follow_up
        )

    async def finish_poll(
        self,
        session_id: str,
        now: Optional[datetime] = None,
        payload: Optional[dict[str, Any]] = None,
        error: str = "",
    ) -> Optional[CallSession]:
        """
        Poll bookkeeping, run once per poll whatever its result: count the
        attempt and either schedule the next poll or stop polling. Polling also
        stops once the provider reports the call over with its analysis done,
        even when that analysis carried no usable outcome.
        """
        now = now or utcnow()
        async with self.db.transaction():
            session = await self.db.get_session(session_id)
            if session is None:
                return None

            session.poll_attempts += 1
            session.last_poll_error = error
            session.updated_at = now
            provider_finished = False
            if payload is not None:
                session.last_poll_payload = payload
                evidence = extract_evidence(payload)
                provider_finished = (
                    evidence.has_analysis
                    and evidence.status is not None
                    and evidence.status not in ACTIVE_STATUSES
                )

            if (
                polling_finished(session)
                or provider_finished
                or session.status not in ACTIVE_STATUSES
                or session.dead_lettered_at is not None
            ):
                session.next_poll_at = None
            else:
                session.next_poll_at = self.backoff.next_poll_at(session.poll_attempts, now)

            await self.db.save_session(session)
        return session

    async def dead_letter(self, session_id: str, now: Optional[datetime] = None) -> Optional[CallSession]:
        """Flag a session stuck without an outcome; returns None if it resolved meanwhile."""
        now = now or utcnow()
        async with self.db.transaction():
            session = await self.db.get_session(session_id)
            if (
                session is None
                or session.dead_lettered_at is not None
                or session.outcome != CallOutcome.UNKNOWN
                or session.webhook_verified
                or session.status not in ACTIVE_STATUSES
            ):
                return None
            session.dead_lettered_at = now
            session.next_poll_at = None
            session.updated_at = now
            await self.db.save_session(session)

        self.observability.session_dead_lettered(session)
        return session
