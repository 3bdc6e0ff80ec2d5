"""
Outbound observability events: outcome transitions and operator alerts.

Every event is logged through structlog; callers that feed dashboards or
pagers register a subscriber callable that receives ``(event_name, fields)``.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

import structlog

from call_reconciler.models import CallOutcome, CallSession, CallTask, EventSource

log = structlog.get_logger(__name__)

Subscriber = Callable[[str, dict[str, Any]], None]

OUTCOME_TRANSITION = "outcome_transition"
SESSION_DEAD_LETTERED = "session_dead_lettered"
TASK_EXHAUSTED = "task_exhausted"


class Observability:
    def __init__(self, subscribers: Optional[list[Subscriber]] = None):
        self._subscribers: list[Subscriber] = list(subscribers or [])

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def _publish(self, event: str, fields: dict[str, Any]) -> None:
        for subscriber in self._subscribers:
            try:
                subscriber(event, fields)
            except Exception:
                log.exception("observability_subscriber_failed", observed_event=event)

    def outcome_transition(
        self, session: CallSession, previous: CallOutcome, source: EventSource
    ) -> None:
        fields = {
            "session_id": session.id,
            "tenant_id": session.tenant_id,
            "contact_id": session.contact_id,
            "call_id": session.provider_call_id,
            "old_outcome": previous.value,
            "new_outcome": session.outcome.value,
            "source": source.value,
        }
        log.info(OUTCOME_TRANSITION, **fields)
        self._publish(OUTCOME_TRANSITION, fields)

    def session_dead_lettered(self, session: CallSession) -> None:
        fields = {
            "session_id": session.id,
            "tenant_id": session.tenant_id,
            "contact_id": session.contact_id,
            "call_id": session.provider_call_id,
            "poll_attempts": session.poll_attempts,
            "last_poll_error": session.last_poll_error,
            "created_at": session.created_at.isoformat(),
        }
        log.error(SESSION_DEAD_LETTERED, **fields)
        self._publish(SESSION_DEAD_LETTERED, fields)

    def task_exhausted(self, task: CallTask) -> None:
        fields = {
            "task_id": task.id,
            "tenant_id": task.tenant_id,
            "contact_id": task.contact_id,
            "kind": task.kind.value,
            "attempts": task.attempts,
            "last_error": task.last_error,
            "last_attempt_at": task.last_attempt_at.isoformat() if task.last_attempt_at else None,
        }
        log.error(TASK_EXHAUSTED, **fields)
        self._publish(TASK_EXHAUSTED, fields)
