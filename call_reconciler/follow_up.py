"""
Follow-up scheduler: turns reconciled outcome transitions into deferred
retry tasks, and withdraws them once the customer has decided.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

import structlog

from call_reconciler.clock import utcnow
from call_reconciler.config import Settings
from call_reconciler.database import Database
from call_reconciler.merger import NEEDS_RETRY_OUTCOMES, TERMINAL_OUTCOMES
from call_reconciler.models import CallSession, CallTask, TaskKind

log = structlog.get_logger(__name__)


class FollowUpScheduler:
    """
    Invoked after every merge that changed a session's outcome.

    Creation is idempotent twice over: the partial unique index allows one
    active follow-up per contact, and ``source_session_id`` is unique, so a
    replayed transition for the same session never yields a second task even
    after the first one has run.
    """

    def __init__(self, settings: Settings, db: Database):
        self.settings = settings
        self.db = db

    async def on_outcome_transition(
        self, session: CallSession, now: Optional[datetime] = None
    ) -> Optional[CallTask]:
        now = now or utcnow()

        if session.outcome in TERMINAL_OUTCOMES:
            cancelled = await self.db.cancel_pending_tasks(session.contact_id, TaskKind.FOLLOW_UP)
            if cancelled:
                log.info(
                    "follow_ups_cancelled",
                    contact_id=session.contact_id,
                    session_id=session.id,
                    outcome=session.outcome.value,
                    count=cancelled,
                )
            return None

        if session.outcome not in NEEDS_RETRY_OUTCOMES:
            return None

        origin = await self.db.get_task(session.task_id) if session.task_id else None
        sequence = (origin.sequence if origin else 0) + 1
        if sequence > self.settings.max_follow_ups:
            log.info(
                "follow_up_budget_spent",
                contact_id=session.contact_id,
                session_id=session.id,
                sequence=sequence,
                max_follow_ups=self.settings.max_follow_ups,
            )
            return None

        task = CallTask(
            tenant_id=session.tenant_id,
            contact_id=session.contact_id,
            kind=TaskKind.FOLLOW_UP,
            scheduled_for=now + self.settings.follow_up_delay,
            max_attempts=self.settings.task_max_attempts,
            source_session_id=session.id,
            sequence=sequence,
            created_at=now,
            updated_at=now,
        )
        if not await self.db.insert_task_if_absent(task):
            log.info(
                "follow_up_already_scheduled",
                contact_id=session.contact_id,
                session_id=session.id,
            )
            return None

        log.info(
            "follow_up_scheduled",
            task_id=task.id,
            contact_id=task.contact_id,
            session_id=session.id,
            outcome=session.outcome.value,
            scheduled_for=task.scheduled_for.isoformat(),
        )
        return task

    async def schedule_initial_reminder(
        self,
        tenant_id: str,
        contact_id: str,
        scheduled_for: datetime,
        max_attempts: Optional[int] = None,
    ) -> Optional[CallTask]:
        """
        Entry point for calendar collaborators. Returns None when the contact
        already has an active reminder.
        """
        task = CallTask(
            tenant_id=tenant_id,
            contact_id=contact_id,
            kind=TaskKind.INITIAL_REMINDER,
            scheduled_for=scheduled_for,
            max_attempts=max_attempts or self.settings.task_max_attempts,
        )
        if not await self.db.insert_task_if_absent(task):
            log.info("initial_reminder_already_scheduled", contact_id=contact_id)
            return None
        log.info(
            "initial_reminder_scheduled",
            task_id=task.id,
            contact_id=contact_id,
            scheduled_for=scheduled_for.isoformat(),
        )
        return task
