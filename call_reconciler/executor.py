"""
Task executor: claims due call tasks, places the call through the voice
provider and opens a new call session for it.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Optional

import httpx
import structlog

from call_reconciler.backoff import PollBackoff
from call_reconciler.clock import utcnow
from call_reconciler.config import Settings
from call_reconciler.database import Database
from call_reconciler.models import CallSession, CallStatus, CallTask, Contact, TaskStatus, Tenant
from call_reconciler.observability import Observability
from call_reconciler.phone_utils import normalise_phone
from call_reconciler.retell_client import ProviderError, VoiceProvider

log = structlog.get_logger(__name__)


def build_call_context(task: CallTask, contact: Contact) -> dict[str, Any]:
    return {
        "task_id": task.id,
        "task_kind": task.kind.value,
        "attempt": task.attempts + 1,
        "contact_name": contact.name,
        "appointment_time": contact.appointment_time.isoformat() if contact.appointment_time else None,
        "appointment_type": contact.appointment_type or None,
    }


class TaskExecutor:
    def __init__(
        self,
        settings: Settings,
        db: Database,
        provider: VoiceProvider,
        backoff: PollBackoff,
        observability: Optional[Observability] = None,
    ):
        self.settings = settings
        self.db = db
        self.provider = provider
        self.backoff = backoff
        self.observability = observability or Observability()

    # ── Public API ──────────────────────────────────────────────

    async def run_cycle(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        stats = {"placed": 0, "failed": 0, "exhausted": 0, "skipped": 0, "released": 0}

        released = await self.db.release_stale_tasks(now - self.settings.task_processing_lease)
        stats["released"] = len(released)
        if released:
            log.warning(
                "stale_tasks_released", count=len(released), task_ids=[t.id for t in released]
            )
        for task in released:
            if task.status == TaskStatus.FAILED:
                stats["exhausted"] += 1
                self.observability.task_exhausted(task)

        tasks = await self.db.get_due_tasks(now, limit=self.settings.task_batch_size)
        for task in tasks:
            await self._execute(task, now, stats)

        if tasks:
            log.info("task_cycle_complete", **stats)
        return stats

    async def execute(self, task: CallTask, now: Optional[datetime] = None) -> Optional[CallSession]:
        """Claim and run a single task. Returns the new session, or None."""
        stats: dict[str, int] = {"placed": 0, "failed": 0, "exhausted": 0, "skipped": 0}
        return await self._execute(task, now or utcnow(), stats)

    async def run_forever(self, stop: asyncio.Event) -> None:
        log.info("task_executor_started", scan_interval=self.settings.task_scan_interval_seconds)
        while not stop.is_set():
            try:
                await self.run_cycle()
            except Exception:
                log.exception("task_cycle_failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.settings.task_scan_interval_seconds)
            except asyncio.TimeoutError:
                pass
        log.info("task_executor_stopped")

    # ── Internal helpers ────────────────────────────────────────

    async def _execute(self, task: CallTask, now: datetime, stats: dict) -> Optional[CallSession]:
        if not await self.db.claim_task(task.id, now):
            # Another worker got there first
            stats["skipped"] += 1
            return None

        contact = await self.db.get_contact(task.contact_id)
        tenant = await self.db.get_tenant(task.tenant_id)
        if contact is None or tenant is None:
            error = "contact not found" if contact is None else "tenant not found"
            log.error("task_unexecutable", task_id=task.id, contact_id=task.contact_id, error=error)
            failed = await self.db.record_task_failure(task.id, error, final=True)
            if failed is not None:
                self.observability.task_exhausted(failed)
            stats["exhausted"] += 1
            return None

        try:
            call_id = await self._place(task, tenant, contact)
        except asyncio.TimeoutError:
            await self._placement_failed(task, "placement timed out", stats)
            return None
        except (httpx.HTTPError, ProviderError) as e:
            await self._placement_failed(task, str(e) or type(e).__name__, stats)
            return None
        except Exception as e:
            log.exception("call_placement_error", task_id=task.id)
            await self._placement_failed(task, f"{type(e).__name__}: {e}", stats)
            return None

        session = CallSession(
            tenant_id=task.tenant_id,
            contact_id=task.contact_id,
            task_id=task.id,
            provider_call_id=call_id,
            status=CallStatus.QUEUED,
            next_poll_at=self.backoff.first_poll_at(now),
            created_at=now,
            updated_at=now,
        )
        async with self.db.transaction():
            await self.db.insert_session(session)
            await self.db.set_task_status(task.id, TaskStatus.COMPLETED)

        stats["placed"] += 1
        log.info(
            "task_completed",
            task_id=task.id,
            kind=task.kind.value,
            session_id=session.id,
            call_id=call_id,
            first_poll_at=session.next_poll_at.isoformat(),
        )
        return session

    async def _place(self, task: CallTask, tenant: Tenant, contact: Contact) -> str:
        phone, valid = normalise_phone(contact.phone, self.settings.default_phone_region)
        if not valid:
            raise ProviderError(f"invalid phone number for contact {contact.id}")

        return await asyncio.wait_for(
            self.provider.place_call(
                tenant,
                contact.model_copy(update={"phone": phone}),
                build_call_context(task, contact),
            ),
            timeout=self.settings.provider_timeout_seconds,
        )

    async def _placement_failed(self, task: CallTask, error: str, stats: dict) -> None:
        updated = await self.db.record_task_failure(task.id, error)
        if updated is None:
            return
        if updated.status == TaskStatus.FAILED:
            stats["exhausted"] += 1
            self.observability.task_exhausted(updated)
        else:
            stats["failed"] += 1
            log.warning(
                "call_placement_failed",
                task_id=task.id,
                attempts=updated.attempts,
                max_attempts=updated.max_attempts,
                error=error,
            )
