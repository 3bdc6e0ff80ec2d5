"""
Polling fallback: asks the provider for the status of sessions that have no
verified terminal outcome yet, and feeds the answers through the same
pipeline the webhook uses.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

import httpx
import structlog

from call_reconciler.clock import utcnow
from call_reconciler.config import Settings
from call_reconciler.database import Database
from call_reconciler.event_store import classify_poll_payload
from call_reconciler.models import CallSession, EventSource, RecordResult, Tenant
from call_reconciler.reconciler import Reconciler
from call_reconciler.retell_client import ProviderError, VoiceProvider

log = structlog.get_logger(__name__)


class PollingWorker:
    """
    Each cycle:
      - polls every session whose ``next_poll_at`` has passed (bounded concurrency)
      - records the poll and reschedules or stops polling
      - flags sessions stuck without an outcome past the dead-letter ceiling
    """

    def __init__(
        self,
        settings: Settings,
        db: Database,
        provider: VoiceProvider,
        reconciler: Reconciler,
    ):
        self.settings = settings
        self.db = db
        self.provider = provider
        self.reconciler = reconciler
        self._sem = asyncio.Semaphore(settings.poll_concurrency)

    # ── Public API ──────────────────────────────────────────────

    async def run_cycle(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        stats = {"polled": 0, "duplicate": 0, "changed": 0, "errors": 0, "dead_lettered": 0}

        due = await self.db.get_sessions_due_for_polling(now, limit=self.settings.poll_concurrency * 20)
        if due:
            log.info("poll_cycle_starting", due=len(due))
            await asyncio.gather(*(self._poll_session(s, now, stats) for s in due))

        stats["dead_lettered"] = await self.detect_dead_letters(now)
        if due or stats["dead_lettered"]:
            log.info("poll_cycle_complete", **stats)
        return stats

    async def detect_dead_letters(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        flagged = 0
        for session in await self.db.get_stuck_sessions(now - self.settings.dead_letter_after):
            if await self.reconciler.dead_letter(session.id, now):
                flagged += 1
        return flagged

    async def run_forever(self, stop: asyncio.Event) -> None:
        log.info("polling_worker_started", scan_interval=self.settings.poll_scan_interval_seconds)
        while not stop.is_set():
            try:
                await self.run_cycle()
            except Exception:
                log.exception("poll_cycle_failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=await self._sleep_seconds())
            except asyncio.TimeoutError:
                pass
        log.info("polling_worker_stopped")

    # ── Internal helpers ────────────────────────────────────────

    async def _sleep_seconds(self) -> float:
        """Sleep until the next poll is due, but never longer than one scan interval."""
        interval = float(self.settings.poll_scan_interval_seconds)
        next_due = await self.db.get_next_poll_time()
        if next_due is None:
            return interval
        return min(interval, max(1.0, (next_due - utcnow()).total_seconds()))

    async def _poll_session(self, session: CallSession, now: datetime, stats: dict) -> None:
        async with self._sem:
            try:
                await self._poll(session, now, stats)
            except Exception as e:
                log.exception("poll_session_error", call_id=session.provider_call_id)
                await self._poll_failed(session, now, f"{type(e).__name__}: {e}", stats)

    async def _poll(self, session: CallSession, now: datetime, stats: dict) -> None:
        tenant = await self.db.get_tenant(session.tenant_id) or Tenant(id=session.tenant_id)
        call_id = session.provider_call_id

        try:
            payload = await asyncio.wait_for(
                self.provider.get_call_status(tenant, call_id),
                timeout=self.settings.provider_timeout_seconds,
            )
        except asyncio.TimeoutError:
            await self._poll_failed(session, now, "timeout", stats)
            return
        except (httpx.HTTPError, ProviderError) as e:
            await self._poll_failed(session, now, str(e) or type(e).__name__, stats)
            return

        stats["polled"] += 1
        result = await self.reconciler.ingest(
            payload,
            EventSource.POLL,
            classify_poll_payload(payload),
            provider_call_id=call_id,
            now=now,
        )
        if result.record == RecordResult.DUPLICATE:
            stats["duplicate"] += 1
        if result.changed:
            stats["changed"] += 1

        updated = await self.reconciler.finish_poll(session.id, now, payload=payload)
        log.info(
            "call_polled",
            call_id=call_id,
            attempt=updated.poll_attempts if updated else None,
            outcome=updated.outcome.value if updated else None,
            next_poll_at=updated.next_poll_at.isoformat() if updated and updated.next_poll_at else None,
        )

    async def _poll_failed(self, session: CallSession, now: datetime, error: str, stats: dict) -> None:
        # Not a negative outcome: just no new information.
        stats["errors"] += 1
        log.warning(
            "poll_failed",
            call_id=session.provider_call_id,
            attempt=session.poll_attempts + 1,
            error=error,
        )
        await self.reconciler.finish_poll(session.id, now, error=error)
