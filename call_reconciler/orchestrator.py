"""
Main orchestrator: wires the store, provider client, reconciliation
pipeline and background workers together. Used by the server and the CLI.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

import structlog

from call_reconciler.backoff import PollBackoff
from call_reconciler.config import Settings
from call_reconciler.database import Database
from call_reconciler.executor import TaskExecutor
from call_reconciler.follow_up import FollowUpScheduler
from call_reconciler.models import CallTask
from call_reconciler.observability import Observability
from call_reconciler.poller import PollingWorker
from call_reconciler.reconciler import Reconciler
from call_reconciler.retell_client import RetellClient, VoiceProvider

log = structlog.get_logger(__name__)


class Orchestrator:
    """
    Top-level controller for the reconciliation engine.

    Usage:
        orch = Orchestrator(settings)
        await orch.start()
        orch.start_workers()            # polling + task executor loops
        ...
        await orch.stop()
    """

    def __init__(self, settings: Settings, provider: Optional[VoiceProvider] = None):
        self.settings = settings
        self.db = Database(settings.database_path)
        self.provider: VoiceProvider = provider or RetellClient(settings)
        self.observability = Observability()
        self.backoff = PollBackoff.from_settings(settings)
        self.follow_ups = FollowUpScheduler(settings, self.db)
        self.reconciler = Reconciler(self.db, self.follow_ups, self.backoff, self.observability)
        self.poller = PollingWorker(settings, self.db, self.provider, self.reconciler)
        self.executor = TaskExecutor(settings, self.db, self.provider, self.backoff, self.observability)
        self._stop = asyncio.Event()
        self._workers: list[asyncio.Task] = []

    async def start(self) -> None:
        """Initialise the database connection."""
        self.settings.ensure_dirs()
        await self.db.connect()
        log.info("orchestrator_started", db=str(self.settings.database_path))

    async def stop(self) -> None:
        """Stop workers and release resources."""
        self._stop.set()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
            self._workers = []
        close = getattr(self.provider, "close", None)
        if close is not None:
            await close()
        await self.db.close()
        log.info("orchestrator_stopped")

    def start_workers(self) -> None:
        if self._workers:
            return
        self._stop.clear()
        self._workers = [
            asyncio.create_task(self.poller.run_forever(self._stop), name="polling-worker"),
            asyncio.create_task(self.executor.run_forever(self._stop), name="task-executor"),
        ]

    async def run_workers(self) -> None:
        """Run both background loops until ``stop()`` is called."""
        self.start_workers()
        await asyncio.gather(*self._workers)

    @property
    def workers_running(self) -> bool:
        return any(not t.done() for t in self._workers)

    async def poll_once(self) -> dict:
        return await self.poller.run_cycle()

    async def execute_once(self) -> dict:
        return await self.executor.run_cycle()

    async def schedule_reminder(
        self, tenant_id: str, contact_id: str, scheduled_for: datetime
    ) -> Optional[CallTask]:
        return await self.follow_ups.schedule_initial_reminder(tenant_id, contact_id, scheduled_for)

    async def get_summary(self) -> dict:
        return await self.db.get_summary()
