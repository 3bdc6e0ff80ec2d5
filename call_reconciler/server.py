"""
Combined server entry point: webhook receiver plus the polling and task
executor loops running in the same process.

Usage:
    python -m call_reconciler.server
    # or
    uvicorn call_reconciler.server:create_app --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI

from call_reconciler.config import Settings, get_settings
from call_reconciler.orchestrator import Orchestrator
from call_reconciler.webhook import create_webhook_router

log = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[Orchestrator] = None,
    run_workers: bool = True,
) -> FastAPI:
    """Create the FastAPI app with webhook and operator routes."""
    settings = settings or get_settings()
    orch = orchestrator or Orchestrator(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await orch.start()
        if run_workers:
            orch.start_workers()
        log.info("server_started", db=str(settings.database_path), workers=run_workers)
        yield
        await orch.stop()
        log.info("server_stopped")

    app = FastAPI(
        title="Call Outcome Reconciler",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orch
    app.include_router(create_webhook_router(settings, orch.db, orch.reconciler))

    # ── Operator views ────────────────────────────────────────
    @app.get("/status")
    async def status():
        summary = await orch.get_summary()
        return {"workers_running": orch.workers_running, **summary}

    @app.get("/dead-letters")
    async def dead_letters(limit: int = 100):
        sessions = await orch.db.get_dead_lettered_sessions(limit=limit)
        return [
            s.model_dump(mode="json", exclude={"last_webhook_payload", "last_poll_payload", "transcript"})
            for s in sessions
        ]

    return app


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        create_app(_settings),
        host=_settings.host,
        port=_settings.port,
        log_level="info",
    )
