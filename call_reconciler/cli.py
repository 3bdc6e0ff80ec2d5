"""
CLI interface for the call outcome reconciler.
Provides commands for running the server, single worker cycles and
inspecting reconciliation state.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from call_reconciler.config import get_settings
from call_reconciler.logging_config import get_logger, setup_logging

app = typer.Typer(
    name="call-reconciler",
    help="Reconcile voice-call outcomes from webhooks and status polling",
    add_completion=False,
)
console = Console()
log = get_logger(__name__)


def _run(coro):
    """Helper to run async code from sync CLI."""
    return asyncio.run(coro)


def _print_stats(title: str, stats: dict) -> None:
    console.print(f"\n[green]✓ {title}[/green]")
    for k, v in stats.items():
        console.print(f"  {k}: {v}")


@app.command()
def server(
    workers: bool = typer.Option(True, help="Run the polling and task loops in-process"),
):
    """Run the webhook receiver (and, by default, the background workers)."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    import uvicorn
    from call_reconciler.server import create_app

    console.print(f"\n[green]Reconciler running on {settings.host}:{settings.port}[/green]")
    uvicorn.run(
        create_app(settings, run_workers=workers),
        host=settings.host,
        port=settings.port,
        log_level="info",
    )


@app.command()
def worker():
    """Run the polling and task executor loops without the HTTP server."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do():
        from call_reconciler.orchestrator import Orchestrator

        orch = Orchestrator(settings)
        await orch.start()
        try:
            await orch.run_workers()
        finally:
            await orch.stop()

    try:
        _run(_do())
    except KeyboardInterrupt:
        log.info("workers_interrupted")
        console.print("\n[yellow]Workers stopped[/yellow]")


@app.command()
def poll():
    """Run one polling cycle (including dead-letter detection)."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do():
        from call_reconciler.orchestrator import Orchestrator

        orch = Orchestrator(settings)
        await orch.start()
        try:
            _print_stats("Polling cycle complete", await orch.poll_once())
        finally:
            await orch.stop()

    _run(_do())


@app.command()
def execute():
    """Run one task-executor cycle: place calls for due tasks."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=True)

    async def _do():
        from call_reconciler.orchestrator import Orchestrator

        orch = Orchestrator(settings)
        await orch.start()
        try:
            _print_stats("Task cycle complete", await orch.execute_once())
        finally:
            await orch.stop()

    _run(_do())


@app.command("schedule-reminder")
def schedule_reminder(
    tenant_id: str = typer.Argument(..., help="Tenant owning the contact"),
    contact_id: str = typer.Argument(..., help="Contact to call"),
    in_minutes: int = typer.Option(0, help="Delay before the call is due"),
):
    """Enqueue an initial reminder call for a contact."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do():
        from call_reconciler.orchestrator import Orchestrator

        orch = Orchestrator(settings)
        await orch.start()
        try:
            when = datetime.now(timezone.utc) + timedelta(minutes=in_minutes)
            task = await orch.schedule_reminder(tenant_id, contact_id, when)
            if task is None:
                console.print("[yellow]Contact already has an active reminder[/yellow]")
            else:
                console.print(f"[green]✓ Reminder {task.id} scheduled for {when.isoformat()}[/green]")
        finally:
            await orch.stop()

    _run(_do())


@app.command()
def status():
    """Show session outcomes, task states and dead-letter counts."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do():
        from call_reconciler.orchestrator import Orchestrator

        orch = Orchestrator(settings)
        await orch.start()
        try:
            summary = await orch.get_summary()

            for title, key in (
                ("Sessions by Outcome", "sessions_by_outcome"),
                ("Sessions by Status", "sessions_by_status"),
                ("Tasks by Status", "tasks_by_status"),
            ):
                table = Table(title=title)
                table.add_column("Value", style="cyan")
                table.add_column("Count", style="green")
                for k, v in sorted(summary[key].items()):
                    table.add_row(k, str(v))
                console.print(table)

            console.print(f"Provider events: {summary['provider_events']}")
            console.print(f"Dead-lettered sessions: [red]{summary['dead_lettered']}[/red]")
        finally:
            await orch.stop()

    _run(_do())


@app.command("dead-letters")
def dead_letters(limit: Optional[int] = typer.Option(50, help="Max rows to show")):
    """List sessions flagged as stuck without an outcome."""
    settings = get_settings()
    setup_logging(settings.log_dir, json_logs=False)

    async def _do():
        from call_reconciler.orchestrator import Orchestrator

        orch = Orchestrator(settings)
        await orch.start()
        try:
            sessions = await orch.db.get_dead_lettered_sessions(limit=limit or 50)
            table = Table(title="Dead-lettered Sessions")
            for col in ("Session", "Call ID", "Contact", "Polls", "Last error", "Flagged at"):
                table.add_column(col)
            for s in sessions:
                table.add_row(
                    s.id,
                    s.provider_call_id or "",
                    s.contact_id,
                    str(s.poll_attempts),
                    s.last_poll_error,
                    s.dead_lettered_at.isoformat() if s.dead_lettered_at else "",
                )
            console.print(table)
        finally:
            await orch.stop()

    _run(_do())


if __name__ == "__main__":
    app()
