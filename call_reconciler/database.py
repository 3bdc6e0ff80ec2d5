"""
SQLite-backed persistence layer using aiosqlite.
Holds call sessions, the provider event log, call tasks and the
tenant/contact records supplied by collaborators.

Every write runs inside ``transaction()`` (``BEGIN IMMEDIATE``), so a
read-modify-write done within one transaction cannot interleave with
another writer, in this process or any other sharing the file. Reads made
outside a transaction wait for any open one, so they never observe rows
that may still roll back.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Optional

import aiosqlite

from call_reconciler.clock import from_iso, to_iso, utcnow
from call_reconciler.models import (
    CallOutcome,
    CallSession,
    CallStatus,
    CallTask,
    Contact,
    EventSource,
    EventType,
    ProviderEvent,
    TaskKind,
    TaskStatus,
    Tenant,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tenants (
    id                TEXT PRIMARY KEY,
    name              TEXT DEFAULT '',
    webhook_secret    TEXT DEFAULT '',
    retell_api_key    TEXT DEFAULT '',
    retell_agent_id   TEXT DEFAULT '',
    from_number       TEXT DEFAULT ''
);

CREATE TABLE IF NOT EXISTS contacts (
    id                TEXT PRIMARY KEY,
    tenant_id         TEXT NOT NULL,
    name              TEXT DEFAULT '',
    phone             TEXT NOT NULL,
    appointment_time  TEXT,
    appointment_type  TEXT DEFAULT ''
);

CREATE TABLE IF NOT EXISTS call_sessions (
    id                    TEXT PRIMARY KEY,
    tenant_id             TEXT NOT NULL,
    contact_id            TEXT NOT NULL,
    task_id               TEXT,
    provider_call_id      TEXT UNIQUE,
    status                TEXT NOT NULL DEFAULT 'queued',
    outcome               TEXT NOT NULL DEFAULT 'unknown',
    started_at            TEXT,
    ended_at              TEXT,
    duration_seconds      INTEGER,
    last_webhook_payload  TEXT,
    last_poll_payload     TEXT,
    transcript            TEXT,
    poll_attempts         INTEGER NOT NULL DEFAULT 0,
    next_poll_at          TEXT,
    last_poll_error       TEXT DEFAULT '',
    webhook_verified      INTEGER NOT NULL DEFAULT 0,
    source_of_truth       TEXT,
    dead_lettered_at      TEXT,
    created_at            TEXT NOT NULL,
    updated_at            TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS provider_events (
    id                INTEGER PRIMARY KEY AUTOINCREMENT,
    provider_call_id  TEXT NOT NULL,
    event_type        TEXT NOT NULL,
    digest            TEXT NOT NULL,
    source            TEXT NOT NULL,
    payload           TEXT NOT NULL,
    received_at       TEXT NOT NULL,
    UNIQUE(provider_call_id, event_type, digest)
);

CREATE TABLE IF NOT EXISTS call_tasks (
    id                 TEXT PRIMARY KEY,
    tenant_id          TEXT NOT NULL,
    contact_id         TEXT NOT NULL,
    kind               TEXT NOT NULL,
    scheduled_for      TEXT NOT NULL,
    status             TEXT NOT NULL DEFAULT 'pending',
    attempts           INTEGER NOT NULL DEFAULT 0,
    max_attempts       INTEGER NOT NULL DEFAULT 2,
    last_attempt_at    TEXT,
    last_error         TEXT DEFAULT '',
    source_session_id  TEXT UNIQUE,
    sequence           INTEGER NOT NULL DEFAULT 0,
    created_at         TEXT NOT NULL,
    updated_at         TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_call_tasks_active
    ON call_tasks(contact_id, kind)
    WHERE status IN ('pending', 'processing');

CREATE INDEX IF NOT EXISTS idx_call_sessions_poll ON call_sessions(status, next_poll_at);
CREATE INDEX IF NOT EXISTS idx_call_sessions_contact ON call_sessions(contact_id);
CREATE INDEX IF NOT EXISTS idx_call_tasks_due ON call_tasks(status, scheduled_for);
CREATE INDEX IF NOT EXISTS idx_provider_events_call ON provider_events(provider_call_id);
"""

_ACTIVE_STATUS_SQL = "('queued', 'ongoing')"


def _dump(value: Optional[dict[str, Any]]) -> Optional[str]:
    return json.dumps(value, sort_keys=True) if value is not None else None


def _load(value: Optional[str]) -> Optional[dict[str, Any]]:
    return json.loads(value) if value else None


class Database:
    """Async SQLite wrapper for the reconciliation engine."""

    def __init__(self, db_path: Path):
        self._path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._tx_owner: Optional[asyncio.Task] = None

    async def connect(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode: transactions are opened explicitly below.
        self._db = await aiosqlite.connect(str(self._path), isolation_level=None)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA busy_timeout=5000")
        await self._db.executescript(_SCHEMA)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Exclusive write transaction. Re-entrant within the same asyncio task,
        so store methods called from inside an open transaction join it.
        """
        current = asyncio.current_task()
        if self._tx_owner is not None and self._tx_owner is current:
            yield self._db
            return

        async with self._lock:
            await self._db.execute("BEGIN IMMEDIATE")
            self._tx_owner = current
            try:
                yield self._db
            except BaseException:
                await self._db.execute("ROLLBACK")
                raise
            else:
                await self._db.execute("COMMIT")
            finally:
                self._tx_owner = None

    @asynccontextmanager
    async def _reading(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Reads share the connection with writers, so outside a transaction they
        wait for the lock and only ever see committed rows.
        """
        if self._tx_owner is not None and self._tx_owner is asyncio.current_task():
            yield self._db
            return
        async with self._lock:
            yield self._db

    async def _fetchone(self, sql: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
        async with self._reading() as db:
            cursor = await db.execute(sql, params)
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: tuple = ()) -> list[aiosqlite.Row]:
        async with self._reading() as db:
            cursor = await db.execute(sql, params)
            return list(await cursor.fetchall())

    # ── Tenants & contacts ──────────────────────────────────────

    async def upsert_tenant(self, tenant: Tenant) -> None:
        async with self.transaction() as db:
            await db.execute(
                """
                INSERT INTO tenants (id, name, webhook_secret, retell_api_key, retell_agent_id, from_number)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    webhook_secret = excluded.webhook_secret,
                    retell_api_key = excluded.retell_api_key,
                    retell_agent_id = excluded.retell_agent_id,
                    from_number = excluded.from_number
                """,
                (
                    tenant.id,
                    tenant.name,
                    tenant.webhook_secret,
                    tenant.retell_api_key,
                    tenant.retell_agent_id,
                    tenant.from_number,
                ),
            )

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        row = await self._fetchone("SELECT * FROM tenants WHERE id = ?", (tenant_id,))
        return Tenant(**dict(row)) if row else None

    async def upsert_contact(self, contact: Contact) -> None:
        async with self.transaction() as db:
            await db.execute(
                """
                INSERT INTO contacts (id, tenant_id, name, phone, appointment_time, appointment_type)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    phone = excluded.phone,
                    appointment_time = excluded.appointment_time,
                    appointment_type = excluded.appointment_type
                """,
                (
                    contact.id,
                    contact.tenant_id,
                    contact.name,
                    contact.phone,
                    to_iso(contact.appointment_time),
                    contact.appointment_type,
                ),
            )

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        row = await self._fetchone("SELECT * FROM contacts WHERE id = ?", (contact_id,))
        if not row:
            return None
        data = dict(row)
        data["appointment_time"] = from_iso(data["appointment_time"])
        return Contact(**data)

    # ── Call sessions ───────────────────────────────────────────

    async def insert_session(self, session: CallSession) -> None:
        async with self.transaction() as db:
            await db.execute(
                """
                INSERT INTO call_sessions (
                    id, tenant_id, contact_id, task_id, provider_call_id, status, outcome,
                    started_at, ended_at, duration_seconds, last_webhook_payload,
                    last_poll_payload, transcript, poll_attempts, next_poll_at,
                    last_poll_error, webhook_verified, source_of_truth, dead_lettered_at,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._session_params(session),
            )

    async def save_session(self, session: CallSession) -> None:
        """Overwrite every mutable column of an existing session; callers stamp ``updated_at``."""
        async with self.transaction() as db:
            await db.execute(
                """
                UPDATE call_sessions SET
                    tenant_id = ?, contact_id = ?, task_id = ?, provider_call_id = ?,
                    status = ?, outcome = ?, started_at = ?, ended_at = ?,
                    duration_seconds = ?, last_webhook_payload = ?, last_poll_payload = ?,
                    transcript = ?, poll_attempts = ?, next_poll_at = ?, last_poll_error = ?,
                    webhook_verified = ?, source_of_truth = ?, dead_lettered_at = ?,
                    created_at = ?, updated_at = ?
                WHERE id = ?
                """,
                self._session_params(session)[1:] + (session.id,),
            )

    async def get_session(self, session_id: str) -> Optional[CallSession]:
        row = await self._fetchone("SELECT * FROM call_sessions WHERE id = ?", (session_id,))
        return self._row_to_session(row) if row else None

    async def get_session_by_call_id(self, provider_call_id: str) -> Optional[CallSession]:
        row = await self._fetchone(
            "SELECT * FROM call_sessions WHERE provider_call_id = ?",
            (provider_call_id,),
        )
        return self._row_to_session(row) if row else None

    async def get_sessions_due_for_polling(self, now: datetime, limit: int = 100) -> list[CallSession]:
        rows = await self._fetchall(
            f"""
            SELECT * FROM call_sessions
            WHERE next_poll_at IS NOT NULL
              AND next_poll_at <= ?
              AND status IN {_ACTIVE_STATUS_SQL}
              AND provider_call_id IS NOT NULL
              AND dead_lettered_at IS NULL
            ORDER BY next_poll_at ASC
            LIMIT ?
            """,
            (to_iso(now), limit),
        )
        return [self._row_to_session(r) for r in rows]

    async def get_next_poll_time(self) -> Optional[datetime]:
        row = await self._fetchone(
            f"""
            SELECT MIN(next_poll_at) AS due FROM call_sessions
            WHERE next_poll_at IS NOT NULL
              AND status IN {_ACTIVE_STATUS_SQL}
              AND dead_lettered_at IS NULL
            """
        )
        return from_iso(row["due"]) if row else None

    async def get_stuck_sessions(self, created_before: datetime) -> list[CallSession]:
        """Active sessions with no outcome that were created before the cutoff."""
        rows = await self._fetchall(
            f"""
            SELECT * FROM call_sessions
            WHERE status IN {_ACTIVE_STATUS_SQL}
              AND outcome = 'unknown'
              AND webhook_verified = 0
              AND dead_lettered_at IS NULL
              AND created_at <= ?
            ORDER BY created_at ASC
            """,
            (to_iso(created_before),),
        )
        return [self._row_to_session(r) for r in rows]

    async def get_dead_lettered_sessions(self, limit: int = 100) -> list[CallSession]:
        rows = await self._fetchall(
            """
            SELECT * FROM call_sessions
            WHERE dead_lettered_at IS NOT NULL
            ORDER BY dead_lettered_at DESC
            LIMIT ?
            """,
            (limit,),
        )
        return [self._row_to_session(r) for r in rows]

    async def get_sessions_for_contact(self, contact_id: str) -> list[CallSession]:
        rows = await self._fetchall(
            "SELECT * FROM call_sessions WHERE contact_id = ? ORDER BY created_at ASC",
            (contact_id,),
        )
        return [self._row_to_session(r) for r in rows]

    # ── Provider events ─────────────────────────────────────────

    async def insert_event(self, event: ProviderEvent) -> bool:
        """Insert unless (call id, type, digest) already exists. Returns True if inserted."""
        async with self.transaction() as db:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO provider_events
                    (provider_call_id, event_type, digest, source, payload, received_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.provider_call_id,
                    event.event_type.value,
                    event.digest,
                    event.source.value,
                    _dump(event.payload),
                    to_iso(event.received_at),
                ),
            )
            inserted = cursor.rowcount == 1
            if inserted:
                event.id = cursor.lastrowid
            return inserted

    async def get_events(self, provider_call_id: str) -> list[ProviderEvent]:
        rows = await self._fetchall(
            "SELECT * FROM provider_events WHERE provider_call_id = ? ORDER BY id ASC",
            (provider_call_id,),
        )
        return [
            ProviderEvent(
                id=r["id"],
                provider_call_id=r["provider_call_id"],
                event_type=EventType(r["event_type"]),
                digest=r["digest"],
                source=EventSource(r["source"]),
                payload=_load(r["payload"]) or {},
                received_at=from_iso(r["received_at"]),
            )
            for r in rows
        ]

    # ── Call tasks ──────────────────────────────────────────────

    async def insert_task_if_absent(self, task: CallTask) -> bool:
        """
        Insert a task unless the contact already has an active task of the
        same kind, or a follow-up for the same source session exists.
        Returns True if the row was written.
        """
        async with self.transaction() as db:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO call_tasks (
                    id, tenant_id, contact_id, kind, scheduled_for, status, attempts,
                    max_attempts, last_attempt_at, last_error, source_session_id,
                    sequence, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.tenant_id,
                    task.contact_id,
                    task.kind.value,
                    to_iso(task.scheduled_for),
                    task.status.value,
                    task.attempts,
                    task.max_attempts,
                    to_iso(task.last_attempt_at),
                    task.last_error,
                    task.source_session_id,
                    task.sequence,
                    to_iso(task.created_at),
                    to_iso(task.updated_at),
                ),
            )
            return cursor.rowcount == 1

    async def get_task(self, task_id: str) -> Optional[CallTask]:
        row = await self._fetchone("SELECT * FROM call_tasks WHERE id = ?", (task_id,))
        return self._row_to_task(row) if row else None

    async def get_active_task(self, contact_id: str, kind: TaskKind) -> Optional[CallTask]:
        row = await self._fetchone(
            """
            SELECT * FROM call_tasks
            WHERE contact_id = ? AND kind = ? AND status IN ('pending', 'processing')
            """,
            (contact_id, kind.value),
        )
        return self._row_to_task(row) if row else None

    async def get_tasks(
        self,
        contact_id: Optional[str] = None,
        kind: Optional[TaskKind] = None,
        status: Optional[TaskStatus] = None,
    ) -> list[CallTask]:
        clauses, params = [], []
        if contact_id is not None:
            clauses.append("contact_id = ?")
            params.append(contact_id)
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind.value)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetchall(
            f"SELECT * FROM call_tasks {where} ORDER BY created_at ASC", tuple(params)
        )
        return [self._row_to_task(r) for r in rows]

    async def get_due_tasks(self, now: datetime, limit: int = 20) -> list[CallTask]:
        rows = await self._fetchall(
            """
            SELECT * FROM call_tasks
            WHERE status = 'pending' AND scheduled_for <= ?
            ORDER BY scheduled_for ASC
            LIMIT ?
            """,
            (to_iso(now), limit),
        )
        return [self._row_to_task(r) for r in rows]

    async def claim_task(self, task_id: str, now: datetime) -> bool:
        """Conditional pending → processing update; only one caller can win."""
        async with self.transaction() as db:
            cursor = await db.execute(
                """
                UPDATE call_tasks
                SET status = 'processing', last_attempt_at = ?, updated_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (to_iso(now), to_iso(now), task_id),
            )
            return cursor.rowcount == 1

    async def set_task_status(self, task_id: str, status: TaskStatus, error: str = "") -> None:
        now = to_iso(utcnow())
        async with self.transaction() as db:
            await db.execute(
                "UPDATE call_tasks SET status = ?, last_error = ?, updated_at = ? WHERE id = ?",
                (status.value, error, now, task_id),
            )

    async def record_task_failure(
        self, task_id: str, error: str, final: bool = False
    ) -> Optional[CallTask]:
        """
        Increment attempts; fail the task once its budget is spent (or at once
        when ``final``), else release it.
        """
        async with self.transaction() as db:
            task = await self.get_task(task_id)
            if task is None:
                return None
            task.attempts += 1
            task.last_error = error
            task.status = (
                TaskStatus.FAILED
                if final or task.attempts >= task.max_attempts
                else TaskStatus.PENDING
            )
            task.updated_at = utcnow()
            await db.execute(
                """
                UPDATE call_tasks
                SET attempts = ?, status = ?, last_error = ?, updated_at = ?
                WHERE id = ?
                """,
                (task.attempts, task.status.value, task.last_error, to_iso(task.updated_at), task.id),
            )
            return task

    async def cancel_pending_tasks(self, contact_id: str, kind: TaskKind) -> int:
        async with self.transaction() as db:
            cursor = await db.execute(
                """
                UPDATE call_tasks SET status = 'cancelled', updated_at = ?
                WHERE contact_id = ? AND kind = ? AND status = 'pending'
                """,
                (to_iso(utcnow()), contact_id, kind.value),
            )
            return cursor.rowcount

    async def release_stale_tasks(self, claimed_before: datetime) -> list[CallTask]:
        """
        Reclaim tasks left in processing by a crashed or hung worker. The
        expired lease costs an attempt like any other placement failure.
        """
        async with self.transaction() as db:
            cursor = await db.execute(
                "SELECT id FROM call_tasks WHERE status = 'processing' AND last_attempt_at <= ?",
                (to_iso(claimed_before),),
            )
            stale = [r["id"] for r in await cursor.fetchall()]
            released = []
            for task_id in stale:
                task = await self.record_task_failure(task_id, "processing lease expired")
                if task is not None:
                    released.append(task)
            return released

    # ── Reporting ───────────────────────────────────────────────

    async def get_summary(self) -> dict:
        summary: dict[str, Any] = {}
        for key, sql in (
            ("sessions_by_outcome", "SELECT outcome AS k, COUNT(*) AS cnt FROM call_sessions GROUP BY outcome"),
            ("sessions_by_status", "SELECT status AS k, COUNT(*) AS cnt FROM call_sessions GROUP BY status"),
            ("tasks_by_status", "SELECT status AS k, COUNT(*) AS cnt FROM call_tasks GROUP BY status"),
        ):
            summary[key] = {r["k"]: r["cnt"] for r in await self._fetchall(sql)}

        row = await self._fetchone(
            "SELECT COUNT(*) AS cnt FROM call_sessions WHERE dead_lettered_at IS NOT NULL"
        )
        summary["dead_lettered"] = row["cnt"]
        row = await self._fetchone("SELECT COUNT(*) AS cnt FROM provider_events")
        summary["provider_events"] = row["cnt"]
        return summary

    # ── Helpers ─────────────────────────────────────────────────

    @staticmethod
    def _session_params(s: CallSession) -> tuple:
        return (
            s.id,
            s.tenant_id,
            s.contact_id,
            s.task_id,
            s.provider_call_id,
            s.status.value,
            s.outcome.value,
            to_iso(s.started_at),
            to_iso(s.ended_at),
            s.duration_seconds,
            _dump(s.last_webhook_payload),
            _dump(s.last_poll_payload),
            s.transcript,
            s.poll_attempts,
            to_iso(s.next_poll_at),
            s.last_poll_error,
            int(s.webhook_verified),
            s.source_of_truth.value if s.source_of_truth else None,
            to_iso(s.dead_lettered_at),
            to_iso(s.created_at),
            to_iso(s.updated_at),
        )

    @staticmethod
    def _row_to_session(row) -> CallSession:
        return CallSession(
            id=row["id"],
            tenant_id=row["tenant_id"],
            contact_id=row["contact_id"],
            task_id=row["task_id"],
            provider_call_id=row["provider_call_id"],
            status=CallStatus(row["status"]),
            outcome=CallOutcome(row["outcome"]),
            started_at=from_iso(row["started_at"]),
            ended_at=from_iso(row["ended_at"]),
            duration_seconds=row["duration_seconds"],
            last_webhook_payload=_load(row["last_webhook_payload"]),
            last_poll_payload=_load(row["last_poll_payload"]),
            transcript=row["transcript"],
            poll_attempts=row["poll_attempts"],
            next_poll_at=from_iso(row["next_poll_at"]),
            last_poll_error=row["last_poll_error"] or "",
            webhook_verified=bool(row["webhook_verified"]),
            source_of_truth=EventSource(row["source_of_truth"]) if row["source_of_truth"] else None,
            dead_lettered_at=from_iso(row["dead_lettered_at"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )

    @staticmethod
    def _row_to_task(row) -> CallTask:
        return CallTask(
            id=row["id"],
            tenant_id=row["tenant_id"],
            contact_id=row["contact_id"],
            kind=TaskKind(row["kind"]),
            scheduled_for=from_iso(row["scheduled_for"]),
            status=TaskStatus(row["status"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            last_attempt_at=from_iso(row["last_attempt_at"]),
            last_error=row["last_error"] or "",
            source_session_id=row["source_session_id"],
            sequence=row["sequence"],
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )
