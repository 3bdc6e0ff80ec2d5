"""Shared fixtures: a temporary database, settings and a fake voice provider."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
import pytest_asyncio

from call_reconciler.backoff import PollBackoff
from call_reconciler.config import Settings
from call_reconciler.database import Database
from call_reconciler.executor import TaskExecutor
from call_reconciler.follow_up import FollowUpScheduler
from call_reconciler.models import CallSession, CallStatus, Contact, Tenant
from call_reconciler.observability import Observability
from call_reconciler.poller import PollingWorker
from call_reconciler.reconciler import Reconciler

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
WEBHOOK_SECRET = "whsec_test_secret"


class FakeProvider:
    """Stands in for the Retell client; records calls and serves canned statuses."""

    def __init__(self):
        self.statuses: dict[str, dict] = {}
        self.placed: list[tuple[Tenant, Contact, dict]] = []
        self.status_requests: list[str] = []
        self.place_error: Optional[Exception] = None
        self.status_error: Optional[Exception] = None
        self.status_delay: float = 0.0

    async def place_call(self, tenant, contact, context):
        await asyncio.sleep(0)
        if self.place_error is not None:
            raise self.place_error
        self.placed.append((tenant, contact, context))
        return f"call_{len(self.placed)}"

    async def get_call_status(self, tenant, provider_call_id):
        self.status_requests.append(provider_call_id)
        if self.status_delay:
            await asyncio.sleep(self.status_delay)
        if self.status_error is not None:
            raise self.status_error
        return self.statuses.get(
            provider_call_id, {"call_id": provider_call_id, "call_status": "ongoing"}
        )


@dataclass
class Engine:
    settings: Settings
    db: Database
    provider: FakeProvider
    backoff: PollBackoff
    follow_ups: FollowUpScheduler
    reconciler: Reconciler
    poller: PollingWorker
    executor: TaskExecutor
    observed: list = field(default_factory=list)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_path=tmp_path / "test.db",
        log_dir=tmp_path / "logs",
        retell_api_key="test",
        webhook_secret="",
        provider_timeout_seconds=0.2,
    )


@pytest_asyncio.fixture
async def db(settings):
    database = Database(settings.database_path)
    await database.connect()
    await database.upsert_tenant(Tenant(id="t1", name="Clinic", webhook_secret=WEBHOOK_SECRET))
    await database.upsert_contact(
        Contact(id="c1", tenant_id="t1", name="Jane Doe", phone="07700900001")
    )
    yield database
    await database.close()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def engine(settings, db, provider):
    observability = Observability()
    observed: list = []
    observability.subscribe(lambda name, fields: observed.append((name, fields)))
    backoff = PollBackoff.from_settings(settings)
    follow_ups = FollowUpScheduler(settings, db)
    reconciler = Reconciler(db, follow_ups, backoff, observability)
    return Engine(
        settings=settings,
        db=db,
        provider=provider,
        backoff=backoff,
        follow_ups=follow_ups,
        reconciler=reconciler,
        poller=PollingWorker(settings, db, provider, reconciler),
        executor=TaskExecutor(settings, db, provider, backoff, observability),
        observed=observed,
    )


@pytest.fixture
def make_session(db):
    async def _make(
        call_id: str = "call_1",
        contact_id: str = "c1",
        task_id: Optional[str] = None,
        created_at: datetime = NOW,
        next_poll_at: Optional[datetime] = NOW + timedelta(seconds=30),
        status: CallStatus = CallStatus.QUEUED,
    ) -> CallSession:
        session = CallSession(
            tenant_id="t1",
            contact_id=contact_id,
            task_id=task_id,
            provider_call_id=call_id,
            status=status,
            next_poll_at=next_poll_at,
            created_at=created_at,
            updated_at=created_at,
        )
        await db.insert_session(session)
        return session

    return _make
