"""
Shared data models used across the application.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from call_reconciler.clock import utcnow


def new_id() -> str:
    return uuid.uuid4().hex


# ── Outcome vocabulary ──────────────────────────────────────────
class CallOutcome(str, enum.Enum):
    """Canonical call outcomes, declared in precedence order (low → high)."""

    UNKNOWN = "unknown"
    FAILED = "failed"
    ANSWERED = "answered"
    BUSY = "busy"
    NO_ANSWER = "no_answer"
    VOICEMAIL = "voicemail"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"

    @property
    def rank(self) -> int:
        return _OUTCOME_RANK[self]


_OUTCOME_RANK: dict[CallOutcome, int] = {o: i for i, o in enumerate(CallOutcome)}


class CallStatus(str, enum.Enum):
    QUEUED = "queued"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES = (CallStatus.QUEUED, CallStatus.ONGOING)


class EventSource(str, enum.Enum):
    WEBHOOK = "webhook"
    POLL = "poll"


class EventType(str, enum.Enum):
    STARTED = "started"
    ENDED = "ended"
    ANALYZED = "analyzed"


class RecordResult(str, enum.Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"


class TaskKind(str, enum.Enum):
    INITIAL_REMINDER = "initial_reminder"
    FOLLOW_UP = "follow_up"


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ── Collaborator records (owned elsewhere, read here) ───────────
class Tenant(BaseModel):
    id: str
    name: str = ""
    webhook_secret: str = ""
    retell_api_key: str = ""
    retell_agent_id: str = ""
    from_number: str = ""


class Contact(BaseModel):
    id: str
    tenant_id: str
    name: str = ""
    phone: str
    appointment_time: Optional[datetime] = None
    appointment_type: str = ""


# ── Call session (one attempt to reach a contact) ───────────────
class CallSession(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    contact_id: str
    task_id: Optional[str] = None
    provider_call_id: Optional[str] = None
    status: CallStatus = CallStatus.QUEUED
    outcome: CallOutcome = CallOutcome.UNKNOWN

    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None

    last_webhook_payload: Optional[dict[str, Any]] = None
    last_poll_payload: Optional[dict[str, Any]] = None
    transcript: Optional[str] = None

    poll_attempts: int = 0
    next_poll_at: Optional[datetime] = None
    last_poll_error: str = ""
    webhook_verified: bool = False
    source_of_truth: Optional[EventSource] = None
    dead_lettered_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ── Provider event (deduplicated raw notification) ──────────────
class ProviderEvent(BaseModel):
    id: Optional[int] = None
    provider_call_id: str
    event_type: EventType
    digest: str
    source: EventSource
    payload: dict[str, Any]
    received_at: datetime = Field(default_factory=utcnow)


# ── Call task (deferred "place a call" unit of work) ────────────
class CallTask(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant_id: str
    contact_id: str
    kind: TaskKind
    scheduled_for: datetime
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    max_attempts: int = 2
    last_attempt_at: Optional[datetime] = None
    last_error: str = ""
    source_session_id: Optional[str] = None
    sequence: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# ── Extracted evidence from one provider payload ────────────────
class CallEvidence(BaseModel):
    """Timing/transcript facts read from a payload alongside its outcome."""

    status: Optional[CallStatus] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    transcript: Optional[str] = None
    has_analysis: bool = False
    raw: dict[str, Any] = Field(default_factory=dict)
