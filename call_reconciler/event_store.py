"""
Idempotent provider-event log.

Both ingestion channels hand their raw payloads to ``EventStore.record``.
An event whose (provider call id, event type, content digest) has been seen
before is reported as a duplicate, and the caller stops there.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any, Optional

import structlog

from call_reconciler.clock import utcnow
from call_reconciler.database import Database
from call_reconciler.models import EventSource, EventType, ProviderEvent, RecordResult
from call_reconciler.payloads import call_body

log = structlog.get_logger(__name__)

# Transport metadata that changes between redeliveries of the same event
VOLATILE_KEYS = frozenset(
    {
        "delivery_attempt",
        "delivery_id",
        "retry_count",
        "sent_at",
        "webhook_timestamp",
        "x-retell-signature",
    }
)

_WEBHOOK_EVENT_TYPES: dict[str, EventType] = {
    "call_started": EventType.STARTED,
    "call_ended": EventType.ENDED,
    "call_analyzed": EventType.ANALYZED,
}

_ENDED_PROVIDER_STATUSES = {"ended", "completed", "error", "failed", "not_connected"}


def canonicalize(payload: Any) -> Any:
    """Drop volatile keys at every level; dict ordering is fixed later by sort_keys."""
    if isinstance(payload, dict):
        return {k: canonicalize(v) for k, v in payload.items() if k not in VOLATILE_KEYS}
    if isinstance(payload, list):
        return [canonicalize(v) for v in payload]
    return payload


def compute_digest(payload: dict[str, Any]) -> str:
    canonical = json.dumps(
        canonicalize(payload), sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def classify_webhook_event(payload: dict[str, Any]) -> Optional[EventType]:
    """Map the provider's webhook event name; None for events we do not track."""
    return _WEBHOOK_EVENT_TYPES.get(str(payload.get("event", "")).strip().lower())


def classify_poll_payload(payload: dict[str, Any]) -> EventType:
    call = call_body(payload)
    if call.get("call_analysis"):
        return EventType.ANALYZED
    status = str(call.get("call_status") or call.get("status") or "").lower()
    if status in _ENDED_PROVIDER_STATUSES:
        return EventType.ENDED
    return EventType.STARTED


class EventStore:
    """Durable, deduplicating log of provider events."""

    def __init__(self, db: Database):
        self.db = db

    async def record(
        self,
        provider_call_id: str,
        event_type: EventType,
        payload: dict[str, Any],
        source: EventSource,
        received_at: Optional[datetime] = None,
    ) -> RecordResult:
        event = ProviderEvent(
            provider_call_id=provider_call_id,
            event_type=event_type,
            digest=compute_digest(payload),
            source=source,
            payload=payload,
            received_at=received_at or utcnow(),
        )
        if await self.db.insert_event(event):
            log.debug(
                "provider_event_recorded",
                call_id=provider_call_id,
                event_type=event_type.value,
                source=source.value,
                digest=event.digest[:12],
            )
            return RecordResult.ACCEPTED

        log.info(
            "provider_event_duplicate",
            call_id=provider_call_id,
            event_type=event_type.value,
            source=source.value,
        )
        return RecordResult.DUPLICATE
