"""
Outcome extraction: maps a loosely-typed provider payload onto the closed
``CallOutcome`` vocabulary. Pure functions, no I/O.

Missing information always maps to ``UNKNOWN``; it is never read as a
negative result.
"""

from __future__ import annotations

from typing import Any, Optional

from call_reconciler.clock import from_epoch_ms
from call_reconciler.payloads import call_body
from call_reconciler.models import CallEvidence, CallOutcome, CallStatus

# Provider lifecycle status → our lifecycle status
_STATUS_MAP: dict[str, CallStatus] = {
    "registered": CallStatus.QUEUED,
    "queued": CallStatus.QUEUED,
    "initiated": CallStatus.QUEUED,
    "ringing": CallStatus.ONGOING,
    "ongoing": CallStatus.ONGOING,
    "in_progress": CallStatus.ONGOING,
    "in-progress": CallStatus.ONGOING,
    "ended": CallStatus.COMPLETED,
    "completed": CallStatus.COMPLETED,
    "busy": CallStatus.COMPLETED,
    "no_answer": CallStatus.COMPLETED,
    "no-answer": CallStatus.COMPLETED,
    "not_connected": CallStatus.FAILED,
    "error": CallStatus.FAILED,
    "failed": CallStatus.FAILED,
}

# Provider disconnection reasons that settle the outcome on their own
_DISCONNECTION_MAP: dict[str, CallOutcome] = {
    "dial_no_answer": CallOutcome.NO_ANSWER,
    "no_answer": CallOutcome.NO_ANSWER,
    "dial_busy": CallOutcome.BUSY,
    "busy": CallOutcome.BUSY,
    "voicemail_reached": CallOutcome.VOICEMAIL,
    "machine_detected": CallOutcome.VOICEMAIL,
    "dial_failed": CallOutcome.FAILED,
    "invalid_destination": CallOutcome.FAILED,
    "telephony_provider_permission_denied": CallOutcome.FAILED,
    "telephony_provider_unavailable": CallOutcome.FAILED,
    "sip_routing_error": CallOutcome.FAILED,
    "scam_detected": CallOutcome.FAILED,
}

# A human was on the line; the decision (if any) comes from analysis
_CONNECTED_REASONS = {
    "user_hangup",
    "agent_hangup",
    "call_transfer",
    "inactivity",
    "max_duration_reached",
}

# Free-text analysis outcome → outcome, checked in order
_OUTCOME_KEYWORDS: tuple[tuple[tuple[str, ...], CallOutcome], ...] = (
    (("reschedul",), CallOutcome.RESCHEDULED),
    (("cancel",), CallOutcome.CANCELLED),
    (("confirm", "accept"), CallOutcome.CONFIRMED),
    (("voicemail", "voice mail"), CallOutcome.VOICEMAIL),
    (("no answer", "no_answer", "no-answer", "unanswered"), CallOutcome.NO_ANSWER),
    (("busy",), CallOutcome.BUSY),
)


def _analysis(call: dict[str, Any]) -> dict[str, Any]:
    analysis = call.get("call_analysis") or call.get("analysis") or {}
    return analysis if isinstance(analysis, dict) else {}


def _provider_status(call: dict[str, Any]) -> str:
    return str(call.get("call_status") or call.get("status") or "").strip().lower()


def _from_decision_flags(analysis: dict[str, Any]) -> Optional[CallOutcome]:
    custom = analysis.get("custom_analysis_data") or {}
    if not isinstance(custom, dict):
        return None
    if custom.get("appointment_rescheduled") is True:
        return CallOutcome.RESCHEDULED
    if custom.get("appointment_cancelled") is True:
        return CallOutcome.CANCELLED
    if custom.get("appointment_confirmed") is True:
        return CallOutcome.CONFIRMED
    if custom.get("reached_voicemail") is True:
        return CallOutcome.VOICEMAIL
    return None


def _from_outcome_text(analysis: dict[str, Any]) -> Optional[CallOutcome]:
    text = str(analysis.get("call_outcome") or "").strip().lower()
    if not text:
        return None
    for keywords, outcome in _OUTCOME_KEYWORDS:
        if any(k in text for k in keywords):
            return outcome
    return None


def extract_outcome(payload: dict[str, Any]) -> CallOutcome:
    """Canonical outcome carried by ``payload`` (``UNKNOWN`` when it carries none)."""
    if not isinstance(payload, dict):
        return CallOutcome.UNKNOWN

    call = call_body(payload)
    analysis = _analysis(call)

    outcome = _from_decision_flags(analysis)
    if outcome:
        return outcome

    if analysis.get("in_voicemail") is True:
        return CallOutcome.VOICEMAIL

    outcome = _from_outcome_text(analysis)
    if outcome:
        return outcome

    reason = str(call.get("disconnection_reason") or "").strip().lower()
    if reason in _DISCONNECTION_MAP:
        return _DISCONNECTION_MAP[reason]
    if reason.startswith("error"):
        return CallOutcome.FAILED

    status = _provider_status(call)
    if status == "busy":
        return CallOutcome.BUSY
    if status in ("no_answer", "no-answer"):
        return CallOutcome.NO_ANSWER
    if status in ("failed", "error", "not_connected"):
        return CallOutcome.FAILED

    if _STATUS_MAP.get(status) == CallStatus.COMPLETED and (
        reason in _CONNECTED_REASONS or analysis.get("call_successful") is True
    ):
        return CallOutcome.ANSWERED

    return CallOutcome.UNKNOWN


def map_status(raw_status: str) -> Optional[CallStatus]:
    return _STATUS_MAP.get(raw_status.strip().lower())


def _duration_seconds(call: dict[str, Any]) -> Optional[int]:
    if call.get("duration_ms") is not None:
        try:
            return int(call["duration_ms"]) // 1000
        except (TypeError, ValueError):
            return None
    if call.get("duration_seconds") is not None:
        try:
            return int(call["duration_seconds"])
        except (TypeError, ValueError):
            return None
    return None


def extract_evidence(payload: dict[str, Any]) -> CallEvidence:
    """Lifecycle status, timing and transcript reported by ``payload``."""
    if not isinstance(payload, dict):
        return CallEvidence()

    call = call_body(payload)
    started_at = from_epoch_ms(call.get("start_timestamp"))
    ended_at = from_epoch_ms(call.get("end_timestamp"))
    duration = _duration_seconds(call)
    if duration is None and started_at and ended_at:
        duration = int((ended_at - started_at).total_seconds())

    transcript = call.get("transcript")
    return CallEvidence(
        status=map_status(_provider_status(call)),
        started_at=started_at,
        ended_at=ended_at,
        duration_seconds=duration,
        transcript=transcript if isinstance(transcript, str) and transcript else None,
        has_analysis=bool(_analysis(call)),
        raw=payload,
    )
