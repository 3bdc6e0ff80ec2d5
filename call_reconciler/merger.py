"""
Outcome precedence and the merge rule applied to a call session.

Outcomes are totally ordered by ``CallOutcome.rank``. A candidate replaces
the session's outcome only if it ranks strictly higher, so the result of any
sequence of merges is the highest-ranked outcome ever offered, regardless of
arrival order or channel.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from call_reconciler.clock import utcnow
from call_reconciler.models import CallEvidence, CallOutcome, CallSession, CallStatus, EventSource

# Definite customer decisions; nothing after them can change the session
TERMINAL_OUTCOMES = frozenset({CallOutcome.CONFIRMED, CallOutcome.CANCELLED, CallOutcome.RESCHEDULED})

# Outcomes that warrant another call attempt
NEEDS_RETRY_OUTCOMES = frozenset(
    {CallOutcome.NO_ANSWER, CallOutcome.VOICEMAIL, CallOutcome.BUSY, CallOutcome.FAILED}
)


def rank(outcome: CallOutcome) -> int:
    return outcome.rank


def is_terminal(outcome: CallOutcome, status: Optional[CallStatus] = None) -> bool:
    """
    ``failed`` only counts as terminal when the provider itself reports the
    call failed: the placement never completed and no analysis will follow.
    """
    if outcome in TERMINAL_OUTCOMES:
        return True
    return outcome == CallOutcome.FAILED and status == CallStatus.FAILED


def polling_finished(session: CallSession) -> bool:
    return session.webhook_verified or is_terminal(session.outcome, session.status)


@dataclass
class MergeResult:
    session: CallSession
    previous_outcome: CallOutcome
    changed: bool

    @property
    def outcome(self) -> CallOutcome:
        return self.session.outcome


def _earliest(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None or b is None:
        return a or b
    return min(a, b)


def _latest(a: Optional[datetime], b: Optional[datetime]) -> Optional[datetime]:
    if a is None or b is None:
        return a or b
    return max(a, b)


def _merge_evidence(session: CallSession, evidence: CallEvidence, source: EventSource) -> None:
    # Field-wise merges are order-independent; only the "last payload" slots are not.
    session.started_at = _earliest(session.started_at, evidence.started_at)
    session.ended_at = _latest(session.ended_at, evidence.ended_at)
    if evidence.duration_seconds is not None:
        session.duration_seconds = max(session.duration_seconds or 0, evidence.duration_seconds)
    if evidence.transcript and len(evidence.transcript) > len(session.transcript or ""):
        session.transcript = evidence.transcript

    if evidence.raw:
        if source == EventSource.WEBHOOK:
            session.last_webhook_payload = evidence.raw
        else:
            session.last_poll_payload = evidence.raw


def merge(
    session: CallSession,
    candidate: CallOutcome,
    evidence: CallEvidence,
    source: EventSource,
    now: Optional[datetime] = None,
) -> MergeResult:
    """
    Merge one extracted outcome into ``session``. Returns a new session object;
    the input is not modified. Must be called on a row read inside the same
    transaction that writes the result.
    """
    updated = session.model_copy(deep=True)
    previous = updated.outcome
    changed = rank(candidate) > rank(previous)

    _merge_evidence(updated, evidence, source)

    webhook_result = source == EventSource.WEBHOOK and candidate != CallOutcome.UNKNOWN
    if changed or (webhook_result and candidate == previous):
        # Equal rank: the webhook takes the tie.
        updated.outcome = candidate
        if candidate in TERMINAL_OUTCOMES:
            updated.status = CallStatus.COMPLETED
        elif evidence.status is not None:
            updated.status = evidence.status
        updated.source_of_truth = source
    if webhook_result:
        # Any webhook result verifies the session, including one ranked below
        # the current outcome.
        updated.webhook_verified = True

    if polling_finished(updated):
        updated.next_poll_at = None

    updated.updated_at = now or utcnow()
    return MergeResult(session=updated, previous_outcome=previous, changed=changed)
