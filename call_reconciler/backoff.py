"""Poll scheduling policy: initial delay, stepped backoff, hard cap."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence

from call_reconciler.config import Settings


class PollBackoff:
    """
    Delay before the next status poll.

    The first poll waits ``initial_delay`` after placement; polling right away
    only ever sees an in-progress call. After the n-th poll the delay is
    ``steps[n-1]``; once the steps run out every further delay is ``cap``.
    """

    def __init__(self, initial_delay: timedelta, steps: Sequence[int], cap_seconds: int):
        self.initial_delay = initial_delay
        self.steps = [int(s) for s in steps if int(s) > 0]
        self.cap_seconds = cap_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "PollBackoff":
        return cls(
            initial_delay=settings.initial_poll_delay,
            steps=settings.poll_backoff_seconds,
            cap_seconds=settings.poll_backoff_cap_seconds,
        )

    def delay_after(self, attempts: int) -> timedelta:
        index = max(attempts, 1) - 1
        seconds = self.steps[index] if index < len(self.steps) else self.cap_seconds
        return timedelta(seconds=min(seconds, self.cap_seconds))

    def first_poll_at(self, now: datetime) -> datetime:
        return now + self.initial_delay

    def next_poll_at(self, attempts: int, now: datetime) -> datetime:
        return now + self.delay_after(attempts)
