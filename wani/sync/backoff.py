"""
Retry scheduling for the sync flows.

Each flow keeps its own FlowSchedule: when it may run next and how many
times in a row it has failed. A RateLimitWindow is shared by all flows so a
429 on one of them pauses every one.

Both use an injectable monotonic clock so tests can drive time by hand.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

Clock = Callable[[], float]


def backoff_delay(failures: int, base: float, cap: float) -> float:
    """Delay before the next attempt after `failures` consecutive failures."""
    if failures <= 0:
        return 0.0
    # Exponent is bounded so the float never overflows on long outages.
    return min(cap, base * (2 ** min(failures - 1, 32)))


@dataclass
class FlowSchedule:
    """Eligibility and failure tracking for one sync flow."""

    name: str
    interval: float  # delay after a success
    base_delay: float = 2.0
    max_delay: float = 300.0
    clock: Clock = field(default=time.monotonic, repr=False)

    failures: int = 0
    next_eligible: float = 0.0  # 0 means "now"
    last_error: str | None = None

    def is_eligible(self) -> bool:
        return self.clock() >= self.next_eligible

    def seconds_until_eligible(self) -> float:
        return max(0.0, self.next_eligible - self.clock())

    def record_success(self) -> None:
        self.failures = 0
        self.last_error = None
        self.next_eligible = self.clock() + self.interval

    def record_failure(self, error: str | None = None) -> float:
        """Push the next attempt back exponentially. Returns the delay."""
        self.failures += 1
        self.last_error = error
        delay = backoff_delay(self.failures, self.base_delay, self.max_delay)
        self.next_eligible = self.clock() + delay
        return delay

    def trigger(self) -> None:
        """Make the flow eligible immediately (e.g. new local work)."""
        if self.failures == 0:
            self.next_eligible = 0.0


@dataclass
class RateLimitWindow:
    """Global pause shared by all flows after the server rate-limited us."""

    clock: Clock = field(default=time.monotonic, repr=False)
    paused_until: float = 0.0

    def pause_for(self, seconds: float) -> None:
        self.paused_until = max(self.paused_until, self.clock() + max(0.0, seconds))

    def pause_until(self, reset_at: datetime, now: datetime | None = None) -> float:
        """Pause until a wall-clock reset time. Returns the pause in seconds."""
        now = now or datetime.now(UTC)
        seconds = max(0.0, (reset_at - now).total_seconds())
        self.pause_for(seconds)
        return seconds

    def is_paused(self) -> bool:
        return self.clock() < self.paused_until

    def remaining(self) -> float:
        return max(0.0, self.paused_until - self.clock())
