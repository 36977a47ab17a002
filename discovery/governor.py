"""
Time budget for a discovery run.

The host kills the run at a hard deadline; the scanner stops on its own
once less than ``safety_margin`` is left so it can save its marker and
exit cleanly. Pure arithmetic over an injectable monotonic clock.
"""

from datetime import timedelta
from typing import Optional
import time

from core.clock import MonotonicClock


class TimeBudget:

    def __init__(
        self,
        total_timeout: timedelta,
        safety_margin: timedelta,
        clock: MonotonicClock = time.monotonic,
        started_at: Optional[float] = None
    ):
        if safety_margin >= total_timeout:
            raise ValueError("safety_margin must be shorter than total_timeout")
        self.total_timeout = total_timeout
        self.safety_margin = safety_margin
        self.clock = clock
        self.started_at = clock() if started_at is None else started_at

    @classmethod
    def from_seconds(cls, timeout: float, margin: float, clock: MonotonicClock = time.monotonic) -> "TimeBudget":
        return cls(timedelta(seconds=timeout), timedelta(seconds=margin), clock=clock)

    def elapsed(self) -> timedelta:
        return timedelta(seconds=self.clock() - self.started_at)

    def remaining(self) -> timedelta:
        return self.total_timeout - self.elapsed()

    def should_stop(self) -> bool:
        """True once another batch could run into the deadline"""
        return self.remaining() < self.safety_margin
