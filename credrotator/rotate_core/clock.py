"""Time source used by the coordinator's backoff bookkeeping."""

from __future__ import annotations

import time


class MonotonicClock:
    """Seconds from ``time.monotonic``; immune to wall-clock adjustments."""

    def now(self) -> float:
        return time.monotonic()


__all__ = ["MonotonicClock"]
