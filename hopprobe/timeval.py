"""Second/microsecond time values with normalisation and comparison."""

from __future__ import annotations

import time
from dataclasses import dataclass

USEC_PER_SEC = 1_000_000


@dataclass(frozen=True, order=True)
class Timeval:
    """A point in time or a duration split into seconds and microseconds."""

    sec: int = 0
    usec: int = 0

    @classmethod
    def now(cls) -> Timeval:
        """Return the current wall-clock time."""
        ns = time.time_ns()
        return cls(ns // 1_000_000_000, (ns // 1000) % USEC_PER_SEC)

    def normalized(self) -> Timeval:
        """Return an equivalent value with usec in [0, 1e6), clamped at zero."""
        sec, usec = self.sec, self.usec

        # Carry whole seconds out of usec, truncating toward zero.
        full_sec = abs(usec) // USEC_PER_SEC
        if usec < 0:
            full_sec = -full_sec
        sec += full_sec
        usec -= USEC_PER_SEC * full_sec

        if usec < 0:
            sec -= 1
            usec += USEC_PER_SEC

        if sec < 0:
            return Timeval(0, 0)
        return Timeval(sec, usec)


def compare_timeval(a: Timeval, b: Timeval) -> int:
    """Return -1 if a < b, 0 if they are equal and 1 if a > b."""
    if a.sec != b.sec:
        return 1 if a.sec > b.sec else -1
    if a.usec != b.usec:
        return 1 if a.usec > b.usec else -1
    return 0