"""
Clock abstraction for the deadline engine.

Every component asks a Clock for "now" instead of calling datetime.now()
directly, so tests can inject fixed or advancing time and the scheduler
stays correct when the host clock is adjusted.
"""
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional


logger = logging.getLogger(__name__)


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime (naive values are taken to be UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock(ABC):
    """Replaceable source of the current time."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time as an aware UTC datetime."""


class SystemClock(Clock):
    """
    Wall clock in UTC that never runs backwards within a process.

    A backwards step of the host clock (NTP correction, manual change) is
    absorbed: we keep returning the last observed instant until the wall
    clock catches up. Forward jumps only make fire times due sooner; the
    fired markers keep every fire event exactly-once either way.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._last: Optional[datetime] = None
        self._rewind_reported = False

    def now(self) -> datetime:
        current = datetime.now(timezone.utc)
        with self._lock:
            if self._last is not None and current < self._last:
                if not self._rewind_reported:
                    logger.warning(
                        f"⏪ Host clock moved backwards by "
                        f"{(self._last - current).total_seconds():.1f}s; holding at {self._last.isoformat()}"
                    )
                    self._rewind_reported = True
                return self._last
            self._last = current
            self._rewind_reported = False
            return current


class ManualClock(Clock):
    """Deterministic clock for tests and simulations."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start or datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc))

    def now(self) -> datetime:
        return self._now

    def set(self, at: datetime, allow_rewind: bool = False) -> datetime:
        at = ensure_utc(at)
        if at < self._now and not allow_rewind:
            raise ValueError(f"ManualClock cannot move backwards to {at.isoformat()}")
        self._now = at
        return self._now

    def advance(self, **delta) -> datetime:
        """Advance by timedelta keyword arguments, e.g. advance(days=7)."""
        step = timedelta(**delta)
        if step < timedelta(0):
            raise ValueError("ManualClock.advance() requires a non-negative step")
        self._now = self._now + step
        return self._now


_clock: Clock = SystemClock()


def get_clock() -> Clock:
    """Get the process-wide clock."""
    return _clock


def set_clock(clock: Clock) -> Clock:
    """Replace the process-wide clock (tests, simulations)."""
    global _clock
    _clock = clock
    return clock
