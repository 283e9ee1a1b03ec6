"""Monotonic watermark source shared by every record in a store."""

import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

# Smallest step between two issued watermarks
TICK = timedelta(microseconds=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WatermarkClock:
    """Issues strictly increasing UTC timestamps.

    Wall-clock time is used while it moves forward. When it stalls or steps
    backwards the clock issues the previous watermark plus one microsecond,
    so two mutations never share a watermark.
    """

    def __init__(self, now: Callable[[], datetime] = utcnow):
        self._now = now
        self._last: datetime | None = None
        self._lock = threading.Lock()

    def issue(self) -> datetime:
        """Issue the next watermark."""
        with self._lock:
            candidate = self._now()
            if self._last is not None and candidate <= self._last:
                candidate = self._last + TICK
            self._last = candidate
            return candidate

    def current(self) -> datetime:
        """Current time, never earlier than the last issued watermark.

        Every watermark issued later is strictly greater than the value
        returned here.
        """
        with self._lock:
            now = self._now()
            if self._last is None or now > self._last:
                self._last = now
            return self._last
