"""Clock and deadline helpers used by every bounded wait in the harness."""

from __future__ import annotations

import threading
import time
from typing import Iterator


class Clock:
    """Time source. Swapped for a fake in tests so waits never touch the wall clock."""

    def monotonic(self) -> float:
        return time.monotonic()

    def time(self) -> float:
        return time.time()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)

    def wait(self, event: threading.Event, timeout: float) -> bool:
        """Block until ``event`` is set or ``timeout`` elapses; return whether it was set."""
        return event.wait(timeout)


class SystemClock(Clock):
    pass


SYSTEM_CLOCK = SystemClock()


class Deadline:
    """A fixed point in monotonic time after which a bounded wait gives up."""

    def __init__(self, timeout: float, clock: Clock = SYSTEM_CLOCK) -> None:
        self.timeout = timeout
        self._clock = clock
        self._expires_at = clock.monotonic() + timeout

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock.monotonic())

    def expired(self) -> bool:
        return self._clock.monotonic() >= self._expires_at


def ticks(deadline: Deadline, interval: float, clock: Clock = SYSTEM_CLOCK) -> Iterator[int]:
    """Yield attempt numbers until ``deadline`` expires, sleeping ``interval`` between them.

    The first attempt is yielded immediately. Sleeps never overshoot the deadline.
    """
    attempt = 0
    while True:
        yield attempt
        attempt += 1
        if deadline.expired():
            return
        clock.sleep(min(interval, deadline.remaining()))
        if deadline.expired():
            return
