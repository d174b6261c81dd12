"""Cancellation token with an optional time budget, threaded through a run."""

import threading
import time

from .errors import Cancelled


class Deadline:
    def __init__(self, seconds: float | None = None, clock=time.monotonic):
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds
        self._cancelled = threading.Event()

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, step: str = ""):
        if self.cancelled:
            raise Cancelled(f"Cancelled{f' during {step}' if step else ''}")
        if self.expired:
            raise Cancelled(f"Deadline exceeded{f' during {step}' if step else ''}")

    def sleep(self, seconds: float):
        """Sleep unless cancelled first; raises Cancelled when woken by cancel or expiry."""
        remaining = self.remaining()
        wait = seconds if remaining is None else min(seconds, remaining)
        self._cancelled.wait(max(0.0, wait))
        self.check()


def ensure(deadline: Deadline | None) -> Deadline:
    return deadline if deadline is not None else Deadline()
