"""Sliding-window limit on orchestration runs per origin address."""

import logging
import threading
import time

from .store import KeyValueStore, MemoryStore

log = logging.getLogger(__name__)


class RateLimiter:
    """At most `limit` accepted calls per origin within any `window` seconds.

    Timestamps older than the window are dropped lazily on each check. Keys of
    origins that never come back are not purged.
    """

    def __init__(self, limit: int = 3, window: float = 3600.0,
                 store: KeyValueStore | None = None, clock=time.time):
        self.limit = limit
        self.window = window
        self.store = store if store is not None else MemoryStore()
        self._clock = clock
        self._lock = threading.Lock()

    def _key(self, origin: str) -> str:
        return f"ratelimit:{origin}"

    def allow(self, origin: str) -> bool:
        key = self._key(origin)
        with self._lock:
            now = self._clock()
            stamps = [t for t in self.store.get(key, []) if now - t < self.window]
            if len(stamps) >= self.limit:
                self.store.set(key, stamps)
                log.info(f"  Rate limit hit for {origin} ({len(stamps)}/{self.limit})")
                return False
            stamps.append(now)
            self.store.set(key, stamps)
            return True

    def reset(self, origin: str):
        with self._lock:
            self.store.evict(self._key(origin))
