from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional


class FreshnessCache:
    """Per-key "last fetched" bookkeeping with a fixed time-to-live.

    The clock is injected so callers and tests never depend on wall time.
    Only timestamps live here; the cached payloads stay with their owner.
    """

    def __init__(
        self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic
    ) -> None:
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be non-negative")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._stamps: Dict[str, float] = {}
        self._lock = threading.Lock()

    def now(self) -> float:
        return self._clock()

    def is_valid(self, key: str, now: Optional[float] = None) -> bool:
        current = self._clock() if now is None else now
        with self._lock:
            stamp = self._stamps.get(key)
        if stamp is None:
            return False
        return current - stamp < self.ttl_seconds

    def mark(self, key: str, now: Optional[float] = None) -> None:
        current = self._clock() if now is None else now
        with self._lock:
            self._stamps[key] = current

    def invalidate(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key is None:
                self._stamps.clear()
            else:
                self._stamps.pop(key, None)
