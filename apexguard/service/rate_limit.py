"""Fixed-window rate limiting.

Each identifier gets a counter that is replaced (not decayed) once its
window has elapsed. A client can therefore spend ``max_attempts`` at the
end of one window and ``max_attempts`` again right after the boundary;
login throttling relies on exactly this behaviour, so it is not a
sliding window or token bucket.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from apexguard.logging import get_logger
from apexguard.storage.models import RateLimitEntry

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    attempts: int
    max_attempts: int
    window_start: float
    reset_time: float

    @property
    def remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    def retry_after(self, now: float) -> int:
        """Whole seconds until the window resets, never less than 1."""
        return max(1, math.ceil(self.reset_time - now))


class RateLimiter:
    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._entries: Dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def hit(
        self, identifier: str, max_attempts: int, window_seconds: float
    ) -> RateLimitDecision:
        """Count one attempt for ``identifier`` and report whether it is allowed."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(identifier)
            if entry is None or now - entry.window_start >= window_seconds:
                entry = RateLimitEntry(attempts=1, window_start=now, window_seconds=window_seconds)
                self._entries[identifier] = entry
                allowed = True
            elif entry.attempts >= max_attempts:
                allowed = False
            else:
                entry.attempts += 1
                allowed = True
            decision = RateLimitDecision(
                allowed=allowed,
                attempts=entry.attempts,
                max_attempts=max_attempts,
                window_start=entry.window_start,
                reset_time=entry.window_start + window_seconds,
            )
        if not allowed:
            logger.info(
                "rate_limit_exceeded",
                identifier=identifier,
                attempts=decision.attempts,
                max_attempts=max_attempts,
            )
        return decision

    def check(self, identifier: str, max_attempts: int, window_seconds: float) -> bool:
        return self.hit(identifier, max_attempts, window_seconds).allowed

    def peek(self, identifier: str) -> Optional[RateLimitEntry]:
        with self._lock:
            entry = self._entries.get(identifier)
            if entry is None:
                return None
            return RateLimitEntry(entry.attempts, entry.window_start, entry.window_seconds)

    def reset(self, identifier: str) -> None:
        with self._lock:
            self._entries.pop(identifier, None)

    def prune(self) -> int:
        """Drop entries whose window has already elapsed."""
        now = self._clock()
        with self._lock:
            stale = [key for key, entry in self._entries.items() if entry.is_stale(now)]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["RateLimitDecision", "RateLimiter"]
