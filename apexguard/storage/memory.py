from __future__ import annotations

import contextlib
import threading
import time
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from apexguard.storage.models import Session


class SessionStore:
    """In-memory session map keyed by access token.

    A second map resolves a refresh token to the access token it was issued
    with, so rotation can drop the old session without a scan. Both maps are
    guarded by one re-entrant lock; callers that need validate-then-mutate
    semantics hold ``locked()`` across the whole sequence.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._by_refresh: Dict[str, str] = {}
        self._lock = threading.RLock()

    @contextlib.contextmanager
    def locked(self) -> Iterator[None]:
        with self._lock:
            yield

    def put(self, session: Session) -> Session:
        with self._lock:
            self._sessions[session.access_token] = session
            self._by_refresh[session.refresh_token] = session.access_token
            return session

    def get(self, access_token: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(access_token)

    def pop(self, access_token: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.pop(access_token, None)
            if session is not None:
                self._by_refresh.pop(session.refresh_token, None)
            return session

    def pop_by_refresh(self, refresh_token: str) -> Optional[Session]:
        with self._lock:
            access_token = self._by_refresh.pop(refresh_token, None)
            if access_token is None:
                return None
            return self._sessions.pop(access_token, None)

    def pop_where(self, predicate: Callable[[Session], bool]) -> List[Session]:
        with self._lock:
            doomed = [s for s in self._sessions.values() if predicate(s)]
            for session in doomed:
                self._sessions.pop(session.access_token, None)
                self._by_refresh.pop(session.refresh_token, None)
            return doomed

    def count(self, predicate: Optional[Callable[[Session], bool]] = None) -> int:
        with self._lock:
            if predicate is None:
                return len(self._sessions)
            return sum(1 for s in self._sessions.values() if predicate(s))

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._by_refresh.clear()


class MemoryKeyValueStore:
    """Process-local keystore; the web ``localStorage`` equivalent."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _live(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and self._clock() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        with self._lock:
            self._data[key] = (value, expires_at)

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def pop(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live(key)
            self._data.pop(key, None)
            return value

    def keys(self, prefix: str) -> List[str]:
        with self._lock:
            return [k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None]


__all__ = ["SessionStore", "MemoryKeyValueStore"]
