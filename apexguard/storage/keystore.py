from __future__ import annotations

from typing import List, Optional, Protocol

from apexguard.config import KeystoreBackend, Settings
from apexguard.logging import get_logger

logger = get_logger(__name__)

REFRESH_TOKEN_PREFIX = "refresh_token:"
DEVICE_ID_KEY = "device_id"


class PlatformKeyValueStore(Protocol):
    """Durable string key/value storage that survives process restarts.

    Stands in for the client's secure storage (native keychain or
    ``localStorage`` on web). Values are plain strings; callers serialize.
    """

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    def remove(self, key: str) -> None: ...

    def pop(self, key: str) -> Optional[str]:
        """Atomically read and delete ``key``."""
        ...

    def keys(self, prefix: str) -> List[str]: ...


def build_keystore(settings: Settings) -> PlatformKeyValueStore:
    """Select the keystore implementation once at startup."""

    if settings.keystore_backend == KeystoreBackend.REDIS:
        from apexguard.storage.redis_cache import RedisKeyValueStore

        store = RedisKeyValueStore(settings.redis_url)
        logger.info("keystore_selected", backend="redis")
        return store

    from apexguard.storage.memory import MemoryKeyValueStore

    logger.info("keystore_selected", backend="memory")
    return MemoryKeyValueStore()


__all__ = [
    "PlatformKeyValueStore",
    "REFRESH_TOKEN_PREFIX",
    "DEVICE_ID_KEY",
    "build_keystore",
]
