from __future__ import annotations

from typing import List, Optional

from redis import Redis


class RedisKeyValueStore:
    """Redis-backed keystore for refresh tokens and the device id.

    Uses ``GETDEL`` for one-time reads so a refresh token cannot be
    redeemed twice, even by two processes racing on the same token.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        namespace: str = "apexguard:",
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    def get(self, key: str) -> Optional[str]:
        return self.client.get(self._key(key))

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        if ttl_seconds is not None and ttl_seconds > 0:
            self.client.set(self._key(key), value, ex=int(ttl_seconds))
        else:
            self.client.set(self._key(key), value)

    def remove(self, key: str) -> None:
        self.client.delete(self._key(key))

    def pop(self, key: str) -> Optional[str]:
        return self.client.getdel(self._key(key))

    def keys(self, prefix: str) -> List[str]:
        strip = len(self.namespace)
        return [
            raw[strip:]
            for raw in self.client.scan_iter(match=f"{self._key(prefix)}*", count=500)
        ]

    def close(self) -> None:
        self.client.close()


__all__ = ["RedisKeyValueStore"]
