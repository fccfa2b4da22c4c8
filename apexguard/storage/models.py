from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass
class User:
    """Identity as seen through the external user store."""

    id: str
    email: str
    role: str = "user"
    password_hash: Optional[str] = None
    password_salt: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def public_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email, "role": self.role}


@dataclass
class Session:
    """A live login session, addressable only by its current access token.

    Instants are epoch seconds. ``expires_at`` is a hard deadline;
    ``last_activity`` drives the separate inactivity timeout.
    """

    user_id: str
    access_token: str
    refresh_token: str
    expires_at: float
    last_activity: float
    device_id: str

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def is_idle(self, now: float, timeout_seconds: float) -> bool:
        return now - self.last_activity > timeout_seconds

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RateLimitEntry:
    """Counting state for one identifier inside one fixed window."""

    attempts: int
    window_start: float
    window_seconds: float

    def is_stale(self, now: float) -> bool:
        return now - self.window_start >= self.window_seconds

    @property
    def reset_time(self) -> float:
        return self.window_start + self.window_seconds


@dataclass
class RefreshTokenRecord:
    """Durable value stored under ``refresh_token:<token>`` in the keystore."""

    user_id: str
    device_id: Optional[str] = None
    expires_at: Optional[float] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RefreshTokenRecord":
        return cls(
            user_id=str(data["user_id"]),
            device_id=data.get("device_id"),
            expires_at=data.get("expires_at"),
        )


__all__ = ["User", "Session", "RateLimitEntry", "RefreshTokenRecord"]
