from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from apexguard.config import Settings
from apexguard.logging import get_logger
from apexguard.service import credentials, csrf
from apexguard.service.audit import AuditLog, build_sinks
from apexguard.service.credentials import PasswordAssessment, PasswordHash, PasswordPolicy
from apexguard.service.rate_limit import RateLimiter
from apexguard.service.sanitize import sanitize_input
from apexguard.service.users import InMemoryUserDirectory, UserDirectory
from apexguard.storage.keystore import (
    DEVICE_ID_KEY,
    REFRESH_TOKEN_PREFIX,
    PlatformKeyValueStore,
    build_keystore,
)
from apexguard.storage.memory import SessionStore
from apexguard.storage.models import RefreshTokenRecord, Session

logger = get_logger(__name__)

SECURITY_HEADERS: Dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Content-Security-Policy": "default-src 'self'",
}

LOGIN_LIMIT_PREFIX = "login:"


@dataclass(frozen=True)
class LoginAttemptStatus:
    allowed: bool
    attempts_remaining: int
    reset_time: float


class SecurityService:
    """Session lifecycle, rate limiting and audit for one process.

    Sessions live in memory keyed by access token; refresh tokens are also
    written to the durable keystore so a client can rotate its pair after
    the in-memory session is gone. Construct one per application and pass
    it to whatever needs it.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        keystore: Optional[PlatformKeyValueStore] = None,
        audit: Optional[AuditLog] = None,
        users: Optional[UserDirectory] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self._clock = clock
        self.keystore: PlatformKeyValueStore = keystore or build_keystore(settings)
        self.audit = audit or AuditLog(settings, build_sinks(settings), clock=clock)
        self.users: UserDirectory = users or InMemoryUserDirectory()
        self.sessions = SessionStore()
        self.rate_limiter = RateLimiter(clock=clock)
        self.password_policy = PasswordPolicy.from_settings(settings)
        self._device_lock = threading.Lock()

    def now(self) -> float:
        return self._clock()

    # ------------------------------------------------------------------
    # Sessions

    def create_session(self, user_id: str, device_id: str) -> Session:
        now = self._clock()
        session = Session(
            user_id=user_id,
            access_token=credentials.generate_secure_token(),
            refresh_token=credentials.generate_secure_token(),
            expires_at=now + self.settings.access_token_expiry_seconds,
            last_activity=now,
            device_id=device_id,
        )
        self.sessions.put(session)
        record = RefreshTokenRecord(
            user_id=user_id,
            device_id=device_id,
            expires_at=now + self.settings.refresh_token_expiry_seconds,
        )
        self.keystore.set(
            REFRESH_TOKEN_PREFIX + session.refresh_token,
            json.dumps(record.to_dict()),
            ttl_seconds=self.settings.refresh_token_expiry_seconds,
        )
        logger.info("session_created", user_id=user_id, device_id=device_id)
        return session

    def validate_session(self, access_token: Optional[str]) -> Optional[Session]:
        """Return the live session for ``access_token`` and mark it active.

        Expired or idle sessions are evicted on sight. Their refresh record
        is left in place so the client can still rotate.
        """
        if not access_token:
            return None
        now = self._clock()
        with self.sessions.locked():
            session = self.sessions.get(access_token)
            if session is None:
                return None
            if session.is_expired(now):
                reason = "expired"
            elif session.is_idle(now, self.settings.session_timeout_seconds):
                reason = "inactive"
            else:
                session.last_activity = now
                return session
            self.sessions.pop(access_token)
        self.audit.log_security_event(
            "session_expiry", session.user_id, {"reason": reason, "device_id": session.device_id}
        )
        return None

    def refresh_session(
        self, refresh_token: Optional[str], device_id: Optional[str] = None
    ) -> Optional[Session]:
        """Exchange a refresh token for a new pair; the token works once."""
        if not refresh_token:
            return None
        raw = self.keystore.pop(REFRESH_TOKEN_PREFIX + refresh_token)
        if raw is None:
            logger.info("refresh_token_rejected", reason="unknown")
            return None
        # the old pair is retired whether or not the record is still usable
        self.sessions.pop_by_refresh(refresh_token)
        record = self._decode_refresh_record(raw)
        if record is None:
            return None
        if record.is_expired(self._clock()):
            logger.info("refresh_token_rejected", reason="expired", user_id=record.user_id)
            return None
        return self.create_session(
            record.user_id, device_id or record.device_id or self.get_device_id()
        )

    def invalidate_session(self, access_token: Optional[str]) -> None:
        if not access_token:
            return
        session = self.sessions.pop(access_token)
        if session is None:
            return
        self.keystore.remove(REFRESH_TOKEN_PREFIX + session.refresh_token)
        logger.info("session_invalidated", user_id=session.user_id)

    def invalidate_all_user_sessions(self, user_id: str) -> int:
        removed = self.sessions.pop_where(lambda s: s.user_id == user_id)
        for session in removed:
            self.keystore.remove(REFRESH_TOKEN_PREFIX + session.refresh_token)

        # refresh records whose session was already evicted or swept
        orphans = 0
        for key in self.keystore.keys(REFRESH_TOKEN_PREFIX):
            raw = self.keystore.get(key)
            if raw is None:
                continue
            record = self._decode_refresh_record(raw)
            if record is not None and record.user_id == user_id:
                self.keystore.remove(key)
                orphans += 1

        logger.info(
            "user_sessions_invalidated",
            user_id=user_id,
            sessions=len(removed),
            orphaned_refresh_tokens=orphans,
        )
        return len(removed)

    def touch_session(self, session: Session) -> bool:
        """Apply the inactivity timeout to ``session``.

        Returns False and invalidates the session (refresh record included)
        when it has been idle too long; otherwise records activity.
        """
        now = self._clock()
        with self.sessions.locked():
            current = self.sessions.get(session.access_token)
            if current is None:
                return False
            if not current.is_idle(now, self.settings.session_timeout_seconds):
                current.last_activity = now
                return True
            self.invalidate_session(session.access_token)
        self.audit.log_security_event(
            "session_expiry", session.user_id, {"reason": "inactive", "device_id": session.device_id}
        )
        return False

    def cleanup_expired_sessions(self) -> int:
        now = self._clock()
        removed = self.sessions.pop_where(lambda s: s.is_expired(now))
        pruned = self.rate_limiter.prune()
        if removed or pruned:
            logger.info("session_sweep", sessions_removed=len(removed), rate_limits_pruned=pruned)
        return len(removed)

    def active_session_count(self, user_id: Optional[str] = None) -> int:
        if user_id is None:
            return self.sessions.count()
        return self.sessions.count(lambda s: s.user_id == user_id)

    def get_device_id(self) -> str:
        with self._device_lock:
            device_id = self.keystore.get(DEVICE_ID_KEY)
            if device_id:
                return device_id
            device_id = credentials.generate_secure_token()
            self.keystore.set(DEVICE_ID_KEY, device_id)
            logger.info("device_id_generated")
            return device_id

    def _decode_refresh_record(self, raw: str) -> Optional[RefreshTokenRecord]:
        try:
            return RefreshTokenRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("refresh_record_invalid", error=str(exc))
            return None

    # ------------------------------------------------------------------
    # Rate limiting

    def check_rate_limit(
        self,
        identifier: str,
        max_attempts: Optional[int] = None,
        window_seconds: Optional[float] = None,
    ) -> bool:
        if max_attempts is None:
            max_attempts = self.settings.default_rate_limit_attempts
        if window_seconds is None:
            window_seconds = self.settings.rate_limit_window_seconds
        return self.rate_limiter.check(identifier, max_attempts, window_seconds)

    def check_login_attempts(self, email: str) -> LoginAttemptStatus:
        decision = self.rate_limiter.hit(
            LOGIN_LIMIT_PREFIX + email,
            self.settings.max_login_attempts,
            self.settings.login_attempt_window_seconds,
        )
        return LoginAttemptStatus(
            allowed=decision.allowed,
            attempts_remaining=decision.remaining,
            reset_time=decision.reset_time,
        )

    # ------------------------------------------------------------------
    # Credential, CSRF and sanitization helpers

    def generate_secure_token(self, length: int = 32) -> str:
        return credentials.generate_secure_token(length)

    def hash_password(self, password: str, salt: Optional[str] = None) -> PasswordHash:
        return credentials.hash_password(password, salt)

    def verify_password(self, password: str, password_hash: str, salt: str) -> bool:
        return credentials.verify_password(password, password_hash, salt)

    def validate_password_strength(self, password: str) -> PasswordAssessment:
        return credentials.validate_password_strength(password, self.password_policy)

    def generate_csrf_token(self) -> str:
        return csrf.generate_csrf_token()

    def validate_csrf_token(self, token: Optional[str], session_token: Optional[str]) -> bool:
        return csrf.validate_csrf_token(token, session_token)

    def sanitize_input(self, text: str) -> str:
        return sanitize_input(text)

    def get_security_headers(self) -> Dict[str, str]:
        return dict(SECURITY_HEADERS)

    def log_security_event(
        self,
        event: str,
        user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        return self.audit.log_security_event(event, user_id, details)


__all__ = ["LoginAttemptStatus", "SECURITY_HEADERS", "SecurityService"]
