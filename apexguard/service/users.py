from __future__ import annotations

import threading
import uuid
from typing import Dict, Optional, Protocol

from apexguard.service.errors import ConflictError
from apexguard.storage.models import User


class UserDirectory(Protocol):
    """Contract of the external user store consumed by the security core."""

    def get_user_by_id(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_user(
        self,
        email: str,
        *,
        password_hash: str,
        password_salt: str,
        role: str = "user",
    ) -> User: ...

    def save_password(self, user_id: str, password_hash: str, password_salt: str) -> None: ...


class InMemoryUserDirectory:
    """Dict-backed user store for development and tests."""

    def __init__(self) -> None:
        self._users: Dict[str, User] = {}
        self._by_email: Dict[str, str] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        with self._lock:
            return self._users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._lock:
            user_id = self._by_email.get(self._normalize_email(email))
            return self._users.get(user_id) if user_id else None

    def create_user(
        self,
        email: str,
        *,
        password_hash: str,
        password_salt: str,
        role: str = "user",
    ) -> User:
        normalized = self._normalize_email(email)
        with self._lock:
            if normalized in self._by_email:
                raise ConflictError("Email already registered")
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                role=role,
                password_hash=password_hash,
                password_salt=password_salt,
            )
            self._users[user.id] = user
            self._by_email[normalized] = user.id
            return user

    def save_password(self, user_id: str, password_hash: str, password_salt: str) -> None:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return
            user.password_hash = password_hash
            user.password_salt = password_salt

    def set_role(self, user_id: str, role: str) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            if user is not None:
                user.role = role
            return user


__all__ = ["UserDirectory", "InMemoryUserDirectory"]
