"""Stateless credential helpers: secure tokens, salted hashes, password scoring.

Password hashing here is a single salted SHA-256 digest, kept for hash
compatibility with credentials already issued by the mobile client. It is
not a memory-hard KDF.
"""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional

from apexguard.config import Settings
from apexguard.logging import get_logger
from apexguard.service.errors import AppError

logger = get_logger(__name__)

SALT_BYTES = 16
SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'
MAX_PASSWORD_SCORE = 5
COMMON_PATTERN_PENALTY = 2

COMMON_PASSWORD_PATTERNS = (
    "123456",
    "password",
    "qwerty",
    "admin",
    "letmein",
    "abc123",
    "iloveyou",
    "monkey",
    "dragon",
    "football",
)

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")
_SPECIAL = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")


@dataclass(frozen=True)
class PasswordPolicy:
    min_length: int = 8
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_numbers: bool = True
    require_special_chars: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "PasswordPolicy":
        return cls(
            min_length=settings.min_password_length,
            require_uppercase=settings.require_uppercase,
            require_lowercase=settings.require_lowercase,
            require_numbers=settings.require_numbers,
            require_special_chars=settings.require_special_chars,
        )


DEFAULT_POLICY = PasswordPolicy()


@dataclass
class PasswordAssessment:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    score: int = 0

    def to_dict(self) -> dict:
        return {"isValid": self.is_valid, "errors": list(self.errors), "score": self.score}


class PasswordHash(NamedTuple):
    hash: str
    salt: str


def generate_secure_token(length: int = 32) -> str:
    """Return ``length`` random bytes as ``2 * length`` lowercase hex characters."""
    try:
        return secrets.token_bytes(length).hex()
    except Exception as exc:
        raise AppError(
            "Failed to generate secure token",
            "TOKEN_GENERATION_ERROR",
            is_operational=False,
        ) from exc


def hash_password(password: str, salt: Optional[str] = None) -> PasswordHash:
    try:
        password_salt = salt or generate_secure_token(SALT_BYTES)
        digest = hashlib.sha256((password + password_salt).encode("utf-8")).hexdigest()
        return PasswordHash(hash=digest, salt=password_salt)
    except AppError:
        raise
    except Exception as exc:
        raise AppError(
            "Failed to hash password", "PASSWORD_HASH_ERROR", is_operational=False
        ) from exc


def verify_password(password: str, password_hash: str, salt: str) -> bool:
    try:
        computed = hash_password(password, salt).hash
    except AppError as exc:
        logger.warning("password_verification_failed", error=exc.message)
        return False
    return hmac.compare_digest(computed, password_hash)


def _check(
    present: bool, required: bool, message: str, errors: List[str]
) -> int:
    if present:
        return 1
    if required:
        errors.append(message)
    return 0


def validate_password_strength(
    password: str, policy: PasswordPolicy = DEFAULT_POLICY
) -> PasswordAssessment:
    errors: List[str] = []
    score = 0

    if len(password) < policy.min_length:
        errors.append(f"Password must be at least {policy.min_length} characters long")
    else:
        score += 1

    score += _check(
        bool(_UPPER.search(password)),
        policy.require_uppercase,
        "Password must contain at least one uppercase letter",
        errors,
    )
    score += _check(
        bool(_LOWER.search(password)),
        policy.require_lowercase,
        "Password must contain at least one lowercase letter",
        errors,
    )
    score += _check(
        bool(_DIGIT.search(password)),
        policy.require_numbers,
        "Password must contain at least one number",
        errors,
    )
    score += _check(
        bool(_SPECIAL.search(password)),
        policy.require_special_chars,
        "Password must contain at least one special character",
        errors,
    )

    lowered = password.lower()
    if any(pattern in lowered for pattern in COMMON_PASSWORD_PATTERNS):
        errors.append("Password contains common patterns that are not secure")
        score = max(0, score - COMMON_PATTERN_PENALTY)

    return PasswordAssessment(
        is_valid=not errors,
        errors=errors,
        score=max(0, min(MAX_PASSWORD_SCORE, score)),
    )


__all__ = [
    "COMMON_PASSWORD_PATTERNS",
    "DEFAULT_POLICY",
    "PasswordAssessment",
    "PasswordHash",
    "PasswordPolicy",
    "generate_secure_token",
    "hash_password",
    "validate_password_strength",
    "verify_password",
]
