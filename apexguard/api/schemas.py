from __future__ import annotations

import re
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_PASSWORD_LENGTH = 128


class ErrorBody(BaseModel):
    """Body of the ``{"error": ...}`` envelope returned for every failure."""

    model_config = ConfigDict(populate_by_name=True)

    code: str
    message: str
    status_code: int = Field(..., alias="statusCode")
    timestamp: str

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if not re.fullmatch(r"[A-Z][A-Z_]*", value):
            raise ValueError(f"Invalid error code '{value}'")
        return value


class ErrorEnvelope(BaseModel):
    error: ErrorBody


_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _validate_email(value: str) -> str:
    normalized = value.strip().lower()
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if not _EMAIL_PATTERN.match(normalized):
        raise ValueError("invalid email address")
    return normalized


def _validate_password_length(value: str) -> str:
    if not value:
        raise ValueError("password is required")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    device_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_length(value)


class LoginRequest(BaseModel):
    email: str
    password: str
    device_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_length(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)
    device_id: Optional[str] = Field(default=None, max_length=128)


class PasswordChangeRequest(BaseModel):
    current_password: str
    new_password: str

    @field_validator("current_password", "new_password")
    @classmethod
    def _validate_passwords(cls, value: str) -> str:
        return _validate_password_length(value)


class SessionTokens(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: float
    device_id: str


class AuthResponse(BaseModel):
    user: Dict[str, Any]
    session: SessionTokens
    csrf_token: Optional[str] = None
    attempts_remaining: Optional[int] = None


class CsrfResponse(BaseModel):
    csrf_token: str


class MeResponse(BaseModel):
    user_id: str
    device_id: str
    expires_at: float
    last_activity: float


class PasswordChangeResponse(BaseModel):
    sessions_invalidated: int
    score: int


class SessionCountResponse(BaseModel):
    active_sessions: int


class SweepResponse(BaseModel):
    removed: int


__all__ = [
    "AuthResponse",
    "CsrfResponse",
    "ErrorBody",
    "ErrorEnvelope",
    "LoginRequest",
    "MeResponse",
    "PasswordChangeRequest",
    "PasswordChangeResponse",
    "RegisterRequest",
    "SessionCountResponse",
    "SessionTokens",
    "SweepResponse",
    "TokenRefreshRequest",
]
