from __future__ import annotations

from apexguard.service.credentials import generate_secure_token

CSRF_TOKEN_BYTES = 24
CSRF_TOKEN_LENGTH = CSRF_TOKEN_BYTES * 2


def generate_csrf_token() -> str:
    return generate_secure_token(CSRF_TOKEN_BYTES)


def validate_csrf_token(token: str | None, session_token: str | None) -> bool:
    """Shape check only: 48-character token plus a non-empty session token.

    The token is not bound to the session.
    """
    if not token or not session_token:
        return False
    return len(token) == CSRF_TOKEN_LENGTH


__all__ = ["CSRF_TOKEN_LENGTH", "generate_csrf_token", "validate_csrf_token"]
