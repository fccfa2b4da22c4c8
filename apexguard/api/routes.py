from __future__ import annotations

import asyncio
import math
from typing import Dict, Optional

from fastapi import APIRouter, Depends

from apexguard.api.middleware import MiddlewareChains, RequestContext
from apexguard.api.schemas import (
    AuthResponse,
    CsrfResponse,
    LoginRequest,
    MeResponse,
    PasswordChangeRequest,
    PasswordChangeResponse,
    RegisterRequest,
    SessionCountResponse,
    SessionTokens,
    SweepResponse,
    TokenRefreshRequest,
)
from apexguard.logging import get_logger
from apexguard.service.errors import AuthenticationError, RateLimitError
from apexguard.service.security import SecurityService
from apexguard.storage.models import Session

logger = get_logger(__name__)


def _tokens(session: Session) -> SessionTokens:
    return SessionTokens(
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        expires_at=session.expires_at,
        device_id=session.device_id,
    )


def build_router(service: SecurityService, chains: MiddlewareChains) -> APIRouter:
    """Wire the auth, account and admin endpoints through the guard chains."""

    router = APIRouter()
    mw = chains.middleware

    # Session issue and teardown write the keystore, which may be redis
    async def _open_session(user_id: str, device_id: Optional[str]) -> Session:
        def issue() -> Session:
            return service.create_session(user_id, device_id or service.get_device_id())

        return await asyncio.to_thread(issue)

    register_chain = chains.auth.extend(
        mw.validate_input(body=RegisterRequest), mw.validate_password_strength()
    )
    login_chain = chains.auth.extend(mw.validate_input(body=LoginRequest))
    refresh_chain = chains.auth.extend(mw.validate_input(body=TokenRefreshRequest))
    password_chain = chains.sensitive.extend(
        mw.validate_input(body=PasswordChangeRequest),
        mw.validate_password_strength("new_password"),
    )

    @router.post("/auth/register", response_model=AuthResponse, status_code=201, tags=["auth"])
    async def register(ctx: RequestContext = Depends(register_chain)):
        """Create an account and sign it in.

        Raises:
            400: If the password does not meet the policy
            409: If the email is already registered
        """
        body: RegisterRequest = ctx.validated["body"]
        hashed = await asyncio.to_thread(service.hash_password, body.password)
        user = service.users.create_user(
            body.email, password_hash=hashed.hash, password_salt=hashed.salt
        )
        session = await _open_session(user.id, body.device_id)
        service.log_security_event("account_created", user.id, {"ip": ctx.client_ip})
        return AuthResponse(
            user=user.public_dict(),
            session=_tokens(session),
            csrf_token=service.generate_csrf_token(),
        )

    @router.post("/auth/login", response_model=AuthResponse, tags=["auth"])
    async def login(ctx: RequestContext = Depends(login_chain)):
        """Authenticate with email and password.

        Every call counts against the per-email login budget, successful or
        not, until the window resets.

        Raises:
            401: If credentials are invalid
            429: If the login budget for this email is spent
        """
        body: LoginRequest = ctx.validated["body"]
        status = service.check_login_attempts(body.email)
        if not status.allowed:
            service.log_security_event(
                "multiple_failed_logins", None, {"email": body.email, "ip": ctx.client_ip}
            )
            retry_after = max(1, math.ceil(status.reset_time - service.now()))
            raise RateLimitError("Too many login attempts", retry_after=retry_after)

        user = service.users.get_user_by_email(body.email)
        verified = False
        if user is not None and user.password_hash and user.password_salt:
            verified = await asyncio.to_thread(
                service.verify_password, body.password, user.password_hash, user.password_salt
            )
        if not verified:
            service.log_security_event(
                "login_attempt",
                user.id if user else None,
                {
                    "success": False,
                    "ip": ctx.client_ip,
                    "attempts_remaining": status.attempts_remaining,
                },
            )
            raise AuthenticationError("Invalid email or password")

        session = await _open_session(user.id, body.device_id)
        service.log_security_event("login_success", user.id, {"ip": ctx.client_ip})
        return AuthResponse(
            user=user.public_dict(),
            session=_tokens(session),
            csrf_token=service.generate_csrf_token(),
            attempts_remaining=status.attempts_remaining,
        )

    @router.post("/auth/refresh", response_model=AuthResponse, tags=["auth"])
    async def refresh(ctx: RequestContext = Depends(refresh_chain)):
        body: TokenRefreshRequest = ctx.validated["body"]
        session = await asyncio.to_thread(
            service.refresh_session, body.refresh_token, body.device_id
        )
        if session is None:
            raise AuthenticationError("Refresh token is invalid or expired; sign in again")
        user = service.users.get_user_by_id(session.user_id)
        return AuthResponse(
            user=user.public_dict() if user else {"id": session.user_id},
            session=_tokens(session),
            csrf_token=service.generate_csrf_token(),
        )

    @router.post("/auth/logout", tags=["auth"])
    async def logout(ctx: RequestContext = Depends(chains.protected)) -> Dict[str, str]:
        await asyncio.to_thread(service.invalidate_session, ctx.session.access_token)
        return {"status": "ok"}

    @router.get("/auth/csrf", response_model=CsrfResponse, tags=["auth"])
    async def csrf_token(ctx: RequestContext = Depends(chains.protected)):
        return CsrfResponse(csrf_token=service.generate_csrf_token())

    @router.get("/me", response_model=MeResponse, tags=["account"])
    async def me(ctx: RequestContext = Depends(chains.protected)):
        session = ctx.session
        return MeResponse(
            user_id=session.user_id,
            device_id=session.device_id,
            expires_at=session.expires_at,
            last_activity=session.last_activity,
        )

    @router.post("/account/password", response_model=PasswordChangeResponse, tags=["account"])
    async def change_password(ctx: RequestContext = Depends(password_chain)):
        """Replace the caller's password and sign out every session they hold.

        Raises:
            400: If the new password does not meet the policy
            401: If the current password is wrong
        """
        body: PasswordChangeRequest = ctx.validated["body"]
        user = service.users.get_user_by_id(ctx.session.user_id)
        verified = False
        if user is not None and user.password_hash and user.password_salt:
            verified = await asyncio.to_thread(
                service.verify_password,
                body.current_password,
                user.password_hash,
                user.password_salt,
            )
        if not verified:
            service.log_security_event(
                "password_change", ctx.session.user_id, {"success": False, "ip": ctx.client_ip}
            )
            raise AuthenticationError("Current password is incorrect")

        hashed = await asyncio.to_thread(service.hash_password, body.new_password)
        service.users.save_password(user.id, hashed.hash, hashed.salt)
        invalidated = await asyncio.to_thread(service.invalidate_all_user_sessions, user.id)
        service.log_security_event(
            "password_change",
            user.id,
            {"success": True, "sessions_invalidated": invalidated},
        )
        return PasswordChangeResponse(
            sessions_invalidated=invalidated, score=ctx.password_strength or 0
        )

    @router.get("/admin/sessions", response_model=SessionCountResponse, tags=["admin"])
    async def admin_sessions(ctx: RequestContext = Depends(chains.admin)):
        return SessionCountResponse(active_sessions=service.active_session_count())

    @router.post("/admin/sweep", response_model=SweepResponse, tags=["admin"])
    async def admin_sweep(ctx: RequestContext = Depends(chains.admin)):
        removed = await asyncio.to_thread(service.cleanup_expired_sessions)
        mw.prune_limiters()
        logger.info("admin_sweep", user_id=ctx.user_id, removed=removed)
        return SweepResponse(removed=removed)

    return router


__all__ = ["build_router"]
