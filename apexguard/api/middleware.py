"""Request guards and the named chains that compose them.

A guard is an async callable ``(request, response, ctx)``. It returns to let
the request continue, raises an ``AppError`` to stop it, or records what it
learned on the ``RequestContext``. ``MiddlewareChain`` runs guards in order as
a FastAPI dependency and hands the finished context to the route.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Type

from fastapi import Request, Response
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from apexguard.logging import get_logger
from apexguard.service.errors import (
    AppError,
    AuthenticationError,
    AuthorizationError,
    RateLimitError,
    ValidationError,
)
from apexguard.service.rate_limit import RateLimiter
from apexguard.service.sanitize import sanitize_value
from apexguard.service.security import SecurityService
from apexguard.storage.models import Session

logger = get_logger(__name__)

_CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


@dataclass
class RequestContext:
    client_ip: str
    method: str
    path: str
    body: Any = None
    query: Dict[str, Any] = field(default_factory=dict)
    user: Optional[Dict[str, Any]] = None
    session: Optional[Session] = None
    password_strength: Optional[int] = None
    validated: Dict[str, BaseModel] = field(default_factory=dict)
    response_headers: Dict[str, str] = field(default_factory=dict)
    log_request: bool = False
    started_at: float = field(default_factory=time.perf_counter)

    def set_header(self, response: Response, name: str, value: str) -> None:
        """Set a header on the success response and remember it for error responses."""
        response.headers[name] = value
        self.response_headers[name] = value

    @property
    def user_id(self) -> Optional[str]:
        return self.user.get("id") if self.user else None


Guard = Callable[[Request, Response, RequestContext], Awaitable[None]]


def client_ip(request: Request, trust_forwarded_for: bool = False) -> str:
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _first_error(exc: PydanticValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


class SecurityMiddleware:
    """Factory for guards bound to one ``SecurityService``."""

    def __init__(self, service: SecurityService) -> None:
        self.service = service
        self._limiters: List[RateLimiter] = []

    def rate_limit(self, max_requests: int = 100, window_seconds: float = 60) -> Guard:
        # each guard instance counts independently
        limiter = RateLimiter(clock=self.service.now)
        self._limiters.append(limiter)

        async def rate_limit_guard(request: Request, response: Response, ctx: RequestContext) -> None:
            decision = limiter.hit(ctx.client_ip, max_requests, window_seconds)
            if decision.allowed:
                return
            retry_after = decision.retry_after(self.service.now())
            ctx.set_header(response, "Retry-After", str(retry_after))
            raise RateLimitError("Rate limit exceeded", retry_after=retry_after)

        return rate_limit_guard

    def prune_limiters(self) -> int:
        return sum(limiter.prune() for limiter in self._limiters)

    def security_headers(self) -> Guard:
        async def security_headers_guard(
            request: Request, response: Response, ctx: RequestContext
        ) -> None:
            for name, value in self.service.get_security_headers().items():
                ctx.set_header(response, name, value)

        return security_headers_guard

    def authenticate(self) -> Guard:
        async def authenticate_guard(request: Request, response: Response, ctx: RequestContext) -> None:
            header = request.headers.get("authorization") or ""
            if not header.startswith("Bearer "):
                raise AuthenticationError("No authentication token provided")
            session = self.service.validate_session(header[len("Bearer "):])
            if session is None:
                raise AuthenticationError("Invalid or expired token")
            ctx.user = {"id": session.user_id}
            ctx.session = session

        return authenticate_guard

    def authorize(self, required_role: Optional[str] = None) -> Guard:
        async def authorize_guard(request: Request, response: Response, ctx: RequestContext) -> None:
            if not ctx.user:
                raise AuthenticationError("User not authenticated")
            if not required_role:
                return
            user = self.service.users.get_user_by_id(ctx.user["id"])
            if user is None or user.role != required_role:
                logger.warning(
                    "authorization_denied",
                    user_id=ctx.user["id"],
                    required_role=required_role,
                    path=ctx.path,
                )
                raise AuthorizationError("Insufficient permissions")
            ctx.user["role"] = user.role

        return authorize_guard

    def session_timeout(self) -> Guard:
        async def session_timeout_guard(
            request: Request, response: Response, ctx: RequestContext
        ) -> None:
            if ctx.session is None:
                return
            if not await asyncio.to_thread(self.service.touch_session, ctx.session):
                raise AuthenticationError("Session expired due to inactivity")

        return session_timeout_guard

    def csrf_protection(self) -> Guard:
        async def csrf_guard(request: Request, response: Response, ctx: RequestContext) -> None:
            if ctx.method in _CSRF_SAFE_METHODS:
                return
            token = request.headers.get("x-csrf-token")
            session_token = ctx.session.access_token if ctx.session else None
            if not token or not session_token:
                raise AppError("CSRF token missing", "CSRF_TOKEN_MISSING", 403)
            if not self.service.validate_csrf_token(token, session_token):
                raise AppError("Invalid CSRF token", "CSRF_TOKEN_INVALID", 403)

        return csrf_guard

    def device_verification(self) -> Guard:
        async def device_guard(request: Request, response: Response, ctx: RequestContext) -> None:
            device_id = request.headers.get("x-device-id")
            session = ctx.session
            if not device_id or session is None:
                raise AuthenticationError("Device verification failed")
            if session.device_id != device_id:
                self.service.log_security_event(
                    "device_mismatch",
                    session.user_id,
                    {
                        "expected_device_id": session.device_id,
                        "provided_device_id": device_id,
                    },
                )
                raise AuthenticationError("Device verification failed")

        return device_guard

    def sanitize_input(self) -> Guard:
        async def sanitize_guard(request: Request, response: Response, ctx: RequestContext) -> None:
            if isinstance(ctx.body, (dict, list)):
                ctx.body = sanitize_value(ctx.body)
            if ctx.query:
                ctx.query = sanitize_value(ctx.query)

        return sanitize_guard

    def validate_password_strength(self, field_name: str = "password") -> Guard:
        async def password_guard(request: Request, response: Response, ctx: RequestContext) -> None:
            password = ctx.body.get(field_name) if isinstance(ctx.body, dict) else None
            if not isinstance(password, str) or not password:
                return
            assessment = self.service.validate_password_strength(password)
            if not assessment.is_valid:
                raise AppError(
                    f"Password requirements not met: {', '.join(assessment.errors)}",
                    "WEAK_PASSWORD",
                    400,
                )
            ctx.password_strength = assessment.score

        return password_guard

    def validate_input(
        self,
        body: Optional[Type[BaseModel]] = None,
        query: Optional[Type[BaseModel]] = None,
    ) -> Guard:
        async def validate_input_guard(
            request: Request, response: Response, ctx: RequestContext
        ) -> None:
            if body is not None:
                try:
                    ctx.validated["body"] = body.model_validate(
                        ctx.body if ctx.body is not None else {}
                    )
                except PydanticValidationError as exc:
                    raise ValidationError(f"Invalid input: {_first_error(exc)}") from exc
            if query is not None:
                try:
                    ctx.validated["query"] = query.model_validate(ctx.query)
                except PydanticValidationError as exc:
                    raise ValidationError(f"Invalid query: {_first_error(exc)}") from exc

        return validate_input_guard

    def ip_allowlist(self, allowed_ips: Iterable[str]) -> Guard:
        allowed = frozenset(allowed_ips)

        async def ip_allowlist_guard(
            request: Request, response: Response, ctx: RequestContext
        ) -> None:
            if ctx.client_ip in allowed:
                return
            self.service.log_security_event(
                "unauthorized_ip_access",
                ctx.user_id,
                {"client_ip": ctx.client_ip, "url": ctx.path},
            )
            raise AppError("Access denied from this IP", "IP_NOT_ALLOWED", 403)

        return ip_allowlist_guard

    def request_logger(self) -> Guard:
        async def request_logger_guard(
            request: Request, response: Response, ctx: RequestContext
        ) -> None:
            ctx.log_request = True

        return request_logger_guard

    def log_completed_request(
        self, request: Request, ctx: RequestContext, status_code: int
    ) -> Dict[str, Any]:
        """Emit ``api_request`` once the response status is known."""
        data = {
            "method": ctx.method,
            "url": str(request.url.path),
            "status_code": status_code,
            "duration_ms": round((time.perf_counter() - ctx.started_at) * 1000, 2),
            "user_agent": request.headers.get("user-agent"),
            "ip": ctx.client_ip,
            "user_id": ctx.user_id,
        }
        logger.info("api_request", **data)
        if status_code >= 400 or "/auth/" in ctx.path:
            self.service.log_security_event("api_request", ctx.user_id, data)
        return data


class MiddlewareChain:
    """An ordered list of guards usable as ``Depends(chain)``."""

    def __init__(
        self,
        name: str,
        guards: Sequence[Guard],
        *,
        trust_forwarded_for: bool = False,
    ) -> None:
        self.name = name
        self.guards: List[Guard] = list(guards)
        self.trust_forwarded_for = trust_forwarded_for

    def extend(self, *guards: Guard) -> "MiddlewareChain":
        return MiddlewareChain(
            self.name,
            [*self.guards, *guards],
            trust_forwarded_for=self.trust_forwarded_for,
        )

    async def _context(self, request: Request) -> RequestContext:
        ctx = RequestContext(
            client_ip=client_ip(request, self.trust_forwarded_for),
            method=request.method.upper(),
            path=request.url.path,
            query=dict(request.query_params),
        )
        raw = await request.body()
        if raw:
            try:
                ctx.body = json.loads(raw)
            except ValueError as exc:
                raise ValidationError("Invalid JSON body") from exc
        return ctx

    async def __call__(self, request: Request, response: Response) -> RequestContext:
        ctx = await self._context(request)
        request.state.security = ctx
        for guard in self.guards:
            await guard(request, response, ctx)
        return ctx


@dataclass
class MiddlewareChains:
    middleware: SecurityMiddleware
    auth: MiddlewareChain
    protected: MiddlewareChain
    admin: MiddlewareChain
    sensitive: MiddlewareChain


def build_chains(service: SecurityService) -> MiddlewareChains:
    mw = SecurityMiddleware(service)
    trust = service.settings.trust_forwarded_for

    def chain(name: str, *guards: Guard) -> MiddlewareChain:
        return MiddlewareChain(name, guards, trust_forwarded_for=trust)

    return MiddlewareChains(
        middleware=mw,
        auth=chain(
            "auth",
            mw.rate_limit(10, 60),
            mw.security_headers(),
            mw.sanitize_input(),
            mw.request_logger(),
        ),
        protected=chain(
            "protected",
            mw.rate_limit(100, 60),
            mw.security_headers(),
            mw.authenticate(),
            mw.session_timeout(),
            mw.csrf_protection(),
            mw.sanitize_input(),
            mw.request_logger(),
        ),
        admin=chain(
            "admin",
            mw.rate_limit(50, 60),
            mw.security_headers(),
            mw.authenticate(),
            mw.authorize("admin"),
            mw.device_verification(),
            mw.session_timeout(),
            mw.csrf_protection(),
            mw.sanitize_input(),
            mw.request_logger(),
        ),
        sensitive=chain(
            "sensitive",
            mw.rate_limit(5, 300),
            mw.security_headers(),
            mw.authenticate(),
            mw.device_verification(),
            mw.session_timeout(),
            mw.csrf_protection(),
            mw.sanitize_input(),
            mw.request_logger(),
        ),
    )


__all__ = [
    "Guard",
    "MiddlewareChain",
    "MiddlewareChains",
    "RequestContext",
    "SecurityMiddleware",
    "build_chains",
    "client_ip",
]
