from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request

from apexguard.api.error_handling import register_exception_handlers
from apexguard.api.middleware import SecurityMiddleware, build_chains
from apexguard.api.routes import build_router
from apexguard.config import Settings, get_settings
from apexguard.logging import get_logger, set_correlation_id
from apexguard.service.security import SecurityService

logger = get_logger(__name__)

__version__ = "0.1.0"


async def _run_session_sweeper(
    service: SecurityService, middleware: SecurityMiddleware, interval_seconds: float
) -> None:
    """Periodically drop expired sessions and stale rate-limit windows."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await asyncio.to_thread(service.cleanup_expired_sessions)
            pruned = middleware.prune_limiters()
            if removed or pruned:
                logger.info("session_sweeper_ran", sessions_removed=removed, limiters_pruned=pruned)
        except Exception as exc:
            logger.error("session_sweeper_failed", error=str(exc))


def create_app(
    service: Optional[SecurityService] = None,
    settings: Optional[Settings] = None,
    *,
    run_sweeper: bool = True,
) -> FastAPI:
    settings = settings or (service.settings if service else get_settings())
    service = service or SecurityService(settings)
    chains = build_chains(service)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        verify = getattr(service.keystore, "verify_connection", None)
        if verify:
            await asyncio.to_thread(verify)
            logger.info("keystore_connected", backend=type(service.keystore).__name__)
        sweeper: asyncio.Task | None = None
        if run_sweeper:
            sweeper = asyncio.create_task(
                _run_session_sweeper(
                    service, chains.middleware, settings.session_sweep_interval_seconds
                )
            )
            logger.info(
                "session_sweeper_started", interval=settings.session_sweep_interval_seconds
            )

        yield

        if sweeper:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
        for sink in service.audit.sinks:
            close = getattr(sink, "close", None)
            if close:
                close()
        keystore_close = getattr(service.keystore, "close", None)
        if keystore_close:
            keystore_close()
        logger.info("shutdown_complete")

    app = FastAPI(title="apexguard", version=__version__, lifespan=lifespan)
    app.state.security_service = service
    app.state.chains = chains

    @app.middleware("http")
    async def apply_guard_results(request: Request, call_next):
        """Put the security headers on every response and emit the request log.

        Error responses are built by exception handlers from scratch and
        requests rejected before the header guard or served outside a chain
        never ran it, so guard headers are re-applied here.
        """
        response = await call_next(request)
        for name, value in service.get_security_headers().items():
            response.headers.setdefault(name, value)
        ctx = getattr(request.state, "security", None)
        if ctx is None:
            return response
        for name, value in ctx.response_headers.items():
            response.headers.setdefault(name, value)
        if ctx.log_request:
            chains.middleware.log_completed_request(request, ctx, response.status_code)
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        client_request_id = request.headers.get("X-Request-ID")
        correlation_id = set_correlation_id(client_request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(build_router(service, chains))

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "version": __version__,
            "environment": settings.environment.value,
            "active_sessions": service.active_session_count(),
        }

    return app


app = create_app()
