"""Portcullis FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() — testable application factory
  - lifespan     — @asynccontextmanager startup/shutdown sequence
  - exception handlers — not-found envelope and the outermost 500 fallback

Request pipeline (outermost first):
  CORSMiddleware → SecurityHeadersMiddleware → HeaderValidationMiddleware →
  RateLimitMiddleware → BodySizeLimitMiddleware → RequestLoggingMiddleware →
  TerminalErrorMiddleware → routers

Startup sequence:
  1. lifecycle.mark_running()  → /api/health/ready turns 200
  2. log "listening"

Shutdown sequence:
  lifecycle.begin_drain() (no-op if a signal already started it) →
  lifecycle.mark_terminated() → log "shutdown_complete"

Run with ``portcullis`` (see portcullis/run.py), or for development:
    uvicorn portcullis.main:create_app --factory
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import AsyncGenerator, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from portcullis.config import Config, load_config, parse_cors_origins
from portcullis.constants import (
    API_KEY_HEADER,
    CORRELATION_ID_HEADER,
    RATE_LIMIT_LIMIT_HEADER,
    RATE_LIMIT_REMAINING_HEADER,
    RATE_LIMIT_RESET_HEADER,
    RETRY_AFTER_HEADER,
    SERVICE_VERSION,
    USER_ID_HEADER,
)
from portcullis.errors import error_response, not_found_response
from portcullis.health import router as health_router
from portcullis.lifecycle import Lifecycle
from portcullis.middleware import (
    BodySizeLimitMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
    TerminalErrorMiddleware,
    original_url,
    terminal_error_response,
)
from portcullis.routes import ROUTE_TABLE, root_router, route_summary
from portcullis.security import install_security_middleware
from portcullis.utils.logger import get_logger

logger = get_logger(__name__)

CORS_METHODS = ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
CORS_ALLOWED_HEADERS = [
    "Content-Type",
    "Authorization",
    API_KEY_HEADER,
    USER_ID_HEADER,
    CORRELATION_ID_HEADER,
]
CORS_EXPOSED_HEADERS = [
    CORRELATION_ID_HEADER,
    RETRY_AFTER_HEADER,
    RATE_LIMIT_LIMIT_HEADER,
    RATE_LIMIT_REMAINING_HEADER,
    RATE_LIMIT_RESET_HEADER,
]


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan — startup and shutdown sequence."""
    config: Config = app.state.config
    lifecycle: Lifecycle = app.state.lifecycle

    lifecycle.mark_running()
    logger.info(
        "listening",
        url=f"http://{config.server.host}:{config.server.port}",
        host=config.server.host,
        port=config.server.port,
    )

    # ── Server runs here ──────────────────────────────────────────────────────
    yield

    # A signal handler normally started the drain already; this covers
    # shutdowns that did not go through one (tests, programmatic stop).
    lifecycle.begin_drain("lifespan")
    lifecycle.mark_terminated()
    logger.info("shutdown_complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app(
    config: Optional[Config] = None,
    clock: Optional[Callable[[], int]] = None,
) -> FastAPI:
    """Create and configure the Portcullis FastAPI application.

    Call this function directly in tests to get an isolated app instance
    (each call owns its own rate-limit table and lifecycle):
        app = create_app(Config.defaults())

    Args:
        config: Loaded configuration. ``None`` loads it via ``load_config()``.
        clock:  Optional epoch-ms clock for the rate limiter (tests).

    Returns:
        Configured FastAPI application with lifespan, routers, and middleware.
    """
    if config is None:
        config = load_config()

    # API schema browsing is a development convenience only.
    _docs_enabled = config.environment == "development"

    application = FastAPI(
        title="Portcullis",
        description="HTTP service scaffold with header authentication and rate limiting",
        version=SERVICE_VERSION,
        lifespan=lifespan,
        docs_url="/docs" if _docs_enabled else None,
        redoc_url=None,
        openapi_url="/openapi.json" if _docs_enabled else None,
    )
    application.state.config = config
    application.state.lifecycle = Lifecycle()

    include_error_details = not config.is_production

    # ── Middleware (last added = outermost) ───────────────────────────────────
    application.add_middleware(TerminalErrorMiddleware, include_details=include_error_details)
    application.add_middleware(RequestLoggingMiddleware)
    application.add_middleware(BodySizeLimitMiddleware)
    install_security_middleware(application, config.security, clock=clock)
    application.add_middleware(SecurityHeadersMiddleware, production=config.is_production)

    cors_origins = parse_cors_origins(config.cors_origins)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if cors_origins == "*" else cors_origins,
        allow_methods=CORS_METHODS,
        allow_headers=CORS_ALLOWED_HEADERS,
        expose_headers=CORS_EXPOSED_HEADERS,
    )

    # ── Routers ───────────────────────────────────────────────────────────────
    application.include_router(health_router)
    application.include_router(root_router)

    logger.debug(
        "routes_registered",
        context="app",
        total_routes=len(ROUTE_TABLE),
        routes=route_summary(),
    )

    # ── Exception handlers ────────────────────────────────────────────────────
    @application.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        # Routing misses carry Starlette's default detail; route-raised 404s keep theirs.
        if exc.status_code == 404 and exc.detail == HTTPStatus.NOT_FOUND.phrase:
            return not_found_response(original_url(request))

        try:
            code = HTTPStatus(exc.status_code).name
        except ValueError:
            code = "HTTP_ERROR"
        return error_response(
            exc.status_code,
            str(exc.detail),
            code,
            headers=getattr(exc, "headers", None),
        )

    # Route exceptions are answered by TerminalErrorMiddleware. This handler sits
    # on Starlette's outermost server-error layer and only sees failures from
    # the middleware itself; it sends nothing if the response already started.
    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> Response:
        return terminal_error_response(request, exc, include_error_details)

    return application
