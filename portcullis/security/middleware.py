"""Two-stage security middleware for Portcullis.

Every inbound request passes through, in order:

  1. ``HeaderValidationMiddleware`` — correlation id, API key, user id checks
     (see ``portcullis.security.headers``). Echoes ``x-correlation-id`` back
     on every response once the id is present: API key and user id rejections,
     429s from stage 2 and everything the routes return.
  2. ``RateLimitMiddleware`` — per-key fixed-window quota
     (see ``portcullis.security.limiter``). Adds ``X-RateLimit-*`` headers on
     admission, ``Retry-After`` on rejection.

Both stages skip OPTIONS requests and ``/api/health*`` checks. Failures are
terminal responses built with the uniform error envelope; nothing raises past
the middleware boundary.

Registration (in create_app() in portcullis/main.py):
    install_security_middleware(application, config.security)

NOTE: In Starlette, the LAST-added middleware is OUTERMOST (runs first), so the
rate limiter is added before the header validator.
"""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from portcullis.config import SecurityConfig
from portcullis.constants import CORRELATION_ID_HEADER, USER_ID_HEADER
from portcullis.errors import ErrorCode, error_response
from portcullis.security.headers import is_exempt, validate_headers
from portcullis.security.limiter import FixedWindowRateLimiter
from portcullis.utils.logger import get_logger

logger = get_logger(__name__)

UNKNOWN_KEY = "unknown"


def rate_limit_key(request: Request, key_by_user: bool) -> str:
    """Quota key for a request.

    With API key auth enabled the caller is identified by ``x-user-id``;
    otherwise by client IP. Either falls back to ``"unknown"``.
    """
    if key_by_user:
        return request.headers.get(USER_ID_HEADER) or UNKNOWN_KEY
    return request.client.host if request.client and request.client.host else UNKNOWN_KEY


class HeaderValidationMiddleware(BaseHTTPMiddleware):
    """Reject requests missing required headers or presenting a bad API key."""

    def __init__(self, app: ASGIApp, api_key_secret: Optional[str] = None) -> None:
        super().__init__(app)
        self.api_key_secret = api_key_secret

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        if is_exempt(request.method, request.url.path):
            return await call_next(request)

        rejection = validate_headers(
            request.method,
            request.url.path,
            request.headers,
            self.api_key_secret,
        )
        if rejection is not None:
            # Never log the submitted key.
            logger.warning(
                "request_rejected",
                reason=rejection.reason,
                status=rejection.status,
                method=request.method,
                path=request.url.path,
                correlation_id=request.headers.get(CORRELATION_ID_HEADER),
            )
            response = rejection.to_response()
            if rejection.header != CORRELATION_ID_HEADER:
                response.headers[CORRELATION_ID_HEADER] = request.headers[CORRELATION_ID_HEADER]
            return response

        response = await call_next(request)
        response.headers[CORRELATION_ID_HEADER] = request.headers[CORRELATION_ID_HEADER]
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Enforce the per-key request quota held by a ``FixedWindowRateLimiter``."""

    def __init__(
        self,
        app: ASGIApp,
        limiter: FixedWindowRateLimiter,
        key_by_user: bool = False,
    ) -> None:
        super().__init__(app)
        self.limiter = limiter
        self.key_by_user = key_by_user

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        if is_exempt(request.method, request.url.path):
            return await call_next(request)

        key = rate_limit_key(request, self.key_by_user)
        decision = self.limiter.hit(key)

        if not decision.allowed:
            logger.warning(
                "rate_limited",
                key=key,
                method=request.method,
                path=request.url.path,
                retry_after_s=decision.retry_after_s,
                correlation_id=request.headers.get(CORRELATION_ID_HEADER),
            )
            return error_response(
                429,
                "Rate limit exceeded",
                ErrorCode.RATE_LIMITED,
                details={
                    "windowMs": self.limiter.window_ms,
                    "maxRequests": self.limiter.max_requests,
                    "retryAfterSeconds": decision.retry_after_s,
                },
                headers=decision.headers(),
            )

        response = await call_next(request)
        for name, value in decision.headers().items():
            response.headers[name] = value
        return response


def install_security_middleware(
    application: FastAPI,
    security: SecurityConfig,
    clock: Optional[Callable[[], int]] = None,
) -> FixedWindowRateLimiter:
    """Register both security stages on ``application``.

    The limiter is created here, owned by this application instance, and also
    exposed as ``application.state.rate_limiter``.

    Args:
        application: FastAPI app to register on.
        security:    Immutable security settings.
        clock:       Optional epoch-ms clock for the limiter (tests).

    Returns:
        The limiter instance backing ``RateLimitMiddleware``.
    """
    limiter = FixedWindowRateLimiter(
        window_ms=security.window_ms,
        max_requests=security.max_requests,
        clock=clock,
    )
    application.add_middleware(
        RateLimitMiddleware,
        limiter=limiter,
        key_by_user=security.api_key_required,
    )
    application.add_middleware(
        HeaderValidationMiddleware,
        api_key_secret=security.api_key_secret,
    )
    application.state.rate_limiter = limiter
    return limiter
