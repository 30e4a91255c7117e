"""Request pipeline middleware for Portcullis.

  - SecurityHeadersMiddleware — hardening headers on every response
  - BodySizeLimitMiddleware   — 10 MB request body cap (HTTP 413)
  - RequestLoggingMiddleware  — one ``http_request`` log line per handled request
  - TerminalErrorMiddleware   — route exceptions become the 500 error envelope

The security pipeline proper (header validation + rate limiting) lives in
``portcullis.security``.
"""

from __future__ import annotations

import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from portcullis.constants import (
    CORRELATION_ID_HEADER,
    MAX_REQUEST_BODY_BYTES,
    USER_ID_HEADER,
)
from portcullis.errors import ErrorCode, error_response, internal_error_response
from portcullis.utils.logger import correlation_id_var, get_logger, serialize_error

logger = get_logger(__name__)


def original_url(request: Request) -> str:
    """Path plus query string, as the client sent it."""
    query = request.url.query
    return f"{request.url.path}?{query}" if query else request.url.path


# ─── Security headers ─────────────────────────────────────────────────────────

_SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Permitted-Cross-Domain-Policies": "none",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Content-Security-Policy": (
        "default-src 'self'; base-uri 'self'; frame-ancestors 'none'; "
        "object-src 'none'; form-action 'self'"
    ),
}

_HSTS_VALUE = "max-age=15552000; includeSubDomains"


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add hardening headers to all HTTP responses.

    ``Strict-Transport-Security`` is only sent in production, where the
    service is expected to sit behind TLS.
    """

    def __init__(self, app: ASGIApp, production: bool = False) -> None:
        super().__init__(app)
        self.production = production

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        response = await call_next(request)
        for name, value in _SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        if self.production:
            response.headers.setdefault("Strict-Transport-Security", _HSTS_VALUE)
        return response


# ─── Body size limit ──────────────────────────────────────────────────────────


class BodySizeLimitMiddleware(BaseHTTPMiddleware):
    """Starlette middleware enforcing a request body hard cap.

    Two-phase check:
      1. Content-Length fast path: reject immediately on an oversized header value.
      2. Chunked slow path: accumulate the body with a rolling cap; reject as
         soon as the cap is exceeded.

    Responses:
      - Content-Length > limit               → HTTP 413 PAYLOAD_TOO_LARGE
      - Content-Length not an integer or < 0 → HTTP 400 INVALID_CONTENT_LENGTH
      - No Content-Length, body > limit      → HTTP 413 PAYLOAD_TOO_LARGE
      - Otherwise                            → delegated to the next handler
    """

    def __init__(self, app: ASGIApp, max_body_bytes: int = MAX_REQUEST_BODY_BYTES) -> None:
        super().__init__(app)
        self.max_body_bytes = max_body_bytes

    def _too_large(self) -> Response:
        return error_response(
            413,
            "Request body too large",
            ErrorCode.PAYLOAD_TOO_LARGE,
            details={"limitBytes": self.max_body_bytes},
        )

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        content_length_header = request.headers.get("content-length")

        # ── Phase 1: Content-Length fast path ─────────────────────────────────
        if content_length_header is not None:
            try:
                declared_size = int(content_length_header)
                if declared_size < 0:
                    raise ValueError(content_length_header)
            except ValueError:
                logger.warning(
                    "Invalid Content-Length header",
                    value=content_length_header,
                    path=request.url.path,
                )
                return error_response(
                    400,
                    "Invalid Content-Length header",
                    ErrorCode.INVALID_CONTENT_LENGTH,
                )

            if declared_size > self.max_body_bytes:
                logger.warning(
                    "Request body too large (Content-Length)",
                    declared_size=declared_size,
                    limit=self.max_body_bytes,
                    path=request.url.path,
                )
                return self._too_large()

            return await call_next(request)

        # ── Phase 2: Chunked or no Content-Length, rolling cap ────────────────
        body_chunks: list[bytes] = []
        total_size: int = 0

        async for chunk in request.stream():
            total_size += len(chunk)
            if total_size > self.max_body_bytes:
                logger.warning(
                    "Request body too large (chunked)",
                    accumulated_size=total_size,
                    limit=self.max_body_bytes,
                    path=request.url.path,
                )
                return self._too_large()
            body_chunks.append(chunk)

        # Starlette's Request.body() checks _body first, so route handlers read
        # the cached bytes instead of the consumed stream.
        request._body = b"".join(body_chunks)  # type: ignore[attr-defined]

        return await call_next(request)


# ─── Request logging ──────────────────────────────────────────────────────────


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log ``http_request`` once the response for a request is produced.

    The correlation id is bound to ``correlation_id_var`` for the duration of
    the request so every log line emitted by route code carries it. A handler
    that raises is logged with status 500 before the exception propagates to
    the terminal error handler.
    """

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        start = time.perf_counter()
        correlation_id = request.headers.get(CORRELATION_ID_HEADER)
        token = correlation_id_var.set(correlation_id)
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            logger.info(
                "http_request",
                method=request.method,
                path=original_url(request),
                status=status,
                duration_ms=round((time.perf_counter() - start) * 1000, 3),
                correlation_id=correlation_id,
                user_id=request.headers.get(USER_ID_HEADER),
            )
            correlation_id_var.reset(token)


# ─── Terminal errors ──────────────────────────────────────────────────────────


def terminal_error_response(
    request: Request, exc: Exception, include_details: bool
) -> Response:
    """Log ``http_error`` for an exception that escaped a route and build the 500."""
    logger.error(
        "http_error",
        method=request.method,
        path=original_url(request),
        correlation_id=request.headers.get(CORRELATION_ID_HEADER),
        user_id=request.headers.get(USER_ID_HEADER),
        error=serialize_error(exc, include_stack=include_details),
    )
    return internal_error_response(exc, include_details=include_details)


class TerminalErrorMiddleware(BaseHTTPMiddleware):
    """Convert route exceptions into the 500 envelope inside the pipeline.

    Registered innermost, so the 500 travels back out through the request
    logger, rate limiter, header validator, security headers and CORS like any
    other response. Exceptions raised outside this layer reach the app's
    ``Exception`` handler instead.
    """

    def __init__(self, app: ASGIApp, include_details: bool = False) -> None:
        super().__init__(app)
        self.include_details = include_details

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        try:
            return await call_next(request)
        except Exception as exc:
            return terminal_error_response(request, exc, self.include_details)
