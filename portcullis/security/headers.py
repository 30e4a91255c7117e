"""Request header validation for Portcullis.

Provides ``validate_headers()``: the pure decision function behind the first
stage of the security pipeline. It inspects method, path and headers and
returns either ``None`` (request may proceed) or a ``HeaderRejection``
describing the terminal error response to send.

Rules, in order:
  1. ``x-correlation-id`` must be present and non-empty (400 MISSING_HEADER).
  2. If an API key secret is configured, ``x-api-key`` must equal it
     (401 UNAUTHORIZED, no details).
  3. If an API key secret is configured, ``x-user-id`` must be present and
     non-empty (400 MISSING_HEADER).

OPTIONS requests and health checks (``/api/health``, ``/api/health/*``)
bypass every rule.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from typing import Mapping, Optional

from fastapi.responses import JSONResponse

from portcullis.constants import (
    API_KEY_HEADER,
    CORRELATION_ID_HEADER,
    HEALTH_PATH,
    USER_ID_HEADER,
)
from portcullis.errors import missing_header_response, unauthorized_response


def is_health_path(path: str) -> bool:
    """True for ``/api/health`` and anything beneath ``/api/health/``."""
    return path == HEALTH_PATH or path.startswith(HEALTH_PATH + "/")


def is_exempt(method: str, path: str) -> bool:
    """True when a request bypasses header validation and rate limiting."""
    return method.upper() == "OPTIONS" or is_health_path(path)


def safe_string_equals(a: str, b: str) -> bool:
    """Compare two strings without leaking where they first differ.

    A length mismatch returns immediately; equal-length inputs are compared
    with ``hmac.compare_digest`` so timing does not depend on content.
    """
    a_bytes = a.encode("utf-8")
    b_bytes = b.encode("utf-8")
    if len(a_bytes) != len(b_bytes):
        return False
    return hmac.compare_digest(a_bytes, b_bytes)


@dataclass(frozen=True)
class HeaderRejection:
    """A failed header check.

    status: HTTP status to send (400 or 401).
    reason: Short log-safe description; never contains header values.
    header: Name of the missing header, when the failure is a missing header.
    """

    status: int
    reason: str
    header: Optional[str] = None

    def to_response(self) -> JSONResponse:
        if self.status == 401:
            return unauthorized_response()
        return missing_header_response(self.header or "")


def validate_headers(
    method: str,
    path: str,
    headers: Mapping[str, str],
    api_key_secret: Optional[str] = None,
) -> Optional[HeaderRejection]:
    """Apply the header rules to one request.

    Args:
        method:         HTTP method.
        path:           Request path (no query string).
        headers:        Case-insensitive header mapping (Starlette ``Headers``)
                        or a plain dict with lower-case keys.
        api_key_secret: Configured secret; ``None`` disables rules 2 and 3.

    Returns:
        None when the request may proceed, else the rejection to respond with.
    """
    if is_exempt(method, path):
        return None

    if not headers.get(CORRELATION_ID_HEADER):
        return HeaderRejection(400, "missing correlation id", CORRELATION_ID_HEADER)

    if api_key_secret:
        api_key = headers.get(API_KEY_HEADER)
        if not api_key or not safe_string_equals(api_key, api_key_secret):
            # Same rejection for absent and wrong keys.
            return HeaderRejection(401, "invalid or missing api key")

        if not headers.get(USER_ID_HEADER):
            return HeaderRejection(400, "missing user id", USER_ID_HEADER)

    return None
