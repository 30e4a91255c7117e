"""Uniform JSON error envelope for Portcullis.

Every error produced by the service, whether by the security middleware, the
body-size limit, the not-found handler, or the terminal error handler, has
the same shape:

.. code-block:: json

    {
      "success": false,
      "error": "<human readable message>",
      "code": "<MACHINE_READABLE_CODE>",
      "details": {"...": "..."}
    }

``details`` is omitted entirely (never ``null``) when not supplied.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Optional

from fastapi.responses import JSONResponse


class ErrorCode(str, Enum):
    """Machine-readable error codes carried in the ``code`` field."""

    MISSING_HEADER = "MISSING_HEADER"            # 400, caller must supply a header
    INVALID_CONTENT_LENGTH = "INVALID_CONTENT_LENGTH"  # 400, unparseable Content-Length
    UNAUTHORIZED = "UNAUTHORIZED"                # 401, bad or missing credential
    NOT_FOUND = "NOT_FOUND"                      # 404, routing miss
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"      # 413
    RATE_LIMITED = "RATE_LIMITED"                # 429, retry after Retry-After
    INTERNAL_ERROR = "INTERNAL_ERROR"            # 500, detail redacted in production


def error_body(
    error: str,
    code: str,
    details: Optional[Any] = None,
) -> dict[str, Any]:
    """Build the envelope dict. ``details`` is included only when not None."""
    body: dict[str, Any] = {
        "success": False,
        "error": error,
        "code": code.value if isinstance(code, ErrorCode) else code,
    }
    if details is not None:
        body["details"] = details
    return body


def error_response(
    status_code: int,
    error: str,
    code: str,
    details: Optional[Any] = None,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    """Build a JSONResponse carrying the uniform error envelope.

    Args:
        status_code: HTTP status to send.
        error:       Human-readable message.
        code:        Machine-readable code (an :class:`ErrorCode` or plain string).
        details:     Optional structured detail; omitted from the body when None.
        headers:     Optional extra response headers (e.g. ``Retry-After``).

    Returns:
        JSONResponse with the envelope body and the given status.
    """
    return JSONResponse(
        status_code=status_code,
        content=error_body(error, code, details),
        headers=dict(headers) if headers else None,
    )


def missing_header_response(header: str) -> JSONResponse:
    """HTTP 400 ``MISSING_HEADER`` naming the absent header."""
    return error_response(
        400,
        f"Missing required header: {header}",
        ErrorCode.MISSING_HEADER,
        details={"header": header},
    )


def unauthorized_response() -> JSONResponse:
    """HTTP 401 ``UNAUTHORIZED``. Carries no details so the failing check is not revealed."""
    return error_response(401, "Unauthorized", ErrorCode.UNAUTHORIZED)


def not_found_response(path: str) -> JSONResponse:
    """HTTP 404 ``NOT_FOUND`` for an unmatched route."""
    return error_response(
        404,
        "Route not found",
        ErrorCode.NOT_FOUND,
        details={"path": path},
    )


def internal_error_response(exc: BaseException, include_details: bool) -> JSONResponse:
    """HTTP 500 ``INTERNAL_ERROR``; the exception message is exposed only if allowed."""
    return error_response(
        500,
        "Internal Server Error",
        ErrorCode.INTERNAL_ERROR,
        details={"message": str(exc)} if include_details else None,
    )
