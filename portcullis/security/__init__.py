"""Portcullis request security pipeline.

Public API:
  - validate_headers()              — header rules (correlation id, API key, user id)
  - safe_string_equals()            — constant-time string comparison
  - is_exempt() / is_health_path()  — OPTIONS and health-check bypass
  - FixedWindowRateLimiter          — in-memory per-key fixed-window quota
  - HeaderValidationMiddleware      — stage 1 Starlette middleware
  - RateLimitMiddleware             — stage 2 Starlette middleware
  - install_security_middleware()   — registers both stages in the right order
"""

from __future__ import annotations

from portcullis.security.headers import (
    HeaderRejection,
    is_exempt,
    is_health_path,
    safe_string_equals,
    validate_headers,
)
from portcullis.security.limiter import (
    FixedWindowRateLimiter,
    RateLimitDecision,
    RateLimitEntry,
)
from portcullis.security.middleware import (
    HeaderValidationMiddleware,
    RateLimitMiddleware,
    install_security_middleware,
    rate_limit_key,
)

__all__ = [
    "HeaderRejection",
    "is_exempt",
    "is_health_path",
    "safe_string_equals",
    "validate_headers",
    "FixedWindowRateLimiter",
    "RateLimitDecision",
    "RateLimitEntry",
    "HeaderValidationMiddleware",
    "RateLimitMiddleware",
    "install_security_middleware",
    "rate_limit_key",
]
