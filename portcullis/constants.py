"""Shared constants for Portcullis.

Header names, size limits, lifecycle timings and configuration defaults used
across modules are defined here. Import from this module instead of repeating
literals.
"""

import time

# ─── Service identity ─────────────────────────────────────────────────────────

SERVICE_NAME: str = "portcullis"
SERVICE_VERSION: str = "0.1.0"
SERVICE_MESSAGE: str = "Service is running"

# Monotonic reference captured at import; /api/health reports uptime from here.
PROCESS_STARTED_AT: float = time.monotonic()

# ─── Request headers ──────────────────────────────────────────────────────────

CORRELATION_ID_HEADER: str = "x-correlation-id"
API_KEY_HEADER: str = "x-api-key"
USER_ID_HEADER: str = "x-user-id"

RETRY_AFTER_HEADER: str = "Retry-After"
RATE_LIMIT_LIMIT_HEADER: str = "X-RateLimit-Limit"
RATE_LIMIT_REMAINING_HEADER: str = "X-RateLimit-Remaining"
RATE_LIMIT_RESET_HEADER: str = "X-RateLimit-Reset"

# ─── Exempt routes ────────────────────────────────────────────────────────────

# Health checks bypass authentication and rate limiting.
HEALTH_PATH: str = "/api/health"

# ─── Request body limit ───────────────────────────────────────────────────────

# Bodies larger than this are rejected with HTTP 413 before reaching a route.
MAX_REQUEST_BODY_BYTES: int = 10 * 1024 * 1024  # 10 MB

# ─── Lifecycle ────────────────────────────────────────────────────────────────

# Drain budget after SIGTERM/SIGINT; the process is force-exited once it elapses.
SHUTDOWN_TIMEOUT_S: float = 10.0

# Uvicorn connection hardening.
UVICORN_LIMIT_CONCURRENCY: int = 100
UVICORN_BACKLOG: int = 50
UVICORN_TIMEOUT_KEEP_ALIVE: int = 5

# ─── Configuration defaults ───────────────────────────────────────────────────

DEFAULT_HOST: str = "0.0.0.0"
DEFAULT_PORT: int = 9000
DEFAULT_ENVIRONMENT: str = "development"
DEFAULT_LOG_LEVEL: str = "info"
DEFAULT_CORS_ORIGINS: str = "*"
DEFAULT_RATE_LIMIT_WINDOW_MS: int = 300_000  # 5 minutes
DEFAULT_RATE_LIMIT_MAX_REQUESTS: int = 100
