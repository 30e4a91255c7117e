"""Health endpoints for Portcullis.

Implements:
  GET /api/health        — liveness + uptime, always 200
  GET /api/health/ready  — 200 while the lifecycle is running, 503 otherwise
  GET /api/health/live   — process is alive, always 200

All three are exempt from header validation and rate limiting so container
checks need no credentials (see ``portcullis.security.headers.is_exempt``).
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from portcullis.constants import HEALTH_PATH, PROCESS_STARTED_AT
from portcullis.lifecycle import Lifecycle

router = APIRouter(prefix=HEALTH_PATH, tags=["health"])


def utc_timestamp() -> str:
    """Current UTC time as an ISO-8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def process_uptime() -> float:
    """Seconds since the process imported Portcullis."""
    return time.monotonic() - PROCESS_STARTED_AT


@router.get("")
async def health() -> dict[str, Any]:
    """Primary health check.

    Response body (200)::

        {"status": "ok", "uptime": 12.34, "timestamp": "2024-01-01T00:00:00.000Z"}
    """
    return {
        "status": "ok",
        "uptime": process_uptime(),
        "timestamp": utc_timestamp(),
    }


@router.get("/ready")
async def ready(request: Request) -> Any:
    """Readiness check.

    Returns 503 before lifespan startup completes and once draining has begun.
    """
    lifecycle: Optional[Lifecycle] = getattr(request.app.state, "lifecycle", None)
    if lifecycle is not None and not lifecycle.is_running:
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "state": lifecycle.state.value,
                "timestamp": utc_timestamp(),
            },
        )
    return {"status": "ready", "timestamp": utc_timestamp()}


@router.get("/live")
async def live() -> dict[str, Any]:
    """Liveness check."""
    return {"status": "alive", "timestamp": utc_timestamp()}
