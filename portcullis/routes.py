"""Route table for Portcullis.

``ROUTE_TABLE`` is the static list of every route the application registers.
It is logged at startup for diagnostics instead of reflecting over the
framework's router internals; ``tests/unit/test_routes.py`` keeps it in sync
with the routers.

The service-discovery root (``GET /``) is defined here; health routes live in
``portcullis.health``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter

from portcullis.constants import (
    HEALTH_PATH,
    SERVICE_MESSAGE,
    SERVICE_NAME,
    SERVICE_VERSION,
)
from portcullis.health import utc_timestamp

root_router = APIRouter(tags=["root"])


@dataclass(frozen=True)
class RouteInfo:
    path: str
    methods: tuple[str, ...]
    name: str


ROUTE_TABLE: tuple[RouteInfo, ...] = (
    RouteInfo("/", ("GET",), "root"),
    RouteInfo(HEALTH_PATH, ("GET",), "health"),
    RouteInfo(f"{HEALTH_PATH}/ready", ("GET",), "ready"),
    RouteInfo(f"{HEALTH_PATH}/live", ("GET",), "live"),
)


def route_summary() -> list[dict[str, Any]]:
    """ROUTE_TABLE as plain dicts, for log metadata."""
    return [
        {"path": route.path, "methods": list(route.methods), "name": route.name}
        for route in ROUTE_TABLE
    ]


@root_router.get("/")
async def root() -> dict[str, Any]:
    """Root endpoint — service identity / discovery."""
    return {
        "name": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "message": SERVICE_MESSAGE,
        "status": "ok",
        "timestamp": utc_timestamp(),
        "endpoints": {
            "health": HEALTH_PATH,
            "ready": f"{HEALTH_PATH}/ready",
            "live": f"{HEALTH_PATH}/live",
        },
    }
