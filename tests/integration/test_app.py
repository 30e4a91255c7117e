"""End-to-end tests for the full Portcullis pipeline built by create_app().

Requests go through httpx.AsyncClient + ASGITransport so the client address
can be chosen per client (rate limiting keys on it). ASGITransport does not
run the lifespan, so the lifecycle stays ``starting`` unless a TestClient
context is used.

Verifies:
  - health checks need no headers and are never rate limited
  - readiness follows the lifecycle
  - x-correlation-id is required and echoed
  - X-RateLimit-* headers on admission, 429 + Retry-After on rejection
  - per-IP quotas (no API key) and per-user quotas (API key configured)
  - API key failures are indistinguishable
  - 404 / 405 / 500 responses use the error envelope; 500 detail redacted
    in production
  - security and CORS headers
"""

from typing import Optional

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from portcullis.config import Config, SecurityConfig
from portcullis.constants import MAX_REQUEST_BODY_BYTES
from portcullis.lifecycle import LifecycleState
from portcullis.main import create_app

CID = {"x-correlation-id": "cid-1"}
SECRET = "secret-123"


def _config(environment: str = "development", **security) -> Config:
    config = Config.defaults()
    config.environment = environment
    if security:
        config.security = SecurityConfig(**security)
    return config


def _client(app, ip: str = "127.0.0.1", raise_app_exceptions: bool = True) -> AsyncClient:
    transport = ASGITransport(
        app=app, client=(ip, 9999), raise_app_exceptions=raise_app_exceptions
    )
    return AsyncClient(transport=transport, base_url="http://test")


def _auth(user: Optional[str] = None, key: str = SECRET) -> dict:
    headers = {**CID, "x-api-key": key}
    if user is not None:
        headers["x-user-id"] = user
    return headers


# ─── Health ───────────────────────────────────────────────────────────────────


class TestHealth:

    @pytest.mark.asyncio
    async def test_health_needs_no_headers(self) -> None:
        async with _client(create_app(_config(api_key_secret=SECRET))) as client:
            response = await client.get("/api/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["uptime"] >= 0
        assert body["timestamp"].endswith("Z")
        assert "x-ratelimit-limit" not in response.headers

    @pytest.mark.asyncio
    async def test_health_is_never_rate_limited(self) -> None:
        app = create_app(_config(window_ms=60_000, max_requests=1))
        async with _client(app) as client:
            statuses = [(await client.get("/api/health")).status_code for _ in range(5)]
        assert statuses == [200] * 5

    @pytest.mark.asyncio
    async def test_health_open_after_quota_exhausted(self) -> None:
        app = create_app(_config(window_ms=60_000, max_requests=1))
        async with _client(app) as client:
            assert (await client.get("/", headers=CID)).status_code == 200
            assert (await client.get("/", headers=CID)).status_code == 429
            assert (await client.get("/api/health/live")).status_code == 200

    @pytest.mark.asyncio
    async def test_live(self) -> None:
        async with _client(create_app(_config())) as client:
            response = await client.get("/api/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.asyncio
    async def test_ready_is_503_before_startup(self) -> None:
        async with _client(create_app(_config())) as client:
            response = await client.get("/api/health/ready")
        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "not_ready"
        assert body["state"] == "starting"

    def test_ready_follows_lifespan(self) -> None:
        app = create_app(_config())
        with TestClient(app) as client:
            response = client.get("/api/health/ready")
            assert response.status_code == 200
            assert response.json()["status"] == "ready"
        assert app.state.lifecycle.state is LifecycleState.TERMINATED

    def test_ready_is_503_while_draining(self) -> None:
        app = create_app(_config())
        with TestClient(app) as client:
            app.state.lifecycle.begin_drain("SIGTERM")
            response = client.get("/api/health/ready")
        assert response.status_code == 503
        assert response.json()["state"] == "draining"


# ─── Correlation id + root ────────────────────────────────────────────────────


class TestRoot:

    @pytest.mark.asyncio
    async def test_missing_correlation_id(self) -> None:
        async with _client(create_app(_config())) as client:
            response = await client.get("/")
        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "error": "Missing required header: x-correlation-id",
            "code": "MISSING_HEADER",
            "details": {"header": "x-correlation-id"},
        }

    @pytest.mark.asyncio
    async def test_missing_correlation_id_is_not_echoed(self) -> None:
        async with _client(create_app(_config())) as client:
            response = await client.get("/")
        assert "x-correlation-id" not in response.headers

    @pytest.mark.asyncio
    async def test_root_discovery(self) -> None:
        async with _client(create_app(_config())) as client:
            response = await client.get("/", headers=CID)
        assert response.status_code == 200
        assert response.headers["x-correlation-id"] == "cid-1"
        body = response.json()
        assert body["name"] == "portcullis"
        assert body["status"] == "ok"
        assert body["endpoints"] == {
            "health": "/api/health",
            "ready": "/api/health/ready",
            "live": "/api/health/live",
        }

    @pytest.mark.asyncio
    async def test_rate_limit_headers_on_admission(self, clock) -> None:
        app = create_app(_config(window_ms=1000, max_requests=3), clock=clock)
        async with _client(app) as client:
            response = await client.get("/", headers=CID)
        assert response.headers["x-ratelimit-limit"] == "3"
        assert response.headers["x-ratelimit-remaining"] == "2"
        assert response.headers["x-ratelimit-reset"] == str(clock.t0 // 1000 + 1)

    @pytest.mark.asyncio
    async def test_rejected_headers_do_not_consume_quota(self) -> None:
        app = create_app(_config(window_ms=60_000, max_requests=1))
        async with _client(app) as client:
            assert (await client.get("/")).status_code == 400
            assert (await client.get("/")).status_code == 400
            assert (await client.get("/", headers=CID)).status_code == 200


# ─── Rate limiting ────────────────────────────────────────────────────────────


class TestRateLimiting:

    @pytest.mark.asyncio
    async def test_window_scenario(self, clock) -> None:
        app = create_app(_config(window_ms=1000, max_requests=2), clock=clock)
        async with _client(app) as client:
            clock.set(0)
            assert (await client.get("/", headers=CID)).status_code == 200
            clock.set(100)
            assert (await client.get("/", headers=CID)).status_code == 200
            clock.set(200)
            rejected = await client.get("/", headers=CID)
            clock.set(1100)
            recovered = await client.get("/", headers=CID)

        assert rejected.status_code == 429
        assert rejected.headers["retry-after"] == "1"
        assert rejected.headers["x-correlation-id"] == "cid-1"
        assert rejected.json() == {
            "success": False,
            "error": "Rate limit exceeded",
            "code": "RATE_LIMITED",
            "details": {"windowMs": 1000, "maxRequests": 2, "retryAfterSeconds": 1},
        }
        assert recovered.status_code == 200
        assert recovered.headers["x-ratelimit-remaining"] == "1"

    @pytest.mark.asyncio
    async def test_client_ips_have_independent_quotas(self) -> None:
        app = create_app(_config(window_ms=60_000, max_requests=1))
        async with _client(app, ip="10.0.0.1") as a, _client(app, ip="10.0.0.2") as b:
            assert (await a.get("/", headers=CID)).status_code == 200
            assert (await a.get("/", headers=CID)).status_code == 429
            assert (await b.get("/", headers=CID)).status_code == 200

    @pytest.mark.asyncio
    async def test_options_is_exempt(self) -> None:
        app = create_app(_config(window_ms=60_000, max_requests=1))
        async with _client(app) as client:
            statuses = [(await client.options("/")).status_code for _ in range(3)]
        assert 400 not in statuses
        assert 429 not in statuses

    @pytest.mark.asyncio
    async def test_cors_preflight(self) -> None:
        async with _client(create_app(_config())) as client:
            response = await client.options(
                "/",
                headers={
                    "Origin": "https://app.example",
                    "Access-Control-Request-Method": "GET",
                },
            )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"


# ─── API key mode ─────────────────────────────────────────────────────────────


class TestApiKey:

    def _app(self, max_requests: int = 10):
        return create_app(
            _config(window_ms=60_000, max_requests=max_requests, api_key_secret=SECRET)
        )

    @pytest.mark.asyncio
    async def test_key_failures_are_indistinguishable(self) -> None:
        async with _client(self._app()) as client:
            absent = await client.get("/", headers={**CID, "x-user-id": "u1"})
            wrong_content = await client.get("/", headers=_auth("u1", key="secret-124"))
            wrong_length = await client.get("/", headers=_auth("u1", key="s"))

        for response in (absent, wrong_content, wrong_length):
            assert response.status_code == 401
            assert response.json() == {
                "success": False,
                "error": "Unauthorized",
                "code": "UNAUTHORIZED",
            }
        assert absent.content == wrong_content.content == wrong_length.content

    @pytest.mark.asyncio
    async def test_user_id_required(self) -> None:
        async with _client(self._app()) as client:
            response = await client.get("/", headers=_auth())
        assert response.status_code == 400
        assert response.json()["details"] == {"header": "x-user-id"}

    @pytest.mark.asyncio
    async def test_unauthorised_response_echoes_correlation_id(self) -> None:
        async with _client(self._app()) as client:
            response = await client.get("/", headers=_auth("u1", key="wrong"))
        assert response.status_code == 401
        assert response.headers["x-correlation-id"] == "cid-1"

    @pytest.mark.asyncio
    async def test_missing_user_response_echoes_correlation_id(self) -> None:
        async with _client(self._app()) as client:
            response = await client.get("/", headers=_auth())
        assert response.status_code == 400
        assert response.headers["x-correlation-id"] == "cid-1"

    @pytest.mark.asyncio
    async def test_authorised_request(self) -> None:
        async with _client(self._app()) as client:
            response = await client.get("/", headers=_auth("u1"))
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_quota_is_per_user(self) -> None:
        app = self._app(max_requests=1)
        async with _client(app, ip="10.0.0.1") as a, _client(app, ip="10.0.0.2") as b:
            assert (await a.get("/", headers=_auth("u1"))).status_code == 200
            assert (await a.get("/", headers=_auth("u2"))).status_code == 200
            # Same user from another address shares the quota.
            assert (await b.get("/", headers=_auth("u1"))).status_code == 429


# ─── Error envelope ───────────────────────────────────────────────────────────


class TestErrors:

    def _app_with_failing_route(self, environment: str):
        app = create_app(_config(environment=environment))

        async def boom() -> dict:
            raise RuntimeError("kaboom")

        app.add_api_route("/boom", boom, methods=["GET"])
        return app

    @pytest.mark.asyncio
    async def test_not_found_includes_query(self) -> None:
        async with _client(create_app(_config())) as client:
            response = await client.get("/nope?x=1", headers=CID)
        assert response.status_code == 404
        assert response.json() == {
            "success": False,
            "error": "Route not found",
            "code": "NOT_FOUND",
            "details": {"path": "/nope?x=1"},
        }
        assert response.headers["x-correlation-id"] == "cid-1"

    @pytest.mark.asyncio
    async def test_unknown_route_still_requires_headers(self) -> None:
        async with _client(create_app(_config())) as client:
            response = await client.get("/nope")
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_method_not_allowed(self) -> None:
        async with _client(create_app(_config())) as client:
            response = await client.post("/", headers=CID)
        assert response.status_code == 405
        assert response.json()["code"] == "METHOD_NOT_ALLOWED"
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_internal_error_details_in_development(self, capsys) -> None:
        app = self._app_with_failing_route("development")
        async with _client(app, raise_app_exceptions=False) as client:
            response = await client.get("/boom", headers=CID)
        assert response.status_code == 500
        assert response.json() == {
            "success": False,
            "error": "Internal Server Error",
            "code": "INTERNAL_ERROR",
            "details": {"message": "kaboom"},
        }
        assert "http_error" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_internal_error_passes_back_through_pipeline(self) -> None:
        app = self._app_with_failing_route("development")
        async with _client(app) as client:
            response = await client.get(
                "/boom", headers={**CID, "Origin": "https://app.example"}
            )
        assert response.status_code == 500
        assert response.headers["x-correlation-id"] == "cid-1"
        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["x-ratelimit-limit"] == "100"
        assert response.headers["access-control-allow-origin"] == "*"

    @pytest.mark.asyncio
    async def test_internal_error_redacted_in_production(self) -> None:
        app = self._app_with_failing_route("production")
        async with _client(app, raise_app_exceptions=False) as client:
            response = await client.get("/boom", headers=CID)
        assert response.status_code == 500
        assert "details" not in response.json()
        assert "kaboom" not in response.text

    @pytest.mark.asyncio
    async def test_declared_oversize_body(self) -> None:
        async with _client(create_app(_config())) as client:
            response = await client.post(
                "/", headers={**CID, "content-length": str(MAX_REQUEST_BODY_BYTES + 1)}
            )
        assert response.status_code == 413
        assert response.json()["code"] == "PAYLOAD_TOO_LARGE"


# ─── Response headers ─────────────────────────────────────────────────────────


class TestResponseHeaders:

    @pytest.mark.asyncio
    async def test_security_headers_on_errors_too(self) -> None:
        async with _client(create_app(_config())) as client:
            response = await client.get("/")
        assert response.status_code == 400
        assert response.headers["x-content-type-options"] == "nosniff"

    @pytest.mark.asyncio
    async def test_hsts_only_in_production(self) -> None:
        async with _client(create_app(_config(environment="production"))) as client:
            prod = await client.get("/api/health")
        async with _client(create_app(_config())) as client:
            dev = await client.get("/api/health")
        assert "strict-transport-security" in prod.headers
        assert "strict-transport-security" not in dev.headers

    @pytest.mark.asyncio
    async def test_cors_exposes_rate_limit_headers(self) -> None:
        async with _client(create_app(_config())) as client:
            response = await client.get(
                "/", headers={**CID, "Origin": "https://app.example"}
            )
        exposed = response.headers["access-control-expose-headers"].lower()
        assert "x-correlation-id" in exposed
        assert "x-ratelimit-remaining" in exposed
