"""Unit tests for portcullis/security/headers.py.

Verifies:
  - OPTIONS and health paths bypass every rule
  - x-correlation-id is required (400 MISSING_HEADER)
  - with a secret configured, a wrong key of any length and an absent key
    produce the identical 401 response
  - with a secret configured, x-user-id is required after the key check
  - safe_string_equals() semantics
"""

import json

import pytest
from starlette.datastructures import Headers

from portcullis.security.headers import (
    HeaderRejection,
    is_exempt,
    is_health_path,
    safe_string_equals,
    validate_headers,
)

SECRET = "s3cret-key"


def _body(rejection: HeaderRejection) -> dict:
    return json.loads(rejection.to_response().body)


# ─── Exemptions ───────────────────────────────────────────────────────────────


class TestExemptions:

    @pytest.mark.parametrize(
        "path", ["/api/health", "/api/health/ready", "/api/health/live", "/api/health/x/y"]
    )
    def test_health_paths_are_exempt(self, path: str) -> None:
        assert is_health_path(path)
        assert validate_headers("GET", path, {}, api_key_secret=SECRET) is None

    @pytest.mark.parametrize("path", ["/api/healthz", "/api", "/", "/health"])
    def test_lookalike_paths_are_not_exempt(self, path: str) -> None:
        assert not is_health_path(path)
        assert validate_headers("GET", path, {}) is not None

    @pytest.mark.parametrize("method", ["OPTIONS", "options"])
    def test_options_is_exempt_on_any_path(self, method: str) -> None:
        assert is_exempt(method, "/anything")
        assert validate_headers(method, "/anything", {}, api_key_secret=SECRET) is None


# ─── Correlation id ───────────────────────────────────────────────────────────


class TestCorrelationId:

    def test_missing_correlation_id(self) -> None:
        rejection = validate_headers("GET", "/", {})
        assert rejection is not None
        assert rejection.status == 400
        assert _body(rejection) == {
            "success": False,
            "error": "Missing required header: x-correlation-id",
            "code": "MISSING_HEADER",
            "details": {"header": "x-correlation-id"},
        }

    def test_empty_correlation_id_is_missing(self) -> None:
        rejection = validate_headers("GET", "/", {"x-correlation-id": ""})
        assert rejection is not None
        assert rejection.header == "x-correlation-id"

    def test_present_correlation_id_passes(self) -> None:
        assert validate_headers("GET", "/", {"x-correlation-id": "abc"}) is None

    def test_header_lookup_is_case_insensitive(self) -> None:
        headers = Headers({"X-Correlation-ID": "abc"})
        assert validate_headers("GET", "/", headers) is None

    def test_correlation_checked_before_api_key(self) -> None:
        rejection = validate_headers("GET", "/", {}, api_key_secret=SECRET)
        assert rejection is not None
        assert rejection.status == 400


# ─── API key ──────────────────────────────────────────────────────────────────


class TestApiKey:

    def _headers(self, **extra: str) -> dict:
        return {"x-correlation-id": "cid", **extra}

    def test_no_secret_ignores_key_and_user(self) -> None:
        assert validate_headers("GET", "/", self._headers()) is None

    def test_missing_key_is_unauthorized(self) -> None:
        rejection = validate_headers("GET", "/", self._headers(), api_key_secret=SECRET)
        assert rejection is not None
        assert rejection.status == 401
        assert _body(rejection) == {
            "success": False,
            "error": "Unauthorized",
            "code": "UNAUTHORIZED",
        }

    def test_wrong_length_and_wrong_content_are_indistinguishable(self) -> None:
        wrong_length = validate_headers(
            "GET", "/", self._headers(**{"x-api-key": "short"}), api_key_secret=SECRET
        )
        wrong_content = validate_headers(
            "GET", "/", self._headers(**{"x-api-key": "X" * len(SECRET)}), api_key_secret=SECRET
        )
        absent = validate_headers("GET", "/", self._headers(), api_key_secret=SECRET)

        assert wrong_length == wrong_content == absent
        responses = [r.to_response() for r in (wrong_length, wrong_content, absent)]
        assert len({r.body for r in responses}) == 1
        assert {r.status_code for r in responses} == {401}

    def test_correct_key_requires_user_id(self) -> None:
        rejection = validate_headers(
            "GET", "/", self._headers(**{"x-api-key": SECRET}), api_key_secret=SECRET
        )
        assert rejection is not None
        assert rejection.status == 400
        assert _body(rejection)["details"] == {"header": "x-user-id"}

    def test_wrong_key_reported_before_missing_user(self) -> None:
        rejection = validate_headers(
            "GET", "/", self._headers(**{"x-api-key": "nope"}), api_key_secret=SECRET
        )
        assert rejection is not None
        assert rejection.status == 401

    def test_correct_key_and_user_pass(self) -> None:
        headers = self._headers(**{"x-api-key": SECRET, "x-user-id": "u1"})
        assert validate_headers("GET", "/", headers, api_key_secret=SECRET) is None

    def test_reason_never_contains_key_value(self) -> None:
        rejection = validate_headers(
            "GET", "/", self._headers(**{"x-api-key": "leaky-value"}), api_key_secret=SECRET
        )
        assert "leaky-value" not in rejection.reason


# ─── safe_string_equals ───────────────────────────────────────────────────────


class TestSafeStringEquals:

    @pytest.mark.parametrize(
        "a,b,expected",
        [
            ("abc", "abc", True),
            ("abc", "abd", False),
            ("abc", "abcd", False),
            ("", "", True),
            ("", "a", False),
            ("héllo", "héllo", True),
            # Same character count, different UTF-8 byte length.
            ("hé", "he", False),
        ],
    )
    def test_cases(self, a: str, b: str, expected: bool) -> None:
        assert safe_string_equals(a, b) is expected
