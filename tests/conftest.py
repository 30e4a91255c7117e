"""Root test configuration for Portcullis.

Clears every configuration environment variable and moves into an empty
working directory for each test, so a developer's shell or a stray
``.portcullis/config.yaml`` never leaks into the suite.

Tests that exercise environment handling set variables explicitly with
``monkeypatch.setenv()``.
"""

import pytest
import structlog

from portcullis.utils.logger import configure_logging

CONFIG_ENV_VARS = (
    "PORTCULLIS_CONFIG",
    "HOST",
    "PORT",
    "ENVIRONMENT",
    "LOG_LEVEL",
    "JSON_LOGS",
    "API_KEY_SECRET",
    "CORS_ORIGINS",
    "RATE_LIMIT_WINDOW_MS",
    "RATE_LIMIT_MAX_REQUESTS",
)

# Multiple of 1000 so second-rounded header values are easy to predict.
T0_MS = 1_700_000_000_000


class FakeClock:
    """Epoch-ms clock advanced by hand."""

    def __init__(self, start_ms: int = T0_MS) -> None:
        self.t0 = start_ms
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms

    def set(self, offset_ms: int) -> None:
        """Jump to ``t0 + offset_ms``."""
        self.now_ms = self.t0 + offset_ms


@pytest.fixture(autouse=True)
def clean_config_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    """Start every test from default configuration."""
    for name in CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def restore_logging():
    """Reset structlog to the import-time defaults after a test reconfigures it."""
    yield
    configure_logging()


@pytest.fixture(autouse=True)
def clear_log_context():
    """Drop structlog contextvars bound by a test (e.g. run.main())."""
    yield
    structlog.contextvars.clear_contextvars()
