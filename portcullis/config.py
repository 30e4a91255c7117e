"""Config loading for Portcullis.

Settings come from an optional YAML file and are then overridden by environment
variables. Raises SystemExit on parse errors or invalid values, so the process
never starts with a half-valid configuration. A missing file is not an error:
every field has a default.

Config file search order:
  1. ``config_path`` argument (if provided — for testing or explicit override)
  2. PORTCULLIS_CONFIG environment variable (if set)
  3. ``.portcullis/config.yaml`` (working directory)

File layout::

    server:
      host: 0.0.0.0
      port: 9000
    environment: development
    log_level: info
    json_logs: true
    cors_origins: "*"
    security:
      api_key_secret: null
      rate_limit_window_ms: 300000
      rate_limit_max_requests: 100

Environment variable overrides (take precedence over the file):
  HOST, PORT, ENVIRONMENT, LOG_LEVEL, JSON_LOGS, API_KEY_SECRET, CORS_ORIGINS,
  RATE_LIMIT_WINDOW_MS, RATE_LIMIT_MAX_REQUESTS
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Any, NoReturn, Optional, Union

import yaml

from portcullis.constants import (
    DEFAULT_CORS_ORIGINS,
    DEFAULT_ENVIRONMENT,
    DEFAULT_HOST,
    DEFAULT_LOG_LEVEL,
    DEFAULT_PORT,
    DEFAULT_RATE_LIMIT_MAX_REQUESTS,
    DEFAULT_RATE_LIMIT_WINDOW_MS,
)
from portcullis.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Validation sets ─────────────────────────────────────────────────────────

VALID_ENVIRONMENTS: frozenset[str] = frozenset({"development", "production", "test"})
VALID_LOG_LEVELS: frozenset[str] = frozenset({"error", "warn", "info", "debug"})

DEFAULT_CONFIG_PATHS = [
    ".portcullis/config.yaml",
]

_TRUE_STRINGS: frozenset[str] = frozenset({"1", "true", "yes", "on"})
_FALSE_STRINGS: frozenset[str] = frozenset({"0", "false", "no", "off"})


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class ServerConfig:
    """HTTP binding configuration."""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT


@dataclass(frozen=True)
class SecurityConfig:
    """Security middleware settings.

    Immutable: one instance is handed to the middleware at startup and never
    changes for the lifetime of the process.

    window_ms:      Length of one rate-limit window in milliseconds.
    max_requests:   Requests admitted per key per window.
    api_key_secret: When set, every non-exempt request must present it in
                    ``x-api-key`` and identify itself with ``x-user-id``.
    """

    window_ms: int = DEFAULT_RATE_LIMIT_WINDOW_MS
    max_requests: int = DEFAULT_RATE_LIMIT_MAX_REQUESTS
    api_key_secret: Optional[str] = None

    @property
    def api_key_required(self) -> bool:
        return bool(self.api_key_secret)


@dataclass
class Config:
    """Root configuration object.

    All fields have safe defaults — Portcullis can start without any config file.
    """

    server: ServerConfig = field(default_factory=ServerConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    environment: str = DEFAULT_ENVIRONMENT
    log_level: str = DEFAULT_LOG_LEVEL
    json_logs: bool = True
    cors_origins: str = DEFAULT_CORS_ORIGINS
    path: Optional[str] = None  # Path to the loaded config file, if any

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.
        Values are validated later by :func:`validate_config`.
        """
        server_raw = raw.get("server") or {}
        server = ServerConfig(
            host=server_raw.get("host", DEFAULT_HOST),
            port=server_raw.get("port", DEFAULT_PORT),
        )

        security_raw = raw.get("security") or {}
        security = SecurityConfig(
            window_ms=security_raw.get("rate_limit_window_ms", DEFAULT_RATE_LIMIT_WINDOW_MS),
            max_requests=security_raw.get("rate_limit_max_requests", DEFAULT_RATE_LIMIT_MAX_REQUESTS),
            api_key_secret=security_raw.get("api_key_secret") or None,
        )

        return cls(
            server=server,
            security=security,
            environment=raw.get("environment", DEFAULT_ENVIRONMENT),
            log_level=raw.get("log_level", DEFAULT_LOG_LEVEL),
            json_logs=raw.get("json_logs", True),
            cors_origins=raw.get("cors_origins", DEFAULT_CORS_ORIGINS),
            path=path,
        )


# ─── Helpers ─────────────────────────────────────────────────────────────────


def _fail(msg: str) -> NoReturn:
    """Print a config error to stderr and exit non-zero."""
    print(f"CONFIG ERROR: {msg}", file=sys.stderr)
    raise SystemExit(1)


def _coerce_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        _fail(f"{name} must be an integer, got: {value!r}")
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        _fail(f"{name} must be an integer, got: {value!r}")


def _coerce_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in _TRUE_STRINGS:
        return True
    if lowered in _FALSE_STRINGS:
        return False
    _fail(f"{name} must be a boolean (true/false), got: {value!r}")


def parse_cors_origins(cors_origins: str) -> Union[list[str], str]:
    """Split a comma-separated origin list.

    Returns ``"*"`` for an empty value, a literal ``*``, or a list that is empty
    after trimming; otherwise the list of trimmed, non-empty origins.
    """
    trimmed = cors_origins.strip()
    if trimmed in ("", "*"):
        return "*"

    parts = [origin.strip() for origin in trimmed.split(",") if origin.strip()]
    return parts if parts else "*"


def redacted_summary(config: Config) -> dict[str, Any]:
    """Settings that are safe to log. The API key secret is reduced to a flag."""
    return {
        "host": config.server.host,
        "port": config.server.port,
        "environment": config.environment,
        "log_level": config.log_level,
        "cors_origins": config.cors_origins,
        "rate_limit_window_ms": config.security.window_ms,
        "rate_limit_max_requests": config.security.max_requests,
        "api_key_auth_enabled": config.security.api_key_required,
    }


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate Portcullis configuration.

    If no file is found, defaults are used (not an error). Environment
    variables are then applied on top, and the merged result validated.

    Returns:
        Config object with all values populated.

    Raises:
        SystemExit(1): On YAML parse error, a non-mapping file, or any invalid
                       setting (port range, environment, log level, rate limits).
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("PORTCULLIS_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    if found_path is None:
        logger.debug("No config file found — using defaults", searched=search_paths)
        config = Config.defaults()
    else:
        config = Config.from_dict(_read_config_file(found_path), path=found_path)

    config = _apply_env_overrides(config)
    validate_config(config)

    logger.debug(
        "Config loaded",
        path=found_path,
        environment=config.environment,
        api_key_auth_enabled=config.security.api_key_required,
    )
    return config


def _read_config_file(found_path: str) -> dict:
    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(
            f"Failed to parse {found_path}: {exc}\n"
            "Portcullis refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _fail(f"Could not read {found_path}: {exc}")

    # Empty file is treated as "all defaults"
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        _fail(
            f"{found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )
    return raw


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides onto ``config``.

    An empty ``API_KEY_SECRET`` means "not configured" and clears any secret
    from the file.
    """
    env = os.environ

    if "HOST" in env:
        config.server.host = env["HOST"]
    if "PORT" in env:
        config.server.port = _coerce_int("PORT", env["PORT"])
    if "ENVIRONMENT" in env:
        config.environment = env["ENVIRONMENT"].strip().lower()
    if "LOG_LEVEL" in env:
        config.log_level = env["LOG_LEVEL"].strip().lower()
    if "JSON_LOGS" in env:
        config.json_logs = _coerce_bool("JSON_LOGS", env["JSON_LOGS"])
    if "CORS_ORIGINS" in env:
        config.cors_origins = env["CORS_ORIGINS"]

    security = config.security
    window_ms = security.window_ms
    max_requests = security.max_requests
    api_key_secret = security.api_key_secret
    if "RATE_LIMIT_WINDOW_MS" in env:
        window_ms = _coerce_int("RATE_LIMIT_WINDOW_MS", env["RATE_LIMIT_WINDOW_MS"])
    if "RATE_LIMIT_MAX_REQUESTS" in env:
        max_requests = _coerce_int("RATE_LIMIT_MAX_REQUESTS", env["RATE_LIMIT_MAX_REQUESTS"])
    if "API_KEY_SECRET" in env:
        api_key_secret = env["API_KEY_SECRET"] or None

    config.security = SecurityConfig(
        window_ms=window_ms,
        max_requests=max_requests,
        api_key_secret=api_key_secret,
    )
    return config


def validate_config(config: Config) -> None:
    """Validate a merged Config in place.

    Raises:
        SystemExit(1): On the first invalid value found.
    """
    port = _coerce_int("port", config.server.port)
    if not 1 <= port <= 65535:
        _fail(f"port must be between 1 and 65535, got: {port}")
    config.server.port = port

    if not isinstance(config.server.host, str) or not config.server.host:
        _fail("host must be a non-empty string")

    if config.environment not in VALID_ENVIRONMENTS:
        _fail(
            f"Invalid environment: '{config.environment}'. "
            f"Supported values: {sorted(VALID_ENVIRONMENTS)}."
        )

    if config.log_level not in VALID_LOG_LEVELS:
        _fail(
            f"Invalid log level: '{config.log_level}'. "
            f"Supported values: {sorted(VALID_LOG_LEVELS)}."
        )

    config.json_logs = _coerce_bool("json_logs", config.json_logs)

    if not isinstance(config.cors_origins, str):
        _fail("cors_origins must be a string (comma-separated origins or '*')")

    window_ms = _coerce_int("rate_limit_window_ms", config.security.window_ms)
    if window_ms <= 0:
        _fail(f"rate_limit_window_ms must be a positive integer, got: {window_ms}")
    max_requests = _coerce_int("rate_limit_max_requests", config.security.max_requests)
    if max_requests <= 0:
        _fail(f"rate_limit_max_requests must be a positive integer, got: {max_requests}")

    api_key_secret = config.security.api_key_secret
    if api_key_secret is not None and not isinstance(api_key_secret, str):
        _fail("api_key_secret must be a string")

    config.security = SecurityConfig(
        window_ms=window_ms,
        max_requests=max_requests,
        api_key_secret=api_key_secret or None,
    )

    if config.server.host == "0.0.0.0" and config.is_production and not config.security.api_key_required:
        logger.warning(
            "SECURITY WARNING: production service bound on all interfaces without "
            "API key authentication. Set API_KEY_SECRET to require x-api-key."
        )
