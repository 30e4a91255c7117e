"""Programmatic uvicorn entry point for Portcullis.

Loads config, configures logging, builds the app and serves it with hardened
uvicorn defaults:

  limit_concurrency 100        Max concurrent connections; HTTP 503 when exceeded
  backlog 50                   OS connection queue depth
  timeout_keep_alive 5         Reduces the Slow Loris attack window
  timeout_graceful_shutdown 10 Drain budget for in-flight requests

Shutdown: SIGTERM/SIGINT move the app lifecycle to ``draining`` (the ready
check turns 503) and arm a forced-termination timer. If the drain has not
finished after SHUTDOWN_TIMEOUT_S the process exits with status 1.

Usage:
    python -m portcullis.run
    portcullis                   # via pyproject.toml [project.scripts]
"""

from __future__ import annotations

import os
import signal
from types import FrameType
from typing import Optional

import uvicorn

from portcullis.config import load_config, redacted_summary
from portcullis.constants import (
    SERVICE_NAME,
    SERVICE_VERSION,
    SHUTDOWN_TIMEOUT_S,
    UVICORN_BACKLOG,
    UVICORN_LIMIT_CONCURRENCY,
    UVICORN_TIMEOUT_KEEP_ALIVE,
)
from portcullis.lifecycle import Lifecycle
from portcullis.main import create_app
from portcullis.utils.logger import bind_service_context, configure_logging, create_logger

# uvicorn's own (stdlib) loggers use "warning" where we accept "warn".
_UVICORN_LOG_LEVELS = {"debug": "debug", "info": "info", "warn": "warning", "error": "error"}


class DrainingServer(uvicorn.Server):
    """uvicorn.Server that drives a ``Lifecycle`` from shutdown signals."""

    def __init__(self, config: uvicorn.Config, lifecycle: Lifecycle, logger) -> None:
        super().__init__(config)
        self.lifecycle = lifecycle
        self.logger = logger

    def handle_exit(self, sig: int, frame: Optional[FrameType]) -> None:
        try:
            signal_name = signal.Signals(sig).name
        except ValueError:
            signal_name = str(sig)

        if self.lifecycle.begin_drain(signal_name, on_timeout=self._force_exit):
            self.logger.info("shutdown_start", signal=signal_name)
        super().handle_exit(sig, frame)

    def _force_exit(self) -> None:
        self.logger.error("shutdown_forced", timeout_s=self.lifecycle.timeout_s)
        # Runs on the timer thread; sys.exit() would only end that thread.
        os._exit(1)


def main() -> None:
    """Start the Portcullis server.

    Raises:
        SystemExit: Propagated from load_config() on invalid configuration, or
                    with status 1 if the server fails to start.
    """
    config = load_config()
    configure_logging(log_level=config.log_level, json_output=config.json_logs)
    bind_service_context(SERVICE_NAME, SERVICE_VERSION)
    logger = create_logger(SERVICE_NAME, SERVICE_VERSION)

    logger.info("startup", **redacted_summary(config))

    app = create_app(config)
    server = DrainingServer(
        uvicorn.Config(
            app,
            host=config.server.host,
            port=config.server.port,
            limit_concurrency=UVICORN_LIMIT_CONCURRENCY,
            backlog=UVICORN_BACKLOG,
            timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
            timeout_graceful_shutdown=int(SHUTDOWN_TIMEOUT_S),
            proxy_headers=True,
            access_log=False,
            log_level=_UVICORN_LOG_LEVELS[config.log_level],
        ),
        lifecycle=app.state.lifecycle,
        logger=logger,
    )
    server.run()

    if not server.started:
        logger.error("server_error", host=config.server.host, port=config.server.port)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
