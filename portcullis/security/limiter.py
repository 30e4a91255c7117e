"""In-memory fixed-window rate limiter for Portcullis.

Each key owns one ``RateLimitEntry``. The window for a key starts on the first
request seen after its previous window expired (a lazily rolling fixed
window, not aligned to a clock grid), which keeps memory O(1) per key and
work O(1) per request.

A request is admitted while ``count < max_requests``; the next one in the same
window is rejected and NOT counted, so ``count`` never exceeds ``max_requests``.

Expired entries are swept inline by whichever request arrives at least
``window_ms`` after the previous sweep. There is no background task.

Thread-safety:
    Check, reset, increment and sweep all run under one ``threading.Lock``,
    so a limiter may be shared by the event loop and worker threads.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from portcullis.constants import (
    RATE_LIMIT_LIMIT_HEADER,
    RATE_LIMIT_REMAINING_HEADER,
    RATE_LIMIT_RESET_HEADER,
    RETRY_AFTER_HEADER,
)
from portcullis.utils.logger import get_logger

logger = get_logger(__name__)


def epoch_ms() -> int:
    """Current wall-clock time in integer epoch milliseconds."""
    return int(time.time() * 1000)


# ─── Data Types ───────────────────────────────────────────────────────────────


@dataclass
class RateLimitEntry:
    """Request count for one key within its current window.

    Attributes:
        count:       Requests admitted in this window (0 ≤ count ≤ max_requests).
        reset_at_ms: Absolute epoch ms at which the window ends.
    """

    count: int
    reset_at_ms: int


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of :meth:`FixedWindowRateLimiter.hit` for one request."""

    allowed: bool
    limit: int
    remaining: int
    reset_at_ms: int
    retry_after_s: int

    @property
    def reset_epoch_s(self) -> int:
        """Window end in epoch seconds, rounded up."""
        return math.ceil(self.reset_at_ms / 1000)

    def headers(self) -> dict[str, str]:
        """Response headers for this decision.

        Admitted requests carry the ``X-RateLimit-*`` trio; rejected ones carry
        ``Retry-After`` only.
        """
        if not self.allowed:
            return {RETRY_AFTER_HEADER: str(self.retry_after_s)}
        return {
            RATE_LIMIT_LIMIT_HEADER: str(self.limit),
            RATE_LIMIT_REMAINING_HEADER: str(self.remaining),
            RATE_LIMIT_RESET_HEADER: str(self.reset_epoch_s),
        }


# ─── FixedWindowRateLimiter ───────────────────────────────────────────────────


class FixedWindowRateLimiter:
    """Per-key fixed-window quota over an in-memory table.

    Args:
        window_ms:    Window length in milliseconds (> 0).
        max_requests: Requests admitted per key per window (> 0).
        clock:        Callable returning current epoch ms. Injected by tests.

    Usage::

        limiter = FixedWindowRateLimiter(window_ms=60_000, max_requests=100)
        decision = limiter.hit("10.0.0.7")
        if not decision.allowed:
            ...  # respond 429 with decision.headers()
    """

    def __init__(
        self,
        window_ms: int,
        max_requests: int,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        if window_ms <= 0:
            raise ValueError(f"window_ms must be positive, got {window_ms}")
        if max_requests <= 0:
            raise ValueError(f"max_requests must be positive, got {max_requests}")

        self.window_ms = window_ms
        self.max_requests = max_requests
        self._clock: Callable[[], int] = clock or epoch_ms
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = threading.Lock()
        self._last_cleanup_ms: int = self._clock()

    # ── Admission ─────────────────────────────────────────────────────────────

    def hit(self, key: str) -> RateLimitDecision:
        """Count one request for ``key`` and decide whether it is admitted.

        A rejected request leaves the entry untouched.
        """
        with self._lock:
            now = self._clock()
            self._sweep_locked(now)

            entry = self._entries.get(key)
            if entry is None or entry.reset_at_ms <= now:
                entry = RateLimitEntry(count=0, reset_at_ms=now + self.window_ms)
                self._entries[key] = entry

            if entry.count >= self.max_requests:
                retry_after_s = max(0, math.ceil((entry.reset_at_ms - now) / 1000))
                return RateLimitDecision(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    reset_at_ms=entry.reset_at_ms,
                    retry_after_s=retry_after_s,
                )

            entry.count += 1
            return RateLimitDecision(
                allowed=True,
                limit=self.max_requests,
                remaining=max(0, self.max_requests - entry.count),
                reset_at_ms=entry.reset_at_ms,
                retry_after_s=0,
            )

    # ── Garbage collection ────────────────────────────────────────────────────

    def sweep(self) -> bool:
        """Delete expired entries if at least one window has passed since the last sweep.

        Returns:
            True if the sweep ran, False if it was skipped as too soon.
        """
        with self._lock:
            return self._sweep_locked(self._clock())

    def _sweep_locked(self, now: int) -> bool:
        if now - self._last_cleanup_ms < self.window_ms:
            return False
        self._last_cleanup_ms = now

        expired = [key for key, entry in self._entries.items() if entry.reset_at_ms <= now]
        for key in expired:
            del self._entries[key]

        if expired:
            logger.debug(
                "rate_limit_sweep",
                removed=len(expired),
                remaining_keys=len(self._entries),
            )
        return True

    # ── Introspection ─────────────────────────────────────────────────────────

    def get(self, key: str) -> Optional[RateLimitEntry]:
        """Return a copy of the entry for ``key`` (expired or not), if any."""
        with self._lock:
            entry = self._entries.get(key)
            return RateLimitEntry(entry.count, entry.reset_at_ms) if entry else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
