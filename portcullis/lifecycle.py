"""Process lifecycle state machine for Portcullis.

States::

    starting ──mark_running()──▶ running ──begin_drain()──▶ draining ──mark_terminated()──▶ terminated
        └────────────────────────begin_drain()───────────────────▲

``begin_drain()`` is triggered by SIGTERM/SIGINT (see ``portcullis.run``) or by
lifespan shutdown. It arms a forced-termination timer: if ``mark_terminated()``
is not reached within ``timeout_s``, the supplied ``on_timeout`` callback runs
(in production: log ``shutdown_forced`` and exit 1). Repeat signals while
draining are ignored.

The readiness check reads ``Lifecycle.is_running``: a draining process reports
not-ready so load balancers stop routing to it while in-flight requests finish.
"""

from __future__ import annotations

import enum
import threading
from typing import Callable, Optional

from portcullis.constants import SHUTDOWN_TIMEOUT_S


class LifecycleState(str, enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"
    TERMINATED = "terminated"


class Lifecycle:
    """Explicit running/draining/terminated state with a bounded drain.

    Args:
        timeout_s: Drain budget before ``on_timeout`` fires.

    Thread-safety:
        Transitions are guarded by a lock; signal handlers, the event loop and
        the timer thread may all call into one instance.
    """

    def __init__(self, timeout_s: float = SHUTDOWN_TIMEOUT_S) -> None:
        self.timeout_s = timeout_s
        self._state = LifecycleState.STARTING
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self.drain_reason: Optional[str] = None

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is LifecycleState.RUNNING

    def mark_running(self) -> None:
        """Move from starting to running. No-op in any other state."""
        with self._lock:
            if self._state is LifecycleState.STARTING:
                self._state = LifecycleState.RUNNING

    def begin_drain(
        self,
        reason: str,
        on_timeout: Optional[Callable[[], None]] = None,
    ) -> bool:
        """Enter draining and arm the forced-termination timer.

        Args:
            reason:     What triggered the drain (signal name, "lifespan").
            on_timeout: Called from a daemon timer thread if the drain has not
                        completed within ``timeout_s``. ``None`` arms no timer.

        Returns:
            True if this call started the drain; False if already draining or
            terminated.
        """
        with self._lock:
            if self._state in (LifecycleState.DRAINING, LifecycleState.TERMINATED):
                return False
            self._state = LifecycleState.DRAINING
            self.drain_reason = reason

            if on_timeout is not None:
                self._timer = threading.Timer(self.timeout_s, self._expire, args=(on_timeout,))
                self._timer.daemon = True
                self._timer.start()
        return True

    def _expire(self, on_timeout: Callable[[], None]) -> None:
        with self._lock:
            if self._state is not LifecycleState.DRAINING:
                return
        on_timeout()

    def mark_terminated(self) -> None:
        """Finish the lifecycle and cancel any pending forced-termination timer."""
        with self._lock:
            self._state = LifecycleState.TERMINATED
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
