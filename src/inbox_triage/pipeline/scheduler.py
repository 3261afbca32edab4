"""Single-worker drain scheduler with coalesced triggers.

States: IDLE -> RUNNING -> (RERUN_REQUESTED -> RUNNING)* -> IDLE.
A trigger while IDLE starts a cycle; a trigger while RUNNING is remembered
once and causes exactly one follow-up check when the cycle finishes.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from enum import Enum

logger = logging.getLogger(__name__)


class DrainState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    RERUN_REQUESTED = "rerun_requested"
    STOPPED = "stopped"


class DrainScheduler:
    """Runs ``step`` repeatedly on one background thread until it reports no more work.

    ``step`` returns True when it processed something (so there may be more)
    and False when there was nothing to do. If it raises, the worker waits
    ``retry_delay`` seconds and tries again.
    """

    def __init__(
        self,
        step: Callable[[], bool],
        *,
        retry_delay: float = 5.0,
        name: str = "drain",
    ) -> None:
        self._step = step
        self._retry_delay = retry_delay
        self._name = name
        self._state = DrainState.IDLE
        self._cond = threading.Condition()
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> DrainState:
        with self._cond:
            return self._state

    def trigger(self) -> None:
        """Request a drain; coalesces with any cycle already running."""
        with self._cond:
            if self._state is DrainState.STOPPED:
                return
            if self._state is DrainState.IDLE:
                self._state = DrainState.RUNNING
                self._start_worker()
            elif self._state is DrainState.RUNNING:
                self._state = DrainState.RERUN_REQUESTED

    def _start_worker(self) -> None:
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while True:
            failed = False
            try:
                while self._step():
                    if self.state is DrainState.STOPPED:
                        return
            except Exception:
                logger.exception("Drain cycle failed; retrying in %.1fs", self._retry_delay)
                failed = True

            with self._cond:
                if self._state is DrainState.STOPPED:
                    self._cond.notify_all()
                    return
                if failed:
                    # Wait out the delay unless shut down meanwhile, then run again.
                    self._state = DrainState.RUNNING
                    self._cond.wait_for(
                        lambda: self._state is DrainState.STOPPED, timeout=self._retry_delay
                    )
                    if self._state is DrainState.STOPPED:
                        self._cond.notify_all()
                        return
                    continue
                if self._state is DrainState.RERUN_REQUESTED:
                    self._state = DrainState.RUNNING
                    continue
                self._state = DrainState.IDLE
                self._cond.notify_all()
                return

    def wait_until_idle(self, timeout: float | None = None) -> bool:
        """Block until no cycle is running. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(
                lambda: self._state in (DrainState.IDLE, DrainState.STOPPED), timeout=timeout
            )

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop accepting triggers and let the current step finish."""
        with self._cond:
            self._state = DrainState.STOPPED
            self._cond.notify_all()
            thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
