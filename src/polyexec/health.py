"""Daemon connection health monitor.

Tracks reachability of the container daemon and gates provisioning behind
an exponential backoff window so a down or flapping daemon is not hit on
every incoming request.

One instance is constructed by the Engine and passed to the orchestrator;
there is no module-level state. All methods are thread-safe because daemon
calls complete on worker threads.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

from polyexec._logging import get_logger
from polyexec.constants import HEALTH_BACKOFF_CEILING_MS, HEALTH_BACKOFF_FLOOR_MS, HEALTH_FAILURE_THRESHOLD
from polyexec.models import HealthStatus

logger = get_logger(__name__)


class HealthMonitor:
    """Consecutive-failure counter with a doubling backoff window.

    - success: failures reset, backoff back to floor, daemon available
    - failure: failures + 1, backoff doubles up to ceiling; the daemon is
      marked unavailable once failures reach the threshold
    - may_attempt(): available, or the backoff window since the last
      interaction has elapsed
    """

    def __init__(
        self,
        failure_threshold: int = HEALTH_FAILURE_THRESHOLD,
        backoff_floor_ms: int = HEALTH_BACKOFF_FLOOR_MS,
        backoff_ceiling_ms: int = HEALTH_BACKOFF_CEILING_MS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if backoff_ceiling_ms < backoff_floor_ms:
            raise ValueError("backoff_ceiling_ms must be >= backoff_floor_ms")
        self._failure_threshold = failure_threshold
        self._backoff_floor_ms = backoff_floor_ms
        self._backoff_ceiling_ms = backoff_ceiling_ms
        self._clock = clock
        self._lock = threading.Lock()

        self._is_available: bool | None = None
        self._consecutive_failures = 0
        self._backoff_ms = backoff_floor_ms
        self._last_checked: float | None = None  # monotonic, for the backoff window
        self._last_checked_wall: float | None = None  # reported in snapshots

    @property
    def is_available(self) -> bool | None:
        with self._lock:
            return self._is_available

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    @property
    def backoff_ms(self) -> int:
        with self._lock:
            return self._backoff_ms

    def record_success(self) -> None:
        with self._lock:
            recovered = self._is_available is False
            self._consecutive_failures = 0
            self._backoff_ms = self._backoff_floor_ms
            self._is_available = True
            self._touch()
        if recovered:
            logger.warning("Container daemon reachable again")

    def record_failure(self, error: BaseException | None = None) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._backoff_ms = min(self._backoff_ms * 2, self._backoff_ceiling_ms)
            became_unavailable = False
            if self._consecutive_failures >= self._failure_threshold and self._is_available is not False:
                self._is_available = False
                became_unavailable = True
            self._touch()
            failures = self._consecutive_failures
            backoff_ms = self._backoff_ms

        if became_unavailable:
            logger.warning(
                "Container daemon marked unavailable",
                extra={
                    "consecutive_failures": failures,
                    "backoff_ms": backoff_ms,
                    "error": str(error) if error is not None else None,
                    "error_type": type(error).__name__ if error is not None else None,
                },
            )
        else:
            logger.debug(
                "Container daemon call failed",
                extra={"consecutive_failures": failures, "backoff_ms": backoff_ms},
            )

    def may_attempt(self) -> bool:
        """Whether the daemon may be contacted now.

        Unknown state (no interaction yet) counts as available.
        """
        with self._lock:
            if self._is_available is not False:
                return True
            if self._last_checked is None:
                return True
            elapsed_ms = (self._clock() - self._last_checked) * 1000
            return elapsed_ms >= self._backoff_ms

    def snapshot(self) -> HealthStatus:
        with self._lock:
            return HealthStatus(
                is_available=self._is_available,
                consecutive_failures=self._consecutive_failures,
                backoff_ms=self._backoff_ms,
                last_checked_at=self._last_checked_wall,
            )

    def _touch(self) -> None:
        # Caller holds self._lock
        self._last_checked = self._clock()
        self._last_checked_wall = time.time()
