"""Admission controller for sandbox sessions.

Two admission gates (both must pass):
1. Slot count - at most max_sessions sandboxes alive at once
2. Memory budget - host_total * (1 - reserve_ratio) * overcommit_ratio,
   charged with each session's container memory limit

Both gates block via asyncio.Condition, timing out with CapacityError.

Graceful degradation: if the psutil query fails, the memory budget is set to
infinity and only the slot gate applies.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from typing import Final, Literal
from uuid import uuid4

import psutil

from polyexec._logging import get_logger
from polyexec.exceptions import CapacityError

logger = get_logger(__name__)

CapacitySource = Literal["manual", "psutil", "none", "unknown"]

_BYTES_PER_MB: Final[int] = 1024 * 1024

# Sentinel for "no limit" when the psutil query fails
_UNLIMITED: Final[float] = float("inf")


@dataclass(frozen=True)
class SessionReservation:
    """Tracks resources reserved by a single session admission."""

    session_id: str
    memory_mb: float
    # Unique key in _reservations; session ids are not trusted to be unique
    reservation_id: str = field(default_factory=lambda: str(uuid4()))


@dataclass
class AdmissionSnapshot:
    """Point-in-time view of admission controller state."""

    max_sessions: int
    host_memory_mb: float
    memory_budget_mb: float

    allocated_sessions: int = 0
    allocated_memory_mb: float = 0.0

    capacity_source: CapacitySource = "psutil"

    available_sessions: int = field(init=False)
    available_memory_mb: float = field(init=False)

    def __post_init__(self) -> None:
        self.available_sessions = max(0, self.max_sessions - self.allocated_sessions)
        self.available_memory_mb = max(0.0, self.memory_budget_mb - self.allocated_memory_mb)


class SessionAdmissionController:
    """Bounds concurrent sandboxes by slot count and host memory."""

    def __init__(
        self,
        max_sessions: int,
        memory_overcommit_ratio: float = 1.0,
        host_memory_reserve_ratio: float = 0.1,
        host_memory_mb: float | None = None,
    ) -> None:
        if max_sessions < 1:
            raise ValueError("max_sessions must be >= 1")
        self._max_sessions = max_sessions
        self._memory_overcommit_ratio = memory_overcommit_ratio
        self._host_memory_reserve_ratio = host_memory_reserve_ratio

        self._host_memory_mb: float = host_memory_mb if host_memory_mb is not None else 0.0
        self._memory_budget_mb: float = _UNLIMITED
        self._capacity_source: CapacitySource = "unknown"

        # Current allocations (protected by _condition's lock)
        self._allocated_sessions = 0
        self._allocated_memory_mb = 0.0
        self._reservations: dict[str, SessionReservation] = {}

        self._condition = asyncio.Condition()
        self._started = False
        self._start_lock = asyncio.Lock()

        if host_memory_mb is not None:
            self._capacity_source = "manual"
            self._compute_budget()
            self._started = True
            logger.info(
                "Host memory manually overridden for admission budget",
                extra={"host_memory_mb": host_memory_mb, "memory_budget_mb": round(self._memory_budget_mb)},
            )

    async def start(self) -> None:
        """Read host memory and compute the memory budget.

        Safe to call multiple times (idempotent after the first read).
        Degrades to an unlimited memory budget if psutil fails.
        """
        async with self._start_lock:
            if self._started:
                return
            try:
                loop = asyncio.get_running_loop()
                vmem = await loop.run_in_executor(None, psutil.virtual_memory)
                self._host_memory_mb = vmem.total / _BYTES_PER_MB
                self._capacity_source = "psutil"
                self._compute_budget()
                logger.info(
                    "Host resources detected",
                    extra={
                        "capacity_source": self._capacity_source,
                        "host_memory_mb": round(self._host_memory_mb),
                        "host_memory_reserve_ratio": self._host_memory_reserve_ratio,
                        "memory_budget_mb": round(self._memory_budget_mb),
                        "memory_overcommit_ratio": self._memory_overcommit_ratio,
                        "max_sessions": self._max_sessions,
                    },
                )
            except (OSError, AttributeError):
                logger.warning("Host memory query failed, using unlimited memory budget")
                self._memory_budget_mb = _UNLIMITED
                self._capacity_source = "none"
            self._started = True

    def _compute_budget(self) -> None:
        available_mb = self._host_memory_mb * (1.0 - self._host_memory_reserve_ratio)
        self._memory_budget_mb = max(0.0, available_mb) * self._memory_overcommit_ratio

    async def acquire(self, session_id: str, memory_bytes: int, timeout: float) -> SessionReservation:
        """Acquire a slot for a session, blocking while capacity is exhausted.

        Args:
            session_id: Session identifier (for logging)
            memory_bytes: Container memory limit charged against the budget
            timeout: Max seconds to wait

        Returns:
            SessionReservation to pass to release()

        Raises:
            CapacityError: No capacity within timeout
        """
        memory_mb = memory_bytes / _BYTES_PER_MB
        reservation = SessionReservation(session_id=session_id, memory_mb=memory_mb)

        try:
            async with asyncio.timeout(timeout):
                async with self._condition:
                    await self._condition.wait_for(lambda: self._can_admit(memory_mb))
                    self._allocated_sessions += 1
                    self._allocated_memory_mb += memory_mb
                    self._reservations[reservation.reservation_id] = reservation
                    logger.debug(
                        "Session slot acquired",
                        extra={
                            "session_id": session_id,
                            "reservation_id": reservation.reservation_id,
                            "reserved_memory_mb": round(memory_mb),
                            "sessions": self._allocated_sessions,
                            "total_allocated_memory_mb": round(self._allocated_memory_mb),
                        },
                    )
                    return reservation
        except TimeoutError:
            budget_str = "unlimited" if math.isinf(self._memory_budget_mb) else str(round(self._memory_budget_mb))
            raise CapacityError(
                f"No sandbox capacity after {timeout}s for session {session_id}. "
                f"{self._allocated_sessions}/{self._max_sessions} sessions in use, "
                f"{round(self._allocated_memory_mb)}/{budget_str}MB memory allocated, "
                f"requested {round(memory_mb)}MB.",
                context={
                    "session_id": session_id,
                    "requested_memory_mb": round(memory_mb),
                    "allocated_sessions": self._allocated_sessions,
                    "max_sessions": self._max_sessions,
                    "allocated_memory_mb": round(self._allocated_memory_mb),
                    "memory_budget_mb": budget_str,
                },
            ) from None

    async def release(self, reservation: SessionReservation) -> None:
        """Release a session's slot and wake waiters (idempotent)."""
        async with self._condition:
            if reservation.reservation_id not in self._reservations:
                logger.debug(
                    "Reservation already released (idempotent)",
                    extra={"session_id": reservation.session_id, "reservation_id": reservation.reservation_id},
                )
                return

            self._allocated_sessions -= 1
            self._allocated_memory_mb -= reservation.memory_mb
            del self._reservations[reservation.reservation_id]

            # Snap to zero when empty (prevents float drift)
            if self._allocated_sessions == 0:
                self._allocated_memory_mb = 0.0

            logger.debug(
                "Session slot released",
                extra={
                    "session_id": reservation.session_id,
                    "reservation_id": reservation.reservation_id,
                    "sessions": self._allocated_sessions,
                    "remaining_allocated_memory_mb": round(self._allocated_memory_mb),
                },
            )
            self._condition.notify_all()

    def snapshot(self) -> AdmissionSnapshot:
        """Return a point-in-time snapshot of admission state.

        SYNC-ONLY: atomicity relies on cooperative scheduling.
        """
        return AdmissionSnapshot(
            max_sessions=self._max_sessions,
            host_memory_mb=self._host_memory_mb,
            memory_budget_mb=self._memory_budget_mb,
            allocated_sessions=self._allocated_sessions,
            allocated_memory_mb=self._allocated_memory_mb,
            capacity_source=self._capacity_source,
        )

    def _can_admit(self, memory_mb: float) -> bool:
        # Gate 1: slots
        if self._allocated_sessions >= self._max_sessions:
            return False
        # Gate 2: memory budget. A lone session is always admitted so a
        # single oversized language cannot deadlock the queue.
        if self._allocated_sessions == 0:
            return True
        return self._allocated_memory_mb + memory_mb <= self._memory_budget_mb
