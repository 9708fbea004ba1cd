"""Session - one ephemeral sandbox bound to one execution.

A Session owns exactly one container for its whole life and is never
reused. The orchestrator creates it, the pipeline drives it through its
states, and teardown always ends it in REAPED.

Lifecycle:
    CREATED -> PROVISIONING -> RUNNING -> {COMPLETED | TIMED_OUT | RUNTIME_FAILED} -> REAPED
    PROVISIONING -> PROVISIONING_FAILED -> REAPED
    any non-reaped state -> REAPED (caller cancellation)
"""

from __future__ import annotations

import asyncio
import time
from typing import Any
from uuid import uuid4

from polyexec._logging import get_logger
from polyexec.constants import CONTAINER_NAME_PREFIX
from polyexec.exceptions import SessionStateError
from polyexec.models import LanguageConfig
from polyexec.session_types import TERMINAL_OUTCOMES, VALID_STATE_TRANSITIONS, SessionState

logger = get_logger(__name__)


class Session:
    """Per-execution sandbox record.

    Attributes:
        session_id: Unique id (uuid4 hex)
        language: Frozen language config shared with other sessions
        container_name: Daemon-side name, derived from session_id
        container: Opaque daemon handle (None until provisioned)
        timeout_ms: Wall-clock budget for compile + run
        created_at: Monotonic creation time
        deadline: Monotonic time at which the session times out
    """

    def __init__(
        self,
        language: LanguageConfig,
        timeout_ms: int,
        session_id: str | None = None,
    ) -> None:
        self.session_id = session_id or uuid4().hex
        self.language = language
        self.container_name = f"{CONTAINER_NAME_PREFIX}{self.session_id}"
        self.container: Any = None
        self.timeout_ms = timeout_ms
        self.created_at = time.monotonic()
        self.deadline = self.created_at + timeout_ms / 1000
        self.teardown_started = False
        self._state = SessionState.CREATED
        self._state_lock = asyncio.Lock()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def reaped(self) -> bool:
        return self._state is SessionState.REAPED

    @property
    def outcome_decided(self) -> bool:
        return self._state in TERMINAL_OUTCOMES

    @property
    def container_id(self) -> str | None:
        return getattr(self.container, "id", None)

    def remaining_seconds(self) -> float:
        """Seconds left until the deadline (never negative)."""
        return max(0.0, self.deadline - time.monotonic())

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.created_at) * 1000)

    async def transition_state(self, new_state: SessionState) -> None:
        """Transition to new_state with validation.

        Raises:
            SessionStateError: Transition not allowed from the current state
        """
        async with self._state_lock:
            allowed_transitions = VALID_STATE_TRANSITIONS.get(self._state, set())
            if new_state not in allowed_transitions:
                raise SessionStateError(
                    f"Invalid state transition: {self._state.value} -> {new_state.value}",
                    context={
                        "session_id": self.session_id,
                        "current_state": self._state.value,
                        "target_state": new_state.value,
                        "allowed_transitions": sorted(s.value for s in allowed_transitions),
                    },
                )
            old_state = self._state
            self._state = new_state
            logger.debug(
                "Session state transition",
                extra={
                    "session_id": self.session_id,
                    "language": self.language.id,
                    "old_state": old_state.value,
                    "new_state": new_state.value,
                },
            )

    def __repr__(self) -> str:
        return f"Session(id={self.session_id!r}, language={self.language.id!r}, state={self._state.value})"
