"""Session lifecycle states and allowed transitions."""

from enum import Enum
from typing import Final


class SessionState(str, Enum):
    """Lifecycle of one sandbox session."""

    CREATED = "created"
    PROVISIONING = "provisioning"
    RUNNING = "running"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    PROVISIONING_FAILED = "provisioning_failed"
    RUNTIME_FAILED = "runtime_failed"
    REAPED = "reaped"


TERMINAL_OUTCOMES: Final[frozenset[SessionState]] = frozenset(
    {
        SessionState.COMPLETED,
        SessionState.TIMED_OUT,
        SessionState.PROVISIONING_FAILED,
        SessionState.RUNTIME_FAILED,
    }
)
"""States that fix a session's outcome; only REAPED may follow."""

VALID_STATE_TRANSITIONS: Final[dict[SessionState, set[SessionState]]] = {
    SessionState.CREATED: {SessionState.PROVISIONING, SessionState.REAPED},
    SessionState.PROVISIONING: {
        SessionState.RUNNING,
        SessionState.PROVISIONING_FAILED,
        SessionState.REAPED,
    },
    SessionState.RUNNING: {
        SessionState.COMPLETED,
        SessionState.TIMED_OUT,
        SessionState.RUNTIME_FAILED,
        SessionState.REAPED,
    },
    SessionState.COMPLETED: {SessionState.REAPED},
    SessionState.TIMED_OUT: {SessionState.REAPED},
    SessionState.PROVISIONING_FAILED: {SessionState.REAPED},
    SessionState.RUNTIME_FAILED: {SessionState.REAPED},
    SessionState.REAPED: set(),
}
"""Allowed transitions. Every non-reaped state may go straight to REAPED
(caller cancellation tears the sandbox down immediately)."""
