"""Exception hierarchy for polyexec.

All exceptions inherit from SandboxError base class.

Hierarchy:
    SandboxError (base)
    ├── TransientError (retryable marker base)
    │   └── ProvisioningError              ← no sandbox could be created
    │       ├── DaemonUnavailableError     ← daemon down or in backoff window
    │       ├── CapacityError              ← all sandbox slots busy (temporary)
    │       └── ImageNotFoundError         ← runtime image missing (also permanent)
    ├── PermanentError (non-retryable marker base)
    │   ├── SessionStateError              ← invalid lifecycle transition
    │   └── ImageNotFoundError
    ├── InputValidationError (caller-bug marker base)
    │   ├── UnsupportedLanguageError       ← language id not registered
    │   ├── CodeValidationError            ← empty/null-byte code
    │   ├── PayloadTooLargeError           ← source or stdin over size limit
    │   ├── ArgumentValidationError        ← argv count/content
    │   └── TimeoutValidationError         ← timeout override out of range
    ├── SandboxRuntimeError                ← daemon failed after provisioning
    └── TeardownError                      ← container removal unconfirmed

Compile errors, runtime errors and timeouts are not exceptions: they are
reported through ExecutionResult.status.

Aliases:
    ValidationError = InputValidationError
"""

from __future__ import annotations

from typing import Any


class SandboxError(Exception):
    """Base exception for all polyexec errors with structured context.

    All custom exceptions in this module inherit from this base class,
    allowing callers to catch any sandbox-related error with a single handler.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Transient vs Permanent Error Base Classes
# =============================================================================


class TransientError(SandboxError):
    """Base for transient errors that may succeed on retry.

    Use this as a marker base class to identify errors that are
    potentially recoverable through retry (e.g., daemon restarts,
    busy sandbox slots).
    """


class PermanentError(SandboxError):
    """Base for permanent errors that won't succeed on retry.

    Use this as a marker base class to identify errors that are
    not recoverable through retry (e.g., missing images, programming errors).
    """


# =============================================================================
# Provisioning Errors
# =============================================================================


class ProvisioningError(TransientError):
    """No sandbox could be created for the request.

    The caller may retry later; the daemon health backoff governs
    when a retry can actually reach the daemon.
    """


class DaemonUnavailableError(ProvisioningError):
    """Container daemon unreachable.

    Raised without contacting the daemon while the health monitor's
    backoff window is open, or when a daemon call fails at connection level.
    """


class CapacityError(ProvisioningError):
    """All sandbox slots busy.

    Raised when the admission controller cannot grant a slot within its
    timeout. Capacity frees up as other sessions are torn down.
    """


class ImageNotFoundError(ProvisioningError, PermanentError):
    """Runtime image for the language is not present on the daemon.

    Retrying does not help until the image is pulled (see Engine.pull_images).
    """


class ImageBuildError(PermanentError):
    """A locally defined runtime image failed to build."""


class SessionStateError(PermanentError):
    """Invalid session lifecycle transition (programming error)."""


# =============================================================================
# Input Validation Errors
# =============================================================================


class InputValidationError(SandboxError):
    """Base for input validation errors (caller bugs, not daemon failures).

    These errors mean the caller passed invalid input. Nothing was
    provisioned; the caller should fix their input and retry.
    """


class UnsupportedLanguageError(InputValidationError):
    """Language identifier is not registered."""


class CodeValidationError(InputValidationError):
    """Code validation failed.

    Raised when the code string is empty, whitespace-only, or contains
    invalid characters (null bytes).
    """


class PayloadTooLargeError(InputValidationError):
    """Source code or stdin exceeds its configured byte limit."""


class ArgumentValidationError(InputValidationError):
    """Program arguments exceed count/length limits or contain null bytes."""


class TimeoutValidationError(InputValidationError):
    """Per-request timeout override is outside the accepted range."""


ValidationError = InputValidationError


# =============================================================================
# Post-provisioning Errors
# =============================================================================


class SandboxRuntimeError(SandboxError):
    """Daemon failed while a provisioned session was running.

    The pipeline maps this to an ExecutionResult with status
    ``sandbox_error``; it does not reach the caller as an exception.
    """


class TeardownError(SandboxError):
    """Container removal could not be confirmed.

    Logged and retried in the background; never delays or masks a result.
    """
