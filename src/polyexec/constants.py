"""Constants for polyexec configuration and limits."""

from typing import Final

# ============================================================================
# Request Limits
# ============================================================================

MAX_SOURCE_BYTES: Final[int] = 1024 * 1024  # 1MB
"""Maximum size in bytes (UTF-8) for submitted source code."""

MAX_STDIN_BYTES: Final[int] = 10 * 1024  # 10KB
"""Maximum size in bytes (UTF-8) for submitted stdin."""

MAX_ARGS: Final[int] = 64
"""Maximum number of command-line arguments passed to a program."""

MAX_ARG_LENGTH: Final[int] = 4096
"""Maximum length of a single command-line argument."""

# ============================================================================
# Execution Timeouts
# ============================================================================

MIN_TIMEOUT_MS: Final[int] = 100
"""Smallest accepted per-request timeout override in milliseconds."""

MAX_TIMEOUT_MS: Final[int] = 60_000
"""Largest accepted per-request timeout in milliseconds (1 minute)."""

KEEPER_GRACE_SECONDS: Final[int] = 30
"""Extra lifetime given to a container's idle keeper process beyond its deadline.
An orphaned container exits (and auto-removes) once the keeper expires."""

ADMISSION_TIMEOUT_SECONDS: Final[float] = 30.0
"""Maximum time a request waits for a free sandbox slot."""

# ============================================================================
# Output Capture
# ============================================================================

MAX_STDOUT_SIZE: Final[int] = 1_000_000  # 1MB
"""Maximum stdout capture size in bytes."""

MAX_STDERR_SIZE: Final[int] = 100_000  # 100KB
"""Maximum stderr capture size in bytes."""

TRUNCATION_MARKER: Final[str] = "\n[output truncated]"
"""Suffix appended to a stream whose capture limit was reached."""

# Control characters stripped from captured output (terminal escape injection prevention)
# Keeps: tab (0x09), LF (0x0A), CR (0x0D)
OUTPUT_FORBIDDEN_CONTROL_CHARS: Final[frozenset[int]] = frozenset(
    list(range(0x09))  # NUL through BS
    + [0x0B, 0x0C]  # VT, FF
    + list(range(0x0E, 0x20))  # SO through US (includes ESC at 0x1B)
    + [0x7F]  # DEL
)
"""Control characters removed from captured stdout/stderr."""

# ============================================================================
# Sandbox Layout
# ============================================================================

SANDBOX_WORKDIR: Final[str] = "/sandbox"
"""Directory inside the container holding the injected source and stdin."""

STDIN_FILENAME: Final[str] = ".stdin"
"""Name of the injected stdin file inside SANDBOX_WORKDIR."""

SANDBOX_UID: Final[int] = 65534
"""uid and gid of the unprivileged sandbox user (nobody:nogroup)."""

SANDBOX_USER: Final[str] = f"{SANDBOX_UID}:{SANDBOX_UID}"
"""uid:gid every sandboxed process runs as."""

TMPFS_SIZE_MB: Final[int] = 100
"""tmpfs /tmp size limit in MB (holds compiler output)."""

CONTAINER_NAME_PREFIX: Final[str] = "polyexec-"
"""Prefix of every container name created by polyexec."""

CONTAINER_LABEL: Final[str] = "io.polyexec.session"
"""Label key carrying the owning session id on every polyexec container."""

DEFAULT_PIDS_LIMIT: Final[int] = 64
"""Maximum processes per container (fork bomb prevention)."""

ULIMIT_NOFILE: Final[int] = 256
"""Open file descriptor limit inside the container."""

# ============================================================================
# Daemon Connection Health
# ============================================================================

DEFAULT_DOCKER_SOCKET: Final[str] = "unix:///var/run/docker.sock"
"""Local daemon endpoint tried once when the configured endpoint is unreachable."""

DOCKER_CLIENT_TIMEOUT_SECONDS: Final[int] = 30
"""HTTP timeout for a single daemon API call."""

HEALTH_FAILURE_THRESHOLD: Final[int] = 3
"""Consecutive daemon failures before the daemon is marked unavailable."""

HEALTH_BACKOFF_FLOOR_MS: Final[int] = 1_000
"""Initial (and post-recovery) backoff window in milliseconds."""

HEALTH_BACKOFF_CEILING_MS: Final[int] = 60_000
"""Upper bound for the backoff window in milliseconds."""

# ============================================================================
# Teardown
# ============================================================================

TEARDOWN_RETRY_ATTEMPTS: Final[int] = 5
"""Background attempts to remove a container the daemon could not confirm removed."""

TEARDOWN_RETRY_MIN_SECONDS: Final[float] = 0.5
"""Minimum backoff between background teardown attempts."""

TEARDOWN_RETRY_MAX_SECONDS: Final[float] = 10.0
"""Maximum backoff between background teardown attempts."""

KILL_SIGNAL: Final[str] = "SIGKILL"
"""Signal delivered to a container whose deadline expired."""

# ============================================================================
# Resource Admission
# ============================================================================

DEFAULT_MEMORY_OVERCOMMIT_RATIO: Final[float] = 1.0
"""Memory overcommit ratio for the admission budget (1.0 = no overcommit)."""

DEFAULT_HOST_MEMORY_RESERVE_RATIO: Final[float] = 0.1
"""Fraction of host memory kept out of the admission budget."""
