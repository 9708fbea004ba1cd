"""Runtime configuration from environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from polyexec import constants


class Settings(BaseSettings):
    """Runtime configuration from environment variables.

    All settings can be overridden via environment variables with POLYEXEC_ prefix.
    Example: POLYEXEC_DOCKER_HOST=tcp://10.0.0.5:2375
    Per-language images: POLYEXEC_IMAGES__PYTHON=python:3.12-alpine
    """

    model_config = SettingsConfigDict(
        env_prefix="POLYEXEC_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Daemon endpoint (opaque; None = docker-py defaults from DOCKER_HOST etc.)
    docker_host: str | None = None
    fallback_docker_host: str | None = constants.DEFAULT_DOCKER_SOCKET
    docker_timeout_seconds: int = constants.DOCKER_CLIENT_TIMEOUT_SECONDS

    # Per-language image overrides, keyed by language id
    images: dict[str, str] = Field(default_factory=dict)

    # Limits
    max_concurrent_sessions: int = 10
    admission_timeout_seconds: float = constants.ADMISSION_TIMEOUT_SECONDS
    max_source_bytes: int = constants.MAX_SOURCE_BYTES
    max_stdin_bytes: int = constants.MAX_STDIN_BYTES
    max_timeout_ms: int = constants.MAX_TIMEOUT_MS

    # Output capture caps per stream
    stdout_limit_bytes: int = constants.MAX_STDOUT_SIZE
    stderr_limit_bytes: int = constants.MAX_STDERR_SIZE

    # Daemon health
    health_failure_threshold: int = constants.HEALTH_FAILURE_THRESHOLD
    health_backoff_floor_ms: int = constants.HEALTH_BACKOFF_FLOOR_MS
    health_backoff_ceiling_ms: int = constants.HEALTH_BACKOFF_CEILING_MS

    # Teardown
    teardown_retry_attempts: int = constants.TEARDOWN_RETRY_ATTEMPTS
    reap_orphans_on_start: bool = True

    # Resource overcommit
    memory_overcommit_ratio: float = constants.DEFAULT_MEMORY_OVERCOMMIT_RATIO
    host_memory_reserve_ratio: float = constants.DEFAULT_HOST_MEMORY_RESERVE_RATIO
    # Host memory override (None = auto-detect via psutil)
    host_memory_mb: float | None = None
