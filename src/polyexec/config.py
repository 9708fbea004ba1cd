"""Engine configuration for polyexec.

EngineConfig provides all configuration options for the Engine,
including daemon endpoint, concurrency, request limits and health backoff.

Example:
    ```python
    from polyexec import Engine, EngineConfig

    # Default configuration
    async with Engine() as engine:
        result = await engine.execute("python", "print('hello')")

    # Custom configuration
    config = EngineConfig(
        max_concurrent_sessions=4,
        docker_host="tcp://10.0.0.5:2375",
    )
    async with Engine(config) as engine:
        result = await engine.execute("go", "...")

    # From POLYEXEC_* environment variables
    async with Engine(EngineConfig.from_env()) as engine:
        ...
    ```
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from polyexec import constants
from polyexec.settings import Settings


class EngineConfig(BaseModel):
    """Configuration for Engine.

    All fields have sensible defaults for local development.
    Production deployments should tune max_concurrent_sessions based on host resources.

    Attributes:
        docker_host: Daemon endpoint (opaque string, e.g. ``unix:///run/docker.sock``).
            None uses docker-py's environment defaults (DOCKER_HOST etc.).
        fallback_docker_host: Endpoint tried once if docker_host is unreachable.
        max_concurrent_sessions: Maximum sandboxes alive at once. Default: 10.
        max_source_bytes / max_stdin_bytes: UTF-8 size ceilings for request payloads.
        stdout_limit_bytes / stderr_limit_bytes: Capture limits per stream.
        health_*: Failure threshold and backoff window bounds for the daemon monitor.
        images: Per-language image overrides keyed by language id.
    """

    model_config = ConfigDict(
        frozen=True,  # Immutable after creation
        extra="forbid",  # Reject unknown fields
    )

    # Daemon
    docker_host: str | None = Field(
        default=None,
        description="Daemon endpoint (None = docker-py environment defaults)",
    )
    fallback_docker_host: str | None = Field(
        default=constants.DEFAULT_DOCKER_SOCKET,
        description="Endpoint tried once when docker_host is unreachable (None disables)",
    )
    docker_timeout_seconds: int = Field(
        default=constants.DOCKER_CLIENT_TIMEOUT_SECONDS,
        ge=1,
        le=600,
        description="HTTP timeout for a single daemon call",
    )

    # Concurrency
    max_concurrent_sessions: int = Field(
        default=10,
        ge=1,
        le=256,
        description="Maximum concurrent sandboxes",
    )
    admission_timeout_seconds: float = Field(
        default=constants.ADMISSION_TIMEOUT_SECONDS,
        gt=0,
        description="Maximum wait for a free sandbox slot",
    )
    memory_overcommit_ratio: float = Field(default=constants.DEFAULT_MEMORY_OVERCOMMIT_RATIO, gt=0, le=10)
    host_memory_reserve_ratio: float = Field(default=constants.DEFAULT_HOST_MEMORY_RESERVE_RATIO, ge=0, lt=1)
    host_memory_mb: float | None = Field(
        default=None,
        gt=0,
        description="Host memory override in MB (None = read from psutil)",
    )

    # Request limits
    max_source_bytes: int = Field(default=constants.MAX_SOURCE_BYTES, ge=1)
    max_stdin_bytes: int = Field(default=constants.MAX_STDIN_BYTES, ge=0)
    max_timeout_ms: int = Field(default=constants.MAX_TIMEOUT_MS, ge=constants.MIN_TIMEOUT_MS)

    # Output capture
    stdout_limit_bytes: int = Field(default=constants.MAX_STDOUT_SIZE, ge=1, le=constants.MAX_STDOUT_SIZE)
    stderr_limit_bytes: int = Field(default=constants.MAX_STDERR_SIZE, ge=1, le=constants.MAX_STDERR_SIZE)

    # Daemon health
    health_failure_threshold: int = Field(default=constants.HEALTH_FAILURE_THRESHOLD, ge=1)
    health_backoff_floor_ms: int = Field(default=constants.HEALTH_BACKOFF_FLOOR_MS, ge=1)
    health_backoff_ceiling_ms: int = Field(default=constants.HEALTH_BACKOFF_CEILING_MS, ge=1)

    # Teardown
    teardown_retry_attempts: int = Field(default=constants.TEARDOWN_RETRY_ATTEMPTS, ge=0, le=50)
    reap_orphans_on_start: bool = Field(
        default=True,
        description="Remove leftover polyexec containers when the engine starts",
    )

    # Languages
    images: dict[str, str] = Field(
        default_factory=dict,
        description="Per-language image overrides keyed by language id",
    )

    @model_validator(mode="after")
    def _check_backoff_bounds(self) -> EngineConfig:
        if self.health_backoff_ceiling_ms < self.health_backoff_floor_ms:
            raise ValueError("health_backoff_ceiling_ms must be >= health_backoff_floor_ms")
        if self.max_stdin_bytes > self.max_source_bytes:
            raise ValueError("max_stdin_bytes must not exceed max_source_bytes")
        return self

    @classmethod
    def from_env(cls, settings: Settings | None = None) -> EngineConfig:
        """Build a config from POLYEXEC_* environment variables."""
        s = settings or Settings()
        return cls(
            docker_host=s.docker_host,
            fallback_docker_host=s.fallback_docker_host,
            docker_timeout_seconds=s.docker_timeout_seconds,
            max_concurrent_sessions=s.max_concurrent_sessions,
            admission_timeout_seconds=s.admission_timeout_seconds,
            memory_overcommit_ratio=s.memory_overcommit_ratio,
            host_memory_reserve_ratio=s.host_memory_reserve_ratio,
            host_memory_mb=s.host_memory_mb,
            max_source_bytes=s.max_source_bytes,
            max_stdin_bytes=s.max_stdin_bytes,
            max_timeout_ms=s.max_timeout_ms,
            stdout_limit_bytes=s.stdout_limit_bytes,
            stderr_limit_bytes=s.stderr_limit_bytes,
            health_failure_threshold=s.health_failure_threshold,
            health_backoff_floor_ms=s.health_backoff_floor_ms,
            health_backoff_ceiling_ms=s.health_backoff_ceiling_ms,
            teardown_retry_attempts=s.teardown_retry_attempts,
            reap_orphans_on_start=s.reap_orphans_on_start,
            images={k.lower(): v for k, v in s.images.items()},
        )
