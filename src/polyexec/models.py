"""Data models for polyexec."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from polyexec.constants import DEFAULT_PIDS_LIMIT, MAX_STDERR_SIZE, MAX_STDOUT_SIZE

SOURCE_PLACEHOLDER = "{source}"
"""Command template token replaced by the absolute in-sandbox source path."""

ARGS_PLACEHOLDER = "{args}"
"""Command template token expanded into the caller's arguments (one argv entry each)."""


class LanguageConfig(BaseModel):
    """Static description of how to build and run one language.

    Commands are argv templates, never shell strings. ``{source}`` is replaced
    by the source path inside the sandbox and a standalone ``{args}`` entry
    expands into the caller's arguments.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(min_length=1, description="Registry key, e.g. 'python'")
    display_name: str = Field(description="Human-readable name, e.g. 'Python'")
    image: str = Field(min_length=1, description="Container image reference")
    dockerfile: str | None = Field(
        default=None,
        description="Recipe the image is built from locally (None = pulled from a registry)",
    )
    file_extension: str = Field(pattern=r"^\.[A-Za-z0-9]+$", description="Source file extension incl. dot")
    source_filename: str = Field(description="Name the source is written under inside the sandbox")
    compile_command: tuple[str, ...] | None = Field(default=None, description="Compile argv template (None = interpreted)")
    run_command: tuple[str, ...] = Field(min_length=1, description="Run argv template")
    default_timeout_ms: int = Field(gt=0, description="Wall-clock budget shared by compile and run")
    memory_limit_bytes: int = Field(gt=0, description="Container memory ceiling (swap disabled)")
    cpu_limit: float = Field(default=0.5, gt=0, le=8, description="CPU share in cores")
    pids_limit: int = Field(default=DEFAULT_PIDS_LIMIT, gt=0, description="Maximum processes in the container")
    environment: dict[str, str] = Field(default_factory=dict, description="Extra environment for compile/run")
    main_class: str | None = Field(default=None, description="Public class name the source is rewritten to (JVM)")
    network_disabled: bool = Field(default=True, description="Always True; sandboxes never get a network")
    run_as_non_root: bool = Field(default=True, description="Always True; sandboxes never run as root")

    @field_validator("network_disabled", "run_as_non_root")
    @classmethod
    def _must_be_true(cls, value: bool) -> bool:
        if not value:
            raise ValueError("sandbox isolation flags cannot be disabled")
        return value

    @property
    def compiled(self) -> bool:
        return self.compile_command is not None

    def info(self) -> "LanguageInfo":
        return LanguageInfo(
            id=self.id,
            display_name=self.display_name,
            file_extension=self.file_extension,
            compiled=self.compiled,
        )


class LanguageInfo(BaseModel):
    """Public view of a registered language (no image or commands)."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    file_extension: str
    compiled: bool = False


class ExecutionRequest(BaseModel):
    """Caller input for a single execution."""

    model_config = ConfigDict(frozen=True)

    language_id: str
    source_code: str
    stdin: str | None = None
    args: tuple[str, ...] = ()
    timeout_ms: int | None = Field(default=None, description="Override of the language default timeout")


class ExecutionStatus(str, Enum):
    """Terminal outcome of an execution."""

    COMPLETED = "completed"
    COMPILE_ERROR = "compile_error"
    RUNTIME_ERROR = "runtime_error"
    TIMED_OUT = "timed_out"
    SANDBOX_ERROR = "sandbox_error"


class ExecutionResult(BaseModel):
    """Result of running one snippet in a sandbox."""

    success: bool = Field(description="True only for a completed run with exit code 0")
    status: ExecutionStatus
    output: str = Field(default="", description="Program stdout (truncated at the capture limit)")
    error: str | None = Field(default=None, description="stderr, compiler diagnostics or timeout message")
    stdout: str = Field(default="", max_length=MAX_STDOUT_SIZE + 64, description="Raw captured stdout")
    stderr: str = Field(default="", max_length=MAX_STDERR_SIZE + 64, description="Raw captured stderr")
    exit_code: int | None = Field(default=None, description="Process exit code (None if never started or timed out)")
    execution_time_ms: int = Field(default=0, ge=0, description="Wall-clock time from provisioning to completion")
    timed_out: bool = False
    truncated: bool = Field(default=False, description="True if any captured stream hit its limit")
    language: str | None = None
    session_id: str | None = None


class HealthStatus(BaseModel):
    """Read-only view of daemon connection health."""

    is_available: bool | None = Field(description="None until the first daemon interaction")
    consecutive_failures: int = Field(ge=0)
    backoff_ms: int = Field(ge=0)
    last_checked_at: float | None = Field(default=None, description="Wall-clock timestamp of the last interaction")
