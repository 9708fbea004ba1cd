"""polyexec: Sandboxed multi-language code execution in containers.

Compiles (where needed) and runs untrusted snippets inside ephemeral,
network-disabled, resource-bounded Docker containers and returns captured
output, exit status and timing.

Quick Start:
    ```python
    from polyexec import Engine

    async with Engine() as engine:
        result = await engine.execute("python", "print('hello')")
        print(result.output)  # "hello\\n"
    ```

Compiled languages, stdin and arguments:
    ```python
    async with Engine() as engine:
        result = await engine.execute(
            "c",
            '#include <stdio.h>\\nint main(){int x; scanf("%d",&x); printf("%d\\\\n", x*2);}',
            stdin="21",
        )
        print(result.output)  # "42\\n"
    ```

With Configuration:
    ```python
    from polyexec import Engine, EngineConfig

    config = EngineConfig(
        docker_host="tcp://10.0.0.5:2375",
        max_concurrent_sessions=4,
        images={"python": "python:3.12-alpine"},
    )
    async with Engine(config) as engine:
        ...
    ```

Sandbox isolation (per execution):
    1. One fresh container, never reused
    2. No network (network mode "none")
    3. Non-root user (65534), all capabilities dropped, no-new-privileges
    4. Memory (no swap), CPU, PID and ulimit caps
    5. Hard wall-clock deadline; the container is killed on expiry

Requirements:
    - A reachable Docker daemon (DOCKER_HOST or POLYEXEC_DOCKER_HOST)
    - Language images pulled (Engine.pull_images / `polyexec --pull`)
    - Python 3.12+
"""

from polyexec.config import EngineConfig
from polyexec.engine import Engine
from polyexec.exceptions import (
    ArgumentValidationError,
    CapacityError,
    CodeValidationError,
    DaemonUnavailableError,
    ImageBuildError,
    ImageNotFoundError,
    InputValidationError,
    PayloadTooLargeError,
    PermanentError,
    ProvisioningError,
    SandboxError,
    SandboxRuntimeError,
    SessionStateError,
    TeardownError,
    TimeoutValidationError,
    TransientError,
    UnsupportedLanguageError,
    ValidationError,
)
from polyexec.health import HealthMonitor
from polyexec.models import (
    ExecutionRequest,
    ExecutionResult,
    ExecutionStatus,
    HealthStatus,
    LanguageConfig,
    LanguageInfo,
)
from polyexec.registry import LanguageRegistry

__all__ = [
    "ArgumentValidationError",
    "CapacityError",
    "CodeValidationError",
    "DaemonUnavailableError",
    "Engine",
    "EngineConfig",
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionStatus",
    "HealthMonitor",
    "HealthStatus",
    "ImageBuildError",
    "ImageNotFoundError",
    "InputValidationError",
    "LanguageConfig",
    "LanguageInfo",
    "LanguageRegistry",
    "PayloadTooLargeError",
    "PermanentError",
    "ProvisioningError",
    "SandboxError",
    "SandboxRuntimeError",
    "SessionStateError",
    "TeardownError",
    "TimeoutValidationError",
    "TransientError",
    "UnsupportedLanguageError",
    "ValidationError",
]

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("polyexec")
except PackageNotFoundError:
    __version__ = "0.0.0.dev0"
