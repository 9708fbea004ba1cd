"""Engine - public entry point of polyexec.

Wires the registry, validator, health monitor, daemon connection,
admission controller, orchestrator and pipeline together.

Example:
    ```python
    from polyexec import Engine

    async with Engine() as engine:
        result = await engine.execute("python", "print(input())", stdin="hi")
        print(result.output)  # "hi\\n"
    ```
"""

from __future__ import annotations

from collections.abc import Sequence
from types import TracebackType
from typing import Any, Self

import docker.errors

from polyexec._logging import get_logger
from polyexec.admission import AdmissionSnapshot, SessionAdmissionController
from polyexec.config import EngineConfig
from polyexec.daemon import ClientFactory, DaemonConnection, create_docker_client
from polyexec.exceptions import DaemonUnavailableError, ImageBuildError
from polyexec.health import HealthMonitor
from polyexec.models import ExecutionRequest, ExecutionResult, HealthStatus, LanguageInfo
from polyexec.orchestrator import ContainerOrchestrator
from polyexec.pipeline import ExecutionPipeline
from polyexec.registry import LanguageRegistry
from polyexec.validator import RequestValidator

logger = get_logger(__name__)


class Engine:
    """Sandboxed multi-language code execution.

    Use as an async context manager; start() and close() are also public
    for callers that manage lifetime explicitly. execute() starts the engine
    lazily if needed.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        registry: LanguageRegistry | None = None,
        health: HealthMonitor | None = None,
        client_factory: ClientFactory = create_docker_client,
    ) -> None:
        self.config = config or EngineConfig()
        cfg = self.config

        self._registry = registry or LanguageRegistry(image_overrides=cfg.images)
        self._health = health or HealthMonitor(
            failure_threshold=cfg.health_failure_threshold,
            backoff_floor_ms=cfg.health_backoff_floor_ms,
            backoff_ceiling_ms=cfg.health_backoff_ceiling_ms,
        )
        self._connection = DaemonConnection(
            self._health,
            docker_host=cfg.docker_host,
            fallback_docker_host=cfg.fallback_docker_host,
            timeout=cfg.docker_timeout_seconds,
            client_factory=client_factory,
        )
        self._admission = SessionAdmissionController(
            max_sessions=cfg.max_concurrent_sessions,
            memory_overcommit_ratio=cfg.memory_overcommit_ratio,
            host_memory_reserve_ratio=cfg.host_memory_reserve_ratio,
            host_memory_mb=cfg.host_memory_mb,
        )
        self._orchestrator = ContainerOrchestrator(
            self._connection,
            teardown_retry_attempts=cfg.teardown_retry_attempts,
        )
        self._validator = RequestValidator(
            self._registry,
            max_source_bytes=cfg.max_source_bytes,
            max_stdin_bytes=cfg.max_stdin_bytes,
            max_timeout_ms=cfg.max_timeout_ms,
        )
        self._pipeline = ExecutionPipeline(
            self._validator,
            self._orchestrator,
            self._admission,
            stdout_limit_bytes=cfg.stdout_limit_bytes,
            stderr_limit_bytes=cfg.stderr_limit_bytes,
            admission_timeout_seconds=cfg.admission_timeout_seconds,
        )
        self._started = False
        self._closed = False

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def start(self) -> None:
        """Measure host capacity and reap containers left by earlier runs. Idempotent."""
        if self._started:
            return
        self._started = True
        self._closed = False
        await self._admission.start()
        if self.config.reap_orphans_on_start:
            await self._orchestrator.reap_orphans()
        logger.info(
            "Engine started",
            extra={
                "languages": len(self._registry),
                "max_concurrent_sessions": self.config.max_concurrent_sessions,
            },
        )

    async def close(self) -> None:
        """Tear down live sessions and release the daemon connection. Idempotent."""
        if self._closed or not self._started:
            return
        self._closed = True
        self._started = False
        await self._orchestrator.close()
        logger.info("Engine closed")

    async def execute(
        self,
        language_id: str,
        code: str,
        stdin: str | None = None,
        args: Sequence[str] | None = None,
        timeout_ms: int | None = None,
    ) -> ExecutionResult:
        """Compile (if needed) and run code in a fresh sandbox.

        Args:
            language_id: Registered language id or alias (e.g. "python", "cpp")
            code: Source code
            stdin: Text fed to the program's standard input
            args: Program arguments
            timeout_ms: Override of the language's default wall-clock budget

        Returns:
            ExecutionResult; compile errors, runtime errors and timeouts are
            reported through its status, not raised

        Raises:
            ValidationError: Invalid request (nothing provisioned)
            ProvisioningError: Sandbox could not be created
        """
        if not self._started:
            await self.start()
        request = ExecutionRequest(
            language_id=language_id,
            source_code=code,
            stdin=stdin,
            args=tuple(args or ()),
            timeout_ms=timeout_ms,
        )
        return await self._pipeline.run(request)

    def list_languages(self) -> list[LanguageInfo]:
        return self._registry.list_languages()

    def health(self) -> HealthStatus:
        return self._health.snapshot()

    def capacity(self) -> AdmissionSnapshot:
        return self._admission.snapshot()

    async def ping(self) -> bool:
        return await self._connection.ping()

    async def system_info(self) -> dict[str, Any]:
        """Daemon and engine diagnostics.

        Raises:
            DaemonUnavailableError: Daemon unreachable
        """
        info = await self._orchestrator.system_info()
        capacity = self._admission.snapshot()
        info["active_sessions"] = self._orchestrator.active_sessions
        info["max_concurrent_sessions"] = capacity.max_sessions
        info["health"] = self._health.snapshot().model_dump()
        return info

    async def pull_images(self, language_ids: Sequence[str] | None = None) -> dict[str, str]:
        """Pull (or build, for locally defined images) runtime images so first
        executions don't fail on missing images.

        Returns:
            Mapping image -> "pulled", "built" or "failed: <reason>"
        """
        recipes = self._registry.image_recipes(language_ids)

        results: dict[str, str] = {}
        for image in sorted(recipes):
            dockerfile = recipes[image]
            try:
                if dockerfile is None:
                    await self._orchestrator.pull_image(image)
                    results[image] = "pulled"
                else:
                    await self._orchestrator.build_image(image, dockerfile)
                    results[image] = "built"
            except (DaemonUnavailableError, ImageBuildError, docker.errors.APIError) as e:
                logger.warning("Image preparation failed", extra={"image": image, "error": str(e)})
                results[image] = f"failed: {e}"
        return results
