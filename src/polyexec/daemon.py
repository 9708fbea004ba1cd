"""Container daemon connection.

Wraps a docker-py client so that:
- the client is created lazily, trying the configured endpoint and then the
  fallback endpoint once
- every blocking SDK call runs in a worker thread (asyncio.to_thread)
- every call reports its outcome to the HealthMonitor

Connection-level failures (refused/timed-out HTTP, missing socket, daemon
5xx) count as daemon failures and surface as DaemonUnavailableError. Any
other answer from the daemon, including 404 and 409, proves it is alive and
is re-raised unchanged for the caller to interpret.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from typing import Any, TypeVar

import docker
import docker.errors
import requests.exceptions

from polyexec._logging import get_logger
from polyexec.constants import DOCKER_CLIENT_TIMEOUT_SECONDS
from polyexec.exceptions import DaemonUnavailableError
from polyexec.health import HealthMonitor

logger = get_logger(__name__)

T = TypeVar("T")

ClientFactory = Callable[[str | None, int], Any]

# Transport-level failures: the daemon never produced an answer
_CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    docker.errors.DockerException,
    ConnectionError,
    TimeoutError,
)


def create_docker_client(base_url: str | None, timeout: int) -> docker.DockerClient:
    """Default client factory.

    ``base_url=None`` defers to docker-py's environment handling
    (DOCKER_HOST, DOCKER_TLS_VERIFY, DOCKER_CERT_PATH).
    """
    if base_url is None:
        return docker.from_env(timeout=timeout)
    return docker.DockerClient(base_url=base_url, timeout=timeout)


def is_server_error(exc: docker.errors.APIError) -> bool:
    """True for 5xx responses (daemon broken), False for 4xx (request rejected)."""
    status = exc.status_code
    return status is not None and status >= 500


class DaemonConnection:
    """Shared daemon client guarded by a HealthMonitor.

    Example:
        ```python
        conn = DaemonConnection(health, docker_host="unix:///var/run/docker.sock")
        info = await conn.call("info", lambda client: client.info())
        ```
    """

    def __init__(
        self,
        health: HealthMonitor,
        docker_host: str | None = None,
        fallback_docker_host: str | None = None,
        timeout: int = DOCKER_CLIENT_TIMEOUT_SECONDS,
        client_factory: ClientFactory = create_docker_client,
    ) -> None:
        self._health = health
        self._docker_host = docker_host
        self._fallback_docker_host = fallback_docker_host
        self._timeout = timeout
        self._client_factory = client_factory
        self._client: Any = None
        self._endpoint: str | None = None
        self._client_lock = threading.Lock()

    @property
    def health(self) -> HealthMonitor:
        return self._health

    @property
    def endpoint(self) -> str | None:
        """Endpoint of the connected client (None until connected or when using env defaults)."""
        return self._endpoint

    def _connect(self) -> Any:
        """Return the shared client, creating and pinging it on first use.

        Runs on a worker thread. Tries the primary endpoint, then the
        fallback endpoint once.
        """
        with self._client_lock:
            if self._client is not None:
                return self._client

            candidates: list[str | None] = [self._docker_host]
            if self._fallback_docker_host and self._fallback_docker_host != self._docker_host:
                candidates.append(self._fallback_docker_host)

            last_error: BaseException | None = None
            for index, endpoint in enumerate(candidates):
                try:
                    client = self._client_factory(endpoint, self._timeout)
                    client.ping()
                except _CONNECTION_ERRORS as e:
                    last_error = e
                    logger.warning(
                        "Container daemon endpoint unreachable",
                        extra={"endpoint": endpoint or "<environment>", "error": str(e), "error_type": type(e).__name__},
                    )
                    continue
                if index > 0:
                    logger.warning("Using fallback container daemon endpoint", extra={"endpoint": endpoint})
                else:
                    logger.info("Connected to container daemon", extra={"endpoint": endpoint or "<environment>"})
                self._client = client
                self._endpoint = endpoint
                return client

            assert last_error is not None
            raise last_error

    async def call(self, operation: str, fn: Callable[[Any], T], **context: Any) -> T:
        """Run a blocking SDK call on a worker thread and record daemon health.

        Args:
            operation: Short name for logging (e.g. "create", "remove")
            fn: Callable receiving the docker client
            **context: Extra structured logging fields

        Raises:
            DaemonUnavailableError: Connection-level failure or daemon 5xx
            docker.errors.APIError: Daemon answered with a client error (4xx)
        """
        try:
            result = await asyncio.to_thread(self._invoke, fn)
        except docker.errors.APIError as e:
            if is_server_error(e):
                self._health.record_failure(e)
                logger.error(
                    "Container daemon error",
                    extra={"operation": operation, "status_code": e.status_code, "error": str(e), **context},
                )
                raise DaemonUnavailableError(
                    f"Container daemon failed during {operation}: {e.explanation or e}",
                    context={"operation": operation, "status_code": e.status_code, **context},
                ) from e
            self._health.record_success()
            raise
        except _CONNECTION_ERRORS as e:
            self._health.record_failure(e)
            logger.error(
                "Container daemon unreachable",
                extra={"operation": operation, "error": str(e), "error_type": type(e).__name__, **context},
            )
            raise DaemonUnavailableError(
                f"Container daemon unreachable during {operation}: {e}",
                context={"operation": operation, "error_type": type(e).__name__, **context},
            ) from e
        self._health.record_success()
        return result

    def _invoke(self, fn: Callable[[Any], T]) -> T:
        return fn(self._connect())

    async def ping(self) -> bool:
        """Ping the daemon. Never raises; the outcome is recorded in health."""
        try:
            await self.call("ping", lambda client: client.ping())
        except DaemonUnavailableError:
            return False
        except docker.errors.APIError:
            # Daemon answered, just not with 200
            return True
        return True

    async def system_info(self) -> dict[str, Any]:
        """Summarised daemon information (version, counts, capacity)."""
        info = await self.call("info", lambda client: client.info())
        return {
            "endpoint": self._endpoint,
            "server_version": info.get("ServerVersion"),
            "operating_system": info.get("OperatingSystem"),
            "architecture": info.get("Architecture"),
            "containers": info.get("Containers"),
            "containers_running": info.get("ContainersRunning"),
            "images": info.get("Images"),
            "cpus": info.get("NCPU"),
            "memory_total_bytes": info.get("MemTotal"),
        }

    async def close(self) -> None:
        client = self._client
        self._client = None
        if client is not None:
            await asyncio.to_thread(client.close)
