"""Container orchestrator: the only component that touches containers.

One ephemeral container per session:

    provision  -> create + start an idle, locked-down container
    inject     -> upload source and stdin as a tar archive (no shell strings)
    start      -> docker exec of a fixed wrapper around the rendered argv
    await_completion -> drain output, race the session deadline, kill on timeout
    teardown   -> force-remove; idempotent, never raises

Every daemon call goes through DaemonConnection, which runs it on a worker
thread and feeds the HealthMonitor.
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import logging
from collections.abc import Awaitable, Callable, Iterator, Sequence
from dataclasses import dataclass
from typing import Any

import docker.errors
import docker.types
from docker.utils.socket import demux_adaptor, frames_iter
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
    wait_random_exponential,
)

from polyexec import constants
from polyexec._logging import get_logger
from polyexec.archive import build_payload
from polyexec.capture import OutputCapture
from polyexec.daemon import DaemonConnection
from polyexec.exceptions import (
    DaemonUnavailableError,
    ImageBuildError,
    ImageNotFoundError,
    ProvisioningError,
    SandboxRuntimeError,
    TeardownError,
)
from polyexec.models import LanguageConfig
from polyexec.resource_cleanup import cleanup_container, cleanup_orphans, kill_container
from polyexec.session import Session
from polyexec.session_types import SessionState

logger = get_logger(__name__)

# The wrapper is fixed: the program argv follows as positional parameters and
# stdin is redirected from the injected file. Nothing is interpolated.
_EXEC_WRAPPER: tuple[str, ...] = (
    "sh",
    "-c",
    f'exec "$@" < {constants.SANDBOX_WORKDIR}/{constants.STDIN_FILENAME}',
    "polyexec",
)


@dataclass
class ExecHandle:
    """A started exec and its demultiplexed (stdout, stderr) chunk stream."""

    exec_id: str
    stream: Iterator[tuple[bytes | None, bytes | None]]


@dataclass(frozen=True)
class Completion:
    """How a started command ended. exit_code is None when timed out."""

    exit_code: int | None
    timed_out: bool


def build_container_options(session: Session) -> dict[str, Any]:
    """Keyword arguments for containers.create() for a session's sandbox."""
    language: LanguageConfig = session.language
    keeper_seconds = int(session.timeout_ms / 1000) + constants.KEEPER_GRACE_SECONDS
    return {
        "image": language.image,
        "entrypoint": ["sleep"],
        "command": [str(keeper_seconds)],
        "name": session.container_name,
        "detach": True,
        "auto_remove": True,
        "network_mode": "none",
        "user": constants.SANDBOX_USER,
        "mem_limit": language.memory_limit_bytes,
        "memswap_limit": language.memory_limit_bytes,
        "nano_cpus": int(language.cpu_limit * 1_000_000_000),
        "pids_limit": language.pids_limit,
        "cap_drop": ["ALL"],
        "security_opt": ["no-new-privileges"],
        # Process count is bounded per container by pids_limit; RLIMIT_NPROC
        # would be shared by every sandbox running as the same uid
        "ulimits": [
            docker.types.Ulimit(name="nofile", soft=constants.ULIMIT_NOFILE, hard=constants.ULIMIT_NOFILE),
        ],
        "tmpfs": {"/tmp": f"rw,exec,nosuid,size={constants.TMPFS_SIZE_MB}m,mode=1777"},
        "environment": {"HOME": "/tmp", "TMPDIR": "/tmp", **language.environment},
        "labels": {
            constants.CONTAINER_LABEL: session.session_id,
            "io.polyexec.language": language.id,
        },
    }


def disable_read_timeout(sock: Any) -> None:
    """Clear the client's read timeout on a raw exec socket.

    A program may stay silent for longer than the HTTP timeout; the session
    deadline bounds how long its output is read instead. The socket may be
    a wrapper around the real one (``_sock``), so both are updated.
    """
    for candidate in (sock, getattr(sock, "_sock", None)):
        if candidate is None or not hasattr(candidate, "settimeout"):
            continue
        current = candidate.gettimeout() if hasattr(candidate, "gettimeout") else -1
        # None is already blocking; 0.0 is a non-blocking socket left as is
        if current is None or current == 0.0:
            continue
        candidate.settimeout(None)


def _demuxed_frames(sock: Any) -> Iterator[tuple[bytes | None, bytes | None]]:
    try:
        for stream_id, data in frames_iter(sock, tty=False):
            yield demux_adaptor(stream_id, data)
    finally:
        with contextlib.suppress(OSError):
            sock.close()


def _build_image(client: Any, image: str, dockerfile: str) -> None:
    try:
        client.images.build(fileobj=io.BytesIO(dockerfile.encode("utf-8")), tag=image, rm=True, pull=True)
    except docker.errors.BuildError as e:
        # BuildError is a DockerException; keep it apart from transport failures
        raise ImageBuildError(
            f"Building {image} failed: {e.msg}",
            context={"image": image},
        ) from None


def _create_and_start(client: Any, options: dict[str, Any]) -> Any:
    # create() instead of run(): run() silently pulls missing images
    container = client.containers.create(**options)
    try:
        container.start()
    except Exception:
        with contextlib.suppress(Exception):
            container.remove(force=True)
        raise
    return container


class ContainerOrchestrator:
    """Owns the daemon connection and every container operation."""

    def __init__(
        self,
        connection: DaemonConnection,
        teardown_retry_attempts: int = constants.TEARDOWN_RETRY_ATTEMPTS,
    ) -> None:
        self._conn = connection
        self._health = connection.health
        self._teardown_retry_attempts = teardown_retry_attempts
        self._sessions: dict[str, Session] = {}
        # Teardowns run to completion; background retries are cancelled on close
        self._teardowns: set[asyncio.Future[Any]] = set()
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def connection(self) -> DaemonConnection:
        return self._conn

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    async def provision(self, language: LanguageConfig, timeout_ms: int, session_id: str | None = None) -> Session:
        """Create and start a sandbox for one execution.

        Fails fast, without touching the daemon, while the health monitor's
        backoff window is open.

        Raises:
            DaemonUnavailableError: Daemon unreachable or in backoff
            ImageNotFoundError: Language image not present on the daemon
            ProvisioningError: Daemon rejected the container
        """
        if not self._health.may_attempt():
            status = self._health.snapshot()
            raise DaemonUnavailableError(
                "Container daemon unavailable, retry later",
                context={
                    "language": language.id,
                    "consecutive_failures": status.consecutive_failures,
                    "backoff_ms": status.backoff_ms,
                },
            )

        session = Session(language, timeout_ms, session_id=session_id)
        self._sessions[session.session_id] = session
        await session.transition_state(SessionState.PROVISIONING)
        options = build_container_options(session)

        create = asyncio.ensure_future(
            self._conn.call(
                "create",
                lambda client: _create_and_start(client, options),
                session_id=session.session_id,
                language=language.id,
            )
        )
        try:
            session.container = await asyncio.shield(create)
        except asyncio.CancelledError:
            # The create call keeps running on its thread; keep its handle so
            # teardown removes the right container
            with contextlib.suppress(Exception):
                session.container = await create
            with contextlib.suppress(asyncio.CancelledError):
                await self.teardown_shielded(session)
            raise
        except docker.errors.ImageNotFound as e:
            await self._fail_provisioning(session)
            raise ImageNotFoundError(
                f"Image {language.image!r} for {language.display_name} is not available on the daemon",
                context={"language": language.id, "image": language.image, "session_id": session.session_id},
            ) from e
        except docker.errors.APIError as e:
            await self._fail_provisioning(session)
            raise ProvisioningError(
                f"Container creation rejected: {e.explanation or e}",
                context={"language": language.id, "status_code": e.status_code, "session_id": session.session_id},
            ) from e
        except DaemonUnavailableError:
            await self._fail_provisioning(session)
            raise

        await session.transition_state(SessionState.RUNNING)
        logger.info(
            "Sandbox provisioned",
            extra={
                "session_id": session.session_id,
                "language": language.id,
                "container_id": session.container_id,
                "timeout_ms": timeout_ms,
            },
        )
        return session

    async def _fail_provisioning(self, session: Session) -> None:
        await session.transition_state(SessionState.PROVISIONING_FAILED)
        await self.teardown(session)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def inject(self, session: Session, source_code: str, stdin: str | None) -> None:
        """Upload source and stdin into the sandbox via the archive API.

        Raises:
            SandboxRuntimeError: Upload rejected or daemon unreachable
        """
        payload = build_payload(session.language, source_code, stdin)
        container = session.container
        ok = await self._runtime_call(
            session,
            "inject",
            lambda _client: container.put_archive("/", payload),
        )
        if ok is False:
            raise SandboxRuntimeError(
                "Daemon refused the source upload",
                context={"session_id": session.session_id},
            )
        logger.debug(
            "Source injected",
            extra={"session_id": session.session_id, "payload_bytes": len(payload)},
        )

    async def start(self, session: Session, argv: Sequence[str]) -> ExecHandle:
        """Begin a command inside the sandbox and return its output stream.

        Raises:
            SandboxRuntimeError: Exec could not be created/started
        """
        container_id = session.container_id or session.container_name
        cmd = [*_EXEC_WRAPPER, *argv]
        environment = {"HOME": "/tmp", "TMPDIR": "/tmp", **session.language.environment}

        def _start(client: Any) -> ExecHandle:
            created = client.api.exec_create(
                container_id,
                cmd=cmd,
                stdout=True,
                stderr=True,
                stdin=False,
                tty=False,
                user=constants.SANDBOX_USER,
                workdir=constants.SANDBOX_WORKDIR,
                environment=environment,
            )
            exec_id = created["Id"]
            # Raw socket instead of stream=True: docker-py keeps the client
            # read timeout on streamed exec output
            sock = client.api.exec_start(exec_id, socket=True)
            disable_read_timeout(sock)
            return ExecHandle(exec_id=exec_id, stream=_demuxed_frames(sock))

        handle = await self._runtime_call(session, "exec", _start)
        logger.debug(
            "Command started",
            extra={"session_id": session.session_id, "exec_id": handle.exec_id, "argv0": argv[0] if argv else None},
        )
        return handle

    async def await_completion(self, session: Session, handle: ExecHandle, capture: OutputCapture) -> Completion:
        """Race natural completion against the session deadline.

        On timeout the container is killed and Completion(None, True) is
        returned. Caller cancellation propagates unchanged; the caller's
        teardown removes the container.

        Raises:
            SandboxRuntimeError: Stream or inspect failed
        """
        try:
            async with asyncio.timeout(session.remaining_seconds()):
                await self._runtime_call(session, "stream", lambda _client: _drain(handle.stream, capture))
                exit_code = await self._exit_code(session, handle)
        except TimeoutError:
            logger.info(
                "Session deadline exceeded, killing sandbox",
                extra={"session_id": session.session_id, "timeout_ms": session.timeout_ms},
            )
            await kill_container(self._conn, session.container, session.session_id)
            return Completion(exit_code=None, timed_out=True)
        return Completion(exit_code=exit_code, timed_out=False)

    async def _exit_code(self, session: Session, handle: ExecHandle) -> int:
        # The stream can close a moment before the daemon marks the exec finished
        inspect: dict[str, Any] = {}
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(20),
            wait=wait_fixed(0.05),
            retry=retry_if_result(lambda result: bool(result.get("Running"))),
            retry_error_callback=lambda state: state.outcome.result(),
        ):
            with attempt:
                inspect = await self._runtime_call(
                    session,
                    "exec_inspect",
                    lambda client: client.api.exec_inspect(handle.exec_id),
                )
            if not attempt.retry_state.outcome.failed:
                attempt.retry_state.set_result(inspect)

        exit_code = inspect.get("ExitCode")
        if exit_code is None:
            raise SandboxRuntimeError(
                "Daemon reported no exit code for finished command",
                context={"session_id": session.session_id, "exec_id": handle.exec_id},
            )
        return int(exit_code)

    async def _runtime_call(self, session: Session, operation: str, fn: Any) -> Any:
        """Daemon call on a provisioned session; failures become SandboxRuntimeError."""
        try:
            return await self._conn.call(operation, fn, session_id=session.session_id)
        except DaemonUnavailableError as e:
            raise SandboxRuntimeError(e.message, context={**e.context, "session_id": session.session_id}) from e
        except docker.errors.APIError as e:
            raise SandboxRuntimeError(
                f"Daemon rejected {operation}: {e.explanation or e}",
                context={"session_id": session.session_id, "operation": operation, "status_code": e.status_code},
            ) from e

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def teardown(self, session: Session) -> None:
        """Remove the session's container. Idempotent, never raises.

        "Already gone" counts as success. If removal cannot be confirmed a
        bounded background retry is scheduled; the session is REAPED either way.
        """
        if session.reaped or session.teardown_started:
            return
        session.teardown_started = True

        try:
            removed = await cleanup_container(
                self._conn,
                session.container,
                name=session.container_name,
                context_id=session.session_id,
            )
            if not removed:
                error = TeardownError(
                    "Container removal unconfirmed",
                    context={"session_id": session.session_id, "container_name": session.container_name},
                )
                logger.warning(error.message, extra=error.context)
                self._schedule_teardown_retry(session)
        finally:
            self._sessions.pop(session.session_id, None)
            await session.transition_state(SessionState.REAPED)
            logger.debug("Session reaped", extra={"session_id": session.session_id})

    async def teardown_shielded(self, session: Session) -> None:
        """Teardown that completes even if the calling task is cancelled.

        Re-raises the caller's CancelledError after teardown was handed off.
        """
        task = asyncio.ensure_future(self.teardown(session))
        self._track_teardown(task)
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.debug(
                "Teardown continues after caller cancellation",
                extra={"session_id": session.session_id},
            )
            raise

    def teardown_detached(self, session: Session, then: Callable[[], Awaitable[None]]) -> None:
        """Remove the session's container without making the caller wait.

        ``then`` runs once teardown finished, whatever its outcome. close()
        waits for detached teardowns instead of cancelling them.
        """

        async def _teardown_then() -> None:
            try:
                await self.teardown(session)
            finally:
                await then()

        task = asyncio.create_task(_teardown_then(), name=f"teardown-{session.session_id}")
        self._track_teardown(task)

    def _track_teardown(self, task: asyncio.Future[Any]) -> None:
        self._teardowns.add(task)
        task.add_done_callback(self._teardowns.discard)

    def _schedule_teardown_retry(self, session: Session) -> None:
        if self._teardown_retry_attempts <= 0:
            return
        task = asyncio.create_task(
            self._retry_teardown(session.container, session.container_name, session.session_id),
            name=f"teardown-retry-{session.session_id}",
        )
        self._track(task)

    async def _retry_teardown(self, container: Any, name: str, session_id: str) -> None:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._teardown_retry_attempts),
                wait=wait_random_exponential(
                    min=constants.TEARDOWN_RETRY_MIN_SECONDS,
                    max=constants.TEARDOWN_RETRY_MAX_SECONDS,
                ),
                retry=retry_if_exception_type(TeardownError),
                before_sleep=before_sleep_log(logger, logging.DEBUG),
                reraise=True,
            ):
                with attempt:
                    if not self._health.may_attempt():
                        raise TeardownError("Daemon in backoff window", context={"session_id": session_id})
                    if not await cleanup_container(self._conn, container, name=name, context_id=session_id):
                        raise TeardownError("Container removal unconfirmed", context={"session_id": session_id})
            logger.info("Container removed on retry", extra={"session_id": session_id, "container_name": name})
        except TeardownError:
            logger.error(
                "Container removal abandoned; it exits when its keeper expires",
                extra={"session_id": session_id, "container_name": name},
            )

    def _track(self, task: asyncio.Task[Any]) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def teardown_all(self) -> None:
        """Tear down every live session (shutdown path)."""
        sessions = list(self._sessions.values())
        if sessions:
            await asyncio.gather(*(self.teardown(s) for s in sessions))

    async def reap_orphans(self) -> int:
        """Remove leftover polyexec containers. Never raises."""
        if not self._health.may_attempt():
            return 0
        return await cleanup_orphans(self._conn)

    async def close(self) -> None:
        """Tear down live sessions, stop background retries, reap orphans."""
        await self.teardown_all()
        if self._teardowns:
            await asyncio.gather(*list(self._teardowns), return_exceptions=True)

        pending = [t for t in self._background if not t.done()]
        for task in pending:
            task.cancel()
        for task in pending:
            with contextlib.suppress(asyncio.CancelledError):
                await task

        await self.reap_orphans()
        await self._conn.close()

    # ------------------------------------------------------------------
    # Images / daemon info
    # ------------------------------------------------------------------

    async def pull_image(self, image: str) -> None:
        """Pull an image onto the daemon.

        Raises:
            DaemonUnavailableError: Daemon unreachable
            docker.errors.APIError: Registry/daemon rejected the pull
        """
        logger.info("Pulling image", extra={"image": image})
        await self._conn.call("pull", lambda client: client.images.pull(image), image=image)

    async def build_image(self, image: str, dockerfile: str) -> None:
        """Build a locally defined image and tag it.

        Raises:
            DaemonUnavailableError: Daemon unreachable
            ImageBuildError: A build step failed
            docker.errors.APIError: Daemon rejected the build
        """
        logger.info("Building image", extra={"image": image})
        await self._conn.call("build", lambda client: _build_image(client, image, dockerfile), image=image)

    async def system_info(self) -> dict[str, Any]:
        return await self._conn.system_info()


def _drain(stream: Iterator[tuple[bytes | None, bytes | None]], capture: OutputCapture) -> None:
    for chunk in stream:
        # One side of each pair is None
        stdout, stderr = chunk
        capture.feed(stdout, stderr)
