"""In-memory stand-in for the slice of the docker-py client polyexec uses.

Programs are not executed: each exec is answered by a scripted
``ExecOutcome`` produced by ``FakeDockerClient.on_exec`` and served as
multiplexed frames over a real socket pair, the way the daemon streams
exec output. Hanging outcomes keep the socket open until the container is
killed or removed, like a real long-running process.
"""

from __future__ import annotations

import contextlib
import io
import itertools
import socket as pysocket
import struct
import tarfile
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import docker
import docker.errors
import requests

from polyexec import EngineConfig


def unit_config(**overrides: Any) -> EngineConfig:
    """EngineConfig for fake-daemon tests: no psutil query, no orphan scan, no background retries."""
    values: dict[str, Any] = {
        "host_memory_mb": 16_000.0,
        "reap_orphans_on_start": False,
        "fallback_docker_host": None,
        "admission_timeout_seconds": 2.0,
        "teardown_retry_attempts": 0,
    }
    values.update(overrides)
    return EngineConfig(**values)


def api_error(status_code: int, message: str = "daemon error") -> docker.errors.APIError:
    """APIError carrying an HTTP status, as raised by docker-py."""
    response = requests.Response()
    response.status_code = status_code
    return docker.errors.APIError(message, response=response, explanation=message)


@dataclass
class ExecOutcome:
    """Scripted result of one exec."""

    stdout: bytes = b""
    stderr: bytes = b""
    exit_code: int = 0
    hang: bool = False
    silence: float = 0.0
    chunks: list[tuple[bytes | None, bytes | None]] | None = None


@dataclass
class ExecContext:
    """What the fake saw when an exec was created."""

    container: FakeContainer
    cmd: list[str]
    user: str | None
    workdir: str | None
    environment: dict[str, str]

    @property
    def argv(self) -> list[str]:
        """Program argv (the fixed sh wrapper stripped)."""
        return self.cmd[4:]

    @property
    def stdin(self) -> str:
        return self.container.files.get("sandbox/.stdin", b"").decode()

    def source(self, filename: str) -> str:
        return self.container.files[f"sandbox/{filename}"].decode()


@dataclass
class _Exec:
    exec_id: str
    context: ExecContext
    outcome: ExecOutcome | None = None
    finished: bool = False
    exit_code: int | None = None


class FakeContainer:
    def __init__(self, client: FakeDockerClient, name: str, options: dict[str, Any]) -> None:
        self.client = client
        self.id = f"cid-{next(client._ids)}"
        self.name = name
        self.options = options
        self.labels: dict[str, str] = dict(options.get("labels") or {})
        self.files: dict[str, bytes] = {}
        self.archives: list[tuple[str, bytes]] = []
        self.started = False
        self.killed = False
        self.removed = False
        self.stopped = threading.Event()

    def start(self) -> None:
        self.client._check()
        self.started = True

    def put_archive(self, path: str, data: bytes) -> bool:
        self.client._check()
        if self.removed:
            raise docker.errors.NotFound("No such container")
        self.archives.append((path, data))
        with tarfile.open(fileobj=io.BytesIO(data)) as tar:
            for member in tar.getmembers():
                if member.isfile():
                    extracted = tar.extractfile(member)
                    assert extracted is not None
                    self.files[member.name] = extracted.read()
        return True

    def kill(self, signal: str | None = None) -> None:
        self.client._check()
        if self.removed:
            raise docker.errors.NotFound("No such container")
        self.killed = True
        self.stopped.set()
        if self.options.get("auto_remove"):
            self._vanish()

    def remove(self, force: bool = False) -> None:
        self.client._check()
        self.client.remove_calls.append(self.name)
        if self.client.remove_delay:
            threading.Event().wait(self.client.remove_delay)
        if self.client.remove_failures > 0:
            self.client.remove_failures -= 1
            raise api_error(500, "removal failed")
        if self.removed:
            raise docker.errors.NotFound("No such container")
        self.stopped.set()
        self._vanish()

    def _vanish(self) -> None:
        self.removed = True
        self.client.live.pop(self.name, None)


class _Containers:
    def __init__(self, client: FakeDockerClient) -> None:
        self._client = client

    def create(self, **options: Any) -> FakeContainer:
        client = self._client
        client._check()
        if options["image"] in client.missing_images:
            raise docker.errors.ImageNotFound(f"No such image: {options['image']}")
        if client.create_delay:
            threading.Event().wait(client.create_delay)
        container = FakeContainer(client, options["name"], options)
        client.created.append(container)
        client.live[container.name] = container
        return container

    def get(self, name: str) -> FakeContainer:
        self._client._check()
        try:
            return self._client.live[name]
        except KeyError:
            raise docker.errors.NotFound(f"No such container: {name}") from None

    def list(self, all: bool = False, filters: dict[str, Any] | None = None) -> list[FakeContainer]:  # noqa: A002
        self._client._check()
        label = (filters or {}).get("label")
        return [c for c in self._client.live.values() if label is None or label in c.labels]


class _Images:
    def __init__(self, client: FakeDockerClient) -> None:
        self._client = client

    def pull(self, image: str) -> None:
        self._client._check()
        if image in self._client.unpullable_images:
            raise docker.errors.NotFound(f"manifest unknown: {image}")
        self._client.pulled.append(image)
        self._client.missing_images.discard(image)

    def build(self, fileobj: io.BytesIO, tag: str, rm: bool = True, pull: bool = False) -> tuple[None, list[dict[str, str]]]:
        client = self._client
        client._check()
        if tag in client.unbuildable_images:
            raise docker.errors.BuildError("step 2/2 failed", [])
        client.built.append((tag, fileobj.read().decode()))
        client.missing_images.discard(tag)
        return None, []


class _FakeExecSocket:
    """Raw exec socket wrapper, like the SocketIO docker-py hands back.

    Reads fail with TimeoutError when the gap since the previous read
    exceeds a timeout still set on the socket, as a client read timeout
    does on a silent program.
    """

    def __init__(self, sock: pysocket.socket) -> None:
        self._sock = sock
        self._timeout: float | None = sock.gettimeout()
        self._last_read = time.monotonic()

    def fileno(self) -> int:
        return self._sock.fileno()

    def gettimeout(self) -> float | None:
        return self._timeout

    def settimeout(self, value: float | None) -> None:
        self._timeout = value

    def recv(self, n: int) -> bytes:
        if self._timeout is not None and time.monotonic() - self._last_read > self._timeout:
            raise TimeoutError("timed out")
        data = self._sock.recv(n)
        self._last_read = time.monotonic()
        return data

    def close(self) -> None:
        self._sock.close()


class _LowLevelApi:
    def __init__(self, client: FakeDockerClient) -> None:
        self._client = client

    def exec_create(self, container: str, cmd: list[str], **kwargs: Any) -> dict[str, str]:
        client = self._client
        client._check()
        target = next((c for c in client.live.values() if c.id == container or c.name == container), None)
        if target is None:
            raise api_error(409, f"Container {container} is not running")
        exec_id = f"exec-{next(client._ids)}"
        context = ExecContext(
            container=target,
            cmd=list(cmd),
            user=kwargs.get("user"),
            workdir=kwargs.get("workdir"),
            environment=dict(kwargs.get("environment") or {}),
        )
        client.execs[exec_id] = _Exec(exec_id=exec_id, context=context)
        client.exec_log.append(context)
        return {"Id": exec_id}

    def exec_start(self, exec_id: str, socket: bool = False, **kwargs: Any) -> _FakeExecSocket:
        client = self._client
        client._check()
        record = client.execs[exec_id]
        record.outcome = client.on_exec(record.context)
        reader, writer = pysocket.socketpair()
        reader.settimeout(client.stream_read_timeout)
        threading.Thread(target=self._feed, args=(record, writer), daemon=True).start()
        return _FakeExecSocket(reader)

    def _feed(self, record: _Exec, writer: pysocket.socket) -> None:
        outcome = record.outcome
        assert outcome is not None
        container = record.context.container
        chunks = outcome.chunks if outcome.chunks is not None else [(outcome.stdout, None), (None, outcome.stderr)]
        try:
            if outcome.silence:
                container.stopped.wait(timeout=outcome.silence)
            for out, err in chunks:
                for stream_id, data in ((1, out), (2, err)):
                    if data:
                        writer.sendall(struct.pack(">BxxxL", stream_id, len(data)) + data)
            if outcome.hang:
                # Blocks like a live process until the container dies
                container.stopped.wait(timeout=30)
                record.exit_code = 137
            else:
                record.exit_code = outcome.exit_code
            record.finished = True
        except OSError:
            record.exit_code = 137
            record.finished = True
        finally:
            writer.close()

    def exec_inspect(self, exec_id: str) -> dict[str, Any]:
        self._client._check()
        record = self._client.execs[exec_id]
        return {"Running": not record.finished, "ExitCode": record.exit_code}


@dataclass
class FakeDockerClient:
    """Scriptable fake daemon + client.

    Attributes:
        reachable: When False every call raises requests ConnectionError
        missing_images: Images that make containers.create raise ImageNotFound
        remove_failures: Number of upcoming remove() calls that fail with 500
        remove_delay: Seconds each remove() takes
        stream_read_timeout: Read timeout the exec socket starts with (the client HTTP timeout)
        on_exec: Callable producing the outcome of each exec
    """

    reachable: bool = True
    missing_images: set[str] = field(default_factory=set)
    unpullable_images: set[str] = field(default_factory=set)
    unbuildable_images: set[str] = field(default_factory=set)
    unreachable_endpoints: set[str | None] = field(default_factory=set)
    remove_failures: int = 0
    create_delay: float = 0.0
    remove_delay: float = 0.0
    stream_read_timeout: float | None = 30.0
    on_exec: Callable[[ExecContext], ExecOutcome] = field(default=lambda ctx: ExecOutcome())

    def __post_init__(self) -> None:
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.created: list[FakeContainer] = []
        self.live: dict[str, FakeContainer] = {}
        self.execs: dict[str, _Exec] = {}
        self.exec_log: list[ExecContext] = []
        self.remove_calls: list[str] = []
        self.pulled: list[str] = []
        self.built: list[tuple[str, str]] = []
        self.endpoints_tried: list[str | None] = []
        self.calls = 0
        self.containers = _Containers(self)
        self.images = _Images(self)
        self.api = _LowLevelApi(self)

    # docker-py client factory signature: (base_url, timeout) -> client
    def factory(self, base_url: str | None, timeout: int) -> FakeDockerClient:
        self.endpoints_tried.append(base_url)
        if base_url in self.unreachable_endpoints:
            raise requests.exceptions.ConnectionError(f"cannot connect to {base_url}")
        return self

    def _check(self) -> None:
        with self._lock:
            self.calls += 1
        if not self.reachable:
            raise requests.exceptions.ConnectionError("Connection refused")

    def ping(self) -> bool:
        self._check()
        return True

    def info(self) -> dict[str, Any]:
        self._check()
        return {
            "ServerVersion": "24.0.7",
            "OperatingSystem": "FakeOS",
            "Architecture": "x86_64",
            "Containers": len(self.live),
            "ContainersRunning": len(self.live),
            "Images": 3,
            "NCPU": 4,
            "MemTotal": 8 * 1024**3,
        }

    def close(self) -> None:
        pass


# ============================================================================
# Real daemon availability
# ============================================================================
# Module-level (not a fixture) so it can drive pytest.mark.skipif.


def docker_available() -> bool:
    try:
        client = docker.from_env(timeout=5)
    except docker.errors.DockerException:
        return False
    try:
        return bool(client.ping())
    except Exception:  # noqa: BLE001
        return False
    finally:
        with contextlib.suppress(Exception):
            client.close()
