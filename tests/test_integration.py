"""Integration tests against a real Docker daemon.

Skipped when no daemon is reachable. Tests whose runtime image is not
present locally are skipped too; pull them with ``polyexec --pull``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from typing import Any

import docker
import pytest

from polyexec import Engine, EngineConfig, constants
from polyexec.exceptions import ImageNotFoundError
from polyexec.models import ExecutionResult, ExecutionStatus
from polyexec.registry import BUILTIN_LANGUAGES
from tests.fakes import docker_available

pytestmark = [
    pytest.mark.skipif(not docker_available(), reason="requires a reachable Docker daemon"),
    pytest.mark.docker,
]


@pytest.fixture
async def docker_engine() -> AsyncGenerator[Engine, None]:
    async with Engine(EngineConfig(max_concurrent_sessions=4)) as engine:
        yield engine


async def _run(engine: Engine, language: str, code: str, **kwargs: Any) -> ExecutionResult:
    try:
        return await engine.execute(language, code, **kwargs)
    except ImageNotFoundError as e:
        pytest.skip(f"image not pulled: {e.context.get('image')}")


def _leftover_containers() -> list[Any]:
    client = docker.from_env()
    try:
        return client.containers.list(all=True, filters={"label": constants.CONTAINER_LABEL})
    finally:
        client.close()


# ============================================================================
# Execution
# ============================================================================


async def test_python_hello(docker_engine: Engine) -> None:
    result = await _run(docker_engine, "python", "print('hello')")
    assert result.status is ExecutionStatus.COMPLETED
    assert result.output == "hello\n"


async def test_python_stdin(docker_engine: Engine) -> None:
    result = await _run(docker_engine, "python", "a, b = map(int, input().split()); print(a + b)", stdin="20 22")
    assert result.output == "42\n"


async def test_shell_args_not_interpreted(docker_engine: Engine) -> None:
    result = await _run(docker_engine, "shell", 'for a in "$@"; do echo "[$a]"; done', args=["a b", "$(id)", ";"])
    assert result.output == "[a b]\n[$(id)]\n[;]\n"


async def test_c_compile_and_run(docker_engine: Engine) -> None:
    code = '#include <stdio.h>\nint main(){int x; scanf("%d",&x); printf("%d\\n", x*2); return 0;}'
    result = await _run(docker_engine, "c", code, stdin="21", timeout_ms=30_000)
    assert result.status is ExecutionStatus.COMPLETED
    assert result.output == "42\n"


async def test_c_compile_error(docker_engine: Engine) -> None:
    result = await _run(docker_engine, "c", "int main(){ return 0 }", timeout_ms=30_000)
    assert result.status is ExecutionStatus.COMPILE_ERROR
    assert result.error is not None and "error" in result.error


async def test_runtime_error(docker_engine: Engine) -> None:
    result = await _run(docker_engine, "python", "import sys; sys.exit(3)")
    assert result.status is ExecutionStatus.RUNTIME_ERROR
    assert result.exit_code == 3


# ============================================================================
# Isolation
# ============================================================================


async def test_timeout_kills_program(docker_engine: Engine) -> None:
    result = await _run(docker_engine, "python", "while True: pass", timeout_ms=1_000)
    assert result.status is ExecutionStatus.TIMED_OUT
    assert result.execution_time_ms < 10_000


async def test_no_network(docker_engine: Engine) -> None:
    code = (
        "import socket\n"
        "try:\n"
        "    socket.create_connection(('1.1.1.1', 53), timeout=2)\n"
        "    print('connected')\n"
        "except OSError:\n"
        "    print('blocked')\n"
    )
    result = await _run(docker_engine, "python", code)
    assert result.output == "blocked\n"


async def test_runs_as_nobody(docker_engine: Engine) -> None:
    result = await _run(docker_engine, "shell", "id -u")
    assert result.output.strip() == "65534"


async def test_memory_limit_enforced(docker_engine: Engine) -> None:
    result = await _run(docker_engine, "python", "x = bytearray(512 * 1024 * 1024)\nprint('allocated')")
    assert result.status is not ExecutionStatus.COMPLETED


async def test_no_containers_left_behind(docker_engine: Engine) -> None:
    await _run(docker_engine, "python", "print(1)")
    await _run(docker_engine, "python", "while True: pass", timeout_ms=500)
    # Auto-removal of a killed container can lag the forced remove slightly
    async with asyncio.timeout(10):
        while _leftover_containers():
            await asyncio.sleep(0.2)


async def test_javascript_arithmetic(docker_engine: Engine) -> None:
    result = await _run(docker_engine, "javascript", "console.log(2+2)")
    assert result.output == "4\n"


async def test_concurrent_languages(docker_engine: Engine) -> None:
    programs = {
        "python": "print(input())",
        "javascript": "require('fs').readFileSync(0, 'utf8').split('\\n').slice(0, 1).forEach(l => console.log(l))",
        "ruby": "puts gets",
        "php": "<?php echo fgets(STDIN);",
        "shell": "read line; echo \"$line\"",
    }
    results = await asyncio.gather(
        *(_run(docker_engine, lang, code, stdin=f"from-{lang}") for lang, code in programs.items())
    )
    for lang, result in zip(programs, results, strict=True):
        assert result.output == f"from-{lang}\n", lang


# ============================================================================
# Every built-in language
# ============================================================================

HELLO_WORLD = {
    "python": 'print("Hello, World!")',
    "javascript": 'console.log("Hello, World!");',
    "typescript": 'const greeting: string = "Hello, World!";\nconsole.log(greeting);',
    "ruby": 'puts "Hello, World!"',
    "php": '<?php echo "Hello, World!\\n";',
    "shell": 'echo "Hello, World!"',
    "c": '#include <stdio.h>\nint main(void) { puts("Hello, World!"); return 0; }',
    "cpp": '#include <iostream>\nint main() { std::cout << "Hello, World!" << std::endl; }',
    "java": 'public class Hello { public static void main(String[] a) { System.out.println("Hello, World!"); } }',
    "go": 'package main\n\nimport "fmt"\n\nfunc main() { fmt.Println("Hello, World!") }',
    "rust": 'fn main() { println!("Hello, World!"); }',
}


def test_hello_world_covers_every_language() -> None:
    assert set(HELLO_WORLD) == {lang.id for lang in BUILTIN_LANGUAGES}


@pytest.mark.parametrize("language", [lang.id for lang in BUILTIN_LANGUAGES])
async def test_hello_world(docker_engine: Engine, language: str) -> None:
    """Each runtime image really has the toolchain its commands call."""
    result = await _run(docker_engine, language, HELLO_WORLD[language], timeout_ms=60_000)
    assert result.status is ExecutionStatus.COMPLETED, result.error
    assert result.output == "Hello, World!\n"
