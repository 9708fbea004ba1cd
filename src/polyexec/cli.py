"""Command-line interface for polyexec.

Usage:
    polyexec 'print("hello")'                 # Run inline Python
    polyexec main.go                          # Run file (language from extension)
    echo 'puts 1' | polyexec -l ruby -        # Run from stdin
    polyexec -l c -i input.txt solution.c     # Feed a file to the program's stdin
    polyexec --list-languages
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import NoReturn

import click

from polyexec import (
    DaemonUnavailableError,
    Engine,
    EngineConfig,
    ExecutionResult,
    ExecutionStatus,
    ImageNotFoundError,
    InputValidationError,
    SandboxError,
    __version__,
)
from polyexec._logging import configure_logging
from polyexec.registry import BUILTIN_LANGUAGES

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_TIMEOUT = 124  # Matches `timeout` command
EXIT_SANDBOX_ERROR = 125

# File extension to language mapping
EXTENSION_MAP: dict[str, str] = {lang.file_extension: lang.id for lang in BUILTIN_LANGUAGES} | {
    ".mjs": "javascript",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".bash": "shell",
}


def detect_language(source: str | None) -> str | None:
    """Auto-detect language from file extension.

    Args:
        source: File path or stdin marker ("-") or inline code

    Returns:
        Detected language id or None if cannot detect
    """
    if not source or source == "-":
        return None

    path = Path(source)
    if path.suffix:
        return EXTENSION_MAP.get(path.suffix.lower())

    return None


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Format an error message following What → Why → Fix pattern."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def format_result_json(result: ExecutionResult) -> str:
    """Format execution result as JSON."""
    return json.dumps(result.model_dump(mode="json"), indent=2)


def exit_code_for(result: ExecutionResult) -> int:
    """Map a result to the CLI's exit code."""
    if result.timed_out:
        return EXIT_TIMEOUT
    if result.status is ExecutionStatus.SANDBOX_ERROR:
        return EXIT_SANDBOX_ERROR
    if result.exit_code is None:
        return EXIT_SANDBOX_ERROR
    return result.exit_code


def is_tty() -> bool:
    """Check if stdout is connected to a terminal."""
    return sys.stdout.isatty()


async def run_code(
    code: str,
    language: str,
    stdin: str | None,
    args: list[str],
    timeout_ms: int | None,
    json_output: bool,
    quiet: bool,
) -> int:
    """Execute code in a sandbox and return the CLI exit code."""
    config = EngineConfig.from_env().model_copy(update={"max_concurrent_sessions": 1})

    try:
        async with Engine(config) as engine:
            result = await engine.execute(language, code, stdin=stdin, args=args, timeout_ms=timeout_ms)
    except InputValidationError as e:
        click.echo(format_error("Invalid request", e.message), err=True)
        return EXIT_CLI_ERROR
    except ImageNotFoundError as e:
        click.echo(
            format_error(
                "Runtime image missing",
                e.message,
                [f"Pull it first: polyexec --pull -l {language}"],
            ),
            err=True,
        )
        return EXIT_SANDBOX_ERROR
    except DaemonUnavailableError as e:
        click.echo(
            format_error(
                "Container daemon unavailable",
                e.message,
                [
                    "Check that Docker is running: docker info",
                    "Set POLYEXEC_DOCKER_HOST to the daemon endpoint",
                ],
            ),
            err=True,
        )
        return EXIT_SANDBOX_ERROR
    except SandboxError as e:
        click.echo(format_error("Sandbox error", e.message), err=True)
        return EXIT_SANDBOX_ERROR

    if json_output:
        click.echo(format_result_json(result))
        return exit_code_for(result)

    if result.output:
        click.echo(result.output, nl=False)
    if result.error:
        if result.status in (ExecutionStatus.COMPILE_ERROR, ExecutionStatus.TIMED_OUT, ExecutionStatus.SANDBOX_ERROR):
            click.echo(click.style(result.error, fg="red"), err=True)
        else:
            click.echo(result.error, nl=False, err=True)

    if is_tty() and not quiet:
        click.echo()
        label = "✓ Done" if result.success else f"✗ {result.status.value}"
        click.echo(
            click.style(f"{label} in {result.execution_time_ms}ms", fg="green" if result.success else "yellow", dim=True),
            err=True,
        )

    return exit_code_for(result)


async def list_languages(json_output: bool) -> int:
    engine = Engine(EngineConfig.from_env())
    languages = engine.list_languages()
    if json_output:
        click.echo(json.dumps([lang.model_dump() for lang in languages], indent=2))
    else:
        for lang in languages:
            kind = "compiled" if lang.compiled else "interpreted"
            click.echo(f"{lang.id:<12} {lang.display_name:<12} {lang.file_extension:<6} {kind}")
    return EXIT_SUCCESS


async def show_health(json_output: bool) -> int:
    async with Engine(EngineConfig.from_env().model_copy(update={"reap_orphans_on_start": False})) as engine:
        reachable = await engine.ping()
        status = engine.health()
        info = None
        if reachable:
            try:
                info = await engine.system_info()
            except SandboxError:
                info = None
    if json_output:
        click.echo(json.dumps({"reachable": reachable, "health": status.model_dump(), "system": info}, indent=2))
    else:
        click.echo(f"daemon reachable: {reachable}")
        click.echo(f"consecutive failures: {status.consecutive_failures}")
        if info:
            click.echo(f"server version: {info.get('server_version')}")
            click.echo(f"containers running: {info.get('containers_running')}")
    return EXIT_SUCCESS if reachable else EXIT_SANDBOX_ERROR


async def pull(language: str | None) -> int:
    async with Engine(EngineConfig.from_env().model_copy(update={"reap_orphans_on_start": False})) as engine:
        try:
            results = await engine.pull_images([language] if language else None)
        except InputValidationError as e:
            click.echo(format_error("Invalid language", e.message), err=True)
            return EXIT_CLI_ERROR
    failed = False
    for image, outcome in results.items():
        click.echo(f"{image}: {outcome}")
        failed = failed or outcome.startswith("failed")
    return EXIT_SANDBOX_ERROR if failed else EXIT_SUCCESS


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.argument("source", required=False)
@click.option("-l", "--language", help="Language id or alias (auto-detected from file extension)")
@click.option("-c", "--code", "inline_code", help="Code to execute (alternative to SOURCE)")
@click.option(
    "-i",
    "--stdin",
    "stdin_file",
    type=click.File("r"),
    help="File fed to the program's standard input",
)
@click.option("-a", "--arg", "args", multiple=True, help="Program argument (repeatable)")
@click.option("-t", "--timeout", "timeout_ms", type=int, help="Timeout in milliseconds (default: per language)")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("-q", "--quiet", is_flag=True, help="Suppress progress output")
@click.option("--list-languages", "show_languages", is_flag=True, help="List supported languages and exit")
@click.option("--health", "show_daemon_health", is_flag=True, help="Check the container daemon and exit")
@click.option("--pull", "pull_images", is_flag=True, help="Pull or build runtime images (all, or the -l language) and exit")
@click.version_option(__version__, "-V", "--version", prog_name="polyexec")
def main(
    source: str | None,
    language: str | None,
    inline_code: str | None,
    stdin_file: click.utils.LazyFile | None,
    args: tuple[str, ...],
    timeout_ms: int | None,
    json_output: bool,
    quiet: bool,
    show_languages: bool,
    show_daemon_health: bool,
    pull_images: bool,
) -> NoReturn:
    """Execute code in an isolated container sandbox.

    SOURCE can be:

    \b
      - Inline code:  polyexec 'print("hello")'
      - File path:    polyexec main.rs
      - Stdin:        echo 'print(1)' | polyexec -

    Language is auto-detected from the file extension or defaults to
    Python for inline code.

    Examples:

    \b
      polyexec -l javascript 'console.log("hi")'
      polyexec -l cpp -i input.txt solution.cpp
      polyexec -a one -a two script.py
      polyexec --json 'print("test")' | jq .
    """
    configure_logging(quiet=quiet)

    if show_languages:
        sys.exit(asyncio.run(list_languages(json_output)))
    if show_daemon_health:
        sys.exit(asyncio.run(show_health(json_output)))
    if pull_images:
        sys.exit(asyncio.run(pull(language)))

    code: str
    if inline_code:
        code = inline_code
    elif source == "-":
        if sys.stdin.isatty():
            raise click.UsageError("No input provided. Pipe code to stdin or use -c flag.")
        code = sys.stdin.read()
    elif source:
        path = Path(source)
        code = path.read_text() if path.exists() and path.is_file() else source
    else:
        raise click.UsageError("No code provided. Provide SOURCE argument or use -c flag.")

    if not code.strip():
        raise click.UsageError("Empty code provided.")

    resolved_language = language.lower() if language else (detect_language(source) or "python")
    program_stdin = stdin_file.read() if stdin_file is not None else None

    exit_code = asyncio.run(
        run_code(
            code=code,
            language=resolved_language,
            stdin=program_stdin,
            args=list(args),
            timeout_ms=timeout_ms,
            json_output=json_output,
            quiet=quiet,
        )
    )

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
