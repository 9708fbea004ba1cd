"""Language registry: static per-language build/run configuration.

The registry is read-only after construction and never performs I/O.
Command templates are argv tuples; see ``models.SOURCE_PLACEHOLDER`` and
``models.ARGS_PLACEHOLDER`` for the two recognised tokens.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from types import MappingProxyType
from typing import Final

from polyexec._logging import get_logger
from polyexec.constants import SANDBOX_WORKDIR
from polyexec.exceptions import UnsupportedLanguageError
from polyexec.models import ARGS_PLACEHOLDER, SOURCE_PLACEHOLDER, LanguageConfig, LanguageInfo

logger = get_logger(__name__)

_MB: Final[int] = 1024 * 1024

TYPESCRIPT_DOCKERFILE: Final[str] = (
    "FROM node:18-alpine\n"
    "RUN npm install --global typescript@5 && npm cache clean --force\n"
)

BUILTIN_LANGUAGES: Final[tuple[LanguageConfig, ...]] = (
    # Interpreted
    LanguageConfig(
        id="python",
        display_name="Python",
        image="python:3.11-alpine",
        file_extension=".py",
        source_filename="main.py",
        run_command=("python3", "-u", SOURCE_PLACEHOLDER, ARGS_PLACEHOLDER),
        default_timeout_ms=10_000,
        memory_limit_bytes=128 * _MB,
        cpu_limit=0.5,
        environment={"PYTHONDONTWRITEBYTECODE": "1"},
    ),
    LanguageConfig(
        id="javascript",
        display_name="JavaScript",
        image="node:18-alpine",
        file_extension=".js",
        source_filename="main.js",
        run_command=("node", SOURCE_PLACEHOLDER, ARGS_PLACEHOLDER),
        default_timeout_ms=10_000,
        memory_limit_bytes=128 * _MB,
        cpu_limit=0.5,
    ),
    LanguageConfig(
        id="typescript",
        display_name="TypeScript",
        # No official image ships tsc; `polyexec --pull` builds this one
        image="polyexec/typescript:5-node18",
        dockerfile=TYPESCRIPT_DOCKERFILE,
        file_extension=".ts",
        source_filename="main.ts",
        compile_command=("tsc", "--outDir", "/tmp", "--target", "es2020", SOURCE_PLACEHOLDER),
        run_command=("node", "/tmp/main.js", ARGS_PLACEHOLDER),
        default_timeout_ms=15_000,
        memory_limit_bytes=256 * _MB,
        cpu_limit=0.75,
    ),
    LanguageConfig(
        id="ruby",
        display_name="Ruby",
        image="ruby:3.2-alpine",
        file_extension=".rb",
        source_filename="main.rb",
        run_command=("ruby", SOURCE_PLACEHOLDER, ARGS_PLACEHOLDER),
        default_timeout_ms=10_000,
        memory_limit_bytes=128 * _MB,
        cpu_limit=0.5,
    ),
    LanguageConfig(
        id="php",
        display_name="PHP",
        image="php:8.2-cli-alpine",
        file_extension=".php",
        source_filename="main.php",
        run_command=("php", SOURCE_PLACEHOLDER, ARGS_PLACEHOLDER),
        default_timeout_ms=10_000,
        memory_limit_bytes=128 * _MB,
        cpu_limit=0.5,
    ),
    LanguageConfig(
        id="shell",
        display_name="Shell",
        image="alpine:latest",
        file_extension=".sh",
        source_filename="main.sh",
        run_command=("sh", SOURCE_PLACEHOLDER, ARGS_PLACEHOLDER),
        default_timeout_ms=5_000,
        memory_limit_bytes=64 * _MB,
        cpu_limit=0.25,
    ),
    # Compiled
    LanguageConfig(
        id="c",
        display_name="C",
        image="gcc:latest",
        file_extension=".c",
        source_filename="main.c",
        compile_command=("gcc", "-O2", "-o", "/tmp/program", SOURCE_PLACEHOLDER, "-lm"),
        run_command=("/tmp/program", ARGS_PLACEHOLDER),
        default_timeout_ms=15_000,
        memory_limit_bytes=256 * _MB,
        cpu_limit=0.75,
    ),
    LanguageConfig(
        id="cpp",
        display_name="C++",
        image="gcc:latest",
        file_extension=".cpp",
        source_filename="main.cpp",
        compile_command=("g++", "-O2", "-std=c++17", "-o", "/tmp/program", SOURCE_PLACEHOLDER),
        run_command=("/tmp/program", ARGS_PLACEHOLDER),
        default_timeout_ms=15_000,
        memory_limit_bytes=256 * _MB,
        cpu_limit=0.75,
    ),
    LanguageConfig(
        id="java",
        display_name="Java",
        image="eclipse-temurin:17-jdk-alpine",
        file_extension=".java",
        source_filename="Main.java",
        compile_command=("javac", "-d", "/tmp", SOURCE_PLACEHOLDER),
        run_command=("java", "-cp", "/tmp", "Main", ARGS_PLACEHOLDER),
        default_timeout_ms=20_000,
        memory_limit_bytes=512 * _MB,
        cpu_limit=1.0,
        pids_limit=128,  # JVM thread pools
        main_class="Main",
    ),
    LanguageConfig(
        id="go",
        display_name="Go",
        image="golang:1.21-alpine",
        file_extension=".go",
        source_filename="main.go",
        compile_command=("go", "build", "-o", "/tmp/program", SOURCE_PLACEHOLDER),
        run_command=("/tmp/program", ARGS_PLACEHOLDER),
        default_timeout_ms=15_000,
        memory_limit_bytes=256 * _MB,
        cpu_limit=0.75,
        pids_limit=128,  # go toolchain spawns compile/link workers
        environment={"GOCACHE": "/tmp/.gocache", "GOPATH": "/tmp/go", "CGO_ENABLED": "0"},
    ),
    LanguageConfig(
        id="rust",
        display_name="Rust",
        image="rust:1.75-alpine",
        file_extension=".rs",
        source_filename="main.rs",
        compile_command=("rustc", "-o", "/tmp/program", SOURCE_PLACEHOLDER),
        run_command=("/tmp/program", ARGS_PLACEHOLDER),
        default_timeout_ms=20_000,
        memory_limit_bytes=512 * _MB,
        cpu_limit=1.0,
    ),
)
"""Languages available out of the box."""

LANGUAGE_ALIASES: Final[Mapping[str, str]] = MappingProxyType(
    {
        "py": "python",
        "python3": "python",
        "js": "javascript",
        "node": "javascript",
        "ts": "typescript",
        "rb": "ruby",
        "sh": "shell",
        "bash": "shell",
        "c++": "cpp",
        "golang": "go",
        "rs": "rust",
    }
)
"""Alternate identifiers accepted by resolve()."""


def source_path(language: LanguageConfig) -> str:
    """Absolute path of the injected source file inside the sandbox."""
    return f"{SANDBOX_WORKDIR}/{language.source_filename}"


def render(template: Sequence[str], source: str, args: Sequence[str] = ()) -> list[str]:
    """Expand a command template into a concrete argv.

    Args are spliced in as whole entries and are never themselves
    searched for placeholders.
    """
    argv: list[str] = []
    for token in template:
        if token == ARGS_PLACEHOLDER:
            argv.extend(args)
        else:
            argv.append(token.replace(SOURCE_PLACEHOLDER, source))
    return argv


class LanguageRegistry:
    """Read-only mapping from language id to LanguageConfig.

    Image overrides are applied once at construction; the configs handed
    out afterwards are frozen and shared by every session.
    """

    def __init__(
        self,
        languages: Iterable[LanguageConfig] = BUILTIN_LANGUAGES,
        image_overrides: Mapping[str, str] | None = None,
        aliases: Mapping[str, str] = LANGUAGE_ALIASES,
    ) -> None:
        configs: dict[str, LanguageConfig] = {}
        for lang in languages:
            if lang.id in configs:
                raise ValueError(f"Duplicate language id: {lang.id}")
            configs[lang.id] = lang

        for lang_id, image in (image_overrides or {}).items():
            key = lang_id.lower()
            if key not in configs:
                logger.warning("Image override for unknown language ignored", extra={"language": lang_id})
                continue
            # An overriding image is supplied by the deployment, never built here
            configs[key] = configs[key].model_copy(update={"image": image, "dockerfile": None})

        self._languages: Mapping[str, LanguageConfig] = MappingProxyType(configs)
        self._aliases: Mapping[str, str] = MappingProxyType({k: v for k, v in aliases.items() if v in configs})

    def resolve(self, language_id: str) -> LanguageConfig:
        """Look up a language by id or alias (case-insensitive).

        Raises:
            UnsupportedLanguageError: No such language is registered
        """
        key = language_id.strip().lower()
        key = self._aliases.get(key, key)
        try:
            return self._languages[key]
        except KeyError:
            raise UnsupportedLanguageError(
                f"Unsupported language: {language_id!r}",
                context={"language": language_id, "supported": sorted(self._languages)},
            ) from None

    def list_languages(self) -> list[LanguageInfo]:
        return [lang.info() for lang in self._languages.values()]

    def ids(self) -> list[str]:
        return list(self._languages)

    def images(self) -> set[str]:
        """Distinct images referenced by the registered languages."""
        return {lang.image for lang in self._languages.values()}

    def image_recipes(self, language_ids: Iterable[str] | None = None) -> dict[str, str | None]:
        """Image -> Dockerfile for locally built images, or None for pulled ones.

        Raises:
            UnsupportedLanguageError: An id is not registered
        """
        languages = self._languages.values() if language_ids is None else [self.resolve(i) for i in language_ids]
        return {lang.image: lang.dockerfile for lang in languages}

    def __contains__(self, language_id: object) -> bool:
        if not isinstance(language_id, str):
            return False
        key = language_id.strip().lower()
        return self._aliases.get(key, key) in self._languages

    def __len__(self) -> int:
        return len(self._languages)
