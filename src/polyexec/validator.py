"""Request validation.

Rejects malformed or oversized requests before any sandbox is provisioned.
Validation has no side effects.
"""

from __future__ import annotations

from dataclasses import dataclass

from polyexec import constants
from polyexec.exceptions import (
    ArgumentValidationError,
    CodeValidationError,
    PayloadTooLargeError,
    TimeoutValidationError,
)
from polyexec.models import ExecutionRequest, LanguageConfig
from polyexec.registry import LanguageRegistry


@dataclass(frozen=True)
class ValidRequest:
    """An accepted request with its resolved language and effective timeout."""

    request: ExecutionRequest
    language: LanguageConfig
    timeout_ms: int

    @property
    def source_code(self) -> str:
        return self.request.source_code

    @property
    def stdin(self) -> str:
        return self.request.stdin or ""

    @property
    def args(self) -> tuple[str, ...]:
        return self.request.args


class RequestValidator:
    """Checks requests against the registry and configured size limits."""

    def __init__(
        self,
        registry: LanguageRegistry,
        max_source_bytes: int = constants.MAX_SOURCE_BYTES,
        max_stdin_bytes: int = constants.MAX_STDIN_BYTES,
        max_timeout_ms: int = constants.MAX_TIMEOUT_MS,
    ) -> None:
        self._registry = registry
        self._max_source_bytes = max_source_bytes
        self._max_stdin_bytes = max_stdin_bytes
        self._max_timeout_ms = max_timeout_ms

    def validate(self, request: ExecutionRequest) -> ValidRequest:
        """Validate a request.

        Returns:
            ValidRequest carrying the resolved LanguageConfig

        Raises:
            UnsupportedLanguageError: Unknown language id
            CodeValidationError: Empty source or source containing null bytes
            PayloadTooLargeError: Source or stdin over its byte ceiling
            ArgumentValidationError: Too many/too long/null-byte arguments
            TimeoutValidationError: Timeout override out of range
        """
        language = self._registry.resolve(request.language_id)

        code = request.source_code
        if not code or not code.strip():
            raise CodeValidationError("Code cannot be empty or whitespace-only", context={"language": language.id})
        if "\x00" in code:
            raise CodeValidationError("Code cannot contain null bytes", context={"language": language.id})

        code_bytes = len(code.encode("utf-8"))
        if code_bytes > self._max_source_bytes:
            raise PayloadTooLargeError(
                f"Source code exceeds {self._max_source_bytes} bytes ({code_bytes} bytes)",
                context={"field": "source_code", "size": code_bytes, "limit": self._max_source_bytes},
            )

        if request.stdin:
            stdin_bytes = len(request.stdin.encode("utf-8"))
            if stdin_bytes > self._max_stdin_bytes:
                raise PayloadTooLargeError(
                    f"Input exceeds {self._max_stdin_bytes} bytes ({stdin_bytes} bytes)",
                    context={"field": "stdin", "size": stdin_bytes, "limit": self._max_stdin_bytes},
                )

        self._validate_args(request.args)

        return ValidRequest(
            request=request,
            language=language,
            timeout_ms=self._effective_timeout(request.timeout_ms, language),
        )

    @staticmethod
    def _validate_args(args: tuple[str, ...]) -> None:
        if len(args) > constants.MAX_ARGS:
            raise ArgumentValidationError(
                f"Too many arguments: {len(args)} (max {constants.MAX_ARGS})",
                context={"count": len(args)},
            )
        for index, arg in enumerate(args):
            if "\x00" in arg:
                raise ArgumentValidationError(
                    f"Argument {index} contains a null byte",
                    context={"index": index},
                )
            if len(arg) > constants.MAX_ARG_LENGTH:
                raise ArgumentValidationError(
                    f"Argument {index} exceeds {constants.MAX_ARG_LENGTH} characters",
                    context={"index": index, "length": len(arg)},
                )

    def _effective_timeout(self, override: int | None, language: LanguageConfig) -> int:
        if override is None:
            return min(language.default_timeout_ms, self._max_timeout_ms)
        if not constants.MIN_TIMEOUT_MS <= override <= self._max_timeout_ms:
            raise TimeoutValidationError(
                f"Timeout must be between {constants.MIN_TIMEOUT_MS} and {self._max_timeout_ms} ms",
                context={"timeout_ms": override},
            )
        return override
