"""Bounded stdout/stderr capture.

Output beyond each stream's limit is dropped (never buffered) and the
capture is marked truncated. Chunks arrive from a worker thread draining
the daemon's multiplexed stream, so appends are lock-protected.
"""

from __future__ import annotations

import threading

from polyexec.constants import MAX_STDERR_SIZE, MAX_STDOUT_SIZE, OUTPUT_FORBIDDEN_CONTROL_CHARS

_STRIP_TABLE = dict.fromkeys(OUTPUT_FORBIDDEN_CONTROL_CHARS)


def sanitize_output(text: str) -> str:
    """Remove terminal control characters (keeps tab, LF and CR)."""
    return text.translate(_STRIP_TABLE)


class _BoundedBuffer:
    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.data = bytearray()
        self.truncated = False
        self.total_bytes = 0

    def append(self, chunk: bytes) -> None:
        self.total_bytes += len(chunk)
        room = self.limit - len(self.data)
        if room <= 0:
            self.truncated = self.truncated or bool(chunk)
            return
        if len(chunk) > room:
            self.data.extend(chunk[:room])
            self.truncated = True
        else:
            self.data.extend(chunk)

    def text(self) -> str:
        # A multi-byte sequence cut at the limit decodes to U+FFFD
        return sanitize_output(self.data.decode("utf-8", errors="replace"))


class OutputCapture:
    """Per-session stdout/stderr capture with independent limits."""

    def __init__(self, stdout_limit: int = MAX_STDOUT_SIZE, stderr_limit: int = MAX_STDERR_SIZE) -> None:
        self._lock = threading.Lock()
        self._stdout = _BoundedBuffer(stdout_limit)
        self._stderr = _BoundedBuffer(stderr_limit)

    def feed(self, stdout: bytes | None, stderr: bytes | None) -> None:
        """Append one demultiplexed chunk pair (either side may be None)."""
        with self._lock:
            if stdout:
                self._stdout.append(stdout)
            if stderr:
                self._stderr.append(stderr)

    @property
    def stdout(self) -> str:
        with self._lock:
            return self._stdout.text()

    @property
    def stderr(self) -> str:
        with self._lock:
            return self._stderr.text()

    @property
    def truncated(self) -> bool:
        with self._lock:
            return self._stdout.truncated or self._stderr.truncated

    @property
    def stdout_truncated(self) -> bool:
        with self._lock:
            return self._stdout.truncated

    @property
    def stdout_bytes(self) -> int:
        """Bytes produced on stdout, including dropped ones."""
        with self._lock:
            return self._stdout.total_bytes
