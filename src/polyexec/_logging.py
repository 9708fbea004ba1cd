"""Logging for polyexec.

The library logger only carries a NullHandler; configure_logging() is for
entry points such as the CLI. Modules log with structured context passed
as ``extra={...}`` (session_id, container_id, status, ...). The CLI
formatter appends those fields to each line:

    INFO [2026-02-25 10:02:54] polyexec.pipeline - Execution finished session_id=3f2a... status=completed

Records go through a bounded queue drained by a listener thread, so a
slow or blocked stderr never stalls the event loop; overflow is dropped.
"""

import contextlib
import logging
import logging.handlers
import os
import queue
from typing import Any

import click

LIBRARY_LOGGER_NAME: str = "polyexec"

logging.getLogger(LIBRARY_LOGGER_NAME).addHandler(logging.NullHandler())

# POLYEXEC_LOG_LEVEL (e.g. "DEBUG") sets the initial library level
_env_level = logging.getLevelNamesMapping().get(os.environ.get("POLYEXEC_LOG_LEVEL", "").strip().upper())
if _env_level:
    logging.getLogger(LIBRARY_LOGGER_NAME).setLevel(_env_level)

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Concurrent sessions log in bursts
_QUEUE_CAPACITY = 4096

# Attributes every LogRecord has; anything else arrived through extra=
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))) | {"message", "asctime"}


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Structured fields attached to a record via ``extra=``."""
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _RECORD_ATTRS and not key.startswith("_") and value is not None
    }


class ContextFormatter(logging.Formatter):
    """Formats the message, then appends ``key=value`` context fields."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = record_context(record)
        if context:
            line += " " + " ".join(f"{key}={value}" for key, value in context.items())
        return line


class _ClickHandler(logging.Handler):
    """Writes dimmed lines to stderr; click drops the styling off a TTY."""

    def __init__(self) -> None:
        super().__init__()
        self.formatter = ContextFormatter(fmt=_FMT, datefmt=_DATEFMT)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except BlockingIOError:
            pass
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    """Enqueues without blocking; a QueueListener thread does the I/O."""

    def __init__(self) -> None:
        q: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(q)
        self._listener = logging.handlers.QueueListener(q, _ClickHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # Same process: the listener formats the original record
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``polyexec`` hierarchy for a module name."""
    return logging.getLogger(name)


def configure_logging(
    *,
    level: int | str | None = None,
    quiet: bool = False,
) -> None:
    """Attach the CLI handler to the library logger (once) and set its level.

    Args:
        level: Log level (e.g. logging.DEBUG, "WARNING"); overrides POLYEXEC_LOG_LEVEL
        quiet: Only errors; wins over level
    """
    lib_logger = logging.getLogger(LIBRARY_LOGGER_NAME)

    if not any(isinstance(h, _NonBlockingHandler) for h in lib_logger.handlers):
        lib_logger.addHandler(_NonBlockingHandler())

    if quiet:
        lib_logger.setLevel(logging.ERROR)
    elif level is not None:
        lib_logger.setLevel(level)
