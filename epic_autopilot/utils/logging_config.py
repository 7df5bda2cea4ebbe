"""
Logging configuration using structlog.

Console output is human readable by default. With ``json_output`` (or when a
log file is given) events are rendered as JSON lines so a long unattended run
can be inspected afterwards.
"""

import logging
import sys
from pathlib import Path
from typing import Any, TextIO

import structlog


class _TeeFile:
    """File-like object writing to stderr and appending to a log file."""

    def __init__(self, stream: TextIO, log_file: Path) -> None:
        self._stream = stream
        log_file.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(log_file, "a", encoding="utf-8")  # noqa: SIM115

    def write(self, message: str) -> int:
        self._stream.write(message)
        self._file.write(message)
        return len(message)

    def flush(self) -> None:
        self._stream.flush()
        self._file.flush()


def configure_logging(
    log_level: str = "INFO",
    log_file: Path | None = None,
    json_output: bool = False,
) -> None:
    """Configure structured logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Also append every event to this file
        json_output: Render JSON instead of the console format
    """
    renderer: Any
    if json_output or log_file is not None:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    output: Any = sys.stderr if log_file is None else _TeeFile(sys.stderr, log_file)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.getLevelName(log_level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=output),
        cache_logger_on_first_use=True,
    )
