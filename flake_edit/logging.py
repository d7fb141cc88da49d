"""Logging for flake-edit; stdout stays reserved for diffs and listings."""

from __future__ import annotations

import logging
from pathlib import Path
import sys
from typing import List, TextIO

_LOGGER_NAME = "flake_edit"
_CONSOLE_FORMAT = "[flake-edit] %(levelname)s %(message)s"
_VERBOSE_FORMAT = "[flake-edit] %(levelname)s %(name)s: %(message)s"
_FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a module-scoped logger under the flake_edit hierarchy."""
    full_name = f"{_LOGGER_NAME}.{name}" if name else _LOGGER_NAME
    return logging.getLogger(full_name)


def configure_logging(
    *,
    verbose: bool = False,
    log_file: Path | None = None,
    stream: TextIO | None = None,
) -> logging.Logger:
    """Warnings (everything with `verbose`) go to stderr; `log_file` always records DEBUG."""
    logger = logging.getLogger(_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(stream or sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console.setFormatter(logging.Formatter(_VERBOSE_FORMAT if verbose else _CONSOLE_FORMAT))
    handlers: List[logging.Handler] = [console]

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        sink = logging.FileHandler(log_file, encoding="utf-8")
        sink.setLevel(logging.DEBUG)
        sink.setFormatter(logging.Formatter(_FILE_FORMAT))
        handlers.append(sink)

    logger.setLevel(min(handler.level for handler in handlers))
    logger.propagate = False
    for handler in handlers:
        logger.addHandler(handler)
    return logger


__all__ = ["configure_logging", "get_logger"]
