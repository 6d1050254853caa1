"""Logging setup shared by the daemon and the command line tool."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Union

from ordersync import app_paths

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LEVEL_ENV_VAR = "ORDERSYNC_LOG_LEVEL"

_configured_path: Optional[Path] = None


def _resolve_level(level: Union[int, str, None]) -> int:
    if level is None:
        level = os.environ.get(LEVEL_ENV_VAR, "INFO")
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _has_file_handler(root: logging.Logger, path: Path) -> bool:
    target = str(path.resolve())
    return any(
        isinstance(handler, logging.FileHandler) and handler.baseFilename == target
        for handler in root.handlers
    )


def configure_logging(
    level: Union[int, str, None] = None,
    *,
    log_path: Optional[Path] = None,
    console: bool = False,
) -> Path:
    """Send log records to ``ordersync.log`` and return the file's location.

    ``level`` defaults to ``ORDERSYNC_LOG_LEVEL`` (``INFO`` when unset); at
    ``DEBUG`` every request and queue hand-off is recorded.  ``console`` also
    echoes records to stderr, which the daemon uses when run in a terminal.
    Calling this again is harmless: the first configured file is kept.
    """

    global _configured_path

    if _configured_path is not None:
        return _configured_path

    path = Path(log_path) if log_path else app_paths.logs_path("ordersync.log")
    path.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    resolved = _resolve_level(level)
    root.setLevel(min(root.level, resolved) if root.handlers else resolved)

    formatter = logging.Formatter(LOG_FORMAT)
    if not _has_file_handler(root, path):
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    if console and not any(type(handler) is logging.StreamHandler for handler in root.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)

    _configured_path = path
    root.debug("Logging to %s at %s", path, logging.getLevelName(resolved))
    return path


def get_log_path() -> Path:
    """Location of the active log file, configuring logging on first use."""

    return _configured_path or configure_logging()
