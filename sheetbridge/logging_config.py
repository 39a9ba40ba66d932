"""Logging setup shared by the CLI and the callback server."""
from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Iterable, Optional

from sheetbridge import app_paths

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Client libraries that log every request at INFO.
NOISY_LOGGERS: Iterable[str] = (
    "googleapiclient.discovery",
    "googleapiclient.discovery_cache",
    "urllib3.connectionpool",
    "httpx",
)

_configured_path: Optional[Path] = None


def _has_file_handler(root: logging.Logger, target: Path) -> bool:
    return any(
        isinstance(handler, logging.FileHandler) and getattr(handler, "baseFilename", None) == str(target)
        for handler in root.handlers
    )


def _has_console_handler(root: logging.Logger) -> bool:
    return any(type(handler) is logging.StreamHandler for handler in root.handlers)


def configure_logging(level: int = logging.INFO, *, log_path: Optional[Path] = None) -> Path:
    """Send log records to ``log_path`` and to stderr.

    Calling it again is harmless: handlers are only attached once per target
    and the first configured path is returned unless ``log_path`` is given.
    """

    global _configured_path

    if _configured_path is not None and log_path is None:
        return _configured_path

    target = app_paths.ensure_parent(log_path or app_paths.LOG_FILE)
    root = logging.getLogger()
    root.setLevel(level if not root.handlers else min(root.level, level))
    formatter = logging.Formatter(LOG_FORMAT)

    if not _has_file_handler(root, target):
        file_handler = logging.FileHandler(target, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if not _has_console_handler(root):
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(formatter)
        root.addHandler(console)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _configured_path = target
    root.debug("Logging to %s", target)
    return target


def get_log_path() -> Path:
    if _configured_path is None:
        return configure_logging()
    return _configured_path


__all__ = ["LOG_FORMAT", "configure_logging", "get_log_path"]
