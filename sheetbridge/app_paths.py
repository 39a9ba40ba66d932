"""Locations of the files sheetbridge keeps between runs."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable

# Checked in order; SHEETBRIDGE_HOME is used as-is, the others get a
# "sheetbridge" sub-directory.
_BASE_ENV_VARS: Iterable[str] = ("SHEETBRIDGE_HOME", "XDG_DATA_HOME", "LOCALAPPDATA")


def _base_directory() -> Path:
    for name in _BASE_ENV_VARS:
        value = os.environ.get(name)
        if not value:
            continue
        root = Path(value).expanduser().resolve()
        return root if name == "SHEETBRIDGE_HOME" else root / "sheetbridge"
    return Path.home().resolve() / ".sheetbridge"


APP_DIR: Path = _base_directory()
LOG_DIR: Path = APP_DIR / "logs"
STATE_DIR: Path = APP_DIR / "state"

SETTINGS_FILE: Path = APP_DIR / "settings.json"
SERVICE_ACCOUNT_FILE: Path = APP_DIR / "service_account.json"
LOG_FILE: Path = LOG_DIR / "sheetbridge.log"
STATUS_DB_FILE: Path = STATE_DIR / "job_status.sqlite3"
LAST_RUN_FILE: Path = STATE_DIR / "last_sync.json"


def ensure_parent(path: Path) -> Path:
    """Create the directory holding ``path`` and return ``path`` unchanged."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


__all__ = [
    "APP_DIR",
    "LAST_RUN_FILE",
    "LOG_DIR",
    "LOG_FILE",
    "SERVICE_ACCOUNT_FILE",
    "SETTINGS_FILE",
    "STATE_DIR",
    "STATUS_DB_FILE",
    "ensure_parent",
]
