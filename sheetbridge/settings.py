"""Application configuration helpers for sheetbridge.

Settings are assembled once at startup from built-in defaults, an optional
JSON file and environment variables (``.env`` files are honoured through
python-dotenv).  The resulting :class:`AppSettings` instance is passed
explicitly into every component.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from dotenv import load_dotenv

from sheetbridge import app_paths
from sheetbridge.errors import ConfigError

logger = logging.getLogger(__name__)


DEFAULT_SETTINGS_PATH = app_paths.SETTINGS_FILE
DEFAULT_TIMEZONE = "UTC"
DEFAULT_STATUS_TTL_SECONDS = 21600
DEFAULT_CACHE_PREFIX = "import_status_"
DEFAULT_WP_TIMEOUT_SECONDS = 30.0

UNKNOWN_CALLBACK_SHEET = "Unknown_Import_Callbacks"
FATAL_CALLBACK_SHEET = "Fatal_Error_Callbacks"

ENV_KEYS: Mapping[str, str] = {
    "airtable_token": "AIRTABLE_API_TOKEN",
    "spreadsheet_id": "SHEETBRIDGE_SPREADSHEET_ID",
    "credential_path": "SHEETBRIDGE_CREDENTIALS_PATH",
    "timezone": "SHEETBRIDGE_TIMEZONE",
    "wp_base_url": "WP_IMPORT_BASE_URL",
    "wp_import_key": "WP_IMPORT_KEY",
    "webhook_secret": "WEBHOOK_SECRET",
    "status_db_path": "SHEETBRIDGE_STATUS_DB",
}


@dataclass
class TableSyncConfig:
    """Describes one Airtable table mirrored into one worksheet."""

    type: str
    base_id: str
    table_id: str
    sheet_name: str
    timestamp_field: str
    fields: List[str] = field(default_factory=list)
    view_name: Optional[str] = None
    title_field: str = "title"

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "TableSyncConfig":
        raw_fields = data.get("fields") or []
        fields = [str(item) for item in raw_fields] if isinstance(raw_fields, list) else []
        view = data.get("view_name") or data.get("view")
        return cls(
            type=str(data.get("type", "") or ""),
            base_id=str(data.get("base_id", "") or ""),
            table_id=str(data.get("table_id", "") or ""),
            sheet_name=str(data.get("sheet_name", "") or ""),
            timestamp_field=str(data.get("timestamp_field", "") or ""),
            fields=fields,
            view_name=str(view) if view else None,
            title_field=str(data.get("title_field", "title") or "title"),
        )

    def to_json(self) -> Dict[str, object]:
        return {
            "type": self.type,
            "base_id": self.base_id,
            "table_id": self.table_id,
            "sheet_name": self.sheet_name,
            "timestamp_field": self.timestamp_field,
            "fields": list(self.fields),
            "view_name": self.view_name,
            "title_field": self.title_field,
        }


@dataclass
class ImportJobConfig:
    """Routing information for one WP All Import import id."""

    import_id: str
    type: str
    import_log_sheet: str
    verify_sheet: str
    cache_prefix: str = DEFAULT_CACHE_PREFIX

    @classmethod
    def from_dict(cls, import_id: str, data: Mapping[str, object]) -> "ImportJobConfig":
        kind = str(data.get("type", "") or import_id)
        return cls(
            import_id=str(import_id),
            type=kind,
            import_log_sheet=str(data.get("import_log_sheet") or f"{kind}_wp_import_logs"),
            verify_sheet=str(data.get("verify_sheet") or f"{kind}_wp_callback_data"),
            cache_prefix=str(data.get("cache_prefix") or DEFAULT_CACHE_PREFIX),
        )

    def cache_key(self) -> str:
        return f"{self.cache_prefix}{self.import_id}"


def _default_imports() -> Dict[str, ImportJobConfig]:
    return {
        "31": ImportJobConfig.from_dict("31", {"type": "sessions"}),
        "30": ImportJobConfig.from_dict("30", {"type": "events"}),
    }


@dataclass
class AppSettings:
    airtable_token: str = ""
    spreadsheet_id: str = ""
    credential_path: str = str(app_paths.SERVICE_ACCOUNT_FILE)
    timezone: str = DEFAULT_TIMEZONE
    tables: List[TableSyncConfig] = field(default_factory=list)
    wp_base_url: str = ""
    wp_import_key: str = ""
    wp_timeout_seconds: float = DEFAULT_WP_TIMEOUT_SECONDS
    webhook_secret: str = ""
    imports: Dict[str, ImportJobConfig] = field(default_factory=_default_imports)
    status_db_path: str = str(app_paths.STATUS_DB_FILE)
    status_ttl_seconds: int = DEFAULT_STATUS_TTL_SECONDS
    last_run_path: str = str(app_paths.LAST_RUN_FILE)
    max_fetch_retries: int = 3
    base_retry_delay: float = 0.5
    inter_page_delay: float = 0.2
    unknown_callback_sheet: str = UNKNOWN_CALLBACK_SHEET
    fatal_callback_sheet: str = FATAL_CALLBACK_SHEET

    def require(self, *names: str) -> None:
        """Raise :class:`ConfigError` listing every empty attribute in ``names``."""

        missing = [name for name in names if not str(getattr(self, name, "") or "").strip()]
        if missing:
            hints = ", ".join(f"{name} ({ENV_KEYS[name]})" if name in ENV_KEYS else name for name in missing)
            raise ConfigError(f"Missing required settings: {hints}")

    def table(self, kind: str) -> TableSyncConfig:
        for config in self.tables:
            if config.type == kind:
                return config
        raise ConfigError(f"No table configured for type '{kind}'")

    def import_config(self, import_id: str) -> Optional[ImportJobConfig]:
        return self.imports.get(str(import_id).strip())


def validate_table_config(config: TableSyncConfig) -> None:
    """Fail fast when ``config`` cannot drive a sync run."""

    missing = [
        name
        for name in ("base_id", "table_id", "timestamp_field", "sheet_name")
        if not str(getattr(config, name) or "").strip()
    ]
    if not config.fields:
        missing.append("fields")
    if missing:
        raise ConfigError(f"Table config '{config.type or '?'}' is missing: {', '.join(missing)}")
    if config.timestamp_field not in config.fields:
        raise ConfigError(
            f"Timestamp field '{config.timestamp_field}' must be listed in fields for '{config.type}'"
        )
    if config.title_field not in config.fields:
        logger.warning(
            "Title field '%s' not in fields for '%s'; action log will use record ids",
            config.title_field,
            config.type,
        )


def _read_settings_file(path: Path) -> Dict[str, object]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Settings file {path} is not valid JSON: {exc.msg}") from exc
    except OSError as exc:
        raise ConfigError(f"Settings file {path} could not be read: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Settings file {path} must contain a JSON object")
    return data


def _coerce_int(value: object, default: int) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _coerce_float(value: object, default: float) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def load_settings(
    path: Optional[Path] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    dotenv: bool = True,
) -> AppSettings:
    """Build :class:`AppSettings` from defaults, ``path`` and the environment."""

    if env is None:
        if dotenv:
            load_dotenv()
        env = os.environ

    if path is None:
        override = env.get("SHEETBRIDGE_SETTINGS")
        path = Path(override).expanduser() if override else DEFAULT_SETTINGS_PATH

    data = _read_settings_file(Path(path))
    settings = AppSettings()

    for name in (
        "airtable_token",
        "spreadsheet_id",
        "credential_path",
        "timezone",
        "wp_base_url",
        "wp_import_key",
        "webhook_secret",
        "status_db_path",
        "last_run_path",
        "unknown_callback_sheet",
        "fatal_callback_sheet",
    ):
        value = data.get(name)
        if isinstance(value, str) and value.strip():
            setattr(settings, name, value.strip())

    settings.wp_timeout_seconds = _coerce_float(data.get("wp_timeout_seconds"), settings.wp_timeout_seconds)
    settings.status_ttl_seconds = max(1, _coerce_int(data.get("status_ttl_seconds"), settings.status_ttl_seconds))
    settings.max_fetch_retries = max(1, _coerce_int(data.get("max_fetch_retries"), settings.max_fetch_retries))
    settings.base_retry_delay = _coerce_float(data.get("base_retry_delay"), settings.base_retry_delay)
    settings.inter_page_delay = _coerce_float(data.get("inter_page_delay"), settings.inter_page_delay)

    tables = data.get("tables")
    if isinstance(tables, list):
        settings.tables = [TableSyncConfig.from_dict(entry) for entry in tables if isinstance(entry, Mapping)]

    imports = data.get("imports")
    if isinstance(imports, Mapping):
        settings.imports = {
            str(key): ImportJobConfig.from_dict(str(key), value)
            for key, value in imports.items()
            if isinstance(value, Mapping)
        }

    for name, env_key in ENV_KEYS.items():
        value = env.get(env_key)
        if value:
            setattr(settings, name, value.strip())

    logger.debug("Loaded settings from %s (%d tables)", path, len(settings.tables))
    return settings


__all__ = [
    "AppSettings",
    "DEFAULT_SETTINGS_PATH",
    "ENV_KEYS",
    "ImportJobConfig",
    "TableSyncConfig",
    "load_settings",
    "validate_table_config",
]
