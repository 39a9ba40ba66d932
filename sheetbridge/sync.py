"""Airtable → Google Sheets synchronisation entry points.

``sync_table`` mirrors one configured table into its worksheet and always
returns a :class:`~sheetbridge.materialize.SyncResult`; failures are reported
on the result instead of being raised.  ``run_full_sync`` runs every
configured table, aggregates the counters and stores a summary of the run
for dashboards (see :func:`load_last_run`).
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from sheetbridge import app_paths
from sheetbridge.airtable import AirtableClient, table_url
from sheetbridge.errors import ConfigError, CredentialsError, FetchError, StoreError
from sheetbridge.materialize import SyncResult, materialize
from sheetbridge.reconcile import build_header, build_rows, reconcile, sheet_rows_from_values
from sheetbridge.settings import AppSettings, TableSyncConfig, validate_table_config
from sheetbridge.sheets_client import Spreadsheet
from sheetbridge.values import TimezoneLike, resolve_timezone

logger = logging.getLogger(__name__)

STATUS_NEVER_RUN = "Never Run"
STATUS_SUCCESS = "Success"
STATUS_PARTIAL = "Completed with errors"
STATUS_FAILED = "Failed"


@dataclass
class RunSummary:
    """Aggregated outcome of a sync over every configured table."""

    timestamp: Optional[str] = None
    status: str = STATUS_NEVER_RUN
    duration: float = 0.0
    type_counters: Dict[str, Dict[str, int]] = field(default_factory=dict)
    total_errors: int = 0
    logs: List[str] = field(default_factory=list)
    recent_items: List[str] = field(default_factory=list)
    results: List[SyncResult] = field(default_factory=list)

    def to_json(self) -> Dict[str, object]:
        return {
            "last_sync_timestamp": self.timestamp,
            "last_sync_status": self.status,
            "last_sync_duration": round(self.duration, 3),
            "last_sync_results": {
                "type_counters": self.type_counters,
                "total_errors": self.total_errors,
                "logs": list(self.logs),
                "recent_items": list(self.recent_items),
            },
        }

    @classmethod
    def from_json(cls, data: Dict[str, object]) -> "RunSummary":
        results = data.get("last_sync_results") or {}
        if not isinstance(results, dict):
            results = {}
        counters = results.get("type_counters") or {}
        return cls(
            timestamp=data.get("last_sync_timestamp") or None,  # type: ignore[arg-type]
            status=str(data.get("last_sync_status") or STATUS_NEVER_RUN),
            duration=float(data.get("last_sync_duration") or 0.0),  # type: ignore[arg-type]
            type_counters=dict(counters) if isinstance(counters, dict) else {},
            total_errors=int(results.get("total_errors") or 0),
            logs=[str(item) for item in results.get("logs") or []],
            recent_items=[str(item) for item in results.get("recent_items") or []],
        )


def _index_of(header: List[str], name: str) -> Optional[int]:
    try:
        return header.index(name)
    except ValueError:
        return None


def sync_table(
    config: TableSyncConfig,
    *,
    fetcher: AirtableClient,
    spreadsheet: Spreadsheet,
    tz: TimezoneLike = None,
    log_callback: Optional[Callable[[str], None]] = None,
) -> SyncResult:
    """Mirror the Airtable table described by ``config`` into its worksheet."""

    result = SyncResult(entity=config.type or "record", sheet_name=config.sheet_name)

    def note(message: str) -> None:
        result.log.append(message)
        if log_callback is not None:
            log_callback(message)

    try:
        validate_table_config(config)
    except ConfigError as exc:
        logger.error("Invalid table config: %s", exc)
        note(f"ERROR: {exc}")
        result.fail(str(exc))
        return result

    zone = resolve_timezone(tz)
    header = build_header(config.fields)
    endpoint = table_url(config.base_id, config.table_id)
    note(f"Starting sync of '{config.type}' into sheet '{config.sheet_name}'")

    try:
        records = fetcher.fetch_all(endpoint, config.fields, config.view_name)
    except FetchError as exc:
        logger.error("Fetch failed for %s: %s", config.type, exc)
        note(f"ERROR fetching records: {exc}")
        result.fail(f"{config.type}: {exc}")
        return result

    rows = build_rows(records, header, zone)
    note(f"Fetched {len(records)} records ({len(rows)} with ids)")

    try:
        worksheet, created = spreadsheet.ensure_worksheet(config.sheet_name, columns=len(header))
        existing_values = [] if created else worksheet.get_all_values()
    except StoreError as exc:
        logger.error("Could not open sheet %s: %s", config.sheet_name, exc)
        note(f"ERROR opening sheet: {exc}")
        result.fail(f"{config.type}: {exc}")
        return result
    if created:
        note(f"Created new sheet: {config.sheet_name}")

    if not rows:
        if len(existing_values) <= 1:
            note("No records fetched and sheet has no data rows; nothing to do")
            return result
        logger.warning("View for %s returned no records; clearing %s", config.type, config.sheet_name)
        note(f"WARN: No records fetched; removing {len(existing_values) - 1} rows from '{config.sheet_name}'")

    timestamp_index = header.index(config.timestamp_field)
    stored_header = list(existing_values[0]) if existing_values else []
    plan = reconcile(
        rows,
        sheet_rows_from_values(existing_values),
        timestamp_index=timestamp_index,
        existing_timestamp_index=_index_of(stored_header, config.timestamp_field),
        tz=zone,
    )

    outcome = materialize(
        header,
        rows,
        plan,
        worksheet,
        existing_values=existing_values,
        entity=config.type or "record",
        sheet_name=config.sheet_name,
        title_index=_index_of(header, config.title_field),
        log_callback=log_callback,
    )
    outcome.log = result.log + outcome.log
    logger.info("Sync of %s finished: %s", config.type, outcome.counters())
    return outcome


def save_last_run(summary: RunSummary, path: Path) -> None:
    path = app_paths.ensure_parent(path)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(summary.to_json(), handle, indent=2)


def load_last_run(path: Path) -> RunSummary:
    """Return the stored summary of the previous run, or a "Never Run" summary."""

    default = RunSummary(
        logs=["No previous sync data available."],
        recent_items=["No previous sync actions recorded."],
    )
    path = Path(path)
    if not path.exists():
        return default
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Could not read last sync summary %s: %s", path, exc)
        return default
    if not isinstance(data, dict):
        return default
    return RunSummary.from_json(data)


def run_full_sync(
    settings: AppSettings,
    *,
    fetcher: Optional[AirtableClient] = None,
    spreadsheet: Optional[Spreadsheet] = None,
    clock: Callable[[], float] = time.time,
    persist: bool = True,
) -> RunSummary:
    """Sync every configured table; one failing table never stops the others."""

    started = clock()
    summary = RunSummary()
    master_log: List[str] = []

    def add_log(message: str) -> None:
        stamp = datetime.fromtimestamp(clock()).strftime("%H:%M:%S")
        master_log.append(f"[{stamp}] {message}")

    try:
        if not settings.tables:
            raise ConfigError("No tables configured")
        if fetcher is None:
            settings.require("airtable_token")
            fetcher = AirtableClient(
                settings.airtable_token,
                max_retries=settings.max_fetch_retries,
                base_delay=settings.base_retry_delay,
                inter_page_delay=settings.inter_page_delay,
            )
        if spreadsheet is None:
            settings.require("spreadsheet_id")
            spreadsheet = Spreadsheet.open(settings.spreadsheet_id, Path(settings.credential_path))
    except (ConfigError, CredentialsError, StoreError) as exc:
        logger.error("Sync aborted: %s", exc)
        add_log(f"ERROR: {exc}")
        summary.status = STATUS_FAILED
        summary.total_errors = 1
    else:
        add_log("Starting full Airtable to Sheets sync")
        for config in settings.tables:
            add_log(f"--- Processing: {config.type.upper()} (Sheet: {config.sheet_name}) ---")
            result = sync_table(
                config,
                fetcher=fetcher,
                spreadsheet=spreadsheet,
                tz=settings.timezone,
                log_callback=add_log,
            )
            summary.results.append(result)
            summary.type_counters[result.entity] = result.counters()
            summary.recent_items.extend(result.actions)
            if not result.success:
                summary.total_errors += 1
                add_log(f"ERROR: {result.error}")
        if summary.total_errors == 0:
            summary.status = STATUS_SUCCESS
        elif summary.total_errors < len(settings.tables):
            summary.status = STATUS_PARTIAL
        else:
            summary.status = STATUS_FAILED

    summary.duration = max(0.0, clock() - started)
    summary.timestamp = datetime.fromtimestamp(started).isoformat(timespec="seconds")
    add_log(f"Sync finished with status '{summary.status}' in {summary.duration:.1f}s")
    summary.logs = master_log

    if persist:
        try:
            save_last_run(summary, Path(settings.last_run_path))
        except OSError as exc:
            logger.warning("Could not store last sync summary: %s", exc)
    return summary


__all__ = [
    "RunSummary",
    "load_last_run",
    "run_full_sync",
    "save_last_run",
    "sync_table",
]
