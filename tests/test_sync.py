import json
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from fakes import FakeClock, FakeSheetsService
from sheetbridge.airtable import ExternalRecord
from sheetbridge.errors import FetchError
from sheetbridge.reconcile import RECORD_ID_HEADER
from sheetbridge.settings import AppSettings, TableSyncConfig
from sheetbridge.sheets_client import Spreadsheet
from sheetbridge.sync import (
    STATUS_FAILED,
    STATUS_NEVER_RUN,
    STATUS_PARTIAL,
    STATUS_SUCCESS,
    load_last_run,
    run_full_sync,
    sync_table,
)


class _FakeFetcher:
    def __init__(self, tables, failing=()):
        self.tables = tables
        self.failing = set(failing)
        self.calls = []

    def fetch_all(self, endpoint, fields=(), view=None):
        self.calls.append((endpoint, list(fields), view))
        table_id = endpoint.rsplit("/", 1)[-1]
        if table_id in self.failing:
            raise FetchError("Failed to fetch page 1", status_code=503)
        return [ExternalRecord.from_payload(payload) for payload in self.tables.get(table_id, [])]


def _config(kind="events", table_id="tblEvents", sheet="Events"):
    return TableSyncConfig(
        type=kind,
        base_id="appBase",
        table_id=table_id,
        sheet_name=sheet,
        timestamp_field="lastModified",
        fields=["title", "lastModified"],
        view_name="Grid view",
    )


def _record(record_id, title, modified):
    return {"id": record_id, "fields": {"title": title, "lastModified": modified}}


def _spreadsheet(service):
    return Spreadsheet(service, "spreadsheet-1", sleep=lambda _seconds: None)


def test_first_sync_populates_new_sheet():
    service = FakeSheetsService()
    fetcher = _FakeFetcher(
        {
            "tblEvents": [
                _record("rec1", "Opening", "2024-01-01T10:00:00.000Z"),
                _record("rec2", "Closing", "2024-01-01T11:00:00.000Z"),
            ]
        }
    )

    result = sync_table(_config(), fetcher=fetcher, spreadsheet=_spreadsheet(service), tz="UTC")

    assert result.success
    assert result.counters() == {"updated": 0, "skipped": 0, "created": 2, "deleted": 0}
    assert service.sheets["Events"] == [
        [RECORD_ID_HEADER, "title", "lastModified"],
        ["rec1", "Opening", "2024-01-01 10:00:00"],
        ["rec2", "Closing", "2024-01-01 11:00:00"],
    ]
    assert fetcher.calls[0] == (
        "https://api.airtable.com/v0/appBase/tblEvents",
        ["title", "lastModified"],
        "Grid view",
    )
    assert any("Created new sheet" in line for line in result.log)


def test_second_sync_is_incremental():
    service = FakeSheetsService(
        {
            "Events": [
                [RECORD_ID_HEADER, "title", "lastModified"],
                ["rec1", "Opening", "2024-01-01 10:00:00"],
                ["rec2", "Closing", "2024-01-01 11:00:00"],
                ["rec3", "Dropped", "2024-01-01 12:00:00"],
            ]
        }
    )
    fetcher = _FakeFetcher(
        {
            "tblEvents": [
                _record("rec1", "Opening", "2024-01-01T10:00:00.000Z"),
                _record("rec2", "Closing party", "2024-01-02T09:00:00.000Z"),
                _record("rec4", "Encore", "2024-01-02T10:00:00.000Z"),
            ]
        }
    )

    result = sync_table(_config(), fetcher=fetcher, spreadsheet=_spreadsheet(service), tz="UTC")

    assert result.success
    assert result.counters() == {"updated": 1, "skipped": 1, "created": 1, "deleted": 1}
    assert service.sheets["Events"] == [
        [RECORD_ID_HEADER, "title", "lastModified"],
        ["rec1", "Opening", "2024-01-01 10:00:00"],
        ["rec2", "Closing party", "2024-01-02 09:00:00"],
        ["rec4", "Encore", "2024-01-02 10:00:00"],
    ]
    assert "Updated Events: 'Closing party'" in result.actions


def test_fetch_failure_leaves_sheet_untouched():
    service = FakeSheetsService({"Events": [[RECORD_ID_HEADER], ["rec1"]]})
    fetcher = _FakeFetcher({}, failing={"tblEvents"})

    result = sync_table(_config(), fetcher=fetcher, spreadsheet=_spreadsheet(service))

    assert not result.success
    assert "HTTP 503" in result.error
    assert service.sheets["Events"] == [[RECORD_ID_HEADER], ["rec1"]]
    assert service.batch_requests == []


def test_empty_fetch_removes_every_stored_row():
    header = [RECORD_ID_HEADER, "title", "lastModified"]
    service = FakeSheetsService(
        {
            "Events": [
                header,
                ["recB", "B", "2024-01-01 00:00:00"],
                ["recC", "C", "2024-01-02 00:00:00"],
            ]
        }
    )

    result = sync_table(_config(), fetcher=_FakeFetcher({}), spreadsheet=_spreadsheet(service), tz="UTC")

    assert result.success
    assert result.counters() == {"updated": 0, "skipped": 0, "created": 0, "deleted": 2}
    assert service.sheets["Events"] == [header]
    assert "Removed Events: 'B'" in result.actions


def test_empty_fetch_with_stale_header_rewrites_to_header_only():
    service = FakeSheetsService({"Events": [[RECORD_ID_HEADER], ["rec1"]]})

    result = sync_table(_config(), fetcher=_FakeFetcher({}), spreadsheet=_spreadsheet(service))

    assert result.success
    assert result.deleted == 1
    assert service.sheets["Events"] == [[RECORD_ID_HEADER, "title", "lastModified"]]


def test_empty_fetch_and_header_only_sheet_is_a_no_op():
    header = [RECORD_ID_HEADER, "title", "lastModified"]
    service = FakeSheetsService({"Events": [list(header)]})

    result = sync_table(_config(), fetcher=_FakeFetcher({}), spreadsheet=_spreadsheet(service))

    assert result.success
    assert result.counters() == {"updated": 0, "skipped": 0, "created": 0, "deleted": 0}
    assert service.sheets["Events"] == [header]
    assert service.batch_requests == []
    assert service.updates == []

def test_invalid_config_fails_before_fetching():
    config = _config()
    config.fields = ["title"]
    fetcher = _FakeFetcher({})

    result = sync_table(config, fetcher=fetcher, spreadsheet=_spreadsheet(FakeSheetsService()))

    assert not result.success
    assert "lastModified" in result.error
    assert fetcher.calls == []


def test_run_full_sync_aggregates_and_persists(tmp_path):
    settings = AppSettings(
        tables=[_config(), _config("sessions", "tblSessions", "Sessions")],
        last_run_path=str(tmp_path / "state" / "last_sync.json"),
    )
    fetcher = _FakeFetcher(
        {
            "tblEvents": [_record("rec1", "Opening", "2024-01-01T10:00:00.000Z")],
            "tblSessions": [_record("recS", "Talk", "2024-01-01T10:00:00.000Z")],
        }
    )

    summary = run_full_sync(
        settings,
        fetcher=fetcher,
        spreadsheet=_spreadsheet(FakeSheetsService()),
        clock=FakeClock(),
    )

    assert summary.status == STATUS_SUCCESS
    assert summary.total_errors == 0
    assert summary.type_counters["events"]["created"] == 1
    assert summary.type_counters["sessions"]["created"] == 1
    stored = json.loads((tmp_path / "state" / "last_sync.json").read_text(encoding="utf-8"))
    assert stored["last_sync_status"] == STATUS_SUCCESS
    reloaded = load_last_run(tmp_path / "state" / "last_sync.json")
    assert reloaded.type_counters == summary.type_counters
    assert reloaded.recent_items == summary.recent_items


def test_one_failing_table_does_not_stop_the_others(tmp_path):
    settings = AppSettings(
        tables=[_config(), _config("sessions", "tblSessions", "Sessions")],
        last_run_path=str(tmp_path / "last_sync.json"),
    )
    fetcher = _FakeFetcher(
        {"tblSessions": [_record("recS", "Talk", "2024-01-01T10:00:00.000Z")]},
        failing={"tblEvents"},
    )
    service = FakeSheetsService()

    summary = run_full_sync(settings, fetcher=fetcher, spreadsheet=_spreadsheet(service), clock=FakeClock())

    assert summary.status == STATUS_PARTIAL
    assert summary.total_errors == 1
    assert "Sessions" in service.sheets
    assert any("ERROR" in line for line in summary.logs)


def test_run_full_sync_without_tables_fails(tmp_path):
    settings = AppSettings(last_run_path=str(tmp_path / "last_sync.json"))

    summary = run_full_sync(settings, clock=FakeClock())

    assert summary.status == STATUS_FAILED
    assert summary.total_errors == 1
    assert load_last_run(tmp_path / "last_sync.json").status == STATUS_FAILED


def test_missing_token_fails_without_fetching(tmp_path):
    settings = AppSettings(tables=[_config()], last_run_path=str(tmp_path / "last_sync.json"))

    summary = run_full_sync(settings, spreadsheet=_spreadsheet(FakeSheetsService()), clock=FakeClock())

    assert summary.status == STATUS_FAILED
    assert any("AIRTABLE_API_TOKEN" in line for line in summary.logs)


def test_load_last_run_defaults(tmp_path):
    missing = load_last_run(tmp_path / "missing.json")
    corrupt_path = tmp_path / "corrupt.json"
    corrupt_path.write_text("{not json", encoding="utf-8")

    assert missing.status == STATUS_NEVER_RUN
    assert missing.logs == ["No previous sync data available."]
    assert load_last_run(corrupt_path).status == STATUS_NEVER_RUN
