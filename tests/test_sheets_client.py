from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import httplib2
import pytest
from googleapiclient.errors import HttpError

from fakes import FakeSheetsService
from sheetbridge import sheets_client
from sheetbridge.errors import StoreError
from sheetbridge.sheets_client import Spreadsheet, Worksheet


def _http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({"status": status}), b"error")


def _spreadsheet(service: FakeSheetsService, sleeps=None) -> Spreadsheet:
    recorder = sleeps if sleeps is not None else []
    return Spreadsheet(service, "spreadsheet-1", sleep=recorder.append)


@pytest.mark.parametrize(
    "title, expected",
    [
        ("items", "'items'"),
        (" Sheet Name ", "'Sheet Name'"),
        ("Bob's Rugs", "'Bob''s Rugs'"),
    ],
)
def test_quote_title_always_wraps_in_single_quotes(title, expected):
    assert sheets_client.quote_title(title) == expected


def test_quote_title_rejects_empty_titles():
    with pytest.raises(StoreError):
        sheets_client.quote_title("  ")


@pytest.mark.parametrize("index, letter", [(1, "A"), (26, "Z"), (27, "AA"), (80, "CB")])
def test_column_letter(index, letter):
    assert sheets_client.column_letter(index) == letter


def test_range_helpers():
    assert sheets_client.a1_range("events", "A2:C") == "'events'!A2:C"
    assert sheets_client.a1_range("events") == "'events'"
    assert sheets_client.block_spec(2, 3, 3) == "A2:C4"
    assert sheets_client.row_block_range("events", 5, 1, 28) == "'events'!A5:AB5"
    with pytest.raises(ValueError):
        sheets_client.block_spec(0, 1, 1)


def test_spreadsheet_requires_an_id():
    with pytest.raises(StoreError):
        Spreadsheet(FakeSheetsService(), "  ")


def test_ensure_worksheet_creates_missing_sheet():
    service = FakeSheetsService()

    worksheet, created = _spreadsheet(service).ensure_worksheet("events", columns=3)

    assert created is True
    assert worksheet.sheet_id == 42
    assert worksheet.column_count() == 3
    add_sheet = service.batch_requests[0]["requests"][0]["addSheet"]["properties"]
    assert add_sheet["title"] == "events"


def test_ensure_worksheet_returns_existing_sheet():
    service = FakeSheetsService({"events": [["AirtableRecordID"], ["rec1"]]})

    worksheet, created = _spreadsheet(service).ensure_worksheet("events")

    assert created is False
    assert worksheet.sheet_id == 0
    assert worksheet.get_all_values() == [["AirtableRecordID"], ["rec1"]]
    assert service.batch_requests == []


def test_worksheet_lookup_fails_for_unknown_title():
    with pytest.raises(StoreError):
        _spreadsheet(FakeSheetsService()).worksheet("missing")


def test_append_log_row_writes_header_on_new_sheet():
    service = FakeSheetsService()
    spreadsheet = _spreadsheet(service)

    spreadsheet.append_log_row("logs", ("Import ID", "Count"), ["31", 5])
    spreadsheet.append_log_row("logs", ("Import ID", "Count"), ["30", None])

    assert service.sheets["logs"] == [["Import ID", "Count"], ["31", "5"], ["30", ""]]
    assert service.updates[0][0] == "'logs'!A1:B1"
    assert [entry[0] for entry in service.appends] == ["'logs'!A1", "'logs'!A1"]


def test_append_rows_grows_grid_before_writing():
    service = FakeSheetsService({"events": [["h1", "h2"], ["a", "b"], ["c", "d"]]})
    worksheet = Worksheet(_spreadsheet(service), "events", 0, row_count=3, column_count=2)

    start = worksheet.append_rows([["e", "f"], ["g", "h"]], after_row=3)

    assert start == 4
    assert service.request_kinds() == ["appendDimension"]
    assert service.batch_requests[0]["requests"][0]["appendDimension"]["length"] == 2
    assert service.updates[-1][0] == "'events'!A4:B5"
    assert service.sheets["events"][-1] == ["g", "h"]
    assert worksheet.row_count() == 5


def test_delete_row_uses_zero_based_dimension_range():
    service = FakeSheetsService({"events": [["h"], ["a"], ["b"]]})
    worksheet = _spreadsheet(service).worksheet("events")

    worksheet.delete_row(3)

    target = service.batch_requests[0]["requests"][0]["deleteDimension"]["range"]
    assert (target["startIndex"], target["endIndex"]) == (2, 3)
    assert service.sheets["events"] == [["h"], ["a"]]


def test_set_row_targets_single_row_block():
    service = FakeSheetsService({"events": [["h1", "h2"], ["a", "b"]]})
    worksheet = _spreadsheet(service).worksheet("events")

    worksheet.set_row(2, ["x", "y"])

    assert service.updates[-1] == ("'events'!A2:B2", [["x", "y"]])


def test_retriable_errors_follow_backoff_schedule():
    service = FakeSheetsService({"events": [["h"]]})
    service.fail_next("values.get", _http_error(503), _http_error(429))
    sleeps = []

    values = _spreadsheet(service, sleeps).worksheet("events").get_all_values()

    assert values == [["h"]]
    assert sleeps == [1, 2]


def test_non_retriable_error_raises_store_error_immediately():
    service = FakeSheetsService({"events": [["h"]]})
    service.fail_next("values.get", _http_error(400))
    sleeps = []

    with pytest.raises(StoreError) as excinfo:
        _spreadsheet(service, sleeps).worksheet("events").get_all_values()

    assert "400" in str(excinfo.value)
    assert sleeps == []


def test_retry_budget_is_limited():
    service = FakeSheetsService({"events": [["h"]]})
    service.fail_next("values.get", *[_http_error(500) for _ in range(5)])
    sleeps = []

    with pytest.raises(StoreError):
        _spreadsheet(service, sleeps).worksheet("events").get_all_values()

    assert sleeps == [1, 2, 4, 8]
