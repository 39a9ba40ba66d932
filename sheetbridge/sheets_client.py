"""Google Sheets worksheet adapter with robust A1 range handling.

This module centralises all direct interactions with the Google Sheets API.
It exposes two small classes:

* :class:`Spreadsheet` resolves worksheets by title, creates them on demand
  and appends rows to log sheets.
* :class:`Worksheet` provides the grid operations the sync pipeline relies on
  (read everything, overwrite a range, append a block, delete a row, clear,
  resize and freeze the header row).

Titles are always quoted according to A1 rules so that "Unable to parse
range" errors cannot occur.  Retriable API failures (rate limits and 5xx
responses) are retried with a fixed backoff schedule; every other failure is
raised as :class:`~sheetbridge.errors.StoreError`.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, MutableSequence, Optional, Sequence, Tuple

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from sheetbridge.errors import StoreError
from sheetbridge.google_credentials import build_credentials

logger = logging.getLogger(__name__)

SCOPES: Sequence[str] = ("https://www.googleapis.com/auth/spreadsheets",)

RETRIABLE_STATUSES = {429, 500, 502, 503, 504}
MAX_RETRY_ATTEMPTS = 5
BACKOFF_SCHEDULE = (1, 2, 4, 8, 16)

DEFAULT_NEW_SHEET_ROWS = 1000
DEFAULT_NEW_SHEET_COLUMNS = 26


def quote_title(title: str) -> str:
    """Return a worksheet title quoted according to A1 notation rules."""

    safe = (title or "").strip()
    if not safe:
        raise StoreError("Worksheet title must not be empty")
    safe = safe.replace("'", "''")
    return f"'{safe}'"


def a1_range(title: str, range_spec: Optional[str] = None) -> str:
    if not range_spec:
        return quote_title(title)
    return f"{quote_title(title)}!{range_spec}"


def column_letter(index: int) -> str:
    """Return the spreadsheet column letter for a 1-indexed column index."""

    if index < 1:
        raise ValueError("Column index must be >= 1")
    letters: MutableSequence[str] = []
    while index:
        index, remainder = divmod(index - 1, 26)
        letters.append(chr(65 + remainder))
    return "".join(reversed(letters))


def block_spec(start_row: int, row_count: int, column_count: int) -> str:
    """Return ``A<start>:<col><end>`` covering ``row_count`` rows from ``start_row``."""

    if start_row < 1:
        raise ValueError("Row index must be >= 1")
    last_row = start_row + max(1, row_count) - 1
    last_column = column_letter(max(1, column_count))
    return f"A{start_row}:{last_column}{last_row}"


def row_block_range(title: str, start_row: int, row_count: int, column_count: int) -> str:
    return a1_range(title, block_spec(start_row, row_count, column_count))


def _http_status(exc: HttpError) -> int:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(status)
    except (TypeError, ValueError):
        return 0


def _call_with_retry(
    func: Callable[[], Any],
    description: str,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """Execute ``func`` applying the backoff schedule for retriable errors."""

    attempt = 0
    while True:
        try:
            return func()
        except HttpError as exc:
            status = _http_status(exc)
            if status not in RETRIABLE_STATUSES or attempt >= MAX_RETRY_ATTEMPTS - 1:
                raise StoreError(f"Sheets API {description} failed ({status or 'no status'}): {exc}") from exc
            delay = BACKOFF_SCHEDULE[min(attempt, len(BACKOFF_SCHEDULE) - 1)]
            attempt += 1
            logger.warning(
                "Sheets API %s error (%s). Retrying in %ss (%d/%d)",
                description,
                status,
                delay,
                attempt,
                MAX_RETRY_ATTEMPTS,
            )
            sleep(delay)


def build_service(credential_path: Path):
    """Return a Sheets v4 service authorised with a service account file."""

    credentials = build_credentials(Path(credential_path), SCOPES)
    return build("sheets", "v4", credentials=credentials, cache_discovery=False)


class Worksheet:
    """Grid operations on a single worksheet."""

    def __init__(
        self,
        spreadsheet: "Spreadsheet",
        title: str,
        sheet_id: int,
        *,
        row_count: int = 0,
        column_count: int = 0,
    ) -> None:
        self._spreadsheet = spreadsheet
        self.title = title
        self.sheet_id = sheet_id
        self._row_count = row_count
        self._column_count = column_count

    def __repr__(self) -> str:
        return f"Worksheet(title={self.title!r}, sheet_id={self.sheet_id})"

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_all_values(self) -> List[List[str]]:
        return self.get_range(None)

    def get_range(self, range_spec: Optional[str]) -> List[List[str]]:
        payload = self._spreadsheet.values_get(a1_range(self.title, range_spec))
        return [["" if cell is None else str(cell) for cell in row] for row in payload.get("values", [])]

    def row_count(self) -> int:
        return self._row_count

    def column_count(self) -> int:
        return self._column_count

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def set_values(self, range_spec: str, rows: Sequence[Sequence[str]]) -> None:
        self._spreadsheet.values_update(a1_range(self.title, range_spec), rows)

    def set_row(self, position: int, values: Sequence[str]) -> None:
        self.set_values(block_spec(position, 1, len(values)), [list(values)])

    def append_rows(self, rows: Sequence[Sequence[str]], *, after_row: Optional[int] = None) -> int:
        """Write ``rows`` as one block below ``after_row`` and return the first row used."""

        if not rows:
            return 0
        if after_row is None:
            after_row = len(self.get_all_values())
        start = after_row + 1
        needed = after_row + len(rows)
        if needed > self._row_count:
            self._spreadsheet.batch_update(
                [
                    {
                        "appendDimension": {
                            "sheetId": self.sheet_id,
                            "dimension": "ROWS",
                            "length": needed - self._row_count,
                        }
                    }
                ],
                "appendDimension",
            )
            self._row_count = needed
        width = max(len(row) for row in rows)
        self._spreadsheet.values_update(row_block_range(self.title, start, len(rows), width), rows)
        return start

    def delete_row(self, position: int) -> None:
        if position < 1:
            raise ValueError("Row index must be >= 1")
        self._spreadsheet.batch_update(
            [
                {
                    "deleteDimension": {
                        "range": {
                            "sheetId": self.sheet_id,
                            "dimension": "ROWS",
                            "startIndex": position - 1,
                            "endIndex": position,
                        }
                    }
                }
            ],
            "deleteDimension",
        )
        self._row_count = max(0, self._row_count - 1)

    def clear(self) -> None:
        self._spreadsheet.values_clear(a1_range(self.title))

    def resize(self, rows: int, columns: int) -> None:
        rows = max(1, rows)
        columns = max(1, columns)
        self._spreadsheet.batch_update(
            [
                {
                    "updateSheetProperties": {
                        "properties": {
                            "sheetId": self.sheet_id,
                            "gridProperties": {"rowCount": rows, "columnCount": columns},
                        },
                        "fields": "gridProperties(rowCount,columnCount)",
                    }
                }
            ],
            "resize",
        )
        self._row_count = rows
        self._column_count = columns

    def freeze_header_row(self, frozen: bool = True) -> None:
        self._spreadsheet.batch_update(
            [
                {
                    "updateSheetProperties": {
                        "properties": {
                            "sheetId": self.sheet_id,
                            "gridProperties": {"frozenRowCount": 1 if frozen else 0},
                        },
                        "fields": "gridProperties.frozenRowCount",
                    }
                }
            ],
            "freeze",
        )


class Spreadsheet:
    """A Google spreadsheet addressed by id."""

    def __init__(self, service, spreadsheet_id: str, *, sleep: Callable[[float], None] = time.sleep) -> None:
        if not (spreadsheet_id or "").strip():
            raise StoreError("Spreadsheet id must be configured")
        self._service = service
        self.spreadsheet_id = spreadsheet_id.strip()
        self._sleep = sleep

    @classmethod
    def open(cls, spreadsheet_id: str, credential_path: Path) -> "Spreadsheet":
        return cls(build_service(credential_path), spreadsheet_id)

    # ------------------------------------------------------------------
    # Raw API helpers
    # ------------------------------------------------------------------
    def _execute(self, request, description: str) -> Dict[str, Any]:
        result = _call_with_retry(request.execute, description, sleep=self._sleep)
        return result or {}

    def metadata(self) -> Dict[str, Any]:
        request = self._service.spreadsheets().get(spreadsheetId=self.spreadsheet_id, includeGridData=False)
        return self._execute(request, "spreadsheets.get")

    def values_get(self, range_spec: str) -> Dict[str, Any]:
        request = self._service.spreadsheets().values().get(
            spreadsheetId=self.spreadsheet_id,
            range=range_spec,
            majorDimension="ROWS",
        )
        return self._execute(request, "values.get")

    def values_update(self, range_spec: str, rows: Sequence[Sequence[str]]) -> Dict[str, Any]:
        request = self._service.spreadsheets().values().update(
            spreadsheetId=self.spreadsheet_id,
            range=range_spec,
            valueInputOption="RAW",
            body={"range": range_spec, "majorDimension": "ROWS", "values": [list(row) for row in rows]},
        )
        return self._execute(request, "values.update")

    def values_append(self, range_spec: str, rows: Sequence[Sequence[str]]) -> Dict[str, Any]:
        request = self._service.spreadsheets().values().append(
            spreadsheetId=self.spreadsheet_id,
            range=range_spec,
            valueInputOption="RAW",
            insertDataOption="INSERT_ROWS",
            body={"majorDimension": "ROWS", "values": [list(row) for row in rows]},
        )
        return self._execute(request, "values.append")

    def values_clear(self, range_spec: str) -> None:
        request = self._service.spreadsheets().values().clear(
            spreadsheetId=self.spreadsheet_id,
            range=range_spec,
            body={},
        )
        self._execute(request, "values.clear")

    def batch_update(self, requests: List[Dict[str, Any]], description: str = "batchUpdate") -> Dict[str, Any]:
        request = self._service.spreadsheets().batchUpdate(
            spreadsheetId=self.spreadsheet_id,
            body={"requests": requests},
        )
        return self._execute(request, description)

    # ------------------------------------------------------------------
    # Worksheets
    # ------------------------------------------------------------------
    def _find(self, title: str) -> Optional[Worksheet]:
        wanted = (title or "").strip()
        for sheet in self.metadata().get("sheets", []):
            properties = sheet.get("properties", {})
            if properties.get("title") == wanted:
                grid = properties.get("gridProperties", {})
                return Worksheet(
                    self,
                    wanted,
                    int(properties.get("sheetId", 0)),
                    row_count=int(grid.get("rowCount", 0)),
                    column_count=int(grid.get("columnCount", 0)),
                )
        return None

    def worksheet(self, title: str) -> Worksheet:
        found = self._find(title)
        if found is None:
            raise StoreError(f"Worksheet '{title}' not found")
        return found

    def ensure_worksheet(
        self,
        title: str,
        *,
        rows: int = DEFAULT_NEW_SHEET_ROWS,
        columns: int = DEFAULT_NEW_SHEET_COLUMNS,
    ) -> Tuple[Worksheet, bool]:
        """Return the worksheet called ``title``, creating it when missing."""

        found = self._find(title)
        if found is not None:
            return found, False
        quote_title(title)
        reply = self.batch_update(
            [
                {
                    "addSheet": {
                        "properties": {
                            "title": title.strip(),
                            "gridProperties": {"rowCount": rows, "columnCount": columns},
                        }
                    }
                }
            ],
            "addSheet",
        )
        sheet_id = 0
        for entry in reply.get("replies", []):
            properties = entry.get("addSheet", {}).get("properties", {})
            if "sheetId" in properties:
                sheet_id = int(properties["sheetId"])
        logger.info("Created worksheet '%s' (sheetId=%s)", title, sheet_id)
        return Worksheet(self, title.strip(), sheet_id, row_count=rows, column_count=columns), True

    def append_log_row(self, title: str, header: Sequence[str], row: Sequence[object]) -> None:
        """Append ``row`` to the log sheet ``title``, writing ``header`` first on a new sheet."""

        worksheet, created = self.ensure_worksheet(title, columns=max(len(header), 1))
        if created or not worksheet.get_range("1:1"):
            worksheet.set_values(block_spec(1, 1, len(header)), [list(header)])
            worksheet.freeze_header_row(True)
        cells = ["" if value is None else str(value) for value in row]
        self.values_append(a1_range(title, "A1"), [cells])


__all__ = [
    "SCOPES",
    "Spreadsheet",
    "Worksheet",
    "a1_range",
    "block_spec",
    "build_service",
    "column_letter",
    "quote_title",
    "row_block_range",
]
