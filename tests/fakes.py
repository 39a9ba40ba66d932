"""In-memory stand-ins for the Google Sheets service and HTTP sessions."""
from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional


class FakeRequest:
    def __init__(self, callback):
        self._callback = callback

    def execute(self):
        return self._callback()


class _FakeValues:
    def __init__(self, service: "FakeSheetsService") -> None:
        self._service = service

    def get(self, spreadsheetId: str, range: str, majorDimension: str = "ROWS"):  # noqa: N803 - API compatibility
        return self._service._wrap("values.get", lambda: self._service._handle_get(range))

    def update(self, spreadsheetId: str, range: str, valueInputOption: str, body: Dict[str, Any]):  # noqa: N803
        return self._service._wrap("values.update", lambda: self._service._handle_update(range, body))

    def append(  # noqa: N803 - API compatibility
        self,
        spreadsheetId: str,
        range: str,
        valueInputOption: str,
        insertDataOption: str,
        body: Dict[str, Any],
    ):
        return self._service._wrap("values.append", lambda: self._service._handle_append(range, body))

    def clear(self, spreadsheetId: str, range: str, body: Dict[str, Any]):  # noqa: N803 - API compatibility
        return self._service._wrap("values.clear", lambda: self._service._handle_clear(range))


class _FakeSpreadsheets:
    def __init__(self, service: "FakeSheetsService") -> None:
        self._service = service

    def get(self, spreadsheetId: str, includeGridData: bool = False):  # noqa: N803 - API compatibility
        return self._service._wrap("get", self._service._metadata)

    def values(self) -> _FakeValues:
        return _FakeValues(self._service)

    def batchUpdate(self, spreadsheetId: str, body: Dict[str, Any]):  # noqa: N802,N803 - API compatibility
        return self._service._wrap("batchUpdate", lambda: self._service._handle_batch_update(body))


class FakeSheetsService:
    """Keeps every worksheet as a list of rows and records each call."""

    def __init__(self, sheets: Optional[Dict[str, Iterable[List[Any]]]] = None) -> None:
        self.sheets: Dict[str, List[List[Any]]] = {}
        self.sheet_ids: Dict[str, int] = {}
        for index, (title, rows) in enumerate((sheets or {}).items()):
            self.sheets[title] = [list(row) for row in rows]
            self.sheet_ids[title] = index
        self.next_sheet_id = 42
        self.batch_requests: List[Dict[str, Any]] = []
        self.updates: List[tuple] = []
        self.appends: List[tuple] = []
        self.failures: Dict[str, List[Exception]] = {}

    def spreadsheets(self) -> _FakeSpreadsheets:
        return _FakeSpreadsheets(self)

    def fail_next(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    # Internal helpers -------------------------------------------------
    def _wrap(self, method: str, callback) -> FakeRequest:
        def run():
            pending = self.failures.get(method)
            if pending:
                raise pending.pop(0)
            return callback()

        return FakeRequest(run)

    @staticmethod
    def _split(range_spec: str) -> tuple:
        title, _, cells = range_spec.partition("!")
        return title[1:-1].replace("''", "'"), cells

    def _title_for(self, sheet_id: int) -> str:
        for title, value in self.sheet_ids.items():
            if value == sheet_id:
                return title
        raise KeyError(sheet_id)

    def _metadata(self) -> Dict[str, Any]:
        return {
            "sheets": [
                {
                    "properties": {
                        "title": title,
                        "sheetId": self.sheet_ids[title],
                        "gridProperties": {"rowCount": max(len(rows), 1), "columnCount": 26},
                    }
                }
                for title, rows in self.sheets.items()
            ]
        }

    def _handle_get(self, range_spec: str) -> Dict[str, Any]:
        title, cells = self._split(range_spec)
        rows = self.sheets.get(title, [])
        if cells == "1:1":
            rows = rows[:1]
        if not rows:
            return {"range": range_spec}
        return {"range": range_spec, "values": [list(row) for row in rows]}

    def _handle_update(self, range_spec: str, body: Dict[str, Any]) -> Dict[str, Any]:
        title, cells = self._split(range_spec)
        self.updates.append((range_spec, [list(row) for row in body["values"]]))
        match = re.match(r"A(\d+):[A-Z]+\d+", cells)
        start = int(match.group(1)) - 1
        rows = self.sheets.setdefault(title, [])
        while len(rows) < start:
            rows.append([])
        for offset, values in enumerate(body["values"]):
            index = start + offset
            if index < len(rows):
                rows[index] = list(values)
            else:
                rows.append(list(values))
        return {"updatedRange": range_spec}

    def _handle_append(self, range_spec: str, body: Dict[str, Any]) -> Dict[str, Any]:
        title, _cells = self._split(range_spec)
        self.appends.append((range_spec, [list(row) for row in body["values"]]))
        self.sheets.setdefault(title, []).extend(list(row) for row in body["values"])
        return {}

    def _handle_clear(self, range_spec: str) -> Dict[str, Any]:
        title, _cells = self._split(range_spec)
        self.sheets[title] = []
        return {}

    def _handle_batch_update(self, body: Dict[str, Any]) -> Dict[str, Any]:
        self.batch_requests.append(body)
        replies: List[Dict[str, Any]] = []
        for request in body["requests"]:
            if "addSheet" in request:
                title = request["addSheet"]["properties"]["title"]
                self.sheets[title] = []
                self.sheet_ids[title] = self.next_sheet_id
                replies.append({"addSheet": {"properties": {"sheetId": self.next_sheet_id, "title": title}}})
                self.next_sheet_id += 1
            elif "deleteDimension" in request:
                target = request["deleteDimension"]["range"]
                rows = self.sheets[self._title_for(target["sheetId"])]
                del rows[target["startIndex"]:target["endIndex"]]
                replies.append({})
            else:
                replies.append({})
        return {"replies": replies}

    def request_kinds(self) -> List[str]:
        return [next(iter(request)) for body in self.batch_requests for request in body["requests"]]


class FakeResponse:
    def __init__(self, status_code: int = 200, text: str = "", payload: Any = None) -> None:
        self.status_code = status_code
        self.text = text
        self._payload = payload

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class FakeSession:
    """Replays queued responses (or raises queued exceptions) for ``get``."""

    def __init__(self, replies: Iterable[Any] = ()) -> None:
        self.replies = list(replies)
        self.calls: List[Dict[str, Any]] = []

    def queue(self, *replies: Any) -> None:
        self.replies.extend(replies)

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": params, "headers": headers, "timeout": timeout})
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
