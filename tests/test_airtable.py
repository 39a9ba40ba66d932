import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pytest
import requests

from fakes import FakeResponse, FakeSession
from sheetbridge.airtable import AirtableClient, ExternalRecord, table_url
from sheetbridge.errors import FetchError
from sheetbridge.values import Attachment, ValueList

ENDPOINT = "https://api.airtable.com/v0/appBase/tblEvents"


def _client(session, sleeps):
    return AirtableClient("tok-123", session=session, sleep=sleeps.append)


def _page(records, offset=None):
    payload = {"records": records}
    if offset:
        payload["offset"] = offset
    return FakeResponse(200, payload=payload)


def test_table_url_quotes_identifiers():
    assert table_url("appBase", "Events Table") == "https://api.airtable.com/v0/appBase/Events%20Table"


def test_fetch_all_follows_offsets_and_pauses_between_pages():
    session = FakeSession(
        [
            _page([{"id": "rec1", "fields": {"title": "One"}}], offset="itr2"),
            _page([{"id": "rec2", "fields": {"title": "Two"}}]),
        ]
    )
    sleeps = []

    records = _client(session, sleeps).fetch_all(ENDPOINT, ["title"])

    assert [record.external_id for record in records] == ["rec1", "rec2"]
    assert ("offset", "itr2") in session.calls[1]["params"]
    assert not any(name == "offset" for name, _ in session.calls[0]["params"])
    assert sleeps == [0.2]


def test_fetch_all_sends_view_fields_and_auth_header():
    session = FakeSession([_page([])])

    _client(session, []).fetch_all(ENDPOINT, ["AirtableRecordID", "title", "lastModified"], view="Grid")

    call = session.calls[0]
    assert call["url"] == ENDPOINT
    assert call["params"] == [
        ("pageSize", "100"),
        ("view", "Grid"),
        ("fields[]", "title"),
        ("fields[]", "lastModified"),
    ]
    assert call["headers"]["Authorization"] == "Bearer tok-123"


def test_rate_limited_page_is_retried_with_backoff():
    session = FakeSession([FakeResponse(429, text="slow down"), _page([{"id": "rec1", "fields": {}}])])
    sleeps = []

    records = _client(session, sleeps).fetch_all(ENDPOINT, ["title"])

    assert len(records) == 1
    assert sleeps == [0.5]


def test_network_errors_are_retried():
    session = FakeSession([requests.ConnectionError("reset"), _page([{"id": "rec1", "fields": {}}])])

    records = _client(session, []).fetch_all(ENDPOINT, ["title"])

    assert [record.external_id for record in records] == ["rec1"]


def test_fetch_error_after_retry_budget_is_exhausted():
    session = FakeSession([FakeResponse(500, text="oops")] * 3)
    sleeps = []

    with pytest.raises(FetchError) as excinfo:
        _client(session, sleeps).fetch_all(ENDPOINT, ["title"])

    assert excinfo.value.status_code == 500
    assert "HTTP 500" in str(excinfo.value)
    assert len(session.calls) == 3
    assert sleeps == [0.5, 1.0]


def test_failure_on_later_page_returns_nothing():
    session = FakeSession(
        [
            _page([{"id": "rec1", "fields": {}}], offset="itr2"),
            FakeResponse(200, payload=ValueError("bad json")),
            FakeResponse(200, payload=ValueError("bad json")),
            FakeResponse(200, payload=ValueError("bad json")),
        ]
    )

    with pytest.raises(FetchError):
        _client(session, []).fetch_all(ENDPOINT, ["title"])


def test_records_decode_fields_at_the_boundary():
    record = ExternalRecord.from_payload(
        {"id": "rec9", "fields": {"photo": [{"url": "https://cdn/x.png"}], "title": "Nine"}}
    )

    assert record.external_id == "rec9"
    assert isinstance(record.fields["photo"], ValueList)
    assert isinstance(record.fields["photo"].items[0], Attachment)
