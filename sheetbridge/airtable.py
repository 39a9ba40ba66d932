"""Paginated Airtable record fetching with retry and backoff."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

import requests

from sheetbridge.errors import FetchError
from sheetbridge.values import RawValue, decode_raw

logger = logging.getLogger(__name__)

API_ROOT = "https://api.airtable.com/v0"
PAGE_SIZE = 100
MAX_FETCH_RETRIES = 3
BASE_RETRY_DELAY = 0.5
INTER_PAGE_DELAY = 0.2
REQUEST_TIMEOUT = 30.0


@dataclass(slots=True)
class ExternalRecord:
    """One Airtable record with its fields decoded at the boundary."""

    external_id: str
    fields: Dict[str, RawValue] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ExternalRecord":
        raw_fields = payload.get("fields") or {}
        if not isinstance(raw_fields, dict):
            raw_fields = {}
        return cls(
            external_id=str(payload.get("id") or ""),
            fields={str(name): decode_raw(value) for name, value in raw_fields.items()},
        )


def table_url(base_id: str, table_id: str) -> str:
    """Return the REST endpoint for ``table_id`` inside ``base_id``."""

    return f"{API_ROOT}/{quote(base_id.strip(), safe='')}/{quote(table_id.strip(), safe='')}"


def _field_params(fields: Sequence[str]) -> List[Tuple[str, str]]:
    # Record id columns are synthesised locally, never requested.
    return [("fields[]", name) for name in fields if name and "recordid" not in name.lower()]


class AirtableClient:
    """Minimal Airtable REST client used by the sync pipeline."""

    def __init__(
        self,
        token: str,
        *,
        session: Optional[requests.Session] = None,
        max_retries: int = MAX_FETCH_RETRIES,
        base_delay: float = BASE_RETRY_DELAY,
        inter_page_delay: float = INTER_PAGE_DELAY,
        page_size: int = PAGE_SIZE,
        timeout: float = REQUEST_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._token = token
        self._session = session or requests.Session()
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.inter_page_delay = inter_page_delay
        self.page_size = page_size
        self.timeout = timeout
        self._sleep = sleep

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }

    def _fetch_page(self, endpoint: str, params: List[Tuple[str, str]], page: int) -> Dict[str, Any]:
        last_status: Optional[int] = None
        last_message = "no response"
        for attempt in range(self.max_retries):
            delay = self.base_delay * (2**attempt)
            try:
                response = self._session.get(
                    endpoint,
                    params=params,
                    headers=self._headers(),
                    timeout=self.timeout,
                )
            except requests.RequestException as exc:
                last_status = None
                last_message = f"network error: {exc}"
                logger.warning(
                    "Network error on page %d of %s (%s). Retrying in %.2fs (%d/%d)",
                    page,
                    endpoint,
                    exc,
                    delay,
                    attempt + 1,
                    self.max_retries,
                )
            else:
                last_status = response.status_code
                if response.status_code == 200:
                    try:
                        payload = response.json()
                    except ValueError as exc:
                        last_message = f"invalid JSON: {exc}"
                        logger.warning("Invalid JSON on page %d of %s: %s", page, endpoint, exc)
                    else:
                        if isinstance(payload, dict):
                            return payload
                        last_message = "unexpected payload shape"
                        logger.warning("Unexpected payload on page %d of %s", page, endpoint)
                elif response.status_code == 429:
                    last_message = "rate limited"
                    logger.warning(
                        "Rate limited (429) fetching page %d. Waiting %.2fs before retry %d",
                        page,
                        delay,
                        attempt + 1,
                    )
                else:
                    last_message = (response.text or "")[:200]
                    logger.warning(
                        "HTTP %s fetching page %d. Waiting %.2fs before retry %d. Response: %s",
                        response.status_code,
                        page,
                        delay,
                        attempt + 1,
                        last_message,
                    )
            if attempt < self.max_retries - 1:
                self._sleep(delay)

        raise FetchError(
            f"Failed to fetch page {page} from {endpoint} after {self.max_retries} attempts: {last_message}",
            status_code=last_status,
        )

    def fetch_all(
        self,
        endpoint: str,
        fields: Sequence[str] = (),
        view: Optional[str] = None,
    ) -> List[ExternalRecord]:
        """Return every record of ``endpoint``, following the offset cursor.

        Raises :class:`FetchError` once a page exhausts its retry budget; no
        partially collected records are returned in that case.
        """

        base_params: List[Tuple[str, str]] = [("pageSize", str(self.page_size))]
        if view:
            base_params.append(("view", view))
        base_params.extend(_field_params(fields))

        records: List[ExternalRecord] = []
        offset: Optional[str] = None
        page = 0
        while True:
            page += 1
            params = list(base_params)
            if offset:
                params.append(("offset", offset))
            payload = self._fetch_page(endpoint, params, page)
            for entry in payload.get("records") or []:
                if isinstance(entry, dict):
                    records.append(ExternalRecord.from_payload(entry))
            offset = payload.get("offset") or None
            if not offset:
                break
            self._sleep(self.inter_page_delay)

        logger.info("Fetched %d records in %d page(s) from %s", len(records), page, endpoint)
        return records


__all__ = [
    "AirtableClient",
    "ExternalRecord",
    "FetchError",
    "table_url",
]
