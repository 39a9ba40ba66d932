"""Diff freshly fetched rows against the rows already in a worksheet."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set

from sheetbridge.airtable import ExternalRecord
from sheetbridge.values import TimezoneLike, format_field_value, resolve_timezone, standardize_timestamp

logger = logging.getLogger(__name__)

RECORD_ID_HEADER = "AirtableRecordID"

NormalizedRow = List[str]


@dataclass(slots=True)
class SheetRow:
    """A materialised row and its 1-based worksheet position."""

    position: int
    values: List[str]

    @property
    def external_id(self) -> str:
        return str(self.values[0]).strip() if self.values else ""


@dataclass(slots=True)
class RowUpdate:
    position: int
    values: NormalizedRow
    external_id: str


@dataclass(slots=True)
class RowDelete:
    position: int
    external_id: str
    values: List[str] = field(default_factory=list)


@dataclass
class SyncPlan:
    to_create: List[NormalizedRow] = field(default_factory=list)
    to_update: List[RowUpdate] = field(default_factory=list)
    to_delete: List[RowDelete] = field(default_factory=list)
    skipped: int = 0

    @property
    def has_changes(self) -> bool:
        return bool(self.to_create or self.to_update or self.to_delete)


def build_header(fields: Iterable[str]) -> List[str]:
    """Return the worksheet header: the record id column followed by ``fields``."""

    header = [RECORD_ID_HEADER]
    for name in fields:
        if name and name not in header:
            header.append(name)
    return header


def build_rows(records: Sequence[ExternalRecord], header: Sequence[str], tz: TimezoneLike = None) -> List[NormalizedRow]:
    """Normalise ``records`` into display rows matching ``header``.

    Records without an id are dropped with a warning.
    """

    zone = resolve_timezone(tz)
    rows: List[NormalizedRow] = []
    dropped = 0
    for record in records:
        if not record.external_id:
            dropped += 1
            continue
        row = [record.external_id]
        for name in header[1:]:
            row.append(format_field_value(record.fields.get(name), zone))
        rows.append(row)
    if dropped:
        logger.warning("Skipped %d record(s) without an id", dropped)
    return rows


def sheet_rows_from_values(values: Sequence[Sequence[object]]) -> List[SheetRow]:
    """Convert a worksheet dump (header included) into :class:`SheetRow` objects."""

    rows: List[SheetRow] = []
    for index, raw in enumerate(values):
        if index == 0:
            continue
        rows.append(SheetRow(position=index + 1, values=["" if cell is None else str(cell) for cell in raw]))
    return rows


def _cell(row: Sequence[str], index: int) -> str:
    if index < 0 or index >= len(row):
        return ""
    return row[index]


def _comparable(raw: str, record_id: str, source: str, zone) -> Optional[str]:
    """Return the canonical timestamp, or ``None`` when ``raw`` is unparseable."""

    standard = standardize_timestamp(raw, record_id, source, zone)
    if not standard and str(raw or "").strip():
        return None
    return standard


def reconcile(
    fresh_rows: Sequence[NormalizedRow],
    existing_rows: Sequence[SheetRow],
    *,
    timestamp_index: int,
    existing_timestamp_index: Optional[int] = None,
    tz: TimezoneLike = None,
) -> SyncPlan:
    """Compute the create, update and delete sets for one table.

    Rows are joined on column 0.  A fresh row is updated when its change
    timestamp differs from the stored one; a timestamp that cannot be parsed
    on either side counts as a difference.  Deletions are returned with the
    highest position first.
    """

    zone = resolve_timezone(tz)
    stored_index = timestamp_index if existing_timestamp_index is None else existing_timestamp_index
    plan = SyncPlan()

    existing_by_id: Dict[str, SheetRow] = {}
    for row in existing_rows:
        external_id = row.external_id
        if not external_id:
            continue
        existing_by_id[external_id] = row

    fresh_ids: Set[str] = set()
    for row in fresh_rows:
        external_id = str(row[0]).strip() if row else ""
        if not external_id:
            continue
        fresh_ids.add(external_id)

        current = existing_by_id.get(external_id)
        if current is None:
            plan.to_create.append(list(row))
            continue

        fresh_ts = _comparable(_cell(row, timestamp_index), external_id, "Airtable", zone)
        stored_ts = _comparable(_cell(current.values, stored_index), external_id, "Sheet", zone)
        if fresh_ts is None or stored_ts is None or fresh_ts != stored_ts:
            plan.to_update.append(RowUpdate(position=current.position, values=list(row), external_id=external_id))
        else:
            plan.skipped += 1

    for external_id, row in existing_by_id.items():
        if external_id not in fresh_ids:
            plan.to_delete.append(RowDelete(position=row.position, external_id=external_id, values=list(row.values)))

    plan.to_delete.sort(key=lambda entry: entry.position, reverse=True)
    logger.debug(
        "Reconciled %d fresh / %d existing rows: create=%d update=%d delete=%d skip=%d",
        len(fresh_rows),
        len(existing_rows),
        len(plan.to_create),
        len(plan.to_update),
        len(plan.to_delete),
        plan.skipped,
    )
    return plan


__all__ = [
    "NormalizedRow",
    "RECORD_ID_HEADER",
    "RowDelete",
    "RowUpdate",
    "SheetRow",
    "SyncPlan",
    "build_header",
    "build_rows",
    "reconcile",
    "sheet_rows_from_values",
]
