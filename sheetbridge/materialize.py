"""Apply a :class:`~sheetbridge.reconcile.SyncPlan` to a worksheet."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from sheetbridge.errors import StoreError
from sheetbridge.reconcile import NormalizedRow, SyncPlan
from sheetbridge.sheets_client import block_spec

logger = logging.getLogger(__name__)

MAX_ACTIONS = 150
TRUNCATION_MARKER = "... (Action summary list truncated)"

MODE_FULL = "full"
MODE_REWRITE = "rewrite"
MODE_INCREMENTAL = "incremental"
MODE_NOOP = "noop"


@dataclass
class SyncResult:
    """Outcome of one table sync."""

    entity: str
    sheet_name: str = ""
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    success: bool = True
    error: Optional[str] = None
    mode: str = MODE_NOOP
    actions: List[str] = field(default_factory=list)
    log: List[str] = field(default_factory=list)

    def counters(self) -> Dict[str, int]:
        return {
            "updated": self.updated,
            "skipped": self.skipped,
            "created": self.created,
            "deleted": self.deleted,
        }

    def add_action(self, text: str) -> None:
        if len(self.actions) < MAX_ACTIONS:
            self.actions.append(text)
        elif self.actions[-1] != TRUNCATION_MARKER:
            self.actions.append(TRUNCATION_MARKER)

    def fail(self, message: str) -> None:
        self.success = False
        self.error = f"{self.error}; {message}" if self.error else message

    def to_dict(self) -> Dict[str, object]:
        return {
            "entity": self.entity,
            "sheet_name": self.sheet_name,
            "success": self.success,
            "error": self.error,
            "mode": self.mode,
            "counters": self.counters(),
            "recent_items": list(self.actions),
            "log": "\n".join(self.log),
        }


def _is_blank(values: Sequence[Sequence[str]]) -> bool:
    return not values or not any(str(cell).strip() for cell in values[0])


def _trimmed(row: Sequence[str]) -> List[str]:
    cells = [str(cell) for cell in row]
    while cells and not cells[-1].strip():
        cells.pop()
    return cells


class _Recorder:
    def __init__(self, result: SyncResult, log_callback: Optional[Callable[[str], None]]) -> None:
        self._result = result
        self._callback = log_callback

    def __call__(self, message: str) -> None:
        self._result.log.append(message)
        logger.info("[%s] %s", self._result.entity, message)
        if self._callback is not None:
            self._callback(message)


def _label(values: Sequence[str], title_index: Optional[int], fallback: str) -> str:
    if title_index is not None and 0 <= title_index < len(values):
        text = str(values[title_index]).strip()
        if text:
            return text
    return fallback


def _full_write(worksheet, header: Sequence[str], rows: Sequence[NormalizedRow]) -> None:
    grid = [list(header)] + [list(row) for row in rows]
    worksheet.clear()
    worksheet.freeze_header_row(False)
    # A frozen header needs at least one unfrozen row below it.
    worksheet.resize(max(len(grid), 2), len(header))
    worksheet.set_values(block_spec(1, len(grid), len(header)), grid)
    worksheet.freeze_header_row(True)


def materialize(
    header: Sequence[str],
    fresh_rows: Sequence[NormalizedRow],
    plan: SyncPlan,
    worksheet,
    *,
    existing_values: Optional[Sequence[Sequence[str]]] = None,
    entity: str = "record",
    sheet_name: str = "",
    title_index: Optional[int] = None,
    log_callback: Optional[Callable[[str], None]] = None,
) -> SyncResult:
    """Write ``fresh_rows``/``plan`` into ``worksheet`` and report what happened.

    An empty worksheet gets a full write.  A worksheet whose header differs
    from ``header`` is rewritten completely.  Otherwise the updates, the
    appended block and the deletions of ``plan`` are applied as three
    independent batches; a failing batch is recorded in the result and does
    not undo the batches that already succeeded.
    """

    label = entity[:1].upper() + entity[1:]
    result = SyncResult(entity=entity, sheet_name=sheet_name or getattr(worksheet, "title", ""))
    record = _Recorder(result, log_callback)

    if existing_values is None:
        try:
            existing_values = worksheet.get_all_values()
        except StoreError as exc:
            record(f"ERROR reading existing rows: {exc}")
            result.fail(f"{entity}: {exc}")
            return result

    if _is_blank(existing_values) or _trimmed(existing_values[0]) != list(header):
        rewrite = not _is_blank(existing_values)
        result.mode = MODE_REWRITE if rewrite else MODE_FULL
        if rewrite:
            record(
                f"Header changed ({len(_trimmed(existing_values[0]))} -> {len(header)} columns); rewriting sheet"
            )
        try:
            _full_write(worksheet, header, fresh_rows)
        except (StoreError, ValueError) as exc:
            record(f"ERROR {'rewriting' if rewrite else 'writing'} sheet: {exc}")
            result.fail(f"{entity}: {exc}")
            return result
        result.created = len(fresh_rows)
        if rewrite:
            result.deleted = len(existing_values) - 1
        verb = "Rewrote" if rewrite else "Populated"
        result.add_action(f"{verb} sheet '{result.sheet_name}' with {result.created} records.")
        record(f"{verb} sheet with {result.created} rows")
        return result

    result.skipped = plan.skipped
    if not plan.has_changes:
        record(f"No changes needed ({plan.skipped} checked)")
        if plan.skipped:
            result.add_action(f"{entity}: No changes detected ({plan.skipped} checked).")
        return result

    result.mode = MODE_INCREMENTAL

    if plan.to_update:
        try:
            for update in plan.to_update:
                worksheet.set_row(update.position, update.values)
                result.updated += 1
                result.add_action(f"Updated {label}: '{_label(update.values, title_index, update.external_id)}'")
            record(f"{result.updated} updates applied")
        except (StoreError, ValueError) as exc:
            record(f"ERROR updates: {exc}")
            result.add_action("Sync Error (Updates)")
            result.fail(f"{entity}: {exc}")

    if plan.to_create:
        try:
            worksheet.append_rows(plan.to_create, after_row=len(existing_values))
        except (StoreError, ValueError) as exc:
            record(f"ERROR appends: {exc}")
            result.add_action("Sync Error (Appends)")
            result.fail(f"{entity}: {exc}")
        else:
            result.created = len(plan.to_create)
            for row in plan.to_create:
                result.add_action(f"Added {label}: '{_label(row, title_index, row[0])}'")
            record(f"{result.created} appends applied")

    if plan.to_delete:
        last_row = len(existing_values)
        try:
            for entry in sorted(plan.to_delete, key=lambda item: item.position, reverse=True):
                if entry.position < 2 or entry.position > last_row:
                    record(f"WARN: Skipped deletion index {entry.position}")
                    continue
                worksheet.delete_row(entry.position)
                result.deleted += 1
                result.add_action(f"Removed {label}: '{_label(entry.values, title_index, entry.external_id)}'")
            record(f"{result.deleted} deletes applied")
        except (StoreError, ValueError) as exc:
            record(f"ERROR deletes: {exc}")
            result.add_action("Sync Error (Deletes)")
            result.fail(f"{entity}: {exc}")

    return result


__all__ = [
    "MAX_ACTIONS",
    "MODE_FULL",
    "MODE_INCREMENTAL",
    "MODE_NOOP",
    "MODE_REWRITE",
    "SyncResult",
    "materialize",
]
