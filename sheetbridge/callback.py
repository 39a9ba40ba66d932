"""Processing of WP All Import completion callbacks."""
from __future__ import annotations

import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

import pytz

from sheetbridge.errors import CacheError, StoreError
from sheetbridge.job_status import InvalidTransition
from sheetbridge.settings import AppSettings, ImportJobConfig
from sheetbridge.sheets_client import Spreadsheet
from sheetbridge.values import CANONICAL_FORMAT, resolve_timezone
from sheetbridge.wp_import import JobCoordinator

logger = logging.getLogger(__name__)

UNAUTHORIZED = "Unauthorized"
RAW_SNIPPET_LIMIT = 500

RESULTS_HEADER = (
    "Import ID",
    "Start Time",
    "End Time",
    "Duration (Min)",
    "Posts Created",
    "Posts Updated",
    "Posts Deleted",
    "Posts Skipped",
    "Callback Received",
    "Start Unix",
    "End Unix",
)

VERIFY_HEADER = (
    "Timestamp Received",
    "Raw Data Snippet",
    "Parsed Import ID",
    "Parsed End Time",
    "Parse/Route Error",
    "Results Log Error",
    "Cache Update Error",
    "Fatal Error",
)


@dataclass
class CallbackOutcome:
    message: str
    authorized: bool = True
    import_id: Optional[str] = None
    completed: bool = False
    errors: List[str] = field(default_factory=list)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _count(payload: Dict[str, Any], name: str) -> int:
    value = payload.get(name)
    return int(value) if _is_number(value) else 0


class CallbackHandler:
    """Authenticate, route and record one completion callback.

    The handler never raises: every outcome, including unexpected failures,
    is turned into an acknowledgment message for the WordPress caller.
    """

    def __init__(
        self,
        settings: AppSettings,
        coordinator: JobCoordinator,
        spreadsheet: Optional[Spreadsheet] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._coordinator = coordinator
        self._spreadsheet = spreadsheet
        self._clock = clock
        self._zone = resolve_timezone(settings.timezone)

    @property
    def coordinator(self) -> JobCoordinator:
        return self._coordinator

    def _now(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=pytz.utc).astimezone(self._zone).strftime(CANONICAL_FORMAT)

    def _format_unix(self, value: Any) -> str:
        if not _is_number(value) or not value:
            return "N/A"
        return datetime.fromtimestamp(value, tz=pytz.utc).astimezone(self._zone).strftime(CANONICAL_FORMAT)

    def _authorized(self, secret: Optional[str]) -> bool:
        expected = self._settings.webhook_secret or ""
        if not expected or not secret:
            return False
        return hmac.compare_digest(expected.encode("utf-8"), secret.encode("utf-8"))

    # ------------------------------------------------------------------
    # Sheet logging
    # ------------------------------------------------------------------
    def _log_results(self, payload: Dict[str, Any], config: ImportJobConfig) -> None:
        if self._spreadsheet is None:
            raise StoreError("No spreadsheet configured for import logs")
        start, end = payload.get("start_time"), payload.get("end_time")
        duration = "N/A"
        if _is_number(start) and _is_number(end) and start and end >= start:
            duration = f"{(end - start) / 60:.2f}"
        row = [
            str(payload.get("import_id")),
            self._format_unix(start),
            self._format_unix(end),
            duration,
            _count(payload, "posts_created"),
            _count(payload, "posts_updated"),
            _count(payload, "posts_deleted"),
            _count(payload, "posts_skipped"),
            self._now(),
            start if _is_number(start) and start else "",
            end,
        ]
        self._spreadsheet.append_log_row(config.import_log_sheet, RESULTS_HEADER, row)

    def _log_verification(
        self,
        sheet: str,
        raw: str,
        payload: Optional[Dict[str, Any]],
        parse_error: Optional[str] = None,
        results_error: Optional[str] = None,
        cache_error: Optional[str] = None,
        fatal_error: Optional[str] = None,
    ) -> None:
        if self._spreadsheet is None:
            logger.debug("No spreadsheet configured; verification row for %s skipped", sheet)
            return
        snippet = raw if len(raw) <= RAW_SNIPPET_LIMIT else raw[:RAW_SNIPPET_LIMIT] + "..."
        payload = payload or {}
        end_time = payload.get("end_time")
        row = [
            self._now(),
            snippet,
            "" if payload.get("import_id") is None else str(payload.get("import_id")),
            "" if end_time is None else str(end_time),
            parse_error or "",
            results_error or "",
            cache_error or "",
            fatal_error or "",
        ]
        try:
            self._spreadsheet.append_log_row(sheet, VERIFY_HEADER, row)
        except StoreError as exc:
            logger.error("Could not write verification row to %s: %s", sheet, exc)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    def handle(self, secret: Optional[str], body: Union[str, bytes, None]) -> CallbackOutcome:
        if not self._authorized(secret):
            logger.warning("Rejected callback with missing or invalid secret")
            return CallbackOutcome(UNAUTHORIZED, authorized=False)

        raw = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else (body or "")
        unknown_sheet = self._settings.unknown_callback_sheet
        verify_sheet = self._settings.fatal_callback_sheet
        payload: Optional[Dict[str, Any]] = None
        import_id: Optional[str] = None
        errors: Dict[str, Optional[str]] = {"parse": None, "results": None, "cache": None}

        try:
            if not raw.strip():
                logger.warning("Callback without body")
                self._log_verification(unknown_sheet, "No data received.", None, "No data received")
                return CallbackOutcome("Error: No data received by Callback Handler.", errors=["No data received"])

            try:
                decoded = json.loads(raw)
            except json.JSONDecodeError as exc:
                errors["parse"] = f"Error parsing JSON: {exc.msg}"
                logger.error("Callback body is not JSON: %s", exc)
                self._log_verification(unknown_sheet, raw, None, errors["parse"])
                return CallbackOutcome("Error: Could not parse JSON data.", errors=[errors["parse"]])

            payload = decoded if isinstance(decoded, dict) else {}
            import_id = str(payload.get("import_id") or "").strip() or None
            if not import_id:
                errors["parse"] = "Parsed data missing 'import_id'. Cannot route."
                logger.error(errors["parse"])
                self._log_verification(unknown_sheet, raw, payload, errors["parse"])
                return CallbackOutcome("Error: Import ID missing in payload.", errors=[errors["parse"]])

            config = self._settings.import_config(import_id)
            if config is None:
                errors["parse"] = f"Unknown Import ID received: '{import_id}'. No configuration found."
                logger.error(errors["parse"])
                self._log_verification(unknown_sheet, raw, payload, errors["parse"])
                return CallbackOutcome(
                    f"Error: Unknown Import ID '{import_id}'.",
                    import_id=import_id,
                    errors=[errors["parse"]],
                )

            verify_sheet = config.verify_sheet
            logger.info("Routing callback for import %s to '%s'", import_id, config.type)
            end_time = payload.get("end_time")
            completed = False

            if _is_number(end_time) and end_time:
                try:
                    self._log_results(payload, config)
                except StoreError as exc:
                    errors["results"] = str(exc)
                    logger.error("Error logging results for import %s: %s", import_id, exc)
                try:
                    start_time = payload.get("start_time")
                    self._coordinator.complete(
                        import_id,
                        {
                            "created": _count(payload, "posts_created"),
                            "updated": _count(payload, "posts_updated"),
                            "deleted": _count(payload, "posts_deleted"),
                            "skipped": _count(payload, "posts_skipped"),
                        },
                        start_time=int(start_time) if _is_number(start_time) and start_time else None,
                        end_time=int(end_time),
                    )
                    completed = True
                except (CacheError, InvalidTransition) as exc:
                    errors["cache"] = str(exc)
                    logger.error("Error updating status cache for import %s: %s", import_id, exc)
            else:
                logger.info("Callback for import %s has no numeric end_time; not marking complete", import_id)
                try:
                    self._coordinator.mark_processing(import_id)
                except CacheError as exc:
                    errors["cache"] = str(exc)

            self._log_verification(verify_sheet, raw, payload, errors["parse"], errors["results"], errors["cache"])

            problems = [value for value in errors.values() if value]
            message = f"Callback Handler received data for Import ID: {import_id}."
            if problems:
                message += " Processed with warnings/errors: " + "; ".join(problems)
            else:
                message += " Processed successfully."
            return CallbackOutcome(message, import_id=import_id, completed=completed, errors=problems)

        except Exception as exc:  # noqa: BLE001 - callers always get a 200
            logger.exception("Fatal error while processing callback for import %s", import_id or "Unknown")
            self._log_verification(
                verify_sheet,
                raw,
                payload,
                errors["parse"],
                errors["results"],
                errors["cache"],
                f"Fatal Error: {exc}",
            )
            return CallbackOutcome(
                f"Fatal Error during callback processing. Check logs for Import ID '{import_id or 'Unknown'}'.",
                import_id=import_id,
                errors=[str(exc)],
            )


__all__ = ["CallbackHandler", "CallbackOutcome", "RESULTS_HEADER", "VERIFY_HEADER"]
