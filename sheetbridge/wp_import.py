"""Coordination of WP All Import jobs running on a WordPress site.

The WordPress side exposes a single GET endpoint driven by an ``action``
query parameter.  Depending on the plugin version it answers with a JSON
envelope ``{"success": bool, "data": {"message": ...}}`` or with a plain-text
sentence; :class:`RemoteResponse` understands both.

:class:`JobCoordinator` implements the job lifecycle on top of
:class:`~sheetbridge.job_status.JobStatusStore`:

``trigger``
    Guarded against double starts, writes ``pending`` optimistically and rolls
    it back when WordPress does not confirm the start.
``complete``
    Records the final counts reported by the completion callback.
``cancel`` / ``clear``
    Ask WordPress to stop an import, or drop a stuck cache entry.
``read``
    Side-effect free status lookup used by pollers.
"""
from __future__ import annotations

import json
import logging
import random
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests

from sheetbridge.errors import CacheError, RemoteTriggerError
from sheetbridge.job_status import ImportJobStatus, JobStatus, JobStatusStore, ensure_transition
from sheetbridge.settings import DEFAULT_CACHE_PREFIX, AppSettings

logger = logging.getLogger(__name__)

USER_AGENT = "sheetbridge-import-coordinator/1.4"
PENDING_MESSAGE = "Import triggered, awaiting completion callback..."
COMPLETE_MESSAGE = "Import completed successfully via callback."


@dataclass(slots=True)
class RemoteResponse:
    status_code: int
    text: str
    payload: Any = None

    @classmethod
    def from_http(cls, response: requests.Response) -> "RemoteResponse":
        text = response.text or ""
        try:
            payload = json.loads(text) if text.strip() else None
        except ValueError:
            payload = None
        return cls(status_code=response.status_code, text=text, payload=payload)

    @property
    def ok(self) -> bool:
        return self.status_code == 200

    @property
    def envelope_success(self) -> Optional[bool]:
        """``success`` flag of a JSON envelope, or ``None`` for other replies."""

        if isinstance(self.payload, dict) and isinstance(self.payload.get("success"), bool):
            return self.payload["success"]
        return None

    @property
    def message(self) -> str:
        if isinstance(self.payload, dict):
            data = self.payload.get("data")
            if isinstance(data, dict) and data.get("message"):
                return str(data["message"])
            if self.payload.get("message"):
                return str(self.payload["message"])
        return self.snippet()

    def snippet(self, limit: int = 200) -> str:
        return (self.text or "(No response body)").strip()[:limit]

    def mentions(self, *words: str) -> bool:
        lowered = (self.text or "").lower()
        return any(word in lowered for word in words)


class WPImportClient:
    """Thin client for the WP All Import trigger endpoint."""

    def __init__(
        self,
        base_url: str,
        import_key: str,
        *,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url
        self._import_key = import_key
        self.timeout = timeout
        self._session = session or requests.Session()

    def call(self, action: str, import_id: Optional[str] = None) -> RemoteResponse:
        """Invoke ``action`` and return the reply, whatever its status code.

        Raises :class:`RemoteTriggerError` of kind ``timeout`` or ``transport``
        when no reply was received.
        """

        params: Dict[str, str] = {"import_key": self._import_key}
        if import_id is not None:
            params["import_id"] = str(import_id)
        params["action"] = action
        params["rand"] = f"{random.random():.12f}"
        try:
            response = self._session.get(
                self.base_url,
                params=params,
                headers={"User-Agent": USER_AGENT},
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise RemoteTriggerError("timeout", f"Request '{action}' timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise RemoteTriggerError("transport", f"Error sending '{action}' request: {exc}") from exc
        reply = RemoteResponse.from_http(response)
        logger.debug("WP action %s -> HTTP %s: %s", action, reply.status_code, reply.snippet())
        return reply


@dataclass
class JobActionResult:
    success: bool
    status: str
    message: str
    import_id: Optional[str] = None
    run_id: Optional[str] = None
    log: List[str] = field(default_factory=list)

    def to_json(self) -> Dict[str, object]:
        return {
            "success": self.success,
            "status": self.status,
            "message": self.message,
            "import_id": self.import_id,
            "run_id": self.run_id,
            "log": "\n".join(self.log),
        }


def _confirms_trigger(reply: RemoteResponse) -> bool:
    if isinstance(reply.payload, dict):
        if reply.envelope_success is True:
            return True
        if reply.payload.get("status") == 200:
            return True
        if reply.envelope_success is False:
            return False
    return reply.mentions("triggered") and not reply.mentions("already processing")


class JobCoordinator:
    """Trigger, track, cancel and clear WP All Import jobs."""

    def __init__(
        self,
        client: WPImportClient,
        store: JobStatusStore,
        *,
        ttl: Optional[int] = None,
        cache_prefix: str = DEFAULT_CACHE_PREFIX,
        prefixes: Optional[Mapping[str, str]] = None,
        trigger_action: str = "trigger",
        processing_action: Optional[str] = "processing",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._store = store
        self._ttl = ttl
        self._cache_prefix = cache_prefix
        self._prefixes = dict(prefixes or {})
        self._trigger_action = trigger_action
        self._processing_action = processing_action
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        *,
        store: Optional[JobStatusStore] = None,
        session: Optional[requests.Session] = None,
    ) -> "JobCoordinator":
        settings.require("wp_base_url", "wp_import_key")
        client = WPImportClient(
            settings.wp_base_url,
            settings.wp_import_key,
            timeout=settings.wp_timeout_seconds,
            session=session,
        )
        if store is None:
            store = JobStatusStore(settings.status_db_path, default_ttl=settings.status_ttl_seconds)
        return cls(
            client,
            store,
            ttl=settings.status_ttl_seconds,
            prefixes={key: config.cache_prefix for key, config in settings.imports.items()},
        )

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------
    def cache_key(self, job_id: str) -> str:
        return f"{self._prefixes.get(job_id, self._cache_prefix)}{job_id}"

    def _lookup(self, job_id: str) -> Optional[ImportJobStatus]:
        try:
            return self._store.get(self.cache_key(job_id))
        except CacheError as exc:
            logger.warning("Status cache unavailable for import %s: %s", job_id, exc)
            return None

    def _discard(self, job_id: str, note: Callable[[str], None]) -> None:
        try:
            self._store.remove(self.cache_key(job_id))
        except CacheError as exc:
            note(f"WARN: Failed removing pending status: {exc}")

    def _logger_for(self, job_id: str, action: str, lines: List[str]) -> Callable[[str], None]:
        def note(message: str) -> None:
            stamp = datetime.fromtimestamp(self._clock()).strftime("%H:%M:%S")
            lines.append(f"[{stamp}] {message}")
            logger.info("WP %s [%s]: %s", action, job_id, message)

        return note

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def trigger(self, job_id: str) -> JobActionResult:
        lines: List[str] = []
        job_id = str(job_id or "").strip()
        note = self._logger_for(job_id or "?", "trigger", lines)
        if not job_id:
            note("ERROR: Import ID is missing.")
            return JobActionResult(False, "error_missing_id", "Import ID was not provided.", log=lines)

        current = self._lookup(job_id)
        if current is not None and current.status.is_active:
            note(f"Import already {current.status.value}; not contacting WordPress.")
            return JobActionResult(
                False,
                "already_pending",
                f"Import {job_id} is already running (status: {current.status.value}).",
                import_id=job_id,
                run_id=current.run_id,
                log=lines,
            )
        ensure_transition(current.status if current else JobStatus.UNKNOWN, JobStatus.PENDING)

        run_id = uuid.uuid4().hex
        pending = ImportJobStatus(
            import_id=job_id,
            status=JobStatus.PENDING,
            message=PENDING_MESSAGE,
            run_id=run_id,
            start_time=int(self._clock()),
        )
        try:
            self._store.put(self.cache_key(job_id), pending, self._ttl)
        except CacheError as exc:
            note(f"WARN: Could not record pending status: {exc}")

        note("Sending trigger request to WordPress...")
        try:
            reply = self._client.call(self._trigger_action, job_id)
        except RemoteTriggerError as exc:
            self._discard(job_id, note)
            status = "trigger_timeout_error" if exc.kind == "timeout" else "trigger_fetch_error"
            note(f"ERROR: {exc.message}")
            return JobActionResult(False, status, exc.message, import_id=job_id, log=lines)

        if not reply.ok:
            self._discard(job_id, note)
            message = f"WP trigger failed (HTTP Status: {reply.status_code}). Response: {reply.snippet()}"
            note(f"ERROR: {message}")
            return JobActionResult(False, "trigger_http_error", message, import_id=job_id, log=lines)

        if not _confirms_trigger(reply):
            self._discard(job_id, note)
            message = f"WP did not confirm the trigger: {reply.message}"
            note(f"WARN: {message}")
            return JobActionResult(False, "trigger_wp_error", message, import_id=job_id, log=lines)

        note(f"Trigger confirmed: {reply.message}")
        status = "initiated"
        message = reply.message
        if self._processing_action:
            try:
                follow_up = self._client.call(self._processing_action, job_id)
            except RemoteTriggerError as exc:
                status = "initiated_processing_timeout" if exc.kind == "timeout" else "initiated_processing_fetch_error"
                note(f"WARN: Processing call failed: {exc.message}")
            else:
                if follow_up.ok:
                    note(f"Processing call accepted: {follow_up.snippet()}")
                else:
                    status = "initiated_processing_http_error"
                    note(f"WARN: Processing call returned HTTP {follow_up.status_code}")

        return JobActionResult(True, status, message, import_id=job_id, run_id=run_id, log=lines)

    def mark_processing(self, job_id: str) -> bool:
        """Advance a pending job to ``processing``; other states are left alone."""

        current = self._lookup(job_id)
        if current is None or not current.status.can_transition(JobStatus.PROCESSING):
            return False
        current.status = JobStatus.PROCESSING
        current.message = "Import is processing on WordPress."
        self._store.put(self.cache_key(job_id), current, self._ttl)
        return True

    def complete(
        self,
        job_id: str,
        counts: Mapping[str, Any],
        *,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        message: str = COMPLETE_MESSAGE,
    ) -> ImportJobStatus:
        """Overwrite the entry for ``job_id`` with ``complete`` and a fresh TTL.

        Raises :class:`CacheError` when the status cannot be stored.
        """

        job_id = str(job_id)
        current = self._lookup(job_id)
        ensure_transition(current.status if current else JobStatus.UNKNOWN, JobStatus.COMPLETE)

        def count(name: str) -> int:
            try:
                return int(counts.get(name) or 0)
            except (TypeError, ValueError):
                return 0

        status = ImportJobStatus(
            import_id=job_id,
            status=JobStatus.COMPLETE,
            message=message,
            run_id=current.run_id if current else None,
            start_time=start_time,
            end_time=end_time,
            received_time=datetime.fromtimestamp(self._clock()).isoformat(timespec="seconds"),
            created=count("created"),
            updated=count("updated"),
            deleted=count("deleted"),
            skipped=count("skipped"),
        )
        self._store.put(self.cache_key(job_id), status, self._ttl)
        logger.info("Import %s marked complete: %s", job_id, status.counts())
        return status

    def cancel(self, job_id: str) -> JobActionResult:
        lines: List[str] = []
        job_id = str(job_id or "").strip()
        note = self._logger_for(job_id or "?", "cancel", lines)
        if not job_id:
            note("ERROR: Import ID missing.")
            return JobActionResult(False, "error_missing_id", "Import ID required.", log=lines)

        note("Calling WordPress cancellation endpoint...")
        try:
            reply = self._client.call("cancel", job_id)
        except RemoteTriggerError as exc:
            status = "timeout_error" if exc.kind == "timeout" else "fetch_error"
            note(f"ERROR: {exc.message}")
            return JobActionResult(False, status, exc.message, import_id=job_id, log=lines)

        if reply.ok and (reply.mentions("cancelled", "stopped") or reply.envelope_success is True):
            message = "Cancellation request sent. Import should stop."
            try:
                self._store.remove(self.cache_key(job_id))
                note("Removed cached status for cancelled import.")
            except CacheError as exc:
                note(f"WARN: Failed removing status from cache after cancellation: {exc}")
                message += " (Cache cleanup issue)"
            return JobActionResult(True, "success", message, import_id=job_id, log=lines)

        if reply.ok:
            message = f"WP response indicates cancellation not needed/failed. Msg: {reply.message}"
            note(f"WARN: {message}")
            return JobActionResult(False, "wp_error", message, import_id=job_id, log=lines)

        message = f"WP cancellation endpoint failed (HTTP Status: {reply.status_code})"
        note(f"ERROR: {message}")
        return JobActionResult(False, "http_error", message, import_id=job_id, log=lines)

    def clear(self, job_id: str) -> JobActionResult:
        """Drop the cached status of ``job_id``; clearing an absent entry succeeds."""

        lines: List[str] = []
        job_id = str(job_id or "").strip()
        note = self._logger_for(job_id or "?", "clear", lines)
        if not job_id:
            return JobActionResult(False, "error_missing_id", "Import ID required.", log=lines)
        try:
            removed = self._store.remove(self.cache_key(job_id))
        except CacheError as exc:
            note(f"ERROR: {exc}")
            return JobActionResult(False, "cache_error", str(exc), import_id=job_id, log=lines)
        if removed:
            note("Cleared cached status.")
            return JobActionResult(True, "cleared", f"Cache cleared for import {job_id}.", import_id=job_id, log=lines)
        note("Nothing cached.")
        return JobActionResult(True, "already_clear", f"Cache for import {job_id} was already clear.", import_id=job_id, log=lines)

    def read(self, job_id: str) -> ImportJobStatus:
        job_id = str(job_id or "").strip()
        current = self._lookup(job_id) if job_id else None
        if current is None:
            return ImportJobStatus.unknown(job_id)
        return current

    def clear_site_cache(self) -> JobActionResult:
        """Ask the WordPress plugin to purge the page cache."""

        lines: List[str] = []
        note = self._logger_for("site", "clear_cache", lines)
        try:
            reply = self._client.call("clear_breeze_cache")
        except RemoteTriggerError as exc:
            status = "timeout_error" if exc.kind == "timeout" else "fetch_error"
            note(f"ERROR: {exc.message}")
            return JobActionResult(False, status, exc.message, log=lines)

        if reply.ok and reply.envelope_success is True:
            message = reply.message if isinstance(reply.payload, dict) and reply.payload.get("data") else "Cache cleared successfully (No details from WP)."
            note("WordPress confirmed cache clear.")
            return JobActionResult(True, "success", message, log=lines)
        if reply.ok and reply.envelope_success is False:
            message = reply.message
            note(f"ERROR: WordPress reported failure: {message}")
            return JobActionResult(False, "wp_error", message, log=lines)
        if reply.status_code >= 400:
            message = f"WordPress cache clear endpoint failed (HTTP Status: {reply.status_code})"
            note(f"ERROR: {message}")
            return JobActionResult(False, "http_error", message, log=lines)
        message = f"Unexpected response from WP cache clear. Code: {reply.status_code}. Body: {reply.snippet()}"
        note(f"ERROR: {message}")
        return JobActionResult(False, "unexpected_response", message, log=lines)


__all__ = [
    "JobActionResult",
    "JobCoordinator",
    "RemoteResponse",
    "WPImportClient",
]
