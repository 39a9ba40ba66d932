"""TTL-bound status cache for asynchronous WP All Import jobs."""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, FrozenSet, Optional, Union

from sheetbridge import app_paths
from sheetbridge.errors import CacheError

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 21600

STATUS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS job_status (
    key TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    expires_at REAL NOT NULL
)
"""


class JobStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.PENDING, JobStatus.PROCESSING)

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETE, JobStatus.FAILED, JobStatus.CANCELLED)

    def can_transition(self, target: "JobStatus") -> bool:
        return target in _TRANSITIONS[self]

    @classmethod
    def parse(cls, value: object) -> "JobStatus":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.UNKNOWN


_TERMINAL_EXITS: FrozenSet[JobStatus] = frozenset(
    # A fresh trigger starts a new lifecycle; a repeated callback may rewrite the counts.
    {JobStatus.PENDING, JobStatus.COMPLETE, JobStatus.UNKNOWN}
)

_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.UNKNOWN: frozenset({JobStatus.PENDING, JobStatus.COMPLETE, JobStatus.FAILED}),
    JobStatus.PENDING: frozenset(
        {JobStatus.PROCESSING, JobStatus.COMPLETE, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.UNKNOWN}
    ),
    JobStatus.PROCESSING: frozenset(
        {JobStatus.COMPLETE, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.UNKNOWN}
    ),
    JobStatus.COMPLETE: _TERMINAL_EXITS,
    JobStatus.FAILED: _TERMINAL_EXITS,
    JobStatus.CANCELLED: _TERMINAL_EXITS,
}


class InvalidTransition(ValueError):
    """Raised when a status change is not allowed by the transition table."""


def ensure_transition(current: JobStatus, target: JobStatus) -> None:
    if not current.can_transition(target):
        raise InvalidTransition(f"Cannot move import job from {current.value} to {target.value}")


def _int_or_none(value: object) -> Optional[int]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(float(value))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


@dataclass
class ImportJobStatus:
    import_id: str
    status: JobStatus = JobStatus.UNKNOWN
    message: str = ""
    run_id: Optional[str] = None
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    received_time: Optional[str] = None
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0

    @classmethod
    def unknown(cls, import_id: str, message: str = "No status found in cache.") -> "ImportJobStatus":
        return cls(import_id=str(import_id), status=JobStatus.UNKNOWN, message=message)

    def counts(self) -> Dict[str, int]:
        return {
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "skipped": self.skipped,
        }

    def to_json(self) -> Dict[str, object]:
        return {
            "import_id": self.import_id,
            "status": self.status.value,
            "message": self.message,
            "run_id": self.run_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "received_time": self.received_time,
            **self.counts(),
        }

    @classmethod
    def from_json(cls, data: Dict[str, object]) -> "ImportJobStatus":
        def pick(*names: str) -> object:
            for name in names:
                if name in data and data[name] is not None:
                    return data[name]
            return None

        return cls(
            import_id=str(pick("import_id", "importId") or ""),
            status=JobStatus.parse(pick("status")),
            message=str(pick("message") or ""),
            run_id=str(pick("run_id", "runId")) if pick("run_id", "runId") is not None else None,
            start_time=_int_or_none(pick("start_time", "startTime")),
            end_time=_int_or_none(pick("end_time", "endTime")),
            received_time=str(pick("received_time", "receivedTime")) if pick("received_time", "receivedTime") else None,
            created=_int_or_none(pick("created")) or 0,
            updated=_int_or_none(pick("updated")) or 0,
            deleted=_int_or_none(pick("deleted")) or 0,
            skipped=_int_or_none(pick("skipped")) or 0,
        )


class JobStatusStore:
    """SQLite-backed key/value cache whose entries expire after a TTL.

    Expired entries are indistinguishable from entries that were never
    written: :meth:`get` deletes them and returns ``None``.
    """

    def __init__(
        self,
        path: Union[str, Path] = ":memory:",
        *,
        default_ttl: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._lock = threading.Lock()
        target = str(path)
        if target != ":memory:":
            app_paths.ensure_parent(Path(target))
        try:
            self._conn = sqlite3.connect(target, check_same_thread=False)
            with self._conn:
                self._conn.execute(STATUS_TABLE_SQL)
        except sqlite3.Error as exc:
            raise CacheError(f"Could not open status cache {target}: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def put(self, key: str, status: ImportJobStatus, ttl: Optional[int] = None) -> None:
        lifetime = self.default_ttl if ttl is None else ttl
        expires_at = self._clock() + max(0, lifetime)
        try:
            payload = json.dumps(status.to_json())
        except (TypeError, ValueError) as exc:
            raise CacheError(f"Could not serialise status for {key}: {exc}") from exc
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    """
                    INSERT INTO job_status (key, payload, expires_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        payload = excluded.payload,
                        expires_at = excluded.expires_at
                    """,
                    (key, payload, expires_at),
                )
        except sqlite3.Error as exc:
            raise CacheError(f"Could not write status for {key}: {exc}") from exc

    def get(self, key: str) -> Optional[ImportJobStatus]:
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT payload, expires_at FROM job_status WHERE key = ?",
                    (key,),
                ).fetchone()
                if row is not None and row[1] <= self._clock():
                    with self._conn:
                        self._conn.execute("DELETE FROM job_status WHERE key = ?", (key,))
                    row = None
        except sqlite3.Error as exc:
            raise CacheError(f"Could not read status for {key}: {exc}") from exc

        if row is None:
            return None
        try:
            data = json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("Discarding corrupt status payload for %s", key)
            return None
        if not isinstance(data, dict):
            logger.warning("Discarding non-object status payload for %s", key)
            return None
        return ImportJobStatus.from_json(data)

    def remove(self, key: str) -> bool:
        try:
            with self._lock, self._conn:
                cursor = self._conn.execute("DELETE FROM job_status WHERE key = ?", (key,))
        except sqlite3.Error as exc:
            raise CacheError(f"Could not remove status for {key}: {exc}") from exc
        return cursor.rowcount > 0

    def purge_expired(self) -> int:
        try:
            with self._lock, self._conn:
                cursor = self._conn.execute("DELETE FROM job_status WHERE expires_at <= ?", (self._clock(),))
        except sqlite3.Error as exc:
            raise CacheError(f"Could not purge expired statuses: {exc}") from exc
        return cursor.rowcount


__all__ = [
    "DEFAULT_TTL_SECONDS",
    "ImportJobStatus",
    "InvalidTransition",
    "JobStatus",
    "JobStatusStore",
    "ensure_transition",
]
