"""Exception hierarchy shared by the sheetbridge components."""
from __future__ import annotations

from typing import Optional


class SheetBridgeError(Exception):
    """Base class for every error raised by sheetbridge."""


class ConfigError(SheetBridgeError):
    """Raised when required configuration is missing or inconsistent."""


class CredentialsError(SheetBridgeError):
    """Raised when the Google service account file cannot be used."""


class FetchError(SheetBridgeError):
    """Raised after the Airtable retry budget has been exhausted."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code:
            return f"{self.message} (HTTP {self.status_code})"
        return self.message


class StoreError(SheetBridgeError):
    """Raised when a spreadsheet read or write fails."""


class CacheError(SheetBridgeError):
    """Raised when the job status cache cannot be read or written."""


class RemoteTriggerError(SheetBridgeError):
    """Raised when the WordPress import endpoint cannot confirm an action.

    ``kind`` is ``timeout`` or ``transport``.  HTTP error statuses and
    rejections reported by the plugin are answers, not failures, and are
    returned as job results instead.
    """

    KINDS = ("timeout", "transport")

    def __init__(self, kind: str, message: str, status_code: Optional[int] = None) -> None:
        if kind not in self.KINDS:
            raise ValueError(f"Unknown remote error kind: {kind}")
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code


__all__ = [
    "CacheError",
    "ConfigError",
    "CredentialsError",
    "FetchError",
    "RemoteTriggerError",
    "SheetBridgeError",
    "StoreError",
]
