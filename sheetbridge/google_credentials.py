"""Loading Google service account credentials for the Sheets API."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List, Sequence

from google.oauth2 import service_account

from sheetbridge.errors import CredentialsError

__all__ = [
    "CredentialsFileInvalidError",
    "REQUIRED_FIELDS",
    "build_credentials",
    "load_service_account_data",
]

REQUIRED_FIELDS: Sequence[str] = (
    "type",
    "project_id",
    "private_key_id",
    "private_key",
    "client_email",
    "token_uri",
)


class CredentialsFileInvalidError(CredentialsError):
    """The service account file is unreadable, malformed or incomplete."""


def _read_object(path: Path) -> Dict[str, object]:
    try:
        text = path.read_text(encoding="utf-8-sig")
    except OSError as exc:
        raise CredentialsFileInvalidError(f"Could not read credentials file {path}: {exc}") from exc

    text = text.strip()
    if not text:
        raise CredentialsFileInvalidError(f"Credentials file {path} is empty")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise CredentialsFileInvalidError(f"Credentials file {path} is not valid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise CredentialsFileInvalidError(f"Credentials file {path} must contain a JSON object")
    return payload


def _missing_fields(payload: Dict[str, object]) -> List[str]:
    missing = [
        name for name in REQUIRED_FIELDS if not isinstance(payload.get(name), str) or not str(payload[name]).strip()
    ]
    if payload.get("type") != "service_account" and "type" not in missing:
        missing.append("type")
    return sorted(missing)


def _clean_private_key(key: str) -> str:
    # Keys pasted through env files often arrive with literal "\n" sequences.
    key = key.replace("\r\n", "\n").replace("\r", "\n").replace("\\n", "\n")
    return key if key.endswith("\n") else key + "\n"


def load_service_account_data(path: Path) -> Dict[str, object]:
    """Return the validated contents of ``path``; the file is never rewritten."""

    path = Path(path)
    payload = _read_object(path)
    missing = _missing_fields(payload)
    if missing:
        raise CredentialsFileInvalidError(f"Service account JSON missing fields: {', '.join(missing)}")
    payload["private_key"] = _clean_private_key(str(payload["private_key"]))
    return payload


def build_credentials(path: Path, scopes: Sequence[str]) -> service_account.Credentials:
    """Return service account credentials for ``scopes`` read from ``path``."""

    payload = load_service_account_data(path)
    try:
        return service_account.Credentials.from_service_account_info(payload, scopes=list(scopes))
    except ValueError as exc:
        raise CredentialsError(f"Service account in {path} was rejected: {exc}") from exc
