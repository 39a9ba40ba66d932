"""Cell value helpers: Airtable payload decoding and timestamp normalisation.

Raw Airtable field values are decoded once into a small closed set of value
types (:class:`Attachment`, :class:`Collaborator`, :class:`Scalar`,
:class:`ValueList` and :class:`Opaque`).  :func:`format_field_value` turns any
of them into the flat string written to a spreadsheet cell and
:func:`standardize_timestamp` produces the canonical ``YYYY-MM-DD HH:MM:SS``
form used to compare change timestamps between runs.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, tzinfo
from typing import Any, Mapping, Optional, Tuple, Union

import pytz
from dateutil import parser as dtparser

logger = logging.getLogger(__name__)

CANONICAL_FORMAT = "%Y-%m-%d %H:%M:%S"
ISO_MILLIS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
OBJECT_PLACEHOLDER = "[Object]"

_ISO_MILLIS_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$")
_CANONICAL_RE = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$")

# Epoch values above this are treated as milliseconds.
_EPOCH_MILLIS_THRESHOLD = 10**11

TimezoneLike = Union[str, tzinfo, None]


@dataclass(frozen=True)
class Attachment:
    url: str
    payload: Mapping[str, Any]


@dataclass(frozen=True)
class Collaborator:
    name: Optional[str] = None
    email: Optional[str] = None

    def display(self) -> str:
        if self.name is not None:
            return self.name
        return self.email or ""


@dataclass(frozen=True)
class Scalar:
    value: Union[None, bool, int, float, str]


@dataclass(frozen=True)
class Opaque:
    payload: Any


@dataclass(frozen=True)
class ValueList:
    items: Tuple["RawValue", ...]


RawValue = Union[Attachment, Collaborator, Scalar, Opaque, ValueList]


def resolve_timezone(tz: TimezoneLike = None) -> tzinfo:
    """Return a tzinfo for ``tz`` (a name, a tzinfo or ``None`` for UTC)."""

    if tz is None or tz == "":
        return pytz.utc
    if isinstance(tz, str):
        try:
            return pytz.timezone(tz)
        except pytz.UnknownTimeZoneError:
            logger.warning("Unknown timezone '%s'; falling back to UTC", tz)
            return pytz.utc
    if not isinstance(tz, tzinfo):
        raise TypeError(f"Expected a timezone name or tzinfo, got {type(tz).__name__}")
    return tz


def _localize(value: datetime, zone: tzinfo) -> datetime:
    if value.tzinfo is None:
        if hasattr(zone, "localize"):
            return zone.localize(value)
        return value.replace(tzinfo=zone)
    return value.astimezone(zone)


def decode_raw(value: Any) -> RawValue:
    """Decode a JSON value from the Airtable payload into a :data:`RawValue`."""

    if isinstance(value, (Attachment, Collaborator, Scalar, Opaque, ValueList)):
        return value
    if value is None or isinstance(value, (bool, int, float, str)):
        return Scalar(value)
    if isinstance(value, (list, tuple)):
        return ValueList(tuple(decode_raw(item) for item in value))
    if isinstance(value, Mapping):
        if "url" in value:
            return Attachment(url=str(value.get("url") or ""), payload=dict(value))
        if "name" in value or "email" in value:
            name = value.get("name") if "name" in value else None
            email = value.get("email")
            return Collaborator(
                name=None if "name" not in value else ("" if name is None else str(name)),
                email=None if email is None else str(email),
            )
        return Opaque(dict(value))
    return Opaque(value)


def _json_text(payload: Any) -> str:
    try:
        return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError):
        return OBJECT_PLACEHOLDER


def _number_text(value: Union[int, float]) -> str:
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return str(value)
        if value.is_integer():
            return str(int(value))
    return str(value)


def _object_text(payload: Mapping[str, Any]) -> str:
    if "name" in payload:
        name = payload.get("name")
        return "" if name is None else str(name)
    if "email" in payload:
        email = payload.get("email")
        return "" if email is None else str(email)
    return _json_text(payload)


def _item_text(item: RawValue, zone) -> str:
    if isinstance(item, Attachment):
        return _object_text(item.payload)
    if isinstance(item, Collaborator):
        return item.display()
    if isinstance(item, Opaque):
        return _json_text(item.payload)
    if isinstance(item, ValueList):
        return _format(item, zone)
    scalar = item.value
    if scalar is None:
        return ""
    if isinstance(scalar, bool):
        return "TRUE" if scalar else "FALSE"
    if isinstance(scalar, (int, float)):
        return _number_text(scalar)
    return str(scalar)


def _iso_to_canonical(text: str, zone) -> str:
    parsed = datetime.strptime(text, ISO_MILLIS_FORMAT).replace(tzinfo=pytz.utc)
    return parsed.astimezone(zone).strftime(CANONICAL_FORMAT)


def _format(value: RawValue, zone) -> str:
    if isinstance(value, ValueList):
        if not value.items:
            return ""
        if isinstance(value.items[0], Attachment):
            return ", ".join(
                item.url if isinstance(item, Attachment) else _item_text(item, zone)
                for item in value.items
            )
        return ",".join(_item_text(item, zone) for item in value.items)
    if isinstance(value, Collaborator):
        return value.display()
    if isinstance(value, Attachment):
        return _object_text(value.payload)
    if isinstance(value, Opaque):
        if isinstance(value.payload, Mapping):
            return _object_text(value.payload)
        return _json_text(value.payload)

    scalar = value.value
    if scalar is None:
        return ""
    if isinstance(scalar, bool):
        return "TRUE" if scalar else "FALSE"
    if isinstance(scalar, str) and _ISO_MILLIS_RE.match(scalar):
        try:
            return _iso_to_canonical(scalar, zone)
        except ValueError as exc:
            logger.warning("Date formatting error for value '%s'; keeping original (%s)", scalar, exc)
            return scalar
    if isinstance(scalar, (int, float)):
        return _number_text(scalar)
    return str(scalar)


def format_field_value(value: Any, tz: TimezoneLike = None) -> str:
    """Return the display string written to a spreadsheet cell for ``value``.

    ``value`` may be a raw JSON value or an already decoded :data:`RawValue`.
    The function never raises.
    """

    return _format(decode_raw(value), resolve_timezone(tz))


def standardize_timestamp(
    value: Any,
    record_id: str = "",
    source: str = "",
    tz: TimezoneLike = None,
) -> str:
    """Return ``value`` as ``YYYY-MM-DD HH:MM:SS`` in ``tz`` or ``""``.

    An empty string is returned for missing values and for anything that
    cannot be interpreted as a point in time.
    """

    zone = resolve_timezone(tz)
    if isinstance(value, Scalar):
        value = value.value

    if value is None or isinstance(value, bool):
        return ""

    if isinstance(value, datetime):
        return _localize(value, zone).strftime(CANONICAL_FORMAT)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day).strftime(CANONICAL_FORMAT)

    if isinstance(value, (int, float)):
        if value == 0:
            return ""
        logger.debug("Numeric timestamp from %s (ID: %s): %s", source, record_id, value)
        seconds = value / 1000.0 if abs(value) > _EPOCH_MILLIS_THRESHOLD else float(value)
        try:
            moment = datetime.fromtimestamp(seconds, tz=pytz.utc)
        except (OverflowError, OSError, ValueError) as exc:
            logger.warning(
                "Could not convert numeric timestamp from %s (ID: %s): %s (%s)",
                source,
                record_id,
                value,
                exc,
            )
            return ""
        return moment.astimezone(zone).strftime(CANONICAL_FORMAT)

    if not isinstance(value, str):
        logger.warning("Unsupported timestamp type %s from %s (ID: %s)", type(value).__name__, source, record_id)
        return ""

    text = value.strip()
    if not text:
        return ""
    if _CANONICAL_RE.match(text):
        return text
    if _ISO_MILLIS_RE.match(text):
        try:
            return _iso_to_canonical(text, zone)
        except ValueError:
            logger.warning("Failed to parse ISO date string from %s (ID: %s): '%s'", source, record_id, text)
            return ""
    try:
        parsed = dtparser.parse(text)
    except (ValueError, OverflowError) as exc:
        logger.warning("Failed to parse date string from %s (ID: %s): '%s' (%s)", source, record_id, text, exc)
        return ""
    return _localize(parsed, zone).strftime(CANONICAL_FORMAT)


__all__ = [
    "Attachment",
    "CANONICAL_FORMAT",
    "Collaborator",
    "Opaque",
    "RawValue",
    "Scalar",
    "ValueList",
    "decode_raw",
    "format_field_value",
    "resolve_timezone",
    "standardize_timestamp",
]
