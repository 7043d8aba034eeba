# src/tillsync/db/time.py
"""Time utilities for the local store and the wire format."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import Text
from sqlalchemy.engine import Dialect
from sqlalchemy.types import TypeDecorator

ONE_MILLISECOND = timedelta(milliseconds=1)


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime, truncated to milliseconds."""
    now = datetime.now(UTC)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def to_iso(value: datetime) -> str:
    """Format an aware datetime as ``YYYY-MM-DDTHH:MM:SS.sssZ``.

    The fixed width keeps lexical and chronological ordering identical, which
    the change queries rely on.
    """
    if value.tzinfo is None:
        raise ValueError("naive datetimes are not accepted; attach a timezone")
    value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_iso(value: str | datetime) -> datetime:
    """Parse an ISO-8601 timestamp (any precision, ``Z`` or offset) into aware UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.strip().replace(" ", "T", 1))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    parsed = parsed.astimezone(UTC)
    return parsed.replace(microsecond=(parsed.microsecond // 1000) * 1000)


class UTCDateTime(TypeDecorator[datetime]):
    """Timestamp column stored as fixed-width ISO-8601 UTC text."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Dialect) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            return to_iso(parse_iso(value))
        return to_iso(value)

    def process_result_value(self, value: Any, dialect: Dialect) -> datetime | None:
        if value is None or value == "":
            return None
        return parse_iso(value)
