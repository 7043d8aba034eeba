"""Business-calendar helpers: local dates and fiscal years in the shop timezone."""

from __future__ import annotations

from datetime import date, datetime, timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo


@lru_cache(maxsize=8)
def get_zone(name: str) -> ZoneInfo:
    """Return a cached ZoneInfo for ``name``."""
    return ZoneInfo(name)


def local_date(at: datetime, zone: str) -> date:
    """Return the calendar date of ``at`` in the business timezone.

    Raises:
        ValueError: If ``at`` is naive.
    """
    if at.tzinfo is None:
        raise ValueError("naive datetimes are ambiguous; pass an aware datetime")
    return at.astimezone(get_zone(zone)).date()


def business_date(at: datetime, zone: str) -> str:
    """Return ``YYYY-MM-DD`` for ``at`` in the business timezone."""
    return local_date(at, zone).isoformat()


def fiscal_year_start(at: datetime, zone: str, start_month: int = 4) -> int:
    """Return the calendar year in which the fiscal year containing ``at`` began.

    With the default April start, 2025-03-31 belongs to FY 2024 and
    2025-04-01 00:00 local time already belongs to FY 2025.
    """
    day = local_date(at, zone)
    return day.year if day.month >= start_month else day.year - 1


def fiscal_year_bounds(start_year: int, start_month: int = 4) -> tuple[date, date]:
    """Return the first and last local dates of the fiscal year starting in ``start_year``."""
    first = date(start_year, start_month, 1)
    last = date(start_year + 1, start_month, 1) - timedelta(days=1)
    return first, last
