"""Calendar helpers shared by budgets, recurrence and balance lookups."""

from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta


def _add_month(year: int, month: int, delta: int) -> tuple[int, int]:
    total = year * 12 + (month - 1) + delta
    new_year = total // 12
    new_month = total % 12 + 1
    return new_year, new_month


def _clamp_day(year: int, month: int, day: int) -> date:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day, last_day))


def add_months(base: date, delta: int, anchor_day: int | None = None) -> date:
    """Shift ``base`` by whole months keeping ``anchor_day`` (default: base.day), clamped to month length.

    Passing the original anchor keeps Jan 31 -> Feb 28 -> Mar 31 instead of drifting to the 28th.
    """
    year, month = _add_month(base.year, base.month, delta)
    return _clamp_day(year, month, anchor_day or base.day)


def end_of_day(value: date | datetime) -> datetime:
    """A bare date means "as of the end of that day"."""
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.max)


def shift_period_start(start: date, kind: str, count: int) -> date:
    """Start of the period ``count`` steps after (or before) the period starting at ``start``."""
    if kind == "weekly":
        return start + timedelta(days=7 * count)
    if kind == "monthly":
        return add_months(start, count, anchor_day=start.day)
    raise ValueError(f"Unsupported period kind: {kind}")


def period_window(start: date, kind: str, index: int) -> tuple[date, date]:
    """Inclusive (start, end) of the 1-based ``index``-th period counted from ``start``."""
    period_start = shift_period_start(start, kind, index - 1)
    next_start = shift_period_start(start, kind, index)
    return period_start, next_start - timedelta(days=1)


def parse_as_of(value: str) -> datetime:
    """Parse ``YYYY-MM-DD`` (end of that day) or a full ISO timestamp."""
    text = value.strip()
    if len(text) == 10:
        return end_of_day(date.fromisoformat(text))
    return datetime.fromisoformat(text)
