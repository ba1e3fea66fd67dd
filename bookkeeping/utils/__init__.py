"""
Utils package
"""

from .dates import add_months, end_of_day, parse_as_of, period_window, shift_period_start

__all__ = [
    "add_months",
    "end_of_day",
    "parse_as_of",
    "period_window",
    "shift_period_start",
]
