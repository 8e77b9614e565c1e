"""Pay-period boundary calculations.

A month is split into two budgeting windows by the two configured pay
days ``(p1, p2)``.  The first window runs from ``p1`` to the day before
``p2``; the second runs from ``p2`` to the day before the next month's
``p1`` (which is simply the last day of the month when ``p1`` is 1).

Chaining must always go through :func:`compute_next_period_boundaries`
with the previous period's end date, never the wall clock, so that late
or back-filled period creation neither skips nor repeats a window.
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, time, timedelta
from typing import Sequence, Tuple, Union

from .config import DEFAULT_PAY_DAYS
from .errors import ValidationError
from .models import PeriodBoundaries

DateLike = Union[date, datetime]

_END_OF_DAY = time(23, 59, 59, 999000)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def validate_pay_days(pay_days: Sequence[int]) -> Tuple[int, int]:
    """Return ``pay_days`` as a tuple, rejecting unusable configurations."""
    try:
        first, second = (int(day) for day in pay_days)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Pay days must be two integers, got {pay_days!r}") from exc
    if not 1 <= first < second <= 31:
        raise ValidationError(f"Pay days must satisfy 1 <= first < second <= 31, got {pay_days!r}")
    if first > 28:
        raise ValidationError(f"First pay day must fall in every month (<= 28), got {first}")
    return first, second


def _as_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def _last_day(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def _shift_month(year: int, month: int, delta: int) -> Tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def _day_before_next_first_pay_day(year: int, month: int, first: int) -> date:
    next_year, next_month = _shift_month(year, month, 1)
    return date(next_year, next_month, first) - timedelta(days=1)


def _boundaries(start: date, end: date, identifier_day: int, number: int) -> PeriodBoundaries:
    return PeriodBoundaries(
        start_date=datetime.combine(start, time.min),
        end_date=datetime.combine(end, _END_OF_DAY),
        period_identifier=f"{start.year:04d}-{start.month:02d}-{identifier_day:02d}",
        period_number=number,
    )


def _first_period(year: int, month: int, first: int, second: int) -> PeriodBoundaries:
    if second <= _last_day(year, month):
        end = date(year, month, second - 1)
    else:
        # No second pay day this month: the first window covers the rest of it.
        end = _day_before_next_first_pay_day(year, month, first)
    return _boundaries(date(year, month, first), end, first, 1)


def _second_period(year: int, month: int, first: int, second: int) -> PeriodBoundaries:
    end = _day_before_next_first_pay_day(year, month, first)
    return _boundaries(date(year, month, second), end, second, 2)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def compute_period_boundaries(
    reference_date: DateLike,
    pay_days: Sequence[int] = DEFAULT_PAY_DAYS,
) -> PeriodBoundaries:
    """Return the pay period containing ``reference_date``.

    Args:
        reference_date: Any date or datetime inside the wanted period.
        pay_days: The two pay days of the month, first one first.

    Returns:
        PeriodBoundaries whose start is midnight of the first day and whose
        end is 23:59:59.999 of the last day.

    Example:
        >>> compute_period_boundaries(date(2025, 1, 20)).period_identifier
        '2025-01-15'
    """
    first, second = validate_pay_days(pay_days)
    day = _as_date(reference_date)

    if day.day < first:
        prev_year, prev_month = _shift_month(day.year, day.month, -1)
        if second <= _last_day(prev_year, prev_month):
            return _second_period(prev_year, prev_month, first, second)
        return _first_period(prev_year, prev_month, first, second)
    if day.day < second:
        return _first_period(day.year, day.month, first, second)
    return _second_period(day.year, day.month, first, second)


def compute_next_period_boundaries(
    current_end_date: DateLike,
    pay_days: Sequence[int] = DEFAULT_PAY_DAYS,
) -> PeriodBoundaries:
    """Return the period that starts the day after ``current_end_date``."""
    return compute_period_boundaries(_as_date(current_end_date) + timedelta(days=1), pay_days)


def is_date_in_period(value: DateLike, start_date: DateLike, end_date: DateLike) -> bool:
    """Calendar-day containment check, ignoring the time of day."""
    return _as_date(start_date) <= _as_date(value) <= _as_date(end_date)


def are_dates_in_same_month(first: DateLike, second: DateLike) -> bool:
    return first.year == second.year and first.month == second.month
