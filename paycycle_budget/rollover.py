"""Rollover and budget summary calculations.

These functions are pure: they read period figures and return new values
without touching storage, so the lifecycle manager can call them inside an
atomic write and the UI layer can call them on every change notification.
"""

from __future__ import annotations

from .models import AllocationProgress, BudgetPeriod, BudgetSummary
from .periods import DateLike, are_dates_in_same_month


def calculate_rollover(closing_period: BudgetPeriod) -> float:
    """Unspent funds of ``closing_period``; an overspent period rolls over 0."""
    total_available = closing_period.total_income + closing_period.rollover_in
    unused = total_available - closing_period.total_spent
    return round(max(0.0, unused), 2)


def can_apply_rollover(closing_period_end_date: DateLike, next_period_start_date: DateLike) -> bool:
    """Rollover only carries within a calendar month.

    Example:
        >>> can_apply_rollover(date(2025, 1, 14), date(2025, 1, 15))
        True
        >>> can_apply_rollover(date(2025, 1, 31), date(2025, 2, 1))
        False
    """
    return are_dates_in_same_month(closing_period_end_date, next_period_start_date)


def rollover_for_next_period(closing_period: BudgetPeriod, next_period_start_date: DateLike) -> float:
    """Amount the next period receives as ``rollover_in`` (forfeited across months)."""
    if not can_apply_rollover(closing_period.end_date, next_period_start_date):
        return 0.0
    return calculate_rollover(closing_period)


def calculate_budget_summary(period: BudgetPeriod) -> BudgetSummary:
    total_available = period.total_income + period.rollover_in
    utilization = (period.total_spent / total_available) * 100 if total_available > 0 else 0.0
    return BudgetSummary(
        total_income=period.total_income,
        rollover_in=period.rollover_in,
        total_available=total_available,
        total_allocated=period.total_allocated,
        total_spent=period.total_spent,
        remaining_unallocated=total_available - period.total_allocated,
        remaining_budget=total_available - period.total_spent,
        utilization_percent=utilization,
        is_over_budget=period.total_spent > total_available,
    )


def calculate_allocation_progress(budgeted_amount: float, spent_amount: float) -> AllocationProgress:
    raw_percent = (spent_amount / budgeted_amount) * 100 if budgeted_amount > 0 else 0.0
    return AllocationProgress(
        percent=min(raw_percent, 100.0),
        raw_percent=raw_percent,
        is_over_budget=spent_amount > budgeted_amount,
    )
