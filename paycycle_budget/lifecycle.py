"""Budget period lifecycle: opening, closing and posting against periods.

Every mutation here is a single :meth:`BudgetStore.atomic` unit:

* creating a period closes the active one (recording its rollover),
  inserts the new period and all of its allocations together;
* posting, editing or deleting a transaction moves the owning period's
  ``total_spent``/``remaining_budget`` and the matching allocation's
  ``spent_amount``/``remaining_amount`` in the same write as the record.

Aggregates move by relative deltas, so a failed unit can be retried as a
whole.  Income transactions are recorded without touching aggregates:
period income is fixed from the income breakdown when the period opens.
"""

from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, List, Optional, Sequence

from .db import BudgetStore, UnitOfWork, new_id, now
from .errors import InvariantError, NotFoundError, ValidationError
from .models import (
    STATUS_ACTIVE,
    TRANSACTION_TYPES,
    TYPE_EXPENSE,
    AllocationDraft,
    BudgetAllocation,
    BudgetPeriod,
    BudgetSummary,
    BudgetTemplate,
    Category,
    IncomeEntry,
    IncomeSource,
    NewTransaction,
    PeriodBoundaries,
    Transaction,
)
from .periods import compute_next_period_boundaries, compute_period_boundaries, validate_pay_days
from .planning import (
    allocations_from_template,
    default_allocations,
    income_for_period,
    total_allocated,
    total_income,
)
from .rollover import calculate_budget_summary, calculate_rollover, can_apply_rollover

logger = logging.getLogger(__name__)

SummaryListener = Callable[[Optional[BudgetSummary], List[BudgetAllocation]], None]


@dataclass
class PeriodPlan:
    """Everything needed to open the next period, before it is written."""

    boundaries: PeriodBoundaries
    income: List[IncomeEntry]
    allocations: List[AllocationDraft]
    expected_rollover: float

    @property
    def total_income(self) -> float:
        return total_income(self.income)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _require_text(value: Optional[str], label: str) -> None:
    if not value or not str(value).strip():
        raise ValidationError(f"{label} is required")


def validate_amount(amount: float, label: str = 'Amount') -> float:
    try:
        number = float(amount)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{label} must be a number, got {amount!r}") from exc
    if not math.isfinite(number) or number <= 0:
        raise ValidationError(f"{label} must be greater than zero, got {amount!r}")
    return round(number, 2)


def validate_period_inputs(
    boundaries: PeriodBoundaries,
    income: Sequence[IncomeEntry],
    allocations: Sequence[AllocationDraft],
) -> None:
    if boundaries.end_date <= boundaries.start_date:
        raise ValidationError("Period end must be after its start")
    if any(entry.amount < 0 for entry in income):
        raise ValidationError("Income amounts cannot be negative")
    if total_income(income) <= 0:
        raise ValidationError("A budget period needs income greater than zero")
    for draft in allocations:
        _require_text(draft.category_id, 'Allocation category')
        if draft.budgeted_amount < 0:
            raise ValidationError(f"Allocation for '{draft.category_name}' cannot be negative")


def validate_transaction(txn: NewTransaction) -> NewTransaction:
    _require_text(txn.period_id, 'Budget period')
    _require_text(txn.category_id, 'Category')
    if txn.type not in TRANSACTION_TYPES:
        raise ValidationError(f"Transaction type must be one of {TRANSACTION_TYPES}, got {txn.type!r}")
    if not isinstance(txn.date, (date, datetime)):
        raise ValidationError("Transaction date is required")
    return dataclasses.replace(txn, amount=validate_amount(txn.amount))


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class BudgetPeriodManager:
    """Orchestrates period creation and transaction posting for all users."""

    def __init__(self, store: BudgetStore) -> None:
        self.store = store

    # Periods ---------------------------------------------------------------

    def create_period(
        self,
        user_id: str,
        boundaries: PeriodBoundaries,
        income: Sequence[IncomeEntry],
        allocations: Sequence[AllocationDraft],
    ) -> str:
        """Close the active period (if any) and open a new one atomically.

        The new period's ``rollover_in`` is the closed period's unspent
        funds when both fall in the same calendar month, otherwise 0.

        Raises:
            ValidationError: zero income, negative amounts, bad boundaries.
            InvariantError: the new period would overlap an existing one.
            PersistenceError: the write failed; nothing was changed.
        """
        _require_text(user_id, 'User')
        validate_period_inputs(boundaries, income, allocations)
        period_id = new_id()
        # Stored amounts are whole cents.
        income_entries = [dataclasses.replace(entry, amount=round(float(entry.amount), 2)) for entry in income]
        drafts = [
            dataclasses.replace(draft, budgeted_amount=round(float(draft.budgeted_amount), 2))
            for draft in allocations
        ]

        def work(unit: UnitOfWork) -> None:
            stamp = now()
            latest = unit.get_latest_period(user_id)
            if latest is not None and boundaries.start_date <= latest.end_date:
                raise InvariantError(
                    f"New period starting {boundaries.start_date:%Y-%m-%d} overlaps period "
                    f"'{latest.id}' ending {latest.end_date:%Y-%m-%d}"
                )

            rollover_in = 0.0
            active = unit.get_active_period(user_id)
            if active is not None:
                rollover_out = calculate_rollover(active)
                unit.close_period(active, rollover_out)
                logger.info("Closed period %s for user %s with rollover %.2f", active.id, user_id, rollover_out)
                if can_apply_rollover(active.end_date, boundaries.start_date):
                    rollover_in = rollover_out
            else:
                previous = unit.get_previous_period(user_id, boundaries.start_date)
                if previous is not None and can_apply_rollover(previous.end_date, boundaries.start_date):
                    rollover_in = previous.rollover_out

            income_total = total_income(income_entries)
            unit.insert_period(
                BudgetPeriod(
                    id=period_id,
                    user_id=user_id,
                    start_date=boundaries.start_date,
                    end_date=boundaries.end_date,
                    status=STATUS_ACTIVE,
                    total_income=income_total,
                    income_breakdown=income_entries,
                    rollover_in=rollover_in,
                    rollover_out=0.0,
                    total_allocated=total_allocated(drafts),
                    total_spent=0.0,
                    remaining_budget=round(income_total + rollover_in, 2),
                    created_at=stamp,
                    updated_at=stamp,
                )
            )
            for draft in drafts:
                unit.insert_allocation(
                    BudgetAllocation(
                        id=new_id(),
                        period_id=period_id,
                        category_id=draft.category_id,
                        category_name=draft.category_name,
                        category_color=draft.category_color,
                        budgeted_amount=draft.budgeted_amount,
                        spent_amount=0.0,
                        remaining_amount=draft.budgeted_amount,
                        note=draft.note,
                        created_at=stamp,
                        updated_at=stamp,
                    )
                )

        self.store.atomic(work)
        logger.info(
            "Created period %s (%s) for user %s with %d allocation(s)",
            period_id,
            boundaries.period_identifier,
            user_id,
            len(drafts),
        )
        return period_id

    def close_period(self, user_id: str, period_id: str) -> float:
        """Close ``period_id`` and return its rollover; closing twice is a no-op."""

        def work(unit: UnitOfWork) -> float:
            period = unit.require_period(user_id, period_id)
            if not period.is_active:
                return period.rollover_out
            rollover_out = calculate_rollover(period)
            unit.close_period(period, rollover_out)
            return rollover_out

        return self.store.atomic(work)

    def plan_next_period(
        self,
        user_id: str,
        pay_days: Sequence[int],
        income_sources: Sequence[IncomeSource],
        categories: Sequence[Category],
        template: Optional[BudgetTemplate] = None,
        reference_date: Optional[date] = None,
    ) -> PeriodPlan:
        """Work out the next period's dates, income and allocations.

        Dates chain from the latest period's end.  Only a user's very first
        period is placed around ``reference_date`` (today by default).
        """
        pay_days = validate_pay_days(pay_days)
        latest = self.store.get_latest_period(user_id)
        if latest is not None:
            boundaries = compute_next_period_boundaries(latest.end_date, pay_days)
        else:
            boundaries = compute_period_boundaries(reference_date or date.today(), pay_days)

        income = income_for_period(income_sources, boundaries.period_number)
        if template is not None:
            drafts = allocations_from_template(template, {category.id: category for category in categories})
        else:
            drafts = default_allocations(categories, total_income(income))

        expected_rollover = 0.0
        if latest is not None and can_apply_rollover(latest.end_date, boundaries.start_date):
            expected_rollover = calculate_rollover(latest) if latest.is_active else latest.rollover_out

        return PeriodPlan(
            boundaries=boundaries,
            income=income,
            allocations=drafts,
            expected_rollover=expected_rollover,
        )

    def create_next_period(
        self,
        user_id: str,
        pay_days: Sequence[int],
        income_sources: Sequence[IncomeSource],
        categories: Sequence[Category],
        template: Optional[BudgetTemplate] = None,
        reference_date: Optional[date] = None,
    ) -> BudgetPeriod:
        plan = self.plan_next_period(user_id, pay_days, income_sources, categories, template, reference_date)
        period_id = self.create_period(user_id, plan.boundaries, plan.income, plan.allocations)
        period = self.store.get_period(user_id, period_id)
        if period is None:
            raise NotFoundError(f"Budget period '{period_id}' vanished after creation")
        return period

    def update_allocation(
        self,
        user_id: str,
        period_id: str,
        allocation_id: str,
        budgeted_amount: float,
        note: Optional[str] = None,
    ) -> None:
        """Change an allocation's budget, keeping remaining and period totals in step."""
        if budgeted_amount < 0:
            raise ValidationError("Allocation amount cannot be negative")
        budgeted_amount = round(float(budgeted_amount), 2)

        def work(unit: UnitOfWork) -> None:
            period = unit.require_period(user_id, period_id)
            allocation = unit.get_allocation(period_id, allocation_id)
            if allocation is None:
                raise NotFoundError(f"Allocation '{allocation_id}' not found in period '{period_id}'")
            unit.update_allocation_budget(allocation_id, budgeted_amount, note)
            delta = round(budgeted_amount - allocation.budgeted_amount, 2)
            if delta:
                unit.apply_allocated_delta(period, delta)

        self.store.atomic(work)

    # Transactions ----------------------------------------------------------

    def _apply_effect(self, unit: UnitOfWork, period: BudgetPeriod, txn: Transaction, sign: int) -> None:
        if txn.type != TYPE_EXPENSE:
            return
        delta = round(sign * txn.amount, 2)
        allocation = unit.find_allocation(period.id, txn.category_id)
        if allocation is not None:
            unit.apply_allocation_spent_delta(allocation.id, delta)
        else:
            logger.warning(
                "No allocation for category %s in period %s; only period totals were updated",
                txn.category_id,
                period.id,
            )
        unit.apply_spent_delta(period, delta)

    def post_transaction(self, user_id: str, transaction: NewTransaction) -> str:
        """Record a transaction and move the period/allocation aggregates with it."""
        _require_text(user_id, 'User')
        txn_input = validate_transaction(transaction)
        transaction_id = new_id()

        def work(unit: UnitOfWork) -> None:
            stamp = now()
            period = unit.require_period(user_id, txn_input.period_id)
            record = Transaction(
                id=transaction_id,
                user_id=user_id,
                period_id=txn_input.period_id,
                category_id=txn_input.category_id,
                category_name=txn_input.category_name,
                type=txn_input.type,
                amount=txn_input.amount,
                description=(txn_input.description or '').strip(),
                date=txn_input.date,
                recurring_transaction_id=txn_input.recurring_transaction_id,
                created_at=stamp,
                updated_at=stamp,
            )
            self._apply_effect(unit, period, record, +1)
            unit.insert_transaction(record)

        self.store.atomic(work)
        logger.debug("Posted %s %.2f to period %s", txn_input.type, txn_input.amount, txn_input.period_id)
        return transaction_id

    def delete_transaction(self, user_id: str, transaction_id: str) -> None:
        """Remove a transaction and undo its effect on the aggregates."""

        def work(unit: UnitOfWork) -> None:
            record = unit.get_transaction(user_id, transaction_id)
            if record is None:
                raise NotFoundError(f"Transaction '{transaction_id}' not found")
            period = unit.get_period(user_id, record.period_id)
            if period is not None:
                self._apply_effect(unit, period, record, -1)
            else:
                logger.warning("Deleting transaction %s whose period %s no longer exists", record.id, record.period_id)
            unit.delete_transaction(user_id, transaction_id)

        self.store.atomic(work)

    def update_transaction(self, user_id: str, transaction_id: str, /, **changes) -> Transaction:
        """Edit a transaction, re-applying its aggregate effect in one unit.

        Accepts any of ``period_id``, ``category_id``, ``category_name``,
        ``type``, ``amount``, ``description``, ``date`` and
        ``recurring_transaction_id``.
        """
        allowed = {field.name for field in dataclasses.fields(NewTransaction)}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Cannot update transaction fields: {', '.join(sorted(unknown))}")

        def work(unit: UnitOfWork) -> Transaction:
            old = unit.get_transaction(user_id, transaction_id)
            if old is None:
                raise NotFoundError(f"Transaction '{transaction_id}' not found")
            merged = validate_transaction(
                NewTransaction(**{name: changes.get(name, getattr(old, name)) for name in allowed})
            )
            new = dataclasses.replace(old, updated_at=now(), **dataclasses.asdict(merged))

            old_period = unit.get_period(user_id, old.period_id)
            if new.period_id == old.period_id:
                new_period = old_period
            else:
                new_period = unit.require_period(user_id, new.period_id)
            if new_period is None:
                raise NotFoundError(f"Budget period '{new.period_id}' not found")

            if old_period is not None:
                self._apply_effect(unit, old_period, old, -1)
            self._apply_effect(unit, new_period, new, +1)
            unit.replace_transaction(new)
            return new

        return self.store.atomic(work)

    # Summaries -------------------------------------------------------------

    def refresh_summary(self, period: Optional[BudgetPeriod]) -> Optional[BudgetSummary]:
        """Recompute the summary from a freshly observed period; safe to call repeatedly."""
        if period is None:
            return None
        return calculate_budget_summary(period)

    def active_summary(self, user_id: str) -> Optional[BudgetSummary]:
        return self.refresh_summary(self.store.get_active_period(user_id))

    def watch_active_period(self, user_id: str, listener: SummaryListener) -> Callable[[], None]:
        """Deliver a fresh summary and allocations on every change to the active period."""

        def on_change(period: Optional[BudgetPeriod], allocations: List[BudgetAllocation]) -> None:
            listener(self.refresh_summary(period), allocations)

        return self.store.subscribe_active_period(user_id, on_change)
