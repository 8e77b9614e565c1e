"""Helpers that assemble the inputs of a new budget period.

Income comes from the user's active income sources assigned to the
period's pay day; allocations come either from a saved template or from
an even split of income across every category.
"""

from __future__ import annotations

import math
from typing import Iterable, List, Mapping, Sequence

from .models import (
    DEFAULT_CATEGORY_COLOR,
    AllocationDraft,
    BudgetTemplate,
    Category,
    IncomeEntry,
    IncomeSource,
)

ASSIGN_BOTH = 'both'
UNKNOWN_NAME = 'Unknown'


def source_applies_to_period(source: IncomeSource, period_number: int) -> bool:
    if not source.is_active:
        return False
    assignment = source.assign_to_period
    if isinstance(assignment, str) and assignment.lower() == ASSIGN_BOTH:
        return True
    try:
        return int(assignment) == period_number
    except (TypeError, ValueError):
        return False


def income_for_period(sources: Iterable[IncomeSource], period_number: int) -> List[IncomeEntry]:
    """Income entries for the sources paid in period ``period_number``."""
    return [
        IncomeEntry(source_id=source.id, source_name=source.name or UNKNOWN_NAME, amount=source.default_amount)
        for source in sources
        if source_applies_to_period(source, period_number)
    ]


def total_income(entries: Iterable[IncomeEntry]) -> float:
    return round(sum(entry.amount for entry in entries), 2)


def default_allocations(categories: Sequence[Category], income: float) -> List[AllocationDraft]:
    """Split ``income`` evenly across ``categories`` in whole currency units."""
    if not categories:
        return []
    per_category = float(math.floor(income / len(categories))) if income > 0 else 0.0
    return [
        AllocationDraft(
            category_id=category.id,
            category_name=category.name,
            category_color=category.color or DEFAULT_CATEGORY_COLOR,
            budgeted_amount=per_category,
        )
        for category in categories
    ]


def allocations_from_template(
    template: BudgetTemplate,
    categories: Mapping[str, Category],
) -> List[AllocationDraft]:
    """Copy a template's amounts, snapshotting each category's name and colour."""
    drafts: List[AllocationDraft] = []
    for item in template.allocations:
        category = categories.get(item.category_id)
        drafts.append(
            AllocationDraft(
                category_id=item.category_id,
                category_name=category.name if category else UNKNOWN_NAME,
                category_color=category.color if category else DEFAULT_CATEGORY_COLOR,
                budgeted_amount=item.amount,
                note=item.note,
            )
        )
    return drafts


def total_allocated(drafts: Iterable[AllocationDraft]) -> float:
    return round(sum(draft.budgeted_amount for draft in drafts), 2)
