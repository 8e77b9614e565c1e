from __future__ import annotations

from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from paycycle_budget.models import BudgetTemplate, Category, IncomeSource, TemplateAllocation
from paycycle_budget.planning import (
    allocations_from_template,
    default_allocations,
    income_for_period,
    source_applies_to_period,
    total_allocated,
    total_income,
)


@pytest.mark.parametrize(
    'assignment, period_number, expected',
    [
        ('both', 1, True),
        ('Both', 2, True),
        (1, 1, True),
        (1, 2, False),
        ('2', 2, True),
        ('weekly', 1, False),
    ],
)
def test_source_assignment(assignment, period_number, expected):
    source = IncomeSource(id='s', name='Salary', default_amount=100.0, assign_to_period=assignment)
    assert source_applies_to_period(source, period_number) is expected


def test_income_for_period_skips_inactive_sources():
    sources = [
        IncomeSource('a', 'Salary', 1500.0, 'both'),
        IncomeSource('b', 'Side gig', 200.0, 1),
        IncomeSource('c', 'Old job', 900.0, 'both', is_active=False),
    ]

    first = income_for_period(sources, 1)
    second = income_for_period(sources, 2)

    assert [entry.source_name for entry in first] == ['Salary', 'Side gig']
    assert total_income(first) == 1700.0
    assert total_income(second) == 1500.0


def test_even_split_rounds_down_to_whole_units():
    categories = [Category('a', 'Food'), Category('b', 'Fun'), Category('c', 'Bills')]

    drafts = default_allocations(categories, 1000.0)

    assert [draft.budgeted_amount for draft in drafts] == [333.0, 333.0, 333.0]
    assert total_allocated(drafts) == 999.0


def test_even_split_edge_cases():
    assert default_allocations([], 1000.0) == []
    assert [d.budgeted_amount for d in default_allocations([Category('a', 'Food')], 0)] == [0.0]


def test_template_allocations_snapshot_category_details():
    template = BudgetTemplate(
        id='t1',
        name='Default',
        allocations=[TemplateAllocation('a', 250.0, note='groceries'), TemplateAllocation('zzz', 10.0)],
    )

    drafts = allocations_from_template(template, {'a': Category('a', 'Food', '#ff0000')})

    assert (drafts[0].category_name, drafts[0].category_color, drafts[0].note) == ('Food', '#ff0000', 'groceries')
    assert (drafts[1].category_name, drafts[1].category_color) == ('Unknown', '#6366f1')
