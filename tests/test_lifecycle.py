"""Lifecycle tests against a temporary SQLite store.

Each test gets a fresh database file so period creation, posting and the
atomic aggregate updates can be checked end to end.
"""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timedelta
from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from paycycle_budget import csv_import
from paycycle_budget.db import BudgetStore
from paycycle_budget.errors import (
    ConflictError,
    InvariantError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from paycycle_budget.lifecycle import BudgetPeriodManager
from paycycle_budget.models import (
    AllocationDraft,
    BudgetTemplate,
    Category,
    IncomeEntry,
    IncomeSource,
    NewTransaction,
    TemplateAllocation,
)
from paycycle_budget.periods import compute_next_period_boundaries, compute_period_boundaries

USER = 'user-1'
INCOME = [IncomeEntry(source_id='job', source_name='Job', amount=2000.0)]
DRAFTS = [
    AllocationDraft(category_id='groceries', category_name='Groceries', budgeted_amount=500.0),
    AllocationDraft(category_id='rent', category_name='Rent', budgeted_amount=1000.0),
]


@pytest.fixture
def store(tmp_path):
    return BudgetStore(tmp_path / 'budget.db', backoff_seconds=0)


@pytest.fixture
def manager(store):
    return BudgetPeriodManager(store)


@pytest.fixture
def first_period(manager):
    boundaries = compute_period_boundaries(date(2025, 1, 5))
    return manager.create_period(USER, boundaries, INCOME, DRAFTS)


def _expense(period_id, amount, category_id='groceries', day=5, description='Groceries'):
    return NewTransaction(
        period_id=period_id,
        category_id=category_id,
        category_name=category_id.title(),
        type='expense',
        amount=amount,
        description=description,
        date=datetime(2025, 1, day, 12),
    )


def _allocation(store, period_id, category_id):
    return next(alloc for alloc in store.get_allocations(period_id) if alloc.category_id == category_id)


# ---------------------------------------------------------------------------
# Period creation and closing
# ---------------------------------------------------------------------------


def test_create_first_period(store, first_period):
    period = store.get_period(USER, first_period)

    assert period.is_active
    assert period.start_date == datetime(2025, 1, 1)
    assert period.end_date == datetime(2025, 1, 14, 23, 59, 59, 999000)
    assert period.total_income == 2000.0
    assert period.rollover_in == 0.0
    assert period.total_allocated == 1500.0
    assert period.remaining_budget == 2000.0
    assert period.income_breakdown == INCOME

    allocations = store.get_allocations(first_period)
    assert [alloc.category_id for alloc in allocations] == ['groceries', 'rent']
    assert all(alloc.remaining_amount == alloc.budgeted_amount for alloc in allocations)
    assert all(alloc.spent_amount == 0 for alloc in allocations)


@pytest.mark.parametrize(
    'income, drafts',
    [
        ([], DRAFTS),
        ([IncomeEntry('job', 'Job', 0.0)], DRAFTS),
        (INCOME, [AllocationDraft('groceries', 'Groceries', -1.0)]),
    ],
)
def test_invalid_period_inputs_write_nothing(store, manager, income, drafts):
    with pytest.raises(ValidationError):
        manager.create_period(USER, compute_period_boundaries(date(2025, 1, 5)), income, drafts)

    assert store.list_periods(USER) == []


def test_next_period_closes_previous_and_carries_rollover(store, manager, first_period):
    manager.post_transaction(USER, _expense(first_period, 300.0))

    boundaries = compute_next_period_boundaries(store.get_period(USER, first_period).end_date)
    second = manager.create_period(USER, boundaries, INCOME, DRAFTS)

    closed = store.get_period(USER, first_period)
    assert closed.status == 'closed'
    assert closed.rollover_out == 1700.0

    opened = store.get_period(USER, second)
    assert opened.is_active
    assert opened.start_date == datetime(2025, 1, 15)
    assert opened.rollover_in == 1700.0
    assert opened.remaining_budget == 3700.0
    assert [period.id for period in store.list_periods(USER) if period.is_active] == [second]


def test_rollover_is_forfeited_across_months(store, manager, first_period):
    second = manager.create_period(
        USER, compute_next_period_boundaries(datetime(2025, 1, 14)), INCOME, DRAFTS
    )
    third = manager.create_period(
        USER, compute_next_period_boundaries(datetime(2025, 1, 31)), INCOME, DRAFTS
    )

    assert store.get_period(USER, second).rollover_out == 4000.0
    assert store.get_period(USER, third).rollover_in == 0.0
    assert store.get_period(USER, third).start_date == datetime(2025, 2, 1)


def test_overlapping_period_is_rejected_and_rolled_back(store, manager, first_period):
    with pytest.raises(InvariantError):
        manager.create_period(USER, compute_period_boundaries(date(2025, 1, 10)), INCOME, DRAFTS)

    periods = store.list_periods(USER)
    assert [period.id for period in periods] == [first_period]
    assert periods[0].is_active


def test_close_period_is_idempotent(store, manager, first_period):
    manager.post_transaction(USER, _expense(first_period, 250.0))

    assert manager.close_period(USER, first_period) == 1750.0
    assert manager.close_period(USER, first_period) == 1750.0
    assert store.get_active_period(USER) is None


def test_new_period_after_manual_close_uses_stored_rollover(store, manager, first_period):
    manager.close_period(USER, first_period)

    second = manager.create_period(
        USER, compute_next_period_boundaries(datetime(2025, 1, 14)), INCOME, DRAFTS
    )

    assert store.get_period(USER, second).rollover_in == 2000.0


def test_close_unknown_period(manager):
    with pytest.raises(NotFoundError):
        manager.close_period(USER, 'missing')


def test_users_are_isolated(store, manager, first_period):
    other = manager.create_period('user-2', compute_period_boundaries(date(2025, 1, 5)), INCOME, DRAFTS)

    assert store.get_active_period(USER).id == first_period
    assert store.get_active_period('user-2').id == other
    assert store.get_period('user-2', first_period) is None


# ---------------------------------------------------------------------------
# Planning the next period
# ---------------------------------------------------------------------------

SOURCES = [
    IncomeSource(id='salary', name='Salary', default_amount=2000.0, assign_to_period='both'),
    IncomeSource(id='bonus', name='Bonus', default_amount=300.0, assign_to_period=2),
    IncomeSource(id='old', name='Old job', default_amount=999.0, is_active=False),
]
CATEGORIES = [Category('food', 'Food', '#22c55e'), Category('fun', 'Fun'), Category('bills', 'Bills')]


def test_create_next_period_chains_from_latest(store, manager):
    first = manager.create_next_period(USER, (1, 15), SOURCES, CATEGORIES, reference_date=date(2025, 1, 5))

    assert first.start_date == datetime(2025, 1, 1)
    assert first.total_income == 2000.0
    assert [alloc.budgeted_amount for alloc in store.get_allocations(first.id)] == [666.0, 666.0, 666.0]

    plan = manager.plan_next_period(USER, (1, 15), SOURCES, CATEGORIES, reference_date=date(2025, 3, 1))
    assert plan.boundaries.start_date == datetime(2025, 1, 15)
    assert plan.total_income == 2300.0
    assert plan.expected_rollover == 2000.0

    second = manager.create_next_period(USER, (1, 15), SOURCES, CATEGORIES)
    assert second.start_date == datetime(2025, 1, 15)
    assert second.rollover_in == 2000.0
    assert second.total_income == 2300.0


def test_next_period_from_template(store, manager):
    template = BudgetTemplate(
        id='tpl',
        name='Lean',
        allocations=[TemplateAllocation('food', 400.0, note='weekly shop'), TemplateAllocation('gone', 50.0)],
    )

    period = manager.create_next_period(
        USER, (1, 15), SOURCES, CATEGORIES, template=template, reference_date=date(2025, 1, 20)
    )

    allocations = store.get_allocations(period.id)
    assert [(a.category_name, a.budgeted_amount, a.note) for a in allocations] == [
        ('Food', 400.0, 'weekly shop'),
        ('Unknown', 50.0, None),
    ]
    assert allocations[0].category_color == '#22c55e'
    assert period.total_allocated == 450.0


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


def test_post_then_delete_restores_aggregates_exactly(store, manager, first_period):
    manager.post_transaction(USER, _expense(first_period, 10.1))
    before_period = store.get_period(USER, first_period)
    before_alloc = _allocation(store, first_period, 'groceries')

    txn_id = manager.post_transaction(USER, _expense(first_period, 54.32))
    during = store.get_period(USER, first_period)
    assert during.total_spent == 64.42
    assert during.remaining_budget == 1935.58
    assert _allocation(store, first_period, 'groceries').remaining_amount == 435.58

    manager.delete_transaction(USER, txn_id)
    after_period = store.get_period(USER, first_period)
    after_alloc = _allocation(store, first_period, 'groceries')

    assert after_period.total_spent == before_period.total_spent
    assert after_period.remaining_budget == before_period.remaining_budget
    assert after_alloc.spent_amount == before_alloc.spent_amount
    assert after_alloc.remaining_amount == before_alloc.remaining_amount
    assert store.get_transaction(USER, txn_id) is None


def test_income_transactions_do_not_move_aggregates(store, manager, first_period):
    txn_id = manager.post_transaction(
        USER,
        NewTransaction(
            period_id=first_period,
            category_id='groceries',
            category_name='Groceries',
            type='income',
            amount=40.0,
            description='Refund',
            date=datetime(2025, 1, 6),
        ),
    )

    period = store.get_period(USER, first_period)
    assert period.total_spent == 0.0
    assert period.remaining_budget == 2000.0
    assert period.total_income == 2000.0
    assert store.get_transaction(USER, txn_id).type == 'income'


def test_expense_without_allocation_updates_period_only(store, manager, first_period, caplog):
    with caplog.at_level(logging.WARNING, logger='paycycle_budget.lifecycle'):
        manager.post_transaction(USER, _expense(first_period, 80.0, category_id='travel'))

    assert store.get_period(USER, first_period).total_spent == 80.0
    assert all(alloc.spent_amount == 0 for alloc in store.get_allocations(first_period))
    assert 'No allocation for category travel' in caplog.text


@pytest.mark.parametrize(
    'changes',
    [
        {'amount': 0},
        {'amount': -5.0},
        {'amount': float('nan')},
        {'type': 'refund'},
        {'category_id': ''},
    ],
)
def test_invalid_transactions_are_rejected(store, manager, first_period, changes):
    txn = _expense(first_period, 10.0)
    for name, value in changes.items():
        setattr(txn, name, value)

    with pytest.raises(ValidationError):
        manager.post_transaction(USER, txn)

    assert store.get_period(USER, first_period).total_spent == 0.0


def test_post_to_unknown_period(manager, first_period):
    with pytest.raises(NotFoundError):
        manager.post_transaction(USER, _expense('missing', 10.0))


def test_delete_unknown_transaction(manager, first_period):
    with pytest.raises(NotFoundError):
        manager.delete_transaction(USER, 'missing')


def test_update_transaction_moves_amount_between_allocations(store, manager, first_period):
    txn_id = manager.post_transaction(USER, _expense(first_period, 50.0))

    updated = manager.update_transaction(USER, txn_id, amount=80.0, category_id='rent', category_name='Rent')

    assert updated.amount == 80.0
    assert store.get_transaction(USER, txn_id).category_id == 'rent'
    assert _allocation(store, first_period, 'groceries').spent_amount == 0.0
    assert _allocation(store, first_period, 'rent').spent_amount == 80.0
    assert store.get_period(USER, first_period).total_spent == 80.0


def test_update_transaction_to_income_reverses_expense(store, manager, first_period):
    txn_id = manager.post_transaction(USER, _expense(first_period, 50.0))

    manager.update_transaction(USER, txn_id, type='income')

    assert store.get_period(USER, first_period).total_spent == 0.0
    assert _allocation(store, first_period, 'groceries').remaining_amount == 500.0


def test_update_transaction_rejects_unknown_fields(manager, first_period):
    txn_id = manager.post_transaction(USER, _expense(first_period, 50.0))

    with pytest.raises(ValidationError):
        manager.update_transaction(USER, txn_id, user_id='someone-else')


def test_update_allocation_keeps_totals_in_step(store, manager, first_period):
    manager.post_transaction(USER, _expense(first_period, 120.0))
    groceries = _allocation(store, first_period, 'groceries')

    manager.update_allocation(USER, first_period, groceries.id, 600.0, note='bigger shop')

    updated = _allocation(store, first_period, 'groceries')
    assert updated.budgeted_amount == 600.0
    assert updated.remaining_amount == 480.0
    assert updated.note == 'bigger shop'
    assert store.get_period(USER, first_period).total_allocated == 1600.0

    with pytest.raises(ValidationError):
        manager.update_allocation(USER, first_period, groceries.id, -1.0)
    with pytest.raises(NotFoundError):
        manager.update_allocation(USER, first_period, 'missing', 10.0)


# ---------------------------------------------------------------------------
# Listing, importing and change notifications
# ---------------------------------------------------------------------------


def test_transactions_are_paged_newest_first(store, manager, first_period):
    start = datetime(2025, 1, 1, 9)
    for offset in range(30):
        txn = _expense(first_period, 1.0, description=f'item {offset}')
        txn.date = start + timedelta(hours=offset)
        manager.post_transaction(USER, txn)

    first_page = store.list_transactions(USER, period_id=first_period)
    assert len(first_page.transactions) == 25
    assert first_page.has_more is True
    assert first_page.transactions[0].description == 'item 29'

    second_page = store.list_transactions(USER, period_id=first_period, cursor=first_page.next_cursor)
    assert len(second_page.transactions) == 5
    assert second_page.has_more is False
    assert second_page.next_cursor is None
    assert second_page.transactions[-1].description == 'item 0'

    seen = {txn.id for txn in first_page.transactions} | {txn.id for txn in second_page.transactions}
    assert len(seen) == 30
    assert [txn.description for txn in store.recent_transactions(USER, first_period, limit=2)] == [
        'item 29',
        'item 28',
    ]


def test_transactions_filter_by_category_and_type(store, manager, first_period):
    manager.post_transaction(USER, _expense(first_period, 5.0))
    manager.post_transaction(USER, _expense(first_period, 7.0, category_id='rent'))

    page = store.list_transactions(USER, category_id='rent', txn_type='expense')

    assert [txn.amount for txn in page.transactions] == [7.0]
    frame = store.transactions_frame(USER, first_period)
    assert sorted(frame['Amount'].tolist()) == [5.0, 7.0]


def test_import_posts_selected_rows(store, manager, first_period):
    content = (
        "Date,Description,Withdrawals,Deposits,Balance\n"
        "01/10/2025,Grocery Store,54.32,,1000.00\n"
        "01/11/2025,Transfer to savings,100.00,,900.00\n"
        "01/20/2025,Later Store,9.99,,890.01\n"
    )
    period = store.get_period(USER, first_period)
    candidates = csv_import.prepare_import(csv_import.parse_csv(content), period, default_category_id='groceries')

    imported = csv_import.import_transactions(
        manager, USER, first_period, candidates, {'groceries': Category('groceries', 'Groceries')}
    )

    assert imported == 1
    assert store.get_period(USER, first_period).total_spent == 54.32
    assert _allocation(store, first_period, 'groceries').spent_amount == 54.32


def test_watch_active_period_delivers_fresh_summaries(manager, first_period):
    events = []

    unsubscribe = manager.watch_active_period(USER, lambda summary, allocations: events.append((summary, allocations)))
    assert len(events) == 1
    assert events[0][0].total_spent == 0.0
    assert len(events[0][1]) == 2

    manager.post_transaction(USER, _expense(first_period, 25.0))
    assert len(events) == 2
    assert events[1][0].total_spent == 25.0
    assert events[1][0].remaining_budget == 1975.0

    unsubscribe()
    manager.post_transaction(USER, _expense(first_period, 25.0))
    assert len(events) == 2


def test_failing_listener_does_not_break_writes(store, manager, first_period, caplog):
    calls = []

    def listener(period, allocations):
        calls.append(period)
        if len(calls) > 1:
            raise RuntimeError('boom')

    store.subscribe_active_period(USER, listener)
    manager.post_transaction(USER, _expense(first_period, 5.0))

    assert len(calls) == 2
    assert store.get_period(USER, first_period).total_spent == 5.0
    assert 'listener failed' in caplog.text


def test_summary_for_user_without_period(manager):
    events = []
    manager.watch_active_period('nobody', lambda summary, allocations: events.append((summary, allocations)))

    assert events == [(None, [])]
    assert manager.active_summary('nobody') is None


# ---------------------------------------------------------------------------
# Atomicity and concurrency
# ---------------------------------------------------------------------------


def test_concurrent_posts_are_not_lost(store, manager, first_period):
    errors = []

    def worker():
        try:
            for _ in range(10):
                manager.post_transaction(USER, _expense(first_period, 1.25))
        except Exception as exc:  # surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    period = store.get_period(USER, first_period)
    assert period.total_spent == 50.0
    assert period.remaining_budget == 1950.0
    assert _allocation(store, first_period, 'groceries').spent_amount == 50.0
    assert len(store.list_transactions(USER, page_size=100).transactions) == 40


def test_conflicts_are_retried_then_reported(tmp_path):
    store = BudgetStore(tmp_path / 'budget.db', max_attempts=3, backoff_seconds=0)
    attempts = []

    def work(unit):
        attempts.append(1)
        unit.conn.execute(
            "INSERT INTO transactions (id, user_id, period_id, category_id, category_name, type, amount, date) "
            "VALUES (?, 'u', 'p', 'c', 'C', 'expense', 1.0, '2025-01-01T00:00:00')",
            (f'txn-{len(attempts)}',),
        )
        raise ConflictError('simulated')

    with pytest.raises(PersistenceError):
        store.atomic(work)

    assert len(attempts) == 3
    assert store.list_transactions('u').transactions == []


def test_conflict_resolved_on_retry(tmp_path):
    store = BudgetStore(tmp_path / 'budget.db', backoff_seconds=0)
    attempts = []

    def work(unit):
        attempts.append(1)
        if len(attempts) < 2:
            raise ConflictError('simulated')
        return 'done'

    assert store.atomic(work) == 'done'
    assert len(attempts) == 2


def test_stale_version_raises_conflict(store, first_period):
    stale = store.get_period(USER, first_period)
    store.atomic(lambda unit: unit.apply_spent_delta(unit.require_period(USER, first_period), 1.0))

    with pytest.raises(PersistenceError):
        store.atomic(lambda unit: unit.apply_spent_delta(stale, 1.0))

    assert store.get_period(USER, first_period).total_spent == 1.0


def test_sub_cent_budgets_are_stored_in_cents_and_round_trip(store, manager):
    period_id = manager.create_period(
        USER,
        compute_period_boundaries(date(2025, 1, 5)),
        [IncomeEntry('job', 'Job', 1999.999)],
        [AllocationDraft('food', 'Food', 100.005)],
    )
    before = _allocation(store, period_id, 'food')
    assert before.budgeted_amount == round(100.005, 2)
    assert before.remaining_amount == before.budgeted_amount
    assert store.get_period(USER, period_id).total_income == 2000.0

    txn_id = manager.post_transaction(USER, _expense(period_id, 10.0, category_id='food'))
    manager.delete_transaction(USER, txn_id)

    after = _allocation(store, period_id, 'food')
    assert after.remaining_amount == before.remaining_amount
    assert after.spent_amount == before.spent_amount


def test_committed_write_succeeds_when_snapshot_refresh_fails(store, manager, first_period, monkeypatch, caplog):
    events = []
    store.subscribe_active_period(USER, lambda period, allocations: events.append(period))

    def broken_snapshot(user_id):
        raise PersistenceError('snapshot unavailable')

    monkeypatch.setattr(store, 'active_snapshot', broken_snapshot)

    txn_id = manager.post_transaction(USER, _expense(first_period, 10.0))

    assert store.get_transaction(USER, txn_id) is not None
    assert store.get_period(USER, first_period).total_spent == 10.0
    assert len(events) == 1
    assert 'Could not load active period snapshot' in caplog.text
