"""Record types shared by the calculators, the importer and the store.

Persisted records carry their denormalized snapshots (category name and
colour on allocations, source names on income entries) as plain fields.
Optional fields are spelled out as ``Optional[...]`` rather than left to
loosely typed dictionaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Union

STATUS_ACTIVE = 'active'
STATUS_CLOSED = 'closed'

TYPE_EXPENSE = 'expense'
TYPE_INCOME = 'income'
TRANSACTION_TYPES = (TYPE_EXPENSE, TYPE_INCOME)

DEFAULT_CATEGORY_COLOR = '#6366f1'


# ---------------------------------------------------------------------------
# Periods
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PeriodBoundaries:
    start_date: datetime
    end_date: datetime
    period_identifier: str
    period_number: int  # 1 for the first pay day, 2 for the second


@dataclass(frozen=True)
class IncomeEntry:
    source_id: str
    source_name: str
    amount: float


@dataclass
class BudgetPeriod:
    id: str
    user_id: str
    start_date: datetime
    end_date: datetime
    status: str = STATUS_ACTIVE
    total_income: float = 0.0
    income_breakdown: List[IncomeEntry] = field(default_factory=list)
    rollover_in: float = 0.0
    rollover_out: float = 0.0
    total_allocated: float = 0.0
    total_spent: float = 0.0
    remaining_budget: float = 0.0
    version: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE


@dataclass
class BudgetAllocation:
    id: str
    period_id: str
    category_id: str
    category_name: str
    category_color: str
    budgeted_amount: float
    spent_amount: float = 0.0
    remaining_amount: float = 0.0
    note: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class AllocationDraft:
    """An allocation about to be written alongside a new period."""

    category_id: str
    category_name: str
    budgeted_amount: float
    category_color: str = DEFAULT_CATEGORY_COLOR
    note: Optional[str] = None


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


@dataclass
class Transaction:
    id: str
    user_id: str
    period_id: str
    category_id: str
    category_name: str
    type: str
    amount: float
    description: str
    date: datetime
    recurring_transaction_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class NewTransaction:
    period_id: str
    category_id: str
    category_name: str
    type: str
    amount: float
    description: str
    date: datetime
    recurring_transaction_id: Optional[str] = None


@dataclass
class TransactionPage:
    transactions: List[Transaction]
    next_cursor: Optional[str]
    has_more: bool


# ---------------------------------------------------------------------------
# Planning inputs
# ---------------------------------------------------------------------------


@dataclass
class Category:
    id: str
    name: str
    color: str = DEFAULT_CATEGORY_COLOR


@dataclass
class IncomeSource:
    id: str
    name: str
    default_amount: float
    assign_to_period: Union[int, str] = 'both'  # 1, 2 or 'both'
    is_active: bool = True


@dataclass
class TemplateAllocation:
    category_id: str
    amount: float
    note: Optional[str] = None


@dataclass
class BudgetTemplate:
    id: str
    name: str
    allocations: List[TemplateAllocation] = field(default_factory=list)
    description: Optional[str] = None
    is_default: bool = False


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BudgetSummary:
    total_income: float
    rollover_in: float
    total_available: float
    total_allocated: float
    total_spent: float
    remaining_unallocated: float
    remaining_budget: float
    utilization_percent: float
    is_over_budget: bool


@dataclass(frozen=True)
class AllocationProgress:
    percent: float  # capped at 100 for display
    raw_percent: float
    is_over_budget: bool


# ---------------------------------------------------------------------------
# CSV import
# ---------------------------------------------------------------------------


@dataclass
class ParsedTransaction:
    date: datetime
    description: str
    amount: float
    type: str
    excluded: bool = False
    exclude_reason: Optional[str] = None
    original_row: List[str] = field(default_factory=list)


@dataclass
class ParseResult:
    bank: str
    transactions: List[ParsedTransaction] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class ImportCandidate:
    transaction: ParsedTransaction
    selected: bool
    out_of_period: bool
    category_id: Optional[str] = None
