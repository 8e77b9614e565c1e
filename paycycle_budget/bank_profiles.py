"""Bank statement profiles and the classifier that picks one.

A profile knows how to recognise a bank's header row and how to turn one
data row into a date, description, magnitude and direction.  The set is
closed and ordered: :func:`classify_bank` walks :data:`PROFILES` and takes
the first profile that claims the header, with ``Generic`` last as the
catch-all.

Sign conventions differ per bank and are deliberate:

* TD, RBC and Generic with separate columns: a withdrawal/debit is an
  expense, otherwise a deposit/credit is income.
* RBC and Generic with one signed column: negative is an expense.
* Amex: positive is a charge (expense), negative is a credit (income).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from .models import TYPE_EXPENSE, TYPE_INCOME
from .normalize import parse_amount, parse_date

BANK_TD = 'TD'
BANK_RBC = 'RBC'
BANK_AMEX = 'Amex'
BANK_GENERIC = 'Generic'

HEADERLESS_FILENAME_HINT = 'accountactivity'


@dataclass(frozen=True)
class RawRow:
    date_text: str
    description: str
    amount: float  # magnitude, 0.0 when the row carries no money
    type: str


Extractor = Callable[[Sequence[str]], RawRow]


@dataclass(frozen=True)
class StatementLayout:
    header_rows: int
    extract: Extractor


@dataclass(frozen=True)
class BankProfile:
    name: str
    min_columns: int
    detect: Callable[[Sequence[str], Optional[str]], bool]
    layout: Callable[[Sequence[str]], StatementLayout]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _lower(headers: Sequence[str]) -> List[str]:
    return [str(header).strip().lower() for header in headers]


def _find(headers: Sequence[str], *needles: str) -> Optional[int]:
    """Index of the first header containing any of ``needles``."""
    for index, header in enumerate(headers):
        if any(needle in header for needle in needles):
            return index
    return None


def _find_exact(headers: Sequence[str], name: str) -> Optional[int]:
    for index, header in enumerate(headers):
        if header == name:
            return index
    return None


def _cell(row: Sequence[str], index: Optional[int], fallback: Optional[int] = None) -> str:
    if index is None:
        index = fallback
    if index is None or not 0 <= index < len(row):
        return ''
    return row[index]


def _split_columns(withdrawal: float, deposit: float) -> Tuple[float, str]:
    if withdrawal != 0:
        return abs(withdrawal), TYPE_EXPENSE
    return abs(deposit), TYPE_INCOME


def _signed_column(amount: float, *, negative_is_expense: bool = True) -> Tuple[float, str]:
    if negative_is_expense:
        kind = TYPE_EXPENSE if amount < 0 else TYPE_INCOME
    else:
        kind = TYPE_EXPENSE if amount > 0 else TYPE_INCOME
    return abs(amount), kind


def _is_headerless(headers: Sequence[str]) -> bool:
    return len(headers) >= 3 and parse_date(headers[0]) is not None


# ---------------------------------------------------------------------------
# TD
# ---------------------------------------------------------------------------


def _detect_td(headers: Sequence[str], filename: Optional[str]) -> bool:
    if filename and HEADERLESS_FILENAME_HINT in filename.lower():
        return True
    if _is_headerless(headers):
        return True
    joined = ','.join(_lower(headers))
    split_columns = ('withdrawal' in joined and 'deposit' in joined) or (
        'debit' in joined and 'credit' in joined
    )
    return split_columns and 'balance' in joined


def _td_layout(headers: Sequence[str]) -> StatementLayout:
    if _is_headerless(headers):
        # accountactivity.csv: date, description, debit, credit, balance
        date_idx, desc_idx, out_idx, in_idx = 0, 1, 2, 3
        header_rows = 0
    else:
        lowered = _lower(headers)
        date_idx = _find(lowered, 'date')
        desc_idx = _find(lowered, 'description')
        out_idx = _find(lowered, 'withdrawal', 'debit')
        in_idx = _find(lowered, 'deposit', 'credit')
        header_rows = 1

    def extract(row: Sequence[str]) -> RawRow:
        amount, kind = _split_columns(
            parse_amount(_cell(row, out_idx, 2)),
            parse_amount(_cell(row, in_idx, 3)),
        )
        return RawRow(_cell(row, date_idx, 0), _cell(row, desc_idx, 1), amount, kind)

    return StatementLayout(header_rows, extract)


# ---------------------------------------------------------------------------
# RBC
# ---------------------------------------------------------------------------


def _detect_rbc(headers: Sequence[str], filename: Optional[str]) -> bool:
    joined = ','.join(_lower(headers))
    return 'account type' in joined or 'description 1' in joined


def _rbc_layout(headers: Sequence[str]) -> StatementLayout:
    lowered = _lower(headers)
    date_idx = _find(lowered, 'date')
    desc_idx = _find_exact(lowered, 'description 1')
    if desc_idx is None:
        desc_idx = _find(lowered, 'description')
    second_desc_idx = _find_exact(lowered, 'description 2')
    amount_idx = _find(lowered, 'cad')
    if amount_idx is None:
        amount_idx = _find(lowered, 'amount')
    out_idx = _find(lowered, 'withdrawal')
    in_idx = _find(lowered, 'deposit')

    def extract(row: Sequence[str]) -> RawRow:
        description = _cell(row, desc_idx, 1)
        extra = _cell(row, second_desc_idx)
        if extra:
            description = f"{description} {extra}"
        if out_idx is not None and in_idx is not None:
            amount, kind = _split_columns(parse_amount(_cell(row, out_idx)), parse_amount(_cell(row, in_idx)))
        else:
            amount, kind = _signed_column(parse_amount(_cell(row, amount_idx, 2)))
        return RawRow(_cell(row, date_idx, 0), description, amount, kind)

    return StatementLayout(1, extract)


# ---------------------------------------------------------------------------
# Amex
# ---------------------------------------------------------------------------


def _detect_amex(headers: Sequence[str], filename: Optional[str]) -> bool:
    lowered = _lower(headers)
    joined = ','.join(lowered)
    if 'card member' in joined or 'reference' in joined:
        return True
    # Plain Date/Description/Amount exports come from Amex.
    if 3 <= len(lowered) <= 5:
        return _find(lowered, 'date') is not None and _find(lowered, 'amount') is not None
    return False


def _amex_layout(headers: Sequence[str]) -> StatementLayout:
    lowered = _lower(headers)
    date_idx = _find(lowered, 'date')
    desc_idx = _find(lowered, 'description')
    amount_idx = _find(lowered, 'amount')

    def extract(row: Sequence[str]) -> RawRow:
        amount, kind = _signed_column(parse_amount(_cell(row, amount_idx, 2)), negative_is_expense=False)
        return RawRow(_cell(row, date_idx, 0), _cell(row, desc_idx, 1), amount, kind)

    return StatementLayout(1, extract)


# ---------------------------------------------------------------------------
# Generic
# ---------------------------------------------------------------------------

_DEBIT_NEEDLES = ('debit', 'withdrawal', 'money out', 'paid out')
_CREDIT_NEEDLES = ('credit', 'deposit', 'money in', 'paid in')


def _detect_generic(headers: Sequence[str], filename: Optional[str]) -> bool:
    return True


def _generic_layout(headers: Sequence[str]) -> StatementLayout:
    lowered = _lower(headers)
    date_idx = _find(lowered, 'date')
    desc_idx = _find(lowered, 'description', 'memo', 'payee')
    amount_idx = _find(lowered, 'amount')
    out_idx = _find(lowered, *_DEBIT_NEEDLES)
    in_idx = _find(lowered, *_CREDIT_NEEDLES)
    date_column = date_idx if date_idx is not None else 0

    def extract(row: Sequence[str]) -> RawRow:
        if out_idx is not None and in_idx is not None:
            amount, kind = _split_columns(parse_amount(_cell(row, out_idx)), parse_amount(_cell(row, in_idx)))
        elif amount_idx is not None:
            amount, kind = _signed_column(parse_amount(_cell(row, amount_idx)))
        else:
            amount, kind = 0.0, TYPE_EXPENSE
            for index, value in enumerate(row):
                if index == date_column:
                    continue
                number = parse_amount(value)
                if number != 0:
                    amount, kind = _signed_column(number)
                    break
        return RawRow(_cell(row, date_column), _cell(row, desc_idx, 1), amount, kind)

    return StatementLayout(1, extract)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

TD = BankProfile(BANK_TD, 3, _detect_td, _td_layout)
RBC = BankProfile(BANK_RBC, 3, _detect_rbc, _rbc_layout)
AMEX = BankProfile(BANK_AMEX, 3, _detect_amex, _amex_layout)
GENERIC = BankProfile(BANK_GENERIC, 2, _detect_generic, _generic_layout)

# Priority order matters: TD's split columns would otherwise be read by Generic.
PROFILES: Tuple[BankProfile, ...] = (TD, RBC, AMEX, GENERIC)
BANK_NAMES = tuple(profile.name for profile in PROFILES)


def classify_bank(headers: Sequence[str], filename: Optional[str] = None) -> BankProfile:
    """Return the first profile in :data:`PROFILES` that claims ``headers``."""
    for profile in PROFILES:
        if profile.detect(headers, filename):
            return profile
    return GENERIC


def get_profile(name: str) -> BankProfile:
    for profile in PROFILES:
        if profile.name.lower() == name.lower():
            return profile
    raise ValueError(f"Unknown bank profile '{name}'. Expected one of: {', '.join(BANK_NAMES)}")
