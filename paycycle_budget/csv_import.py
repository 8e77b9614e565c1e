"""Bank statement CSV import pipeline.

The pipeline is a single sequential pass over text already read into
memory:

1. tokenize lines into cells (comma separated, double-quote escaping)
2. pick a bank profile from the header row
3. extract date/description/amount/direction per row with that profile
4. normalise dates (anchored at noon) and amounts
5. flag transfers and card payments as excluded
6. sort newest first

Malformed rows never raise; they are skipped and summarised once for the
whole file in ``ParseResult.errors``.  Only a file with fewer than two
rows fails outright.
"""

from __future__ import annotations

import csv
import logging
import re
from collections import Counter
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .bank_profiles import BANK_GENERIC, BankProfile, StatementLayout, classify_bank
from .exclusions import exclude_reason
from .models import (
    TYPE_EXPENSE,
    BudgetPeriod,
    Category,
    ImportCandidate,
    NewTransaction,
    ParsedTransaction,
    ParseResult,
)
from .normalize import parse_date
from .periods import is_date_in_period

if TYPE_CHECKING:
    from .lifecycle import BudgetPeriodManager

logger = logging.getLogger(__name__)

EMPTY_FILE_ERROR = "CSV file is empty or has no data rows"
ENCODINGS = ('utf-8-sig', 'cp1252', 'latin-1')
FRAME_COLUMNS = ['Date', 'Description', 'Amount', 'Type', 'Excluded', 'Exclude Reason']

_LINE_BREAK = re.compile(r'\r?\n')

_SKIP_MESSAGES = {
    'short': "Skipped {count} row(s) with too few columns",
    'date': "Skipped {count} row(s) with unreadable dates",
}


# ---------------------------------------------------------------------------
# Reading and tokenizing
# ---------------------------------------------------------------------------


def read_statement(path: Union[str, Path]) -> str:
    """Read a whole statement file as text, trying common bank encodings."""
    raw = Path(path).read_bytes()
    for encoding in ENCODINGS:
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            continue
    return raw.decode('latin-1', errors='replace')


def tokenize(content: str) -> List[List[str]]:
    """Split ``content`` into rows of trimmed cells, dropping blank lines.

    Each physical line is one row; inside a line, commas within double
    quotes do not split and ``""`` is an escaped quote.
    """
    rows: List[List[str]] = []
    for line in _LINE_BREAK.split(content.lstrip('\ufeff')):
        if not line.strip():
            continue
        cells = next(csv.reader([line], delimiter=',', quotechar='"', doublequote=True), [])
        rows.append([cell.strip() for cell in cells])
    return rows


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _extract_rows(
    rows: Sequence[Sequence[str]],
    profile: BankProfile,
    layout: StatementLayout,
) -> Tuple[List[ParsedTransaction], Counter]:
    transactions: List[ParsedTransaction] = []
    skipped: Counter = Counter()

    for row in rows[layout.header_rows:]:
        if len(row) < profile.min_columns:
            skipped['short'] += 1
            continue
        raw = layout.extract(row)
        date = parse_date(raw.date_text)
        if date is None:
            skipped['date'] += 1
            continue
        if raw.amount == 0:
            skipped['zero'] += 1
            continue

        description = raw.description.strip()
        reason = exclude_reason(description)
        transactions.append(
            ParsedTransaction(
                date=date,
                description=description,
                amount=round(raw.amount, 2),
                type=raw.type,
                excluded=reason is not None,
                exclude_reason=reason,
                original_row=list(row),
            )
        )
    return transactions, skipped


def parse_csv(content: str, filename: Optional[str] = None) -> ParseResult:
    """Parse a bank export into transactions ready for review.

    Args:
        content: Full text of the CSV file.
        filename: Optional original file name, used as a hint for
            headerless exports such as TD's ``accountactivity.csv``.

    Returns:
        ParseResult with the detected bank, transactions newest first and
        file-level error messages.
    """
    try:
        rows = tokenize(content)
        if len(rows) < 2:
            return ParseResult(bank=BANK_GENERIC, transactions=[], errors=[EMPTY_FILE_ERROR])

        profile = classify_bank(rows[0], filename)
        layout = profile.layout(rows[0])
        transactions, skipped = _extract_rows(rows, profile, layout)
        transactions.sort(key=lambda txn: txn.date, reverse=True)

        errors = [
            message.format(count=skipped[key])
            for key, message in _SKIP_MESSAGES.items()
            if skipped[key]
        ]
        logger.info(
            "Parsed %d transaction(s) from %s statement (%d excluded, %d skipped)",
            len(transactions),
            profile.name,
            sum(1 for txn in transactions if txn.excluded),
            sum(skipped.values()),
        )
        return ParseResult(bank=profile.name, transactions=transactions, errors=errors)
    except Exception as exc:  # the importer reports, never raises
        logger.exception("Failed to parse CSV")
        return ParseResult(bank=BANK_GENERIC, transactions=[], errors=[f"Failed to parse CSV: {exc}"])


def parse_statement_file(path: Union[str, Path]) -> ParseResult:
    path = Path(path)
    return parse_csv(read_statement(path), filename=path.name)


# ---------------------------------------------------------------------------
# Review helpers
# ---------------------------------------------------------------------------


def transactions_frame(result: ParseResult) -> pd.DataFrame:
    """Tabular view of parsed transactions for previews and scripts."""
    if not result.transactions:
        return pd.DataFrame(columns=FRAME_COLUMNS)
    frame = pd.DataFrame(
        [
            {
                'Date': txn.date,
                'Description': txn.description,
                'Amount': txn.amount,
                'Type': txn.type,
                'Excluded': txn.excluded,
                'Exclude Reason': txn.exclude_reason or '',
            }
            for txn in result.transactions
        ],
        columns=FRAME_COLUMNS,
    )
    frame['Date'] = pd.to_datetime(frame['Date'])
    return frame


def summarize_import(result: ParseResult) -> Dict[str, float]:
    """Counts and totals over the rows that would be imported by default."""
    frame = transactions_frame(result)
    if frame.empty:
        return {
            'count': 0,
            'excluded': 0,
            'expense_total': 0.0,
            'income_total': 0.0,
            'net': 0.0,
        }
    included = frame[~frame['Excluded'].astype(bool)]
    is_expense = included['Type'] == TYPE_EXPENSE
    signed = np.where(is_expense, -included['Amount'], included['Amount'])
    return {
        'count': int(len(frame)),
        'excluded': int(frame['Excluded'].astype(bool).sum()),
        'expense_total': round(float(included.loc[is_expense, 'Amount'].sum()), 2),
        'income_total': round(float(included.loc[~is_expense, 'Amount'].sum()), 2),
        'net': round(float(signed.sum()), 2),
    }


def prepare_import(
    result: ParseResult,
    period: Optional[BudgetPeriod] = None,
    default_category_id: Optional[str] = None,
) -> List[ImportCandidate]:
    """Wrap parsed rows for review.

    Rows start selected unless they were flagged as transfers/payments or
    fall outside ``period``.
    """
    candidates: List[ImportCandidate] = []
    for txn in result.transactions:
        out_of_period = period is not None and not is_date_in_period(
            txn.date, period.start_date, period.end_date
        )
        candidates.append(
            ImportCandidate(
                transaction=txn,
                selected=not txn.excluded and not out_of_period,
                out_of_period=out_of_period,
                category_id=default_category_id,
            )
        )
    return candidates


def import_transactions(
    manager: 'BudgetPeriodManager',
    user_id: str,
    period_id: str,
    candidates: Sequence[ImportCandidate],
    categories: Mapping[str, Category],
) -> int:
    """Post every selected, categorised candidate; return how many were posted.

    Each row is its own atomic unit, so a storage failure part-way leaves
    earlier rows imported and raises for the rest.
    """
    imported = 0
    for candidate in candidates:
        if not candidate.selected or not candidate.category_id:
            continue
        txn = candidate.transaction
        category = categories.get(candidate.category_id)
        manager.post_transaction(
            user_id,
            NewTransaction(
                period_id=period_id,
                category_id=candidate.category_id,
                category_name=category.name if category else 'Unknown',
                type=txn.type,
                amount=txn.amount,
                description=txn.description,
                date=txn.date,
            ),
        )
        imported += 1
    logger.info("Imported %d of %d reviewed transaction(s)", imported, len(candidates))
    return imported
