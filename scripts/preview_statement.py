#!/usr/bin/env python3
"""Preview how a bank statement CSV will be parsed before importing it."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pandas as pd  # noqa: E402

from paycycle_budget.config import configure_logging  # noqa: E402
from paycycle_budget.csv_import import parse_statement_file, summarize_import, transactions_frame  # noqa: E402
from paycycle_budget.formatting import format_currency  # noqa: E402


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("statement", type=Path, help="CSV file exported from the bank")
    parser.add_argument("--limit", type=int, default=20, help="Rows to show (default: 20)")
    parser.add_argument("--include-excluded", action="store_true", help="Show transfers and card payments too")
    parser.add_argument("--currency", default="USD", help="Currency code for totals")
    parser.add_argument("--log-level", default=None, help="Logging level, e.g. DEBUG")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    if not args.statement.exists():
        print(f"Statement not found: {args.statement}")
        return 1

    result = parse_statement_file(args.statement)
    print(f"Bank detected: {result.bank}")
    for message in result.errors:
        print(f"  ! {message}")

    frame = transactions_frame(result)
    if frame.empty:
        print("No transactions found.")
        return 1 if result.errors else 0

    if not args.include_excluded:
        frame = frame[~frame['Excluded']]
    with pd.option_context('display.max_colwidth', 60, 'display.width', 160):
        print(frame.head(args.limit).to_string(index=False))

    summary = summarize_import(result)
    print()
    print(f"Transactions: {summary['count']} ({summary['excluded']} excluded)")
    print(f"Expenses:     {format_currency(summary['expense_total'], args.currency)}")
    print(f"Income:       {format_currency(summary['income_total'], args.currency)}")
    print(f"Net:          {format_currency(summary['net'], args.currency)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
