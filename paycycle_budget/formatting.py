"""Formatting utilities for currency and period display."""

from __future__ import annotations

import re
from typing import Union

from .periods import DateLike

CURRENCY_SYMBOLS = {
    'USD': '$',
    'CAD': '$',
    'AUD': '$',
    'EUR': '€',
    'GBP': '£',
    'JPY': '¥',
}

_NON_NUMERIC = re.compile(r'[^0-9.\-]')


def format_currency(amount: Union[float, int], currency: str = 'USD') -> str:
    """Format an amount with two decimals and the currency's symbol.

    Example:
        >>> format_currency(1234.5)
        '$1,234.50'
        >>> format_currency(-5, 'CHF')
        '-CHF 5.00'
    """
    symbol = CURRENCY_SYMBOLS.get(currency.upper())
    formatted = f"{abs(amount):,.2f}"
    prefix = symbol if symbol else f"{currency.upper()} "
    sign = '-' if amount < 0 else ''
    return f"{sign}{prefix}{formatted}"


def parse_currency_input(value: str) -> float:
    """Read a user-typed amount, ignoring symbols and separators."""
    cleaned = _NON_NUMERIC.sub('', value or '')
    try:
        return float(cleaned)
    except ValueError:
        return 0.0


def format_period_range(start_date: DateLike, end_date: DateLike) -> str:
    """``Jan 1 - 14, 2025`` within a month, ``Jan 15 - Feb 2, 2025`` across months."""
    start = f"{start_date:%b} {start_date.day}"
    if (start_date.year, start_date.month) == (end_date.year, end_date.month):
        return f"{start} - {end_date.day}, {end_date.year}"
    return f"{start} - {end_date:%b} {end_date.day}, {end_date.year}"
