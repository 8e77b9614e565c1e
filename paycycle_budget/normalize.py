"""Cell-level normalization for statement dates and amounts."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Optional

import numpy as np
import pandas as pd

_MONTHS = {
    'jan': 1, 'feb': 2, 'mar': 3, 'apr': 4, 'may': 5, 'jun': 6,
    'jul': 7, 'aug': 8, 'sep': 9, 'oct': 10, 'nov': 11, 'dec': 12,
}

_US_DATE = re.compile(r'^(\d{1,2})/(\d{1,2})/(\d{4})$')
_ISO_DATE = re.compile(r'^(\d{4})-(\d{1,2})-(\d{1,2})$')
_TEXT_DATE = re.compile(r'^([A-Za-z]{3})\s+(\d{1,2}),?\s+(\d{4})$')

# Quotes, whitespace, thousands separators and currency signs
_AMOUNT_NOISE = re.compile("[\\s'\",$\\u00a2-\\u00a5\\u20a0-\\u20cf]")

NOON_HOUR = 12


def _at_noon(year: int, month: int, day: int) -> Optional[datetime]:
    try:
        return datetime(year, month, day, NOON_HOUR, 0, 0)
    except ValueError:
        return None


def parse_date(text: Optional[str]) -> Optional[datetime]:
    """Parse ``MM/DD/YYYY``, ``YYYY-MM-DD`` or ``Mon D, YYYY``.

    Dates are anchored at local noon so a later timezone shift never moves
    them to a neighbouring day.  Returns ``None`` for anything else.

    Example:
        >>> parse_date('Dec 15, 2025')
        datetime.datetime(2025, 12, 15, 12, 0)
    """
    if text is None:
        return None
    cleaned = str(text).strip().replace('"', '').replace("'", '')

    match = _US_DATE.match(cleaned)
    if match:
        month, day, year = (int(part) for part in match.groups())
        return _at_noon(year, month, day)

    match = _ISO_DATE.match(cleaned)
    if match:
        year, month, day = (int(part) for part in match.groups())
        return _at_noon(year, month, day)

    match = _TEXT_DATE.match(cleaned)
    if match:
        month = _MONTHS.get(match.group(1).lower())
        if month is not None:
            return _at_noon(int(match.group(3)), month, int(match.group(2)))

    return None


def parse_amount(value: Any) -> float:
    """Convert a statement amount cell to a float.

    Currency symbols, thousands separators, quotes and whitespace are
    stripped; ``(12.50)`` is the accounting spelling of ``-12.50``.
    Anything unreadable becomes ``0.0``.
    """
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
        return number if np.isfinite(number) else 0.0

    cleaned = _AMOUNT_NOISE.sub('', str(value))
    if not cleaned or cleaned == '-':
        return 0.0

    negative = cleaned.startswith('(') and cleaned.endswith(')')
    if negative:
        cleaned = cleaned[1:-1]

    number = pd.to_numeric([cleaned], errors='coerce')[0]
    if pd.isna(number) or not np.isfinite(number):
        return 0.0
    number = float(number)
    return -abs(number) if negative else number
