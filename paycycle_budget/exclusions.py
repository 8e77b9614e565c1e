"""Heuristics for spotting transfers and card payments in statement rows.

Flagged rows are not dropped: the importer marks them ``excluded`` so they
start deselected but stay visible and can be toggled back on.
"""

from __future__ import annotations

import re
from typing import Callable, Optional, Pattern, Sequence, Tuple

REASON_TRANSFER = 'Transfer'
REASON_CC_PAYMENT = 'Credit Card Payment'
REASON_INTERNAL_TRANSFER = 'Internal Transfer'


def _compile(patterns: Sequence[str]) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


TRANSFER_PATTERNS = _compile([
    r'transfer\s*(to|from|between)',
    r'tfr\s*(to|from)',
    r'e-?transfer',
    r'interac\s*e-?transfer',
    r'internal\s*transfer',
    r'xfer',
    r'moving\s*money',
])

CC_PAYMENT_PATTERNS = _compile([
    r'payment\s*-?\s*thank\s*you',
    r'payment\s*received',
    r'cc\s*payment',
    r'credit\s*card\s*payment',
    r'online\s*payment',
    r'payment\s*from\s*(chequing|savings|checking)',
    r'pymt',
    r'autopay',
    r'pre-authorized\s*payment',
    r'pmt\s*rcvd',
])

INTERNAL_ACCOUNT_PATTERNS = _compile([
    r'^(to|from)\s*(chequing|savings|checking|tfsa|rrsp)',
    r'account\s*transfer',
    r'between\s*accounts',
])

def is_transfer(description: str) -> bool:
    return any(pattern.search(description) for pattern in TRANSFER_PATTERNS)


def is_cc_payment(description: str) -> bool:
    return any(pattern.search(description) for pattern in CC_PAYMENT_PATTERNS)


def is_internal_transfer(description: str) -> bool:
    return any(pattern.search(description) for pattern in INTERNAL_ACCOUNT_PATTERNS)


# Checked in order; the first family that matches names the reason.
EXCLUSION_RULES: Tuple[Tuple[str, Callable[[str], bool]], ...] = (
    (REASON_TRANSFER, is_transfer),
    (REASON_CC_PAYMENT, is_cc_payment),
    (REASON_INTERNAL_TRANSFER, is_internal_transfer),
)


def exclude_reason(description: Optional[str]) -> Optional[str]:
    """Return why ``description`` should start deselected, or ``None``."""
    if not description:
        return None
    for reason, matches in EXCLUSION_RULES:
        if matches(description):
            return reason
    return None
