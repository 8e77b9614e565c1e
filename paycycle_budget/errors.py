"""Exception types raised by the budget engine."""

from __future__ import annotations


class BudgetError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(BudgetError, ValueError):
    """Input rejected before any persistence call was made."""


class NotFoundError(BudgetError, LookupError):
    """A period, allocation or transaction does not exist."""


class InvariantError(BudgetError):
    """A lifecycle transition would break a period invariant."""


class PersistenceError(BudgetError):
    """The storage layer failed; no partial state was written."""


class ConflictError(PersistenceError):
    """A concurrent writer changed a period between read and write."""
