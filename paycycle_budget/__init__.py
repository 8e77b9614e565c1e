"""Top-level package for the pay-period budget engine.

The package splits a month into two budgeting windows around the user's
pay days and keeps each window's figures consistent as money moves.  The
primary modules are:

* ``periods`` - pay period boundary calculations
* ``rollover`` - unspent-funds carry-over and budget summaries
* ``csv_import`` - bank statement parsing (TD, RBC, Amex, generic)
* ``lifecycle`` - opening/closing periods and posting transactions
* ``db`` - the SQLite store behind the lifecycle manager

To preview how a statement will be read, run:

```bash
python scripts/preview_statement.py path/to/statement.csv
```
"""

from .csv_import import parse_csv, parse_statement_file  # noqa: F401
from .db import BudgetStore  # noqa: F401
from .errors import (  # noqa: F401
    BudgetError,
    ConflictError,
    InvariantError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from .lifecycle import BudgetPeriodManager  # noqa: F401
from .periods import compute_next_period_boundaries, compute_period_boundaries  # noqa: F401
from .rollover import calculate_budget_summary, calculate_rollover, can_apply_rollover  # noqa: F401

__version__ = "0.1.0"

__all__ = [
    "BudgetError",
    "BudgetPeriodManager",
    "BudgetStore",
    "ConflictError",
    "InvariantError",
    "NotFoundError",
    "PersistenceError",
    "ValidationError",
    "calculate_budget_summary",
    "calculate_rollover",
    "can_apply_rollover",
    "compute_next_period_boundaries",
    "compute_period_boundaries",
    "parse_csv",
    "parse_statement_file",
]
