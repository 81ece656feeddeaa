"""
Public Works Ledger - Project lifecycle and budget execution engine

Tracks public-works construction projects through an audited status
machine, keeps versioned budgets whose line totals are always re-derived
from their expenses, and raises idempotent alerts when lines, and then
whole budgets, are fully executed.
"""

__version__ = "0.1.0"

from public_works_ledger.engine import WorksEngine  # noqa: E402

__all__ = ["WorksEngine", "__version__"]
