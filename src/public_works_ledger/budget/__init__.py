"""
Budget Module - Versioned budgets, budget lines and expenses

A line's executed amount is a cache of the sum of its expenses and is
re-derived from the full expense set after every expense write.
"""

from public_works_ledger.budget.models import Budget, BudgetLine, BudgetState, Expense

__all__ = [
    "Budget",
    "BudgetLine",
    "BudgetState",
    "Expense",
]
