"""
Budget Module Invariants - Input rules and derived-amount arithmetic

Pure functions, no storage access:
- amount and text parsing for caller input
- the executed-amount fold over a line's expenses
- the completion tests that drive alerting
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

from public_works_ledger.budget.models import BudgetLine, Expense
from public_works_ledger.kernel.errors import InvalidInput
from public_works_ledger.kernel.policy import LedgerPolicy


def parse_amount(value: Any, field: str = "amount") -> Decimal:
    """
    Parse a money amount into a finite Decimal

    Floats go through `str()` so 0.1 stays 0.1. Booleans are rejected even
    though Python treats them as ints.

    Raises:
        InvalidInput: If the value is missing, not numeric, NaN or infinite
    """
    if value is None or isinstance(value, bool):
        raise InvalidInput(field, "a numeric amount is required")
    try:
        amount = Decimal(str(value).strip()) if not isinstance(value, Decimal) else value
    except (InvalidOperation, ValueError):
        raise InvalidInput(field, f"'{value}' is not a number") from None
    if not amount.is_finite():
        raise InvalidInput(field, f"'{value}' is not a finite number")
    return amount


def validate_expense_amount(value: Any) -> Decimal:
    """
    Expenses must be strictly positive

    Raises:
        InvalidInput: If the amount is not a number or is zero or negative
    """
    amount = parse_amount(value, "amount")
    if amount <= 0:
        raise InvalidInput("amount", "must be greater than zero")
    return amount


def validate_assigned_amount(value: Any, field: str = "assigned_amount") -> Decimal:
    """
    Assigned and budget totals may be zero but never negative

    Raises:
        InvalidInput: If the amount is not a number or is negative
    """
    amount = parse_amount(value, field)
    if amount < 0:
        raise InvalidInput(field, "must not be negative")
    return amount


def validate_required_text(value: Any, field: str) -> str:
    """
    Non-blank text, stripped

    Raises:
        InvalidInput: If the value is missing or blank
    """
    if value is None or not str(value).strip():
        raise InvalidInput(field, "must not be blank")
    return str(value).strip()


def compute_executed_amount(expenses: Iterable[Expense | Decimal]) -> Decimal:
    """
    Sum of expense amounts

    The stored executed amount of a line must always equal this fold over
    the line's full expense set.
    """
    total = Decimal("0")
    for expense in expenses:
        total += expense.amount if isinstance(expense, Expense) else expense
    return total


def line_is_complete(line: BudgetLine, policy: LedgerPolicy) -> bool:
    """Executed reached the completion threshold of a non-zero assignment"""
    return policy.is_complete(line.executed_amount, line.assigned_amount)


def budget_is_complete(lines: list[BudgetLine], policy: LedgerPolicy) -> bool:
    """
    Every line of the budget is complete

    A budget without lines is never complete, and a single line with
    nothing assigned keeps the whole budget open.
    """
    if not lines:
        return False
    return all(line_is_complete(line, policy) for line in lines)
