"""
Budget Domain Models - Versioned budgets, lines and expenses

Each project owns a sequence of budget versions of which at most one is
ACTIVE. A budget is split into lines; each line accumulates expenses and
caches their sum as its executed amount.
"""

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from pydantic import BaseModel, Field


class BudgetState(str, Enum):
    """
    Budget version states

    Creating a new version moves the previous ACTIVE one to SUPERSEDED.
    """

    ACTIVE = "ACTIVE"
    SUPERSEDED = "SUPERSEDED"


class Budget(BaseModel):
    """
    One version of a project's budget

    Attributes:
        budget_id: Unique identifier
        project_id: Owning project
        version: Monotonic per project, starting at 1
        total_amount: Total approved for this version
        state: ACTIVE or SUPERSEDED
        responsible_id: Actor who created this version
        created_at: When this version was created
    """

    budget_id: str
    project_id: str
    version: int = Field(ge=1)
    total_amount: Decimal = Field(ge=0)
    state: BudgetState = BudgetState.ACTIVE
    responsible_id: str | None = None
    created_at: datetime


class BudgetLine(BaseModel):
    """
    A spending category within a budget

    `executed_amount` is a cache of the sum of the line's expenses and is
    only ever written by re-aggregation.
    """

    line_id: str
    budget_id: str
    name: str = Field(min_length=1)
    assigned_amount: Decimal = Field(ge=0)
    executed_amount: Decimal = Field(default=Decimal("0"), ge=0)

    @property
    def completion_ratio(self) -> Decimal:
        """Executed over assigned; 0 when nothing is assigned"""
        if self.assigned_amount <= 0:
            return Decimal("0")
        return self.executed_amount / self.assigned_amount

    @property
    def progress_percent(self) -> float:
        """Completion ratio as a percentage rounded to one decimal"""
        return percent_of(self.executed_amount, self.assigned_amount)

    @property
    def remaining_amount(self) -> Decimal:
        return self.assigned_amount - self.executed_amount


class Expense(BaseModel):
    """
    A single outlay charged against a budget line

    `document_ref` is whatever the document storage returned for the
    supporting receipt; the ledger never interprets it.
    """

    expense_id: str
    line_id: str
    amount: Decimal = Field(gt=0)
    description: str = ""
    expense_date: date
    document_ref: str | None = None
    receipt_type: str | None = None
    receipt_number: str | None = None
    created_by: str
    created_at: datetime
    updated_at: datetime


def percent_of(part: Decimal, whole: Decimal) -> float:
    """Percentage of `part` in `whole`, rounded half-up to one decimal (0 when whole is 0)"""
    if whole <= 0:
        return 0.0
    value = (part * 100 / whole).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    return float(value)
