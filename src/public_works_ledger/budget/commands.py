"""
Budget Module Commands - Partial edits of expenses and budget lines

Only fields the caller actually sets are changed. Values stay loose (str,
int, date, datetime) until the handler validates them.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel


class UpdateExpense(BaseModel):
    """Edit an expense; the line it is charged to cannot change"""

    amount: Decimal | int | str | None = None
    description: str | None = None
    expense_date: date | datetime | str | None = None
    document_ref: str | None = None
    receipt_type: str | None = None
    receipt_number: str | None = None

    def changes(self) -> dict[str, Any]:
        return {k: v for k, v in self.model_dump(exclude_unset=True).items() if v is not None}


class UpdateBudgetLine(BaseModel):
    """
    Rename a line or change its assigned amount

    The executed amount is derived and has no field here.
    """

    name: str | None = None
    assigned_amount: Decimal | int | str | None = None

    def changes(self) -> dict[str, Any]:
        return {k: v for k, v in self.model_dump(exclude_unset=True).items() if v is not None}
