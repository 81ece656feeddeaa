"""
Lifecycle Commands - Caller input for creating and editing projects

Commands accept loose input (strings for dates and amounts, as they arrive
from forms and the CLI); handlers normalize and validate them.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field


class CreateProject(BaseModel):
    """
    Create a project in PLANNED status

    Creates budget version 1 with `initial_budget_amount` as its total.
    """

    name: str
    location: str
    initial_budget_amount: Decimal | int | str = Field(default=Decimal("0"))
    planned_start: date | datetime | str
    planned_end: date | datetime | str | None = None
    responsible_id: str | None = None


class UpdateProjectDetails(BaseModel):
    """
    Edit descriptive fields of a project

    Only fields that are set are changed. Status is not editable here.
    """

    name: str | None = None
    location: str | None = None
    initial_budget_amount: Decimal | int | str | None = None
    planned_start: date | datetime | str | None = None
    planned_end: date | datetime | str | None = None
    responsible_id: str | None = None

    def changes(self) -> dict[str, Any]:
        """Fields explicitly set by the caller"""
        return self.model_dump(exclude_unset=True)
