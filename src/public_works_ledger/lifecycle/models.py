"""
Lifecycle Domain Models - Projects and their audited status history

A Project moves through a small state machine from planning to financial
settlement. Every accepted move, including creation, leaves exactly one
StatusHistoryEntry behind, so the history doubles as a version counter.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field
from sqlmodel import SQLModel


class ProjectStatus(str, Enum):
    """
    Project lifecycle states

    PLANNED → IN_EXECUTION → COMPLETED → SETTLED

    Execution may fall back to planning, and a completed project may be
    reopened for more execution. SETTLED is terminal.
    """

    PLANNED = "PLANNED"
    IN_EXECUTION = "IN_EXECUTION"
    COMPLETED = "COMPLETED"
    SETTLED = "SETTLED"


class Project(BaseModel):
    """
    A public-works construction project

    Attributes:
        project_id: Unique identifier
        name: Display name
        location: Where the works take place
        initial_budget_amount: Amount the first budget version was created with
        planned_start: Planned start date
        planned_end: Planned end date (never before start)
        status: Current lifecycle state
        responsible_id: Actor responsible for the project, if assigned
        created_at: When the project was created
        updated_at: Last change to the record
        version: Number of history entries (compare-and-swap token)
        reopen_count: Accepted COMPLETED to IN_EXECUTION transitions
    """

    project_id: str
    name: str = Field(min_length=1)
    location: str = Field(min_length=1)
    initial_budget_amount: Decimal = Field(ge=0)
    planned_start: date
    planned_end: date | None = None
    status: ProjectStatus = ProjectStatus.PLANNED
    responsible_id: str | None = None
    created_at: datetime
    updated_at: datetime
    version: int = Field(default=1, ge=1)
    reopen_count: int = Field(default=0, ge=0)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "project_id": "prj-01908e9a-3b87-7000-8000-123456789abc",
                    "name": "Pavimentación Calle 5",
                    "location": "Barrio Centro",
                    "initial_budget_amount": "250000.00",
                    "planned_start": "2025-02-01",
                    "planned_end": "2025-08-31",
                    "status": "PLANNED",
                    "responsible_id": "user-ana",
                    "created_at": "2025-01-15T12:00:00Z",
                    "updated_at": "2025-01-15T12:00:00Z",
                    "version": 1,
                    "reopen_count": 0,
                }
            ]
        }
    }


class StatusHistoryEntry(BaseModel):
    """
    Append-only record of one accepted status transition

    The creation entry has `previous_status=None` and justification
    "creation".
    """

    entry_id: str
    project_id: str
    status: ProjectStatus
    previous_status: ProjectStatus | None = None
    actor_id: str
    recorded_at: datetime
    justification: str
    sequence: int = Field(ge=1)

    model_config = {"frozen": True}


# Projection models (for read-side queries)


class ProjectProgress(SQLModel):
    """
    Read model for project execution progress

    Aggregated from the ACTIVE budget's lines on each request.
    """

    project_id: str
    status: ProjectStatus
    budget_id: str | None = None
    budget_version: int | None = None
    total_assigned: Decimal = Decimal("0")
    total_executed: Decimal = Decimal("0")
    percent: float = 0.0
    line_count: int = 0
    completed_line_count: int = 0
