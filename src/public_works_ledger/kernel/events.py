"""
Domain events published after a ledger write commits

Events are immutable facts handed to in-process subscribers (the
notification dispatcher, tests, embedding applications). They are not the
source of truth: the ledger tables are. An event is only published once the
transaction that produced it has committed.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class DomainEvent(BaseModel):
    """
    Base class for all domain events

    `event_type` defaults to the subclass name so subscribers can register
    by the string they see in logs.
    """

    event_id: str = Field(..., description="Unique event identifier (UUIDv7 for time-ordering)")
    occurred_at: datetime = Field(..., description="UTC timestamp when the change committed")
    actor_id: str | None = Field(
        default=None,
        description="Actor who caused the change (None for system-raised events)",
    )

    model_config = {"frozen": True}

    @property
    def event_type(self) -> str:
        return type(self).__name__


class ProjectStatusChanged(DomainEvent):
    """A project moved to a new status and the history entry was written"""

    project_id: str
    from_status: str
    to_status: str
    justification: str
    responsible_id: str | None = None


class ExpenseRecorded(DomainEvent):
    """An expense was added and its line re-aggregated"""

    expense_id: str
    line_id: str
    amount: Decimal
    executed_amount: Decimal


class ExpenseUpdated(DomainEvent):
    """An expense was edited and its line re-aggregated"""

    expense_id: str
    line_id: str
    amount: Decimal
    executed_amount: Decimal


class ExpenseDeleted(DomainEvent):
    """An expense was removed and its line re-aggregated"""

    expense_id: str
    line_id: str
    executed_amount: Decimal


class AlertIssued(DomainEvent):
    """A new ACTIVE alert was created"""

    alert_id: str
    alert_type: str
    correlation_key: str
    severity: str
    recipient_role: str
    description: str
