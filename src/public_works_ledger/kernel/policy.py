"""
Ledger Policy - Tunable parameters for alerts, notifications and transitions

The LedgerPolicy gathers every knob the engine exposes: when a budget line
counts as complete, how loud the resulting alerts are, who receives them,
how hard the engine tries to notify, and how reopening a completed project
is treated.
"""

from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

Severity = Literal["LOW", "MEDIUM", "HIGH", "CRITICAL"]


class LedgerPolicy(BaseModel):
    """
    Engine configuration

    Defaults reproduce the behavior of the portal this engine serves: a line
    completes at 100 % execution, a completed line raises a HIGH alert and a
    fully executed budget raises a CRITICAL one, both addressed to the
    administrator role.
    """

    policy_version: str = Field(
        default="1.0",
        description="Policy version for tracking changes over time",
    )

    # Alerting
    completion_threshold: Decimal = Field(
        default=Decimal("1"),
        gt=0,
        description="Executed/assigned ratio at which a budget line counts as complete",
    )

    line_complete_severity: Severity = Field(
        default="HIGH",
        description="Severity of LINE_COMPLETE alerts",
    )

    project_completable_severity: Severity = Field(
        default="CRITICAL",
        description="Severity of PROJECT_COMPLETABLE alerts",
    )

    alert_recipient_role: str = Field(
        default="ADMINISTRADOR",
        min_length=1,
        description="Role that receives derived alerts",
    )

    # Notifications
    notifications_enabled: bool = Field(
        default=True,
        description="Master switch for outbound notifications",
    )

    notify_on_status_change: bool = Field(
        default=True,
        description="Notify the responsible party when a project changes status",
    )

    notify_on_alert: bool = Field(
        default=False,
        description="Notify when an alert is issued (off by default, alerts are polled)",
    )

    notification_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        le=300,
        description="Total time budget for delivering one notification, retries included",
    )

    notification_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum delivery attempts per notification",
    )

    notification_workers: int = Field(
        default=2,
        ge=1,
        le=32,
        description="Worker threads used for notification delivery",
    )

    # Transitions
    max_reopen_count: int | None = Field(
        default=None,
        ge=0,
        description="Maximum COMPLETED to IN_EXECUTION reopenings per project (None = unbounded)",
    )

    transition_cas_retries: int = Field(
        default=1,
        ge=0,
        le=5,
        description="Times a status change re-reads and retries after losing a version race",
    )

    # Storage
    db_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="SQLite busy timeout for each connection",
    )

    model_config = {
        "frozen": False,
        "json_schema_extra": {
            "description": "Alert, notification and transition parameters of the ledger engine"
        },
    }

    def is_complete(self, executed: Decimal, assigned: Decimal) -> bool:
        """
        Check whether a line with these amounts reached the completion threshold

        A line with nothing assigned never completes.
        """
        if assigned <= 0:
            return False
        return executed / assigned >= self.completion_threshold


# Default global policy instance
default_ledger_policy = LedgerPolicy()
