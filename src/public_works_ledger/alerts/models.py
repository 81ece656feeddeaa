"""
Alert Domain Models

Alerts are derived notices raised when a computed condition holds (a line
fully executed, a whole budget fully executed). The pair (type,
correlation key) identifies the condition; while an alert for it is ACTIVE,
the condition holding again does not raise another.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class AlertType(str, Enum):
    LINE_COMPLETE = "LINE_COMPLETE"
    PROJECT_COMPLETABLE = "PROJECT_COMPLETABLE"
    GENERIC = "GENERIC"


class AlertSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class AlertState(str, Enum):
    """
    ACTIVE alerts block duplicates; ACKNOWLEDGED ones no longer do.
    """

    ACTIVE = "ACTIVE"
    ACKNOWLEDGED = "ACKNOWLEDGED"


class Alert(BaseModel):
    """
    A notice addressed to a role

    The description embeds the correlation key in brackets, e.g.
    "Budget line 'Earthworks' reached 100.0% execution [line:lin-...]".
    """

    alert_id: str
    alert_type: AlertType
    correlation_key: str
    description: str
    severity: AlertSeverity
    recipient_role: str
    state: AlertState = AlertState.ACTIVE
    created_at: datetime
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None

    @property
    def is_active(self) -> bool:
        return self.state == AlertState.ACTIVE


def line_key(line_id: str) -> str:
    return f"line:{line_id}"


def project_key(project_id: str) -> str:
    return f"project:{project_id}"
