"""
Alerts Module - Derived, idempotent notices

Raised when a budget line is fully executed and, cascading from that, when
every line of a budget is, meaning the project can be closed.
"""

from public_works_ledger.alerts.models import Alert, AlertSeverity, AlertState, AlertType

__all__ = [
    "Alert",
    "AlertSeverity",
    "AlertState",
    "AlertType",
]
