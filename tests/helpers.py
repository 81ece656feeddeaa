"""
Test Helper Functions - Builders and test doubles

Builders return valid input that tests override field by field; the
recording notifier stands in for an email/messaging backend.
"""

import threading
from decimal import Decimal
from typing import Any

from public_works_ledger.alerts.models import Alert
from public_works_ledger.notify.notifier import NotificationResult


def project_data(**overrides: Any) -> dict[str, Any]:
    """
    Builder for project creation input

    Example:
        >>> project_data(initial_budget_amount="500")["name"]
        'Pavimentación Calle 5'
    """
    data: dict[str, Any] = {
        "name": "Pavimentación Calle 5",
        "location": "Barrio Centro",
        "initial_budget_amount": Decimal("1000"),
        "planned_start": "2025-02-01",
        "planned_end": "2025-06-30",
        "responsible_id": "resp-1",
    }
    data.update(overrides)
    return data


class RecordingNotifier:
    """Notifier that remembers every call; with fail=True every call raises"""

    channel = "recording"

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.status_changes: list[tuple[str, str, str, str | None]] = []
        self.alerts: list[Alert] = []
        self.calls = 0
        self._lock = threading.Lock()

    def notify_status_change(
        self,
        project_id: str,
        from_status: str,
        to_status: str,
        actor_id: str | None,
    ) -> NotificationResult:
        with self._lock:
            self.calls += 1
        if self.fail:
            raise ConnectionError("mail relay unreachable")
        with self._lock:
            self.status_changes.append((project_id, from_status, to_status, actor_id))
        return NotificationResult(delivered=True, channel=self.channel)

    def notify_alert(self, alert: Alert) -> NotificationResult:
        with self._lock:
            self.calls += 1
        if self.fail:
            raise ConnectionError("mail relay unreachable")
        with self._lock:
            self.alerts.append(alert)
        return NotificationResult(delivered=True, channel=self.channel)
