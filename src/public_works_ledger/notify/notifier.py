"""
Notifier boundary

Delivery (email, messaging, push) happens outside the ledger. The engine
talks to a Notifier through this protocol and never depends on a delivery
succeeding.
"""

from typing import Protocol

from pydantic import BaseModel

from public_works_ledger.alerts.models import Alert
from public_works_ledger.kernel.logging import get_logger

logger = get_logger(__name__)


class NotificationResult(BaseModel):
    """What a notifier reports back about one delivery"""

    delivered: bool
    channel: str = "unknown"
    detail: str | None = None


class Notifier(Protocol):
    """Outbound notification sink"""

    def notify_status_change(
        self,
        project_id: str,
        from_status: str,
        to_status: str,
        actor_id: str | None,
    ) -> NotificationResult:
        ...

    def notify_alert(self, alert: Alert) -> NotificationResult:
        ...


class LoggingNotifier:
    """Writes notifications to the structured log; useful in development"""

    channel = "log"

    def notify_status_change(
        self,
        project_id: str,
        from_status: str,
        to_status: str,
        actor_id: str | None,
    ) -> NotificationResult:
        logger.info(
            "Notification: project status changed",
            project_id=project_id,
            from_status=from_status,
            to_status=to_status,
        )
        return NotificationResult(delivered=True, channel=self.channel)

    def notify_alert(self, alert: Alert) -> NotificationResult:
        logger.info(
            "Notification: alert issued",
            alert_id=alert.alert_id,
            alert_type=alert.alert_type.value,
            severity=alert.severity.value,
            recipient_role=alert.recipient_role,
        )
        return NotificationResult(delivered=True, channel=self.channel)


class NullNotifier:
    """Drops every notification"""

    channel = "null"

    def notify_status_change(
        self,
        project_id: str,
        from_status: str,
        to_status: str,
        actor_id: str | None,
    ) -> NotificationResult:
        return NotificationResult(delivered=False, channel=self.channel, detail="disabled")

    def notify_alert(self, alert: Alert) -> NotificationResult:
        return NotificationResult(delivered=False, channel=self.channel, detail="disabled")
