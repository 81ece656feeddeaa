"""
Notification Dispatcher - Fire-and-forget delivery on a worker pool

The dispatcher subscribes to the event bus and hands each notification to
a thread pool, so a status change returns as soon as its transaction
commits. Each delivery is retried with backoff until it succeeds, runs out
of attempts or exceeds its time budget; a final failure is logged and
counted, never raised.
"""

import contextvars
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable

from public_works_ledger.alerts.models import Alert, AlertSeverity, AlertType
from public_works_ledger.kernel.bus import EventBus
from public_works_ledger.kernel.events import AlertIssued, DomainEvent, ProjectStatusChanged
from public_works_ledger.kernel.logging import get_logger
from public_works_ledger.kernel.metrics import notifications_failed_total, notifications_sent_total
from public_works_ledger.kernel.policy import LedgerPolicy
from public_works_ledger.kernel.retry import retry_notification
from public_works_ledger.notify.notifier import NotificationResult, Notifier, NullNotifier

logger = get_logger(__name__)


class NotificationDispatcher:
    """
    Delivers notifications for committed changes without blocking the caller

    A delivery that hangs is not interrupted; it occupies one worker until
    it returns, and the time budget stops further retries.
    """

    def __init__(
        self,
        notifier: Notifier,
        policy: LedgerPolicy,
        *,
        min_wait_ms: int = 200,
        max_wait_ms: int = 2000,
    ) -> None:
        """
        Args:
            notifier: Delivery backend
            policy: Switches, time budget, attempts and pool size
            min_wait_ms: Minimum backoff between attempts
            max_wait_ms: Maximum backoff between attempts
        """
        self.notifier = notifier
        self.policy = policy
        self.min_wait_ms = min_wait_ms
        self.max_wait_ms = max_wait_ms
        self._executor = ThreadPoolExecutor(
            max_workers=policy.notification_workers,
            thread_name_prefix="pwl-notify",
        )
        self._pending: set[Future[Any]] = set()
        self._lock = threading.Lock()

    def attach(self, bus: EventBus) -> None:
        """Subscribe to the events that produce notifications"""
        bus.subscribe("ProjectStatusChanged", self.on_event)
        bus.subscribe("AlertIssued", self.on_event)

    def on_event(self, event: DomainEvent) -> None:
        if not self.policy.notifications_enabled:
            return

        if isinstance(event, ProjectStatusChanged) and self.policy.notify_on_status_change:
            self._submit(
                "status_change",
                self.notifier.notify_status_change,
                event.project_id,
                event.from_status,
                event.to_status,
                event.actor_id,
            )
        elif isinstance(event, AlertIssued) and self.policy.notify_on_alert:
            alert = Alert(
                alert_id=event.alert_id,
                alert_type=AlertType(event.alert_type),
                correlation_key=event.correlation_key,
                description=event.description,
                severity=AlertSeverity(event.severity),
                recipient_role=event.recipient_role,
                created_at=event.occurred_at,
            )
            self._submit("alert", self.notifier.notify_alert, alert)

    def flush(self, timeout: float | None = None) -> bool:
        """
        Wait for in-flight deliveries

        Returns:
            True if everything finished within `timeout`
        """
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _submit(self, kind: str, send: Callable[..., NotificationResult], *args: Any) -> None:
        # Run in a copy of the caller's context so logs keep its correlation id
        context = contextvars.copy_context()
        future = self._executor.submit(context.run, self._deliver, kind, send, *args)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future[Any]) -> None:
        with self._lock:
            self._pending.discard(future)

    def _deliver(
        self, kind: str, send: Callable[..., NotificationResult], *args: Any
    ) -> NotificationResult | None:
        deliver = retry_notification(
            timeout_seconds=self.policy.notification_timeout_seconds,
            max_attempts=self.policy.notification_max_attempts,
            min_wait_ms=self.min_wait_ms,
            max_wait_ms=self.max_wait_ms,
        )(send)
        try:
            result = deliver(*args)
        except Exception as e:
            notifications_failed_total.labels(kind=kind).inc()
            logger.error(
                "Notification delivery failed",
                kind=kind,
                error=str(e),
                exc_info=True,
            )
            return None

        if result is not None and result.delivered:
            notifications_sent_total.labels(kind=kind).inc()
        elif result is not None and result.channel == NullNotifier.channel:
            logger.debug("Notification discarded", kind=kind, channel=result.channel)
        else:
            notifications_failed_total.labels(kind=kind).inc()
            logger.warning(
                "Notification not delivered",
                kind=kind,
                channel=getattr(result, "channel", None),
                detail=getattr(result, "detail", None),
            )
        return result
