"""
Alert Engine - Persists derived alerts exactly once per active condition

The engine evaluates triggers against fresh ledger state and stores any
candidate unless an ACTIVE alert with the same (type, correlation key)
exists. The lookup and the insert share one transaction, and a partial
unique index backs it up, so concurrent evaluations cannot both insert.

Alerts are never retracted automatically: an alert stays ACTIVE until
someone acknowledges it, even if the condition later stops holding.
"""

from public_works_ledger.alerts.models import (
    Alert,
    AlertSeverity,
    AlertState,
    AlertType,
)
from public_works_ledger.alerts.triggers import (
    evaluate_line_complete,
    evaluate_project_completable,
)
from public_works_ledger.budget.models import Budget, BudgetLine
from public_works_ledger.kernel import ids
from public_works_ledger.kernel.bus import EventBus
from public_works_ledger.kernel.errors import (
    AlertNotFound,
    BudgetLineNotFound,
    BudgetNotFound,
    InvalidInput,
    ProjectNotFound,
)
from public_works_ledger.kernel.events import AlertIssued
from public_works_ledger.kernel.ids import generate_id
from public_works_ledger.kernel.ledger_store import SQLiteLedgerStore
from public_works_ledger.kernel.logging import LogOperation, get_logger
from public_works_ledger.kernel.metrics import alerts_issued_total, alerts_suppressed_total
from public_works_ledger.kernel.policy import LedgerPolicy
from public_works_ledger.kernel.time import TimeProvider

logger = get_logger(__name__)


class AlertEngine:
    """
    Evaluates completion conditions and manages alert state

    `check_line_complete` cascades into `check_budget_complete`, so one
    expense can raise both a LINE_COMPLETE and a PROJECT_COMPLETABLE alert.
    """

    def __init__(
        self,
        store: SQLiteLedgerStore,
        time_provider: TimeProvider,
        policy: LedgerPolicy,
        bus: EventBus | None = None,
    ) -> None:
        self.store = store
        self.time_provider = time_provider
        self.policy = policy
        self.bus = bus

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def check_line_complete(self, line: BudgetLine | str) -> list[Alert]:
        """
        Raise LINE_COMPLETE for a complete line, then re-check its budget

        Args:
            line: The line (with current executed amount) or its id

        Returns:
            Alerts created by this call (empty when nothing new was raised)

        Raises:
            BudgetLineNotFound: If a line id is given and does not exist
        """
        if isinstance(line, str):
            line_id = line
            line = self.store.get_line(line_id)
            if line is None:
                raise BudgetLineNotFound(line_id)

        owner = self.store.get_line_owner(line.line_id)
        if owner is None:
            raise BudgetLineNotFound(line.line_id)
        budget, project = owner

        candidate = evaluate_line_complete(
            line, project.name, self.policy, self.time_provider.now()
        )
        if candidate is None:
            return []

        created: list[Alert] = []
        alert = self._persist(candidate)
        if alert is not None:
            created.append(alert)

        project_alert = self.check_budget_complete(budget)
        if project_alert is not None:
            created.append(project_alert)
        return created

    def check_budget_complete(self, budget: Budget | str) -> Alert | None:
        """
        Raise PROJECT_COMPLETABLE when every line of the ACTIVE budget is complete

        Returns:
            The alert created by this call, or None

        Raises:
            BudgetNotFound: If a budget id is given and does not exist
        """
        if isinstance(budget, str):
            budget_id = budget
            budget = self.store.get_budget(budget_id)
            if budget is None:
                raise BudgetNotFound(budget_id)

        project = self.store.get_project(budget.project_id)
        if project is None:
            raise ProjectNotFound(budget.project_id)

        lines = self.store.list_lines(budget.budget_id)
        candidate = evaluate_project_completable(
            budget, lines, project.name, self.policy, self.time_provider.now()
        )
        if candidate is None:
            return None
        return self._persist(candidate)

    # ------------------------------------------------------------------
    # Manual alerts and acknowledgement
    # ------------------------------------------------------------------

    def raise_generic(
        self,
        description: str,
        severity: AlertSeverity | str = AlertSeverity.MEDIUM,
        *,
        correlation_key: str | None = None,
        recipient_role: str | None = None,
    ) -> Alert:
        """
        Raise a GENERIC alert on behalf of a caller

        With a correlation key the call is idempotent like derived alerts;
        without one every call creates a new alert.

        Returns:
            The ACTIVE alert for the key (new or pre-existing)

        Raises:
            InvalidInput: Blank description or unknown severity
        """
        if not description or not description.strip():
            raise InvalidInput("description", "must not be blank")
        try:
            level = AlertSeverity(severity)
        except ValueError:
            raise InvalidInput("severity", f"'{severity}' is not a known severity") from None

        alert_id = generate_id(ids.ALERT)
        key = (correlation_key or "").strip() or f"generic:{alert_id}"
        candidate = Alert(
            alert_id=alert_id,
            alert_type=AlertType.GENERIC,
            correlation_key=key,
            description=f"{description.strip()} [{key}]",
            severity=level,
            recipient_role=recipient_role or self.policy.alert_recipient_role,
            created_at=self.time_provider.now(),
        )
        created = self._persist(candidate)
        if created is not None:
            return created
        existing = self.store.find_active_alert(AlertType.GENERIC, key)
        return existing if existing is not None else candidate

    def acknowledge(self, alert_id: str, actor_id: str) -> Alert:
        """
        Mark an alert ACKNOWLEDGED (no-op if it already is)

        Raises:
            AlertNotFound: If the alert does not exist
        """
        with LogOperation(logger, "acknowledge_alert", alert_id=alert_id, actor_id=actor_id):
            return self.store.acknowledge_alert(alert_id, actor_id, self.time_provider.now())

    def acknowledge_all(self, actor_id: str, alert_type: AlertType | str | None = None) -> int:
        """Acknowledge every ACTIVE alert, optionally only of one type"""
        kind = AlertType(alert_type) if alert_type else None
        count = self.store.acknowledge_all(actor_id, self.time_provider.now(), kind)
        logger.info(
            "Alerts acknowledged",
            count=count,
            alert_type=kind.value if kind else None,
        )
        return count

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, alert_id: str) -> Alert:
        alert = self.store.get_alert(alert_id)
        if alert is None:
            raise AlertNotFound(alert_id)
        return alert

    def list_alerts(
        self,
        state: AlertState | str | None = None,
        severity: AlertSeverity | str | None = None,
        alert_type: AlertType | str | None = None,
        limit: int = 200,
    ) -> list[Alert]:
        """Alerts newest first"""
        return self.store.list_alerts(
            state=AlertState(state) if state else None,
            severity=AlertSeverity(severity) if severity else None,
            alert_type=AlertType(alert_type) if alert_type else None,
            limit=limit,
        )

    def _persist(self, candidate: Alert) -> Alert | None:
        """Store a candidate unless an ACTIVE duplicate exists; publish if new"""
        alert, created = self.store.insert_alert_if_absent(candidate)
        if not created:
            alerts_suppressed_total.labels(alert_type=candidate.alert_type.value).inc()
            logger.debug(
                "Alert already active, not raised again",
                alert_type=candidate.alert_type.value,
                correlation_key=candidate.correlation_key,
                alert_id=alert.alert_id,
            )
            return None

        alerts_issued_total.labels(
            alert_type=alert.alert_type.value, severity=alert.severity.value
        ).inc()
        logger.info(
            "Alert issued",
            alert_id=alert.alert_id,
            alert_type=alert.alert_type.value,
            correlation_key=alert.correlation_key,
            severity=alert.severity.value,
        )
        if self.bus is not None:
            self.bus.publish(
                AlertIssued(
                    event_id=generate_id(),
                    occurred_at=alert.created_at,
                    actor_id=None,
                    alert_id=alert.alert_id,
                    alert_type=alert.alert_type.value,
                    correlation_key=alert.correlation_key,
                    severity=alert.severity.value,
                    recipient_role=alert.recipient_role,
                    description=alert.description,
                )
            )
        return alert

    # Defined last so `list` still names the builtin in the annotations above
    list = list_alerts
