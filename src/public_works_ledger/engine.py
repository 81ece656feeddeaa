"""
WorksEngine - Main façade

The primary interface for embedding the ledger: one object wiring the store,
the lifecycle and budget handlers, the alert engine, the event bus and the
notification dispatcher.

Example:
    >>> from public_works_ledger import WorksEngine
    >>> engine = WorksEngine("works.db")
    >>> project = engine.create_project(
    ...     {"name": "Calle 5", "location": "Centro",
    ...      "initial_budget_amount": "1000", "planned_start": "2025-02-01"},
    ...     actor_id="ana",
    ... )
    >>> line = engine.add_line(project.project_id, "Earthworks", "1000", actor_id="ana")
    >>> engine.change_status(project.project_id, "IN_EXECUTION", actor_id="ana")
    >>> result = engine.record_expense(line.line_id, "1000", "Excavation", "2025-03-01", "ana")
    >>> [a.alert_type for a in result.alerts]
    [<AlertType.LINE_COMPLETE: 'LINE_COMPLETE'>, <AlertType.PROJECT_COMPLETABLE: 'PROJECT_COMPLETABLE'>]
"""

from pathlib import Path
from typing import Any

from public_works_ledger.alerts.engine import AlertEngine
from public_works_ledger.alerts.models import Alert, AlertType
from public_works_ledger.budget.handlers import BudgetLedger, ExpenseListing, ExpenseResult
from public_works_ledger.budget.models import Budget, BudgetLine
from public_works_ledger.kernel.bus import EventBus
from public_works_ledger.kernel.ledger_store import SQLiteLedgerStore
from public_works_ledger.kernel.policy import LedgerPolicy
from public_works_ledger.kernel.time import RealTimeProvider, TimeProvider
from public_works_ledger.lifecycle.handlers import ProjectLifecycle
from public_works_ledger.lifecycle.models import (
    Project,
    ProjectProgress,
    ProjectStatus,
    StatusHistoryEntry,
)
from public_works_ledger.notify.dispatcher import NotificationDispatcher
from public_works_ledger.notify.notifier import LoggingNotifier, Notifier


class WorksEngine:
    """
    Public Works Ledger façade

    Provides a unified API for:
    - Project lifecycle (create, edit, status changes, history)
    - Budget versions, lines and expenses
    - Derived alerts and their acknowledgement
    - Notification of status changes and alerts
    """

    def __init__(
        self,
        sqlite_path: str | Path,
        policy: LedgerPolicy | None = None,
        time_provider: TimeProvider | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        """
        Initialize the engine

        Args:
            sqlite_path: Path to SQLite database (created if missing)
            policy: Ledger policy (uses defaults if None)
            time_provider: Time provider (uses real time if None)
            notifier: Notification backend (logs notifications if None)
        """
        self.sqlite_path = Path(sqlite_path)
        self.policy = policy or LedgerPolicy()
        self.time_provider = time_provider or RealTimeProvider()

        self.store = SQLiteLedgerStore(self.sqlite_path, timeout=self.policy.db_timeout_seconds)
        self.bus = EventBus()
        self.dispatcher = NotificationDispatcher(notifier or LoggingNotifier(), self.policy)
        self.dispatcher.attach(self.bus)

        self.alerts = AlertEngine(self.store, self.time_provider, self.policy, self.bus)
        self.lifecycle = ProjectLifecycle(self.store, self.time_provider, self.policy, self.bus)
        self.ledger = BudgetLedger(
            self.store, self.alerts, self.time_provider, self.policy, self.bus
        )

    def close(self, wait: bool = True) -> None:
        """Stop the notification workers (waiting for in-flight deliveries by default)"""
        self.dispatcher.shutdown(wait=wait)

    def __enter__(self) -> "WorksEngine":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # Projects

    def create_project(self, project_data: dict[str, Any], actor_id: str) -> Project:
        return self.lifecycle.create(project_data, actor_id)

    def get_project(self, project_id: str) -> Project:
        return self.lifecycle.get(project_id)

    def list_projects(self, status: ProjectStatus | str | None = None) -> list[Project]:
        return self.lifecycle.list_projects(status)

    def change_status(
        self,
        project_id: str,
        requested_status: ProjectStatus | str,
        actor_id: str,
        justification: str | None = None,
    ) -> Project:
        return self.lifecycle.change_status(project_id, requested_status, actor_id, justification)

    def update_project(self, project_id: str, changes: dict[str, Any], actor_id: str) -> Project:
        return self.lifecycle.update_details(project_id, changes, actor_id)

    def delete_project(self, project_id: str, actor_id: str) -> None:
        self.lifecycle.delete(project_id, actor_id)

    def history(self, project_id: str) -> list[StatusHistoryEntry]:
        return self.lifecycle.history(project_id)

    def progress(self, project_id: str) -> ProjectProgress:
        return self.lifecycle.progress(project_id)

    # Budgets and lines

    def create_budget_version(self, project_id: str, total_amount: Any, actor_id: str) -> Budget:
        return self.ledger.create_budget_version(project_id, total_amount, actor_id)

    def get_active_budget(self, project_id: str) -> Budget | None:
        return self.ledger.get_active_budget(project_id)

    def list_budgets(self, project_id: str) -> list[Budget]:
        return self.ledger.list_budgets(project_id)

    def add_line(self, project_id: str, name: str, assigned_amount: Any, actor_id: str) -> BudgetLine:
        return self.ledger.add_line(project_id, name, assigned_amount, actor_id)

    def list_lines(self, project_id: str, budget_id: str | None = None) -> list[BudgetLine]:
        return self.ledger.list_lines(project_id, budget_id)

    # Expenses

    def record_expense(
        self,
        line_id: str,
        amount: Any,
        description: str,
        expense_date: Any,
        actor_id: str,
        **details: Any,
    ) -> ExpenseResult:
        return self.ledger.record_expense(
            line_id, amount, description, expense_date, actor_id, **details
        )

    def list_expenses(self, line_id: str) -> ExpenseListing:
        return self.ledger.list_expenses(line_id)

    # Alerts

    def list_alerts(self, **filters: Any) -> list[Alert]:
        return self.alerts.list_alerts(**filters)

    def acknowledge_alert(self, alert_id: str, actor_id: str) -> Alert:
        return self.alerts.acknowledge(alert_id, actor_id)

    def acknowledge_all_alerts(self, actor_id: str, alert_type: AlertType | str | None = None) -> int:
        return self.alerts.acknowledge_all(actor_id, alert_type)

    # Health

    def stats(self) -> dict[str, int]:
        """Row counts of the ledger tables"""
        return self.store.stats()
