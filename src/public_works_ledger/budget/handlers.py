"""
Budget Module Handlers - Expenses, budget lines and budget versions

Every expense write follows the same pattern:
1. Validate input (nothing is written on rejection)
2. Write the expense and re-aggregate the line in one store transaction
3. Publish the matching domain event
4. Evaluate alerts, best-effort: a failure here is logged and counted but
   never undoes the committed write
"""

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from public_works_ledger.alerts.engine import AlertEngine
from public_works_ledger.alerts.models import Alert
from public_works_ledger.budget.commands import UpdateBudgetLine, UpdateExpense
from public_works_ledger.budget.invariants import (
    compute_executed_amount,
    validate_assigned_amount,
    validate_expense_amount,
    validate_required_text,
)
from public_works_ledger.budget.models import Budget, BudgetLine, Expense
from public_works_ledger.budget.storage import DocumentStorage, expense_document_path
from public_works_ledger.kernel import ids
from public_works_ledger.kernel.bus import EventBus
from public_works_ledger.kernel.commands import build_command
from public_works_ledger.kernel.errors import (
    BudgetLineNotFound,
    BudgetNotFound,
    ExpenseNotFound,
    InvalidInput,
    ProjectNotFound,
    ProjectTerminal,
)
from public_works_ledger.kernel.events import (
    DomainEvent,
    ExpenseDeleted,
    ExpenseRecorded,
    ExpenseUpdated,
)
from public_works_ledger.kernel.ids import generate_id
from public_works_ledger.kernel.ledger_store import SQLiteLedgerStore
from public_works_ledger.kernel.logging import LogOperation, get_logger
from public_works_ledger.kernel.metrics import (
    alert_evaluation_failures_total,
    budget_versions_created_total,
    expenses_mutated_total,
    line_recomputations_total,
    track_operation,
)
from public_works_ledger.kernel.policy import LedgerPolicy
from public_works_ledger.kernel.time import TimeProvider, parse_date
from public_works_ledger.lifecycle.models import Project, ProjectStatus

logger = get_logger(__name__)


class ExpenseResult(BaseModel):
    """Outcome of an expense write"""

    expense: Expense
    line: BudgetLine
    executed_amount: Decimal
    alerts: list[Alert] = Field(default_factory=list)


class ExpenseListing(BaseModel):
    """Expenses of a line, newest expense date first, with their sum"""

    line: BudgetLine
    expenses: list[Expense]
    total: Decimal


class BudgetLedger:
    """
    Owns budgets, lines and expenses

    A line's executed amount is only ever written by re-aggregation from
    its full expense set, inside the transaction of the expense write.
    """

    def __init__(
        self,
        store: SQLiteLedgerStore,
        alerts: AlertEngine,
        time_provider: TimeProvider,
        policy: LedgerPolicy,
        bus: EventBus | None = None,
    ) -> None:
        """
        Initialize handlers with dependencies

        Args:
            store: Ledger persistence
            alerts: Evaluates completion alerts after writes
            time_provider: For timestamps (injectable for testing)
            policy: Completion threshold and alert parameters
            bus: Receives expense events after each committed write
        """
        self.store = store
        self.alerts = alerts
        self.time_provider = time_provider
        self.policy = policy
        self.bus = bus

    # ------------------------------------------------------------------
    # Expenses
    # ------------------------------------------------------------------

    @track_operation("record_expense")
    def record_expense(
        self,
        line_id: str,
        amount: Any,
        description: str,
        expense_date: Any,
        actor_id: str,
        *,
        document_ref: str | None = None,
        receipt_type: str | None = None,
        receipt_number: str | None = None,
    ) -> ExpenseResult:
        """
        Record an expense against a budget line

        Future expense dates are accepted; only parseability is checked.

        Args:
            line_id: Line to charge
            amount: Strictly positive amount (Decimal, int or numeric string)
            description: Free text
            expense_date: date, datetime or ISO string
            actor_id: Who records the expense
            document_ref: Reference returned by the document storage
            receipt_type: Kind of receipt (invoice, ticket, ...)
            receipt_number: Receipt number as printed

        Returns:
            The expense, the line's new executed amount and any alerts raised

        Raises:
            InvalidInput: Non-positive or non-numeric amount, unparseable date
            BudgetLineNotFound: If the line doesn't exist
            ProjectTerminal: If the owning project is SETTLED
        """
        value = validate_expense_amount(amount)
        spent_on = parse_date(expense_date, "expense_date")

        with LogOperation(
            logger, "record_expense", line_id=line_id, actor_id=actor_id, amount=str(value)
        ):
            now = self.time_provider.now()
            expense = Expense(
                expense_id=generate_id(ids.EXPENSE),
                line_id=line_id,
                amount=value,
                description=(description or "").strip(),
                expense_date=spent_on,
                document_ref=document_ref,
                receipt_type=receipt_type,
                receipt_number=receipt_number,
                created_by=actor_id,
                created_at=now,
                updated_at=now,
            )
            line = self.store.insert_expense(expense)
            expenses_mutated_total.labels(operation="record").inc()
            line_recomputations_total.inc()

        self._publish(
            ExpenseRecorded(
                event_id=generate_id(),
                occurred_at=now,
                actor_id=actor_id,
                expense_id=expense.expense_id,
                line_id=line_id,
                amount=value,
                executed_amount=line.executed_amount,
            )
        )
        return ExpenseResult(
            expense=expense,
            line=line,
            executed_amount=line.executed_amount,
            alerts=self._evaluate_alerts(line),
        )

    @track_operation("update_expense")
    def update_expense(
        self,
        expense_id: str,
        actor_id: str,
        **changes: Any,
    ) -> ExpenseResult:
        """
        Edit an expense and re-aggregate its line

        Accepted keyword arguments: amount, description, expense_date,
        document_ref, receipt_type, receipt_number. Unset or None values are
        left unchanged.

        Raises:
            ExpenseNotFound: If the expense doesn't exist
            InvalidInput: On invalid new values or unknown fields
            ProjectTerminal: If the owning project is SETTLED
        """
        unknown = set(changes) - set(UpdateExpense.model_fields)
        if unknown:
            raise InvalidInput(sorted(unknown)[0], "is not an editable expense field")
        fields = build_command(UpdateExpense, changes).changes()

        current = self.store.get_expense(expense_id)
        if current is None:
            raise ExpenseNotFound(expense_id)

        if "amount" in fields:
            fields["amount"] = validate_expense_amount(fields["amount"])
        if "expense_date" in fields:
            fields["expense_date"] = parse_date(fields["expense_date"], "expense_date")
        if "description" in fields:
            fields["description"] = fields["description"].strip()

        with LogOperation(
            logger, "update_expense", expense_id=expense_id, actor_id=actor_id, fields=sorted(fields)
        ):
            now = self.time_provider.now()
            updated = current.model_copy(update={**fields, "updated_at": now})
            line = self.store.update_expense(updated)
            expenses_mutated_total.labels(operation="update").inc()
            line_recomputations_total.inc()

        self._publish(
            ExpenseUpdated(
                event_id=generate_id(),
                occurred_at=now,
                actor_id=actor_id,
                expense_id=expense_id,
                line_id=line.line_id,
                amount=updated.amount,
                executed_amount=line.executed_amount,
            )
        )
        return ExpenseResult(
            expense=updated,
            line=line,
            executed_amount=line.executed_amount,
            alerts=self._evaluate_alerts(line),
        )

    @track_operation("delete_expense")
    def delete_expense(self, expense_id: str, actor_id: str) -> BudgetLine:
        """
        Delete an expense and re-aggregate its line

        Returns:
            The line with its reduced executed amount

        Raises:
            ExpenseNotFound: If the expense doesn't exist
            ProjectTerminal: If the owning project is SETTLED
        """
        with LogOperation(logger, "delete_expense", expense_id=expense_id, actor_id=actor_id):
            line = self.store.delete_expense(expense_id)
            expenses_mutated_total.labels(operation="delete").inc()
            line_recomputations_total.inc()

        self._publish(
            ExpenseDeleted(
                event_id=generate_id(),
                occurred_at=self.time_provider.now(),
                actor_id=actor_id,
                expense_id=expense_id,
                line_id=line.line_id,
                executed_amount=line.executed_amount,
            )
        )
        return line

    def attach_document(
        self,
        expense_id: str,
        content: bytes,
        filename: str,
        storage: DocumentStorage,
        actor_id: str,
    ) -> Expense:
        """
        Store a supporting document and keep its reference on the expense

        Raises:
            ExpenseNotFound: If the expense doesn't exist
            ProjectTerminal: If the owning project is SETTLED
        """
        expense = self.store.get_expense(expense_id)
        if expense is None:
            raise ExpenseNotFound(expense_id)
        owner = self.store.get_line_owner(expense.line_id)
        if owner is None:
            raise BudgetLineNotFound(expense.line_id)
        _, project = owner
        _require_open(project)

        path = expense_document_path(project.project_id, expense.line_id, expense_id, filename)
        reference = storage.store(content, path)
        logger.info("Expense document stored", expense_id=expense_id, path=path)
        return self.update_expense(expense_id, actor_id, document_ref=reference).expense

    def list_expenses(self, line_id: str) -> ExpenseListing:
        """
        Raises:
            BudgetLineNotFound: If the line doesn't exist
        """
        line = self.get_line(line_id)
        expenses = self.store.list_expenses(line_id)
        return ExpenseListing(
            line=line, expenses=expenses, total=compute_executed_amount(expenses)
        )

    def get_expense(self, expense_id: str) -> Expense:
        expense = self.store.get_expense(expense_id)
        if expense is None:
            raise ExpenseNotFound(expense_id)
        return expense

    # ------------------------------------------------------------------
    # Budget structure
    # ------------------------------------------------------------------

    @track_operation("add_line")
    def add_line(
        self,
        project_id: str,
        name: str,
        assigned_amount: Any,
        actor_id: str,
    ) -> BudgetLine:
        """
        Add a line to the project's ACTIVE budget

        If the project has no ACTIVE budget, a new version totalling the
        project's initial budget amount is created for the line.

        Raises:
            InvalidInput: Blank name, negative or non-numeric amount
            ProjectNotFound: If the project doesn't exist
            ProjectTerminal: If the project is SETTLED
        """
        line_name = validate_required_text(name, "name")
        assigned = validate_assigned_amount(assigned_amount)

        with LogOperation(logger, "add_line", project_id=project_id, actor_id=actor_id):
            budget, line = self.store.add_line(
                project_id,
                BudgetLine(
                    line_id=generate_id(ids.LINE),
                    budget_id="",
                    name=line_name,
                    assigned_amount=assigned,
                ),
                fallback_budget_id=generate_id(ids.BUDGET),
                responsible_id=actor_id,
                created_at=self.time_provider.now(),
            )
            logger.info("Budget line added", line_id=line.line_id, budget_id=budget.budget_id)
            return line

    @track_operation("update_line")
    def update_line(
        self,
        line_id: str,
        actor_id: str,
        *,
        name: str | None = None,
        assigned_amount: Any = None,
    ) -> BudgetLine:
        """
        Rename a line or change its assigned amount

        A new assigned amount re-runs alert evaluation: lowering it can
        complete the line.

        Raises:
            BudgetLineNotFound: If the line doesn't exist
            InvalidInput: Blank name, negative or non-numeric amount
            ProjectTerminal: If the owning project is SETTLED
        """
        command = build_command(
            UpdateBudgetLine, {"name": name, "assigned_amount": assigned_amount}
        )
        fields = command.changes()
        if "name" in fields:
            fields["name"] = validate_required_text(fields["name"], "name")
        if "assigned_amount" in fields:
            fields["assigned_amount"] = validate_assigned_amount(fields["assigned_amount"])

        self._require_open_line(line_id)
        if not fields:
            return self.get_line(line_id)

        with LogOperation(
            logger, "update_line", line_id=line_id, actor_id=actor_id, fields=sorted(fields)
        ):
            line = self.store.update_line(line_id, **fields)

        if "assigned_amount" in fields:
            self._evaluate_alerts(line)
        return line

    @track_operation("remove_line")
    def remove_line(self, line_id: str, actor_id: str) -> None:
        """
        Remove a line that has no expenses

        Raises:
            BudgetLineNotFound: If the line doesn't exist
            BudgetLineNotEmpty: If the line has expenses
            ProjectTerminal: If the owning project is SETTLED
        """
        budget = self._require_open_line(line_id)
        with LogOperation(logger, "remove_line", line_id=line_id, actor_id=actor_id):
            self.store.delete_line(line_id)

        # The removed line may have been the last incomplete one
        self._evaluate_budget(budget)

    @track_operation("create_budget_version")
    def create_budget_version(
        self, project_id: str, total_amount: Any, actor_id: str
    ) -> Budget:
        """
        Create the next budget version and make it the only ACTIVE one

        The previous ACTIVE version becomes SUPERSEDED in the same
        transaction. Lines are not carried over.

        Raises:
            InvalidInput: Negative or non-numeric total
            ProjectNotFound: If the project doesn't exist
            ProjectTerminal: If the project is SETTLED
        """
        total = validate_assigned_amount(total_amount, "total_amount")
        project = self.store.get_project(project_id)
        if project is None:
            raise ProjectNotFound(project_id)
        _require_open(project)

        with LogOperation(logger, "create_budget_version", project_id=project_id, actor_id=actor_id):
            budget = self.store.create_budget_version(
                generate_id(ids.BUDGET),
                project_id,
                total,
                actor_id,
                self.time_provider.now(),
            )
            budget_versions_created_total.inc()
            logger.info(
                "Budget version created",
                project_id=project_id,
                budget_id=budget.budget_id,
                version=budget.version,
            )
            return budget

    def recompute_line(self, line_id: str) -> BudgetLine:
        """
        Re-derive a line's executed amount from its expenses

        Idempotent; used to repair a line whose cache drifted.

        Raises:
            BudgetLineNotFound: If the line doesn't exist
        """
        before = self.get_line(line_id)
        line = self.store.recompute_line(line_id)
        line_recomputations_total.inc()
        if line.executed_amount != before.executed_amount:
            logger.warning(
                "Executed amount corrected by recomputation",
                line_id=line_id,
                cached=str(before.executed_amount),
                derived=str(line.executed_amount),
            )
            self._evaluate_alerts(line)
        return line

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_line(self, line_id: str) -> BudgetLine:
        line = self.store.get_line(line_id)
        if line is None:
            raise BudgetLineNotFound(line_id)
        return line

    def get_active_budget(self, project_id: str) -> Budget | None:
        """
        Raises:
            ProjectNotFound: If the project doesn't exist
        """
        self._require_project(project_id)
        return self.store.get_active_budget(project_id)

    def list_budgets(self, project_id: str) -> list[Budget]:
        """All versions of a project's budget, oldest first"""
        self._require_project(project_id)
        return self.store.list_budgets(project_id)

    def list_lines(self, project_id: str, budget_id: str | None = None) -> list[BudgetLine]:
        """
        Lines of `budget_id`, or of the project's ACTIVE budget when omitted

        Raises:
            ProjectNotFound: If the project doesn't exist
            BudgetNotFound: If the budget doesn't exist or belongs to another project
        """
        self._require_project(project_id)
        if budget_id is None:
            budget = self.store.get_active_budget(project_id)
            if budget is None:
                return []
        else:
            budget = self.store.get_budget(budget_id)
            if budget is None or budget.project_id != project_id:
                raise BudgetNotFound(budget_id)
        return self.store.list_lines(budget.budget_id)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _evaluate_alerts(self, line: BudgetLine) -> list[Alert]:
        """Run alert evaluation after a committed write; never raises"""
        try:
            return self.alerts.check_line_complete(line)
        except Exception as e:
            alert_evaluation_failures_total.inc()
            logger.error(
                "Alert evaluation failed after committed write",
                line_id=line.line_id,
                error=str(e),
                exc_info=True,
            )
            return []

    def _evaluate_budget(self, budget: Budget) -> Alert | None:
        """Re-check project completion after a line was removed; never raises"""
        try:
            return self.alerts.check_budget_complete(budget)
        except Exception as e:
            alert_evaluation_failures_total.inc()
            logger.error(
                "Alert evaluation failed after committed write",
                budget_id=budget.budget_id,
                error=str(e),
                exc_info=True,
            )
            return None

    def _publish(self, event: DomainEvent) -> None:
        if self.bus is not None:
            self.bus.publish(event)

    def _require_project(self, project_id: str) -> Project:
        project = self.store.get_project(project_id)
        if project is None:
            raise ProjectNotFound(project_id)
        return project

    def _require_open_line(self, line_id: str) -> Budget:
        owner = self.store.get_line_owner(line_id)
        if owner is None:
            raise BudgetLineNotFound(line_id)
        budget, project = owner
        _require_open(project)
        return budget


def _require_open(project: Project) -> None:
    if project.status == ProjectStatus.SETTLED:
        raise ProjectTerminal(project.project_id, project.status)
