"""
SQLite Ledger Store - Transactional persistence for projects, budgets and alerts

The store owns every write that must be atomic:
- project creation together with its first budget and history entry
- status transitions (history append + compare-and-swap on version)
- expense writes together with re-aggregation of the line's executed amount
- alert insertion guarded by a lookup in the same transaction

Every mutation runs in a single `BEGIN IMMEDIATE` transaction, so the write
lock is taken before anything is read. Amounts are stored as canonical
decimal strings and summed in Python; SQLite never does money arithmetic.
"""

import sqlite3
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator

from public_works_ledger.alerts.models import Alert, AlertSeverity, AlertState, AlertType
from public_works_ledger.budget.models import Budget, BudgetLine, BudgetState, Expense
from public_works_ledger.kernel.errors import (
    ActiveBudgetConflict,
    AlertNotFound,
    BudgetLineNotEmpty,
    BudgetLineNotFound,
    ConcurrentModification,
    ExpenseNotFound,
    ProjectNotFound,
    ProjectTerminal,
    StoreError,
)
from public_works_ledger.kernel.logging import get_logger
from public_works_ledger.kernel.retry import retry_on_sqlite_lock
from public_works_ledger.lifecycle.models import Project, ProjectStatus, StatusHistoryEntry

logger = get_logger(__name__)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS projects (
        project_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        location TEXT NOT NULL,
        initial_budget_amount TEXT NOT NULL,
        planned_start TEXT NOT NULL,
        planned_end TEXT,
        status TEXT NOT NULL,
        responsible_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        version INTEGER NOT NULL,
        reopen_count INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS status_history (
        entry_id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL REFERENCES projects(project_id) ON DELETE CASCADE,
        status TEXT NOT NULL,
        previous_status TEXT,
        actor_id TEXT NOT NULL,
        recorded_at TEXT NOT NULL,
        justification TEXT NOT NULL,
        sequence INTEGER NOT NULL,

        UNIQUE(project_id, sequence)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS budgets (
        budget_id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL REFERENCES projects(project_id) ON DELETE CASCADE,
        version INTEGER NOT NULL,
        total_amount TEXT NOT NULL,
        state TEXT NOT NULL,
        responsible_id TEXT,
        created_at TEXT NOT NULL,

        UNIQUE(project_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS budget_lines (
        line_id TEXT PRIMARY KEY,
        budget_id TEXT NOT NULL REFERENCES budgets(budget_id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        assigned_amount TEXT NOT NULL,
        executed_amount TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS expenses (
        expense_id TEXT PRIMARY KEY,
        line_id TEXT NOT NULL REFERENCES budget_lines(line_id) ON DELETE CASCADE,
        amount TEXT NOT NULL,
        description TEXT NOT NULL,
        expense_date TEXT NOT NULL,
        document_ref TEXT,
        receipt_type TEXT,
        receipt_number TEXT,
        created_by TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS alerts (
        alert_id TEXT PRIMARY KEY,
        alert_type TEXT NOT NULL,
        correlation_key TEXT NOT NULL,
        description TEXT NOT NULL,
        severity TEXT NOT NULL,
        recipient_role TEXT NOT NULL,
        state TEXT NOT NULL,
        created_at TEXT NOT NULL,
        acknowledged_at TEXT,
        acknowledged_by TEXT
    )
    """,
    # At most one ACTIVE budget per project
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_budgets_active "
    "ON budgets(project_id) WHERE state = 'ACTIVE'",
    # At most one ACTIVE alert per condition
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_alerts_active "
    "ON alerts(alert_type, correlation_key) WHERE state = 'ACTIVE'",
    "CREATE INDEX IF NOT EXISTS idx_history_project ON status_history(project_id, sequence)",
    "CREATE INDEX IF NOT EXISTS idx_lines_budget ON budget_lines(budget_id)",
    "CREATE INDEX IF NOT EXISTS idx_expenses_line ON expenses(line_id)",
    "CREATE INDEX IF NOT EXISTS idx_alerts_state ON alerts(state, created_at)",
)


class SQLiteLedgerStore:
    """
    SQLite-based ledger store

    Uses WAL mode for crash safety and concurrent readers, foreign keys with
    cascading deletes for project removal, and partial unique indexes for
    the single-ACTIVE-budget and single-ACTIVE-alert rules.
    """

    def __init__(self, db_path: str | Path, timeout: float = 5.0) -> None:
        """
        Initialize the store, creating the schema if needed

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds a connection waits on a locked database
        """
        self.db_path = Path(db_path)
        self.timeout = timeout
        self._initialize_schema()

    def _initialize_schema(self) -> None:
        """Create tables and indices if they don't exist"""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            for statement in SCHEMA:
                conn.execute(statement)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database connections

        Connections run in autocommit mode; `_transaction` issues its own
        BEGIN/COMMIT so reads outside a transaction never hold a lock.
        """
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block in one IMMEDIATE transaction, rolling back on any error"""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    @retry_on_sqlite_lock()
    def create_project(
        self, project: Project, budget: Budget, entry: StatusHistoryEntry
    ) -> None:
        """
        Insert a project, its first budget version and its creation entry atomically
        """
        with self._transaction() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO projects (
                        project_id, name, location, initial_budget_amount,
                        planned_start, planned_end, status, responsible_id,
                        created_at, updated_at, version, reopen_count
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        project.project_id,
                        project.name,
                        project.location,
                        _money(project.initial_budget_amount),
                        project.planned_start.isoformat(),
                        _iso(project.planned_end),
                        project.status.value,
                        project.responsible_id,
                        project.created_at.isoformat(),
                        project.updated_at.isoformat(),
                        project.version,
                        project.reopen_count,
                    ),
                )
                self._insert_budget(conn, budget)
                self._insert_history(conn, entry)
            except sqlite3.IntegrityError as e:
                raise StoreError(f"Failed to create project: {e}") from e

    def get_project(self, project_id: str) -> Project | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM projects WHERE project_id = ?", (project_id,)
            ).fetchone()
            return self._row_to_project(row) if row else None

    def list_projects(self, status: ProjectStatus | None = None) -> list[Project]:
        """List projects, newest first, optionally filtered by status"""
        with self._connect() as conn:
            if status is not None:
                cursor = conn.execute(
                    "SELECT * FROM projects WHERE status = ? "
                    "ORDER BY created_at DESC, project_id DESC",
                    (ProjectStatus(status).value,),
                )
            else:
                cursor = conn.execute(
                    "SELECT * FROM projects ORDER BY created_at DESC, project_id DESC"
                )
            return [self._row_to_project(row) for row in cursor.fetchall()]

    @retry_on_sqlite_lock()
    def apply_transition(
        self,
        project_id: str,
        expected_version: int,
        entry: StatusHistoryEntry,
        *,
        reopen_count: int,
    ) -> Project:
        """
        Move a project to `entry.status` if nobody else changed it first

        The status update is a compare-and-swap on `version`; the history
        entry takes sequence `expected_version + 1`, which the
        (project_id, sequence) unique constraint also guards.

        Raises:
            ProjectNotFound: If the project no longer exists
            ConcurrentModification: If the stored version is not `expected_version`
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE projects
                SET status = ?, version = version + 1, reopen_count = ?, updated_at = ?
                WHERE project_id = ? AND version = ?
            """,
                (
                    entry.status.value,
                    reopen_count,
                    entry.recorded_at.isoformat(),
                    project_id,
                    expected_version,
                ),
            )
            if cursor.rowcount == 0:
                row = conn.execute(
                    "SELECT version FROM projects WHERE project_id = ?", (project_id,)
                ).fetchone()
                if row is None:
                    raise ProjectNotFound(project_id)
                raise ConcurrentModification(project_id, expected_version, row["version"])

            try:
                self._insert_history(conn, entry)
            except sqlite3.IntegrityError as e:
                if "sequence" in str(e).lower():
                    raise ConcurrentModification(
                        project_id, expected_version, expected_version + 1
                    ) from e
                raise StoreError(f"Failed to append status history: {e}") from e

            row = conn.execute(
                "SELECT * FROM projects WHERE project_id = ?", (project_id,)
            ).fetchone()
            return self._row_to_project(row)

    @retry_on_sqlite_lock()
    def update_project_details(self, project: Project, *, sync_budget_total: bool) -> Project:
        """
        Persist descriptive fields of a project

        Status, version and reopen count are never written here. With
        `sync_budget_total`, the ACTIVE budget's total follows the
        project's initial budget amount.

        Raises:
            ProjectNotFound: If the project does not exist
            ProjectTerminal: If the project was settled meanwhile
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT status FROM projects WHERE project_id = ?", (project.project_id,)
            ).fetchone()
            if row is None:
                raise ProjectNotFound(project.project_id)
            if row["status"] == ProjectStatus.SETTLED.value:
                raise ProjectTerminal(project.project_id, row["status"])

            conn.execute(
                """
                UPDATE projects
                SET name = ?, location = ?, initial_budget_amount = ?,
                    planned_start = ?, planned_end = ?, responsible_id = ?, updated_at = ?
                WHERE project_id = ?
            """,
                (
                    project.name,
                    project.location,
                    _money(project.initial_budget_amount),
                    project.planned_start.isoformat(),
                    _iso(project.planned_end),
                    project.responsible_id,
                    project.updated_at.isoformat(),
                    project.project_id,
                ),
            )
            if sync_budget_total:
                conn.execute(
                    "UPDATE budgets SET total_amount = ? WHERE project_id = ? AND state = ?",
                    (
                        _money(project.initial_budget_amount),
                        project.project_id,
                        BudgetState.ACTIVE.value,
                    ),
                )
            row = conn.execute(
                "SELECT * FROM projects WHERE project_id = ?", (project.project_id,)
            ).fetchone()
            return self._row_to_project(row)

    @retry_on_sqlite_lock()
    def delete_project(self, project_id: str) -> bool:
        """
        Delete a PLANNED project and everything it owns

        Returns:
            False if the project is no longer PLANNED (nothing deleted)
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM projects WHERE project_id = ? AND status = ?",
                (project_id, ProjectStatus.PLANNED.value),
            )
            return cursor.rowcount > 0

    def list_history(self, project_id: str) -> list[StatusHistoryEntry]:
        """Status history of a project in sequence order"""
        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM status_history WHERE project_id = ? ORDER BY sequence ASC",
                (project_id,),
            )
            return [self._row_to_history(row) for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # Budgets
    # ------------------------------------------------------------------

    def get_budget(self, budget_id: str) -> Budget | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM budgets WHERE budget_id = ?", (budget_id,)
            ).fetchone()
            return self._row_to_budget(row) if row else None

    def get_active_budget(self, project_id: str) -> Budget | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM budgets WHERE project_id = ? AND state = ?",
                (project_id, BudgetState.ACTIVE.value),
            ).fetchone()
            return self._row_to_budget(row) if row else None

    def list_budgets(self, project_id: str) -> list[Budget]:
        """All budget versions of a project, oldest first"""
        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM budgets WHERE project_id = ? ORDER BY version ASC",
                (project_id,),
            )
            return [self._row_to_budget(row) for row in cursor.fetchall()]

    @retry_on_sqlite_lock()
    def create_budget_version(
        self,
        budget_id: str,
        project_id: str,
        total_amount: Decimal,
        responsible_id: str | None,
        created_at: datetime,
    ) -> Budget:
        """
        Supersede the ACTIVE budget (if any) and insert the next version as ACTIVE

        Raises:
            ProjectNotFound: If the project does not exist
        """
        with self._transaction() as conn:
            self._require_project(conn, project_id)
            return self._insert_next_version(
                conn, budget_id, project_id, total_amount, responsible_id, created_at
            )

    # ------------------------------------------------------------------
    # Budget lines
    # ------------------------------------------------------------------

    def get_line(self, line_id: str) -> BudgetLine | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM budget_lines WHERE line_id = ?", (line_id,)
            ).fetchone()
            return self._row_to_line(row) if row else None

    def list_lines(self, budget_id: str) -> list[BudgetLine]:
        """Lines of a budget in insertion order"""
        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM budget_lines WHERE budget_id = ? ORDER BY rowid ASC",
                (budget_id,),
            )
            return [self._row_to_line(row) for row in cursor.fetchall()]

    def get_line_owner(self, line_id: str) -> tuple[Budget, Project] | None:
        """Budget and project a line belongs to"""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT budget_id FROM budget_lines WHERE line_id = ?", (line_id,)
            ).fetchone()
            if row is None:
                return None
            budget_row = conn.execute(
                "SELECT * FROM budgets WHERE budget_id = ?", (row["budget_id"],)
            ).fetchone()
            project_row = conn.execute(
                "SELECT * FROM projects WHERE project_id = ?", (budget_row["project_id"],)
            ).fetchone()
            return self._row_to_budget(budget_row), self._row_to_project(project_row)

    @retry_on_sqlite_lock()
    def add_line(
        self,
        project_id: str,
        line: BudgetLine,
        *,
        fallback_budget_id: str,
        responsible_id: str | None,
        created_at: datetime,
    ) -> tuple[Budget, BudgetLine]:
        """
        Add a line to the project's ACTIVE budget

        When the project has no ACTIVE budget, a new version totalling the
        project's initial budget amount is created first, under
        `fallback_budget_id`. `line.budget_id` is ignored.

        Raises:
            ProjectNotFound: If the project does not exist
            ProjectTerminal: If the project is SETTLED
        """
        with self._transaction() as conn:
            project_row = self._require_project(conn, project_id)
            if project_row["status"] == ProjectStatus.SETTLED.value:
                raise ProjectTerminal(project_id, project_row["status"])

            row = conn.execute(
                "SELECT * FROM budgets WHERE project_id = ? AND state = ?",
                (project_id, BudgetState.ACTIVE.value),
            ).fetchone()
            if row is not None:
                budget = self._row_to_budget(row)
            else:
                budget = self._insert_next_version(
                    conn,
                    fallback_budget_id,
                    project_id,
                    Decimal(project_row["initial_budget_amount"]),
                    responsible_id,
                    created_at,
                )

            stored = line.model_copy(update={"budget_id": budget.budget_id})
            conn.execute(
                """
                INSERT INTO budget_lines (line_id, budget_id, name, assigned_amount, executed_amount)
                VALUES (?, ?, ?, ?, ?)
            """,
                (
                    stored.line_id,
                    stored.budget_id,
                    stored.name,
                    _money(stored.assigned_amount),
                    _money(stored.executed_amount),
                ),
            )
            return budget, stored

    @retry_on_sqlite_lock()
    def update_line(
        self,
        line_id: str,
        *,
        name: str | None = None,
        assigned_amount: Decimal | None = None,
    ) -> BudgetLine:
        """
        Rename a line or change its assigned amount

        Raises:
            BudgetLineNotFound: If the line does not exist
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM budget_lines WHERE line_id = ?", (line_id,)
            ).fetchone()
            if row is None:
                raise BudgetLineNotFound(line_id)
            conn.execute(
                "UPDATE budget_lines SET name = ?, assigned_amount = ? WHERE line_id = ?",
                (
                    name if name is not None else row["name"],
                    _money(assigned_amount) if assigned_amount is not None else row["assigned_amount"],
                    line_id,
                ),
            )
            row = conn.execute(
                "SELECT * FROM budget_lines WHERE line_id = ?", (line_id,)
            ).fetchone()
            return self._row_to_line(row)

    @retry_on_sqlite_lock()
    def delete_line(self, line_id: str) -> None:
        """
        Remove a line that owns no expenses

        Raises:
            BudgetLineNotFound: If the line does not exist
            BudgetLineNotEmpty: If any expense references the line
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT line_id FROM budget_lines WHERE line_id = ?", (line_id,)
            ).fetchone()
            if row is None:
                raise BudgetLineNotFound(line_id)
            count = conn.execute(
                "SELECT COUNT(*) FROM expenses WHERE line_id = ?", (line_id,)
            ).fetchone()[0]
            if count:
                raise BudgetLineNotEmpty(line_id, count)
            conn.execute("DELETE FROM budget_lines WHERE line_id = ?", (line_id,))

    @retry_on_sqlite_lock()
    def recompute_line(self, line_id: str) -> BudgetLine:
        """
        Re-derive a line's executed amount from its expenses

        Raises:
            BudgetLineNotFound: If the line does not exist
        """
        with self._transaction() as conn:
            return self._recompute_line(conn, line_id)

    # ------------------------------------------------------------------
    # Expenses
    # ------------------------------------------------------------------

    def get_expense(self, expense_id: str) -> Expense | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM expenses WHERE expense_id = ?", (expense_id,)
            ).fetchone()
            return self._row_to_expense(row) if row else None

    def list_expenses(self, line_id: str) -> list[Expense]:
        """Expenses of a line, newest expense date first"""
        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT * FROM expenses WHERE line_id = ? "
                "ORDER BY expense_date DESC, created_at DESC, expense_id DESC",
                (line_id,),
            )
            return [self._row_to_expense(row) for row in cursor.fetchall()]

    @retry_on_sqlite_lock()
    def insert_expense(self, expense: Expense) -> BudgetLine:
        """
        Insert an expense and re-aggregate its line in the same transaction

        Returns:
            The line with its refreshed executed amount

        Raises:
            BudgetLineNotFound: If the line does not exist
            ProjectTerminal: If the owning project is SETTLED
        """
        with self._transaction() as conn:
            self._require_open_line(conn, expense.line_id)
            conn.execute(
                """
                INSERT INTO expenses (
                    expense_id, line_id, amount, description, expense_date,
                    document_ref, receipt_type, receipt_number,
                    created_by, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    expense.expense_id,
                    expense.line_id,
                    _money(expense.amount),
                    expense.description,
                    expense.expense_date.isoformat(),
                    expense.document_ref,
                    expense.receipt_type,
                    expense.receipt_number,
                    expense.created_by,
                    expense.created_at.isoformat(),
                    expense.updated_at.isoformat(),
                ),
            )
            return self._recompute_line(conn, expense.line_id)

    @retry_on_sqlite_lock()
    def update_expense(self, expense: Expense) -> BudgetLine:
        """
        Overwrite an expense's editable fields and re-aggregate its line

        Raises:
            ExpenseNotFound: If the expense does not exist
            ProjectTerminal: If the owning project is SETTLED
        """
        with self._transaction() as conn:
            self._require_open_line(conn, expense.line_id)
            cursor = conn.execute(
                """
                UPDATE expenses
                SET amount = ?, description = ?, expense_date = ?, document_ref = ?,
                    receipt_type = ?, receipt_number = ?, updated_at = ?
                WHERE expense_id = ?
            """,
                (
                    _money(expense.amount),
                    expense.description,
                    expense.expense_date.isoformat(),
                    expense.document_ref,
                    expense.receipt_type,
                    expense.receipt_number,
                    expense.updated_at.isoformat(),
                    expense.expense_id,
                ),
            )
            if cursor.rowcount == 0:
                raise ExpenseNotFound(expense.expense_id)
            return self._recompute_line(conn, expense.line_id)

    @retry_on_sqlite_lock()
    def delete_expense(self, expense_id: str) -> BudgetLine:
        """
        Delete an expense and re-aggregate its line

        Raises:
            ExpenseNotFound: If the expense does not exist
            ProjectTerminal: If the owning project is SETTLED
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT line_id FROM expenses WHERE expense_id = ?", (expense_id,)
            ).fetchone()
            if row is None:
                raise ExpenseNotFound(expense_id)
            line_id = row["line_id"]
            self._require_open_line(conn, line_id)
            conn.execute("DELETE FROM expenses WHERE expense_id = ?", (expense_id,))
            return self._recompute_line(conn, line_id)

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def get_alert(self, alert_id: str) -> Alert | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM alerts WHERE alert_id = ?", (alert_id,)
            ).fetchone()
            return self._row_to_alert(row) if row else None

    def find_active_alert(self, alert_type: AlertType, correlation_key: str) -> Alert | None:
        with self._connect() as conn:
            return self._find_active_alert(conn, alert_type, correlation_key)

    @retry_on_sqlite_lock()
    def insert_alert_if_absent(self, alert: Alert) -> tuple[Alert, bool]:
        """
        Insert an ACTIVE alert unless one exists for the same condition

        Returns:
            (alert, created): the stored alert and whether it is new
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                existing = self._find_active_alert(conn, alert.alert_type, alert.correlation_key)
                if existing is not None:
                    conn.execute("ROLLBACK")
                    return existing, False
                conn.execute(
                    """
                    INSERT INTO alerts (
                        alert_id, alert_type, correlation_key, description, severity,
                        recipient_role, state, created_at, acknowledged_at, acknowledged_by
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                    (
                        alert.alert_id,
                        alert.alert_type.value,
                        alert.correlation_key,
                        alert.description,
                        alert.severity.value,
                        alert.recipient_role,
                        alert.state.value,
                        alert.created_at.isoformat(),
                        _iso(alert.acknowledged_at),
                        alert.acknowledged_by,
                    ),
                )
                conn.execute("COMMIT")
                return alert, True

            except sqlite3.IntegrityError as e:
                conn.execute("ROLLBACK")
                # Race: another writer created the ACTIVE alert between lookup and insert
                existing = self._find_active_alert(conn, alert.alert_type, alert.correlation_key)
                if existing is not None:
                    return existing, False
                raise StoreError(f"Failed to insert alert: {e}") from e

            except BaseException:
                conn.execute("ROLLBACK")
                raise

    def list_alerts(
        self,
        *,
        state: AlertState | None = None,
        severity: AlertSeverity | None = None,
        alert_type: AlertType | None = None,
        limit: int | None = 200,
    ) -> list[Alert]:
        """List alerts newest first, filtered by any combination of criteria"""
        with self._connect() as conn:
            conditions = []
            params: list[Any] = []

            if state is not None:
                conditions.append("state = ?")
                params.append(AlertState(state).value)

            if severity is not None:
                conditions.append("severity = ?")
                params.append(AlertSeverity(severity).value)

            if alert_type is not None:
                conditions.append("alert_type = ?")
                params.append(AlertType(alert_type).value)

            where_clause = " AND ".join(conditions) if conditions else "1=1"
            query = f"""
                SELECT * FROM alerts
                WHERE {where_clause}
                ORDER BY created_at DESC, alert_id DESC
            """
            if limit:
                query += " LIMIT ?"
                params.append(int(limit))

            cursor = conn.execute(query, params)
            return [self._row_to_alert(row) for row in cursor.fetchall()]

    @retry_on_sqlite_lock()
    def acknowledge_alert(self, alert_id: str, actor_id: str, at: datetime) -> Alert:
        """
        Mark an alert ACKNOWLEDGED; already acknowledged alerts are left as they are

        Raises:
            AlertNotFound: If the alert does not exist
        """
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE alerts SET state = ?, acknowledged_at = ?, acknowledged_by = ?
                WHERE alert_id = ? AND state = ?
            """,
                (
                    AlertState.ACKNOWLEDGED.value,
                    at.isoformat(),
                    actor_id,
                    alert_id,
                    AlertState.ACTIVE.value,
                ),
            )
            row = conn.execute(
                "SELECT * FROM alerts WHERE alert_id = ?", (alert_id,)
            ).fetchone()
            if row is None:
                raise AlertNotFound(alert_id)
            return self._row_to_alert(row)

    @retry_on_sqlite_lock()
    def acknowledge_all(
        self, actor_id: str, at: datetime, alert_type: AlertType | None = None
    ) -> int:
        """Acknowledge every ACTIVE alert (optionally of one type); returns how many"""
        with self._transaction() as conn:
            query = """
                UPDATE alerts SET state = ?, acknowledged_at = ?, acknowledged_by = ?
                WHERE state = ?
            """
            params: list[Any] = [
                AlertState.ACKNOWLEDGED.value,
                at.isoformat(),
                actor_id,
                AlertState.ACTIVE.value,
            ]
            if alert_type is not None:
                query += " AND alert_type = ?"
                params.append(AlertType(alert_type).value)
            return conn.execute(query, params).rowcount

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, int]:
        """Row counts used by the health endpoint and the CLI"""
        with self._connect() as conn:
            return {
                "projects": conn.execute("SELECT COUNT(*) FROM projects").fetchone()[0],
                "budgets": conn.execute("SELECT COUNT(*) FROM budgets").fetchone()[0],
                "budget_lines": conn.execute("SELECT COUNT(*) FROM budget_lines").fetchone()[0],
                "expenses": conn.execute("SELECT COUNT(*) FROM expenses").fetchone()[0],
                "active_alerts": conn.execute(
                    "SELECT COUNT(*) FROM alerts WHERE state = ?",
                    (AlertState.ACTIVE.value,),
                ).fetchone()[0],
            }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_project(self, conn: sqlite3.Connection, project_id: str) -> sqlite3.Row:
        row = conn.execute(
            "SELECT * FROM projects WHERE project_id = ?", (project_id,)
        ).fetchone()
        if row is None:
            raise ProjectNotFound(project_id)
        return row

    def _require_open_line(self, conn: sqlite3.Connection, line_id: str) -> None:
        """Check the line exists and its project still accepts ledger writes"""
        row = conn.execute(
            """
            SELECT p.project_id, p.status
            FROM budget_lines l
            JOIN budgets b ON b.budget_id = l.budget_id
            JOIN projects p ON p.project_id = b.project_id
            WHERE l.line_id = ?
        """,
            (line_id,),
        ).fetchone()
        if row is None:
            raise BudgetLineNotFound(line_id)
        if row["status"] == ProjectStatus.SETTLED.value:
            raise ProjectTerminal(row["project_id"], row["status"])

    def _recompute_line(self, conn: sqlite3.Connection, line_id: str) -> BudgetLine:
        """Sum the line's expenses in Decimal and store the result as executed amount"""
        row = conn.execute(
            "SELECT * FROM budget_lines WHERE line_id = ?", (line_id,)
        ).fetchone()
        if row is None:
            raise BudgetLineNotFound(line_id)

        amounts = conn.execute(
            "SELECT amount FROM expenses WHERE line_id = ?", (line_id,)
        ).fetchall()
        executed = sum((Decimal(r["amount"]) for r in amounts), Decimal("0"))

        conn.execute(
            "UPDATE budget_lines SET executed_amount = ? WHERE line_id = ?",
            (_money(executed), line_id),
        )
        line = self._row_to_line(row)
        return line.model_copy(update={"executed_amount": executed})

    def _insert_next_version(
        self,
        conn: sqlite3.Connection,
        budget_id: str,
        project_id: str,
        total_amount: Decimal,
        responsible_id: str | None,
        created_at: datetime,
    ) -> Budget:
        current = conn.execute(
            "SELECT MAX(version) FROM budgets WHERE project_id = ?", (project_id,)
        ).fetchone()[0]
        conn.execute(
            "UPDATE budgets SET state = ? WHERE project_id = ? AND state = ?",
            (BudgetState.SUPERSEDED.value, project_id, BudgetState.ACTIVE.value),
        )
        budget = Budget(
            budget_id=budget_id,
            project_id=project_id,
            version=(current or 0) + 1,
            total_amount=total_amount,
            state=BudgetState.ACTIVE,
            responsible_id=responsible_id,
            created_at=created_at,
        )
        try:
            self._insert_budget(conn, budget)
        except sqlite3.IntegrityError as e:
            raise ActiveBudgetConflict(project_id) from e
        return budget

    def _insert_budget(self, conn: sqlite3.Connection, budget: Budget) -> None:
        conn.execute(
            """
            INSERT INTO budgets (
                budget_id, project_id, version, total_amount, state, responsible_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
            (
                budget.budget_id,
                budget.project_id,
                budget.version,
                _money(budget.total_amount),
                budget.state.value,
                budget.responsible_id,
                budget.created_at.isoformat(),
            ),
        )

    def _insert_history(self, conn: sqlite3.Connection, entry: StatusHistoryEntry) -> None:
        conn.execute(
            """
            INSERT INTO status_history (
                entry_id, project_id, status, previous_status,
                actor_id, recorded_at, justification, sequence
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                entry.entry_id,
                entry.project_id,
                entry.status.value,
                entry.previous_status.value if entry.previous_status else None,
                entry.actor_id,
                entry.recorded_at.isoformat(),
                entry.justification,
                entry.sequence,
            ),
        )

    def _find_active_alert(
        self, conn: sqlite3.Connection, alert_type: AlertType, correlation_key: str
    ) -> Alert | None:
        row = conn.execute(
            "SELECT * FROM alerts WHERE alert_type = ? AND correlation_key = ? AND state = ?",
            (AlertType(alert_type).value, correlation_key, AlertState.ACTIVE.value),
        ).fetchone()
        return self._row_to_alert(row) if row else None

    def _row_to_project(self, row: sqlite3.Row) -> Project:
        return Project(
            project_id=row["project_id"],
            name=row["name"],
            location=row["location"],
            initial_budget_amount=Decimal(row["initial_budget_amount"]),
            planned_start=date.fromisoformat(row["planned_start"]),
            planned_end=date.fromisoformat(row["planned_end"]) if row["planned_end"] else None,
            status=ProjectStatus(row["status"]),
            responsible_id=row["responsible_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            version=row["version"],
            reopen_count=row["reopen_count"],
        )

    def _row_to_history(self, row: sqlite3.Row) -> StatusHistoryEntry:
        return StatusHistoryEntry(
            entry_id=row["entry_id"],
            project_id=row["project_id"],
            status=ProjectStatus(row["status"]),
            previous_status=ProjectStatus(row["previous_status"]) if row["previous_status"] else None,
            actor_id=row["actor_id"],
            recorded_at=datetime.fromisoformat(row["recorded_at"]),
            justification=row["justification"],
            sequence=row["sequence"],
        )

    def _row_to_budget(self, row: sqlite3.Row) -> Budget:
        return Budget(
            budget_id=row["budget_id"],
            project_id=row["project_id"],
            version=row["version"],
            total_amount=Decimal(row["total_amount"]),
            state=BudgetState(row["state"]),
            responsible_id=row["responsible_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _row_to_line(self, row: sqlite3.Row) -> BudgetLine:
        return BudgetLine(
            line_id=row["line_id"],
            budget_id=row["budget_id"],
            name=row["name"],
            assigned_amount=Decimal(row["assigned_amount"]),
            executed_amount=Decimal(row["executed_amount"]),
        )

    def _row_to_expense(self, row: sqlite3.Row) -> Expense:
        return Expense(
            expense_id=row["expense_id"],
            line_id=row["line_id"],
            amount=Decimal(row["amount"]),
            description=row["description"],
            expense_date=date.fromisoformat(row["expense_date"]),
            document_ref=row["document_ref"],
            receipt_type=row["receipt_type"],
            receipt_number=row["receipt_number"],
            created_by=row["created_by"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _row_to_alert(self, row: sqlite3.Row) -> Alert:
        return Alert(
            alert_id=row["alert_id"],
            alert_type=AlertType(row["alert_type"]),
            correlation_key=row["correlation_key"],
            description=row["description"],
            severity=AlertSeverity(row["severity"]),
            recipient_role=row["recipient_role"],
            state=AlertState(row["state"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            acknowledged_at=(
                datetime.fromisoformat(row["acknowledged_at"]) if row["acknowledged_at"] else None
            ),
            acknowledged_by=row["acknowledged_by"],
        )


def _money(amount: Decimal) -> str:
    """Canonical string form of an amount"""
    return str(amount)


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
