"""
Tests for BudgetLedger - expenses, lines and budget versions

The executed amount of a line must equal the sum of its expenses after
every write, and a SETTLED project must refuse all ledger writes.
"""

import threading
from datetime import date, datetime
from decimal import Decimal

import pytest

from public_works_ledger.alerts.engine import AlertEngine
from public_works_ledger.alerts.models import AlertType
from public_works_ledger.budget.handlers import BudgetLedger
from public_works_ledger.budget.models import BudgetLine, BudgetState
from public_works_ledger.kernel.bus import ALL_EVENTS, EventBus
from public_works_ledger.kernel.errors import (
    BudgetLineNotEmpty,
    BudgetLineNotFound,
    ExpenseNotFound,
    InvalidInput,
    ProjectNotFound,
    ProjectTerminal,
)
from public_works_ledger.kernel.events import DomainEvent
from public_works_ledger.kernel.ledger_store import SQLiteLedgerStore
from public_works_ledger.kernel.policy import LedgerPolicy
from public_works_ledger.kernel.time import FixedTimeProvider
from public_works_ledger.lifecycle.handlers import ProjectLifecycle
from public_works_ledger.lifecycle.models import Project


class InMemoryDocumentStorage:
    def __init__(self) -> None:
        self.files: dict[str, bytes] = {}

    def store(self, content: bytes, path: str) -> str:
        self.files[path] = content
        return f"https://docs.example.org/{path}"

    def delete(self, path: str) -> None:
        self.files.pop(path, None)


@pytest.fixture
def line(ledger: BudgetLedger, project: Project) -> BudgetLine:
    return ledger.add_line(project.project_id, "Movimiento de tierra", "500", "admin-1")


def settle(lifecycle: ProjectLifecycle, project_id: str) -> None:
    for status in ("IN_EXECUTION", "COMPLETED", "SETTLED"):
        lifecycle.change_status(project_id, status, "admin-1")


# Expenses


def test_record_expense_updates_executed_amount(ledger: BudgetLedger, line: BudgetLine) -> None:
    result = ledger.record_expense(
        line.line_id,
        "200",
        "  Retroexcavadora  ",
        "2025-03-01",
        "admin-1",
        receipt_type="factura",
        receipt_number="F-001",
    )

    assert result.executed_amount == Decimal("200")
    assert result.line.executed_amount == Decimal("200")
    assert result.expense.description == "Retroexcavadora"
    assert result.expense.expense_date == date(2025, 3, 1)
    assert result.expense.receipt_number == "F-001"
    assert result.expense.created_by == "admin-1"
    assert result.alerts == []


@pytest.mark.parametrize("amount", ["0", "-10", "diez", None])
def test_record_expense_rejects_bad_amount(
    ledger: BudgetLedger, line: BudgetLine, amount
) -> None:
    with pytest.raises(InvalidInput) as exc_info:
        ledger.record_expense(line.line_id, amount, "x", "2025-03-01", "admin-1")

    assert exc_info.value.field == "amount"
    assert ledger.get_line(line.line_id).executed_amount == Decimal("0")


def test_record_expense_rejects_bad_date(ledger: BudgetLedger, line: BudgetLine) -> None:
    with pytest.raises(InvalidInput) as exc_info:
        ledger.record_expense(line.line_id, "10", "x", "31/12/2025", "admin-1")
    assert exc_info.value.field == "expense_date"


def test_record_expense_accepts_future_date(ledger: BudgetLedger, line: BudgetLine) -> None:
    result = ledger.record_expense(line.line_id, "10", "Anticipo", "2030-01-01", "admin-1")
    assert result.expense.expense_date == date(2030, 1, 1)


def test_record_expense_missing_line(ledger: BudgetLedger) -> None:
    with pytest.raises(BudgetLineNotFound):
        ledger.record_expense("lin-missing", "10", "x", "2025-03-01", "admin-1")


def test_update_expense_reaggregates(ledger: BudgetLedger, line: BudgetLine) -> None:
    first = ledger.record_expense(line.line_id, "200", "a", "2025-03-01", "admin-1")
    ledger.record_expense(line.line_id, "100", "b", "2025-03-02", "admin-1")

    result = ledger.update_expense(
        first.expense.expense_id, "admin-1", amount="150", description=None
    )

    assert result.executed_amount == Decimal("250")
    assert result.expense.amount == Decimal("150")
    assert result.expense.description == "a"


def test_update_expense_rejects_unknown_field(ledger: BudgetLedger, line: BudgetLine) -> None:
    recorded = ledger.record_expense(line.line_id, "200", "a", "2025-03-01", "admin-1")

    with pytest.raises(InvalidInput) as exc_info:
        ledger.update_expense(recorded.expense.expense_id, "admin-1", line_id="lin-other")
    assert exc_info.value.field == "line_id"


def test_update_expense_rejects_non_positive(ledger: BudgetLedger, line: BudgetLine) -> None:
    recorded = ledger.record_expense(line.line_id, "200", "a", "2025-03-01", "admin-1")

    with pytest.raises(InvalidInput):
        ledger.update_expense(recorded.expense.expense_id, "admin-1", amount="0")
    assert ledger.get_line(line.line_id).executed_amount == Decimal("200")


def test_update_missing_expense(ledger: BudgetLedger) -> None:
    with pytest.raises(ExpenseNotFound):
        ledger.update_expense("exp-missing", "admin-1", amount="5")


def test_update_expense_accepts_datetime(ledger: BudgetLedger, line: BudgetLine) -> None:
    recorded = ledger.record_expense(line.line_id, "200", "a", "2025-03-01", "admin-1")

    result = ledger.update_expense(
        recorded.expense.expense_id, "admin-1", expense_date=datetime(2025, 3, 2, 10, 30)
    )

    assert result.expense.expense_date == date(2025, 3, 2)


@pytest.mark.parametrize(
    "changes,field",
    [({"description": 5}, "description"), ({"expense_date": ["2025-03-02"]}, "expense_date")],
)
def test_update_expense_wrong_type_is_invalid_input(
    ledger: BudgetLedger, line: BudgetLine, changes, field
) -> None:
    recorded = ledger.record_expense(line.line_id, "200", "a", "2025-03-01", "admin-1")

    with pytest.raises(InvalidInput) as exc_info:
        ledger.update_expense(recorded.expense.expense_id, "admin-1", **changes)
    assert exc_info.value.field.startswith(field)


def test_delete_expense_reaggregates(ledger: BudgetLedger, line: BudgetLine) -> None:
    first = ledger.record_expense(line.line_id, "200", "a", "2025-03-01", "admin-1")
    ledger.record_expense(line.line_id, "100", "b", "2025-03-02", "admin-1")

    remaining = ledger.delete_expense(first.expense.expense_id, "admin-1")

    assert remaining.executed_amount == Decimal("100")
    with pytest.raises(ExpenseNotFound):
        ledger.get_expense(first.expense.expense_id)


def test_list_expenses_with_total(ledger: BudgetLedger, line: BudgetLine) -> None:
    ledger.record_expense(line.line_id, "40", "a", "2025-03-01", "admin-1")
    ledger.record_expense(line.line_id, "60", "b", "2025-03-05", "admin-1")

    listing = ledger.list_expenses(line.line_id)

    assert [e.description for e in listing.expenses] == ["b", "a"]
    assert listing.total == Decimal("100")
    assert listing.line.executed_amount == listing.total


def test_expense_events_published(ledger: BudgetLedger, line: BudgetLine, bus: EventBus) -> None:
    events: list[DomainEvent] = []
    bus.subscribe(ALL_EVENTS, events.append)

    recorded = ledger.record_expense(line.line_id, "50", "a", "2025-03-01", "admin-1")
    ledger.update_expense(recorded.expense.expense_id, "admin-1", amount="70")
    ledger.delete_expense(recorded.expense.expense_id, "admin-1")

    assert [e.event_type for e in events] == ["ExpenseRecorded", "ExpenseUpdated", "ExpenseDeleted"]
    assert [e.executed_amount for e in events] == [Decimal("50"), Decimal("70"), Decimal("0")]


def test_attach_document(ledger: BudgetLedger, project: Project, line: BudgetLine) -> None:
    storage = InMemoryDocumentStorage()
    recorded = ledger.record_expense(line.line_id, "50", "a", "2025-03-01", "admin-1")
    expense_id = recorded.expense.expense_id

    updated = ledger.attach_document(expense_id, b"%PDF-1.4", "factura 7.pdf", storage, "admin-1")

    path = f"obras/{project.project_id}/partida_{line.line_id}/gasto_{expense_id}/factura_7.pdf"
    assert storage.files == {path: b"%PDF-1.4"}
    assert updated.document_ref == f"https://docs.example.org/{path}"
    assert ledger.get_expense(expense_id).document_ref == updated.document_ref


# Settled projects


def test_settled_project_rejects_ledger_writes(
    ledger: BudgetLedger, lifecycle: ProjectLifecycle, project: Project, line: BudgetLine
) -> None:
    recorded = ledger.record_expense(line.line_id, "50", "a", "2025-03-01", "admin-1")
    settle(lifecycle, project.project_id)
    expense_id = recorded.expense.expense_id

    with pytest.raises(ProjectTerminal):
        ledger.record_expense(line.line_id, "10", "b", "2025-03-02", "admin-1")
    with pytest.raises(ProjectTerminal):
        ledger.update_expense(expense_id, "admin-1", amount="20")
    with pytest.raises(ProjectTerminal):
        ledger.delete_expense(expense_id, "admin-1")
    with pytest.raises(ProjectTerminal):
        ledger.add_line(project.project_id, "Extra", "10", "admin-1")
    with pytest.raises(ProjectTerminal):
        ledger.update_line(line.line_id, "admin-1", assigned_amount="10")
    with pytest.raises(ProjectTerminal):
        ledger.create_budget_version(project.project_id, "2000", "admin-1")
    with pytest.raises(ProjectTerminal):
        ledger.attach_document(expense_id, b"x", "a.pdf", InMemoryDocumentStorage(), "admin-1")

    assert ledger.get_line(line.line_id).executed_amount == Decimal("50")


# Lines


def test_add_line_to_active_budget(ledger: BudgetLedger, project: Project) -> None:
    added = ledger.add_line(project.project_id, " Señalización ", "120.50", "admin-1")

    active = ledger.get_active_budget(project.project_id)
    assert added.budget_id == active.budget_id
    assert added.name == "Señalización"
    assert added.assigned_amount == Decimal("120.50")
    assert added.executed_amount == Decimal("0")
    assert ledger.list_lines(project.project_id) == [added]


@pytest.mark.parametrize("name,amount", [("", "10"), ("Ok", "-1"), ("Ok", "x")])
def test_add_line_rejects_invalid(ledger: BudgetLedger, project: Project, name, amount) -> None:
    with pytest.raises(InvalidInput):
        ledger.add_line(project.project_id, name, amount, "admin-1")


def test_add_line_missing_project(ledger: BudgetLedger) -> None:
    with pytest.raises(ProjectNotFound):
        ledger.add_line("prj-missing", "Acera", "10", "admin-1")


def test_update_line(ledger: BudgetLedger, line: BudgetLine) -> None:
    updated = ledger.update_line(line.line_id, "admin-1", name="Excavación", assigned_amount="800")

    assert updated.name == "Excavación"
    assert updated.assigned_amount == Decimal("800")
    assert ledger.update_line(line.line_id, "admin-1") == updated


def test_update_line_wrong_type_is_invalid_input(ledger: BudgetLedger, line: BudgetLine) -> None:
    with pytest.raises(InvalidInput) as exc_info:
        ledger.update_line(line.line_id, "admin-1", name=5)
    assert exc_info.value.field == "name"


def test_lowering_assigned_amount_can_complete_line(
    ledger: BudgetLedger, store: SQLiteLedgerStore, line: BudgetLine
) -> None:
    ledger.record_expense(line.line_id, "400", "a", "2025-03-01", "admin-1")
    assert store.list_alerts() == []

    ledger.update_line(line.line_id, "admin-1", assigned_amount="400")

    alerts = store.list_alerts(alert_type=AlertType.LINE_COMPLETE)
    assert len(alerts) == 1
    assert alerts[0].correlation_key == f"line:{line.line_id}"


def test_remove_line(ledger: BudgetLedger, project: Project, line: BudgetLine) -> None:
    busy = ledger.add_line(project.project_id, "Con gastos", "100", "admin-1")
    ledger.record_expense(busy.line_id, "10", "a", "2025-03-01", "admin-1")

    with pytest.raises(BudgetLineNotEmpty):
        ledger.remove_line(busy.line_id, "admin-1")

    ledger.remove_line(line.line_id, "admin-1")
    assert [l.line_id for l in ledger.list_lines(project.project_id)] == [busy.line_id]


def test_remove_missing_line(ledger: BudgetLedger) -> None:
    with pytest.raises(BudgetLineNotFound):
        ledger.remove_line("lin-missing", "admin-1")


def test_removing_last_incomplete_line_raises_project_completable(
    ledger: BudgetLedger, store: SQLiteLedgerStore, project: Project
) -> None:
    spent = ledger.add_line(project.project_id, "Pavimento", "100", "admin-1")
    pending = ledger.add_line(project.project_id, "Señalización", "100", "admin-1")
    ledger.record_expense(spent.line_id, "100", "a", "2025-03-01", "admin-1")
    assert store.list_alerts(alert_type=AlertType.PROJECT_COMPLETABLE) == []

    ledger.remove_line(pending.line_id, "admin-1")

    alerts = store.list_alerts(alert_type=AlertType.PROJECT_COMPLETABLE)
    assert len(alerts) == 1
    assert alerts[0].correlation_key == f"project:{project.project_id}"


def test_removing_incomplete_line_keeps_budget_open(
    ledger: BudgetLedger, store: SQLiteLedgerStore, project: Project
) -> None:
    ledger.add_line(project.project_id, "Pavimento", "100", "admin-1")
    pending = ledger.add_line(project.project_id, "Señalización", "100", "admin-1")

    ledger.remove_line(pending.line_id, "admin-1")

    assert store.list_alerts() == []


def test_recompute_line_is_idempotent(ledger: BudgetLedger, line: BudgetLine) -> None:
    ledger.record_expense(line.line_id, "125.25", "a", "2025-03-01", "admin-1")

    first = ledger.recompute_line(line.line_id)
    second = ledger.recompute_line(line.line_id)

    assert first.executed_amount == second.executed_amount == Decimal("125.25")


# Budget versions


def test_create_budget_version(ledger: BudgetLedger, project: Project, line: BudgetLine) -> None:
    v2 = ledger.create_budget_version(project.project_id, "1500", "admin-2")

    assert v2.version == 2
    assert v2.state == BudgetState.ACTIVE
    assert v2.responsible_id == "admin-2"

    budgets = ledger.list_budgets(project.project_id)
    assert [b.state for b in budgets] == [BudgetState.SUPERSEDED, BudgetState.ACTIVE]
    assert ledger.get_active_budget(project.project_id) == v2

    # Lines stay with the version they were created in
    assert ledger.list_lines(project.project_id) == []
    assert ledger.list_lines(project.project_id, budgets[0].budget_id) == [line]


def test_create_budget_version_rejects_negative_total(
    ledger: BudgetLedger, project: Project
) -> None:
    with pytest.raises(InvalidInput) as exc_info:
        ledger.create_budget_version(project.project_id, "-5", "admin-1")
    assert exc_info.value.field == "total_amount"


def test_create_budget_version_missing_project(ledger: BudgetLedger) -> None:
    with pytest.raises(ProjectNotFound):
        ledger.create_budget_version("prj-missing", "5", "admin-1")


# Concurrent writers


def run_concurrently(workers: list) -> list[BaseException]:
    """Start every worker at once; return whatever they raised"""
    errors: list[BaseException] = []
    lock = threading.Lock()
    start = threading.Barrier(len(workers))

    def run(work) -> None:
        start.wait()
        try:
            work()
        except BaseException as e:
            with lock:
                errors.append(e)

    threads = [threading.Thread(target=run, args=(work,)) for work in workers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return errors


def separate_ledger(temp_db, test_time: FixedTimeProvider) -> BudgetLedger:
    """A ledger with its own store, as a second process would have"""
    store = SQLiteLedgerStore(temp_db)
    policy = LedgerPolicy()
    return BudgetLedger(store, AlertEngine(store, test_time, policy), test_time, policy)


def test_concurrent_expenses_converge(
    ledger: BudgetLedger, project: Project, temp_db, test_time: FixedTimeProvider
) -> None:
    line = ledger.add_line(project.project_id, "Estructura", "100000", "admin-1")
    ledgers = [separate_ledger(temp_db, test_time) for _ in range(8)]

    def writer(worker: int, writer_ledger: BudgetLedger):
        def work() -> None:
            for i in range(20):
                writer_ledger.record_expense(
                    line.line_id, f"{worker + 1}.{i:02d}", f"w{worker}-{i}", "2025-03-01", "admin-1"
                )
        return work

    errors = run_concurrently([writer(n, w) for n, w in enumerate(ledgers)])

    assert errors == []
    expected = sum(
        (Decimal(f"{worker + 1}.{i:02d}") for worker in range(8) for i in range(20)),
        Decimal("0"),
    )
    listing = ledger.list_expenses(line.line_id)
    assert len(listing.expenses) == 160
    assert listing.total == expected
    assert ledger.get_line(line.line_id).executed_amount == expected


def test_concurrent_updates_and_deletes_converge(
    ledger: BudgetLedger, project: Project, temp_db, test_time: FixedTimeProvider
) -> None:
    line = ledger.add_line(project.project_id, "Estructura", "100000", "admin-1")
    expense_ids = [
        ledger.record_expense(line.line_id, "10", f"e{i}", "2025-03-01", "admin-1").expense.expense_id
        for i in range(40)
    ]

    def editor(batch: list[str], editor_ledger: BudgetLedger):
        def work() -> None:
            for index, expense_id in enumerate(batch):
                if index % 2 == 0:
                    editor_ledger.update_expense(expense_id, "admin-1", amount="25")
                else:
                    editor_ledger.delete_expense(expense_id, "admin-1")
        return work

    def recorder(recorder_ledger: BudgetLedger):
        def work() -> None:
            for i in range(10):
                recorder_ledger.record_expense(line.line_id, "1", f"n{i}", "2025-03-02", "admin-1")
        return work

    workers = [
        editor(expense_ids[start : start + 10], separate_ledger(temp_db, test_time))
        for start in range(0, 40, 10)
    ]
    workers += [recorder(separate_ledger(temp_db, test_time)) for _ in range(2)]

    errors = run_concurrently(workers)

    assert errors == []
    # 20 expenses edited to 25, 20 deleted, 20 new ones of 1
    listing = ledger.list_expenses(line.line_id)
    assert len(listing.expenses) == 40
    assert listing.total == Decimal("520")
    assert ledger.get_line(line.line_id).executed_amount == Decimal("520")
    assert ledger.recompute_line(line.line_id).executed_amount == Decimal("520")
