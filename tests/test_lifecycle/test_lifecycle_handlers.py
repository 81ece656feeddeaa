"""
Tests for ProjectLifecycle

Creation, audited status changes, editing, deletion and the progress
read model, all against a real SQLite store.
"""

from datetime import date, datetime
from decimal import Decimal

import pytest

from public_works_ledger.budget.handlers import BudgetLedger
from public_works_ledger.budget.models import BudgetState
from public_works_ledger.kernel.bus import EventBus
from public_works_ledger.kernel.errors import (
    ConcurrentModification,
    InvalidInput,
    InvalidTransition,
    ProjectNotDeletable,
    ProjectNotFound,
    ProjectTerminal,
    ReopenLimitExceeded,
)
from public_works_ledger.kernel.events import DomainEvent
from public_works_ledger.kernel.ledger_store import SQLiteLedgerStore
from public_works_ledger.kernel.policy import LedgerPolicy
from public_works_ledger.kernel.time import FixedTimeProvider
from public_works_ledger.lifecycle.handlers import ProjectLifecycle
from public_works_ledger.lifecycle.models import Project, ProjectStatus
from public_works_ledger.lifecycle.transitions import allowed_transitions, can_transition
from tests.helpers import project_data


def settle(lifecycle: ProjectLifecycle, project_id: str) -> Project:
    for status in ("IN_EXECUTION", "COMPLETED", "SETTLED"):
        project = lifecycle.change_status(project_id, status, "admin-1")
    return project


# Creation


def test_create_project_scenario(lifecycle: ProjectLifecycle, store: SQLiteLedgerStore) -> None:
    """Budget 1000 gives v1 ACTIVE totalling 1000, status PLANNED, one history entry"""
    project = lifecycle.create(project_data(initial_budget_amount="1000"), "admin-1")

    assert project.status == ProjectStatus.PLANNED
    assert project.version == 1
    assert project.planned_start == date(2025, 2, 1)

    budgets = store.list_budgets(project.project_id)
    assert len(budgets) == 1
    assert budgets[0].version == 1
    assert budgets[0].state == BudgetState.ACTIVE
    assert budgets[0].total_amount == Decimal("1000")

    history = lifecycle.history(project.project_id)
    assert len(history) == 1
    assert history[0].status == ProjectStatus.PLANNED
    assert history[0].justification == "creation"
    assert history[0].actor_id == "admin-1"


def test_create_project_defaults(lifecycle: ProjectLifecycle) -> None:
    project = lifecycle.create(
        {"name": "Plaza", "location": "Sur", "planned_start": "2025-04-01"}, "admin-1"
    )

    assert project.initial_budget_amount == Decimal("0")
    assert project.planned_end is None
    assert project.responsible_id is None


def test_create_project_strips_text(lifecycle: ProjectLifecycle) -> None:
    project = lifecycle.create(project_data(name="  Plaza Mayor  "), "admin-1")
    assert project.name == "Plaza Mayor"


def test_create_project_accepts_datetime_dates(lifecycle: ProjectLifecycle) -> None:
    project = lifecycle.create(
        project_data(
            planned_start=datetime(2025, 2, 1, 8, 30), planned_end=datetime(2025, 6, 30, 17, 0)
        ),
        "admin-1",
    )

    assert project.planned_start == date(2025, 2, 1)
    assert project.planned_end == date(2025, 6, 30)


@pytest.mark.parametrize(
    "overrides,field",
    [
        ({"name": "   "}, "name"),
        ({"location": ""}, "location"),
        ({"initial_budget_amount": "-1"}, "initial_budget_amount"),
        ({"initial_budget_amount": "mil"}, "initial_budget_amount"),
        ({"planned_start": "someday"}, "planned_start"),
        ({"planned_end": "2025-01-01"}, "planned_end"),
    ],
)
def test_create_project_rejects_invalid_input(
    lifecycle: ProjectLifecycle, store: SQLiteLedgerStore, overrides: dict, field: str
) -> None:
    with pytest.raises(InvalidInput) as exc_info:
        lifecycle.create(project_data(**overrides), "admin-1")

    assert exc_info.value.field == field
    assert store.list_projects() == []


def test_create_project_missing_required_field(lifecycle: ProjectLifecycle) -> None:
    data = project_data()
    del data["name"]

    with pytest.raises(InvalidInput) as exc_info:
        lifecycle.create(data, "admin-1")
    assert exc_info.value.field == "name"


# Status changes


def test_change_status_appends_history(lifecycle: ProjectLifecycle, project: Project) -> None:
    updated = lifecycle.change_status(
        project.project_id, ProjectStatus.IN_EXECUTION, "admin-2", "Obra iniciada"
    )

    assert updated.status == ProjectStatus.IN_EXECUTION
    assert updated.version == 2
    history = lifecycle.history(project.project_id)
    assert len(history) == 2
    assert history[-1].previous_status == ProjectStatus.PLANNED
    assert history[-1].status == ProjectStatus.IN_EXECUTION
    assert history[-1].justification == "Obra iniciada"
    assert history[-1].actor_id == "admin-2"


def test_change_status_default_justification(
    lifecycle: ProjectLifecycle, project: Project
) -> None:
    lifecycle.change_status(project.project_id, "IN_EXECUTION", "admin-1", "   ")

    entry = lifecycle.history(project.project_id)[-1]
    assert entry.justification == "Status change from PLANNED to IN_EXECUTION"


def test_change_to_current_status_is_noop(
    lifecycle: ProjectLifecycle, project: Project, bus: EventBus
) -> None:
    events: list[DomainEvent] = []
    bus.subscribe("ProjectStatusChanged", events.append)

    result = lifecycle.change_status(project.project_id, "PLANNED", "admin-1")

    assert result.version == project.version
    assert len(lifecycle.history(project.project_id)) == 1
    assert events == []


def test_invalid_transition_scenario(lifecycle: ProjectLifecycle, project: Project) -> None:
    """PLANNED → COMPLETED is rejected with IN_EXECUTION as the only option"""
    with pytest.raises(InvalidTransition) as exc_info:
        lifecycle.change_status(project.project_id, "COMPLETED", "admin-1")

    assert exc_info.value.allowed == ["IN_EXECUTION"]
    assert lifecycle.get(project.project_id).status == ProjectStatus.PLANNED
    assert len(lifecycle.history(project.project_id)) == 1


def test_unknown_status_is_invalid_transition(
    lifecycle: ProjectLifecycle, project: Project
) -> None:
    with pytest.raises(InvalidTransition) as exc_info:
        lifecycle.change_status(project.project_id, "ARCHIVED", "admin-1")
    assert exc_info.value.allowed == ["IN_EXECUTION"]


def test_settled_is_terminal(lifecycle: ProjectLifecycle, project: Project) -> None:
    settle(lifecycle, project.project_id)

    for status in ("PLANNED", "IN_EXECUTION", "COMPLETED"):
        with pytest.raises(InvalidTransition) as exc_info:
            lifecycle.change_status(project.project_id, status, "admin-1")
        assert exc_info.value.allowed == []
    assert len(lifecycle.history(project.project_id)) == 4


def test_change_status_missing_project(lifecycle: ProjectLifecycle) -> None:
    with pytest.raises(ProjectNotFound):
        lifecycle.change_status("prj-missing", "IN_EXECUTION", "admin-1")


# Status reached from PLANNED by following legal transitions only
PATH_TO = {
    ProjectStatus.PLANNED: [],
    ProjectStatus.IN_EXECUTION: ["IN_EXECUTION"],
    ProjectStatus.COMPLETED: ["IN_EXECUTION", "COMPLETED"],
    ProjectStatus.SETTLED: ["IN_EXECUTION", "COMPLETED", "SETTLED"],
}


@pytest.mark.parametrize("current", list(ProjectStatus))
@pytest.mark.parametrize("requested", list(ProjectStatus))
def test_change_status_over_every_pair(
    lifecycle: ProjectLifecycle,
    project: Project,
    current: ProjectStatus,
    requested: ProjectStatus,
) -> None:
    for status in PATH_TO[current]:
        lifecycle.change_status(project.project_id, status, "admin-1")
    before = len(lifecycle.history(project.project_id))

    if requested == current:
        lifecycle.change_status(project.project_id, requested, "admin-1")
        expected_status, appended = current, 0
    elif can_transition(current, requested):
        lifecycle.change_status(project.project_id, requested, "admin-1")
        expected_status, appended = requested, 1
    else:
        with pytest.raises(InvalidTransition) as exc_info:
            lifecycle.change_status(project.project_id, requested, "admin-1")
        assert set(exc_info.value.allowed) == {s.value for s in allowed_transitions(current)}
        expected_status, appended = current, 0

    assert lifecycle.get(project.project_id).status == expected_status
    assert len(lifecycle.history(project.project_id)) == before + appended


def test_status_change_publishes_event(
    lifecycle: ProjectLifecycle, project: Project, bus: EventBus
) -> None:
    events: list[DomainEvent] = []
    bus.subscribe("ProjectStatusChanged", events.append)

    lifecycle.change_status(project.project_id, "IN_EXECUTION", "admin-1")

    assert len(events) == 1
    assert events[0].from_status == "PLANNED"
    assert events[0].to_status == "IN_EXECUTION"
    assert events[0].responsible_id == "resp-1"
    assert events[0].actor_id == "admin-1"


def test_history_sequence_is_gapless(lifecycle: ProjectLifecycle, project: Project) -> None:
    for status in ("IN_EXECUTION", "PLANNED", "IN_EXECUTION", "COMPLETED"):
        lifecycle.change_status(project.project_id, status, "admin-1")

    history = lifecycle.history(project.project_id)
    assert [e.sequence for e in history] == [1, 2, 3, 4, 5]
    for before, after in zip(history, history[1:]):
        assert after.previous_status == before.status


# Reopening


def test_reopen_is_counted(lifecycle: ProjectLifecycle, project: Project) -> None:
    lifecycle.change_status(project.project_id, "IN_EXECUTION", "admin-1")
    lifecycle.change_status(project.project_id, "COMPLETED", "admin-1")

    reopened = lifecycle.change_status(project.project_id, "IN_EXECUTION", "admin-1")

    assert reopened.reopen_count == 1


def test_reopen_limit(store: SQLiteLedgerStore, test_time: FixedTimeProvider) -> None:
    lifecycle = ProjectLifecycle(store, test_time, LedgerPolicy(max_reopen_count=1))
    project = lifecycle.create(project_data(), "admin-1")
    for status in ("IN_EXECUTION", "COMPLETED", "IN_EXECUTION", "COMPLETED"):
        lifecycle.change_status(project.project_id, status, "admin-1")

    with pytest.raises(ReopenLimitExceeded) as exc_info:
        lifecycle.change_status(project.project_id, "IN_EXECUTION", "admin-1")

    assert exc_info.value.max_reopen_count == 1
    assert lifecycle.get(project.project_id).status == ProjectStatus.COMPLETED


# Concurrency


class RacingStore(SQLiteLedgerStore):
    """Lets another writer win the race on the first transition attempt(s)"""

    def __init__(self, *args, races: int = 1, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.races = races

    def apply_transition(self, project_id, expected_version, entry, *, reopen_count):
        if self.races:
            self.races -= 1
            raise ConcurrentModification(project_id, expected_version, expected_version + 1)
        return super().apply_transition(
            project_id, expected_version, entry, reopen_count=reopen_count
        )


def test_lost_race_is_retried(temp_db, test_time: FixedTimeProvider) -> None:
    store = RacingStore(temp_db, races=1)
    lifecycle = ProjectLifecycle(store, test_time, LedgerPolicy(transition_cas_retries=1))
    project = lifecycle.create(project_data(), "admin-1")

    updated = lifecycle.change_status(project.project_id, "IN_EXECUTION", "admin-1")

    assert updated.status == ProjectStatus.IN_EXECUTION
    assert len(lifecycle.history(project.project_id)) == 2


def test_lost_race_surfaces_when_retries_exhausted(temp_db, test_time: FixedTimeProvider) -> None:
    store = RacingStore(temp_db, races=2)
    lifecycle = ProjectLifecycle(store, test_time, LedgerPolicy(transition_cas_retries=1))
    project = lifecycle.create(project_data(), "admin-1")

    with pytest.raises(ConcurrentModification):
        lifecycle.change_status(project.project_id, "IN_EXECUTION", "admin-1")

    assert len(lifecycle.history(project.project_id)) == 1


# Editing


def test_update_details(
    lifecycle: ProjectLifecycle, project: Project, store: SQLiteLedgerStore
) -> None:
    updated = lifecycle.update_details(
        project.project_id,
        {"name": "Calle 5 y 6", "initial_budget_amount": "1200", "planned_end": "2025-08-31"},
        "admin-1",
    )

    assert updated.name == "Calle 5 y 6"
    assert updated.initial_budget_amount == Decimal("1200")
    assert updated.planned_end == date(2025, 8, 31)
    assert updated.status == ProjectStatus.PLANNED
    assert store.get_active_budget(project.project_id).total_amount == Decimal("1200")


def test_update_details_with_nothing_set_returns_project(
    lifecycle: ProjectLifecycle, project: Project
) -> None:
    assert lifecycle.update_details(project.project_id, {}, "admin-1") == project


def test_update_details_accepts_datetime_dates(
    lifecycle: ProjectLifecycle, project: Project
) -> None:
    updated = lifecycle.update_details(
        project.project_id, {"planned_start": datetime(2025, 3, 1, 9, 15)}, "admin-1"
    )

    assert updated.planned_start == date(2025, 3, 1)


def test_update_details_cannot_change_status(
    lifecycle: ProjectLifecycle, project: Project
) -> None:
    with pytest.raises(InvalidInput) as exc_info:
        lifecycle.update_details(project.project_id, {"status": "SETTLED"}, "admin-1")
    assert exc_info.value.field == "status"


def test_update_details_rejects_end_before_start(
    lifecycle: ProjectLifecycle, project: Project
) -> None:
    with pytest.raises(InvalidInput):
        lifecycle.update_details(project.project_id, {"planned_end": "2025-01-01"}, "admin-1")


def test_update_details_rejected_when_settled(
    lifecycle: ProjectLifecycle, project: Project
) -> None:
    settle(lifecycle, project.project_id)

    with pytest.raises(ProjectTerminal):
        lifecycle.update_details(project.project_id, {"name": "Otro"}, "admin-1")


# Deletion


def test_delete_planned_project(lifecycle: ProjectLifecycle, project: Project) -> None:
    lifecycle.delete(project.project_id, "admin-1")

    with pytest.raises(ProjectNotFound):
        lifecycle.get(project.project_id)


def test_delete_requires_planned(lifecycle: ProjectLifecycle, project: Project) -> None:
    lifecycle.change_status(project.project_id, "IN_EXECUTION", "admin-1")

    with pytest.raises(ProjectNotDeletable):
        lifecycle.delete(project.project_id, "admin-1")


# Queries


def test_list_projects_by_status(lifecycle: ProjectLifecycle, test_time: FixedTimeProvider) -> None:
    first = lifecycle.create(project_data(name="Uno"), "admin-1")
    test_time.advance_seconds(60)
    second = lifecycle.create(project_data(name="Dos"), "admin-1")
    lifecycle.change_status(first.project_id, "IN_EXECUTION", "admin-1")

    assert [p.name for p in lifecycle.list_projects()] == ["Dos", "Uno"]
    assert [p.project_id for p in lifecycle.list_projects("PLANNED")] == [second.project_id]
    assert [p.project_id for p in lifecycle.list(ProjectStatus.IN_EXECUTION)] == [first.project_id]


def test_allowed_next(lifecycle: ProjectLifecycle, project: Project) -> None:
    assert lifecycle.allowed_next(project.project_id) == (ProjectStatus.IN_EXECUTION,)


def test_progress(lifecycle: ProjectLifecycle, ledger: BudgetLedger, project: Project) -> None:
    done = ledger.add_line(project.project_id, "Demolición", "300", "admin-1")
    ledger.add_line(project.project_id, "Pavimento", "700", "admin-1")
    ledger.record_expense(done.line_id, "300", "Factura 1", "2025-03-01", "admin-1")

    progress = lifecycle.progress(project.project_id)

    assert progress.budget_version == 1
    assert progress.total_assigned == Decimal("1000")
    assert progress.total_executed == Decimal("300")
    assert progress.percent == 30.0
    assert progress.line_count == 2
    assert progress.completed_line_count == 1
