"""
Lifecycle Handlers - Project creation, editing and audited status changes

Handlers are the decision-making layer. They:
1. Load current state from the ledger store
2. Validate input and invariants (nothing is written on rejection)
3. Hand the write to the store as one atomic operation
4. Publish a domain event once the write has committed
"""

from decimal import Decimal
from typing import Any

from public_works_ledger.budget.invariants import line_is_complete
from public_works_ledger.budget.models import Budget, BudgetState, percent_of
from public_works_ledger.kernel import ids
from public_works_ledger.kernel.bus import EventBus
from public_works_ledger.kernel.commands import build_command
from public_works_ledger.kernel.errors import (
    ConcurrentModification,
    InvalidInput,
    InvalidTransition,
    ProjectNotDeletable,
    ProjectNotFound,
    ProjectTerminal,
    ReopenLimitExceeded,
)
from public_works_ledger.kernel.events import ProjectStatusChanged
from public_works_ledger.kernel.ids import generate_id
from public_works_ledger.kernel.ledger_store import SQLiteLedgerStore
from public_works_ledger.kernel.logging import LogOperation, get_logger
from public_works_ledger.kernel.metrics import (
    status_transitions_rejected_total,
    status_transitions_total,
    track_operation,
)
from public_works_ledger.kernel.policy import LedgerPolicy
from public_works_ledger.kernel.time import TimeProvider
from public_works_ledger.lifecycle.commands import CreateProject, UpdateProjectDetails
from public_works_ledger.lifecycle.invariants import (
    validate_planned_dates,
    validate_project_fields,
    validate_reopen,
)
from public_works_ledger.lifecycle.models import (
    Project,
    ProjectProgress,
    ProjectStatus,
    StatusHistoryEntry,
)
from public_works_ledger.lifecycle.transitions import (
    allowed_transitions,
    is_reopening,
    validate_transition,
)

logger = get_logger(__name__)

CREATION_JUSTIFICATION = "creation"


class ProjectLifecycle:
    """
    Owns the Project record and its status history

    Every accepted status change appends exactly one history entry in the
    same transaction as the status update. A change to the current status
    is a no-op and writes nothing.
    """

    def __init__(
        self,
        store: SQLiteLedgerStore,
        time_provider: TimeProvider,
        policy: LedgerPolicy,
        bus: EventBus | None = None,
    ) -> None:
        """
        Initialize handlers with dependencies

        Args:
            store: Ledger persistence
            time_provider: For timestamps (injectable for testing)
            policy: Reopen and retry parameters
            bus: Receives ProjectStatusChanged after each committed change
        """
        self.store = store
        self.time_provider = time_provider
        self.policy = policy
        self.bus = bus

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    @track_operation("create_project")
    def create(self, project_data: CreateProject | dict[str, Any], actor_id: str) -> Project:
        """
        Create a PLANNED project with budget version 1 and its creation entry

        Args:
            project_data: Name, location, initial amount, planned dates,
                responsible party
            actor_id: Who creates the project

        Returns:
            The stored project

        Raises:
            InvalidInput: Blank name/location, negative amount, bad dates,
                end before start
        """
        command = build_command(CreateProject, project_data)
        fields = validate_project_fields(command.model_dump())
        validate_planned_dates(fields["planned_start"], fields["planned_end"])

        with LogOperation(logger, "create_project", actor_id=actor_id, name=fields["name"]):
            now = self.time_provider.now()
            project = Project(
                project_id=generate_id(ids.PROJECT),
                name=fields["name"],
                location=fields["location"],
                initial_budget_amount=fields["initial_budget_amount"],
                planned_start=fields["planned_start"],
                planned_end=fields["planned_end"],
                status=ProjectStatus.PLANNED,
                responsible_id=fields["responsible_id"],
                created_at=now,
                updated_at=now,
                version=1,
                reopen_count=0,
            )
            budget = Budget(
                budget_id=generate_id(ids.BUDGET),
                project_id=project.project_id,
                version=1,
                total_amount=project.initial_budget_amount,
                state=BudgetState.ACTIVE,
                responsible_id=actor_id,
                created_at=now,
            )
            entry = StatusHistoryEntry(
                entry_id=generate_id(ids.HISTORY),
                project_id=project.project_id,
                status=ProjectStatus.PLANNED,
                previous_status=None,
                actor_id=actor_id,
                recorded_at=now,
                justification=CREATION_JUSTIFICATION,
                sequence=1,
            )
            self.store.create_project(project, budget, entry)
            logger.info("Project created", project_id=project.project_id, budget_id=budget.budget_id)
            return project

    @track_operation("change_status")
    def change_status(
        self,
        project_id: str,
        requested_status: ProjectStatus | str,
        actor_id: str,
        justification: str | None = None,
    ) -> Project:
        """
        Move a project to `requested_status`

        Requesting the current status returns the project unchanged and
        writes no history. Losing a version race to another writer re-reads
        the project and retries up to `policy.transition_cas_retries` times.

        Args:
            project_id: Project to change
            requested_status: Destination status
            actor_id: Who requests the change
            justification: Free text; defaults to "Status change from X to Y"

        Returns:
            The project after the change

        Raises:
            ProjectNotFound: If the project doesn't exist
            InvalidTransition: If the move is not in the transition table
            ReopenLimitExceeded: If reopening would exceed the policy bound
            ConcurrentModification: If every retry lost the race
        """
        attempts = self.policy.transition_cas_retries + 1

        with LogOperation(
            logger,
            "change_status",
            project_id=project_id,
            requested_status=str(getattr(requested_status, "value", requested_status)),
            actor_id=actor_id,
        ):
            for attempt in range(1, attempts + 1):
                project = self.get(project_id)
                requested = _coerce_status(project, requested_status)

                if requested == project.status:
                    logger.debug("Status unchanged, nothing to do", project_id=project_id)
                    return project

                try:
                    validate_transition(project.status, requested)
                except InvalidTransition:
                    status_transitions_rejected_total.labels(reason="invalid").inc()
                    raise

                reopen_count = project.reopen_count
                if is_reopening(project.status, requested):
                    try:
                        validate_reopen(project_id, reopen_count, self.policy)
                    except ReopenLimitExceeded:
                        status_transitions_rejected_total.labels(reason="reopen_limit").inc()
                        raise
                    reopen_count += 1
                    logger.warning(
                        "Completed project reopened for execution",
                        project_id=project_id,
                        reopen_count=reopen_count,
                    )

                text = (justification or "").strip() or (
                    f"Status change from {project.status.value} to {requested.value}"
                )
                entry = StatusHistoryEntry(
                    entry_id=generate_id(ids.HISTORY),
                    project_id=project_id,
                    status=requested,
                    previous_status=project.status,
                    actor_id=actor_id,
                    recorded_at=self.time_provider.now(),
                    justification=text,
                    sequence=project.version + 1,
                )

                try:
                    updated = self.store.apply_transition(
                        project_id, project.version, entry, reopen_count=reopen_count
                    )
                except ConcurrentModification as e:
                    status_transitions_rejected_total.labels(reason="conflict").inc()
                    if attempt < attempts:
                        logger.info(
                            "Lost status change race, retrying",
                            project_id=project_id,
                            expected_version=e.expected_version,
                            actual_version=e.actual_version,
                        )
                        continue
                    raise

                status_transitions_total.labels(
                    from_status=project.status.value, to_status=requested.value
                ).inc()
                self._publish(
                    ProjectStatusChanged(
                        event_id=generate_id(),
                        occurred_at=entry.recorded_at,
                        actor_id=actor_id,
                        project_id=project_id,
                        from_status=project.status.value,
                        to_status=requested.value,
                        justification=text,
                        responsible_id=updated.responsible_id,
                    )
                )
                return updated

        # Loop always returns or raises
        raise AssertionError("unreachable")

    @track_operation("update_project")
    def update_details(
        self,
        project_id: str,
        changes: UpdateProjectDetails | dict[str, Any],
        actor_id: str,
    ) -> Project:
        """
        Edit name, location, planned dates, responsible party or initial amount

        Changing the initial budget amount also changes the ACTIVE budget's
        total. Status only changes through `change_status`.

        Raises:
            ProjectNotFound: If the project doesn't exist
            ProjectTerminal: If the project is SETTLED
            InvalidInput: On invalid fields, or an attempt to set status
        """
        if isinstance(changes, dict) and "status" in changes:
            raise InvalidInput("status", "use change_status to move a project between statuses")
        command = build_command(UpdateProjectDetails, changes)

        project = self.get(project_id)
        if project.status == ProjectStatus.SETTLED:
            raise ProjectTerminal(project_id, project.status)

        fields = validate_project_fields(command.changes())
        if not fields:
            return project

        with LogOperation(
            logger, "update_project", project_id=project_id, actor_id=actor_id, fields=sorted(fields)
        ):
            updated = project.model_copy(
                update={**fields, "updated_at": self.time_provider.now()}
            )
            validate_planned_dates(updated.planned_start, updated.planned_end)
            sync_budget_total = (
                "initial_budget_amount" in fields
                and fields["initial_budget_amount"] != project.initial_budget_amount
            )
            return self.store.update_project_details(updated, sync_budget_total=sync_budget_total)

    @track_operation("delete_project")
    def delete(self, project_id: str, actor_id: str) -> None:
        """
        Delete a PLANNED project with its budgets, lines, expenses and history

        Raises:
            ProjectNotFound: If the project doesn't exist
            ProjectNotDeletable: If the project left PLANNED
        """
        project = self.get(project_id)
        if project.status != ProjectStatus.PLANNED:
            raise ProjectNotDeletable(project_id, project.status)

        with LogOperation(logger, "delete_project", project_id=project_id, actor_id=actor_id):
            if not self.store.delete_project(project_id):
                # Status moved between our read and the delete
                raise ProjectNotDeletable(project_id, self.get(project_id).status)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, project_id: str) -> Project:
        """
        Raises:
            ProjectNotFound: If the project doesn't exist
        """
        project = self.store.get_project(project_id)
        if project is None:
            raise ProjectNotFound(project_id)
        return project

    def list_projects(self, status: ProjectStatus | str | None = None) -> list[Project]:
        return self.store.list_projects(ProjectStatus(status) if status else None)

    def history(self, project_id: str) -> list[StatusHistoryEntry]:
        """Status history in order, creation entry first"""
        self.get(project_id)
        return self.store.list_history(project_id)

    def allowed_next(self, project_id: str) -> tuple[ProjectStatus, ...]:
        """Statuses the project can move to from where it is now"""
        return allowed_transitions(self.get(project_id).status)

    def progress(self, project_id: str) -> ProjectProgress:
        """Execution progress of the project's ACTIVE budget"""
        project = self.get(project_id)
        budget = self.store.get_active_budget(project_id)
        if budget is None:
            return ProjectProgress(project_id=project_id, status=project.status)

        lines = self.store.list_lines(budget.budget_id)
        total_assigned = sum((line.assigned_amount for line in lines), Decimal("0"))
        total_executed = sum((line.executed_amount for line in lines), Decimal("0"))
        return ProjectProgress(
            project_id=project_id,
            status=project.status,
            budget_id=budget.budget_id,
            budget_version=budget.version,
            total_assigned=total_assigned,
            total_executed=total_executed,
            percent=percent_of(total_executed, total_assigned),
            line_count=len(lines),
            completed_line_count=sum(1 for line in lines if line_is_complete(line, self.policy)),
        )

    def _publish(self, event: ProjectStatusChanged) -> None:
        if self.bus is not None:
            self.bus.publish(event)

    # Defined last so `list` still names the builtin in the annotations above
    list = list_projects


def _coerce_status(project: Project, requested: ProjectStatus | str) -> ProjectStatus:
    """Parse a requested status; unknown names are rejected as invalid transitions"""
    try:
        return ProjectStatus(requested)
    except ValueError:
        status_transitions_rejected_total.labels(reason="invalid").inc()
        raise InvalidTransition(
            project.status, requested, allowed_transitions(project.status)
        ) from None
