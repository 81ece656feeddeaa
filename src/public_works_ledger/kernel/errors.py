"""
Custom exceptions for the Public Works Ledger

A small, explicit hierarchy so request handlers can map failures to
responses without string matching:

- NotFound: a referenced record does not exist
- InvalidTransition: an illegal project status change (carries the legal ones)
- InvalidInput: caller-supplied data failed validation
- Conflict: the request is well-formed but clashes with current state
"""

from typing import Any, Iterable


class LedgerError(Exception):
    """Base exception for all ledger errors"""

    pass


class StoreError(LedgerError):
    """Unexpected persistence failure"""

    pass


# Not found


class NotFound(LedgerError):
    """Base class for missing records"""

    entity: str = "Record"

    def __init__(self, entity_id: str) -> None:
        self.entity_id = entity_id
        super().__init__(f"{self.entity} {entity_id} not found")


class ProjectNotFound(NotFound):
    entity = "Project"


class BudgetNotFound(NotFound):
    entity = "Budget"


class BudgetLineNotFound(NotFound):
    entity = "Budget line"


class ExpenseNotFound(NotFound):
    entity = "Expense"


class AlertNotFound(NotFound):
    entity = "Alert"


# Transitions


class InvalidTransition(LedgerError):
    """
    Raised when a project status change is not in the transition table

    `allowed` lists the legal destinations from the current status so a
    client can offer valid choices. It is empty for terminal states.
    """

    def __init__(self, current: Any, requested: Any, allowed: Iterable[Any]) -> None:
        self.current = _status_value(current)
        self.requested = _status_value(requested)
        self.allowed = [_status_value(s) for s in allowed]
        allowed_text = ", ".join(self.allowed) or "none"
        super().__init__(
            f"Cannot change status from {self.current} to {self.requested}. "
            f"Allowed transitions: {allowed_text}"
        )


def _status_value(status: Any) -> str:
    return getattr(status, "value", status)


# Input validation


class InvalidInput(LedgerError):
    """Raised when caller-supplied data fails validation"""

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


# Conflicts


class Conflict(LedgerError):
    """Base class for requests that clash with current state"""

    pass


class ProjectTerminal(Conflict):
    """Raised when mutating a project that reached a terminal status"""

    def __init__(self, project_id: str, status: Any) -> None:
        self.project_id = project_id
        self.status = _status_value(status)
        super().__init__(
            f"Project {project_id} is {self.status} and can no longer be modified"
        )


class ProjectNotDeletable(Conflict):
    """Raised when deleting a project outside its initial status"""

    def __init__(self, project_id: str, status: Any) -> None:
        self.project_id = project_id
        self.status = _status_value(status)
        super().__init__(
            f"Project {project_id} is {self.status}; only PLANNED projects can be deleted"
        )


class ActiveBudgetConflict(Conflict):
    """Raised when a write would leave a project with two ACTIVE budgets"""

    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        super().__init__(f"Project {project_id} already has an ACTIVE budget")


class BudgetLineNotEmpty(Conflict):
    """Raised when removing a budget line that still owns expenses"""

    def __init__(self, line_id: str, expense_count: int) -> None:
        self.line_id = line_id
        self.expense_count = expense_count
        super().__init__(
            f"Budget line {line_id} has {expense_count} expense(s) and cannot be removed"
        )


class ConcurrentModification(Conflict):
    """
    Raised when a compare-and-swap on a project loses to another writer

    The caller should reload the project and retry.
    """

    def __init__(self, project_id: str, expected_version: int, actual_version: int) -> None:
        self.project_id = project_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Project {project_id} version mismatch: "
            f"expected {expected_version}, got {actual_version}"
        )


class ReopenLimitExceeded(Conflict):
    """Raised when a COMPLETED project would be reopened more often than policy allows"""

    def __init__(self, project_id: str, reopen_count: int, max_reopen_count: int) -> None:
        self.project_id = project_id
        self.reopen_count = reopen_count
        self.max_reopen_count = max_reopen_count
        super().__init__(
            f"Project {project_id} was already reopened {reopen_count} time(s); "
            f"limit is {max_reopen_count}"
        )

