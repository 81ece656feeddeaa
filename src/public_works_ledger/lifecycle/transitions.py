"""
Transition Validator - The project status state machine

A fixed adjacency table decides which status changes are legal. These are
pure functions: they never read or write storage.

    PLANNED ──► IN_EXECUTION ──► COMPLETED ──► SETTLED
       ▲             │  ▲            │
       └─────────────┘  └────────────┘
"""

from public_works_ledger.kernel.errors import InvalidTransition
from public_works_ledger.lifecycle.models import ProjectStatus

TRANSITIONS: dict[ProjectStatus, tuple[ProjectStatus, ...]] = {
    ProjectStatus.PLANNED: (ProjectStatus.IN_EXECUTION,),
    ProjectStatus.IN_EXECUTION: (ProjectStatus.COMPLETED, ProjectStatus.PLANNED),
    ProjectStatus.COMPLETED: (ProjectStatus.SETTLED, ProjectStatus.IN_EXECUTION),
    ProjectStatus.SETTLED: (),
}


def allowed_transitions(current: ProjectStatus | str) -> tuple[ProjectStatus, ...]:
    """Legal destinations from `current` (empty for the terminal status)"""
    return TRANSITIONS[ProjectStatus(current)]


def can_transition(current: ProjectStatus | str, requested: ProjectStatus | str) -> bool:
    """
    Check whether `current → requested` is in the transition table

    Unknown status strings are simply not allowed.
    """
    try:
        return ProjectStatus(requested) in allowed_transitions(current)
    except ValueError:
        return False


def validate_transition(current: ProjectStatus | str, requested: ProjectStatus | str) -> None:
    """
    Raise unless `current → requested` is allowed

    Raises:
        InvalidTransition: With the allowed destinations from `current`
    """
    if not can_transition(current, requested):
        try:
            allowed = allowed_transitions(current)
        except ValueError:
            allowed = ()
        raise InvalidTransition(current, requested, allowed)


def is_terminal(status: ProjectStatus | str) -> bool:
    """A status with no outgoing transitions"""
    return not allowed_transitions(status)


def is_reopening(current: ProjectStatus | str, requested: ProjectStatus | str) -> bool:
    """COMPLETED → IN_EXECUTION, the only backwards move out of completion"""
    return (
        ProjectStatus(current) == ProjectStatus.COMPLETED
        and ProjectStatus(requested) == ProjectStatus.IN_EXECUTION
    )
