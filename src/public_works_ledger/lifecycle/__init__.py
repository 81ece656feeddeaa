"""
Lifecycle Module - Projects, their status machine and audited history

PLANNED → IN_EXECUTION → COMPLETED → SETTLED, with execution able to fall
back to planning and completion able to reopen. Every accepted change
leaves one history entry.
"""

from public_works_ledger.lifecycle.models import (
    Project,
    ProjectProgress,
    ProjectStatus,
    StatusHistoryEntry,
)
from public_works_ledger.lifecycle.transitions import (
    allowed_transitions,
    can_transition,
    is_terminal,
    validate_transition,
)

__all__ = [
    "Project",
    "ProjectProgress",
    "ProjectStatus",
    "StatusHistoryEntry",
    "allowed_transitions",
    "can_transition",
    "is_terminal",
    "validate_transition",
]
