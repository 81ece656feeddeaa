"""
Alert Triggers - Pure evaluation of alert conditions

Triggers look at ledger state and return the Alert that *would* be raised,
or None. They never read storage or check for duplicates; the AlertEngine
does both when it persists a candidate.
"""

from datetime import datetime
from decimal import Decimal

from public_works_ledger.alerts.models import (
    Alert,
    AlertSeverity,
    AlertType,
    line_key,
    project_key,
)
from public_works_ledger.budget.invariants import budget_is_complete, line_is_complete
from public_works_ledger.budget.models import Budget, BudgetLine, BudgetState, percent_of
from public_works_ledger.kernel import ids
from public_works_ledger.kernel.ids import generate_id
from public_works_ledger.kernel.policy import LedgerPolicy


def evaluate_line_complete(
    line: BudgetLine,
    project_name: str,
    policy: LedgerPolicy,
    now: datetime,
) -> Alert | None:
    """
    LINE_COMPLETE when the line's execution reached the completion threshold

    Args:
        line: Line with a freshly re-aggregated executed amount
        project_name: Used in the description
        policy: Threshold, severity and recipient
        now: Creation timestamp for the candidate

    Returns:
        Candidate alert, or None if the line is not complete
    """
    if not line_is_complete(line, policy):
        return None

    key = line_key(line.line_id)
    return Alert(
        alert_id=generate_id(ids.ALERT),
        alert_type=AlertType.LINE_COMPLETE,
        correlation_key=key,
        description=(
            f"Budget line '{line.name}' reached {line.progress_percent}% execution "
            f"on project '{project_name}' [{key}]"
        ),
        severity=AlertSeverity(policy.line_complete_severity),
        recipient_role=policy.alert_recipient_role,
        created_at=now,
    )


def evaluate_project_completable(
    budget: Budget,
    lines: list[BudgetLine],
    project_name: str,
    policy: LedgerPolicy,
    now: datetime,
) -> Alert | None:
    """
    PROJECT_COMPLETABLE when every line of the ACTIVE budget is complete

    Superseded budgets never raise it: they no longer describe the project.

    Returns:
        Candidate alert, or None if the condition does not hold
    """
    if budget.state != BudgetState.ACTIVE or not budget_is_complete(lines, policy):
        return None

    key = project_key(budget.project_id)
    executed = sum((line.executed_amount for line in lines), Decimal("0"))
    assigned = sum((line.assigned_amount for line in lines), Decimal("0"))
    return Alert(
        alert_id=generate_id(ids.ALERT),
        alert_type=AlertType.PROJECT_COMPLETABLE,
        correlation_key=key,
        description=(
            f"All {len(lines)} budget lines of project '{project_name}' are fully executed "
            f"({percent_of(executed, assigned)}% of budget v{budget.version}); "
            f"the project can be marked COMPLETED [{key}]"
        ),
        severity=AlertSeverity(policy.project_completable_severity),
        recipient_role=policy.alert_recipient_role,
        created_at=now,
    )
