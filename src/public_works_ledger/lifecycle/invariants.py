"""
Lifecycle Invariants - Project field rules and the reopen policy

Pure functions that validate project input before anything is written.
"""

from datetime import date
from typing import Any

from public_works_ledger.budget.invariants import validate_assigned_amount, validate_required_text
from public_works_ledger.kernel.errors import InvalidInput, ReopenLimitExceeded
from public_works_ledger.kernel.policy import LedgerPolicy
from public_works_ledger.kernel.time import parse_date


def validate_project_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """
    Normalize and validate the descriptive fields of a project

    Only keys present in `fields` are checked, so the same rules serve
    creation (all fields) and edits (some fields).

    Returns:
        The normalized fields (stripped text, Decimal amount, date objects)

    Raises:
        InvalidInput: On blank name or location, negative or non-numeric
            amount, unparseable dates
    """
    normalized = dict(fields)
    if "name" in fields:
        normalized["name"] = validate_required_text(fields["name"], "name")
    if "location" in fields:
        normalized["location"] = validate_required_text(fields["location"], "location")
    if "initial_budget_amount" in fields:
        normalized["initial_budget_amount"] = validate_assigned_amount(
            fields["initial_budget_amount"], "initial_budget_amount"
        )
    if "planned_start" in fields:
        normalized["planned_start"] = parse_date(fields["planned_start"], "planned_start")
    if "planned_end" in fields:
        end = fields["planned_end"]
        normalized["planned_end"] = (
            parse_date(end, "planned_end") if end not in (None, "") else None
        )
    if "responsible_id" in fields:
        responsible = str(fields["responsible_id"] or "").strip()
        normalized["responsible_id"] = responsible or None
    return normalized


def validate_planned_dates(start: date, end: date | None) -> None:
    """
    Raises:
        InvalidInput: If the planned end precedes the planned start
    """
    if end is not None and end < start:
        raise InvalidInput("planned_end", "must not be before planned_start")


def validate_reopen(project_id: str, reopen_count: int, policy: LedgerPolicy) -> None:
    """
    Enforce the optional bound on reopening completed projects

    Args:
        project_id: Project being reopened
        reopen_count: Reopenings accepted so far
        policy: Current ledger policy

    Raises:
        ReopenLimitExceeded: If one more reopening would exceed the bound
    """
    if policy.max_reopen_count is not None and reopen_count >= policy.max_reopen_count:
        raise ReopenLimitExceeded(project_id, reopen_count, policy.max_reopen_count)
