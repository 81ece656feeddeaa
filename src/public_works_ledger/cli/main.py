"""
Public Works Ledger CLI

Command-line interface over the WorksEngine façade.

Usage:
    pwl init --db works.db
    pwl project create --name "Calle 5" --location Centro --amount 250000 --start 2025-02-01 --actor ana
    pwl project status --id <project_id> --to IN_EXECUTION --actor ana
    pwl line add --project-id <project_id> --name Earthworks --assigned 100000 --actor ana
    pwl expense record --line-id <line_id> --amount 5000 --date 2025-03-01 --actor ana
    pwl alert list --state ACTIVE
"""

import json
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import typer
from typing_extensions import Annotated

from public_works_ledger.engine import WorksEngine
from public_works_ledger.kernel.errors import InvalidTransition, LedgerError
from public_works_ledger.kernel.logging import configure_logging, correlation_scope, is_production

# Logs go to stderr so stdout stays clean for command output
configure_logging(json_output=is_production(), log_level=os.getenv("PWL_LOG_LEVEL", "WARNING"))

app = typer.Typer(
    name="pwl",
    help="Public Works Ledger - project lifecycle and budget execution",
    add_completion=False,
)

# Sub-apps
project_app = typer.Typer(help="Project lifecycle commands")
budget_app = typer.Typer(help="Budget version commands")
line_app = typer.Typer(help="Budget line commands")
expense_app = typer.Typer(help="Expense commands")
alert_app = typer.Typer(help="Alert commands")

app.add_typer(project_app, name="project")
app.add_typer(budget_app, name="budget")
app.add_typer(line_app, name="line")
app.add_typer(expense_app, name="expense")
app.add_typer(alert_app, name="alert")

DEFAULT_DB = Path(".pwl.db")

DbOption = Annotated[Optional[Path], typer.Option("--db", help="Database path")]
ActorOption = Annotated[str, typer.Option("--actor", help="Acting user id")]
JsonOption = Annotated[bool, typer.Option("--json", help="Output as JSON")]


@contextmanager
def open_engine(db_path: Optional[Path] = None) -> Iterator[WorksEngine]:
    """
    Open the engine for one command

    Domain errors become a message on stderr and exit code 1.
    """
    db = db_path or DEFAULT_DB
    if not db.exists():
        typer.echo(f"Error: Database not found: {db}", err=True)
        typer.echo(f"Run 'pwl init --db {db}' to initialize", err=True)
        raise typer.Exit(1)

    engine = WorksEngine(db)
    try:
        with correlation_scope():
            yield engine
    except InvalidTransition as e:
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Allowed: {', '.join(e.allowed) or 'none (terminal status)'}", err=True)
        raise typer.Exit(1)
    except LedgerError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    finally:
        engine.close()


def echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


# Initialization command


@app.command()
def init(
    db: Annotated[Path, typer.Option(help="Database path")] = DEFAULT_DB,
) -> None:
    """Initialize a new ledger database"""
    if db.exists():
        typer.echo(f"Error: Database already exists: {db}", err=True)
        raise typer.Exit(1)

    WorksEngine(db).close()
    typer.echo(f"✓ Initialized ledger database: {db}")


# Project commands


@project_app.command("create")
def project_create(
    name: Annotated[str, typer.Option("--name", help="Project name")],
    location: Annotated[str, typer.Option("--location", help="Where the works take place")],
    start: Annotated[str, typer.Option("--start", help="Planned start date (YYYY-MM-DD)")],
    actor: ActorOption,
    amount: Annotated[str, typer.Option("--amount", help="Initial budget amount")] = "0",
    end: Annotated[Optional[str], typer.Option("--end", help="Planned end date")] = None,
    responsible: Annotated[
        Optional[str], typer.Option("--responsible", help="Responsible party id")
    ] = None,
    db: DbOption = None,
) -> None:
    """Create a project (PLANNED, with budget version 1)"""
    with open_engine(db) as engine:
        project = engine.create_project(
            {
                "name": name,
                "location": location,
                "initial_budget_amount": amount,
                "planned_start": start,
                "planned_end": end,
                "responsible_id": responsible,
            },
            actor_id=actor,
        )
        typer.echo(f"✓ Created project: {project.project_id}")
        typer.echo(f"  Name: {project.name}")
        typer.echo(f"  Status: {project.status.value}")
        typer.echo(f"  Initial budget: {project.initial_budget_amount}")


@project_app.command("show")
def project_show(
    project_id: Annotated[str, typer.Option("--id", help="Project ID")],
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show project details"""
    with open_engine(db) as engine:
        project = engine.get_project(project_id)
        allowed = engine.lifecycle.allowed_next(project_id)

        if json_output:
            echo_json(project.model_dump(mode="json"))
            return

        typer.echo(f"\nProject: {project.project_id}")
        typer.echo(f"  Name: {project.name}")
        typer.echo(f"  Location: {project.location}")
        typer.echo(f"  Status: {project.status.value}")
        typer.echo(f"  Initial budget: {project.initial_budget_amount}")
        typer.echo(f"  Planned: {project.planned_start} → {project.planned_end or '?'}")
        if project.responsible_id:
            typer.echo(f"  Responsible: {project.responsible_id}")
        if project.reopen_count:
            typer.echo(f"  Reopened: {project.reopen_count} time(s)")
        typer.echo(f"  Next statuses: {', '.join(s.value for s in allowed) or 'none'}")


@project_app.command("list")
def project_list(
    status: Annotated[
        Optional[str],
        typer.Option("--status", help="Filter by status (PLANNED, IN_EXECUTION, COMPLETED, SETTLED)"),
    ] = None,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """List projects"""
    with open_engine(db) as engine:
        projects = engine.list_projects(status.upper() if status else None)

        if json_output:
            echo_json([p.model_dump(mode="json") for p in projects])
            return

        if not projects:
            typer.echo(f"No projects{f' with status {status}' if status else ''}")
            return

        typer.echo(f"Projects ({len(projects)}):")
        for project in projects:
            typer.echo(f"  {project.project_id}: {project.name} [{project.status.value}]")


@project_app.command("status")
def project_status(
    project_id: Annotated[str, typer.Option("--id", help="Project ID")],
    to: Annotated[str, typer.Option("--to", help="Requested status")],
    actor: ActorOption,
    justification: Annotated[
        Optional[str], typer.Option("--justification", help="Reason for the change")
    ] = None,
    db: DbOption = None,
) -> None:
    """Change a project's status"""
    with open_engine(db) as engine:
        before = engine.get_project(project_id)
        project = engine.change_status(project_id, to.upper(), actor, justification)
        if project.version == before.version:
            typer.echo(f"Project already {project.status.value}; nothing changed")
            return
        typer.echo(f"✓ {project.project_id}: {before.status.value} → {project.status.value}")


@project_app.command("history")
def project_history(
    project_id: Annotated[str, typer.Option("--id", help="Project ID")],
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show a project's status history"""
    with open_engine(db) as engine:
        entries = engine.history(project_id)

        if json_output:
            echo_json([e.model_dump(mode="json") for e in entries])
            return

        typer.echo(f"History of {project_id} ({len(entries)} entries):")
        for entry in entries:
            source = entry.previous_status.value if entry.previous_status else "-"
            typer.echo(
                f"  #{entry.sequence} {entry.recorded_at.isoformat()} "
                f"{source} → {entry.status.value} by {entry.actor_id}: {entry.justification}"
            )


@project_app.command("edit")
def project_edit(
    project_id: Annotated[str, typer.Option("--id", help="Project ID")],
    actor: ActorOption,
    name: Annotated[Optional[str], typer.Option("--name")] = None,
    location: Annotated[Optional[str], typer.Option("--location")] = None,
    amount: Annotated[Optional[str], typer.Option("--amount", help="Initial budget amount")] = None,
    start: Annotated[Optional[str], typer.Option("--start")] = None,
    end: Annotated[Optional[str], typer.Option("--end")] = None,
    responsible: Annotated[Optional[str], typer.Option("--responsible")] = None,
    db: DbOption = None,
) -> None:
    """Edit project details"""
    changes = {
        key: value
        for key, value in (
            ("name", name),
            ("location", location),
            ("initial_budget_amount", amount),
            ("planned_start", start),
            ("planned_end", end),
            ("responsible_id", responsible),
        )
        if value is not None
    }
    if not changes:
        typer.echo("Nothing to change", err=True)
        raise typer.Exit(1)

    with open_engine(db) as engine:
        project = engine.update_project(project_id, changes, actor)
        typer.echo(f"✓ Updated project: {project.project_id}")
        typer.echo(f"  Changed: {', '.join(sorted(changes))}")


@project_app.command("delete")
def project_delete(
    project_id: Annotated[str, typer.Option("--id", help="Project ID")],
    actor: ActorOption,
    db: DbOption = None,
) -> None:
    """Delete a PLANNED project"""
    with open_engine(db) as engine:
        engine.delete_project(project_id, actor)
        typer.echo(f"✓ Deleted project: {project_id}")


@project_app.command("progress")
def project_progress(
    project_id: Annotated[str, typer.Option("--id", help="Project ID")],
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show execution progress of the ACTIVE budget"""
    with open_engine(db) as engine:
        progress = engine.progress(project_id)

        if json_output:
            echo_json(progress.model_dump(mode="json"))
            return

        typer.echo(f"\nProgress of {project_id} [{progress.status.value}]")
        if progress.budget_id is None:
            typer.echo("  No ACTIVE budget")
            return
        typer.echo(f"  Budget: v{progress.budget_version} ({progress.budget_id})")
        typer.echo(f"  Assigned: {progress.total_assigned}")
        typer.echo(f"  Executed: {progress.total_executed}")
        typer.echo(f"  Progress: {progress.percent:.1f}%")
        typer.echo(f"  Lines complete: {progress.completed_line_count}/{progress.line_count}")


# Budget commands


@budget_app.command("show")
def budget_show(
    project_id: Annotated[str, typer.Option("--project-id", help="Project ID")],
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show the ACTIVE budget and its lines"""
    with open_engine(db) as engine:
        budget = engine.get_active_budget(project_id)
        if budget is None:
            typer.echo(f"Error: Project {project_id} has no ACTIVE budget", err=True)
            raise typer.Exit(1)
        lines = engine.list_lines(project_id)

        if json_output:
            echo_json(
                {
                    **budget.model_dump(mode="json"),
                    "lines": [
                        {**line.model_dump(mode="json"), "progress_percent": line.progress_percent}
                        for line in lines
                    ],
                }
            )
            return

        typer.echo(f"\nBudget: {budget.budget_id} (v{budget.version}) [{budget.state.value}]")
        typer.echo(f"  Total: {budget.total_amount}")
        typer.echo(f"\n  Lines ({len(lines)}):")
        for line in lines:
            typer.echo(f"\n    {line.name} ({line.line_id})")
            typer.echo(f"      Assigned: {line.assigned_amount}")
            typer.echo(f"      Executed: {line.executed_amount}")
            typer.echo(f"      Remaining: {line.remaining_amount}")
            typer.echo(f"      Progress: {line.progress_percent:.1f}%")


@budget_app.command("new-version")
def budget_new_version(
    project_id: Annotated[str, typer.Option("--project-id", help="Project ID")],
    total: Annotated[str, typer.Option("--total", help="Total amount of the new version")],
    actor: ActorOption,
    db: DbOption = None,
) -> None:
    """Create a new budget version, superseding the ACTIVE one"""
    with open_engine(db) as engine:
        budget = engine.create_budget_version(project_id, total, actor)
        typer.echo(f"✓ Created budget version {budget.version}: {budget.budget_id}")
        typer.echo(f"  Total: {budget.total_amount}")


@budget_app.command("list")
def budget_list(
    project_id: Annotated[str, typer.Option("--project-id", help="Project ID")],
    db: DbOption = None,
) -> None:
    """List all budget versions of a project"""
    with open_engine(db) as engine:
        budgets = engine.list_budgets(project_id)
        if not budgets:
            typer.echo(f"No budgets for project {project_id}")
            return

        typer.echo(f"Budgets ({len(budgets)}):")
        for budget in budgets:
            typer.echo(
                f"  {budget.budget_id}: v{budget.version} [{budget.state.value}] - {budget.total_amount}"
            )


# Line commands


@line_app.command("add")
def line_add(
    project_id: Annotated[str, typer.Option("--project-id", help="Project ID")],
    name: Annotated[str, typer.Option("--name", help="Line name")],
    assigned: Annotated[str, typer.Option("--assigned", help="Assigned amount")],
    actor: ActorOption,
    db: DbOption = None,
) -> None:
    """Add a line to the ACTIVE budget"""
    with open_engine(db) as engine:
        line = engine.add_line(project_id, name, assigned, actor)
        typer.echo(f"✓ Added line: {line.line_id}")
        typer.echo(f"  Name: {line.name}")
        typer.echo(f"  Assigned: {line.assigned_amount}")


@line_app.command("edit")
def line_edit(
    line_id: Annotated[str, typer.Option("--id", help="Line ID")],
    actor: ActorOption,
    name: Annotated[Optional[str], typer.Option("--name")] = None,
    assigned: Annotated[Optional[str], typer.Option("--assigned")] = None,
    db: DbOption = None,
) -> None:
    """Rename a line or change its assigned amount"""
    with open_engine(db) as engine:
        line = engine.ledger.update_line(line_id, actor, name=name, assigned_amount=assigned)
        typer.echo(f"✓ Updated line: {line.line_id}")
        typer.echo(f"  Assigned: {line.assigned_amount} (executed {line.executed_amount})")


@line_app.command("remove")
def line_remove(
    line_id: Annotated[str, typer.Option("--id", help="Line ID")],
    actor: ActorOption,
    db: DbOption = None,
) -> None:
    """Remove a line without expenses"""
    with open_engine(db) as engine:
        engine.ledger.remove_line(line_id, actor)
        typer.echo(f"✓ Removed line: {line_id}")


@line_app.command("list")
def line_list(
    project_id: Annotated[str, typer.Option("--project-id", help="Project ID")],
    budget_id: Annotated[
        Optional[str], typer.Option("--budget-id", help="Budget version (default: ACTIVE)")
    ] = None,
    db: DbOption = None,
) -> None:
    """List budget lines"""
    with open_engine(db) as engine:
        lines = engine.list_lines(project_id, budget_id)
        if not lines:
            typer.echo("No budget lines")
            return

        typer.echo(f"Lines ({len(lines)}):")
        for line in lines:
            typer.echo(
                f"  {line.line_id}: {line.name} - {line.executed_amount}/{line.assigned_amount} "
                f"({line.progress_percent:.1f}%)"
            )


@line_app.command("recompute")
def line_recompute(
    line_id: Annotated[str, typer.Option("--id", help="Line ID")],
    db: DbOption = None,
) -> None:
    """Re-derive a line's executed amount from its expenses"""
    with open_engine(db) as engine:
        line = engine.ledger.recompute_line(line_id)
        typer.echo(f"✓ Recomputed line {line.line_id}: executed {line.executed_amount}")


# Expense commands


@expense_app.command("record")
def expense_record(
    line_id: Annotated[str, typer.Option("--line-id", help="Line ID")],
    amount: Annotated[str, typer.Option("--amount", help="Expense amount")],
    expense_date: Annotated[str, typer.Option("--date", help="Expense date (YYYY-MM-DD)")],
    actor: ActorOption,
    description: Annotated[str, typer.Option("--description")] = "",
    document_ref: Annotated[
        Optional[str], typer.Option("--document-ref", help="Stored document reference")
    ] = None,
    receipt_type: Annotated[Optional[str], typer.Option("--receipt-type")] = None,
    receipt_number: Annotated[Optional[str], typer.Option("--receipt-number")] = None,
    db: DbOption = None,
) -> None:
    """Record an expense against a budget line"""
    with open_engine(db) as engine:
        result = engine.record_expense(
            line_id,
            amount,
            description,
            expense_date,
            actor,
            document_ref=document_ref,
            receipt_type=receipt_type,
            receipt_number=receipt_number,
        )
        typer.echo(f"✓ Recorded expense: {result.expense.expense_id}")
        typer.echo(f"  Line executed: {result.executed_amount} of {result.line.assigned_amount}")
        for alert in result.alerts:
            typer.echo(f"  ! {alert.severity.value} {alert.alert_type.value}: {alert.description}")


@expense_app.command("edit")
def expense_edit(
    expense_id: Annotated[str, typer.Option("--id", help="Expense ID")],
    actor: ActorOption,
    amount: Annotated[Optional[str], typer.Option("--amount")] = None,
    expense_date: Annotated[Optional[str], typer.Option("--date")] = None,
    description: Annotated[Optional[str], typer.Option("--description")] = None,
    document_ref: Annotated[Optional[str], typer.Option("--document-ref")] = None,
    db: DbOption = None,
) -> None:
    """Edit an expense"""
    with open_engine(db) as engine:
        result = engine.ledger.update_expense(
            expense_id,
            actor,
            amount=amount,
            expense_date=expense_date,
            description=description,
            document_ref=document_ref,
        )
        typer.echo(f"✓ Updated expense: {expense_id}")
        typer.echo(f"  Line executed: {result.executed_amount}")
        for alert in result.alerts:
            typer.echo(f"  ! {alert.severity.value} {alert.alert_type.value}: {alert.description}")


@expense_app.command("delete")
def expense_delete(
    expense_id: Annotated[str, typer.Option("--id", help="Expense ID")],
    actor: ActorOption,
    db: DbOption = None,
) -> None:
    """Delete an expense"""
    with open_engine(db) as engine:
        line = engine.ledger.delete_expense(expense_id, actor)
        typer.echo(f"✓ Deleted expense: {expense_id}")
        typer.echo(f"  Line executed: {line.executed_amount}")


@expense_app.command("list")
def expense_list(
    line_id: Annotated[str, typer.Option("--line-id", help="Line ID")],
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """List a line's expenses, newest first"""
    with open_engine(db) as engine:
        listing = engine.list_expenses(line_id)

        if json_output:
            echo_json(listing.model_dump(mode="json"))
            return

        typer.echo(f"Expenses of {listing.line.name} ({len(listing.expenses)}):")
        for expense in listing.expenses:
            typer.echo(
                f"  {expense.expense_date} {expense.expense_id}: {expense.amount} {expense.description}"
            )
        typer.echo(f"  Total: {listing.total}")


# Alert commands


@alert_app.command("list")
def alert_list(
    state: Annotated[Optional[str], typer.Option("--state", help="ACTIVE or ACKNOWLEDGED")] = None,
    severity: Annotated[Optional[str], typer.Option("--severity")] = None,
    alert_type: Annotated[Optional[str], typer.Option("--type", help="Alert type")] = None,
    limit: Annotated[int, typer.Option("--limit")] = 200,
    db: DbOption = None,
    json_output: JsonOption = False,
) -> None:
    """List alerts, newest first"""
    with open_engine(db) as engine:
        try:
            alerts = engine.list_alerts(
                state=state.upper() if state else None,
                severity=severity.upper() if severity else None,
                alert_type=alert_type.upper() if alert_type else None,
                limit=limit,
            )
        except ValueError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)

        if json_output:
            echo_json([a.model_dump(mode="json") for a in alerts])
            return

        if not alerts:
            typer.echo("No alerts")
            return

        typer.echo(f"Alerts ({len(alerts)}):")
        for alert in alerts:
            typer.echo(
                f"  {alert.alert_id} [{alert.state.value}] {alert.severity.value} "
                f"{alert.alert_type.value}: {alert.description}"
            )


@alert_app.command("ack")
def alert_ack(
    alert_id: Annotated[str, typer.Option("--id", help="Alert ID")],
    actor: ActorOption,
    db: DbOption = None,
) -> None:
    """Acknowledge an alert"""
    with open_engine(db) as engine:
        alert = engine.acknowledge_alert(alert_id, actor)
        typer.echo(f"✓ Alert {alert.alert_id} is {alert.state.value}")


@alert_app.command("ack-all")
def alert_ack_all(
    actor: ActorOption,
    alert_type: Annotated[Optional[str], typer.Option("--type", help="Only this alert type")] = None,
    db: DbOption = None,
) -> None:
    """Acknowledge every ACTIVE alert"""
    with open_engine(db) as engine:
        count = engine.acknowledge_all_alerts(actor, alert_type.upper() if alert_type else None)
        typer.echo(f"✓ Acknowledged {count} alert(s)")


def main() -> None:
    """Main entry point"""
    app()


if __name__ == "__main__":
    main()
