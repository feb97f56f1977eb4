"""
Procurement Flow CLI

Command-line interface for the procurement request workflow. Every command
opens the database, resumes all unfinished requests and performs one call.

Usage:
    procurement-flow init --db procurement.db
    procurement-flow sample-data --db procurement.db
    procurement-flow request start --requester helen.kelly --summary "Laptops" \\
        --supplier "Acme Inc." --supplier "Donut Co."
    procurement-flow task list --activity "Complete quotation"
    procurement-flow task quote --task-id <id> --actor giovanna.almeida --price 500
    procurement-flow task review --task-id <id> --actor helen.kelly --select "Acme Inc."
    procurement-flow request show --id 1
"""

from pathlib import Path
from typing import NoReturn, Optional

import typer
from typing_extensions import Annotated

from procurement_flow.engine import ProcurementEngine
from procurement_flow.kernel.errors import WorkflowError
from procurement_flow.kernel.logging import configure_logging
from procurement_flow.kernel.policy import WorkflowPolicy

# Configure logging to stderr (keeps stdout for command output)
configure_logging(json_output=False, log_level="WARNING")

app = typer.Typer(
    name="procurement-flow",
    help="Procurement Flow - supplier quotations, review and selection",
    add_completion=False,
)

# Sub-apps
request_app = typer.Typer(help="Procurement request commands")
task_app = typer.Typer(help="Human task commands")
supplier_app = typer.Typer(help="Supplier directory commands")

app.add_typer(request_app, name="request")
app.add_typer(task_app, name="task")
app.add_typer(supplier_app, name="supplier")

# Global state
DEFAULT_DB = Path(".procurement.db")

DbOption = Annotated[Optional[Path], typer.Option("--db", help="Database path")]
PolicyOption = Annotated[
    Optional[Path], typer.Option("--policy", help="Workflow policy (JSON file)")
]


def get_engine(db_path: Optional[Path] = None, policy_path: Optional[Path] = None) -> ProcurementEngine:
    """Open the engine on an existing database"""
    db = db_path or DEFAULT_DB
    if not db.exists():
        typer.echo(f"Error: Database not found: {db}", err=True)
        typer.echo(f"Run 'procurement-flow init --db {db}' to initialize", err=True)
        raise typer.Exit(1)
    policy = WorkflowPolicy.from_json_file(policy_path) if policy_path else None
    return ProcurementEngine(db, policy=policy)


def fail(error: Exception) -> NoReturn:
    typer.echo(f"Error: {error}", err=True)
    raise typer.Exit(1)


# Initialization commands


@app.command()
def init(
    db: Annotated[
        Path,
        typer.Option(help="Database path"),
    ] = DEFAULT_DB,
) -> None:
    """Initialize a new procurement database"""
    if db.exists():
        typer.echo(f"Error: Database already exists: {db}", err=True)
        raise typer.Exit(1)

    ProcurementEngine(db)
    typer.echo(f"✓ Initialized procurement database: {db}")


@app.command("sample-data")
def sample_data(db: DbOption = None) -> None:
    """Load sample suppliers, users and account managers"""
    engine = get_engine(db)
    summary = engine.initialize_sample_data()

    typer.echo(f"✓ Sample data loaded ({summary.total_created} records created)")
    typer.echo(f"  Suppliers: {summary.suppliers_created}")
    typer.echo(f"  Users: {summary.users_created}")
    typer.echo(f"  Account managers: {summary.account_managers_created}")


# Supplier commands


@supplier_app.command("list")
def supplier_list(db: DbOption = None) -> None:
    """List suppliers"""
    engine = get_engine(db)
    suppliers = engine.find_suppliers(0, 1000)

    if not suppliers:
        typer.echo("No suppliers")
        return

    typer.echo(f"Suppliers ({len(suppliers)}):")
    for supplier in suppliers:
        typer.echo(f"  {supplier.persistence_id}: {supplier.name}")


# Request commands


@request_app.command("start")
def request_start(
    requester: Annotated[str, typer.Option("--requester", help="Requester username")],
    summary: Annotated[str, typer.Option("--summary", help="Request summary")],
    supplier: Annotated[
        Optional[list[str]],
        typer.Option("--supplier", help="Supplier name to invite (repeatable)"),
    ] = None,
    description: Annotated[
        str, typer.Option("--description", help="Request description")
    ] = "",
    db: DbOption = None,
    policy: PolicyOption = None,
) -> None:
    """Start a procurement request"""
    engine = get_engine(db, policy)

    supplier_ids = []
    for name in supplier or []:
        found = engine.domain_store.find_supplier_by_name(name)
        if found is None:
            typer.echo(f"Error: Supplier not found: {name}", err=True)
            raise typer.Exit(1)
        supplier_ids.append(found.persistence_id)

    try:
        handle = engine.start_request(requester, summary, description, supplier_ids)
    except WorkflowError as e:
        fail(e)

    request = engine.get_request(handle.request_id)
    typer.echo(f"✓ Started request: {handle.request_id}")
    typer.echo(f"  Case: {handle.case_id}")
    typer.echo(f"  Status: {request.status.value}")
    typer.echo(f"  Suppliers invited: {len(supplier_ids)}")


@request_app.command("show")
def request_show(
    request_id: Annotated[int, typer.Option("--id", help="Request ID")],
    db: DbOption = None,
) -> None:
    """Show a request and its quotations"""
    engine = get_engine(db)

    try:
        request = engine.get_request(request_id)
        quotations = engine.get_quotations(request_id)
    except WorkflowError as e:
        fail(e)

    suppliers = {s.persistence_id: s.name for s in engine.find_suppliers(0, 1000)}

    typer.echo(f"Request {request.persistence_id}: {request.summary}")
    typer.echo(f"  Case: {request.case_id}")
    typer.echo(f"  Created by: {request.created_by} on {request.creation_date}")
    typer.echo(f"  Status: {request.status.value}")
    if request.completion_date:
        typer.echo(f"  Completed on: {request.completion_date}")
    if request.selected_supplier_id is not None:
        typer.echo(f"  Selected supplier: {suppliers.get(request.selected_supplier_id)}")

    typer.echo(f"  Quotations ({len(quotations)}):")
    for quotation in quotations:
        line = f"    {suppliers.get(quotation.supplier_id)}: {quotation.status.value}"
        if quotation.status.value == "Completed":
            answer = "accepted" if quotation.has_supplier_accepted else "declined"
            line += f", {answer}"
            if quotation.proposed_price is not None:
                line += f", price {quotation.proposed_price}"
        typer.echo(line)


# Task commands


@task_app.command("list")
def task_list(
    activity: Annotated[
        Optional[str], typer.Option("--activity", help="Activity name (default: all)")
    ] = None,
    candidate: Annotated[
        Optional[str], typer.Option("--candidate", help="Only tasks this user may execute")
    ] = None,
    db: DbOption = None,
    policy: PolicyOption = None,
) -> None:
    """List pending tasks"""
    engine = get_engine(db, policy)
    activities = (
        [activity]
        if activity
        else [engine.policy.quotation_activity, engine.policy.review_activity]
    )

    tasks = [
        task
        for name in activities
        for task in engine.list_pending_tasks(name, candidate=candidate)
    ]
    if not tasks:
        typer.echo("No pending tasks")
        return

    typer.echo(f"Pending tasks ({len(tasks)}):")
    for task in tasks:
        flag = " [unassignable]" if task.unassignable else ""
        typer.echo(f"  {task.task_id}: {task.activity} (case {task.process_instance_id}){flag}")
        typer.echo(f"    Candidates: {', '.join(sorted(task.candidates)) or '-'}")


@task_app.command("quote")
def task_quote(
    task_id: Annotated[str, typer.Option("--task-id", help="Quotation task ID")],
    actor: Annotated[str, typer.Option("--actor", help="Executing user")],
    price: Annotated[
        Optional[str], typer.Option("--price", help="Proposed price")
    ] = None,
    accepted: Annotated[
        bool, typer.Option("--accepted/--declined", help="Supplier accepts the request")
    ] = True,
    comments: Annotated[str, typer.Option("--comments", help="Comments")] = "",
    db: DbOption = None,
    policy: PolicyOption = None,
) -> None:
    """Complete a quotation task"""
    engine = get_engine(db, policy)

    task_input = {
        "hasSupplierAccepted": accepted,
        "price": price,
        "comments": comments,
    }
    try:
        engine.execute_task(task_id, actor, task_input)
    except WorkflowError as e:
        fail(e)

    typer.echo(f"✓ Quotation submitted: {task_id}")


@task_app.command("review")
def task_review(
    task_id: Annotated[str, typer.Option("--task-id", help="Review task ID")],
    actor: Annotated[str, typer.Option("--actor", help="Executing user")],
    select: Annotated[
        Optional[str],
        typer.Option("--select", help="Supplier name or ID to select (omit to abort)"),
    ] = None,
    db: DbOption = None,
    policy: PolicyOption = None,
) -> None:
    """Review quotations and select a supplier"""
    engine = get_engine(db, policy)

    selected = select
    if select and not select.isdigit():
        found = engine.domain_store.find_supplier_by_name(select)
        if found is not None:
            selected = str(found.persistence_id)

    try:
        engine.execute_task(task_id, actor, {"selectedSupplierId": selected})
        binding = engine.get_task(task_id).binding
        status = engine.get_request_status(binding["request_id"])
    except WorkflowError as e:
        fail(e)

    typer.echo(f"✓ Review completed: {task_id}")
    typer.echo(f"  Request status: {status.value}")


def main() -> None:
    """Main entry point"""
    app()


if __name__ == "__main__":
    main()
