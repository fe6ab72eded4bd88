"""
tenderdesk CLI

Command-line interface over the TenderDesk façade.

Usage:
    tenderdesk init --db tenders.db
    tenderdesk tender create --owner acme --role company --title "Roof repair" \\
        --description "..." --budget 5000 --deadline 2025-02-01T12:00:00+00:00 --workflow closed
    tenderdesk tender publish --id <tender_id> --actor acme
    tenderdesk scheduler scan
    tenderdesk tender reveal --id <tender_id> --actor acme
    tenderdesk scheduler run --metrics-port 9090
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import typer
from typing_extensions import Annotated

from tenderdesk.desk import TenderDesk
from tenderdesk.kernel.errors import InvariantViolation, TransitionRejected
from tenderdesk.kernel.logging import configure_logging, is_production
from tenderdesk.kernel.metrics import start_metrics_server
from tenderdesk.kernel.policy import LifecyclePolicy
from tenderdesk.kernel.timeout import scan_execution_timeout
from tenderdesk.tender.models import Tender, summarize

# Logs go to stderr so --json output stays parseable
configure_logging(json_output=is_production(), log_level="WARNING")

app = typer.Typer(
    name="tenderdesk",
    help="tenderdesk - tender lifecycle and sealed-bid engine",
    add_completion=False,
)

tender_app = typer.Typer(help="Tender lifecycle commands")
proposal_app = typer.Typer(help="Proposal commands")
scheduler_app = typer.Typer(help="Deadline scheduler commands")

app.add_typer(tender_app, name="tender")
app.add_typer(proposal_app, name="proposal")
app.add_typer(scheduler_app, name="scheduler")

DEFAULT_DB = Path(".tenderdesk.db")

DbOption = Annotated[Optional[Path], typer.Option("--db", help="Database path")]
JsonOption = Annotated[bool, typer.Option("--json", help="Output as JSON")]


def get_desk(db_path: Optional[Path] = None) -> TenderDesk:
    """Open the desk on an existing database"""
    db = db_path or DEFAULT_DB
    if not db.exists():
        typer.echo(f"Error: Database not found: {db}", err=True)
        typer.echo(f"Run 'tenderdesk init --db {db}' to initialize", err=True)
        raise typer.Exit(1)
    return TenderDesk(db, policy=LifecyclePolicy.from_env())


def fail(error: Exception) -> None:
    """Print a rejection or invariant violation and exit non-zero"""
    if isinstance(error, TransitionRejected):
        typer.echo(f"✗ Rejected [{error.code.value}]: {error.message}", err=True)
    else:
        typer.echo(f"✗ Error: {error}", err=True)
    raise typer.Exit(1)


def echo_tender(tender: Tender, headline: str) -> None:
    typer.echo(f"✓ {headline}: {tender.tender_id}")
    typer.echo(f"  Status: {tender.status.value}")
    typer.echo(f"  Workflow: {tender.workflow_type.value}")
    if tender.deadline:
        typer.echo(f"  Deadline: {tender.deadline.isoformat()}")
    if tender.revealed_at:
        typer.echo(f"  Revealed at: {tender.revealed_at.isoformat()}")


def parse_deadline(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        typer.echo(f"Error: Invalid deadline (use ISO 8601): {value}", err=True)
        raise typer.Exit(1)


# Initialization command


@app.command()
def init(
    db: Annotated[Path, typer.Option(help="Database path")] = DEFAULT_DB,
) -> None:
    """Initialize a new tenderdesk database"""
    if db.exists():
        typer.echo(f"Error: Database already exists: {db}", err=True)
        raise typer.Exit(1)

    TenderDesk(db)
    typer.echo(f"✓ Initialized tenderdesk database: {db}")


# Tender commands


@tender_app.command("create")
def tender_create(
    owner: Annotated[str, typer.Option("--owner", help="Owner user ID")],
    role: Annotated[str, typer.Option("--role", help="Owner role (company, organization, admin)")],
    title: Annotated[str, typer.Option("--title", help="Tender title")] = "",
    description: Annotated[str, typer.Option("--description", help="Tender description")] = "",
    category: Annotated[
        str, typer.Option("--category", help="freelance or professional")
    ] = "professional",
    workflow: Annotated[str, typer.Option("--workflow", help="open or closed")] = "open",
    deadline: Annotated[
        Optional[str], typer.Option("--deadline", help="Deadline (ISO 8601)")
    ] = None,
    budget: Annotated[Optional[str], typer.Option("--budget", help="Budget amount")] = None,
    visibility: Annotated[
        str,
        typer.Option(
            "--visibility",
            help="public, invite_only, companies_only or freelancers_only",
        ),
    ] = "public",
    invite: Annotated[
        Optional[list[str]], typer.Option("--invite", help="Invited user ID (repeatable)")
    ] = None,
    db: DbOption = None,
) -> None:
    """Create a draft tender"""
    desk = get_desk(db)
    try:
        tender = desk.create_tender(
            owner,
            role,
            title=title,
            description=description,
            category=category,
            workflow_type=workflow,
            deadline=parse_deadline(deadline),
            budget=budget,
            visibility_type=visibility,
            invited_users=invite or [],
        )
    except (TransitionRejected, ValueError) as e:
        fail(e)
    echo_tender(tender, "Created tender")


@tender_app.command("publish")
def tender_publish(
    tender_id: Annotated[str, typer.Option("--id", help="Tender ID")],
    actor: Annotated[str, typer.Option("--actor", help="Acting user ID")],
    db: DbOption = None,
) -> None:
    """Publish a draft tender (closed workflow locks immediately)"""
    desk = get_desk(db)
    try:
        tender = desk.publish_tender(tender_id, actor)
    except TransitionRejected as e:
        fail(e)
    echo_tender(tender, "Published tender")


@tender_app.command("edit")
def tender_edit(
    tender_id: Annotated[str, typer.Option("--id", help="Tender ID")],
    actor: Annotated[str, typer.Option("--actor", help="Acting user ID")],
    role: Annotated[Optional[str], typer.Option("--role", help="Acting user role")] = None,
    title: Annotated[Optional[str], typer.Option("--title")] = None,
    description: Annotated[Optional[str], typer.Option("--description")] = None,
    deadline: Annotated[Optional[str], typer.Option("--deadline", help="ISO 8601")] = None,
    budget: Annotated[Optional[str], typer.Option("--budget")] = None,
    workflow: Annotated[Optional[str], typer.Option("--workflow", help="open or closed")] = None,
    db: DbOption = None,
) -> None:
    """Edit a draft or an open-workflow published tender"""
    desk = get_desk(db)
    changes: dict[str, Any] = {
        "title": title,
        "description": description,
        "deadline": parse_deadline(deadline),
        "budget": budget,
        "workflow_type": workflow,
    }
    changes = {k: v for k, v in changes.items() if v is not None}
    if not changes:
        typer.echo("Error: Nothing to change", err=True)
        raise typer.Exit(1)
    try:
        tender = desk.edit_tender(tender_id, actor, role, **changes)
    except (TransitionRejected, InvariantViolation, ValueError) as e:
        fail(e)
    echo_tender(tender, "Updated tender")


@tender_app.command("reveal")
def tender_reveal(
    tender_id: Annotated[str, typer.Option("--id", help="Tender ID")],
    actor: Annotated[str, typer.Option("--actor", help="Acting user ID")],
    role: Annotated[Optional[str], typer.Option("--role", help="Acting user role")] = None,
    db: DbOption = None,
) -> None:
    """Reveal the sealed proposals of a closed-workflow tender"""
    desk = get_desk(db)
    try:
        tender = desk.reveal_proposals(tender_id, actor, role)
    except TransitionRejected as e:
        fail(e)
    echo_tender(tender, "Revealed proposals")
    typer.echo(f"  Proposals: {len(tender.proposals)}")


@tender_app.command("moderate")
def tender_moderate(
    tender_id: Annotated[str, typer.Option("--id", help="Tender ID")],
    action: Annotated[str, typer.Option("--action", help="flag or approve")],
    actor: Annotated[str, typer.Option("--actor", help="Admin user ID")],
    role: Annotated[str, typer.Option("--role", help="Acting user role")] = "admin",
    reason: Annotated[Optional[str], typer.Option("--reason", help="Moderation reason")] = None,
    db: DbOption = None,
) -> None:
    """Flag (cancel) or approve (restore) a tender"""
    desk = get_desk(db)
    try:
        tender = desk.moderate_tender(tender_id, action, actor, role, reason=reason)
    except (TransitionRejected, ValueError) as e:
        fail(e)
    echo_tender(tender, "Moderated tender")


@tender_app.command("delete")
def tender_delete(
    tender_id: Annotated[str, typer.Option("--id", help="Tender ID")],
    actor: Annotated[str, typer.Option("--actor", help="Acting user ID")],
    role: Annotated[Optional[str], typer.Option("--role", help="Acting user role")] = None,
    db: DbOption = None,
) -> None:
    """Soft-delete a tender without proposals"""
    desk = get_desk(db)
    try:
        desk.delete_tender(tender_id, actor, role)
    except TransitionRejected as e:
        fail(e)
    typer.echo(f"✓ Deleted tender: {tender_id}")


@tender_app.command("show")
def tender_show(
    tender_id: Annotated[str, typer.Option("--id", help="Tender ID")],
    caller: Annotated[Optional[str], typer.Option("--as", help="Caller user ID")] = None,
    role: Annotated[Optional[str], typer.Option("--role", help="Caller role")] = None,
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """Show a tender as a given caller would see it"""
    desk = get_desk(db)
    try:
        view = desk.view_tender(tender_id, caller, role)
    except TransitionRejected as e:
        fail(e)

    if json_output:
        typer.echo(json.dumps(view, indent=2, default=str))
        return

    typer.echo(f"Tender: {view['title'] or '(untitled)'}")
    typer.echo(f"  ID: {view['tender_id']}")
    typer.echo(f"  Status: {view['status']}")
    typer.echo(f"  Workflow: {view['workflow_type']}")
    typer.echo(f"  Category: {view['category']}")
    typer.echo(f"  Deadline: {view['deadline']}")
    typer.echo(f"  Budget: {view['budget']}")
    typer.echo(f"  Proposals: {view['proposal_count']}")
    if "proposals" not in view and view["workflow_type"] == "closed":
        typer.echo("  (proposals sealed)")


@tender_app.command("list")
def tender_list(
    status: Annotated[Optional[str], typer.Option("--status", help="Filter by status")] = None,
    caller: Annotated[Optional[str], typer.Option("--as", help="Caller user ID")] = None,
    role: Annotated[Optional[str], typer.Option("--role", help="Caller role")] = None,
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """List tenders visible to a caller"""
    desk = get_desk(db)
    try:
        tenders = desk.list_tenders(caller, role, status=status)
    except ValueError as e:
        fail(e)

    if json_output:
        typer.echo(json.dumps(tenders, indent=2, default=str))
        return

    if not tenders:
        typer.echo("No tenders found")
        return

    typer.echo(f"Tenders ({len(tenders)}):")
    for t in tenders:
        typer.echo(f"  {t['tender_id']}: {t['title'] or '(untitled)'}")
        typer.echo(
            f"    {t['status']} | {t['workflow_type']} | deadline {t['deadline']} "
            f"| {t['proposal_count']} proposal(s)"
        )


@tender_app.command("access")
def tender_access(
    tender_id: Annotated[str, typer.Option("--id", help="Tender ID")],
    caller: Annotated[Optional[str], typer.Option("--as", help="Caller user ID")] = None,
    role: Annotated[Optional[str], typer.Option("--role", help="Caller role")] = None,
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """Show view/apply/proposal/edit decisions for a caller"""
    desk = get_desk(db)
    try:
        decisions = desk.access(tender_id, caller, role)
    except TransitionRejected as e:
        fail(e)

    if json_output:
        typer.echo(json.dumps(decisions, indent=2))
        return

    for key in ("can_view", "can_apply", "can_view_proposals", "can_edit"):
        typer.echo(f"  {key}: {'yes' if decisions[key] else 'no'}")
    if decisions["apply_denied_reason"]:
        typer.echo(f"  apply denied: {decisions['apply_denied_reason']}")


# Proposal commands


@proposal_app.command("submit")
def proposal_submit(
    tender_id: Annotated[str, typer.Option("--tender-id", help="Tender ID")],
    bidder: Annotated[str, typer.Option("--bidder", help="Bidder user ID")],
    role: Annotated[str, typer.Option("--role", help="Bidder role (freelancer or company)")],
    amount: Annotated[str, typer.Option("--amount", help="Bid amount")],
    db: DbOption = None,
) -> None:
    """Submit a proposal to an accepting tender"""
    desk = get_desk(db)
    try:
        tender = desk.submit_proposal(tender_id, bidder, role, amount)
    except (TransitionRejected, ValueError, ArithmeticError) as e:
        fail(e)
    proposal = next(p for p in reversed(tender.proposals) if p.bidder_id == bidder)
    typer.echo(f"✓ Submitted proposal: {proposal.proposal_id}")
    typer.echo(f"  Tender: {tender_id}")


# Scheduler commands


@scheduler_app.command("scan")
def scheduler_scan(db: DbOption = None) -> None:
    """Run one deadline scan"""
    desk = get_desk(db)
    with scan_execution_timeout("deadline_scan"):
        result = desk.run_deadline_scan()
    typer.echo(f"✓ {result.summary()}")
    for tender_id in result.transitioned:
        typer.echo(f"  transitioned: {tender_id}")
    for tender_id, error in result.failed.items():
        typer.echo(f"  failed: {tender_id}: {error}", err=True)


@scheduler_app.command("check-reveals")
def scheduler_check_reveals(db: DbOption = None) -> None:
    """Run one stuck-reveal check"""
    desk = get_desk(db)
    with scan_execution_timeout("reveal_check"):
        result = desk.run_stuck_reveal_check()
    typer.echo(f"✓ {result.summary()}")
    for tender_id in result.notified:
        typer.echo(f"  reveal pending: {tender_id}")


@scheduler_app.command("run")
def scheduler_run(
    metrics_port: Annotated[
        Optional[int], typer.Option("--metrics-port", help="Expose Prometheus metrics on this port")
    ] = None,
    db: DbOption = None,
) -> None:
    """Run the scheduler in the foreground until interrupted"""
    desk = get_desk(db)
    if metrics_port:
        start_metrics_server(metrics_port)
        typer.echo(f"  Metrics on :{metrics_port}/metrics")
    desk.start_scheduler()
    typer.echo(
        f"✓ Scheduler running (scan every {desk.policy.scan_interval_seconds:g}s, "
        f"reveal check every {desk.policy.reveal_check_interval_seconds:g}s)"
    )
    try:
        desk.scheduler.wait()
    except KeyboardInterrupt:
        typer.echo("Stopping scheduler")
    finally:
        desk.stop_scheduler()


@app.command()
def serve(
    port: Annotated[int, typer.Option("--port", help="HTTP port")] = 8080,
    with_scheduler: Annotated[
        bool, typer.Option("--with-scheduler/--no-scheduler", help="Run the scheduler too")
    ] = True,
    db: DbOption = None,
) -> None:
    """Serve the HTTP API"""
    from tenderdesk.http_server import initialize_http_server, run_http_server

    desk = get_desk(db)
    initialize_http_server(desk)
    if with_scheduler:
        desk.start_scheduler()
    try:
        run_http_server(port=port)
    finally:
        desk.stop_scheduler()


@app.command()
def version() -> None:
    """Show version"""
    from tenderdesk import __version__

    typer.echo(f"tenderdesk {__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
