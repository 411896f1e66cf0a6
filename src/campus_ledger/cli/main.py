"""
Campus Ledger CLI

Command-line interface for the campus ledger.
Provides commands for identifiers, budget accounts, upstream approvals,
applications, scholarships, payroll and operational follow-up.

Usage:
    campus-ledger init --db campus.db
    campus-ledger allocate --namespace UCAES --period 2025
    campus-ledger account open --name "AA Ops" --department "Academic Affairs" ...
    campus-ledger ingest submit --collection procurement-requests --document PR-1 --data '{...}'
    campus-ledger application transfer --id UCAES20250001
    campus-ledger scholarship award --student S1 --amount 4000 --year 2025/2026
    campus-ledger attention
"""

import json
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Optional

import typer
from typing_extensions import Annotated

from campus_ledger.kernel.errors import CampusLedgerError, ValidationError
from campus_ledger.kernel.logging import configure_logging
from campus_ledger.ledger.models import SourceEventStatus
from campus_ledger.ledger_app import CampusLedger

# Configure logging to stderr (avoids polluting stdout for JSON output)
configure_logging(json_output=False, log_level="INFO")

app = typer.Typer(
    name="campus-ledger",
    help="Campus Ledger - idempotent budgets and sequential identifiers",
    add_completion=False,
)

# Sub-apps
account_app = typer.Typer(help="Budget account commands")
expense_app = typer.Typer(help="Direct expense commands")
ingest_app = typer.Typer(help="Upstream document commands")
application_app = typer.Typer(help="Admission application commands")
scholarship_app = typer.Typer(help="Scholarship disbursement commands")
payroll_app = typer.Typer(help="Payroll batch commands")

app.add_typer(account_app, name="account")
app.add_typer(expense_app, name="expense")
app.add_typer(ingest_app, name="ingest")
app.add_typer(application_app, name="application")
app.add_typer(scholarship_app, name="scholarship")
app.add_typer(payroll_app, name="payroll")

# Global state
DEFAULT_DB = Path(".campus-ledger.db")

DbOption = Annotated[Optional[Path], typer.Option("--db", help="Database path")]
JsonOption = Annotated[bool, typer.Option("--json", help="Output as JSON")]


def get_ledger(db_path: Optional[Path] = None) -> CampusLedger:
    """Get CampusLedger instance"""
    db = db_path or DEFAULT_DB
    if not db.exists():
        typer.echo(f"Error: Database not found: {db}", err=True)
        typer.echo(f"Run 'campus-ledger init --db {db}' to initialize", err=True)
        raise typer.Exit(1)
    return CampusLedger(db)


@contextmanager
def reported_errors() -> Iterator[None]:
    """Turn ledger errors into a message on stderr and exit code 1"""
    try:
        yield
    except CampusLedgerError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e


def parse_json(raw: Optional[str], option: str) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"{option} is not valid JSON", [option]) from e


def echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


# Initialization & identifiers


@app.command()
def init(
    db: Annotated[Path, typer.Option(help="Database path")] = DEFAULT_DB,
) -> None:
    """Initialize a new ledger database"""
    if db.exists():
        typer.echo(f"Error: Database already exists: {db}", err=True)
        raise typer.Exit(1)

    CampusLedger(db)
    typer.echo(f"✓ Initialized ledger database: {db}")


@app.command()
def allocate(
    namespace: Annotated[str, typer.Option("--namespace", help="Identifier prefix, e.g. UCAES")],
    period: Annotated[str, typer.Option("--period", help="Period key, e.g. 2025")],
    count: Annotated[int, typer.Option("--count", min=1, help="How many to allocate")] = 1,
    db: DbOption = None,
) -> None:
    """Allocate sequential identifiers"""
    ledger = get_ledger(db)
    with reported_errors():
        for _ in range(count):
            typer.echo(ledger.allocate(namespace, period))


# Budget accounts


@account_app.command("open")
def account_open(
    name: Annotated[str, typer.Option("--name", help="Account name")],
    department: Annotated[str, typer.Option("--department", help="Owning department")],
    category: Annotated[str, typer.Option("--category", help="Spending category")],
    academic_year: Annotated[str, typer.Option("--year", help="Academic year, e.g. 2025/2026")],
    amount: Annotated[str, typer.Option("--amount", help="Allocated amount")],
    account_id: Annotated[Optional[str], typer.Option("--id", help="Account ID")] = None,
    db: DbOption = None,
) -> None:
    """Open a budget account"""
    ledger = get_ledger(db)
    with reported_errors():
        account = ledger.open_account(
            name=name,
            department=department,
            category=category,
            academic_year=academic_year,
            allocated_amount=amount,
            account_id=account_id,
        )

    typer.echo(f"✓ Opened budget account: {account.id}")
    typer.echo(f"  Department: {account.department}")
    typer.echo(f"  Category: {account.category}")
    typer.echo(f"  Allocated: {account.allocated_amount}")


@account_app.command("list")
def account_list(
    department: Annotated[Optional[str], typer.Option("--department", help="Filter by department")] = None,
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """List budget accounts"""
    ledger = get_ledger(db)
    accounts = ledger.ledger.list_accounts(department)

    if json_output:
        echo_json([a.model_dump(mode="json") for a in accounts])
        return
    if not accounts:
        typer.echo("No budget accounts")
        return

    typer.echo(f"Budget Accounts ({len(accounts)}):")
    for a in accounts:
        typer.echo(
            f"  {a.id}: {a.name} [{a.status.value}] "
            f"spent {a.spent_amount} of {a.allocated_amount} ({a.utilization:.1%})"
        )


@account_app.command("show")
def account_show(
    account_id: Annotated[str, typer.Option("--id", help="Account ID")],
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """Show a budget account and its transactions"""
    ledger = get_ledger(db)
    with reported_errors():
        account = ledger.ledger.get_account(account_id)
    transactions = ledger.ledger.list_transactions(account_id)

    if json_output:
        echo_json(
            {
                "account": account.model_dump(mode="json"),
                "transactions": [t.model_dump(mode="json") for t in transactions],
            }
        )
        return

    typer.echo(f"\nBudget Account: {account.id}")
    typer.echo(f"  Name: {account.name}")
    typer.echo(f"  Department: {account.department} / {account.category}")
    typer.echo(f"  Academic Year: {account.academic_year}")
    typer.echo(f"  Status: {account.status.value}")
    typer.echo(f"  Allocated: {account.allocated_amount}")
    typer.echo(f"  Spent: {account.spent_amount}")
    typer.echo(f"  Remaining: {account.remaining_amount}")
    typer.echo(f"\nTransactions ({len(transactions)}):")
    for t in transactions:
        typer.echo(f"  {t.id}: {t.amount} ({t.source_event_id})")


@account_app.command("adjust")
def account_adjust(
    account_id: Annotated[str, typer.Option("--id", help="Account ID")],
    amount: Annotated[str, typer.Option("--amount", help="New allocated amount")],
    db: DbOption = None,
) -> None:
    """Change an account's allocation"""
    ledger = get_ledger(db)
    with reported_errors():
        account = ledger.ledger.adjust_allocation(account_id, amount)
    typer.echo(f"✓ Adjusted {account.id}: allocated {account.allocated_amount}, status {account.status.value}")


@account_app.command("verify")
def account_verify(
    account_id: Annotated[str, typer.Option("--id", help="Account ID")],
    db: DbOption = None,
) -> None:
    """Check an account's balances against its transactions"""
    ledger = get_ledger(db)
    with reported_errors():
        result = ledger.ledger.verify_account(account_id)

    if result.consistent:
        typer.echo(f"✓ {account_id} consistent ({result.transaction_count} transactions)")
        return
    typer.echo(f"✗ {account_id} inconsistent:", err=True)
    for problem in result.problems:
        typer.echo(f"  - {problem}", err=True)
    raise typer.Exit(1)


# Expenses


@expense_app.command("record")
def expense_record(
    collection: Annotated[str, typer.Option("--collection", help="Source collection")],
    document_id: Annotated[str, typer.Option("--document", help="Source document ID")],
    amount: Annotated[str, typer.Option("--amount", help="Expense amount")],
    category: Annotated[str, typer.Option("--category", help="Spending category")],
    department: Annotated[Optional[str], typer.Option("--department", help="Department")] = None,
    requested_by: Annotated[str, typer.Option("--by", help="Approver")] = "System",
    description: Annotated[str, typer.Option("--description", help="Description")] = "",
    db: DbOption = None,
) -> None:
    """Record an expense exactly once per source document"""
    ledger = get_ledger(db)
    with reported_errors():
        outcome = ledger.record_expense(
            collection=collection,
            document_id=document_id,
            amount=amount,
            category=category,
            department=department,
            requested_by=requested_by,
            description=description,
        )
    echo_json(outcome.to_contract() | {"duplicate": outcome.duplicate})


# Upstream documents


@ingest_app.command("submit")
def ingest_submit(
    collection: Annotated[str, typer.Option("--collection", help="Upstream collection")],
    document_id: Annotated[str, typer.Option("--document", help="Document ID")],
    data: Annotated[str, typer.Option("--data", help="Document body (JSON object)")],
    db: DbOption = None,
) -> None:
    """Write an upstream document and let the watcher react to it"""
    ledger = get_ledger(db)
    with reported_errors():
        body = parse_json(data, "--data")
        if not isinstance(body, dict):
            raise ValidationError("--data must be a JSON object", ["--data"])
        ledger.submit_upstream_document(collection, document_id, body)
        event = ledger.ledger.get_source_event(collection, document_id)

    typer.echo(f"✓ Submitted {collection}/{document_id}")
    if event is not None:
        typer.echo(f"  Ledger status: {event.status.value}")
        if event.budget_account_id:
            typer.echo(f"  Budget: {event.budget_account_id}")


@ingest_app.command("failed")
def ingest_failed(
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """List upstream documents whose processing failed"""
    ledger = get_ledger(db)
    events = ledger.ledger.list_source_events(SourceEventStatus.PROCESSING_FAILED)

    if json_output:
        echo_json([e.model_dump(mode="json") for e in events])
        return
    typer.echo(f"Failed source events: {len(events)}")
    for e in events:
        typer.echo(f"  {e.id}: {e.error}")


# Applications


@application_app.command("create")
def application_create(
    email: Annotated[str, typer.Option("--email", help="Applicant email")],
    sections: Annotated[Optional[str], typer.Option("--sections", help="Form sections (JSON)")] = None,
    db: DbOption = None,
) -> None:
    """Create a draft application"""
    ledger = get_ledger(db)
    with reported_errors():
        application = ledger.create_application(email, parse_json(sections, "--sections"))
    typer.echo(f"✓ Created application: {application.id}")


@application_app.command("transition")
def application_transition(
    application_id: Annotated[str, typer.Option("--id", help="Application ID")],
    status: Annotated[str, typer.Option("--status", help="Target status")],
    actor: Annotated[str, typer.Option("--actor", help="Staff member")] = "system",
    db: DbOption = None,
) -> None:
    """Move an application to a new status"""
    ledger = get_ledger(db)
    with reported_errors():
        application = ledger.transition_application(application_id, status, actor=actor)
    typer.echo(f"✓ {application.id} is now {application.status.value}")


@application_app.command("override")
def application_override(
    application_id: Annotated[str, typer.Option("--id", help="Application ID")],
    reason: Annotated[str, typer.Option("--reason", help="Why the rejection is overridden")],
    actor: Annotated[str, typer.Option("--actor", help="Staff member")] = "system",
    db: DbOption = None,
) -> None:
    """Accept a previously rejected application"""
    ledger = get_ledger(db)
    with reported_errors():
        application = ledger.override_application(application_id, reason, actor=actor)
    typer.echo(f"✓ {application.id} overridden to {application.status.value}")


@application_app.command("transfer")
def application_transfer(
    application_id: Annotated[str, typer.Option("--id", help="Application ID")],
    db: DbOption = None,
) -> None:
    """Transfer an accepted application into an enrollment record"""
    ledger = get_ledger(db)
    result = ledger.lifecycle.transfer(application_id)
    echo_json(result)
    if not result["success"]:
        raise typer.Exit(1)


@application_app.command("status")
def application_status(
    application_id: Annotated[str, typer.Option("--id", help="Application ID")],
    db: DbOption = None,
) -> None:
    """Show an application's transfer status"""
    ledger = get_ledger(db)
    with reported_errors():
        echo_json(ledger.lifecycle.get_transfer_status(application_id))


# Scholarships


@scholarship_app.command("award")
def scholarship_award(
    student_id: Annotated[str, typer.Option("--student", help="Student ID")],
    amount: Annotated[str, typer.Option("--amount", help="Total award")],
    academic_year: Annotated[str, typer.Option("--year", help="Academic year, e.g. 2025/2026")],
    plan: Annotated[str, typer.Option("--plan", help="semester, annual or custom")] = "semester",
    period: Annotated[Optional[str], typer.Option("--period", help="Start period, e.g. 2025/2026-S1")] = None,
    custom: Annotated[Optional[str], typer.Option("--custom", help="Custom plan (JSON array)")] = None,
    name: Annotated[str, typer.Option("--name", help="Scholarship name")] = "",
    scholarship_id: Annotated[Optional[str], typer.Option("--id", help="Scholarship ID")] = None,
    db: DbOption = None,
) -> None:
    """Award a scholarship and schedule its disbursements"""
    ledger = get_ledger(db)
    with reported_errors():
        award, schedule = ledger.award_scholarship(
            student_id=student_id,
            total_amount=amount,
            academic_year=academic_year,
            period=period,
            plan=plan,
            name=name,
            custom_plan=parse_json(custom, "--custom"),
            scholarship_id=scholarship_id,
        )

    typer.echo(f"✓ Awarded scholarship: {award.id}")
    for d in schedule:
        typer.echo(f"  {d.id}: {d.amount} on {d.planned_date.date()} [{d.status.value}]")


@scholarship_app.command("process")
def scholarship_process(
    disbursement_id: Annotated[str, typer.Option("--id", help="Disbursement ID")],
    db: DbOption = None,
) -> None:
    """Pay out one pending disbursement"""
    ledger = get_ledger(db)
    with reported_errors():
        disbursement = ledger.process_disbursement(disbursement_id)
    echo_json(disbursement.to_contract())
    if disbursement.status.value != "disbursed":
        raise typer.Exit(1)


@scholarship_app.command("process-pending")
def scholarship_process_pending(
    period: Annotated[str, typer.Option("--period", help="Academic period, e.g. 2025/2026-S1")],
    db: DbOption = None,
) -> None:
    """Pay out every pending disbursement of a period"""
    ledger = get_ledger(db)
    with reported_errors():
        processed = ledger.scheduler.process_pending(period)
    for d in processed:
        typer.echo(f"  {d.id}: {d.status.value}")
    typer.echo(f"Processed {len(processed)} disbursements")


@scholarship_app.command("retry")
def scholarship_retry(
    disbursement_id: Annotated[str, typer.Option("--id", help="Disbursement ID")],
    db: DbOption = None,
) -> None:
    """Retry a failed, retriable disbursement"""
    ledger = get_ledger(db)
    with reported_errors():
        disbursement = ledger.scheduler.retry_disbursement(disbursement_id)
    echo_json(disbursement.to_contract())


@scholarship_app.command("cancel")
def scholarship_cancel(
    disbursement_id: Annotated[str, typer.Option("--id", help="Disbursement ID")],
    db: DbOption = None,
) -> None:
    """Cancel a disbursement that has not been paid"""
    ledger = get_ledger(db)
    with reported_errors():
        disbursement = ledger.scheduler.cancel_disbursement(disbursement_id)
    typer.echo(f"✓ Cancelled {disbursement.id}")


@scholarship_app.command("renew")
def scholarship_renew(
    current_year: Annotated[str, typer.Option("--from", help="Ending academic year")],
    new_year: Annotated[str, typer.Option("--to", help="New academic year")],
    db: DbOption = None,
) -> None:
    """Renew eligible scholarships into the next academic year"""
    ledger = get_ledger(db)
    with reported_errors():
        decisions = ledger.scheduler.renew_awards(current_year, new_year)
    for d in decisions:
        mark = "✓" if d.eligible else "✗"
        typer.echo(f"  {mark} {d.scholarship_id}: {d.reason}")
    typer.echo(f"Renewed {sum(1 for d in decisions if d.eligible)} of {len(decisions)}")


# Payroll


@payroll_app.command("structure")
def payroll_structure(
    staff_id: Annotated[str, typer.Option("--staff", help="Staff ID")],
    staff_name: Annotated[str, typer.Option("--name", help="Staff name")],
    department: Annotated[str, typer.Option("--department", help="Department")],
    basic_salary: Annotated[str, typer.Option("--basic", help="Basic salary")],
    allowances: Annotated[Optional[str], typer.Option("--allowances", help="Allowances (JSON)")] = None,
    deductions: Annotated[Optional[str], typer.Option("--deductions", help="Deductions (JSON)")] = None,
    db: DbOption = None,
) -> None:
    """Register a staff salary structure"""
    ledger = get_ledger(db)
    with reported_errors():
        structure = ledger.payroll.register_structure(
            staff_id=staff_id,
            staff_name=staff_name,
            department=department,
            basic_salary=basic_salary,
            allowances=parse_json(allowances, "--allowances"),
            deductions=parse_json(deductions, "--deductions"),
        )
    typer.echo(f"✓ Registered salary structure for {structure.staff_id}")


@payroll_app.command("batch")
def payroll_batch(
    batch_name: Annotated[str, typer.Option("--name", help="Batch name")],
    pay_period: Annotated[str, typer.Option("--period", help="Pay period, e.g. 2025-09")],
    staff: Annotated[str, typer.Option("--staff", help="Comma-separated staff IDs")],
    department: Annotated[Optional[str], typer.Option("--department", help="Department")] = None,
    db: DbOption = None,
) -> None:
    """Calculate a payroll batch"""
    ledger = get_ledger(db)
    with reported_errors():
        batch = ledger.payroll.create_batch(
            batch_name=batch_name,
            pay_period=pay_period,
            staff_ids=[s.strip() for s in staff.split(",") if s.strip()],
            department=department,
        )
    typer.echo(f"✓ Calculated payroll batch: {batch.id}")
    typer.echo(f"  Staff: {batch.staff_count}")
    typer.echo(f"  Gross: {batch.total_gross_salary}")
    typer.echo(f"  Net: {batch.total_net_salary}")


@payroll_app.command("approve")
def payroll_approve(
    batch_id: Annotated[str, typer.Option("--id", help="Batch ID")],
    approved_by: Annotated[str, typer.Option("--by", help="Approver")],
    db: DbOption = None,
) -> None:
    """Approve a calculated payroll batch"""
    ledger = get_ledger(db)
    with reported_errors():
        batch = ledger.payroll.approve_batch(batch_id, approved_by)
    typer.echo(f"✓ Approved {batch.id}")


@payroll_app.command("process")
def payroll_process(
    batch_id: Annotated[str, typer.Option("--id", help="Batch ID")],
    db: DbOption = None,
) -> None:
    """Pay an approved batch and charge it to the payroll budget"""
    ledger = get_ledger(db)
    with reported_errors():
        batch = ledger.payroll.process_payment(batch_id)
    typer.echo(f"✓ Processed {batch.id}")
    typer.echo(f"  Budget status: {batch.budget_status}")
    if batch.budget_id:
        typer.echo(f"  Budget: {batch.budget_id}")


@payroll_app.command("list")
def payroll_list(
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """List payroll batches"""
    ledger = get_ledger(db)
    batches = ledger.payroll.list_batches()

    if json_output:
        echo_json([b.model_dump(mode="json") for b in batches])
        return
    typer.echo(f"Payroll Batches ({len(batches)}):")
    for b in batches:
        typer.echo(f"  {b.id}: {b.batch_name} {b.pay_period} [{b.status.value}] net {b.total_net_salary}")


# Operations


@app.command()
def attention(
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """Show records that need staff follow-up"""
    ledger = get_ledger(db)
    with reported_errors():
        items = ledger.attention()

    if json_output:
        echo_json(items)
        return

    if not items["total"]:
        typer.echo("✓ Nothing needs attention")
        return

    typer.echo(f"Needs attention: {items['total']}")
    for kind, entries in items.items():
        if kind == "total" or not entries:
            continue
        typer.echo(f"\n{kind.replace('_', ' ').capitalize()} ({len(entries)}):")
        for entry in entries:
            typer.echo(f"  {entry['id'] if isinstance(entry, dict) else entry}")


@app.command()
def health(
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """Show store and budget health"""
    ledger = get_ledger(db)
    with reported_errors():
        summary = ledger.health()

    if json_output:
        echo_json(summary)
        return

    budgets = summary["budgets"]
    typer.echo(f"\nStore: {summary['store']} ({summary['documents']} documents)")
    typer.echo("\nBudgets:")
    typer.echo(f"  Accounts: {budgets['accounts']}")
    typer.echo(f"  Allocated: {budgets['total_allocated']}")
    typer.echo(f"  Spent: {budgets['total_spent']}")
    typer.echo(f"  Utilization: {budgets['utilization']:.1%}")
    typer.echo(f"  Over budget: {budgets['over_budget']}")
    typer.echo(f"  High utilization: {budgets['high_utilization']}")


def main() -> None:
    """Main entry point"""
    app()


if __name__ == "__main__":
    main()
