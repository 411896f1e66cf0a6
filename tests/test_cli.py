"""
CLI Integration Tests

Drives the campus-ledger commands end-to-end against a temporary database.
Every invocation opens its own CampusLedger, like separate shell commands.
"""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from campus_ledger.cli.main import app
from tests.helpers import complete_sections, procurement_request

runner = CliRunner()


def invoke(db: Path, *args: str):
    return runner.invoke(app, [*args, "--db", str(db)])


@pytest.fixture
def db(temp_db: Path) -> Path:
    result = runner.invoke(app, ["init", "--db", str(temp_db)])
    assert result.exit_code == 0
    assert "Initialized ledger database" in result.stdout
    return temp_db


def open_account(db: Path, account_id: str = "aa-ops", category: str = "Operations", amount: str = "10000"):
    return invoke(
        db,
        "account", "open",
        "--name", f"Academic Affairs {category}",
        "--department", "Academic Affairs",
        "--category", category,
        "--year", "2025/2026",
        "--amount", amount,
        "--id", account_id,
    )


def test_init_refuses_existing_database(db: Path) -> None:
    result = runner.invoke(app, ["init", "--db", str(db)])

    assert result.exit_code == 1


def test_missing_database(temp_db: Path) -> None:
    result = invoke(temp_db, "attention")

    assert result.exit_code == 1
    assert not temp_db.exists()


def test_allocate(db: Path) -> None:
    result = invoke(db, "allocate", "--namespace", "UCAES", "--period", "2025", "--count", "3")

    assert result.exit_code == 0
    assert result.stdout.split() == ["UCAES20250001", "UCAES20250002", "UCAES20250003"]

    bad = invoke(db, "allocate", "--namespace", "UC-AES", "--period", "2025")
    assert bad.exit_code == 1
    assert "Error" in bad.output


def test_budget_and_approvals(db: Path) -> None:
    result = open_account(db)
    assert result.exit_code == 0
    assert "✓ Opened budget account: aa-ops" in result.stdout

    result = invoke(
        db,
        "ingest", "submit",
        "--collection", "procurement-requests",
        "--document", "PR-1",
        "--data", json.dumps(procurement_request(2500)),
    )
    assert result.exit_code == 0
    assert "Ledger status: deducted" in result.stdout
    assert "Budget: aa-ops" in result.stdout

    result = invoke(db, "account", "show", "--id", "aa-ops", "--json")
    shown = json.loads(result.stdout)
    assert shown["account"]["spent_amount"] == "2500.00"
    assert len(shown["transactions"]) == 1

    result = invoke(db, "account", "verify", "--id", "aa-ops")
    assert result.exit_code == 0
    assert "consistent (1 transactions)" in result.stdout

    result = invoke(db, "account", "list")
    assert "aa-ops" in result.stdout


def test_expense_record_is_idempotent(db: Path) -> None:
    open_account(db)
    args = (
        "expense", "record",
        "--collection", "petty-cash",
        "--document", "PC-1",
        "--amount", "120",
        "--category", "Operations",
    )

    first = json.loads(invoke(db, *args).stdout)
    second = json.loads(invoke(db, *args).stdout)

    assert first == {"processed": True, "budgetId": "aa-ops", "status": "deducted", "duplicate": False}
    assert second["duplicate"] is True


def test_malformed_upstream_document(db: Path) -> None:
    open_account(db)

    result = invoke(
        db,
        "ingest", "submit",
        "--collection", "procurement-requests",
        "--document", "PR-BAD",
        "--data", json.dumps(procurement_request("lots")),
    )
    assert result.exit_code == 0
    assert "Ledger status: processing_failed" in result.stdout

    failed = json.loads(invoke(db, "ingest", "failed", "--json").stdout)
    assert [e["id"] for e in failed] == ["procurement-requests:PR-BAD"]

    bad_json = invoke(
        db, "ingest", "submit", "--collection", "procurement-requests", "--document", "X", "--data", "{"
    )
    assert bad_json.exit_code == 1


def test_application_lifecycle(db: Path) -> None:
    result = invoke(
        db,
        "application", "create",
        "--email", "ama.mensah@example.com",
        "--sections", json.dumps(complete_sections()),
    )
    assert result.exit_code == 0
    application_id = result.stdout.split("application: ")[1].strip()
    assert application_id.startswith("UCAES")

    for status in ("submitted", "under_review", "accepted"):
        result = invoke(db, "application", "transition", "--id", application_id, "--status", status)
        assert result.exit_code == 0

    status = json.loads(invoke(db, "application", "status", "--id", application_id).stdout)
    assert status["transferred"] is True
    registration = status["registrationNumber"]

    result = invoke(db, "application", "transfer", "--id", application_id)
    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"success": True, "registrationNumber": registration}

    illegal = invoke(db, "application", "transition", "--id", application_id, "--status", "rejected")
    assert illegal.exit_code == 1
    assert "Error" in illegal.output


@pytest.mark.parametrize(
    "args,message",
    [
        (
            ["scholarship", "award", "--student", "S-100", "--amount", "4000", "--year", "2025/2026", "--plan", "weekly"],
            "Invalid plan 'weekly'",
        ),
        (
            [
                "scholarship", "award", "--student", "S-100", "--amount", "4000", "--year", "2025/2026",
                "--plan", "custom", "--custom", '[{"period": "2025/2026-S1", "percentage": 0}]',
            ],
            "custom_plan.0.percentage",
        ),
        (
            ["payroll", "structure", "--staff", "ST-1", "--name", "Yaw Boateng", "--department", "Academic Affairs", "--basic", "abc"],
            "basic_salary",
        ),
    ],
)
def test_malformed_input_is_reported_not_raised(db: Path, args: list[str], message: str) -> None:
    result = invoke(db, *args)

    assert result.exit_code == 1
    assert isinstance(result.exception, SystemExit)
    assert "Error:" in result.output
    assert message in result.output


def test_transfer_of_draft_fails(db: Path) -> None:
    result = invoke(db, "application", "create", "--email", "kwame@example.com")
    application_id = result.stdout.split("application: ")[1].strip()

    result = invoke(db, "application", "transfer", "--id", application_id)

    assert result.exit_code == 1
    assert json.loads(result.stdout)["success"] is False


def test_scholarships_and_attention(db: Path) -> None:
    result = invoke(
        db,
        "scholarship", "award",
        "--student", "S-100",
        "--amount", "4000",
        "--year", "2025/2026",
        "--id", "SCH-1",
    )
    assert result.exit_code == 0
    assert "✓ Awarded scholarship: SCH-1" in result.stdout
    assert "SCH-1_2025/2026-S1: 2000.00" in result.stdout

    # No scholarship fund yet: the payout fails and needs attention
    result = invoke(db, "scholarship", "process", "--id", "SCH-1_2025/2026-S1")
    assert result.exit_code == 1
    assert json.loads(result.stdout)["status"] == "failed"

    attention = json.loads(invoke(db, "attention", "--json").stdout)
    assert attention["total"] == 1
    assert attention["failed_disbursements"][0]["id"] == "SCH-1_2025/2026-S1"

    invoke(
        db,
        "account", "open",
        "--name", "Scholarships",
        "--department", "Student Affairs",
        "--category", "Scholarships",
        "--year", "2025/2026",
        "--amount", "50000",
    )
    assert invoke(db, "scholarship", "retry", "--id", "SCH-1_2025/2026-S1").exit_code == 0
    result = invoke(db, "scholarship", "process", "--id", "SCH-1_2025/2026-S1")
    assert result.exit_code == 0
    assert json.loads(result.stdout)["status"] == "disbursed"

    result = invoke(db, "attention")
    assert "✓ Nothing needs attention" in result.stdout

    result = invoke(db, "scholarship", "cancel", "--id", "SCH-1_2025/2026-S2")
    assert result.exit_code == 0
    assert invoke(db, "scholarship", "cancel", "--id", "SCH-1_2025/2026-S1").exit_code == 1


def test_payroll(db: Path) -> None:
    open_account(db, "aa-payroll", category="Payroll", amount="50000")
    result = invoke(
        db,
        "payroll", "structure",
        "--staff", "ST-1",
        "--name", "Yaw Boateng",
        "--department", "Academic Affairs",
        "--basic", "3000",
        "--allowances", '{"housing": 500, "transport": 200}',
    )
    assert result.exit_code == 0

    result = invoke(
        db,
        "payroll", "batch",
        "--name", "September 2025",
        "--period", "2025-09",
        "--staff", "ST-1, ST-404",
        "--department", "Academic Affairs",
    )
    assert result.exit_code == 0
    assert "Net: 3180.00" in result.stdout
    batch_id = result.stdout.split("batch: ")[1].split("\n")[0].strip()

    assert invoke(db, "payroll", "process", "--id", batch_id).exit_code == 1
    assert invoke(db, "payroll", "approve", "--id", batch_id, "--by", "bursar").exit_code == 0

    result = invoke(db, "payroll", "process", "--id", batch_id)
    assert result.exit_code == 0
    assert "Budget status: deducted" in result.stdout
    assert "Budget: aa-payroll" in result.stdout

    batches = json.loads(invoke(db, "payroll", "list", "--json").stdout)
    assert [b["status"] for b in batches] == ["processed"]


def test_health(db: Path) -> None:
    open_account(db)

    summary = json.loads(invoke(db, "health", "--json").stdout)

    assert summary["store"] == "ok"
    assert summary["budgets"]["accounts"] == 1
