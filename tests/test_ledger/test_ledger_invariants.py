"""
Tests for pure ledger invariants: amounts, alert crossings, consistency
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from campus_ledger.kernel.errors import ValidationError
from campus_ledger.ledger.invariants import (
    alert_message,
    check_account_consistency,
    crossed_alerts,
    parse_amount,
)
from campus_ledger.ledger.models import (
    AccountStatus,
    AlertType,
    BudgetAccount,
    LedgerTransaction,
    TransactionType,
    compute_utilization,
)

NOW = datetime(2025, 9, 1, tzinfo=timezone.utc)
THRESHOLD = Decimal("0.90")


def _account(allocated: str = "1000", spent: str = "0") -> BudgetAccount:
    base = BudgetAccount(
        id="acc",
        name="Ops",
        department="Academic Affairs",
        category="Operations",
        academic_year="2025/2026",
        allocated_amount=Decimal(allocated),
        remaining_amount=Decimal(allocated),
        created_at=NOW,
    )
    return base.with_balances(spent=Decimal(spent))


def _txn(txn_id: str, amount: str, account_id: str = "acc") -> LedgerTransaction:
    return LedgerTransaction(
        id=txn_id,
        budget_account_id=account_id,
        type=TransactionType.EXPENSE,
        amount=Decimal(amount),
        source_event_id=f"procurement-requests:{txn_id}",
        processed_at=NOW,
    )


class TestParseAmount:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("2500", Decimal("2500.00")),
            (2500, Decimal("2500.00")),
            (0.1, Decimal("0.10")),
            (" 12.345 ", Decimal("12.34")),
            (Decimal("7.5"), Decimal("7.50")),
        ],
    )
    def test_valid(self, raw: object, expected: Decimal) -> None:
        assert parse_amount(raw) == expected

    @pytest.mark.parametrize("raw", [None, True, "", "abc", "0", -1, "inf", float("nan")])
    def test_invalid(self, raw: object) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_amount(raw, "totalEstimatedCost")
        assert exc_info.value.missing_fields == ["totalEstimatedCost"]


class TestCrossedAlerts:
    def test_below_to_below(self) -> None:
        assert crossed_alerts(_account(spent="100"), _account(spent="500"), THRESHOLD) == []

    def test_crossing_high_utilization(self) -> None:
        assert crossed_alerts(_account(spent="100"), _account(spent="900"), THRESHOLD) == [
            AlertType.HIGH_UTILIZATION
        ]

    def test_staying_above_threshold(self) -> None:
        assert crossed_alerts(_account(spent="910"), _account(spent="950"), THRESHOLD) == []

    def test_crossing_both_at_once(self) -> None:
        assert crossed_alerts(_account(spent="100"), _account(spent="1100"), THRESHOLD) == [
            AlertType.HIGH_UTILIZATION,
            AlertType.BUDGET_EXCEEDED,
        ]

    def test_already_exceeded(self) -> None:
        assert crossed_alerts(_account(spent="1100"), _account(spent="1200"), THRESHOLD) == []

    def test_spending_exactly_allocation_is_not_exceeded(self) -> None:
        after = _account(spent="1000")
        assert after.status == AccountStatus.ACTIVE
        assert crossed_alerts(_account(spent="950"), after, THRESHOLD) == []


def test_alert_messages() -> None:
    exceeded = _account(spent="1150")
    assert "exceeded by 150" in alert_message(exceeded, AlertType.BUDGET_EXCEEDED)
    assert "115%" in alert_message(exceeded, AlertType.BUDGET_EXCEEDED)
    assert "92%" in alert_message(_account(spent="920"), AlertType.HIGH_UTILIZATION)


def test_compute_utilization() -> None:
    assert compute_utilization(Decimal("10000"), Decimal("2500")) == Decimal("0.2500")
    assert compute_utilization(Decimal("3"), Decimal("1")) == Decimal("0.3333")


class TestConsistency:
    def test_consistent(self) -> None:
        account = _account(spent="300")
        assert check_account_consistency(account, [_txn("t1", "100"), _txn("t2", "200")]) == []

    def test_spent_mismatch(self) -> None:
        problems = check_account_consistency(_account(spent="300"), [_txn("t1", "100")])
        assert any("spent_amount" in p for p in problems)

    def test_stale_status(self) -> None:
        account = _account(spent="1200").model_copy(update={"status": AccountStatus.ACTIVE})
        problems = check_account_consistency(account, [_txn("t1", "1200")])
        assert any("status" in p for p in problems)

    def test_foreign_transaction(self) -> None:
        problems = check_account_consistency(
            _account(spent="100"), [_txn("t1", "100", account_id="other")]
        )
        assert any("another account" in p for p in problems)
