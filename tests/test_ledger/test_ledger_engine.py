"""
Tests for the Ledger Accounting Engine

Core guarantees under test:
- An approval event changes balances exactly once, however often it is
  delivered and however many deliveries race
- spent + remaining always equals allocated, and spent equals the sum of
  the account's transactions
- Threshold alerts fire once per crossing

Fun fact: Payment networks call this "exactly-once effect over at-least-once
delivery" - the network may say it twice, the books only hear it once!
"""

import threading
from decimal import Decimal

import pytest

from campus_ledger.kernel.errors import (
    BudgetAccountNotFound,
    NotFoundError,
    ValidationError,
)
from campus_ledger.kernel.policy import LedgerPolicy
from campus_ledger.kernel.store import SQLiteDocumentStore
from campus_ledger.kernel.time import TestTimeProvider
from campus_ledger.identifiers.allocator import SequentialIdentifierAllocator
from campus_ledger.identifiers.models import parse_identifier
from campus_ledger.ledger.engine import LedgerAccountingEngine
from campus_ledger.ledger.models import (
    AccountStatus,
    AlertType,
    SelectionCriteria,
    SourceEventRef,
    SourceEventStatus,
    StudentFeeBalance,
)
from tests.helpers import RecordingAlertNotifier, open_operations_account, open_scholarship_fund

OPS = SelectionCriteria(department="Academic Affairs", category="Operations")


def _ref(document_id: str, collection: str = "procurement-requests") -> SourceEventRef:
    return SourceEventRef(collection=collection, document_id=document_id, approved_by="Dr. Owusu")


class TestAccounts:
    def test_open_account(self, ledger: LedgerAccountingEngine) -> None:
        account = open_operations_account(ledger, "10000")

        assert account.allocated_amount == Decimal("10000.00")
        assert account.remaining_amount == Decimal("10000.00")
        assert account.spent_amount == Decimal("0")
        assert account.status == AccountStatus.ACTIVE
        assert ledger.get_account(account.id).remaining_amount == account.remaining_amount

    def test_open_account_rejects_duplicate_id(self, ledger: LedgerAccountingEngine) -> None:
        open_operations_account(ledger, account_id="acc-ops")
        with pytest.raises(ValidationError):
            open_operations_account(ledger, account_id="acc-ops")

    @pytest.mark.parametrize("amount", ["0", "-5", "abc", None])
    def test_open_account_rejects_bad_allocation(
        self, ledger: LedgerAccountingEngine, amount: object
    ) -> None:
        with pytest.raises(ValidationError):
            ledger.open_account(
                name="Ops",
                department="Academic Affairs",
                category="Operations",
                academic_year="2025/2026",
                allocated_amount=amount,
            )

    def test_get_unknown_account(self, ledger: LedgerAccountingEngine) -> None:
        with pytest.raises(BudgetAccountNotFound):
            ledger.get_account("nope")

    def test_list_accounts_by_department(self, ledger: LedgerAccountingEngine) -> None:
        open_operations_account(ledger)
        open_scholarship_fund(ledger)

        assert len(ledger.list_accounts()) == 2
        assert [a.department for a in ledger.list_accounts("Student Affairs")] == ["Student Affairs"]


class TestRecordExpense:
    def test_expense_deducts_once(self, ledger: LedgerAccountingEngine) -> None:
        account = open_operations_account(ledger, "10000")

        outcome = ledger.record_expense(OPS, "2500", _ref("PR-1"))

        assert outcome.processed is True
        assert outcome.duplicate is False
        assert outcome.status == SourceEventStatus.DEDUCTED
        assert outcome.budget_id == account.id
        assert outcome.transaction is not None
        assert outcome.transaction.id == "TXN20250001"
        assert outcome.to_contract() == {
            "processed": True,
            "budgetId": account.id,
            "status": "deducted",
        }

        updated = ledger.get_account(account.id)
        assert updated.spent_amount == Decimal("2500.00")
        assert updated.remaining_amount == Decimal("7500.00")
        assert updated.utilization == Decimal("0.2500")

    def test_duplicate_delivery_is_absorbed(self, ledger: LedgerAccountingEngine) -> None:
        account = open_operations_account(ledger, "10000")
        first = ledger.record_expense(OPS, "2500", _ref("PR-1"))

        second = ledger.record_expense(OPS, "2500", _ref("PR-1"))

        assert second.duplicate is True
        assert second.processed is True
        assert second.budget_id == account.id
        assert second.transaction.id == first.transaction.id
        assert ledger.get_account(account.id).spent_amount == Decimal("2500.00")
        assert len(ledger.list_transactions(account.id)) == 1

    def test_same_document_in_other_collection_is_distinct(
        self, ledger: LedgerAccountingEngine
    ) -> None:
        account = open_operations_account(ledger, "10000")

        ledger.record_expense(OPS, "100", _ref("X-1", "procurement-requests"))
        ledger.record_expense(OPS, "100", _ref("X-1", "internal-transfers"))

        assert ledger.get_account(account.id).spent_amount == Decimal("200.00")

    def test_concurrent_duplicate_deliveries_apply_once(
        self, ledger: LedgerAccountingEngine
    ) -> None:
        account = open_operations_account(ledger, "10000")
        callers = 8
        outcomes = []
        errors: list[Exception] = []
        lock = threading.Lock()
        start = threading.Barrier(callers)

        def worker() -> None:
            start.wait()
            try:
                outcome = ledger.record_expense(OPS, "1000", _ref("PR-RACE"))
            except Exception as e:
                with lock:
                    errors.append(e)
                return
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(callers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sum(1 for o in outcomes if not o.duplicate) == 1
        assert all(o.budget_id == account.id for o in outcomes)
        assert ledger.get_account(account.id).spent_amount == Decimal("1000.00")
        assert len(ledger.list_transactions(account.id)) == 1

    def test_concurrent_distinct_events_all_apply(
        self, ledger: LedgerAccountingEngine, policy: LedgerPolicy
    ) -> None:
        assert policy.max_write_attempts == LedgerPolicy().max_write_attempts
        account = open_operations_account(ledger, "100000")
        callers = 30
        errors: list[Exception] = []
        lock = threading.Lock()
        start = threading.Barrier(callers)

        def worker(n: int) -> None:
            start.wait()
            try:
                ledger.record_expense(OPS, "150.50", _ref(f"PR-{n}"))
            except Exception as e:
                with lock:
                    errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(callers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        updated = ledger.get_account(account.id)
        assert updated.spent_amount == Decimal("4515.00")
        assert updated.remaining_amount == Decimal("95485.00")
        txn_ids = [t.id for t in ledger.list_transactions(account.id)]
        assert len(txn_ids) == callers
        # Numbers are allocated in the posting transaction, so none are skipped
        assert sorted(parse_identifier(t).sequence for t in txn_ids) == list(range(1, callers + 1))
        assert ledger.verify_account(account.id).consistent

    def test_no_budget_found_is_terminal(self, ledger: LedgerAccountingEngine) -> None:
        outcome = ledger.record_expense(OPS, "500", _ref("PR-ORPHAN"))

        assert outcome.processed is True
        assert outcome.status == SourceEventStatus.NO_BUDGET_FOUND
        assert outcome.budget_id is None

        # Opening a matching account later does not resurrect the event
        account = open_operations_account(ledger)
        again = ledger.record_expense(OPS, "500", _ref("PR-ORPHAN"))
        assert again.duplicate is True
        assert again.status == SourceEventStatus.NO_BUDGET_FOUND
        assert ledger.get_account(account.id).spent_amount == Decimal("0")

    @pytest.mark.parametrize("amount", [None, "", "-10", "0", "ten", float("nan")])
    def test_invalid_amount_records_failure(
        self, ledger: LedgerAccountingEngine, amount: object
    ) -> None:
        account = open_operations_account(ledger)

        with pytest.raises(ValidationError):
            ledger.record_expense(OPS, amount, _ref("PR-BAD"))

        event = ledger.get_source_event("procurement-requests", "PR-BAD")
        assert event is not None
        assert event.processed is False
        assert event.status == SourceEventStatus.PROCESSING_FAILED
        assert ledger.get_account(account.id).spent_amount == Decimal("0")

    def test_failed_event_can_be_corrected(self, ledger: LedgerAccountingEngine) -> None:
        account = open_operations_account(ledger)
        with pytest.raises(ValidationError):
            ledger.record_expense(OPS, None, _ref("PR-FIX"))

        outcome = ledger.record_expense(OPS, "300", _ref("PR-FIX"))

        assert outcome.status == SourceEventStatus.DEDUCTED
        assert ledger.get_account(account.id).spent_amount == Decimal("300.00")
        event = ledger.get_source_event("procurement-requests", "PR-FIX")
        assert event.processed is True
        assert event.error is None

    def test_selection_prefers_largest_remaining(self, ledger: LedgerAccountingEngine) -> None:
        open_operations_account(ledger, "5000", account_id="small")
        open_operations_account(ledger, "8000", account_id="large")

        outcome = ledger.record_expense(OPS, "100", _ref("PR-1"))

        assert outcome.budget_id == "large"

    def test_selection_ignores_other_departments(self, ledger: LedgerAccountingEngine) -> None:
        open_operations_account(ledger, "5000", department="Finance", account_id="finance")
        outcome = ledger.record_expense(OPS, "100", _ref("PR-1"))

        assert outcome.status == SourceEventStatus.NO_BUDGET_FOUND

    def test_any_department_when_unspecified(self, ledger: LedgerAccountingEngine) -> None:
        open_operations_account(ledger, "5000", department="Finance", account_id="finance")
        outcome = ledger.record_expense(SelectionCriteria(category="Operations"), "100", _ref("PR-1"))

        assert outcome.budget_id == "finance"

    def test_fallback_category(self, ledger: LedgerAccountingEngine) -> None:
        open_operations_account(ledger, "5000", account_id="ops")
        criteria = SelectionCriteria(
            department="Academic Affairs", category="Payroll", fallback_categories=["Operations"]
        )

        outcome = ledger.record_expense(criteria, "100", _ref("PAY-1", "payroll-batches"))

        assert outcome.budget_id == "ops"


class TestExceededAndAlerts:
    def test_exceeding_allocation(
        self, ledger: LedgerAccountingEngine, notifier: RecordingAlertNotifier
    ) -> None:
        account = open_operations_account(ledger, "10000")

        first = ledger.record_expense(OPS, "5500", _ref("PR-1"))
        assert first.alerts == []

        second = ledger.record_expense(OPS, "6000", _ref("PR-2"))

        updated = ledger.get_account(account.id)
        assert updated.spent_amount == Decimal("11500.00")
        assert updated.remaining_amount == Decimal("-1500.00")
        assert updated.status == AccountStatus.EXCEEDED
        assert sorted(a.alert_type for a in second.alerts) == [
            AlertType.BUDGET_EXCEEDED,
            AlertType.HIGH_UTILIZATION,
        ]
        exceeded = [a for a in ledger.list_alerts(account.id) if a.alert_type == AlertType.BUDGET_EXCEEDED]
        assert len(exceeded) == 1
        assert {a["alertType"] for a in notifier.sent} == {"budget_exceeded", "high_utilization"}

    def test_exceeded_account_not_selected(self, ledger: LedgerAccountingEngine) -> None:
        open_operations_account(ledger, "1000")
        ledger.record_expense(OPS, "1500", _ref("PR-1"))

        outcome = ledger.record_expense(OPS, "10", _ref("PR-2"))

        assert outcome.status == SourceEventStatus.NO_BUDGET_FOUND

    def test_exceeded_account_selected_when_allowed(
        self,
        store: SQLiteDocumentStore,
        allocator: SequentialIdentifierAllocator,
        test_time: TestTimeProvider,
    ) -> None:
        ledger = LedgerAccountingEngine(
            store, allocator, LedgerPolicy(block_exceeded_accounts=False), test_time,
            RecordingAlertNotifier(),
        )
        account = open_operations_account(ledger, "1000")
        ledger.record_expense(OPS, "1500", _ref("PR-1"))

        outcome = ledger.record_expense(OPS, "10", _ref("PR-2"))

        assert outcome.budget_id == account.id
        # Still exceeded: no second budget_exceeded alert
        assert outcome.alerts == []

    def test_high_utilization_alert_once_per_crossing(
        self, ledger: LedgerAccountingEngine
    ) -> None:
        account = open_operations_account(ledger, "1000")

        crossing = ledger.record_expense(OPS, "900", _ref("PR-1"))
        above = ledger.record_expense(OPS, "50", _ref("PR-2"))

        assert [a.alert_type for a in crossing.alerts] == [AlertType.HIGH_UTILIZATION]
        assert above.alerts == []
        assert len(ledger.list_alerts(account.id)) == 1

    def test_raising_allocation_reactivates_and_realerts(
        self, ledger: LedgerAccountingEngine
    ) -> None:
        account = open_operations_account(ledger, "1000")
        ledger.record_expense(OPS, "1200", _ref("PR-1"))

        reopened = ledger.adjust_allocation(account.id, "5000")
        assert reopened.status == AccountStatus.ACTIVE
        assert reopened.remaining_amount == Decimal("3800.00")

        outcome = ledger.record_expense(OPS, "4000", _ref("PR-2"))
        assert AlertType.BUDGET_EXCEEDED in [a.alert_type for a in outcome.alerts]
        exceeded = [
            a for a in ledger.list_alerts(account.id) if a.alert_type == AlertType.BUDGET_EXCEEDED
        ]
        assert len(exceeded) == 2

    def test_alerts_marked_notified(self, ledger: LedgerAccountingEngine) -> None:
        account = open_operations_account(ledger, "1000")
        ledger.record_expense(OPS, "950", _ref("PR-1"))

        assert ledger.list_alerts(account.id, unnotified_only=True) == []
        assert all(a.notified for a in ledger.list_alerts(account.id))

    def test_notifier_failure_leaves_alert_pending(
        self,
        store: SQLiteDocumentStore,
        allocator: SequentialIdentifierAllocator,
        policy: LedgerPolicy,
        test_time: TestTimeProvider,
    ) -> None:
        ledger = LedgerAccountingEngine(
            store, allocator, policy, test_time, RecordingAlertNotifier(fail=True)
        )
        account = open_operations_account(ledger, "1000")

        outcome = ledger.record_expense(OPS, "950", _ref("PR-1"))

        assert outcome.status == SourceEventStatus.DEDUCTED
        assert ledger.get_account(account.id).spent_amount == Decimal("950.00")
        pending = ledger.list_alerts(account.id, unnotified_only=True)
        assert [a.alert_type for a in pending] == [AlertType.HIGH_UTILIZATION]


class TestFeeCredits:
    def test_fee_credit_reduces_outstanding_balance(
        self, ledger: LedgerAccountingEngine
    ) -> None:
        fund = open_scholarship_fund(ledger, "50000")
        ledger.set_student_fees("S-100", "2025/2026-S1", total_fees="3000")

        outcome = ledger.apply_fee_credit(
            "S-100", "2000", "2025/2026-S1", _ref("SCH-1_2025/2026-S1", "scholarship-disbursements")
        )

        assert outcome.budget_id == fund.id
        assert ledger.get_account(fund.id).spent_amount == Decimal("2000.00")
        balance = ledger.get_fee_balance("S-100", "2025/2026-S1")
        assert isinstance(balance, StudentFeeBalance)
        assert balance.scholarship_credits == Decimal("2000.00")
        assert balance.outstanding_balance == Decimal("1000.00")
        credits = ledger.list_fee_credits("S-100")
        assert len(credits) == 1
        assert credits[0].transaction_id == outcome.transaction.id

    def test_fee_credit_is_idempotent(self, ledger: LedgerAccountingEngine) -> None:
        fund = open_scholarship_fund(ledger)
        ref = _ref("SCH-1_2025/2026-S1", "scholarship-disbursements")

        ledger.apply_fee_credit("S-100", "2000", "2025/2026-S1", ref)
        again = ledger.apply_fee_credit("S-100", "2000", "2025/2026-S1", ref)

        assert again.duplicate is True
        assert ledger.get_account(fund.id).spent_amount == Decimal("2000.00")
        assert len(ledger.list_fee_credits("S-100")) == 1

    def test_outstanding_balance_floors_at_zero(self, ledger: LedgerAccountingEngine) -> None:
        open_scholarship_fund(ledger)
        ledger.set_student_fees("S-100", "2025/2026-S1", total_fees="1500")

        ledger.apply_fee_credit(
            "S-100", "2000", "2025/2026-S1", _ref("SCH-1", "scholarship-disbursements")
        )

        assert ledger.get_fee_balance("S-100", "2025/2026-S1").outstanding_balance == Decimal("0")

    @pytest.mark.parametrize(
        "fees,field",
        [
            ({"total_fees": "lots"}, "total_fees"),
            ({"total_fees": "-1"}, "total_fees"),
            ({"total_fees": "3000", "amount_paid": None}, "amount_paid"),
            ({"total_fees": "3000", "amount_paid": "NaN"}, "amount_paid"),
        ],
    )
    def test_malformed_fees_rejected(
        self, ledger: LedgerAccountingEngine, fees: dict, field: str
    ) -> None:
        with pytest.raises(ValidationError) as exc:
            ledger.set_student_fees("S-100", "2025/2026-S1", **fees)

        assert exc.value.missing_fields == [field]
        assert ledger.get_fee_balance("S-100", "2025/2026-S1") is None

    def test_fee_credit_requires_fund(self, ledger: LedgerAccountingEngine) -> None:
        with pytest.raises(NotFoundError):
            ledger.apply_fee_credit(
                "S-100", "2000", "2025/2026-S1", _ref("SCH-1", "scholarship-disbursements")
            )
        assert ledger.get_source_event("scholarship-disbursements", "SCH-1") is None

    def test_fee_credit_requires_student(self, ledger: LedgerAccountingEngine) -> None:
        open_scholarship_fund(ledger)
        with pytest.raises(ValidationError):
            ledger.apply_fee_credit("", "2000", "2025/2026-S1", _ref("SCH-1", "scholarship-disbursements"))


class TestVerification:
    def test_verify_consistent_account(self, ledger: LedgerAccountingEngine) -> None:
        account = open_operations_account(ledger, "10000")
        ledger.record_expense(OPS, "1234.56", _ref("PR-1"))
        ledger.record_expense(OPS, "765.44", _ref("PR-2"))

        result = ledger.verify_account(account.id)

        assert result.consistent
        assert result.transaction_total == Decimal("2000.00")
        assert result.transaction_count == 2

    def test_utilization_summary(self, ledger: LedgerAccountingEngine) -> None:
        open_operations_account(ledger, "1000", account_id="a")
        open_operations_account(ledger, "1000", category="Research", account_id="b")
        ledger.record_expense(OPS, "950", _ref("PR-1"))

        summary = ledger.utilization_summary()

        assert summary["accounts"] == 2
        assert summary["total_allocated"] == Decimal("2000.00")
        assert summary["total_spent"] == Decimal("950.00")
        assert summary["high_utilization"] == 1
        assert summary["over_budget"] == 0
