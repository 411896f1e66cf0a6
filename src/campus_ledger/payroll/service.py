"""
Payroll Service - staff pay runs charged through the ledger

Calculates pay from salary structures, groups staff into batches, and pays
approved batches by charging the net total to the department's Payroll
budget (falling back to its Operations budget). The charge is keyed by the
batch id, so a retried payment never hits the budget twice.
"""

from decimal import Decimal
from typing import Any

from campus_ledger.kernel.errors import (
    InvalidStateError,
    NotFoundError,
    PayrollBatchNotFound,
    ValidationError,
)
from campus_ledger.kernel.ids import generate_id
from campus_ledger.kernel.logging import LogOperation, get_logger
from campus_ledger.kernel.metrics import payroll_batches_processed_total, track_operation
from campus_ledger.kernel.policy import LedgerPolicy
from campus_ledger.kernel.retry import run_with_conflict_retry
from campus_ledger.kernel.store import SQLiteDocumentStore
from campus_ledger.kernel.time import RealTimeProvider, TimeProvider
from campus_ledger.kernel.validation import parse_non_negative
from campus_ledger.ledger.engine import LedgerAccountingEngine
from campus_ledger.ledger.invariants import parse_amount
from campus_ledger.ledger.models import SelectionCriteria, SourceEventRef
from campus_ledger.payroll.calculator import calculate_payroll
from campus_ledger.payroll.models import (
    PayrollBatch,
    PayrollBatchStatus,
    PayrollCalculation,
    StaffSalaryStructure,
)

logger = get_logger(__name__)


class PayrollService:
    def __init__(
        self,
        store: SQLiteDocumentStore,
        ledger: LedgerAccountingEngine,
        policy: LedgerPolicy | None = None,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.policy = policy or LedgerPolicy()
        self.time_provider = time_provider or RealTimeProvider()

    # ------------------------------------------------------------------
    # Salary structures
    # ------------------------------------------------------------------

    def register_structure(
        self,
        *,
        staff_id: str,
        staff_name: str,
        department: str,
        basic_salary: Decimal | str | int,
        position: str = "",
        allowances: dict[str, Any] | None = None,
        deductions: dict[str, Any] | None = None,
        effective_from: str = "",
    ) -> StaffSalaryStructure:
        """
        Create or replace a staff member's salary structure

        Raises:
            ValidationError: Missing staff details, a non-positive basic
                salary, or a negative or non-numeric allowance/deduction
        """
        missing = [
            name
            for name, value in (
                ("staff_id", staff_id), ("staff_name", staff_name), ("department", department)
            )
            if not (value or "").strip()
        ]
        if missing:
            raise ValidationError("Salary structure is incomplete", missing)
        structure = StaffSalaryStructure(
            id=staff_id,
            staff_id=staff_id,
            staff_name=staff_name,
            position=position,
            department=department,
            basic_salary=parse_amount(basic_salary, "basic_salary"),
            allowances={
                k: parse_non_negative(v, f"allowances.{k}") for k, v in (allowances or {}).items()
            },
            deductions={
                k: parse_non_negative(v, f"deductions.{k}") for k, v in (deductions or {}).items()
            },
            effective_from=effective_from,
            created_at=self.time_provider.now(),
        )
        self.store.commit([structure.upsert_op()])
        logger.info("Salary structure registered", staff_id=staff_id, department=department)
        return structure

    def get_structure(self, staff_id: str) -> StaffSalaryStructure:
        structure = self.store.load(StaffSalaryStructure, staff_id)
        if structure is None or not structure.is_active:
            raise NotFoundError("Salary structure", staff_id)
        return structure

    def calculate_staff(self, staff_id: str, pay_period: str) -> PayrollCalculation:
        return calculate_payroll(
            self.get_structure(staff_id), pay_period, self.policy, self.time_provider.now()
        )

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def create_batch(
        self,
        *,
        batch_name: str,
        pay_period: str,
        staff_ids: list[str],
        department: str | None = None,
        created_by: str = "system",
    ) -> PayrollBatch:
        """
        Calculate pay for a set of staff and store it as a batch

        Staff without an active salary structure are skipped and logged.

        Raises:
            ValidationError: Nobody in `staff_ids` could be calculated
        """
        calculations = []
        for staff_id in staff_ids:
            try:
                calculations.append(self.calculate_staff(staff_id, pay_period))
            except NotFoundError:
                logger.warning("No salary structure, staff skipped", staff_id=staff_id)
        if not calculations:
            raise ValidationError("Payroll batch has no calculable staff", ["staff_ids"])

        batch = PayrollBatch(
            id=generate_id(),
            batch_name=batch_name,
            pay_period=pay_period,
            department=department,
            staff_count=len(calculations),
            total_gross_salary=sum((c.gross_salary for c in calculations), Decimal("0")),
            total_net_salary=sum((c.net_salary for c in calculations), Decimal("0")),
            calculations=calculations,
            created_at=self.time_provider.now(),
            created_by=created_by,
        )
        [doc] = self.store.commit([batch.create_op()])
        logger.info(
            "Payroll batch calculated",
            batch_id=batch.id,
            pay_period=pay_period,
            staff_count=batch.staff_count,
        )
        return batch.model_copy(update={"version": doc.version})

    def get_batch(self, batch_id: str) -> PayrollBatch:
        batch = self.store.load(PayrollBatch, batch_id)
        if batch is None:
            raise PayrollBatchNotFound(batch_id)
        return batch

    def approve_batch(self, batch_id: str, approved_by: str) -> PayrollBatch:
        """
        Raises:
            InvalidStateError: The batch is not calculated
        """

        def attempt() -> PayrollBatch:
            batch = self.get_batch(batch_id)
            if batch.status != PayrollBatchStatus.CALCULATED:
                raise InvalidStateError("Payroll batch", batch_id, batch.status.value, "calculated")
            approved = batch.model_copy(
                update={
                    "status": PayrollBatchStatus.APPROVED,
                    "approved_by": approved_by,
                    "approved_at": self.time_provider.now(),
                }
            )
            [doc] = self.store.commit([approved.update_op()])
            return approved.model_copy(update={"version": doc.version})

        batch = run_with_conflict_retry(attempt, operation="approve_batch", **self._retry_kwargs())
        logger.info("Payroll batch approved", batch_id=batch_id, approved_by=approved_by)
        return batch

    @track_operation("process_payroll_payment")
    def process_payment(self, batch_id: str) -> PayrollBatch:
        """
        Pay an approved batch and charge its net total to the ledger

        Raises:
            PayrollBatchNotFound: Unknown batch
            InvalidStateError: The batch is not approved
        """
        batch = self.get_batch(batch_id)
        if batch.status != PayrollBatchStatus.APPROVED:
            raise InvalidStateError("Payroll batch", batch_id, batch.status.value, "approved")

        criteria = SelectionCriteria(
            department=batch.department,
            category=self.policy.payroll_category,
            fallback_categories=[self.policy.payroll_fallback_category],
        )
        source = SourceEventRef(
            collection=PayrollBatch.collection,
            document_id=batch.id,
            description=f"Payroll payment: {batch.batch_name}",
            reference=f"PAYROLL-{batch.id}",
            approved_by=batch.approved_by or "System",
        )

        with LogOperation(logger, "process_payroll_payment", batch_id=batch_id):
            outcome = self.ledger.record_expense(criteria, batch.total_net_salary, source)

            def attempt() -> PayrollBatch:
                current = self.get_batch(batch_id)
                if current.status == PayrollBatchStatus.PROCESSED:
                    return current
                processed = current.model_copy(
                    update={
                        "status": PayrollBatchStatus.PROCESSED,
                        "processed_at": self.time_provider.now(),
                        "budget_status": outcome.status.value,
                        "budget_id": outcome.budget_id,
                        "transaction_id": outcome.transaction.id if outcome.transaction else None,
                    }
                )
                [doc] = self.store.commit([processed.update_op()])
                return processed.model_copy(update={"version": doc.version})

            processed = run_with_conflict_retry(
                attempt, operation="process_payroll_payment", **self._retry_kwargs()
            )

        payroll_batches_processed_total.labels(status=outcome.status.value).inc()
        logger.info(
            "Payroll batch paid",
            batch_id=batch_id,
            staff_count=processed.staff_count,
            budget_status=outcome.status.value,
        )
        return processed

    def list_batches(self, status: PayrollBatchStatus | None = None) -> list[PayrollBatch]:
        where = {"status": status.value} if status else None
        return self.store.query_models(PayrollBatch, where=where)

    def payroll_summary(self) -> dict[str, Any]:
        batches = self.list_batches()
        processed = [b for b in batches if b.status == PayrollBatchStatus.PROCESSED]
        paid_staff = sum(b.staff_count for b in processed)
        total_net = sum((b.total_net_salary for b in processed), Decimal("0"))
        return {
            "batches": len(batches),
            "pending_batches": len(batches) - len(processed),
            "processed_batches": len(processed),
            "total_net_paid": total_net,
            "average_net_salary": (total_net / paid_staff).quantize(Decimal("0.01"))
            if paid_staff
            else Decimal("0"),
        }

    def _retry_kwargs(self) -> dict[str, int]:
        return {
            "max_attempts": self.policy.max_write_attempts,
            "min_wait_ms": self.policy.backoff_min_ms,
            "max_wait_ms": self.policy.backoff_max_ms,
        }
