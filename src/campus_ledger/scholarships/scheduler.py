"""
Disbursement Scheduler - scholarship payout schedules and renewals

Splits an award into scheduled disbursements, executes each one as an
idempotent fee credit through the ledger, and rolls renewable awards into
the next academic year when the student still qualifies.

A disbursement's ledger effect is keyed by the disbursement itself, so
processing it twice (or crashing between the credit and the status update)
never credits the student twice.
"""

from datetime import timedelta
from decimal import ROUND_DOWN, Decimal
from typing import Any, Protocol

from campus_ledger.kernel.errors import (
    CampusLedgerError,
    ConcurrencyExhaustedError,
    DisbursementNotFound,
    InvalidStateError,
    NotFoundError,
    ScholarshipNotFound,
    StorageUnavailableError,
    ValidationError,
    WriteConflict,
)
from campus_ledger.kernel.ids import generate_id
from campus_ledger.kernel.logging import LogOperation, get_logger
from campus_ledger.kernel.metrics import disbursements_total, track_operation
from campus_ledger.kernel.policy import LedgerPolicy
from campus_ledger.kernel.retry import run_with_conflict_retry
from campus_ledger.kernel.store import SQLiteDocumentStore
from campus_ledger.kernel.time import RealTimeProvider, TimeProvider
from campus_ledger.kernel.validation import parse_choice, validate_model
from campus_ledger.ledger.engine import LedgerAccountingEngine
from campus_ledger.ledger.invariants import parse_amount
from campus_ledger.ledger.models import ExpenseOutcome, SourceEventRef
from campus_ledger.scholarships.models import (
    AcademicPeriod,
    AcademicStanding,
    CustomScheduleEntry,
    DisbursementPlan,
    DisbursementStatus,
    RenewalCriteria,
    RenewalDecision,
    ScholarshipAward,
    ScholarshipDisbursement,
    ScholarshipStatus,
    StudentDisbursementSummary,
)

logger = get_logger(__name__)

_CENTS = Decimal("0.01")
_HUNDRED = Decimal("100")

# Failures worth retrying later; anything else needs a human
RETRIABLE_ERRORS = (StorageUnavailableError, ConcurrencyExhaustedError, NotFoundError)


class StudentRecords(Protocol):
    """Academic records the renewal check reads"""

    def get_gpa(self, student_id: str) -> float | None:
        """Current GPA, or None if the student has no record"""
        ...


class DisbursementScheduler:
    """Computes and executes scholarship disbursement schedules"""

    def __init__(
        self,
        store: SQLiteDocumentStore,
        ledger: LedgerAccountingEngine,
        policy: LedgerPolicy | None = None,
        time_provider: TimeProvider | None = None,
        student_records: StudentRecords | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.policy = policy or LedgerPolicy()
        self.time_provider = time_provider or RealTimeProvider()
        self.student_records = student_records

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def create_schedule(
        self,
        scholarship_id: str,
        total_amount: Decimal | str | int,
        period: str,
        plan: DisbursementPlan | str,
        student_id: str,
        custom_plan: list[CustomScheduleEntry] | list[dict[str, Any]] | None = None,
    ) -> list[ScholarshipDisbursement]:
        """
        Split an award into scheduled disbursements

        Idempotent per scholarship: if a schedule exists it is returned
        unchanged.

        Args:
            scholarship_id: Award the schedule belongs to
            total_amount: Award total; disbursement amounts sum to exactly this
            period: Starting period, e.g. "2025/2026-S1"
            plan: semester, annual or custom
            student_id: Beneficiary
            custom_plan: (period, percentage) entries for the custom plan

        Returns:
            Disbursements in payout order

        Raises:
            ValidationError: Bad amount, period or plan, or a custom plan that does
                not add up to 100%
        """
        existing = self.get_schedule(scholarship_id)
        if existing:
            logger.debug("Schedule already exists", scholarship_id=scholarship_id)
            return existing

        total = parse_amount(total_amount, "total_amount")
        start = AcademicPeriod.parse(period)
        plan = parse_choice(DisbursementPlan, plan, "plan")
        legs = self._plan_legs(total, start, plan, custom_plan)

        base_date = self.time_provider.now()
        schedule = [
            ScholarshipDisbursement(
                id=f"{scholarship_id}_{leg_period.label}",
                scholarship_id=scholarship_id,
                student_id=student_id,
                period=leg_period.label,
                sequence=n,
                amount=amount,
                planned_date=base_date + timedelta(days=offset_days),
            )
            for n, (leg_period, amount, offset_days) in enumerate(legs, start=1)
        ]

        try:
            self.store.commit([d.create_op() for d in schedule])
        except WriteConflict:
            # A concurrent caller created the schedule first
            return self.get_schedule(scholarship_id)

        logger.info(
            "Disbursement schedule created",
            scholarship_id=scholarship_id,
            plan=plan.value,
            disbursements=len(schedule),
        )
        return [d.model_copy(update={"version": 1}) for d in schedule]

    def _plan_legs(
        self,
        total: Decimal,
        start: AcademicPeriod,
        plan: DisbursementPlan,
        custom_plan: list[CustomScheduleEntry] | list[dict[str, Any]] | None,
    ) -> list[tuple[AcademicPeriod, Decimal, int]]:
        gap = self.policy.semester_gap_days

        if plan == DisbursementPlan.ANNUAL:
            return [(start, total, 0)]

        if plan == DisbursementPlan.SEMESTER:
            if start.term != 1:
                # Mid-cycle start: the whole year's award in one payout
                return [(start, total, 0)]
            first = (total / 2).quantize(_CENTS, rounding=ROUND_DOWN)
            return [(start, first, 0), (start.next(), total - first, gap)]

        entries = [
            validate_model(
                CustomScheduleEntry, e, "Invalid custom plan entry", prefix=f"custom_plan.{n}"
            )
            for n, e in enumerate(custom_plan or [])
        ]
        if not entries:
            raise ValidationError("Custom plan needs at least one entry", ["custom_plan"])
        percent_total = sum((e.percentage for e in entries), Decimal("0"))
        if percent_total != _HUNDRED:
            raise ValidationError(
                f"Custom plan percentages total {percent_total}%, expected 100%", ["custom_plan"]
            )

        periods = [AcademicPeriod.parse(e.period) for e in entries]
        if len({p.label for p in periods}) != len(periods):
            raise ValidationError("Custom plan repeats a period", ["custom_plan"])
        if any(p.ordinal() < start.ordinal() for p in periods):
            raise ValidationError("Custom plan pays out before the starting period", ["custom_plan"])

        amounts = [
            (total * e.percentage / _HUNDRED).quantize(_CENTS, rounding=ROUND_DOWN)
            for e in entries[:-1]
        ]
        # Rounding remainder lands on the last entry
        amounts.append(total - sum(amounts, Decimal("0")))
        if any(a <= 0 for a in amounts):
            raise ValidationError("Custom plan produces an empty disbursement", ["custom_plan"])

        return [
            (p, amount, (p.ordinal() - start.ordinal()) * gap)
            for p, amount in zip(periods, amounts)
        ]

    def get_schedule(self, scholarship_id: str) -> list[ScholarshipDisbursement]:
        schedule = self.store.query_models(
            ScholarshipDisbursement, where={"scholarship_id": scholarship_id}
        )
        return sorted(schedule, key=lambda d: d.sequence)

    def get_disbursement(self, disbursement_id: str) -> ScholarshipDisbursement:
        disbursement = self.store.load(ScholarshipDisbursement, disbursement_id)
        if disbursement is None:
            raise DisbursementNotFound(disbursement_id)
        return disbursement

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    @track_operation("process_disbursement")
    def process_disbursement(self, disbursement_id: str) -> ScholarshipDisbursement:
        """
        Pay out one pending disbursement as a fee credit

        Failures do not raise: the disbursement comes back FAILED with the
        error recorded and `retriable` set for transient causes.

        Raises:
            DisbursementNotFound: Unknown id
            InvalidStateError: The disbursement is not pending
        """
        disbursement = self.get_disbursement(disbursement_id)
        if disbursement.status != DisbursementStatus.PENDING:
            raise InvalidStateError(
                "Disbursement", disbursement_id, disbursement.status.value, "pending"
            )

        source = SourceEventRef(
            collection=ScholarshipDisbursement.collection,
            document_id=disbursement.id,
            description=f"Scholarship disbursement {disbursement.period}",
            reference=disbursement.scholarship_id,
        )
        with LogOperation(
            logger,
            "process_disbursement",
            disbursement_id=disbursement_id,
            student_id=disbursement.student_id,
        ):
            try:
                outcome = self.ledger.apply_fee_credit(
                    disbursement.student_id, disbursement.amount, disbursement.period, source
                )
            except RETRIABLE_ERRORS as e:
                return self._mark_failed(disbursement_id, e, retriable=True)
            except ValidationError as e:
                return self._mark_failed(disbursement_id, e, retriable=False)
            return self._mark_disbursed(disbursement_id, outcome)

    def _mark_disbursed(
        self, disbursement_id: str, outcome: ExpenseOutcome
    ) -> ScholarshipDisbursement:
        def attempt() -> ScholarshipDisbursement:
            current = self.get_disbursement(disbursement_id)
            if current.status == DisbursementStatus.DISBURSED:
                return current
            done = current.model_copy(
                update={
                    "status": DisbursementStatus.DISBURSED,
                    "disbursed_at": self.time_provider.now(),
                    "transaction_id": outcome.transaction.id if outcome.transaction else None,
                    "attempts": current.attempts + 1,
                    "retriable": False,
                    "error": None,
                }
            )
            [doc] = self.store.commit([done.update_op()])
            return done.model_copy(update={"version": doc.version})

        disbursement = run_with_conflict_retry(
            attempt, operation="mark_disbursed", **self._retry_kwargs()
        )
        disbursements_total.labels(status="disbursed").inc()
        logger.info(
            "Disbursement paid",
            disbursement_id=disbursement_id,
            transaction_id=disbursement.transaction_id,
            duplicate=outcome.duplicate,
        )
        return disbursement

    def _mark_failed(
        self, disbursement_id: str, error: CampusLedgerError, *, retriable: bool
    ) -> ScholarshipDisbursement:
        def attempt() -> ScholarshipDisbursement:
            current = self.get_disbursement(disbursement_id)
            if current.status != DisbursementStatus.PENDING:
                return current
            failed = current.model_copy(
                update={
                    "status": DisbursementStatus.FAILED,
                    "retriable": retriable,
                    "error": str(error),
                    "attempts": current.attempts + 1,
                }
            )
            [doc] = self.store.commit([failed.update_op()])
            return failed.model_copy(update={"version": doc.version})

        disbursement = run_with_conflict_retry(
            attempt, operation="mark_failed", **self._retry_kwargs()
        )
        disbursements_total.labels(status="failed").inc()
        logger.error(
            "Disbursement failed",
            disbursement_id=disbursement_id,
            retriable=retriable,
            error=str(error),
        )
        return disbursement

    def process_pending(self, period: str) -> list[ScholarshipDisbursement]:
        """Process every pending disbursement of an academic period"""
        label = AcademicPeriod.parse(period).label
        pending = self.store.query_models(
            ScholarshipDisbursement,
            where={"period": label, "status": DisbursementStatus.PENDING.value},
        )
        results = []
        for disbursement in pending:
            try:
                results.append(self.process_disbursement(disbursement.id))
            except InvalidStateError:
                # Picked up by a concurrent run
                results.append(self.get_disbursement(disbursement.id))
        logger.info(
            "Pending disbursements processed",
            period=label,
            total=len(results),
            failed=sum(1 for d in results if d.status == DisbursementStatus.FAILED),
        )
        return results

    def retry_disbursement(self, disbursement_id: str) -> ScholarshipDisbursement:
        """
        Put a failed, retriable disbursement back to pending

        Raises:
            InvalidStateError: Not failed, or failed permanently
        """

        def attempt() -> ScholarshipDisbursement:
            current = self.get_disbursement(disbursement_id)
            if current.status != DisbursementStatus.FAILED or not current.retriable:
                raise InvalidStateError(
                    "Disbursement", disbursement_id, current.status.value, "failed and retriable"
                )
            reset = current.model_copy(
                update={"status": DisbursementStatus.PENDING, "retriable": False}
            )
            [doc] = self.store.commit([reset.update_op()])
            return reset.model_copy(update={"version": doc.version})

        disbursement = run_with_conflict_retry(
            attempt, operation="retry_disbursement", **self._retry_kwargs()
        )
        logger.info("Disbursement queued for retry", disbursement_id=disbursement_id)
        return disbursement

    def cancel_disbursement(self, disbursement_id: str) -> ScholarshipDisbursement:
        """
        Cancel a disbursement that has not been paid

        Raises:
            InvalidStateError: Already disbursed
        """

        def attempt() -> ScholarshipDisbursement:
            current = self.get_disbursement(disbursement_id)
            if current.status == DisbursementStatus.CANCELLED:
                return current
            if current.status == DisbursementStatus.DISBURSED:
                raise InvalidStateError(
                    "Disbursement", disbursement_id, current.status.value, "pending or failed"
                )
            cancelled = current.model_copy(update={"status": DisbursementStatus.CANCELLED})
            [doc] = self.store.commit([cancelled.update_op()])
            return cancelled.model_copy(update={"version": doc.version})

        disbursement = run_with_conflict_retry(
            attempt, operation="cancel_disbursement", **self._retry_kwargs()
        )
        disbursements_total.labels(status="cancelled").inc()
        logger.info("Disbursement cancelled", disbursement_id=disbursement_id)
        return disbursement

    # ------------------------------------------------------------------
    # Awards & renewals
    # ------------------------------------------------------------------

    def award_scholarship(
        self,
        *,
        student_id: str,
        total_amount: Decimal | str | int,
        academic_year: str,
        period: str | None = None,
        plan: DisbursementPlan | str = DisbursementPlan.SEMESTER,
        name: str = "",
        renewable: bool = False,
        renewal_criteria: RenewalCriteria | None = None,
        custom_plan: list[CustomScheduleEntry] | list[dict[str, Any]] | None = None,
        scholarship_id: str | None = None,
        parent: ScholarshipAward | None = None,
    ) -> tuple[ScholarshipAward, list[ScholarshipDisbursement]]:
        """
        Record an award and create its disbursement schedule

        Re-awarding an existing scholarship_id returns the stored award and
        schedule.
        """
        total = parse_amount(total_amount, "total_amount")
        start = AcademicPeriod.parse(period or f"{academic_year}-S1")
        if start.academic_year != AcademicPeriod.parse(f"{academic_year}-S1").academic_year:
            raise ValidationError(
                f"Period {start.label} is outside academic year {academic_year}", ["period"]
            )

        award = ScholarshipAward(
            id=scholarship_id or generate_id(),
            student_id=student_id,
            name=name,
            total_amount=total,
            academic_year=start.academic_year,
            start_period=start.label,
            plan=parse_choice(DisbursementPlan, plan, "plan"),
            renewable=renewable,
            renewal_criteria=renewal_criteria,
            renewal_count=parent.renewal_count + 1 if parent else 0,
            parent_scholarship_id=parent.id if parent else None,
            origin_scholarship_id=(parent.origin_scholarship_id or parent.id) if parent else None,
            awarded_at=self.time_provider.now(),
        )
        try:
            self.store.commit([award.create_op()])
            logger.info(
                "Scholarship awarded",
                scholarship_id=award.id,
                student_id=student_id,
                academic_year=award.academic_year,
                plan=award.plan.value,
            )
        except WriteConflict:
            award = self.get_award(award.id)

        schedule = self.create_schedule(
            award.id, award.total_amount, award.start_period, award.plan, award.student_id,
            custom_plan,
        )
        return award, schedule

    def get_award(self, scholarship_id: str) -> ScholarshipAward:
        award = self.store.load(ScholarshipAward, scholarship_id)
        if award is None:
            raise ScholarshipNotFound(scholarship_id)
        return award

    def determine_standing(self, gpa: float) -> AcademicStanding:
        if gpa >= self.policy.gpa_excellent_threshold:
            return AcademicStanding.EXCELLENT
        if gpa >= self.policy.gpa_good_threshold:
            return AcademicStanding.GOOD
        return AcademicStanding.PROBATION

    def check_renewal(self, award: ScholarshipAward) -> tuple[bool, str]:
        """Whether an award qualifies for renewal, and why"""
        criteria = award.renewal_criteria
        if criteria is None:
            return True, "no renewal criteria"

        if criteria.max_duration_years is not None:
            years_so_far = award.renewal_count + 1
            if years_so_far >= criteria.max_duration_years:
                return False, f"maximum duration of {criteria.max_duration_years} years reached"

        if criteria.minimum_gpa is None and criteria.academic_standing is None:
            return True, "within maximum duration"

        gpa = self.student_records.get_gpa(award.student_id) if self.student_records else None
        if gpa is None:
            return False, "no academic record for student"

        if criteria.minimum_gpa is not None and gpa < criteria.minimum_gpa:
            return False, f"GPA {gpa} below minimum {criteria.minimum_gpa}"

        if criteria.academic_standing is not None:
            standing = self.determine_standing(gpa)
            if standing.rank() < criteria.academic_standing.rank():
                return (
                    False,
                    f"standing {standing.value} below required {criteria.academic_standing.value}",
                )
        return True, f"GPA {gpa} meets criteria"

    def renew_awards(self, current_year: str, new_year: str) -> list[RenewalDecision]:
        """
        Roll renewable awards of `current_year` into `new_year`

        Renewed awards start in the first semester of the new year on a
        semester plan. Running this twice renews nothing new.

        Returns:
            One decision per renewable award considered
        """
        new_start = AcademicPeriod.parse(f"{new_year}-S1")
        awards = self.store.query_models(
            ScholarshipAward,
            where={
                "academic_year": AcademicPeriod.parse(f"{current_year}-S1").academic_year,
                "renewable": True,
                "status": ScholarshipStatus.AWARDED.value,
            },
        )

        decisions = []
        for award in awards:
            eligible, reason = self.check_renewal(award)
            if not eligible:
                logger.info(
                    "Scholarship renewal denied",
                    scholarship_id=award.id,
                    student_id=award.student_id,
                    reason=reason,
                )
                decisions.append(
                    RenewalDecision(
                        scholarship_id=award.id,
                        student_id=award.student_id,
                        eligible=False,
                        reason=reason,
                    )
                )
                continue

            try:
                renewed, _ = self.award_scholarship(
                    student_id=award.student_id,
                    total_amount=award.total_amount,
                    academic_year=new_start.academic_year,
                    period=new_start.label,
                    plan=DisbursementPlan.SEMESTER,
                    name=award.name,
                    renewable=award.renewable,
                    renewal_criteria=award.renewal_criteria,
                    scholarship_id=award.renewal_id(),
                    parent=award,
                )
            except CampusLedgerError as e:
                logger.error(
                    "Scholarship renewal failed",
                    scholarship_id=award.id,
                    student_id=award.student_id,
                    error=str(e),
                )
                decisions.append(
                    RenewalDecision(
                        scholarship_id=award.id,
                        student_id=award.student_id,
                        eligible=True,
                        reason=f"renewal failed: {e}",
                    )
                )
                continue

            logger.info(
                "Scholarship renewed",
                scholarship_id=award.id,
                renewed_scholarship_id=renewed.id,
                student_id=award.student_id,
            )
            decisions.append(
                RenewalDecision(
                    scholarship_id=award.id,
                    student_id=award.student_id,
                    eligible=True,
                    renewed_scholarship_id=renewed.id,
                    reason=reason,
                )
            )
        return decisions

    def student_summary(self, student_id: str) -> StudentDisbursementSummary:
        awards = self.store.query_models(ScholarshipAward, where={"student_id": student_id})
        disbursements = self.store.query_models(
            ScholarshipDisbursement, where={"student_id": student_id}
        )
        completed = [d for d in disbursements if d.status == DisbursementStatus.DISBURSED]
        return StudentDisbursementSummary(
            student_id=student_id,
            total_awarded=sum(
                (a.total_amount for a in awards if a.status == ScholarshipStatus.AWARDED),
                Decimal("0"),
            ),
            total_disbursed=sum((d.amount for d in completed), Decimal("0")),
            pending=[d for d in disbursements if d.status == DisbursementStatus.PENDING],
            completed=completed,
        )

    def list_failed(self) -> list[ScholarshipDisbursement]:
        return self.store.query_models(
            ScholarshipDisbursement, where={"status": DisbursementStatus.FAILED.value}
        )

    def _retry_kwargs(self) -> dict[str, int]:
        return {
            "max_attempts": self.policy.max_write_attempts,
            "min_wait_ms": self.policy.backoff_min_ms,
            "max_wait_ms": self.policy.backoff_max_ms,
        }
