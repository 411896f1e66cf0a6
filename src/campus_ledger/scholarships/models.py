"""
Scholarship Domain Models - awards, academic periods and disbursements

Key concepts:
- AcademicPeriod: one semester of an academic year, e.g. "2025/2026-S1"
- ScholarshipAward: the total granted to a student for one academic year
- ScholarshipDisbursement: one scheduled payout; the amounts of a schedule
  always add up to the award total
"""

import re
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from campus_ledger.kernel.errors import ValidationError
from campus_ledger.kernel.store import StoredModel

_PERIOD_RE = re.compile(
    r"^(?P<start>\d{4})\s*/\s*(?P<end>\d{4})\s*[-_ ]\s*"
    r"(?:S(?P<short>[12])|(?P<word>First|Second)\s+Semester)$",
    re.IGNORECASE,
)


class AcademicPeriod(BaseModel):
    """
    One semester of an academic year

    Example:
        >>> AcademicPeriod.parse("2025/2026-S2").label
        '2025/2026-S2'
    """

    academic_year: str
    term: int = Field(ge=1, le=2)

    model_config = {"frozen": True}

    @classmethod
    def parse(cls, text: str) -> "AcademicPeriod":
        """
        Parse "2025/2026-S1" (or "2025/2026 First Semester")

        Raises:
            ValidationError: Unrecognised period
        """
        match = _PERIOD_RE.match((text or "").strip())
        if not match:
            raise ValidationError(f"Unrecognised academic period {text!r}")
        start, end = int(match["start"]), int(match["end"])
        if end != start + 1:
            raise ValidationError(f"Academic period {text!r} must span consecutive years")
        if match["short"]:
            term = int(match["short"])
        else:
            term = 1 if match["word"].lower() == "first" else 2
        return cls(academic_year=f"{start}/{end}", term=term)

    @property
    def label(self) -> str:
        return f"{self.academic_year}-S{self.term}"

    @property
    def start_year(self) -> int:
        return int(self.academic_year.split("/")[0])

    def ordinal(self) -> int:
        """Semesters since year zero; consecutive periods differ by one"""
        return self.start_year * 2 + (self.term - 1)

    def next(self) -> "AcademicPeriod":
        if self.term == 1:
            return AcademicPeriod(academic_year=self.academic_year, term=2)
        start = self.start_year + 1
        return AcademicPeriod(academic_year=f"{start}/{start + 1}", term=1)

    def __str__(self) -> str:
        return self.label


class DisbursementPlan(str, Enum):
    SEMESTER = "semester"  # two halves in term 1, one payout when starting in term 2
    ANNUAL = "annual"  # one payout for the year
    CUSTOM = "custom"  # caller-supplied (period, percentage) pairs


class DisbursementStatus(str, Enum):
    """
    Disbursement lifecycle

    PENDING → DISBURSED
    PENDING → FAILED → PENDING (retry, only when retriable)
    PENDING | FAILED → CANCELLED
    """

    PENDING = "pending"
    DISBURSED = "disbursed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ScholarshipStatus(str, Enum):
    AWARDED = "awarded"
    CANCELLED = "cancelled"


class AcademicStanding(str, Enum):
    EXCELLENT = "Excellent"
    GOOD = "Good"
    PROBATION = "Probation"

    def rank(self) -> int:
        return {
            AcademicStanding.PROBATION: 0,
            AcademicStanding.GOOD: 1,
            AcademicStanding.EXCELLENT: 2,
        }[self]


class CustomScheduleEntry(BaseModel):
    """One leg of a custom plan: a share of the total paid in a period"""

    period: str
    percentage: Decimal = Field(gt=0, le=100)

    model_config = {"frozen": True}


class RenewalCriteria(BaseModel):
    """
    What a student must meet for a renewable award to roll over

    Attributes:
        minimum_gpa: GPA floor, if any
        academic_standing: Lowest acceptable standing, if any
        max_duration_years: Total years the award may run, if capped
    """

    minimum_gpa: float | None = Field(default=None, ge=0)
    academic_standing: AcademicStanding | None = None
    max_duration_years: int | None = Field(default=None, ge=1)

    model_config = {"frozen": True}


class ScholarshipAward(StoredModel):
    """
    A scholarship granted to one student for one academic year

    Renewals are new awards linked through parent_scholarship_id; their ids
    derive from the original award so renewing twice is harmless.
    """

    collection = "scholarships"

    id: str
    student_id: str
    name: str = ""
    total_amount: Decimal = Field(gt=0)
    academic_year: str
    start_period: str
    plan: DisbursementPlan
    renewable: bool = False
    renewal_criteria: RenewalCriteria | None = None
    renewal_count: int = Field(default=0, ge=0)
    parent_scholarship_id: str | None = None
    origin_scholarship_id: str | None = None
    status: ScholarshipStatus = ScholarshipStatus.AWARDED
    awarded_at: datetime

    def renewal_id(self) -> str:
        """Deterministic id of this award's renewal"""
        return f"{self.origin_scholarship_id or self.id}-R{self.renewal_count + 1}"


class ScholarshipDisbursement(StoredModel):
    """
    One scheduled payout of an award

    Attributes:
        id: "{scholarship_id}_{period label}"
        scholarship_id: Parent award
        student_id: Beneficiary
        period: Academic period label the payout belongs to
        sequence: Position within the schedule, starting at 1
        amount: Payout amount
        planned_date: When the payout is due
        status: Lifecycle state
        retriable: Whether a FAILED payout may be retried
        error: Last failure message
        attempts: Processing attempts so far
        disbursed_at: When the fee credit was applied
        transaction_id: Ledger transaction of the fee credit
    """

    collection = "scholarship-disbursements"

    id: str
    scholarship_id: str
    student_id: str
    period: str
    sequence: int = Field(ge=1)
    amount: Decimal = Field(gt=0)
    planned_date: datetime
    status: DisbursementStatus = DisbursementStatus.PENDING
    retriable: bool = False
    error: str | None = None
    attempts: int = Field(default=0, ge=0)
    disbursed_at: datetime | None = None
    transaction_id: str | None = None

    def to_contract(self) -> dict[str, Any]:
        return {
            "period": self.period,
            "amount": str(self.amount),
            "plannedDate": self.planned_date.isoformat(),
            "status": self.status.value,
        }


class RenewalDecision(BaseModel):
    """Why an award was or wasn't rolled into the next academic year"""

    scholarship_id: str
    student_id: str
    eligible: bool
    renewed_scholarship_id: str | None = None
    reason: str


class StudentDisbursementSummary(BaseModel):
    student_id: str
    total_awarded: Decimal
    total_disbursed: Decimal
    pending: list[ScholarshipDisbursement] = Field(default_factory=list)
    completed: list[ScholarshipDisbursement] = Field(default_factory=list)
