"""
Ledger Policy - operating parameters for identifiers, budgets and payouts

The LedgerPolicy collects every tunable the ledger components read: how
identifiers look, how hard to retry conflicting writes, when budgets alert,
how scholarships are spread over the year and which budget accounts absorb
which kind of event.

Fun fact: The 182-day semester gap is half of a 364-day "academic year" -
the two disbursements always land on the same weekday!
"""

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, model_validator


class RegistrationNumberSource(str, Enum):
    """Where a new student's registration number comes from"""

    COUNTER = "counter"  # dedicated allocation for the entry academic year
    APPLICATION_ID = "application_id"  # reuse the application number


class LedgerPolicy(BaseModel):
    """
    Operating parameters for the campus ledger

    Defaults describe a single institution running September-to-August
    academic years with two semesters.
    """

    policy_version: str = Field(
        default="1.0",
        description="Policy version for tracking changes over time",
    )

    # Identifiers
    identifier_prefix: str = Field(
        default="UCAES",
        min_length=1,
        pattern=r"^[A-Z]+$",
        description="Namespace used for application and registration numbers",
    )

    transaction_prefix: str = Field(
        default="TXN",
        min_length=1,
        pattern=r"^[A-Z]+$",
        description="Namespace used for ledger transaction numbers",
    )

    sequence_width: int = Field(
        default=4,
        ge=1,
        le=12,
        description="Zero-padded width of the sequence part of an identifier",
    )

    allow_degraded_identifiers: bool = Field(
        default=False,
        description="Issue timestamp-derived identifiers when allocation fails",
    )

    registration_number_source: RegistrationNumberSource = Field(
        default=RegistrationNumberSource.COUNTER,
        description="How registration numbers are assigned on enrollment",
    )

    # Concurrency
    max_write_attempts: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Attempts for a read-decide-write cycle before giving up",
    )

    backoff_min_ms: int = Field(default=5, ge=0, description="Lower backoff bound")

    backoff_max_ms: int = Field(default=200, ge=1, description="Upper backoff bound")

    # Budget alerts
    high_utilization_threshold: Decimal = Field(
        default=Decimal("0.90"),
        gt=0,
        le=1,
        description="Utilization at which a high_utilization warning is raised",
    )

    block_exceeded_accounts: bool = Field(
        default=True,
        description="Exclude exceeded accounts when selecting a budget for an expense",
    )

    # Budget routing
    procurement_department: str = Field(default="Academic Affairs")
    procurement_category: str = Field(default="Operations")
    transfer_department: str = Field(default="Academic Affairs")
    transfer_category: str = Field(default="Operations")
    payroll_category: str = Field(default="Payroll")
    payroll_fallback_category: str = Field(default="Operations")
    scholarship_fund_department: str = Field(default="Student Affairs")
    scholarship_fund_category: str = Field(default="Scholarships")

    # Scholarships
    semester_gap_days: int = Field(
        default=182,
        ge=1,
        le=366,
        description="Days between the first and second semester disbursement",
    )

    gpa_excellent_threshold: float = Field(default=3.5, ge=0.0, le=5.0)
    gpa_good_threshold: float = Field(default=2.0, ge=0.0, le=5.0)

    # Payroll
    default_tax_rate: Decimal = Field(
        default=Decimal("0.10"),
        ge=0,
        le=1,
        description="Tax as a fraction of gross pay when a structure sets none",
    )

    default_pension_rate: Decimal = Field(
        default=Decimal("0.05"),
        ge=0,
        le=1,
        description="Pension as a fraction of basic pay when a structure sets none",
    )

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_bounds(self) -> "LedgerPolicy":
        if self.backoff_min_ms > self.backoff_max_ms:
            raise ValueError("backoff_min_ms must not exceed backoff_max_ms")
        if self.gpa_good_threshold > self.gpa_excellent_threshold:
            raise ValueError("gpa_good_threshold must not exceed gpa_excellent_threshold")
        return self


# Default global policy instance
default_ledger_policy = LedgerPolicy()
