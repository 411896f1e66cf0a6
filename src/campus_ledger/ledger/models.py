"""
Ledger Domain Models - budget accounts, transactions, source events, alerts

Key concepts:
- BudgetAccount: a department's allocation for one academic year, with the
  running spent/remaining balance derived from applied transactions
- LedgerTransaction: immutable record of one financial effect
- SourceEvent: the idempotency record for an upstream document; at most one
  transaction ever exists per source event
- BudgetAlert: raised when an account crosses the high-utilization threshold
  or moves into the exceeded state
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field
from sqlmodel import SQLModel

from campus_ledger.kernel.ids import source_key
from campus_ledger.kernel.store import StoredModel

_RATIO_PLACES = Decimal("0.0001")


class AccountStatus(str, Enum):
    """
    Budget account states

    ACTIVE while spent <= allocated, EXCEEDED once spending passes the
    allocation. Raising the allocation can bring an account back to ACTIVE.
    """

    ACTIVE = "active"
    EXCEEDED = "exceeded"


class TransactionType(str, Enum):
    """
    Both types consume the account balance:
    - EXPENSE pays a vendor, staff member or internal transfer
    - CREDIT funds a student's fee reduction from a scholarship fund
    """

    EXPENSE = "expense"
    CREDIT = "credit"


class SourceEventStatus(str, Enum):
    DEDUCTED = "deducted"
    NO_BUDGET_FOUND = "no_budget_found"
    PROCESSING_FAILED = "processing_failed"


class AlertType(str, Enum):
    HIGH_UTILIZATION = "high_utilization"
    BUDGET_EXCEEDED = "budget_exceeded"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


def compute_utilization(allocated: Decimal, spent: Decimal) -> Decimal:
    """spent / allocated as a ratio rounded to four places"""
    if allocated <= 0:
        return Decimal("0") if spent <= 0 else Decimal("1")
    return (spent / allocated).quantize(_RATIO_PLACES)


class BudgetAccount(StoredModel):
    """
    Tracked fund allocation with a spend ceiling

    Invariants (checked by ledger.invariants):
    - remaining_amount == allocated_amount - spent_amount
    - spent_amount == sum of applied transactions for this account
    - status is EXCEEDED iff spent_amount > allocated_amount

    Attributes:
        id: Account identifier
        name: Human-readable name, e.g. "Academic Affairs Operations 2025/2026"
        department: Owning department
        category: Spending category (Operations, Payroll, Scholarships, ...)
        academic_year: Year label, e.g. "2025/2026"
        allocated_amount: Spend ceiling
        spent_amount: Total of applied transactions
        remaining_amount: allocated_amount - spent_amount (may go negative)
        utilization: spent_amount / allocated_amount
        status: ACTIVE or EXCEEDED
        created_at: When the account was opened
        last_expense_at: When the last transaction was applied
    """

    collection = "budgets"

    id: str
    name: str
    department: str
    category: str
    academic_year: str
    allocated_amount: Decimal = Field(gt=0)
    spent_amount: Decimal = Field(default=Decimal("0"), ge=0)
    remaining_amount: Decimal
    utilization: Decimal = Field(default=Decimal("0"), ge=0)
    status: AccountStatus = AccountStatus.ACTIVE
    created_at: datetime
    last_expense_at: datetime | None = None

    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    def reaches(self, threshold: Decimal) -> bool:
        """True if spending is at or above `threshold` of the allocation"""
        return self.spent_amount >= self.allocated_amount * threshold

    def with_balances(
        self,
        *,
        allocated: Decimal | None = None,
        spent: Decimal | None = None,
        expense_at: datetime | None = None,
    ) -> "BudgetAccount":
        """Copy with balances, utilization and status recomputed"""
        allocated = self.allocated_amount if allocated is None else allocated
        spent = self.spent_amount if spent is None else spent
        return self.model_copy(
            update={
                "allocated_amount": allocated,
                "spent_amount": spent,
                "remaining_amount": allocated - spent,
                "utilization": compute_utilization(allocated, spent),
                "status": AccountStatus.EXCEEDED if spent > allocated else AccountStatus.ACTIVE,
                "last_expense_at": expense_at or self.last_expense_at,
            }
        )


class LedgerTransaction(StoredModel):
    """
    One applied financial effect (immutable once written)

    At most one transaction exists per source_event_id.
    """

    collection = "budget-transactions"

    id: str
    budget_account_id: str
    type: TransactionType
    amount: Decimal = Field(gt=0)
    source_event_id: str
    description: str = ""
    reference: str = ""
    approved_by: str = "System"
    processed_at: datetime


class SourceEvent(StoredModel):
    """
    Idempotency record for an upstream document, keyed "{collection}:{id}"

    Written only by the ledger engine. A processed event is never applied
    again; a PROCESSING_FAILED event is left unprocessed so a corrected
    delivery can still go through.
    """

    collection = "source-events"

    id: str
    source_collection: str
    document_id: str
    processed: bool
    status: SourceEventStatus
    budget_account_id: str | None = None
    transaction_id: str | None = None
    amount: Decimal | None = None
    error: str | None = None
    processed_at: datetime


class BudgetAlert(StoredModel):
    """Raised at most once per (account, threshold) per crossing"""

    collection = "budget-alerts"

    id: str
    budget_account_id: str
    alert_type: AlertType
    severity: AlertSeverity
    message: str
    utilization: Decimal
    source_event_id: str | None = None
    created_at: datetime
    notified: bool = False

    def to_contract(self) -> dict[str, Any]:
        """Alert payload handed to notifiers"""
        return {
            "budgetId": self.budget_account_id,
            "alertType": self.alert_type.value,
            "severity": self.severity.value,
            "message": self.message,
            "createdAt": self.created_at.isoformat(),
        }


class FeeCredit(StoredModel):
    """A scholarship payout applied against a student's fees"""

    collection = "fee-credits"

    id: str
    student_id: str
    period: str
    amount: Decimal = Field(gt=0)
    budget_account_id: str
    transaction_id: str
    source_event_id: str
    applied_at: datetime


class StudentFeeBalance(StoredModel):
    """
    Fees owed by one student for one academic period

    outstanding_balance = total_fees - amount_paid - scholarship_credits,
    floored at zero.
    """

    collection = "student-fees"

    id: str
    student_id: str
    period: str
    total_fees: Decimal = Field(ge=0)
    amount_paid: Decimal = Field(default=Decimal("0"), ge=0)
    scholarship_credits: Decimal = Field(default=Decimal("0"), ge=0)
    outstanding_balance: Decimal = Field(ge=0)

    @staticmethod
    def key(student_id: str, period: str) -> str:
        return f"{student_id}:{period}"

    def with_credit(self, amount: Decimal) -> "StudentFeeBalance":
        credits = self.scholarship_credits + amount
        outstanding = max(Decimal("0"), self.total_fees - self.amount_paid - credits)
        return self.model_copy(
            update={"scholarship_credits": credits, "outstanding_balance": outstanding}
        )


class SelectionCriteria(BaseModel):
    """
    Which budget account should absorb an event

    department=None matches any department. Fallback categories are tried
    in order only when nothing matches the primary category.
    """

    department: str | None = None
    category: str
    fallback_categories: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}

    def categories(self) -> list[str]:
        return [self.category, *self.fallback_categories]


class SourceEventRef(BaseModel):
    """
    Identity and descriptive context of an upstream document

    Attributes:
        collection: Upstream collection, e.g. "procurement-requests"
        document_id: Upstream document id
        description: Free text copied onto the transaction
        reference: External reference, e.g. "PR-123"
        approved_by: Who approved the upstream document
    """

    collection: str = Field(min_length=1)
    document_id: str = Field(min_length=1)
    description: str = ""
    reference: str = ""
    approved_by: str = "System"

    model_config = {"frozen": True}

    @property
    def key(self) -> str:
        return source_key(self.collection, self.document_id)


class ExpenseOutcome(BaseModel):
    """Result of recording one source event against the ledger"""

    processed: bool
    duplicate: bool = False
    status: SourceEventStatus
    budget_id: str | None = None
    transaction: LedgerTransaction | None = None
    alerts: list[BudgetAlert] = Field(default_factory=list)

    def to_contract(self) -> dict[str, Any]:
        """Approval-event result payload"""
        return {
            "processed": self.processed,
            "budgetId": self.budget_id,
            "status": self.status.value,
        }


# Read models (for dashboards and operator queries)


class AccountVerification(SQLModel):
    """Outcome of checking an account against its transactions"""

    account_id: str
    consistent: bool
    problems: list[str] = Field(default_factory=list)
    spent_amount: Decimal
    transaction_total: Decimal
    transaction_count: int
