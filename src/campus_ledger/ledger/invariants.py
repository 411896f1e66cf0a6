"""
Ledger Invariants - pure checks over accounts, amounts and alerts

These functions hold no state and touch no storage, so the engine can call
them inside a retry loop and tests can exercise them directly.
"""

from decimal import Decimal, InvalidOperation
from typing import Any

from campus_ledger.kernel.errors import ValidationError
from campus_ledger.ledger.models import (
    AccountStatus,
    AlertType,
    BudgetAccount,
    LedgerTransaction,
    compute_utilization,
)

_CENTS = Decimal("0.01")


def parse_amount(raw: Any, field: str = "amount") -> Decimal:
    """
    Coerce an upstream amount into a positive two-place Decimal

    Accepts Decimal, int, float and numeric strings. Floats go through str()
    so 0.1 becomes Decimal("0.1") rather than its binary expansion.

    Raises:
        ValidationError: Missing, non-numeric, non-finite, or not positive
    """
    if raw is None or isinstance(raw, bool):
        raise ValidationError(f"Invalid {field}", [field])
    try:
        value = raw if isinstance(raw, Decimal) else Decimal(str(raw).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid {field} {raw!r}", [field]) from e
    if not value.is_finite():
        raise ValidationError(f"Invalid {field} {raw!r}", [field])
    if value <= 0:
        raise ValidationError(f"{field} must be positive, got {value}", [field])
    return value.quantize(_CENTS)


def crossed_alerts(
    before: BudgetAccount, after: BudgetAccount, threshold: Decimal
) -> list[AlertType]:
    """
    Alerts owed by a balance change

    A high_utilization alert is owed only when utilization moves from below
    `threshold` to at-or-above it; budget_exceeded only on the transition
    into EXCEEDED. Both can be owed by one change.
    """
    owed = []
    if not before.reaches(threshold) and after.reaches(threshold):
        owed.append(AlertType.HIGH_UTILIZATION)
    if before.status == AccountStatus.ACTIVE and after.status == AccountStatus.EXCEEDED:
        owed.append(AlertType.BUDGET_EXCEEDED)
    return owed


def alert_message(account: BudgetAccount, alert_type: AlertType) -> str:
    percent = (account.utilization * 100).quantize(Decimal("1"))
    if alert_type == AlertType.BUDGET_EXCEEDED:
        over = account.spent_amount - account.allocated_amount
        return f"Budget {account.name} has been exceeded by {over} ({percent}% utilized)"
    return f"Budget {account.name} is at {percent}% utilization"


def check_account_consistency(
    account: BudgetAccount, transactions: list[LedgerTransaction]
) -> list[str]:
    """
    Compare an account's stored balances with its transaction history

    Returns:
        Human-readable problems; empty when the account is consistent
    """
    problems = []
    total = sum((t.amount for t in transactions), Decimal("0"))

    if account.spent_amount != total:
        problems.append(
            f"spent_amount {account.spent_amount} != transaction total {total}"
        )
    if account.remaining_amount != account.allocated_amount - account.spent_amount:
        problems.append(
            f"remaining_amount {account.remaining_amount} != "
            f"{account.allocated_amount} - {account.spent_amount}"
        )
    expected_status = (
        AccountStatus.EXCEEDED
        if account.spent_amount > account.allocated_amount
        else AccountStatus.ACTIVE
    )
    if account.status != expected_status:
        problems.append(f"status {account.status.value} != {expected_status.value}")
    if account.utilization != compute_utilization(account.allocated_amount, account.spent_amount):
        problems.append(f"utilization {account.utilization} is stale")
    stray = [t.id for t in transactions if t.budget_account_id != account.id]
    if stray:
        problems.append(f"transactions {', '.join(stray)} belong to another account")
    return problems
