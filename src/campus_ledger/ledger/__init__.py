"""
Ledger - budget accounts and exactly-once financial events
"""

from campus_ledger.ledger.alerts import AlertNotifier, LoggingAlertNotifier
from campus_ledger.ledger.engine import LedgerAccountingEngine
from campus_ledger.ledger.models import (
    AccountStatus,
    AlertSeverity,
    AlertType,
    BudgetAccount,
    BudgetAlert,
    ExpenseOutcome,
    FeeCredit,
    LedgerTransaction,
    SelectionCriteria,
    SourceEvent,
    SourceEventRef,
    SourceEventStatus,
    StudentFeeBalance,
    TransactionType,
)

__all__ = [
    "LedgerAccountingEngine",
    "AlertNotifier",
    "LoggingAlertNotifier",
    "AccountStatus",
    "AlertSeverity",
    "AlertType",
    "BudgetAccount",
    "BudgetAlert",
    "ExpenseOutcome",
    "FeeCredit",
    "LedgerTransaction",
    "SelectionCriteria",
    "SourceEvent",
    "SourceEventRef",
    "SourceEventStatus",
    "StudentFeeBalance",
    "TransactionType",
]
