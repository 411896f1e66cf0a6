"""
CampusLedger - Main façade class

This is the primary interface for the campus ledger. It wires every
component over one document store and change feed, and offers a high-level
API for operators, the CLI and the health server.

Example:
    >>> from campus_ledger import CampusLedger
    >>> ledger = CampusLedger("campus.db")
    >>> ledger.open_account(name="AA Ops", department="Academic Affairs",
    ...                     category="Operations", academic_year="2025/2026",
    ...                     allocated_amount="10000")
    >>> ledger.submit_upstream_document("procurement-requests", "PR-1",
    ...     {"status": "approved", "totalEstimatedCost": 2500})
    >>> ledger.attention()  # what needs staff follow-up
"""

from decimal import Decimal
from pathlib import Path
from typing import Any

from campus_ledger.admissions.lifecycle import ApplicationLifecycle
from campus_ledger.admissions.models import Application, TransferResult
from campus_ledger.identifiers.allocator import SequentialIdentifierAllocator
from campus_ledger.ingestion.watcher import EventIngestionWatcher, IngestionOutcome
from campus_ledger.kernel.bus import InProcessChangeFeed
from campus_ledger.kernel.notifications import ChangeNotification
from campus_ledger.kernel.policy import LedgerPolicy
from campus_ledger.kernel.store import SQLiteDocumentStore, WriteOp
from campus_ledger.kernel.time import RealTimeProvider, TimeProvider
from campus_ledger.ledger.alerts import AlertNotifier
from campus_ledger.ledger.engine import LedgerAccountingEngine
from campus_ledger.ledger.models import (
    BudgetAccount,
    ExpenseOutcome,
    SelectionCriteria,
    SourceEventRef,
    SourceEventStatus,
)
from campus_ledger.payroll.service import PayrollService
from campus_ledger.scholarships.models import ScholarshipAward, ScholarshipDisbursement
from campus_ledger.scholarships.scheduler import DisbursementScheduler, StudentRecords


class CampusLedger:
    """
    Campus ledger main façade

    Provides a unified API for:
    - Sequential identifiers
    - Budget accounts and exactly-once expenses
    - Scholarship schedules and disbursements
    - Application lifecycle and enrollment transfer
    - Payroll batches
    - Upstream change ingestion
    """

    def __init__(
        self,
        sqlite_path: str | Path,
        policy: LedgerPolicy | None = None,
        time_provider: TimeProvider | None = None,
        notifier: AlertNotifier | None = None,
        student_records: StudentRecords | None = None,
        watch: bool = True,
    ) -> None:
        """
        Initialize the campus ledger

        Args:
            sqlite_path: Path to SQLite database
            policy: Ledger policy (uses defaults if None)
            time_provider: Time provider (uses real time if None)
            notifier: Budget alert notifier (logs alerts if None)
            student_records: GPA source for scholarship renewals
            watch: Attach the ingestion watcher to the change feed
        """
        self.sqlite_path = Path(sqlite_path)
        self.policy = policy or LedgerPolicy()
        self.time_provider = time_provider or RealTimeProvider()

        self.change_feed = InProcessChangeFeed()
        self.store = SQLiteDocumentStore(self.sqlite_path, self.time_provider, self.change_feed)
        self.allocator = SequentialIdentifierAllocator(self.store, self.policy, self.time_provider)
        self.ledger = LedgerAccountingEngine(
            self.store, self.allocator, self.policy, self.time_provider, notifier
        )
        self.scheduler = DisbursementScheduler(
            self.store, self.ledger, self.policy, self.time_provider, student_records
        )
        self.lifecycle = ApplicationLifecycle(
            self.store, self.allocator, self.policy, self.time_provider
        )
        self.payroll = PayrollService(self.store, self.ledger, self.policy, self.time_provider)
        self.watcher = EventIngestionWatcher(self.ledger, self.lifecycle, self.policy)
        if watch:
            self.watcher.attach(self.change_feed)

    # ------------------------------------------------------------------
    # Identifiers
    # ------------------------------------------------------------------

    def allocate(self, namespace: str, period: str) -> str:
        return self.allocator.allocate(namespace, period)

    # ------------------------------------------------------------------
    # Budgets
    # ------------------------------------------------------------------

    def open_account(self, **kwargs: Any) -> BudgetAccount:
        return self.ledger.open_account(**kwargs)

    def record_expense(
        self,
        *,
        collection: str,
        document_id: str,
        amount: Decimal | str | int,
        category: str,
        department: str | None = None,
        requested_by: str = "System",
        description: str = "",
    ) -> ExpenseOutcome:
        """Record an expense directly, bypassing upstream documents"""
        return self.ledger.record_expense(
            SelectionCriteria(department=department, category=category),
            amount,
            SourceEventRef(
                collection=collection,
                document_id=document_id,
                description=description,
                approved_by=requested_by,
            ),
        )

    def list_accounts(self) -> list[BudgetAccount]:
        return self.ledger.list_accounts()

    # ------------------------------------------------------------------
    # Upstream documents
    # ------------------------------------------------------------------

    def submit_upstream_document(
        self, collection: str, document_id: str, data: dict[str, Any]
    ) -> None:
        """
        Write an upstream document as another system would

        The change feed delivers it to the ingestion watcher synchronously.
        """
        self.store.commit([WriteOp.upsert(collection, document_id, data)])

    def replay(self, notifications: list[ChangeNotification]) -> list[IngestionOutcome]:
        return self.watcher.replay(notifications)

    # ------------------------------------------------------------------
    # Admissions
    # ------------------------------------------------------------------

    def create_application(
        self, applicant_email: str, sections: dict[str, dict[str, Any]] | None = None
    ) -> Application:
        return self.lifecycle.create_application(applicant_email, sections)

    def transition_application(
        self, application_id: str, status: str, actor: str = "system"
    ) -> Application:
        return self.lifecycle.transition(application_id, status, actor=actor)

    def override_application(self, application_id: str, reason: str, actor: str = "system") -> Application:
        return self.lifecycle.override(application_id, reason=reason, actor=actor)

    def transfer_application(self, application_id: str) -> TransferResult:
        return self.lifecycle.on_accepted(application_id)

    # ------------------------------------------------------------------
    # Scholarships
    # ------------------------------------------------------------------

    def award_scholarship(
        self, **kwargs: Any
    ) -> tuple[ScholarshipAward, list[ScholarshipDisbursement]]:
        return self.scheduler.award_scholarship(**kwargs)

    def process_disbursement(self, disbursement_id: str) -> ScholarshipDisbursement:
        return self.scheduler.process_disbursement(disbursement_id)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def attention(self) -> dict[str, Any]:
        """
        Records that need staff follow-up

        Returns:
            Lists of ids per kind, plus a total count
        """
        failed_events = self.ledger.list_source_events(SourceEventStatus.PROCESSING_FAILED)
        failed_disbursements = self.scheduler.list_failed()
        awaiting_transfer = self.lifecycle.list_awaiting_transfer()
        unnotified_alerts = self.ledger.list_alerts(unnotified_only=True)
        exceeded = [a for a in self.ledger.list_accounts() if not a.is_active()]

        items = {
            "processing_failed_events": [
                {"id": e.id, "error": e.error} for e in failed_events
            ],
            "failed_disbursements": [
                {"id": d.id, "retriable": d.retriable, "error": d.error}
                for d in failed_disbursements
            ],
            "accepted_not_transferred": [a.id for a in awaiting_transfer],
            "unnotified_alerts": [a.id for a in unnotified_alerts],
            "exceeded_accounts": [a.id for a in exceeded],
        }
        items["total"] = sum(len(v) for v in items.values())
        return items

    def health(self) -> dict[str, Any]:
        """Store reachability and headline figures"""
        return {
            "store": "ok" if self.store.ping() else "unavailable",
            "documents": self.store.count(),
            "budgets": self.ledger.utilization_summary(),
        }
