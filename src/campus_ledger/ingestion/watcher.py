"""
Event Ingestion Watcher - from change notifications to ledger effects

Subscribes to the upstream collections on the change feed and dispatches
each notification to the ledger (approvals) or the application lifecycle
(acceptances). Delivery may be duplicated or out of order; the watcher
relies on the ledger's source-event guard and re-reads application state
instead of trusting the snapshot in the notification.
"""

from typing import Any

from pydantic import BaseModel

from campus_ledger.admissions.lifecycle import ApplicationLifecycle
from campus_ledger.admissions.models import ApplicationStatus
from campus_ledger.ingestion.payloads import (
    ADMISSION_APPLICATIONS,
    INTERNAL_TRANSFERS,
    PROCUREMENT_REQUESTS,
    parse_approval,
)
from campus_ledger.kernel.bus import InProcessChangeFeed
from campus_ledger.kernel.errors import ApplicationNotFound, CampusLedgerError, ValidationError
from campus_ledger.kernel.logging import bound_context, get_logger, set_correlation_id
from campus_ledger.kernel.metrics import notifications_dispatched_total
from campus_ledger.kernel.notifications import ChangeNotification
from campus_ledger.kernel.policy import LedgerPolicy
from campus_ledger.ledger.engine import LedgerAccountingEngine
from campus_ledger.ledger.models import SourceEventRef, SourceEventStatus

logger = get_logger(__name__)

APPROVAL_COLLECTIONS = (PROCUREMENT_REQUESTS, INTERNAL_TRANSFERS)
WATCHED_COLLECTIONS = (*APPROVAL_COLLECTIONS, ADMISSION_APPLICATIONS)


class IngestionOutcome(BaseModel):
    """What handling one notification did"""

    notification_id: str
    collection: str
    document_id: str
    processed: bool
    status: str
    budget_id: str | None = None
    duplicate: bool = False
    registration_number: str | None = None
    error: str | None = None

    def to_contract(self) -> dict[str, Any]:
        return {"processed": self.processed, "budgetId": self.budget_id, "status": self.status}


class EventIngestionWatcher:
    """Boundary orchestrator between the change feed and the ledger components"""

    def __init__(
        self,
        ledger: LedgerAccountingEngine,
        lifecycle: ApplicationLifecycle,
        policy: LedgerPolicy | None = None,
    ) -> None:
        self.ledger = ledger
        self.lifecycle = lifecycle
        self.policy = policy or LedgerPolicy()

    def attach(self, feed: InProcessChangeFeed) -> None:
        """Subscribe to every watched collection"""
        for collection in WATCHED_COLLECTIONS:
            feed.subscribe(collection, self.handle)
        logger.info("Ingestion watcher attached", collections=list(WATCHED_COLLECTIONS))

    def replay(self, notifications: list[ChangeNotification]) -> list[IngestionOutcome]:
        """Handle a synthetic batch, e.g. a backfill after downtime"""
        return [self.handle(n) for n in notifications]

    def handle(self, notification: ChangeNotification) -> IngestionOutcome:
        """
        Dispatch one notification

        Never raises for domain failures: they are logged, recorded where
        the component records them, and reported in the outcome.
        """
        set_correlation_id(notification.notification_id)
        with bound_context(
            collection=notification.collection, document_id=notification.document_id
        ):
            if notification.collection in APPROVAL_COLLECTIONS:
                outcome = self._handle_approval(notification)
            elif notification.collection == ADMISSION_APPLICATIONS:
                outcome = self._handle_application(notification)
            else:
                outcome = self._outcome(notification, processed=False, status="ignored")

            notifications_dispatched_total.labels(
                collection=notification.collection, status=outcome.status
            ).inc()
            logger.debug("Notification handled", status=outcome.status)
        return outcome

    def _handle_approval(self, notification: ChangeNotification) -> IngestionOutcome:
        try:
            event = parse_approval(
                notification.collection, notification.document_id, notification.data, self.policy
            )
        except ValidationError as e:
            ref = SourceEventRef(
                collection=notification.collection, document_id=notification.document_id
            )
            try:
                self.ledger.record_processing_failure(ref, str(e))
            except CampusLedgerError as record_error:
                logger.error(
                    "Could not record processing failure",
                    source_event=ref.key,
                    error=str(record_error),
                )
            return self._outcome(
                notification,
                processed=False,
                status=SourceEventStatus.PROCESSING_FAILED.value,
                error=str(e),
            )

        if event is None:
            return self._outcome(notification, processed=False, status="ignored")

        try:
            result = self.ledger.record_expense(event.criteria(), event.amount, event.source_ref())
        except CampusLedgerError as e:
            # Left unprocessed; the next delivery of this document tries again
            logger.error(
                "Approval could not be applied",
                collection=notification.collection,
                document_id=notification.document_id,
                error=str(e),
            )
            return self._outcome(notification, processed=False, status="retry_later", error=str(e))

        return self._outcome(
            notification,
            processed=result.processed,
            status=result.status.value,
            budget_id=result.budget_id,
            duplicate=result.duplicate,
        )

    def _handle_application(self, notification: ChangeNotification) -> IngestionOutcome:
        # The snapshot may be stale; only the stored application counts
        try:
            application = self.lifecycle.get_application(notification.document_id)
        except ApplicationNotFound:
            return self._outcome(notification, processed=False, status="ignored")

        if application.status != ApplicationStatus.ACCEPTED:
            return self._outcome(notification, processed=False, status="ignored")
        if application.transferred:
            return self._outcome(
                notification,
                processed=True,
                status="already_transferred",
                duplicate=True,
                registration_number=application.registration_number,
            )

        result = self.lifecycle.transfer(application.id)
        if result["success"]:
            return self._outcome(
                notification,
                processed=True,
                status="transferred",
                registration_number=result.get("registrationNumber"),
            )
        return self._outcome(
            notification, processed=False, status="transfer_failed", error=result.get("error")
        )

    def _outcome(self, notification: ChangeNotification, **fields: Any) -> IngestionOutcome:
        return IngestionOutcome(
            notification_id=notification.notification_id,
            collection=notification.collection,
            document_id=notification.document_id,
            **fields,
        )
