"""
Application Lifecycle State Machine

Governs application status changes and the one-time transfer of an accepted
application into a permanent enrollment record.

The transfer runs in one store transaction: look for an existing enrollment
(by application id, then by the contact-email index), allocate the
registration number, then write the enrollment, the email index and the
application's `transferred` flag together. Concurrent callers queue on the
write lock; the first creates the enrollment and the rest find it and
return its registration number. Both documents are still written
create-if-absent.
"""

from typing import Any

from campus_ledger.admissions.mapping import (
    is_valid_email,
    map_application_to_enrollment,
    missing_enrollment_fields,
)
from campus_ledger.admissions.models import (
    ALLOWED_TRANSITIONS,
    SECTION_MODELS,
    Application,
    ApplicationStatus,
    EnrollmentEmailIndex,
    EnrollmentRecord,
    StatusChange,
    TransferResult,
)
from campus_ledger.identifiers.allocator import SequentialIdentifierAllocator
from campus_ledger.identifiers.models import academic_year_key
from campus_ledger.kernel.errors import (
    ApplicationNotFound,
    CampusLedgerError,
    InvalidStateError,
    InvalidTransitionError,
    ValidationError,
)
from campus_ledger.kernel.logging import LogOperation, get_logger
from campus_ledger.kernel.metrics import enrollments_total, track_operation
from campus_ledger.kernel.policy import LedgerPolicy, RegistrationNumberSource
from campus_ledger.kernel.retry import run_with_conflict_retry
from campus_ledger.kernel.store import SQLiteDocumentStore, StoreTransaction
from campus_ledger.kernel.time import RealTimeProvider, TimeProvider, academic_year_for
from campus_ledger.kernel.validation import parse_choice, validate_model

logger = get_logger(__name__)

# Registration numbers share the UCAES{year}NNNN shape but count on their own
REGISTRATION_SEQUENCE = "registration"


class ApplicationLifecycle:
    """Application status machine plus the enrollment transfer"""

    def __init__(
        self,
        store: SQLiteDocumentStore,
        allocator: SequentialIdentifierAllocator,
        policy: LedgerPolicy | None = None,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self.store = store
        self.allocator = allocator
        self.policy = policy or LedgerPolicy()
        self.time_provider = time_provider or RealTimeProvider()

    # ------------------------------------------------------------------
    # Applications
    # ------------------------------------------------------------------

    def current_academic_year(self) -> str:
        return academic_year_for(self.time_provider.now())

    def create_application(
        self,
        applicant_email: str,
        sections: dict[str, dict[str, Any]] | None = None,
    ) -> Application:
        """
        Start a draft application with a freshly allocated number

        Args:
            applicant_email: Applicant's account email
            sections: Optional initial form sections keyed by section name

        Raises:
            ValidationError: Bad email or unknown section
        """
        email = (applicant_email or "").strip().lower()
        if not is_valid_email(email):
            raise ValidationError("Invalid applicant email", ["applicant_email"])
        parsed = self._parse_sections(sections or {})

        now = self.time_provider.now()
        application_id = self.allocator.allocate(
            self.policy.identifier_prefix, academic_year_key(self.current_academic_year())
        )
        application = Application(
            id=application_id,
            applicant_email=email,
            created_at=now,
            updated_at=now,
            status_history=[
                StatusChange(from_status=None, to_status=ApplicationStatus.DRAFT, changed_at=now)
            ],
            **parsed,
        )
        [doc] = self.store.commit([application.create_op()])
        logger.info("Application created", application_id=application_id)
        return application.model_copy(update={"version": doc.version})

    def get_application(self, application_id: str) -> Application:
        return self._load(self.store, application_id)

    def _load(
        self, reader: SQLiteDocumentStore | StoreTransaction, application_id: str
    ) -> Application:
        application = reader.load(Application, application_id)
        if application is None:
            raise ApplicationNotFound(application_id)
        return application

    def list_applications(self, status: ApplicationStatus | None = None) -> list[Application]:
        where = {"status": status.value} if status else None
        return self.store.query_models(Application, where=where)

    def list_awaiting_transfer(self) -> list[Application]:
        """Accepted applications that have no enrollment yet"""
        return self.store.query_models(
            Application,
            where={"status": ApplicationStatus.ACCEPTED.value, "transferred": False},
        )

    def update_sections(
        self, application_id: str, sections: dict[str, dict[str, Any]]
    ) -> Application:
        """
        Merge form sections into a draft application

        Only the fields present in `sections` change.

        Raises:
            InvalidStateError: The application is no longer a draft
        """

        def attempt(tx: StoreTransaction) -> Application:
            current = self._load(tx, application_id)
            if current.status != ApplicationStatus.DRAFT:
                raise InvalidStateError(
                    "Application", application_id, current.status.value, "draft"
                )
            updates: dict[str, Any] = {"updated_at": self.time_provider.now()}
            for name, fields in sections.items():
                model = SECTION_MODELS.get(name)
                if model is None:
                    raise ValidationError("Unknown application section", [name])
                changed = validate_model(
                    model, fields, "Invalid application section", prefix=name
                ).model_dump(exclude_unset=True)
                merged = {**getattr(current, name).model_dump(), **changed}
                updates[name] = validate_model(
                    model, merged, "Invalid application section", prefix=name
                )
            updated = current.model_copy(update=updates)
            [doc] = tx.write([updated.update_op()])
            return updated.model_copy(update={"version": doc.version})

        return run_with_conflict_retry(
            lambda: self.store.transact(attempt),
            operation="update_sections",
            **self._retry_kwargs(),
        )

    def transition(
        self,
        application_id: str,
        target: ApplicationStatus | str,
        *,
        actor: str = "system",
        reason: str | None = None,
    ) -> Application:
        """
        Move an application along a legal edge

        Returns the application as stored after the change, including
        anything change-feed subscribers committed in response (an accepted
        application may already be transferred).

        Raises:
            InvalidTransitionError: The edge is not allowed (including
                rejected → accepted, which needs override())
            ValidationError: Unknown target status
        """
        target = parse_choice(ApplicationStatus, target, "status")

        def attempt(tx: StoreTransaction) -> Application:
            current = self._load(tx, application_id)
            if target not in ALLOWED_TRANSITIONS[current.status]:
                raise InvalidTransitionError(
                    "Application", application_id, current.status.value, target.value
                )
            return self._apply_status(
                tx, current, target, actor=actor, reason=reason, override=False
            )

        run_with_conflict_retry(
            lambda: self.store.transact(attempt), operation="transition", **self._retry_kwargs()
        )
        logger.info(
            "Application status changed",
            application_id=application_id,
            status=target.value,
            actor=actor,
        )
        return self.get_application(application_id)

    def override(
        self,
        application_id: str,
        *,
        reason: str,
        actor: str = "system",
        target: ApplicationStatus | str = ApplicationStatus.ACCEPTED,
    ) -> Application:
        """
        Accept a previously rejected application

        Raises:
            ValidationError: No reason given
            InvalidTransitionError: Anything other than rejected → accepted
        """
        if not (reason or "").strip():
            raise ValidationError("Override needs a reason", ["reason"])
        target = parse_choice(ApplicationStatus, target, "status")

        def attempt(tx: StoreTransaction) -> Application:
            current = self._load(tx, application_id)
            if current.status != ApplicationStatus.REJECTED or target != ApplicationStatus.ACCEPTED:
                raise InvalidTransitionError(
                    "Application", application_id, current.status.value, target.value
                )
            return self._apply_status(
                tx, current, target, actor=actor, reason=reason, override=True
            )

        run_with_conflict_retry(
            lambda: self.store.transact(attempt), operation="override", **self._retry_kwargs()
        )
        logger.warning(
            "Application status overridden",
            application_id=application_id,
            status=target.value,
            actor=actor,
            reason=reason,
        )
        return self.get_application(application_id)

    def _apply_status(
        self,
        tx: StoreTransaction,
        current: Application,
        target: ApplicationStatus,
        *,
        actor: str,
        reason: str | None,
        override: bool,
    ) -> Application:
        now = self.time_provider.now()
        change = StatusChange(
            from_status=current.status,
            to_status=target,
            changed_at=now,
            actor=actor,
            reason=reason,
            override=override,
        )
        updates: dict[str, Any] = {
            "status": target,
            "status_history": [*current.status_history, change],
            "updated_at": now,
        }
        if target == ApplicationStatus.SUBMITTED:
            updates["submitted_at"] = now
        updated = current.model_copy(update=updates)
        [doc] = tx.write([updated.update_op()])
        return updated.model_copy(update={"version": doc.version})

    # ------------------------------------------------------------------
    # Enrollment transfer
    # ------------------------------------------------------------------

    @track_operation("on_accepted")
    def on_accepted(self, application_id: str) -> TransferResult:
        """
        Transfer an accepted application into its enrollment record, once

        Safe to call repeatedly and concurrently: every caller gets the same
        registration number and exactly one enrollment exists.

        Raises:
            ApplicationNotFound: Unknown application
            InvalidStateError: The application is not accepted
            ValidationError: Required fields are missing or invalid; the
                application stays accepted and untransferred
        """
        with LogOperation(logger, "on_accepted", application_id=application_id):
            application = self.get_application(application_id)
            self._require_accepted(application)

            existing = self._find_enrollment(application)
            if existing is not None:
                return self._adopt_existing(application_id, existing)

            missing = missing_enrollment_fields(application)
            if missing:
                enrollments_total.labels(outcome="invalid").inc()
                logger.warning(
                    "Application incomplete for enrollment",
                    application_id=application_id,
                    missing_fields=missing,
                )
                raise ValidationError("Application is incomplete for enrollment", missing)

            entry_year = self.current_academic_year()

            def attempt(tx: StoreTransaction) -> TransferResult | EnrollmentRecord:
                current = self._load(tx, application_id)
                self._require_accepted(current)
                winner = self._find_enrollment(current, tx)
                if winner is not None:
                    return winner

                registration_number = self._registration_number(tx, current, entry_year)
                now = self.time_provider.now()
                record = map_application_to_enrollment(
                    current,
                    registration_number=registration_number,
                    entry_academic_year=entry_year,
                    registered_at=now,
                )
                index = EnrollmentEmailIndex(
                    id=record.email,
                    application_id=application_id,
                    registration_number=registration_number,
                )
                transferred = current.model_copy(
                    update={
                        "transferred": True,
                        "registration_number": registration_number,
                        "enrollment_id": record.id,
                        "transferred_at": now,
                        "updated_at": now,
                    }
                )
                tx.write([record.create_op(), index.create_op(), transferred.update_op()])
                return TransferResult(success=True, registration_number=registration_number)

            result = run_with_conflict_retry(
                lambda: self.store.transact(attempt),
                operation="on_accepted",
                **self._retry_kwargs(),
            )
            if isinstance(result, EnrollmentRecord):
                # Another caller transferred it first
                return self._adopt_existing(application_id, result)

        if not result.already_transferred:
            enrollments_total.labels(outcome="created").inc()
            logger.info(
                "Application transferred to enrollment",
                application_id=application_id,
                registration_number=result.registration_number,
            )
        return result

    def transfer(self, application_id: str) -> dict[str, Any]:
        """
        on_accepted() for callers that want the contract dict, never an exception

        Returns:
            {"success": True, "registrationNumber": ...} or
            {"success": False, "error": ...}
        """
        try:
            return self.on_accepted(application_id).to_contract()
        except CampusLedgerError as e:
            if not isinstance(e, ValidationError):
                enrollments_total.labels(outcome="failed").inc()
            logger.error("Enrollment transfer failed", application_id=application_id, error=str(e))
            return TransferResult(success=False, error=str(e)).to_contract()

    def get_transfer_status(self, application_id: str) -> dict[str, Any]:
        application = self.get_application(application_id)
        return {
            "applicationId": application.id,
            "status": application.status.value,
            "transferred": application.transferred,
            "registrationNumber": application.registration_number,
            "enrollmentId": application.enrollment_id,
            "transferredAt": (
                application.transferred_at.isoformat() if application.transferred_at else None
            ),
        }

    def get_enrollment(self, application_id: str) -> EnrollmentRecord | None:
        return self.store.load(EnrollmentRecord, application_id)

    def _require_accepted(self, application: Application) -> None:
        if application.status != ApplicationStatus.ACCEPTED:
            raise InvalidStateError(
                "Application", application.id, application.status.value, "accepted"
            )

    def _find_enrollment(
        self,
        application: Application,
        reader: SQLiteDocumentStore | StoreTransaction | None = None,
    ) -> EnrollmentRecord | None:
        """Enrollment for this application, by application id or contact email"""
        reader = reader or self.store
        record = reader.load(EnrollmentRecord, application.id)
        if record is not None:
            return record
        index = reader.load(EnrollmentEmailIndex, application.contact_email())
        if index is None:
            return None
        return reader.load(EnrollmentRecord, index.application_id)

    def _adopt_existing(self, application_id: str, record: EnrollmentRecord) -> TransferResult:
        """Return an existing enrollment, repairing the application flag if needed"""

        def attempt(tx: StoreTransaction) -> bool:
            current = self._load(tx, application_id)
            if current.transferred:
                return False
            now = self.time_provider.now()
            repaired = current.model_copy(
                update={
                    "transferred": True,
                    "registration_number": record.registration_number,
                    "enrollment_id": record.id,
                    "transferred_at": now,
                    "updated_at": now,
                }
            )
            tx.write([repaired.update_op()])
            return True

        repaired = run_with_conflict_retry(
            lambda: self.store.transact(attempt),
            operation="adopt_enrollment",
            **self._retry_kwargs(),
        )
        if repaired:
            logger.warning(
                "Application flag repaired from existing enrollment",
                application_id=application_id,
                enrollment_id=record.id,
            )
        enrollments_total.labels(outcome="existing").inc()
        logger.info(
            "Enrollment already exists",
            application_id=application_id,
            registration_number=record.registration_number,
        )
        return TransferResult(
            success=True,
            registration_number=record.registration_number,
            already_transferred=True,
        )

    def _registration_number(
        self, tx: StoreTransaction, application: Application, entry_year: str
    ) -> str:
        if self.policy.registration_number_source == RegistrationNumberSource.APPLICATION_ID:
            return application.id
        return self.allocator.allocate_within(
            tx,
            self.policy.identifier_prefix,
            academic_year_key(entry_year),
            sequence=REGISTRATION_SEQUENCE,
        )

    def _parse_sections(self, sections: dict[str, dict[str, Any]]) -> dict[str, Any]:
        parsed = {}
        for name, fields in sections.items():
            model = SECTION_MODELS.get(name)
            if model is None:
                raise ValidationError("Unknown application section", [name])
            parsed[name] = validate_model(model, fields, "Invalid application section", prefix=name)
        return parsed

    def _retry_kwargs(self) -> dict[str, int]:
        return {
            "max_attempts": self.policy.max_write_attempts,
            "min_wait_ms": self.policy.backoff_min_ms,
            "max_wait_ms": self.policy.backoff_max_ms,
        }
