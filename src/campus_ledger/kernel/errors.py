"""
Custom exceptions for Campus Ledger

Well-defined error hierarchy enables precise error handling and clear
messages for staff and operators. Every public operation either completes
atomically or raises one of these - nothing is ever half-applied.

Fun fact: Double-entry ledgers were codified by Luca Pacioli in 1494. We only
keep one side of the book, but we are just as strict about never losing a line!
"""


class CampusLedgerError(Exception):
    """Base exception for all Campus Ledger errors"""

    pass


# Input validation


class ValidationError(CampusLedgerError):
    """
    Raised when input is malformed or incomplete

    Carries the list of missing or invalid fields so callers (and staff
    dashboards) can show exactly what needs remediation.
    """

    def __init__(self, message: str, missing_fields: list[str] | None = None) -> None:
        self.missing_fields = list(missing_fields or [])
        if self.missing_fields:
            message = f"{message}: {', '.join(self.missing_fields)}"
        super().__init__(message)


# Lookups


class NotFoundError(CampusLedgerError):
    """Raised when a required record does not exist"""

    def __init__(self, kind: str, record_id: str) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id} not found")


class BudgetAccountNotFound(NotFoundError):
    """Raised when a budget account does not exist"""

    def __init__(self, account_id: str) -> None:
        super().__init__("Budget account", account_id)


class ApplicationNotFound(NotFoundError):
    """Raised when an admission application does not exist"""

    def __init__(self, application_id: str) -> None:
        super().__init__("Application", application_id)


class CounterNotFound(NotFoundError):
    """Raised when an identifier counter does not exist"""

    def __init__(self, namespace: str, period: str) -> None:
        self.namespace = namespace
        self.period = period
        super().__init__("Counter", f"{namespace}:{period}")


class DisbursementNotFound(NotFoundError):
    """Raised when a scholarship disbursement does not exist"""

    def __init__(self, disbursement_id: str) -> None:
        super().__init__("Disbursement", disbursement_id)


class ScholarshipNotFound(NotFoundError):
    """Raised when a scholarship award does not exist"""

    def __init__(self, scholarship_id: str) -> None:
        super().__init__("Scholarship", scholarship_id)


class PayrollBatchNotFound(NotFoundError):
    """Raised when a payroll batch does not exist"""

    def __init__(self, batch_id: str) -> None:
        super().__init__("Payroll batch", batch_id)


# Concurrency & storage


class StorageError(CampusLedgerError):
    """Base class for document store errors"""

    pass


class WriteConflict(StorageError):
    """
    Raised when a write precondition fails (optimistic locking)

    Indicates a concurrent modification - the caller should re-read and
    retry. Public operations never surface this directly: it is retried
    and, once the retry budget is spent, converted into
    ConcurrencyExhaustedError.
    """

    def __init__(
        self,
        collection: str,
        doc_id: str,
        expected_version: int | None,
        actual_version: int | None,
    ) -> None:
        self.collection = collection
        self.doc_id = doc_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        expected = "absent" if expected_version is None else f"v{expected_version}"
        actual = "absent" if actual_version is None else f"v{actual_version}"
        super().__init__(
            f"Document {collection}/{doc_id} precondition failed: "
            f"expected {expected}, found {actual}"
        )


class ConcurrencyExhaustedError(StorageError):
    """Raised when conflicting writes exceed the retry budget"""

    def __init__(self, operation: str, attempts: int) -> None:
        self.operation = operation
        self.attempts = attempts
        super().__init__(
            f"{operation} gave up after {attempts} conflicting write attempts"
        )


class StorageUnavailableError(StorageError):
    """Raised when the backing store cannot be reached"""

    pass


# Idempotency


class DuplicateEventError(CampusLedgerError):
    """
    Raised when a source event has already been processed

    This is actually SUCCESS - idempotency means the effect already
    happened, so callers absorb it and return the original outcome.
    """

    def __init__(self, source_key: str, transaction_id: str | None = None) -> None:
        self.source_key = source_key
        self.transaction_id = transaction_id
        super().__init__(f"Source event {source_key} already processed")


# State machines


class InvalidStateError(CampusLedgerError):
    """Raised when an operation requires a different record state"""

    def __init__(self, kind: str, record_id: str, current: str, required: str) -> None:
        self.kind = kind
        self.record_id = record_id
        self.current = current
        self.required = required
        super().__init__(
            f"{kind} {record_id} is {current}, must be {required} for this operation"
        )


class InvalidTransitionError(InvalidStateError):
    """Raised when a state-machine edge is not legal"""

    def __init__(self, kind: str, record_id: str, current: str, target: str) -> None:
        self.target = target
        CampusLedgerError.__init__(
            self, f"{kind} {record_id} cannot move from {current} to {target}"
        )
        self.kind = kind
        self.record_id = record_id
        self.current = current
        self.required = target
