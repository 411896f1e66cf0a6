"""
Kernel - storage, concurrency and observability infrastructure

The kernel provides the machinery every ledger component builds upon: a
versioned document store with atomic batches, a change feed, optimistic
retry, time and id providers, and the error taxonomy.

Fun fact: Bookkeepers never erase a ledger line, they add a correcting one.
Our documents change, but every change bumps a version so nobody overwrites
a balance they never saw.
"""

from campus_ledger.kernel.bus import InProcessChangeFeed
from campus_ledger.kernel.errors import (
    CampusLedgerError,
    ConcurrencyExhaustedError,
    DuplicateEventError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    StorageUnavailableError,
    ValidationError,
    WriteConflict,
)
from campus_ledger.kernel.ids import generate_id, source_key
from campus_ledger.kernel.notifications import ChangeNotification, ChangeType
from campus_ledger.kernel.policy import LedgerPolicy, RegistrationNumberSource
from campus_ledger.kernel.store import (
    Document,
    SQLiteDocumentStore,
    StoredModel,
    StoreTransaction,
    WriteOp,
)
from campus_ledger.kernel.time import RealTimeProvider, TestTimeProvider, TimeProvider

__all__ = [
    # IDs
    "generate_id",
    "source_key",
    # Time
    "TimeProvider",
    "RealTimeProvider",
    "TestTimeProvider",
    # Storage
    "Document",
    "WriteOp",
    "StoredModel",
    "SQLiteDocumentStore",
    "StoreTransaction",
    "ChangeNotification",
    "ChangeType",
    "InProcessChangeFeed",
    # Policy
    "LedgerPolicy",
    "RegistrationNumberSource",
    # Errors
    "CampusLedgerError",
    "ValidationError",
    "NotFoundError",
    "WriteConflict",
    "ConcurrencyExhaustedError",
    "StorageUnavailableError",
    "DuplicateEventError",
    "InvalidStateError",
    "InvalidTransitionError",
]
