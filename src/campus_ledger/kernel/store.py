"""
SQLite Document Store - versioned JSON documents with atomic batches

The document store is the single source of truth for counters, budget
accounts, ledger transactions, source events, applications, enrollments and
disbursements. It provides:
- Per-document versions for optimistic preconditions
- Create-if-absent and compare-and-swap updates
- Atomic multi-document commits (all writes land or none do)
- A push-based change feed of committed writes

Fun fact: Compare-and-swap was in the IBM System/370 instruction set in 1970.
Fifty years later it still settles who gets registration number 0001!
"""

import json
import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Protocol, TypeVar

from pydantic import BaseModel, Field

from campus_ledger.kernel.errors import (
    StorageError,
    StorageUnavailableError,
    WriteConflict,
)
from campus_ledger.kernel.logging import get_logger
from campus_ledger.kernel.metrics import documents_committed_total
from campus_ledger.kernel.notifications import ChangeNotification, ChangeType
from campus_ledger.kernel.retry import retry_on_sqlite_lock
from campus_ledger.kernel.time import RealTimeProvider, TimeProvider

logger = get_logger(__name__)


class Document(BaseModel):
    """A stored document and its bookkeeping"""

    collection: str
    doc_id: str
    version: int = Field(ge=1)
    data: dict[str, Any]
    created_at: datetime
    updated_at: datetime

    model_config = {"frozen": True}


class WriteKind(str, Enum):
    CREATE = "create"  # fails if the document exists
    UPDATE = "update"  # fails unless the document is at expected_version
    UPSERT = "upsert"  # unconditional


class WriteOp(BaseModel):
    """
    One document write inside an atomic batch

    Build with the classmethods rather than directly:

        WriteOp.create("budget-accounts", account_id, data)
        WriteOp.update("budget-accounts", account_id, data, expected_version=3)
    """

    kind: WriteKind
    collection: str
    doc_id: str
    data: dict[str, Any]
    expected_version: int | None = None

    model_config = {"frozen": True}

    @classmethod
    def create(cls, collection: str, doc_id: str, data: dict[str, Any]) -> "WriteOp":
        return cls(kind=WriteKind.CREATE, collection=collection, doc_id=doc_id, data=data)

    @classmethod
    def update(
        cls,
        collection: str,
        doc_id: str,
        data: dict[str, Any],
        *,
        expected_version: int,
    ) -> "WriteOp":
        return cls(
            kind=WriteKind.UPDATE,
            collection=collection,
            doc_id=doc_id,
            data=data,
            expected_version=expected_version,
        )

    @classmethod
    def upsert(cls, collection: str, doc_id: str, data: dict[str, Any]) -> "WriteOp":
        return cls(kind=WriteKind.UPSERT, collection=collection, doc_id=doc_id, data=data)


class ChangePublisher(Protocol):
    def publish(self, notification: ChangeNotification) -> None: ...


class StoredModel(BaseModel):
    """
    Base for domain records persisted as documents

    Subclasses set `collection` and expose their document id via `doc_id`.
    `version` mirrors the stored document version and is never part of the
    document body.
    """

    collection: ClassVar[str]

    version: int = Field(default=0, exclude=True)

    @property
    def doc_id(self) -> str:
        return str(getattr(self, "id"))

    def to_data(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls: type["M"], doc: Document) -> "M":
        return cls.model_validate({**doc.data, "version": doc.version})

    def create_op(self) -> WriteOp:
        return WriteOp.create(self.collection, self.doc_id, self.to_data())

    def update_op(self) -> WriteOp:
        """CAS write against the version this instance was read at"""
        return WriteOp.update(
            self.collection, self.doc_id, self.to_data(), expected_version=self.version
        )

    def upsert_op(self) -> WriteOp:
        return WriteOp.upsert(self.collection, self.doc_id, self.to_data())


M = TypeVar("M", bound=StoredModel)
T = TypeVar("T")


class SQLiteDocumentStore:
    """
    SQLite-based document store with optimistic concurrency

    Uses WAL mode so readers never block the single active writer. Every
    batch runs inside BEGIN IMMEDIATE, which takes the write lock up front;
    version preconditions are checked inside that transaction, so a batch
    either fully applies or raises WriteConflict with nothing written.

    Schema:
    - documents table keyed by (collection, doc_id)
    - version starts at 1 and increments on every write
    """

    def __init__(
        self,
        db_path: str | Path,
        time_provider: TimeProvider | None = None,
        change_feed: ChangePublisher | None = None,
    ) -> None:
        """
        Initialize document store with SQLite database

        Args:
            db_path: Path to SQLite database file
            time_provider: Clock for created_at/updated_at stamps
            change_feed: Receives one notification per committed document
        """
        self.db_path = Path(db_path)
        self.time_provider = time_provider or RealTimeProvider()
        self.change_feed = change_feed
        try:
            self._initialize_schema()
        except sqlite3.Error as e:
            raise StorageUnavailableError(f"Cannot open document store at {db_path}: {e}") from e

    def _initialize_schema(self) -> None:
        """Create tables and indices if they don't exist"""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    body_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,

                    PRIMARY KEY (collection, doc_id)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_documents_created "
                "ON documents(collection, created_at)"
            )

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database connections

        Autocommit mode: transactions are opened explicitly with BEGIN
        IMMEDIATE so the write lock is held from the first read of a batch.
        """
        conn = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, collection: str, doc_id: str) -> Document | None:
        """
        Load one document

        Returns:
            The document, or None if it does not exist

        Raises:
            StorageUnavailableError: If the database cannot be read
        """
        try:
            return self._get(collection, doc_id)
        except sqlite3.OperationalError as e:
            raise StorageUnavailableError(f"Failed to read {collection}/{doc_id}: {e}") from e

    @retry_on_sqlite_lock()
    def _get(self, collection: str, doc_id: str) -> Document | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT collection, doc_id, version, body_json, created_at, updated_at
                FROM documents
                WHERE collection = ? AND doc_id = ?
            """,
                (collection, doc_id),
            ).fetchone()
            return self._row_to_document(row) if row else None

    def load(self, model: type[M], doc_id: str) -> M | None:
        """Load a document and parse it into its domain model"""
        doc = self.get(model.collection, doc_id)
        return model.from_document(doc) if doc else None

    def query(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        predicate: Callable[[dict[str, Any]], bool] | None = None,
        limit: int | None = None,
    ) -> list[Document]:
        """
        Query documents in a collection in insertion order

        Args:
            collection: Collection name
            where: Top-level fields that must equal the given values
            predicate: Extra filter over the document body
            limit: Maximum number of documents to return

        Returns:
            Matching documents, oldest first
        """
        try:
            docs = self._scan(collection)
        except sqlite3.OperationalError as e:
            raise StorageUnavailableError(f"Failed to query {collection}: {e}") from e

        matches = []
        for doc in docs:
            if where and any(doc.data.get(k) != v for k, v in where.items()):
                continue
            if predicate and not predicate(doc.data):
                continue
            matches.append(doc)
            if limit and len(matches) >= limit:
                break
        return matches

    def query_models(
        self,
        model: type[M],
        where: dict[str, Any] | None = None,
        predicate: Callable[[dict[str, Any]], bool] | None = None,
    ) -> list[M]:
        return [model.from_document(d) for d in self.query(model.collection, where, predicate)]

    @retry_on_sqlite_lock()
    def _scan(self, collection: str) -> list[Document]:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                SELECT collection, doc_id, version, body_json, created_at, updated_at
                FROM documents
                WHERE collection = ?
                ORDER BY created_at ASC, rowid ASC
            """,
                (collection,),
            )
            return [self._row_to_document(row) for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def commit(self, writes: list[WriteOp]) -> list[Document]:
        """
        Apply a batch of writes atomically

        Args:
            writes: Writes to apply, in order

        Returns:
            The documents as committed, in the same order as `writes`

        Raises:
            WriteConflict: A create found an existing document, or an update
                found a different version (nothing is written)
            StorageUnavailableError: The database stayed locked or unreachable
        """
        if not writes:
            return []
        return self.transact(lambda tx: tx.write(writes))

    def transact(self, fn: Callable[["StoreTransaction"], T]) -> T:
        """
        Run a read-decide-write cycle under the write lock

        `fn` reads and writes through the StoreTransaction it is given.
        Nothing else can commit while it runs, so what it read is still
        current when its writes land. If `fn` raises, every write it made
        is rolled back and the exception propagates.

        `fn` may be called more than once if the database stays locked, and
        must not write through the store itself (that waits on the lock it
        already holds).

        Returns:
            Whatever `fn` returns

        Raises:
            StorageUnavailableError: The database stayed locked or unreachable
        """
        try:
            result, committed = self._transact(fn)
        except sqlite3.OperationalError as e:
            logger.error("Document store unavailable", error=str(e))
            raise StorageUnavailableError(f"Failed to commit transaction: {e}") from e

        for doc in committed:
            documents_committed_total.labels(collection=doc.collection).inc()

        if self.change_feed is not None:
            for doc in committed:
                self.change_feed.publish(
                    ChangeNotification(
                        collection=doc.collection,
                        document_id=doc.doc_id,
                        change_type=ChangeType.ADDED if doc.version == 1 else ChangeType.MODIFIED,
                        data=doc.data,
                        version=doc.version,
                        observed_at=self.time_provider.now(),
                    )
                )
        return result

    @retry_on_sqlite_lock()
    def _transact(self, fn: Callable[["StoreTransaction"], T]) -> tuple[T, list[Document]]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            tx = StoreTransaction(self, conn, self.time_provider.now())
            try:
                result = fn(tx)
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            return result, tx.committed

    def _apply(self, conn: sqlite3.Connection, op: WriteOp, now: datetime) -> Document:
        current = conn.execute(
            "SELECT version, created_at FROM documents WHERE collection = ? AND doc_id = ?",
            (op.collection, op.doc_id),
        ).fetchone()
        current_version = current["version"] if current else None

        if op.kind == WriteKind.CREATE and current is not None:
            raise WriteConflict(op.collection, op.doc_id, None, current_version)
        if op.kind == WriteKind.UPDATE and current_version != op.expected_version:
            raise WriteConflict(op.collection, op.doc_id, op.expected_version, current_version)

        body = json.dumps(op.data, sort_keys=True)
        if current is None:
            try:
                conn.execute(
                    """
                    INSERT INTO documents (
                        collection, doc_id, version, body_json, created_at, updated_at
                    ) VALUES (?, ?, 1, ?, ?, ?)
                """,
                    (op.collection, op.doc_id, body, now.isoformat(), now.isoformat()),
                )
            except sqlite3.IntegrityError as e:
                raise StorageError(f"Failed to insert {op.collection}/{op.doc_id}: {e}") from e
            return Document(
                collection=op.collection,
                doc_id=op.doc_id,
                version=1,
                data=op.data,
                created_at=now,
                updated_at=now,
            )

        new_version = current_version + 1
        conn.execute(
            """
            UPDATE documents
            SET version = ?, body_json = ?, updated_at = ?
            WHERE collection = ? AND doc_id = ?
        """,
            (new_version, body, now.isoformat(), op.collection, op.doc_id),
        )
        return Document(
            collection=op.collection,
            doc_id=op.doc_id,
            version=new_version,
            data=op.data,
            created_at=datetime.fromisoformat(current["created_at"]),
            updated_at=now,
        )

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """True if the database answers a trivial query"""
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def count(self, collection: str | None = None) -> int:
        """Number of documents, optionally in one collection"""
        with self._connect() as conn:
            if collection is None:
                cursor = conn.execute("SELECT COUNT(*) FROM documents")
            else:
                cursor = conn.execute(
                    "SELECT COUNT(*) FROM documents WHERE collection = ?", (collection,)
                )
            return cursor.fetchone()[0]

    def _row_to_document(self, row: sqlite3.Row) -> Document:
        """Convert SQLite row to Document object"""
        return Document(
            collection=row["collection"],
            doc_id=row["doc_id"],
            version=row["version"],
            data=json.loads(row["body_json"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


class StoreTransaction:
    """
    Reads and writes inside one SQLiteDocumentStore.transact() call

    Runs on the connection that holds the write lock. Writes are applied
    immediately (later reads see them) but only become visible to others,
    and only reach the change feed, once the whole transaction commits.
    """

    def __init__(self, store: SQLiteDocumentStore, conn: sqlite3.Connection, now: datetime) -> None:
        self._store = store
        self._conn = conn
        self.now = now
        self.committed: list[Document] = []

    def get(self, collection: str, doc_id: str) -> Document | None:
        row = self._conn.execute(
            """
            SELECT collection, doc_id, version, body_json, created_at, updated_at
            FROM documents
            WHERE collection = ? AND doc_id = ?
        """,
            (collection, doc_id),
        ).fetchone()
        return self._store._row_to_document(row) if row else None

    def load(self, model: type[M], doc_id: str) -> M | None:
        doc = self.get(model.collection, doc_id)
        return model.from_document(doc) if doc else None

    def query_models(self, model: type[M], where: dict[str, Any] | None = None) -> list[M]:
        """Documents of one model whose top-level fields equal `where`, oldest first"""
        cursor = self._conn.execute(
            """
            SELECT collection, doc_id, version, body_json, created_at, updated_at
            FROM documents
            WHERE collection = ?
            ORDER BY created_at ASC, rowid ASC
        """,
            (model.collection,),
        )
        docs = [self._store._row_to_document(row) for row in cursor.fetchall()]
        return [
            model.from_document(doc)
            for doc in docs
            if not where or all(doc.data.get(k) == v for k, v in where.items())
        ]

    def write(self, writes: list[WriteOp]) -> list[Document]:
        """
        Apply writes with their version preconditions

        Raises:
            WriteConflict: A precondition failed; the caller's transaction
                is rolled back when the exception leaves transact()
        """
        docs = [self._store._apply(self._conn, op, self.now) for op in writes]
        self.committed.extend(docs)
        return docs
