"""
Sequential Identifier Allocator

Hands out collision-free, strictly increasing identifiers per
(namespace, period) to any number of concurrent callers.

The counter is read and bumped inside one store transaction, under the
SQLite write lock. The first caller for a new scope creates the counter;
everybody else queues on the lock and increments the value the previous
holder committed, so racing callers only wait and never lose an attempt.
"""

import secrets

from campus_ledger.identifiers.models import (
    IdentifierCounter,
    counter_key,
    format_identifier,
    validate_scope,
)
from campus_ledger.kernel.errors import (
    ConcurrencyExhaustedError,
    CounterNotFound,
    StorageUnavailableError,
)
from campus_ledger.kernel.logging import get_logger
from campus_ledger.kernel.metrics import degraded_identifiers_total, identifiers_allocated_total
from campus_ledger.kernel.policy import LedgerPolicy
from campus_ledger.kernel.retry import run_with_conflict_retry
from campus_ledger.kernel.store import SQLiteDocumentStore, StoreTransaction
from campus_ledger.kernel.time import RealTimeProvider, TimeProvider

logger = get_logger(__name__)


class SequentialIdentifierAllocator:
    """
    Allocates identifiers like UCAES20250001 from per-scope counters

    Gaps are possible (a caller may allocate and then fail), duplicates and
    reuse are not.
    """

    def __init__(
        self,
        store: SQLiteDocumentStore,
        policy: LedgerPolicy | None = None,
        time_provider: TimeProvider | None = None,
    ) -> None:
        self.store = store
        self.policy = policy or LedgerPolicy()
        self.time_provider = time_provider or RealTimeProvider()

    def allocate(self, namespace: str, period: str, *, sequence: str | None = None) -> str:
        """
        Issue the next identifier for (namespace, period)

        Args:
            namespace: Identifier prefix, e.g. "UCAES"
            period: Scope of the sequence, e.g. "2025"
            sequence: Name of an independent counter sharing the same
                identifier shape, e.g. "registration"; None for the default

        Returns:
            The formatted identifier, e.g. "UCAES20250001"

        Raises:
            ValidationError: Namespace or period is malformed
            ConcurrencyExhaustedError: Conflicts outlasted the retry budget
            StorageUnavailableError: The store could not be reached
        """
        validate_scope(namespace, period)
        try:
            value = self.next_value(namespace, period, sequence=sequence)
        except (ConcurrencyExhaustedError, StorageUnavailableError) as e:
            if not self.policy.allow_degraded_identifiers:
                raise
            return self._degraded_identifier(namespace, period, e)

        identifier = format_identifier(namespace, period, value, self.policy.sequence_width)
        identifiers_allocated_total.labels(namespace=namespace).inc()
        logger.debug(
            "Identifier allocated",
            namespace=namespace,
            period=period,
            sequence=sequence,
            identifier=identifier,
        )
        return identifier

    def next_value(self, namespace: str, period: str, *, sequence: str | None = None) -> int:
        """Consume and return the next raw sequence value"""
        return run_with_conflict_retry(
            lambda: self.store.transact(
                lambda tx: self._increment(tx, namespace, period, sequence)
            ),
            operation="allocate_identifier",
            max_attempts=self.policy.max_write_attempts,
            min_wait_ms=self.policy.backoff_min_ms,
            max_wait_ms=self.policy.backoff_max_ms,
        )

    def allocate_within(
        self,
        tx: StoreTransaction,
        namespace: str,
        period: str,
        *,
        sequence: str | None = None,
    ) -> str:
        """
        Issue the next identifier as part of a caller's transaction

        The counter bump commits or rolls back together with the caller's
        other writes, so a failed caller leaves no gap.
        """
        validate_scope(namespace, period)
        value = self._increment(tx, namespace, period, sequence)
        identifier = format_identifier(namespace, period, value, self.policy.sequence_width)
        identifiers_allocated_total.labels(namespace=namespace).inc()
        return identifier

    def _increment(
        self, tx: StoreTransaction, namespace: str, period: str, sequence: str | None
    ) -> int:
        key = counter_key(namespace, period, sequence)
        now = self.time_provider.now()
        counter = tx.load(IdentifierCounter, key)

        if counter is None:
            counter = IdentifierCounter(
                id=key,
                namespace=namespace,
                period=period,
                sequence=sequence,
                last_value=1,
                updated_at=now,
            )
            tx.write([counter.create_op()])
            return 1

        bumped = counter.model_copy(update={"last_value": counter.last_value + 1, "updated_at": now})
        tx.write([bumped.update_op()])
        return bumped.last_value

    def peek(self, namespace: str, period: str, *, sequence: str | None = None) -> int:
        """
        Last value issued for (namespace, period), without consuming one

        Raises:
            CounterNotFound: Nothing has been allocated in this scope yet
        """
        counter = self.store.load(IdentifierCounter, counter_key(namespace, period, sequence))
        if counter is None:
            raise CounterNotFound(namespace, period)
        return counter.last_value

    def _degraded_identifier(self, namespace: str, period: str, cause: Exception) -> str:
        # The "D" marker keeps these out of parse_identifier's accepted shape
        millis = int(self.time_provider.now().timestamp() * 1000) % 10000
        identifier = f"{namespace}{period}D{millis:04d}{secrets.randbelow(100):02d}"
        degraded_identifiers_total.labels(namespace=namespace).inc()
        logger.warning(
            "Issued degraded identifier",
            namespace=namespace,
            period=period,
            identifier=identifier,
            cause=str(cause),
        )
        return identifier
