"""
Pytest configuration and shared fixtures

Fun fact: The name "conftest" comes from pytest's configuration testing
framework. Files named conftest.py are automatically discovered and their
fixtures are available to all tests in the same directory and subdirectories!
"""

import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import pytest

from campus_ledger.admissions.lifecycle import ApplicationLifecycle
from campus_ledger.identifiers.allocator import SequentialIdentifierAllocator
from campus_ledger.kernel.bus import InProcessChangeFeed
from campus_ledger.kernel.policy import LedgerPolicy
from campus_ledger.kernel.store import SQLiteDocumentStore
from campus_ledger.kernel.time import TestTimeProvider
from campus_ledger.ledger.engine import LedgerAccountingEngine
from campus_ledger.payroll.service import PayrollService
from campus_ledger.scholarships.scheduler import DisbursementScheduler
from tests.helpers import RecordingAlertNotifier, StaticStudentRecords


@pytest.fixture
def temp_db() -> Iterator[Path]:
    """Provide a temporary database file that's cleaned up after test"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir) / "ledger.db"


@pytest.fixture
def test_time() -> TestTimeProvider:
    """
    Provide a controllable time provider for deterministic tests

    Default time: 2025-09-01 08:00:00 UTC, the first morning of the
    2025/2026 academic year - so allocated numbers look like UCAES2025xxxx.
    """
    return TestTimeProvider(datetime(2025, 9, 1, 8, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def policy() -> LedgerPolicy:
    """
    Default policy with short backoff waits

    The write-attempt cap stays at its default so concurrency tests exercise
    the same budget production callers get.
    """
    return LedgerPolicy(backoff_min_ms=1, backoff_max_ms=50)


@pytest.fixture
def change_feed() -> InProcessChangeFeed:
    return InProcessChangeFeed()


@pytest.fixture
def store(temp_db: Path, test_time: TestTimeProvider) -> SQLiteDocumentStore:
    """Provide a fresh document store (no change feed) for each test"""
    return SQLiteDocumentStore(temp_db, test_time)


@pytest.fixture
def allocator(
    store: SQLiteDocumentStore, policy: LedgerPolicy, test_time: TestTimeProvider
) -> SequentialIdentifierAllocator:
    return SequentialIdentifierAllocator(store, policy, test_time)


@pytest.fixture
def notifier() -> RecordingAlertNotifier:
    return RecordingAlertNotifier()


@pytest.fixture
def ledger(
    store: SQLiteDocumentStore,
    allocator: SequentialIdentifierAllocator,
    policy: LedgerPolicy,
    test_time: TestTimeProvider,
    notifier: RecordingAlertNotifier,
) -> LedgerAccountingEngine:
    return LedgerAccountingEngine(store, allocator, policy, test_time, notifier)


@pytest.fixture
def student_records() -> StaticStudentRecords:
    return StaticStudentRecords()


@pytest.fixture
def scheduler(
    store: SQLiteDocumentStore,
    ledger: LedgerAccountingEngine,
    policy: LedgerPolicy,
    test_time: TestTimeProvider,
    student_records: StaticStudentRecords,
) -> DisbursementScheduler:
    return DisbursementScheduler(store, ledger, policy, test_time, student_records)


@pytest.fixture
def lifecycle(
    store: SQLiteDocumentStore,
    allocator: SequentialIdentifierAllocator,
    policy: LedgerPolicy,
    test_time: TestTimeProvider,
) -> ApplicationLifecycle:
    return ApplicationLifecycle(store, allocator, policy, test_time)


@pytest.fixture
def payroll(
    store: SQLiteDocumentStore,
    ledger: LedgerAccountingEngine,
    policy: LedgerPolicy,
    test_time: TestTimeProvider,
) -> PayrollService:
    return PayrollService(store, ledger, policy, test_time)
