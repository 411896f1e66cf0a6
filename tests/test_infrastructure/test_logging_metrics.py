"""
Test infrastructure components: logging, metrics, retry.

These tests verify the production hardening infrastructure works correctly.
"""

import sqlite3

import pytest
import structlog

from campus_ledger.kernel.errors import ConcurrencyExhaustedError, WriteConflict
from campus_ledger.kernel.logging import (
    LogOperation,
    bound_context,
    configure_logging,
    get_correlation_id,
    get_logger,
    is_production,
    redact_context,
    set_correlation_id,
)
from campus_ledger.kernel.metrics import (
    operations_total,
    track_operation,
    write_conflicts_total,
)
from campus_ledger.kernel.retry import retry_on_sqlite_lock, run_with_conflict_retry
from campus_ledger.metrics_server import build_parser


class TestLoggingFramework:
    """Test structured logging framework."""

    def test_configure_logging_console(self) -> None:
        configure_logging(json_output=False, log_level="INFO")
        assert get_logger(__name__) is not None

    def test_configure_logging_json(self) -> None:
        configure_logging(json_output=True, log_level="DEBUG")
        assert get_logger(__name__) is not None

    def test_configure_logging_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ENVIRONMENT", "production")
        monkeypatch.setenv("LOG_LEVEL", "warning")
        configure_logging()
        assert get_logger(__name__) is not None

    def test_bound_context_is_scoped_and_redacted(self) -> None:
        with bound_context(document_id="PR-1", applicant_email="ama@example.com"):
            bound = structlog.contextvars.get_contextvars()
            assert bound["document_id"] == "PR-1"
            assert bound["applicant_email"] == "***REDACTED***"

        assert "document_id" not in structlog.contextvars.get_contextvars()

    def test_correlation_id(self) -> None:
        assert get_correlation_id()

        set_correlation_id("test-correlation-123")
        assert get_correlation_id() == "test-correlation-123"

    def test_log_operation_context_manager(self) -> None:
        configure_logging(json_output=False, log_level="INFO")
        logger = get_logger(__name__)

        with LogOperation(logger, "test_operation", application_id="UCAES20250001"):
            pass

    def test_log_operation_with_exception(self) -> None:
        configure_logging(json_output=False, log_level="INFO")
        logger = get_logger(__name__)

        with pytest.raises(ValueError):
            with LogOperation(logger, "failing_operation"):
                raise ValueError("Test error")

    def test_redact_context(self) -> None:
        redacted = redact_context(
            {"email": "ama@example.com", "amount": "2500", "application_id": "UCAES20250001"}
        )

        assert redacted == {
            "email": "***REDACTED***",
            "amount": "***REDACTED***",
            "application_id": "UCAES20250001",
        }

    def test_is_production(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ENVIRONMENT", "Production")
        assert is_production()
        monkeypatch.setenv("ENVIRONMENT", "staging")
        assert not is_production()


class TestMetrics:
    """Test Prometheus metric helpers."""

    def test_track_operation_counts_success_and_failure(self) -> None:
        @track_operation("infra_test_op")
        def op(fail: bool) -> str:
            if fail:
                raise RuntimeError("boom")
            return "ok"

        success = operations_total.labels(operation="infra_test_op", status="success")
        failure = operations_total.labels(operation="infra_test_op", status="failure")
        before = (success._value.get(), failure._value.get())

        assert op(False) == "ok"
        with pytest.raises(RuntimeError):
            op(True)

        assert success._value.get() == before[0] + 1
        assert failure._value.get() == before[1] + 1


class TestRetry:
    """Test retry helpers."""

    def test_retry_on_sqlite_lock_recovers(self) -> None:
        calls = []

        @retry_on_sqlite_lock(max_attempts=3, min_wait_ms=1, max_wait_ms=2)
        def flaky() -> str:
            calls.append(1)
            if len(calls) < 3:
                raise sqlite3.OperationalError("database is locked")
            return "done"

        assert flaky() == "done"
        assert len(calls) == 3

    def test_retry_on_sqlite_lock_reraises(self) -> None:
        @retry_on_sqlite_lock(max_attempts=2, min_wait_ms=1, max_wait_ms=2)
        def locked() -> None:
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(sqlite3.OperationalError):
            locked()

    def test_conflict_retry_recovers(self) -> None:
        attempts = []

        def attempt() -> int:
            attempts.append(1)
            if len(attempts) < 3:
                raise WriteConflict("counters", "UCAES:2025", 1, 2)
            return len(attempts)

        assert run_with_conflict_retry(attempt, operation="infra_test", min_wait_ms=1, max_wait_ms=2) == 3

    def test_conflict_retry_exhausted(self) -> None:
        counter = write_conflicts_total.labels(operation="infra_exhaust", collection="counters")
        before = counter._value.get()

        def attempt() -> None:
            raise WriteConflict("counters", "UCAES:2025", 1, 2)

        with pytest.raises(ConcurrencyExhaustedError) as exc:
            run_with_conflict_retry(
                attempt, operation="infra_exhaust", max_attempts=3, min_wait_ms=1, max_wait_ms=2
            )

        assert exc.value.attempts == 3
        assert isinstance(exc.value.__cause__, WriteConflict)
        # Two retries plus the final give-up
        assert counter._value.get() == before + 3

    def test_other_errors_are_not_retried(self) -> None:
        calls = []

        def attempt() -> None:
            calls.append(1)
            raise ValueError("not a conflict")

        with pytest.raises(ValueError):
            run_with_conflict_retry(attempt, operation="infra_other")
        assert len(calls) == 1


def test_metrics_server_arguments() -> None:
    args = build_parser().parse_args(["--port", "9100", "--log-level", "DEBUG", "--json-logs"])

    assert args.port == 9100
    assert args.log_level == "DEBUG"
    assert args.json_logs is True
    assert build_parser().parse_args([]).port == 9090
