"""
Tests for kernel primitives: policy bounds, academic-year clock, ids, errors
"""

from datetime import datetime, timezone
from decimal import Decimal

import pydantic
import pytest

from campus_ledger.kernel.errors import (
    ConcurrencyExhaustedError,
    InvalidTransitionError,
    ValidationError,
    WriteConflict,
)
from campus_ledger.kernel.ids import generate_id, source_key
from campus_ledger.kernel.policy import LedgerPolicy, RegistrationNumberSource
from campus_ledger.kernel.time import TestTimeProvider, academic_year_for


class TestLedgerPolicy:
    def test_defaults(self) -> None:
        policy = LedgerPolicy()

        assert policy.identifier_prefix == "UCAES"
        assert policy.sequence_width == 4
        assert policy.high_utilization_threshold == Decimal("0.90")
        assert policy.semester_gap_days == 182
        assert policy.allow_degraded_identifiers is False
        assert policy.registration_number_source == RegistrationNumberSource.COUNTER

    def test_backoff_bounds_checked(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            LedgerPolicy(backoff_min_ms=500, backoff_max_ms=100)

    def test_prefix_must_be_upper_case(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            LedgerPolicy(identifier_prefix="ucaes")

    def test_policy_is_frozen(self) -> None:
        policy = LedgerPolicy()
        with pytest.raises(pydantic.ValidationError):
            policy.sequence_width = 6


class TestAcademicYear:
    @pytest.mark.parametrize(
        "moment,expected",
        [
            (datetime(2025, 9, 1, tzinfo=timezone.utc), "2025/2026"),
            (datetime(2025, 12, 31, tzinfo=timezone.utc), "2025/2026"),
            (datetime(2026, 1, 15, tzinfo=timezone.utc), "2025/2026"),
            (datetime(2026, 8, 31, tzinfo=timezone.utc), "2025/2026"),
            (datetime(2026, 9, 1, tzinfo=timezone.utc), "2026/2027"),
        ],
    )
    def test_academic_year_for(self, moment: datetime, expected: str) -> None:
        assert academic_year_for(moment) == expected

    def test_test_time_provider_advances(self) -> None:
        clock = TestTimeProvider(datetime(2025, 9, 1, tzinfo=timezone.utc))
        clock.advance_days(182)
        assert clock.now() == datetime(2026, 3, 2, tzinfo=timezone.utc)


class TestIds:
    def test_generate_id_is_unique_uuid_shape(self) -> None:
        ids = {generate_id() for _ in range(200)}
        assert len(ids) == 200
        sample = ids.pop()
        assert len(sample) == 36
        assert sample[14] == "7"

    def test_source_key(self) -> None:
        assert source_key("procurement-requests", "PR-9") == "procurement-requests:PR-9"


class TestErrors:
    def test_validation_error_lists_fields(self) -> None:
        error = ValidationError("Application incomplete", ["personal_info.first_name", "contact_info.phone"])
        assert error.missing_fields == ["personal_info.first_name", "contact_info.phone"]
        assert "contact_info.phone" in str(error)

    def test_write_conflict_message(self) -> None:
        error = WriteConflict("budgets", "acc-1", 3, 4)
        assert "expected v3, found v4" in str(error)

    def test_concurrency_exhausted_message(self) -> None:
        assert "5" in str(ConcurrencyExhaustedError("allocate_identifier", 5))

    def test_invalid_transition_carries_target(self) -> None:
        error = InvalidTransitionError("Application", "UCAES20250001", "rejected", "accepted")
        assert error.target == "accepted"
        assert "rejected to accepted" in str(error)
