"""
Tests for application → enrollment mapping and enrollment-data checks
"""

from datetime import datetime, timezone

import pytest

from campus_ledger.admissions.mapping import (
    is_valid_date,
    is_valid_email,
    map_application_to_enrollment,
    missing_enrollment_fields,
    parse_address,
)
from campus_ledger.admissions.models import SECTION_MODELS, Application
from tests.helpers import complete_sections

NOW = datetime(2025, 9, 1, 8, 0, 0, tzinfo=timezone.utc)


def make_application(sections: dict | None = None) -> Application:
    return Application(
        id="UCAES20250001",
        applicant_email="ama.mensah@example.com",
        created_at=NOW,
        updated_at=NOW,
        **{
            name: SECTION_MODELS[name].model_validate(fields)
            for name, fields in (sections or {}).items()
        },
    )


@pytest.mark.parametrize(
    "address,expected",
    [
        ("12 Palm Road, Kumasi, Ghana", ("12 PALM ROAD", "KUMASI", "GHANA")),
        ("12 Palm Road, Accra", ("12 PALM ROAD", "ACCRA", "GHANA")),
        ("PO Box 7", ("PO BOX 7", "", "GHANA")),
        ("", ("", "", "GHANA")),
        ("4 Rue Royale , Lomé , Togo", ("4 RUE ROYALE", "LOMÉ", "TOGO")),
    ],
)
def test_parse_address(address: str, expected: tuple[str, str, str]) -> None:
    parts = parse_address(address)
    assert (parts["street"], parts["city"], parts["country"]) == expected


@pytest.mark.parametrize(
    "value,valid",
    [
        ("14-03-2006", True),
        ("29-02-2024", True),
        ("29-02-2023", False),
        ("31-04-2006", False),
        ("2006-03-14", False),
        ("", False),
    ],
)
def test_is_valid_date(value: str, valid: bool) -> None:
    assert is_valid_date(value) is valid


def test_is_valid_email() -> None:
    assert is_valid_email("ama@example.com")
    assert not is_valid_email("ama@example")
    assert not is_valid_email("ama example@x.com")


def test_complete_application_has_no_missing_fields() -> None:
    assert missing_enrollment_fields(make_application(complete_sections())) == []


def test_empty_application_reports_every_field() -> None:
    missing = missing_enrollment_fields(make_application())

    assert "personal_info.first_name" in missing
    assert "contact_info.emergency_phone" in missing
    assert "academic_background.year_completed" in missing
    assert "program_selection.program" in missing


def test_program_may_come_from_program_field() -> None:
    sections = complete_sections()
    sections["program_selection"] = {"program": "BSc Agribusiness"}

    assert missing_enrollment_fields(make_application(sections)) == []


def test_invalid_contact_email_reported() -> None:
    sections = complete_sections()
    sections["contact_info"]["email"] = "ama-at-example"

    assert missing_enrollment_fields(make_application(sections)) == ["contact_info.email"]


def test_map_application_to_enrollment() -> None:
    record = map_application_to_enrollment(
        make_application(complete_sections("Ama.Mensah@Example.com")),
        registration_number="UCAES20250002",
        entry_academic_year="2025/2026",
        registered_at=NOW,
    )

    assert record.id == "UCAES20250001"
    assert record.registration_number == "UCAES20250002"
    assert record.surname == "MENSAH"
    assert record.other_names == "AMA"
    assert record.gender == "female"
    assert record.nationality == "GHANAIAN"
    assert record.place_of_birth == "ASHANTI"
    assert record.email == "ama.mensah@example.com"
    assert (record.street, record.city, record.country) == ("12 PALM ROAD", "KUMASI", "GHANA")
    assert record.guardian_name == "KOFI MENSAH"
    assert record.guardian_contact == "+233209876543"
    assert record.programme == "BSc Agriculture"
    assert record.entry_qualification == "WASSCE"
    assert record.year_of_entry == "2024"
    assert record.current_level == "100"
    assert record.study_mode == "Regular"
    assert record.status.value == "approved"
