"""
Application → enrollment mapping and enrollment-data validation

Names, nationality and address parts are stored upper-cased, emails lower-
cased. The guardian is taken from the application's emergency contact,
since the admission form does not ask for a guardian separately.
"""

import re
from datetime import datetime

from campus_ledger.admissions.models import Application, EnrollmentRecord

DEFAULT_COUNTRY = "GHANA"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_DATE_RE = re.compile(r"^(\d{2})-(\d{2})-(\d{4})$")

# (section, field) pairs an application needs before it can be enrolled
REQUIRED_FIELDS: list[tuple[str, str]] = [
    ("personal_info", "first_name"),
    ("personal_info", "last_name"),
    ("personal_info", "date_of_birth"),
    ("personal_info", "gender"),
    ("personal_info", "nationality"),
    ("contact_info", "email"),
    ("contact_info", "phone"),
    ("contact_info", "emergency_contact"),
    ("contact_info", "emergency_phone"),
    ("academic_background", "qualification_type"),
    ("academic_background", "year_completed"),
]


def parse_address(address: str) -> dict[str, str]:
    """
    Split "street, city, country" into upper-cased parts

    Missing parts are empty; the country defaults to GHANA.

    Example:
        >>> parse_address("12 Palm Road, Accra")
        {'street': '12 PALM ROAD', 'city': 'ACCRA', 'country': 'GHANA'}
    """
    parts = [p.strip() for p in (address or "").split(",") if p.strip()]
    street = parts[0] if parts else ""
    city = parts[1] if len(parts) > 1 else ""
    country = parts[2] if len(parts) > 2 else DEFAULT_COUNTRY
    return {"street": street.upper(), "city": city.upper(), "country": country.upper()}


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email or ""))


def is_valid_date(value: str) -> bool:
    """True for a real calendar date written DD-MM-YYYY"""
    match = _DATE_RE.match(value or "")
    if not match:
        return False
    day, month, year = (int(g) for g in match.groups())
    try:
        datetime(year, month, day)
    except ValueError:
        return False
    return True


def missing_enrollment_fields(application: Application) -> list[str]:
    """
    Fields that are missing or invalid for enrollment, as "section.field"

    Empty when the application can be transferred.
    """
    problems = []
    for section_name, field in REQUIRED_FIELDS:
        value = getattr(getattr(application, section_name), field)
        if not str(value or "").strip():
            problems.append(f"{section_name}.{field}")

    selection = application.program_selection
    if not (selection.first_choice or selection.program).strip():
        problems.append("program_selection.program")

    email = application.contact_info.email
    if email and not is_valid_email(email.strip()):
        problems.append("contact_info.email")
    dob = application.personal_info.date_of_birth
    if dob and not is_valid_date(dob.strip()):
        problems.append("personal_info.date_of_birth")
    return problems


def map_application_to_enrollment(
    application: Application,
    *,
    registration_number: str,
    entry_academic_year: str,
    registered_at: datetime,
) -> EnrollmentRecord:
    """Build the enrollment record for an accepted, complete application"""
    personal = application.personal_info
    contact = application.contact_info
    background = application.academic_background
    selection = application.program_selection
    address = parse_address(contact.address)

    return EnrollmentRecord(
        id=application.id,
        application_id=application.id,
        registration_number=registration_number,
        surname=personal.last_name.strip().upper(),
        other_names=personal.first_name.strip().upper(),
        gender=personal.gender.strip().lower(),
        date_of_birth=personal.date_of_birth.strip(),
        nationality=personal.nationality.strip().upper(),
        place_of_birth=(personal.region.strip() or DEFAULT_COUNTRY).upper(),
        email=application.contact_email(),
        mobile=contact.phone.strip(),
        street=address["street"],
        city=address["city"],
        country=address["country"],
        guardian_name=contact.emergency_contact.strip().upper(),
        guardian_contact=contact.emergency_phone.strip(),
        programme=(selection.first_choice or selection.program).strip(),
        entry_level=selection.level or "undergraduate",
        current_level=selection.study_level or selection.level or "100",
        study_mode=selection.study_mode or "Regular",
        entry_qualification=background.qualification_type.strip().upper(),
        year_of_entry=background.year_completed.strip(),
        entry_academic_year=entry_academic_year,
        registered_at=registered_at,
    )
