"""
Admissions Domain Models - applications, enrollments and their states

Application lifecycle:
    draft → submitted → under_review → accepted | rejected
    rejected → accepted only through an explicit override with a reason

An accepted application is transferred into exactly one EnrollmentRecord.
The application's `transferred` flag flips to True once, together with the
enrollment write.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from campus_ledger.kernel.store import StoredModel


class ApplicationStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


# Legal edges; rejected → accepted is reachable only via override
ALLOWED_TRANSITIONS: dict[ApplicationStatus, frozenset[ApplicationStatus]] = {
    ApplicationStatus.DRAFT: frozenset({ApplicationStatus.SUBMITTED}),
    ApplicationStatus.SUBMITTED: frozenset({ApplicationStatus.UNDER_REVIEW}),
    ApplicationStatus.UNDER_REVIEW: frozenset(
        {ApplicationStatus.ACCEPTED, ApplicationStatus.REJECTED}
    ),
    ApplicationStatus.ACCEPTED: frozenset(),
    ApplicationStatus.REJECTED: frozenset(),
}


class _Section(BaseModel):
    """Form section: accepts camelCase form keys, stores snake_case"""

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "extra": "ignore",
    }


class PersonalInfo(_Section):
    first_name: str = ""
    last_name: str = ""
    date_of_birth: str = ""  # DD-MM-YYYY
    gender: str = ""
    nationality: str = ""
    region: str = ""


class ContactInfo(_Section):
    phone: str = ""
    email: str = ""
    address: str = ""  # "street, city, country"
    emergency_contact: str = ""
    emergency_phone: str = ""


class AcademicBackground(_Section):
    school_name: str = ""
    qualification_type: str = ""
    year_completed: str = ""
    subjects: list[dict[str, Any]] = Field(default_factory=list)


class ProgramSelection(_Section):
    program: str = ""
    first_choice: str = ""
    second_choice: str = ""
    level: str = ""
    study_level: str = ""
    study_mode: str = ""


SECTION_MODELS: dict[str, type[_Section]] = {
    "personal_info": PersonalInfo,
    "contact_info": ContactInfo,
    "academic_background": AcademicBackground,
    "program_selection": ProgramSelection,
}


class StatusChange(BaseModel):
    """One entry of an application's status history"""

    from_status: ApplicationStatus | None
    to_status: ApplicationStatus
    changed_at: datetime
    actor: str = "system"
    reason: str | None = None
    override: bool = False


class Application(StoredModel):
    """
    Admission application

    Attributes:
        id: Application number, e.g. UCAES20250001
        applicant_email: Account email of the applicant
        status: Lifecycle state
        transferred: True once an enrollment exists for this application
        registration_number: Set together with `transferred`
        enrollment_id: Enrollment record the application was transferred into
        status_history: Every status change, oldest first
    """

    collection = "admission-applications"

    id: str
    applicant_email: str
    status: ApplicationStatus = ApplicationStatus.DRAFT
    transferred: bool = False
    registration_number: str | None = None
    enrollment_id: str | None = None
    personal_info: PersonalInfo = Field(default_factory=PersonalInfo)
    contact_info: ContactInfo = Field(default_factory=ContactInfo)
    academic_background: AcademicBackground = Field(default_factory=AcademicBackground)
    program_selection: ProgramSelection = Field(default_factory=ProgramSelection)
    status_history: list[StatusChange] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    submitted_at: datetime | None = None
    transferred_at: datetime | None = None

    def contact_email(self) -> str:
        """Email used for the enrollment, normalised to lower case"""
        return (self.contact_info.email or self.applicant_email).strip().lower()


class EnrollmentStatus(str, Enum):
    APPROVED = "approved"


class EnrollmentRecord(StoredModel):
    """
    Permanent student record created from an accepted application

    The id is the application id, so a second transfer of the same
    application collides with the first instead of creating a twin.
    """

    collection = "student-registrations"

    id: str
    application_id: str
    registration_number: str
    surname: str
    other_names: str
    gender: str
    date_of_birth: str
    nationality: str
    place_of_birth: str
    email: str
    mobile: str
    street: str
    city: str
    country: str
    guardian_name: str
    guardian_contact: str
    relationship: str = "emergency_contact"
    programme: str
    entry_level: str
    current_level: str
    study_mode: str
    entry_qualification: str
    year_of_entry: str
    entry_academic_year: str
    current_period: str = "First Semester"
    status: EnrollmentStatus = EnrollmentStatus.APPROVED
    registered_at: datetime


class EnrollmentEmailIndex(StoredModel):
    """One enrollment per contact email; the id is the lower-cased email"""

    collection = "enrollment-emails"

    id: str
    application_id: str
    registration_number: str


class TransferResult(BaseModel):
    """Outcome of transferring an application into an enrollment"""

    success: bool
    registration_number: str | None = None
    error: str | None = None
    already_transferred: bool = False

    def to_contract(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.registration_number is not None:
            result["registrationNumber"] = self.registration_number
        if self.error is not None:
            result["error"] = self.error
        return result
