"""
Admissions - application lifecycle and the one-time enrollment transfer
"""

from campus_ledger.admissions.lifecycle import ApplicationLifecycle
from campus_ledger.admissions.mapping import (
    map_application_to_enrollment,
    missing_enrollment_fields,
    parse_address,
)
from campus_ledger.admissions.models import (
    ALLOWED_TRANSITIONS,
    Application,
    ApplicationStatus,
    EnrollmentEmailIndex,
    EnrollmentRecord,
    TransferResult,
)

__all__ = [
    "ApplicationLifecycle",
    "ALLOWED_TRANSITIONS",
    "Application",
    "ApplicationStatus",
    "EnrollmentEmailIndex",
    "EnrollmentRecord",
    "TransferResult",
    "map_application_to_enrollment",
    "missing_enrollment_fields",
    "parse_address",
]
