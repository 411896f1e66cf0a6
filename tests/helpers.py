"""
Test Helper Functions - Builders and Test Doubles

Reusable builders for accounts, applications and upstream documents, plus
small in-memory stand-ins for the notifier and student-records seams.

Fun fact: The Builder pattern was formalized by the Gang of Four in 1994,
but test data builders were popularized by the growing programmer test
movement in the 2000s - we use them to keep tests readable and maintainable!
"""

from typing import Any

from campus_ledger.admissions.lifecycle import ApplicationLifecycle
from campus_ledger.admissions.models import Application, ApplicationStatus
from campus_ledger.ledger.engine import LedgerAccountingEngine
from campus_ledger.ledger.models import BudgetAccount


class RecordingAlertNotifier:
    """Collects alert payloads; can be told to fail"""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[dict[str, Any]] = []

    def notify(self, alert: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("notification channel down")
        self.sent.append(alert)


class StaticStudentRecords:
    """GPA lookup backed by a dict"""

    def __init__(self, gpas: dict[str, float] | None = None) -> None:
        self.gpas = dict(gpas or {})

    def get_gpa(self, student_id: str) -> float | None:
        return self.gpas.get(student_id)


def open_operations_account(
    ledger: LedgerAccountingEngine,
    allocated: str = "10000",
    department: str = "Academic Affairs",
    category: str = "Operations",
    account_id: str | None = None,
) -> BudgetAccount:
    """Builder for the usual Academic Affairs operations account"""
    return ledger.open_account(
        name=f"{department} {category} 2025/2026",
        department=department,
        category=category,
        academic_year="2025/2026",
        allocated_amount=allocated,
        account_id=account_id,
    )


def open_scholarship_fund(ledger: LedgerAccountingEngine, allocated: str = "100000") -> BudgetAccount:
    return ledger.open_account(
        name="Student Affairs Scholarships 2025/2026",
        department="Student Affairs",
        category="Scholarships",
        academic_year="2025/2026",
        allocated_amount=allocated,
        account_id="fund-scholarships",
    )


def complete_sections(email: str = "ama.mensah@example.com") -> dict[str, dict[str, Any]]:
    """
    Form sections that satisfy every enrollment requirement

    Keys are camelCase, as the admission form writes them.
    """
    return {
        "personal_info": {
            "firstName": "Ama",
            "lastName": "Mensah",
            "dateOfBirth": "14-03-2006",
            "gender": "Female",
            "nationality": "Ghanaian",
            "region": "Ashanti",
        },
        "contact_info": {
            "phone": "+233201234567",
            "email": email,
            "address": "12 Palm Road, Kumasi, Ghana",
            "emergencyContact": "Kofi Mensah",
            "emergencyPhone": "+233209876543",
        },
        "academic_background": {
            "schoolName": "Prempeh College",
            "qualificationType": "WASSCE",
            "yearCompleted": "2024",
        },
        "program_selection": {
            "firstChoice": "BSc Agriculture",
            "level": "100",
            "studyMode": "Regular",
        },
    }


def accepted_application(
    lifecycle: ApplicationLifecycle,
    email: str = "ama.mensah@example.com",
    sections: dict[str, dict[str, Any]] | None = None,
) -> Application:
    """Create an application and walk it to ACCEPTED"""
    application = lifecycle.create_application(
        email, complete_sections(email) if sections is None else sections
    )
    for status in (
        ApplicationStatus.SUBMITTED,
        ApplicationStatus.UNDER_REVIEW,
        ApplicationStatus.ACCEPTED,
    ):
        application = lifecycle.transition(application.id, status)
    return application


def procurement_request(amount: Any = 2500, status: str = "approved", **extra: Any) -> dict[str, Any]:
    """Upstream procurement document as the procurement system writes it"""
    return {
        "status": status,
        "totalEstimatedCost": amount,
        "requestedBy": "Dr. Owusu",
        "items": [{"description": "Lab reagents", "quantity": 10}],
        **extra,
    }
