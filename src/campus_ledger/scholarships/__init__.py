"""
Scholarships - disbursement schedules, fee credits and renewals
"""

from campus_ledger.scholarships.models import (
    AcademicPeriod,
    AcademicStanding,
    CustomScheduleEntry,
    DisbursementPlan,
    DisbursementStatus,
    RenewalCriteria,
    RenewalDecision,
    ScholarshipAward,
    ScholarshipDisbursement,
    StudentDisbursementSummary,
)
from campus_ledger.scholarships.scheduler import DisbursementScheduler, StudentRecords

__all__ = [
    "DisbursementScheduler",
    "StudentRecords",
    "AcademicPeriod",
    "AcademicStanding",
    "CustomScheduleEntry",
    "DisbursementPlan",
    "DisbursementStatus",
    "RenewalCriteria",
    "RenewalDecision",
    "ScholarshipAward",
    "ScholarshipDisbursement",
    "StudentDisbursementSummary",
]
