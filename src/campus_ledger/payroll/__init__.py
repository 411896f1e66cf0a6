"""
Payroll - staff pay calculation and ledger-charged batch payments
"""

from campus_ledger.payroll.calculator import calculate_payroll
from campus_ledger.payroll.models import (
    PayrollBatch,
    PayrollBatchStatus,
    PayrollCalculation,
    StaffSalaryStructure,
)
from campus_ledger.payroll.service import PayrollService

__all__ = [
    "PayrollService",
    "calculate_payroll",
    "PayrollBatch",
    "PayrollBatchStatus",
    "PayrollCalculation",
    "StaffSalaryStructure",
]
