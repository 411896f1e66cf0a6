"""
Payroll Domain Models - salary structures, calculations and batches

Batch lifecycle:
    calculated → approved → processed

Only an approved batch can be paid; paying charges the batch's net total to
a budget account through the ledger, keyed by the batch id.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field

from campus_ledger.kernel.store import StoredModel


class StaffSalaryStructure(StoredModel):
    """
    Pay terms of one staff member

    Allowances and deductions are named amounts (housing, transport, tax,
    pension, ...). A missing or zero tax/pension is computed from policy
    rates at calculation time.
    """

    collection = "staff-salaries"

    id: str
    staff_id: str
    staff_name: str
    position: str = ""
    department: str
    basic_salary: Decimal = Field(ge=0)
    allowances: dict[str, Decimal] = Field(default_factory=dict)
    deductions: dict[str, Decimal] = Field(default_factory=dict)
    payment_schedule: str = "monthly"
    is_active: bool = True
    effective_from: str = ""
    created_at: datetime


class PayrollCalculation(BaseModel):
    staff_id: str
    staff_name: str
    position: str
    department: str
    pay_period: str
    basic_salary: Decimal
    total_allowances: Decimal
    total_deductions: Decimal
    gross_salary: Decimal
    net_salary: Decimal
    allowances_breakdown: dict[str, Decimal] = Field(default_factory=dict)
    deductions_breakdown: dict[str, Decimal] = Field(default_factory=dict)
    calculated_at: datetime


class PayrollBatchStatus(str, Enum):
    CALCULATED = "calculated"
    APPROVED = "approved"
    PROCESSED = "processed"


class PayrollBatch(StoredModel):
    """
    A pay run for a set of staff in one pay period

    Attributes:
        budget_status: Ledger outcome of the payment (deducted,
            no_budget_found) once processed
        budget_id: Account charged, if any
        transaction_id: Ledger transaction of the payment, if any
    """

    collection = "payroll-batches"

    id: str
    batch_name: str
    pay_period: str
    department: str | None = None
    staff_count: int = Field(ge=0)
    total_gross_salary: Decimal
    total_net_salary: Decimal
    status: PayrollBatchStatus = PayrollBatchStatus.CALCULATED
    calculations: list[PayrollCalculation] = Field(default_factory=list)
    created_at: datetime
    created_by: str = "system"
    approved_by: str | None = None
    approved_at: datetime | None = None
    processed_at: datetime | None = None
    budget_status: str | None = None
    budget_id: str | None = None
    transaction_id: str | None = None
