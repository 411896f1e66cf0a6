"""
Payroll calculation - pure arithmetic over a salary structure

gross = basic + allowances
tax defaults to `default_tax_rate` of gross, pension to
`default_pension_rate` of basic, when the structure leaves them unset
net = gross - deductions
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from campus_ledger.kernel.policy import LedgerPolicy
from campus_ledger.payroll.models import PayrollCalculation, StaffSalaryStructure

_CENTS = Decimal("0.01")


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENTS, rounding=ROUND_HALF_UP)


def calculate_payroll(
    structure: StaffSalaryStructure,
    pay_period: str,
    policy: LedgerPolicy,
    calculated_at: datetime,
) -> PayrollCalculation:
    """Compute one staff member's pay for a period"""
    allowances = {name: _money(amount) for name, amount in structure.allowances.items()}
    total_allowances = sum(allowances.values(), Decimal("0"))
    gross = _money(structure.basic_salary + total_allowances)

    deductions = {name: _money(amount) for name, amount in structure.deductions.items()}
    if not deductions.get("tax"):
        deductions["tax"] = _money(gross * policy.default_tax_rate)
    if not deductions.get("pension"):
        deductions["pension"] = _money(structure.basic_salary * policy.default_pension_rate)
    total_deductions = sum(deductions.values(), Decimal("0"))

    return PayrollCalculation(
        staff_id=structure.staff_id,
        staff_name=structure.staff_name,
        position=structure.position,
        department=structure.department,
        pay_period=pay_period,
        basic_salary=_money(structure.basic_salary),
        total_allowances=total_allowances,
        total_deductions=total_deductions,
        gross_salary=gross,
        net_salary=gross - total_deductions,
        allowances_breakdown=allowances,
        deductions_breakdown=deductions,
        calculated_at=calculated_at,
    )
