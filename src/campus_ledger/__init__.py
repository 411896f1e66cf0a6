"""
Campus Ledger - idempotent financial ledger and sequential identifiers

The financial and identifier core of an admissions and academic-affairs
suite: collision-free application and registration numbers, exactly-once
budget effects from approval events, scholarship disbursements, and the
one-time transfer of accepted applicants into enrollment records.
"""

__version__ = "0.1.0"

from campus_ledger.ledger_app import CampusLedger

__all__ = ["CampusLedger", "__version__"]
