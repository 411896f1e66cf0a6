"""
Identifiers - collision-free sequential numbers per namespace and period
"""

from campus_ledger.identifiers.allocator import SequentialIdentifierAllocator
from campus_ledger.identifiers.models import (
    IdentifierCounter,
    ParsedIdentifier,
    academic_year_key,
    format_identifier,
    parse_identifier,
)

__all__ = [
    "SequentialIdentifierAllocator",
    "IdentifierCounter",
    "ParsedIdentifier",
    "academic_year_key",
    "format_identifier",
    "parse_identifier",
]
