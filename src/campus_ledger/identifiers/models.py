"""
Identifier Models - counters and the human-facing identifier format

Identifiers look like UCAES20250001: the namespace, the period, then the
sequence zero-padded to the configured width. A sequence that outgrows the
width simply gets longer; it is never truncated or wrapped.
"""

import re
from datetime import datetime

from pydantic import BaseModel, Field

from campus_ledger.kernel.errors import ValidationError
from campus_ledger.kernel.store import StoredModel

_NAMESPACE_RE = re.compile(r"^[A-Z][A-Z0-9]*$")
_PERIOD_RE = re.compile(r"^[0-9A-Za-z]+$")
_ACADEMIC_YEAR_RE = re.compile(r"^(\d{4})(?:\s*[/-]\s*(\d{4}))?$")


def counter_key(namespace: str, period: str, sequence: str | None = None) -> str:
    """Document id of the counter for (namespace, period), optionally a named sequence"""
    if sequence:
        return f"{sequence}:{namespace}:{period}"
    return f"{namespace}:{period}"


class IdentifierCounter(StoredModel):
    """
    Per-(namespace, period) sequence state

    last_value only ever increases. A value is consumed as soon as the
    increment commits, whether or not the caller goes on to use it.
    """

    collection = "counters"

    id: str
    namespace: str
    period: str
    sequence: str | None = None
    last_value: int = Field(ge=0)
    updated_at: datetime


class ParsedIdentifier(BaseModel):
    namespace: str
    period: str
    sequence: int

    model_config = {"frozen": True}


def validate_scope(namespace: str, period: str) -> None:
    """Reject namespaces and periods that would make ambiguous identifiers"""
    problems = []
    if not _NAMESPACE_RE.match(namespace or ""):
        problems.append("namespace")
    if not _PERIOD_RE.match(period or ""):
        problems.append("period")
    if problems:
        raise ValidationError("Invalid identifier scope", problems)


def format_identifier(namespace: str, period: str, sequence: int, width: int = 4) -> str:
    """
    Render an identifier

    Example:
        >>> format_identifier("UCAES", "2025", 1)
        'UCAES20250001'
    """
    if sequence < 1:
        raise ValidationError(f"Sequence must be positive, got {sequence}")
    return f"{namespace}{period}{sequence:0{width}d}"


def parse_identifier(identifier: str, width: int = 4) -> ParsedIdentifier:
    """
    Split an identifier into namespace, four-digit period and sequence

    Raises:
        ValidationError: If the identifier does not have the expected shape
    """
    match = re.match(rf"^([A-Z]+)(\d{{4}})(\d{{{width},}})$", identifier or "")
    if not match:
        raise ValidationError(f"Malformed identifier {identifier!r}")
    namespace, period, sequence = match.groups()
    return ParsedIdentifier(namespace=namespace, period=period, sequence=int(sequence))


def academic_year_key(academic_year: str) -> str:
    """
    Period key for an academic year label

    Example:
        >>> academic_year_key("2025/2026")
        '2025'
    """
    match = _ACADEMIC_YEAR_RE.match((academic_year or "").strip())
    if not match:
        raise ValidationError(f"Unrecognised academic year {academic_year!r}")
    start, end = match.groups()
    if end is not None and int(end) != int(start) + 1:
        raise ValidationError(f"Academic year {academic_year!r} must span consecutive years")
    return start
