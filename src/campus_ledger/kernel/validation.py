"""
Input validation helpers

Caller input is checked by pydantic models, enums and Decimal, each of which
fails with its own exception type. These helpers turn every such failure
into the kernel's ValidationError, naming the offending fields, so callers
(and the CLI) only ever handle one error type for malformed input.
"""

from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, TypeVar

import pydantic

from campus_ledger.kernel.errors import ValidationError

B = TypeVar("B", bound=pydantic.BaseModel)
E = TypeVar("E", bound=Enum)


def validate_model(model: type[B], data: Any, message: str, *, prefix: str = "") -> B:
    """
    Validate `data` into `model`

    Args:
        model: Pydantic model to build
        data: Raw mapping (or model instance) from the caller
        message: Error message if validation fails
        prefix: Prepended to each failing field path, e.g. "custom_plan.0"

    Raises:
        ValidationError: Listing every failing field path
    """
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        fields = []
        for err in e.errors():
            parts = [str(p) for p in err["loc"]]
            path = ".".join([prefix, *parts] if prefix else parts)
            fields.append(path or model.__name__)
        raise ValidationError(message, list(dict.fromkeys(fields))) from e


def parse_choice(enum: type[E], value: Any, field: str) -> E:
    """
    Coerce a raw value into an enum member

    Example:
        >>> parse_choice(DisbursementPlan, "semester", "plan")
        <DisbursementPlan.SEMESTER: 'semester'>
    """
    try:
        return enum(value)
    except ValueError as e:
        allowed = ", ".join(str(member.value) for member in enum)
        raise ValidationError(f"Invalid {field} {value!r}, expected one of {allowed}", [field]) from e


def parse_non_negative(raw: Any, field: str) -> Decimal:
    """Finite, non-negative decimal such as an allowance or a deduction"""
    if raw is None or isinstance(raw, bool):
        raise ValidationError(f"Invalid {field}", [field])
    try:
        value = raw if isinstance(raw, Decimal) else Decimal(str(raw).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid {field} {raw!r}", [field]) from e
    if not value.is_finite() or value < 0:
        raise ValidationError(f"Invalid {field} {raw!r}", [field])
    return value
