"""
Approval payloads - the validation boundary for upstream documents

Procurement requests and internal transfers arrive as loosely-typed
documents written by other systems. They are parsed here into typed
ApprovalEvents; anything malformed is rejected with a ValidationError naming
the offending fields, and never reaches the ledger.
"""

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from campus_ledger.kernel.errors import ValidationError
from campus_ledger.kernel.policy import LedgerPolicy
from campus_ledger.kernel.validation import validate_model
from campus_ledger.ledger.invariants import parse_amount
from campus_ledger.ledger.models import SelectionCriteria, SourceEventRef

PROCUREMENT_REQUESTS = "procurement-requests"
INTERNAL_TRANSFERS = "internal-transfers"
ADMISSION_APPLICATIONS = "admission-applications"

APPROVED = "approved"


class _Upstream(BaseModel):
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "extra": "ignore",
    }


class ProcurementRequestPayload(_Upstream):
    status: str = ""
    total_estimated_cost: Any = None
    department: str | None = None
    category: str | None = None
    requested_by: str | None = None
    items: list[dict[str, Any]] = Field(default_factory=list)

    def description(self) -> str:
        first = self.items[0].get("description") if self.items else None
        return f"Procurement: {first or 'Procurement request'}"


class InternalTransferPayload(_Upstream):
    status: str = ""
    amount: Any = None
    purpose: str | None = None
    department: str | None = None
    category: str | None = None
    authorized_by: str | None = None


class ApprovalEvent(BaseModel):
    """
    A typed, validated approval ready for the ledger

    Attributes:
        source_collection: Upstream collection
        source_document_id: Upstream document id
        amount: Positive amount to charge
        category: Budget category to charge
        department: Budget department, None for any
        requested_by: Who requested or authorised the spend
    """

    source_collection: str = Field(min_length=1)
    source_document_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    category: str = Field(min_length=1)
    department: str | None = None
    requested_by: str = "System"
    description: str = ""
    reference: str = ""

    model_config = {"frozen": True}

    def criteria(self) -> SelectionCriteria:
        return SelectionCriteria(department=self.department, category=self.category)

    def source_ref(self) -> SourceEventRef:
        return SourceEventRef(
            collection=self.source_collection,
            document_id=self.source_document_id,
            description=self.description,
            reference=self.reference,
            approved_by=self.requested_by,
        )


def is_approved(data: dict[str, Any]) -> bool:
    return str(data.get("status", "")).strip().lower() == APPROVED


def parse_approval(
    collection: str,
    document_id: str,
    data: dict[str, Any],
    policy: LedgerPolicy | None = None,
) -> ApprovalEvent | None:
    """
    Turn an upstream document into an ApprovalEvent

    Returns:
        The event, or None when the document is not (yet) approved

    Raises:
        ValidationError: The document is approved but malformed
    """
    policy = policy or LedgerPolicy()
    if not is_approved(data):
        return None

    if collection == PROCUREMENT_REQUESTS:
        payload = validate_model(ProcurementRequestPayload, data, "Malformed upstream document")
        return ApprovalEvent(
            source_collection=collection,
            source_document_id=document_id,
            amount=parse_amount(payload.total_estimated_cost, "totalEstimatedCost"),
            category=payload.category or policy.procurement_category,
            department=payload.department or policy.procurement_department,
            requested_by=payload.requested_by or "System",
            description=payload.description(),
            reference=f"PR-{document_id}",
        )

    if collection == INTERNAL_TRANSFERS:
        payload = validate_model(InternalTransferPayload, data, "Malformed upstream document")
        return ApprovalEvent(
            source_collection=collection,
            source_document_id=document_id,
            amount=parse_amount(payload.amount, "amount"),
            category=payload.category or policy.transfer_category,
            department=payload.department or policy.transfer_department,
            requested_by=payload.authorized_by or "System",
            description=f"Internal Transfer: {payload.purpose or 'Internal transfer'}",
            reference=f"TRF-{document_id}",
        )

    raise ValidationError(f"Collection {collection} carries no approvals", ["collection"])
