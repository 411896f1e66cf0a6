"""
Change notifications - what the store tells the outside world

Every committed document write produces one ChangeNotification. Upstream
systems (procurement, transfers, admissions) are observed through these,
which is why the ingestion layer never has to poll.

Delivery is at-least-once and unordered across documents: consumers must
tolerate duplicates and stale snapshots.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from campus_ledger.kernel.ids import generate_id


class ChangeType(str, Enum):
    """Kind of document change"""

    ADDED = "added"
    MODIFIED = "modified"


class ChangeNotification(BaseModel):
    """
    Snapshot of a document at the moment it was committed

    Attributes:
        notification_id: Unique id of this delivery
        collection: Collection the document lives in
        document_id: Document id within the collection
        change_type: added or modified
        data: Document body as committed
        version: Document version after the write
        observed_at: When the store published the change
    """

    notification_id: str = Field(default_factory=generate_id)
    collection: str
    document_id: str
    change_type: ChangeType
    data: dict[str, Any] = Field(default_factory=dict)
    version: int = Field(default=1, ge=1)
    observed_at: datetime

    model_config = {"frozen": True}
