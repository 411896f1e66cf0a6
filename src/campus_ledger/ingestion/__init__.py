"""
Ingestion - change notifications in, ledger and enrollment effects out
"""

from campus_ledger.ingestion.payloads import (
    ADMISSION_APPLICATIONS,
    INTERNAL_TRANSFERS,
    PROCUREMENT_REQUESTS,
    ApprovalEvent,
    parse_approval,
)
from campus_ledger.ingestion.watcher import EventIngestionWatcher, IngestionOutcome

__all__ = [
    "EventIngestionWatcher",
    "IngestionOutcome",
    "ApprovalEvent",
    "parse_approval",
    "ADMISSION_APPLICATIONS",
    "INTERNAL_TRANSFERS",
    "PROCUREMENT_REQUESTS",
]
