"""
ID generation for internal records

Records that need no human-facing sequence (alerts, fee credits, change
notifications, correlation of retries) get a time-ordered UUIDv7-style id.
Human-facing numbers (application, registration, transaction numbers) come
from the SequentialIdentifierAllocator instead.
"""

import secrets
import time


def generate_id() -> str:
    """
    Generate a UUIDv7-like identifier (time-ordered UUID)

    First 48 bits carry the Unix timestamp in milliseconds, so ids sort by
    creation time; the remaining bits are random.

    Returns:
        Sortable UUID string (e.g., "01908e9a-3b87-7000-8000-123456789abc")
    """
    timestamp_48 = int(time.time() * 1000) & 0xFFFFFFFFFFFF

    rand_12 = secrets.randbits(12)
    rand_62 = secrets.randbits(62)

    # Version 7 in bits 48-51, variant 10 in bits 64-65
    time_high = (timestamp_48 >> 32) & 0xFFFF
    time_mid = (timestamp_48 >> 16) & 0xFFFF
    time_low_and_version = ((timestamp_48 & 0xFFFF) << 16) | (0x7000 | rand_12)
    clock_seq_and_variant = 0x8000 | ((rand_62 >> 48) & 0x3FFF)
    node = rand_62 & 0xFFFFFFFFFFFF

    return (
        f"{time_high:04x}{time_mid:04x}-"
        f"{(time_low_and_version >> 16) & 0xFFFF:04x}-"
        f"{time_low_and_version & 0xFFFF:04x}-"
        f"{clock_seq_and_variant:04x}-"
        f"{node:012x}"
    )


def source_key(collection: str, document_id: str) -> str:
    """Stable idempotency key for an upstream document"""
    return f"{collection}:{document_id}"
