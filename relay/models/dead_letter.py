"""
Dead Letter Models

Permanently failed deliveries and the aggregate view operators use.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from relay.models.base import Record, utc_now
from relay.models.webhook import ErrorSnapshot, Severity


class DeadLetterReason(str, Enum):
    MAX_ATTEMPTS_EXCEEDED = "max_attempts_exceeded"
    PERMANENT_FAILURE = "permanent_failure"
    INVALID_PAYLOAD = "invalid_payload"
    MANUAL = "manual"


class DeadLetterCategory(str, Enum):
    TEMPORARY = "temporary"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class DeadLetterMetadata(BaseModel):
    severity: Severity = Severity.HIGH
    category: DeadLetterCategory = DeadLetterCategory.UNKNOWN
    action: Optional[str] = None


class DeadLetterEntry(Record):
    """Archived copy of an abandoned delivery. Immutable once written."""
    id: str
    delivery_id: str
    job_id: str
    reason: DeadLetterReason
    timestamp: datetime = Field(default_factory=utc_now)
    payload: dict[str, Any] = Field(default_factory=dict)
    final_error: ErrorSnapshot
    retry_attempts: int = 0
    metadata: DeadLetterMetadata = Field(default_factory=DeadLetterMetadata)


class DeadLetterStats(BaseModel):
    total_entries: int = 0
    scanned_entries: int = 0
    entries_by_reason: dict[str, int] = Field(default_factory=dict)
    entries_by_date: dict[str, int] = Field(default_factory=dict)
    oldest_entry: Optional[datetime] = None
    newest_entry: Optional[datetime] = None
