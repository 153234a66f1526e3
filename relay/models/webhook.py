"""
Webhook Delivery Models

Tracks outbound webhook deliveries, their per-attempt audit trail
and the deduplication markers for inbound events.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from relay.models.base import Record, utc_now


class DeliveryState(str, Enum):
    """Delivery lifecycle states."""
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRYING = "retrying"
    DEAD_LETTER = "dead_letter"


TERMINAL_STATES = frozenset({DeliveryState.DELIVERED, DeliveryState.DEAD_LETTER})
RETRYABLE_STATES = frozenset({DeliveryState.FAILED, DeliveryState.RETRYING})


class ErrorKind(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    SERVER = "server"
    CLIENT = "client"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


def generate_delivery_id() -> str:
    return f"delivery_{uuid.uuid4().hex}"


class DeliveryTimestamps(BaseModel):
    created: datetime = Field(default_factory=utc_now)
    last_attempt: datetime = Field(default_factory=utc_now)
    next_retry: Optional[datetime] = None
    delivered: Optional[datetime] = None
    failed: Optional[datetime] = None


class ResponseSnapshot(BaseModel):
    """Status line and (truncated) body of a target's response."""
    status_code: int
    reason: str = ""
    body: Optional[str] = None


class ErrorSnapshot(BaseModel):
    message: str
    kind: ErrorKind
    code: Optional[str] = None
    severity: Severity = Severity.HIGH


class RetryPolicy(BaseModel):
    """Backoff configuration; overridable per call."""
    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=2.0, ge=0)
    max_delay_seconds: float = Field(default=30.0, ge=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay_seconds=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay_seconds=settings.RETRY_MAX_DELAY_SECONDS,
            backoff_factor=settings.RETRY_BACKOFF_FACTOR,
            jitter=settings.RETRY_JITTER,
        )


class DeliveryStatus(Record):
    """Source of truth for one job's delivery, keyed by job id."""
    id: str = Field(default_factory=generate_delivery_id)
    job_id: str
    target_id: str = ""
    state: DeliveryState = DeliveryState.PENDING
    attempts: int = 0
    max_attempts: int = 3
    timestamps: DeliveryTimestamps = Field(default_factory=DeliveryTimestamps)
    payload: dict[str, Any] = Field(default_factory=dict)
    last_response: Optional[ResponseSnapshot] = None
    last_error: Optional[ErrorSnapshot] = None
    target_url: str = ""
    extra_headers: dict[str, str] = Field(default_factory=dict)
    last_delay_seconds: float = 0.0
    dead_letter_id: Optional[str] = None
    manual_retries: int = 0
    policy: Optional[RetryPolicy] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class AttemptResponse(ResponseSnapshot):
    duration_ms: float


class AttemptError(ErrorSnapshot):
    duration_ms: float


class RetryAttemptRecord(Record):
    """One delivery attempt. Written once, never updated."""
    id: str
    delivery_id: str
    job_id: str
    attempt_number: int
    timestamp: datetime = Field(default_factory=utc_now)
    delay_seconds: float = 0.0
    success: bool
    response: Optional[AttemptResponse] = None
    error: Optional[AttemptError] = None


class DeduplicationRecord(Record):
    id: str
    job_id: str
    processed: bool = False
    processed_at: Optional[datetime] = None
    ttl_seconds: int = 86400
