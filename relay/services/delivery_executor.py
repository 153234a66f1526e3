"""
Delivery Executor

Performs a single HTTP delivery attempt for a job, appends its audit
record and writes the outcome back to the delivery status in one update.
"""
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import httpx
import structlog

from relay.config import settings
from relay.exceptions import DeliveryNotFoundError, DeliveryStateError, RelayError
from relay.models.base import utc_now
from relay.models.webhook import (
    AttemptError,
    AttemptResponse,
    DeliveryState,
    DeliveryStatus,
    ResponseSnapshot,
    RetryAttemptRecord,
)
from relay.services.delivery_store import DeliveryStatusStore
from relay.services.error_classifier import (
    ClassifiedError,
    classify_exception,
    classify_response,
)

logger = structlog.get_logger()

RESPONSE_BODY_LIMIT = 1024


def generate_webhook_signature(payload: str, secret: str) -> str:
    """Generate HMAC-SHA256 signature for webhook payload."""
    return hmac.new(
        secret.encode(),
        payload.encode(),
        hashlib.sha256
    ).hexdigest()


@dataclass
class AttemptOutcome:
    success: bool
    job_id: str
    delivery_id: str
    attempt_number: int
    duration_ms: float
    status: DeliveryStatus
    response: ResponseSnapshot | None = None
    error: ClassifiedError | None = None


class DeliveryExecutor:
    """Sends one attempt and records it."""

    def __init__(
        self,
        store: DeliveryStatusStore,
        client: httpx.AsyncClient,
        timeout: float = None,
        signing_secret: str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.client = client
        self.timeout = timeout or settings.DELIVERY_TIMEOUT_SECONDS
        self.signing_secret = signing_secret
        self.clock = clock

    def build_headers(self, status: DeliveryStatus, body: str, attempt_number: int) -> dict[str, str]:
        headers = {
            **status.extra_headers,
            "Content-Type": "application/json",
            "X-Webhook-Job-Id": status.job_id,
            "X-Webhook-Delivery-Id": status.id,
            "X-Webhook-Attempt": str(attempt_number),
        }
        if self.signing_secret:
            headers["X-Webhook-Signature"] = generate_webhook_signature(body, self.signing_secret)
        return headers

    async def execute(self, job_id: str) -> AttemptOutcome:
        """
        Run the next delivery attempt for a job.

        Args:
            job_id: Job whose delivery should be attempted

        Returns:
            AttemptOutcome with the classified error on failure

        Raises:
            DeliveryNotFoundError: no delivery status exists for the job
            DeliveryStateError: the delivery is already delivered or dead-lettered
            StoreError: the status could not be read or written
        """
        status = await self.store.get(job_id)
        if status is None:
            raise DeliveryNotFoundError(job_id)
        if status.is_terminal:
            raise DeliveryStateError(job_id, status.state.value, "execute")

        attempt_number = status.attempts + 1
        log = logger.bind(job_id=job_id, delivery_id=status.id, attempt=attempt_number)

        body = json.dumps(status.payload)
        headers = self.build_headers(status, body, attempt_number)

        response: httpx.Response | None = None
        snapshot: ResponseSnapshot | None = None
        started = time.monotonic()
        try:
            response = await self.client.post(
                status.target_url,
                content=body,
                headers=headers,
                timeout=self.timeout,
            )
            error = classify_response(response.status_code, response.reason_phrase)
            snapshot = ResponseSnapshot(
                status_code=response.status_code,
                reason=response.reason_phrase,
                body=response.text[:RESPONSE_BODY_LIMIT] or None,
            )
        except Exception as e:
            error = classify_exception(e)
        duration_ms = round((time.monotonic() - started) * 1000, 2)

        await self._record_attempt(status, attempt_number, duration_ms, snapshot, error)

        now = self.clock()
        if error is None:
            updated = await self.store.update(job_id, {
                "state": DeliveryState.DELIVERED,
                "attempts": attempt_number,
                "last_response": snapshot,
                "last_error": None,
                "timestamps": {"delivered": now, "next_retry": None},
            })
            log.info("webhook_delivered", status_code=snapshot.status_code, duration_ms=duration_ms)
            return AttemptOutcome(
                success=True,
                job_id=job_id,
                delivery_id=status.id,
                attempt_number=attempt_number,
                duration_ms=duration_ms,
                status=updated,
                response=snapshot,
            )

        fields = {
            "state": DeliveryState.FAILED,
            "attempts": attempt_number,
            "last_error": error.snapshot(),
            "timestamps": {"next_retry": None},
        }
        if snapshot is not None:
            fields["last_response"] = snapshot
        updated = await self.store.update(job_id, fields)

        log.warning(
            "webhook_delivery_failed",
            kind=error.kind.value,
            code=error.code,
            retryable=error.retryable,
            error=error.message,
            duration_ms=duration_ms,
        )
        return AttemptOutcome(
            success=False,
            job_id=job_id,
            delivery_id=status.id,
            attempt_number=attempt_number,
            duration_ms=duration_ms,
            status=updated,
            response=snapshot,
            error=error,
        )

    async def _record_attempt(
        self,
        status: DeliveryStatus,
        attempt_number: int,
        duration_ms: float,
        snapshot: ResponseSnapshot | None,
        error: ClassifiedError | None,
    ) -> None:
        record = RetryAttemptRecord(
            id=f"retry_{status.id}_{attempt_number}",
            delivery_id=status.id,
            job_id=status.job_id,
            attempt_number=attempt_number,
            timestamp=self.clock(),
            delay_seconds=status.last_delay_seconds if attempt_number > 1 else 0.0,
            success=error is None,
            response=AttemptResponse(**snapshot.model_dump(), duration_ms=duration_ms) if snapshot else None,
            error=AttemptError(**error.snapshot().model_dump(), duration_ms=duration_ms) if error else None,
        )
        try:
            await self.store.append_attempt(record)
        except RelayError as e:
            # Audit trail is bookkeeping; the status update below still records the outcome
            logger.error(
                "attempt_record_failed",
                job_id=status.job_id,
                delivery_id=status.id,
                attempt=attempt_number,
                error=str(e),
            )
