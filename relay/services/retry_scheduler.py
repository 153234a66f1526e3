"""
Retry Scheduler

Decides whether a failed delivery gets another attempt. Scheduling only
records a due time on the delivery; the sweep (worker cron job or the
sweep endpoint) fires the attempt once it is due.
"""
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

import structlog

from relay.models.base import utc_now
from relay.models.dead_letter import DeadLetterReason
from relay.models.webhook import (
    RETRYABLE_STATES,
    DeliveryState,
    DeliveryStatus,
    RetryPolicy,
    generate_delivery_id,
)
from relay.routes.metrics import track_retry_scheduled
from relay.services.dead_letter import DeadLetterArchive
from relay.services.delivery_store import DeliveryStatusStore

logger = structlog.get_logger()

JITTER_RATIO = 0.25


def compute_backoff_delay(retry_index: int, policy: RetryPolicy) -> float:
    """
    Exponential delay before jitter, capped at max_delay_seconds.

    Args:
        retry_index: retries already scheduled for this delivery (0 for the first)
    """
    delay = policy.base_delay_seconds * (policy.backoff_factor ** max(retry_index, 0))
    return min(delay, policy.max_delay_seconds)


def apply_jitter(delay: float, rng: random.Random = None) -> float:
    """Spread the delay uniformly across ±25%."""
    rng = rng or random
    return delay * rng.uniform(1 - JITTER_RATIO, 1 + JITTER_RATIO)


@dataclass
class ScheduleResult:
    success: bool
    message: str
    next_retry_at: datetime | None = None
    delay_seconds: float | None = None
    archived: bool = False
    dead_letter_id: str | None = None
    retry_id: str | None = None


@dataclass
class RetryEligibility:
    can_retry: bool
    reason: str
    status: DeliveryStatus | None = None


class RetryScheduler:
    """Schedules the next attempt or escalates to the dead letter archive."""

    def __init__(
        self,
        store: DeliveryStatusStore,
        archive: DeadLetterArchive,
        policy: RetryPolicy = None,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random = None,
    ):
        self.store = store
        self.archive = archive
        self.policy = policy or RetryPolicy()
        self.clock = clock
        self.rng = rng or random.Random()

    def next_delay(self, attempts: int, policy: RetryPolicy) -> float:
        delay = compute_backoff_delay(attempts - 1, policy)
        if policy.jitter:
            delay = apply_jitter(delay, self.rng)
        return delay

    async def schedule_or_archive(self, job_id: str, policy: RetryPolicy = None) -> ScheduleResult:
        """
        Schedule another attempt, or archive once attempts are exhausted.

        Args:
            job_id: Job whose last attempt failed
            policy: Overrides both the stored and the default policy for this call

        Returns:
            ScheduleResult; no-op results carry success=False and a reason
        """
        status = await self.store.get(job_id)
        if status is None:
            return ScheduleResult(success=False, message="No delivery status found for job")

        if status.state not in RETRYABLE_STATES:
            return ScheduleResult(
                success=False,
                message=f"Webhook not in retryable state: {status.state.value}",
            )

        # The policy a delivery was submitted with outlives the submitting call
        policy = policy or status.policy
        max_attempts = policy.max_attempts if policy is not None else status.max_attempts
        policy = policy or self.policy

        if status.attempts >= max_attempts:
            archived = await self.archive.archive(job_id, DeadLetterReason.MAX_ATTEMPTS_EXCEEDED)
            if not archived.success:
                return ScheduleResult(
                    success=False,
                    message=f"Max retry attempts exceeded; archiving failed: {archived.error}",
                )
            return ScheduleResult(
                success=False,
                message="Max retry attempts exceeded, moved to dead letter queue",
                archived=True,
                dead_letter_id=archived.dead_letter_id,
            )

        delay = self.next_delay(status.attempts, policy)
        next_retry_at = self.clock() + timedelta(seconds=delay)
        await self.store.update(job_id, {
            "state": DeliveryState.RETRYING,
            "last_delay_seconds": round(delay, 3),
            "timestamps": {"next_retry": next_retry_at},
        })
        track_retry_scheduled()

        logger.info(
            "webhook_retry_scheduled",
            job_id=job_id,
            next_attempt=status.attempts + 1,
            delay_seconds=round(delay, 3),
            next_retry_at=next_retry_at.isoformat(),
        )
        return ScheduleResult(
            success=True,
            message=f"Retry scheduled for attempt {status.attempts + 1}",
            next_retry_at=next_retry_at,
            delay_seconds=delay,
        )

    async def can_retry(self, job_id: str) -> RetryEligibility:
        """Report whether an operator may trigger a retry for the job."""
        status = await self.store.get(job_id)
        if status is None:
            return RetryEligibility(False, "No webhook delivery status found")

        if status.state == DeliveryState.DELIVERED:
            return RetryEligibility(False, "Webhook already delivered successfully", status)
        if status.state == DeliveryState.DEAD_LETTER:
            return RetryEligibility(False, "Webhook is in dead letter queue", status)
        if status.state == DeliveryState.RETRYING:
            return RetryEligibility(True, "Webhook is currently being retried", status)
        if status.state == DeliveryState.FAILED and status.attempts >= status.max_attempts:
            return RetryEligibility(False, "Maximum retry attempts exceeded", status)
        if status.state == DeliveryState.FAILED:
            return RetryEligibility(True, "Webhook failed but can be retried", status)
        return RetryEligibility(True, "Webhook is pending delivery", status)

    async def reopen(
        self,
        job_id: str,
        reason: str = "manual",
        metadata: dict[str, Any] | None = None,
        reset: bool = False,
    ) -> ScheduleResult:
        """
        Handle a manual retry trigger: make the delivery due now.

        A dead-lettered delivery is only reopened when the trigger comes
        from the archive (metadata.deadLetterRetry) or asks for a reset;
        it then starts over as a new delivery with a fresh attempt count.
        """
        metadata = metadata or {}
        reset = reset or bool(metadata.get("reset"))
        status = await self.store.get(job_id)
        if status is None:
            return ScheduleResult(success=False, message="No webhook delivery status found for this job")

        if status.state == DeliveryState.DELIVERED:
            return ScheduleResult(success=False, message="Webhook has already been delivered successfully")

        from_dead_letter = status.state == DeliveryState.DEAD_LETTER
        if from_dead_letter and not (reset or metadata.get("deadLetterRetry")):
            return ScheduleResult(
                success=False,
                message="Webhook is in dead letter queue; retry it from the dead letter queue",
            )
        if not (from_dead_letter or reset) and status.attempts >= status.max_attempts:
            return ScheduleResult(
                success=False,
                message="Maximum retry attempts exceeded; retry with reset to start over",
            )

        now = self.clock()
        fields: dict[str, Any] = {
            "state": DeliveryState.RETRYING,
            "manual_retries": status.manual_retries + 1,
            "last_delay_seconds": 0.0,
            "timestamps": {"next_retry": now},
        }
        if from_dead_letter or reset:
            # New attempt sequence: a new id keeps attempt records append-only
            fields.update({
                "id": generate_delivery_id(),
                "attempts": 0,
                "dead_letter_id": None,
                "last_error": None,
                "last_response": None,
            })
            fields["timestamps"].update({"failed": None, "delivered": None})

        updated = await self.store.update(job_id, fields)
        logger.info(
            "webhook_retry_reopened",
            job_id=job_id,
            reason=reason,
            delivery_id=updated.id,
            reset=from_dead_letter or reset,
        )
        return ScheduleResult(
            success=True,
            message=f"Retry scheduled ({reason})",
            next_retry_at=now,
            delay_seconds=0.0,
            retry_id=f"retry_{updated.id}_{updated.attempts + 1}",
        )
