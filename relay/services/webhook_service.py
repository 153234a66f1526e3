"""
Webhook Service

Delivery engine: runs an inbound event through deduplication, the
delivery attempt and the retry/dead-letter decision, and sweeps
deliveries whose retry has come due.
"""
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

import httpx
import structlog

from relay.config import settings
from relay.exceptions import (
    DeliveryNotFoundError,
    DeliveryStateError,
    InvalidPayloadError,
    RelayError,
    StoreError,
)
from relay.models.base import utc_now
from relay.models.dead_letter import DeadLetterReason
from relay.models.webhook import (
    DeliveryState,
    DeliveryStatus,
    ErrorKind,
    ErrorSnapshot,
    RetryAttemptRecord,
    RetryPolicy,
    Severity,
)
from relay.routes.metrics import track_delivery_attempt, track_duplicate_suppressed
from relay.sentry_config import capture_exception
from relay.services.dead_letter import ArchiveResult, DeadLetterArchive
from relay.services.dedup_ledger import DeduplicationLedger, event_hash, event_identity
from relay.services.delivery_executor import DeliveryExecutor
from relay.services.delivery_store import DeliveryStatusStore
from relay.services.error_classifier import ClassifiedError
from relay.services.keyspace import KeySpace
from relay.services.kv_store import KVStore
from relay.services.retry_scheduler import RetryScheduler, ScheduleResult

logger = structlog.get_logger()

EVENT_STATES = ("completed", "failed")
LOCK_MARGIN_SECONDS = 30


@dataclass
class ProcessResult:
    success: bool
    job_id: str
    message: str
    delivery_id: str | None = None
    state: DeliveryState | None = None
    duplicate: bool = False
    attempt_number: int | None = None
    error: ClassifiedError | None = None
    next_retry_at: datetime | None = None
    dead_letter_id: str | None = None


@dataclass
class SweepResult:
    executed: int = 0
    delivered: int = 0
    failed: int = 0
    rescheduled: int = 0
    errors: list[str] = field(default_factory=list)
    results: list[ProcessResult] = field(default_factory=list)


class WebhookDeliveryEngine:
    """
    Entry point for delivering job completion events.

    All state lives in the injected key-value store; nothing is cached
    between calls, so any number of API processes and workers can share
    one store.
    """

    def __init__(
        self,
        kv: KVStore,
        client: httpx.AsyncClient,
        policy: RetryPolicy = None,
        keys: KeySpace = None,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random = None,
        timeout: float = None,
        signing_secret: str | None = None,
        retry_service_url: str = None,
        stale_failed_seconds: int = None,
    ):
        self.kv = kv
        self.keys = keys or KeySpace.from_settings()
        self.clock = clock
        self.policy = policy or RetryPolicy.from_settings(settings)
        self.timeout = timeout or settings.DELIVERY_TIMEOUT_SECONDS
        self.stale_failed_seconds = (
            stale_failed_seconds if stale_failed_seconds is not None
            else settings.SWEEP_STALE_FAILED_SECONDS
        )

        self.store = DeliveryStatusStore(
            kv, keys=self.keys, clock=clock, default_max_attempts=self.policy.max_attempts
        )
        self.ledger = DeduplicationLedger(kv, keys=self.keys, clock=clock)
        self.executor = DeliveryExecutor(
            self.store,
            client,
            timeout=self.timeout,
            signing_secret=signing_secret if signing_secret is not None else settings.WEBHOOK_SIGNING_SECRET,
            clock=clock,
        )
        self.archive = DeadLetterArchive(
            self.store, client, retry_service_url=retry_service_url, clock=clock
        )
        self.scheduler = RetryScheduler(
            self.store, self.archive, policy=self.policy, clock=clock, rng=rng
        )

    # Inbound events

    async def process_event(
        self,
        payload: dict[str, Any],
        target_url: str,
        headers: dict[str, str] | None = None,
        policy: RetryPolicy | None = None,
    ) -> ProcessResult:
        """
        Deliver an inbound job event to its target.

        Args:
            payload: Event document; must carry a string job_id
            target_url: Callback endpoint to POST the event to
            headers: Extra headers sent with every attempt
            policy: Retry policy override for this delivery

        Returns:
            ProcessResult describing the attempt, or the duplicate verdict

        Raises:
            InvalidPayloadError: the payload cannot be keyed to a job
            StoreError: the delivery status could not be read or written
        """
        job_id = payload.get("job_id") if isinstance(payload, dict) else None
        if not isinstance(job_id, str) or not job_id:
            raise InvalidPayloadError("Event payload must carry a string job_id")

        log = logger.bind(job_id=job_id)
        log.info("webhook_event_received", status=payload.get("status"), target_url=target_url)

        try:
            # Advisory: a failed check reports not-duplicate and delivery goes ahead
            check = await self.ledger.check_duplicate(payload)
            if check.is_duplicate:
                track_duplicate_suppressed()
                log.info("webhook_duplicate_skipped")
                return ProcessResult(
                    success=True,
                    job_id=job_id,
                    message="Duplicate webhook, already processed",
                    duplicate=True,
                )

            existing = await self.store.get(job_id)
            if existing is not None:
                refusal = await self._refuse_for_existing(existing, payload)
                if refusal is not None:
                    return refusal

            # Only a record built from this payload is ever archived as invalid
            if payload.get("status") not in EVENT_STATES:
                return await self._reject_invalid_payload(job_id, payload, target_url, headers)

            if existing is None or existing.is_terminal:
                await self.store.create(
                    job_id,
                    target_id=event_identity(payload)[2],
                    payload=payload,
                    target_url=target_url,
                    extra_headers=headers or {},
                    max_attempts=(policy or self.policy).max_attempts,
                    policy=policy,
                )

            return await self._attempt(job_id, policy)
        except StoreError:
            capture_exception(job_id=job_id)
            raise

    async def _refuse_for_existing(self, existing: DeliveryStatus, payload: dict) -> ProcessResult | None:
        """
        Decide whether an event may proceed while its job already has a delivery.

        A live dead-letter entry blocks every event. An unfinished delivery
        is only resumed by the same event; a different event for the job
        is refused so neither payload is lost.
        """
        if await self._has_live_dead_letter(existing):
            return ProcessResult(
                success=False,
                job_id=existing.job_id,
                message="Delivery is in the dead letter queue; retry it from there",
                delivery_id=existing.id,
                state=existing.state,
                dead_letter_id=existing.dead_letter_id,
            )
        if not existing.is_terminal and event_hash(existing.payload) != event_hash(payload):
            logger.warning(
                "webhook_event_conflict",
                job_id=existing.job_id,
                delivery_id=existing.id,
                status=payload.get("status"),
            )
            return ProcessResult(
                success=False,
                job_id=existing.job_id,
                message="Another event for this job is still being delivered",
                delivery_id=existing.id,
                state=existing.state,
            )
        return None

    async def _has_live_dead_letter(self, status: DeliveryStatus) -> bool:
        if status.state != DeliveryState.DEAD_LETTER or not status.dead_letter_id:
            return False
        try:
            return await self.archive.get(status.dead_letter_id) is not None
        except RelayError:
            return True

    async def _reject_invalid_payload(
        self,
        job_id: str,
        payload: dict,
        target_url: str,
        headers: dict[str, str] | None,
    ) -> ProcessResult:
        message = f"Invalid payload: status must be one of {', '.join(EVENT_STATES)}"
        status = await self.store.create(
            job_id,
            target_id=event_identity(payload)[2],
            payload=payload,
            target_url=target_url,
            extra_headers=headers or {},
            last_error=ErrorSnapshot(message=message, kind=ErrorKind.CLIENT, severity=Severity.HIGH),
        )
        archived = await self.archive.archive(job_id, DeadLetterReason.INVALID_PAYLOAD)
        logger.warning("webhook_invalid_payload", job_id=job_id, status=payload.get("status"))
        return self._archived_result(job_id, status.id, message, archived)

    # Attempts

    async def execute(self, job_id: str, policy: RetryPolicy | None = None) -> ProcessResult:
        """
        Trigger the next attempt for an existing delivery immediately.

        Raises:
            DeliveryNotFoundError: no delivery status exists for the job
            DeliveryStateError: the delivery is delivered or dead-lettered
        """
        return await self._attempt(job_id, policy)

    async def _attempt(self, job_id: str, policy: RetryPolicy | None) -> ProcessResult:
        lock_key = self.keys.delivery_lock(job_id)
        lock_ttl = int(self.timeout) + LOCK_MARGIN_SECONDS
        if not await self.kv.set_if_absent(lock_key, self.clock().isoformat(), ttl=lock_ttl):
            logger.info("webhook_attempt_in_flight", job_id=job_id)
            return ProcessResult(
                success=False,
                job_id=job_id,
                message="Delivery already in flight",
            )
        try:
            outcome = await self.executor.execute(job_id)
        finally:
            await self._release_lock(lock_key)

        track_delivery_attempt(
            outcome.success,
            outcome.error.kind.value if outcome.error else None,
            outcome.duration_ms,
        )

        if outcome.success:
            # Advisory: if the marker is not written a replay may be delivered again
            await self.ledger.mark_processed(outcome.status.payload)
            return ProcessResult(
                success=True,
                job_id=job_id,
                message="Webhook delivered",
                delivery_id=outcome.delivery_id,
                state=DeliveryState.DELIVERED,
                attempt_number=outcome.attempt_number,
            )

        error = outcome.error
        if not error.retryable:
            archived = await self.archive.archive(job_id, DeadLetterReason.PERMANENT_FAILURE)
            result = self._archived_result(job_id, outcome.delivery_id, error.message, archived)
            result.attempt_number = outcome.attempt_number
            result.error = error
            return result

        scheduled = await self.scheduler.schedule_or_archive(job_id, policy)
        if not scheduled.success and not scheduled.archived:
            logger.error("webhook_retry_schedule_failed", job_id=job_id, error=scheduled.message)
        return ProcessResult(
            success=False,
            job_id=job_id,
            message=scheduled.message,
            delivery_id=outcome.delivery_id,
            state=self._state_after_schedule(scheduled),
            attempt_number=outcome.attempt_number,
            error=error,
            next_retry_at=scheduled.next_retry_at,
            dead_letter_id=scheduled.dead_letter_id,
        )

    async def _release_lock(self, lock_key: str) -> None:
        try:
            await self.kv.delete(lock_key)
        except RelayError as e:
            # The marker expires on its own TTL
            logger.warning("webhook_lock_release_failed", key=lock_key, error=str(e))

    @staticmethod
    def _state_after_schedule(scheduled: ScheduleResult) -> DeliveryState:
        if scheduled.success:
            return DeliveryState.RETRYING
        if scheduled.archived:
            return DeliveryState.DEAD_LETTER
        return DeliveryState.FAILED

    @staticmethod
    def _archived_result(job_id: str, delivery_id: str, message: str, archived: ArchiveResult) -> ProcessResult:
        if not archived.success:
            logger.error("webhook_archive_failed", job_id=job_id, error=archived.error)
            return ProcessResult(
                success=False,
                job_id=job_id,
                message=f"{message}; archiving failed: {archived.error}",
                delivery_id=delivery_id,
                state=DeliveryState.FAILED,
            )
        return ProcessResult(
            success=False,
            job_id=job_id,
            message=f"{message}; moved to dead letter queue",
            delivery_id=delivery_id,
            state=DeliveryState.DEAD_LETTER,
            dead_letter_id=archived.dead_letter_id,
        )

    # Sweep

    async def run_due_retries(self, limit: int = None) -> SweepResult:
        """
        Fire every retrying delivery whose next_retry has passed.

        Failed deliveries that never got a scheduling decision (the
        process died between attempt and schedule) are handed to the
        scheduler once they are older than stale_failed_seconds; pending
        deliveries that old are attempted.
        """
        limit = limit or settings.SWEEP_BATCH_SIZE
        now = self.clock()
        result = SweepResult()

        def is_stale(status: DeliveryStatus) -> bool:
            return (now - status.timestamps.last_attempt).total_seconds() >= self.stale_failed_seconds

        statuses = await self.store.list_statuses()
        due = sorted(
            (
                s for s in statuses
                if (
                    s.state == DeliveryState.RETRYING
                    and (s.timestamps.next_retry is None or s.timestamps.next_retry <= now)
                )
                # first attempt never ran, e.g. its lock holder died
                or (s.state == DeliveryState.PENDING and is_stale(s))
            ),
            key=lambda s: s.timestamps.next_retry or s.timestamps.created,
        )
        stale = [s for s in statuses if s.state == DeliveryState.FAILED and is_stale(s)]

        for status in due[:limit]:
            try:
                attempt = await self._attempt(status.job_id, None)
            except RelayError as e:
                logger.error("sweep_attempt_failed", job_id=status.job_id, error=str(e))
                result.errors.append(f"{status.job_id}: {e}")
                continue
            result.results.append(attempt)
            if attempt.attempt_number is None:
                continue
            result.executed += 1
            if attempt.success:
                result.delivered += 1
            else:
                result.failed += 1

        for status in stale:
            try:
                await self.scheduler.schedule_or_archive(status.job_id)
                result.rescheduled += 1
            except RelayError as e:
                logger.error("sweep_reschedule_failed", job_id=status.job_id, error=str(e))
                result.errors.append(f"{status.job_id}: {e}")

        logger.info(
            "sweep_completed",
            due=len(due),
            executed=result.executed,
            delivered=result.delivered,
            failed=result.failed,
            rescheduled=result.rescheduled,
        )
        return result

    # Operator actions

    async def get_status(self, job_id: str) -> DeliveryStatus:
        status = await self.store.get(job_id)
        if status is None:
            raise DeliveryNotFoundError(job_id)
        return status

    async def list_attempts(self, job_id: str) -> list[RetryAttemptRecord]:
        status = await self.get_status(job_id)
        return await self.store.list_attempts(status.id, limit=max(status.attempts, 1))

    async def manual_retry(
        self,
        job_id: str,
        reason: str = "manual",
        metadata: dict[str, Any] | None = None,
    ) -> ScheduleResult:
        """Handle the retry-webhook trigger by making the delivery due now."""
        return await self.scheduler.reopen(job_id, reason=reason, metadata=metadata)

    async def archive_manually(self, job_id: str) -> ArchiveResult:
        status = await self.get_status(job_id)
        if status.is_terminal:
            raise DeliveryStateError(job_id, status.state.value, "archive")
        return await self.archive.archive(job_id, DeadLetterReason.MANUAL)
