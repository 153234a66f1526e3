"""
Delivery Status Store

CRUD over DeliveryStatus records keyed by job id, plus the append-only
attempt log. There is no transactional guarantee: concurrent writers
to the same job id race and the last write wins.
"""
from datetime import datetime
from typing import Any, Callable

import structlog
from pydantic import ValidationError

from relay.config import settings
from relay.exceptions import StoreError
from relay.models.base import utc_now
from relay.models.webhook import DeliveryStatus, RetryAttemptRecord
from relay.services.keyspace import KeySpace
from relay.services.kv_store import KVStore

logger = structlog.get_logger()


class DeliveryStatusStore:
    """Reads and writes delivery records through the key-value store."""

    def __init__(
        self,
        kv: KVStore,
        keys: KeySpace = None,
        clock: Callable[[], datetime] = utc_now,
        default_max_attempts: int = None,
        status_ttl: int = None,
        attempt_ttl: int = None,
    ):
        self.kv = kv
        self.keys = keys or KeySpace.from_settings()
        self.clock = clock
        self.default_max_attempts = default_max_attempts or settings.RETRY_MAX_ATTEMPTS
        self.status_ttl = status_ttl or settings.DELIVERY_TTL_SECONDS
        self.attempt_ttl = attempt_ttl or settings.ATTEMPT_TTL_SECONDS

    async def get(self, job_id: str) -> DeliveryStatus | None:
        """
        Load the delivery status for a job.

        Returns:
            DeliveryStatus, or None if the job has no record

        Raises:
            StoreError: if the store read fails or the record is corrupt
        """
        key = self.keys.delivery(job_id)
        raw = await self.kv.get(key)
        if raw is None:
            logger.debug("delivery_status_not_found", job_id=job_id)
            return None
        try:
            return DeliveryStatus.from_json(raw)
        except ValidationError as e:
            raise StoreError("decode", key, e) from e

    async def create(self, job_id: str, **initial: Any) -> DeliveryStatus:
        """
        Create a fresh delivery record, replacing any existing one.

        Args:
            job_id: External job identifier
            **initial: DeliveryStatus fields (target_url, payload, ...)

        Returns:
            The stored DeliveryStatus
        """
        now = self.clock()
        initial.setdefault("max_attempts", self.default_max_attempts)
        timestamps = {"created": now, "last_attempt": now, **initial.pop("timestamps", {})}
        status = DeliveryStatus(job_id=job_id, timestamps=timestamps, **initial)
        await self._put(status)
        logger.info(
            "delivery_status_created",
            job_id=job_id,
            delivery_id=status.id,
            target_url=status.target_url,
        )
        return status

    async def update(self, job_id: str, fields: dict[str, Any]) -> DeliveryStatus:
        """
        Merge fields into the job's delivery record.

        Top-level fields replace; the timestamps sub-object merges
        field-by-field. A missing record is synthesised from the given
        fields plus defaults. When the update carries timestamps,
        timestamps.last_attempt is stamped with the current time.

        Returns:
            The stored DeliveryStatus
        """
        fields = dict(fields)
        partial_timestamps = fields.pop("timestamps", None)
        now = self.clock()

        existing = await self.get(job_id)
        if existing is None:
            data = {"job_id": job_id, "max_attempts": self.default_max_attempts}
            timestamps = {"created": now, "last_attempt": now}
        else:
            data = existing.model_dump()
            timestamps = data["timestamps"]
        data.update(fields)

        if partial_timestamps is not None:
            timestamps.update(partial_timestamps)
            timestamps["last_attempt"] = now
        data["timestamps"] = timestamps

        status = DeliveryStatus.model_validate(data)
        await self._put(status)
        logger.info(
            "delivery_status_updated",
            job_id=job_id,
            state=status.state.value,
            attempts=status.attempts,
        )
        return status

    async def delete(self, job_id: str) -> None:
        await self.kv.delete(self.keys.delivery(job_id))
        logger.info("delivery_status_deleted", job_id=job_id)

    async def _put(self, status: DeliveryStatus) -> None:
        await self.kv.put(
            self.keys.delivery(status.job_id),
            status.to_json(),
            ttl=self.status_ttl,
        )

    async def list_statuses(self, limit: int | None = None) -> list[DeliveryStatus]:
        """Scan stored delivery records, skipping any that cannot be read."""
        statuses = []
        for key in await self.kv.keys(self.keys.delivery_prefix, limit=limit):
            job_id = key[len(self.keys.delivery_prefix):]
            try:
                status = await self.get(job_id)
            except StoreError as e:
                logger.warning("delivery_status_unreadable", job_id=job_id, error=str(e))
                continue
            if status is not None:
                statuses.append(status)
        return statuses

    # Attempt log

    async def append_attempt(self, record: RetryAttemptRecord) -> None:
        await self.kv.put(
            self.keys.attempt(record.delivery_id, record.attempt_number),
            record.to_json(),
            ttl=self.attempt_ttl,
        )

    async def get_attempt(self, delivery_id: str, attempt_number: int) -> RetryAttemptRecord | None:
        raw = await self.kv.get(self.keys.attempt(delivery_id, attempt_number))
        if raw is None:
            return None
        return RetryAttemptRecord.from_json(raw)

    async def list_attempts(self, delivery_id: str, limit: int = 100) -> list[RetryAttemptRecord]:
        """Attempt numbers are contiguous from 1, so stop at the first gap."""
        records = []
        for attempt_number in range(1, limit + 1):
            record = await self.get_attempt(delivery_id, attempt_number)
            if record is None:
                break
            records.append(record)
        return records
