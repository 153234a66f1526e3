"""
Dead Letter Archive

Durable record of permanently failed deliveries. Entries are stored
individually and their ids are tracked in a queue-membership list so
operators can page through, retry, or clear them.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import httpx
import structlog
from pydantic import ValidationError

from relay.config import settings
from relay.exceptions import RelayError, StoreError
from relay.models.base import utc_now
from relay.models.dead_letter import (
    DeadLetterCategory,
    DeadLetterEntry,
    DeadLetterMetadata,
    DeadLetterReason,
    DeadLetterStats,
)
from relay.models.webhook import DeliveryState, ErrorKind, ErrorSnapshot
from relay.routes.metrics import track_dead_letter
from relay.services.delivery_store import DeliveryStatusStore
from relay.services.jwt_service import JWTService

logger = structlog.get_logger()

SERVICE_SUBJECT = "dead-letter-archive"


@dataclass
class ArchiveResult:
    success: bool
    dead_letter_id: str | None = None
    error: str | None = None


@dataclass
class DeadLetterPage:
    entries: list[DeadLetterEntry]
    total: int


@dataclass
class DeadLetterRetryResult:
    success: bool
    message: str
    retry_id: str | None = None
    # True once an accepted retry has also deleted the entry
    entry_removed: bool = False


@dataclass
class DeadLetterProcessingResult:
    success: bool = True
    processed_count: int = 0
    failed_count: int = 0
    errors: list[str] = field(default_factory=list)
    details: list[dict] = field(default_factory=list)


@dataclass
class ClearResult:
    success: bool
    cleared_count: int
    total: int = 0
    error: str | None = None


def _metadata_for(reason: DeadLetterReason, final_error: ErrorSnapshot) -> DeadLetterMetadata:
    if reason == DeadLetterReason.MAX_ATTEMPTS_EXCEEDED:
        category = DeadLetterCategory.TEMPORARY
    elif reason == DeadLetterReason.MANUAL:
        category = DeadLetterCategory.UNKNOWN
    else:
        category = DeadLetterCategory.PERMANENT
    action = "Contact support" if reason == DeadLetterReason.PERMANENT_FAILURE else "Manual review required"
    return DeadLetterMetadata(severity=final_error.severity, category=category, action=action)


class DeadLetterArchive:
    """Stores, lists, retries and clears dead letter entries."""

    def __init__(
        self,
        store: DeliveryStatusStore,
        client: httpx.AsyncClient,
        retry_service_url: str = None,
        ttl: int = None,
        scan_limit: int = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.kv = store.kv
        self.keys = store.keys
        self.client = client
        self.retry_service_url = (retry_service_url or settings.RETRY_SERVICE_URL).rstrip("/")
        self.ttl = ttl or settings.DEAD_LETTER_TTL_SECONDS
        self.scan_limit = scan_limit or settings.DEAD_LETTER_SCAN_LIMIT
        self.clock = clock

    def _auth_headers(self) -> dict[str, str]:
        token = JWTService().create_token(SERVICE_SUBJECT, role="service")
        return {"Authorization": f"Bearer {token}"}

    # Queue membership

    async def _load_queue(self) -> list[str]:
        key = self.keys.dead_letter_queue
        raw = await self.kv.get(key)
        if not raw:
            return []
        try:
            return [str(i) for i in json.loads(raw)]
        except (ValueError, TypeError) as e:
            raise StoreError("decode", key, e) from e

    async def _save_queue(self, ids: list[str]) -> None:
        await self.kv.put(self.keys.dead_letter_queue, json.dumps(ids), ttl=self.ttl)

    async def _add_to_queue(self, entry_id: str) -> None:
        ids = await self._load_queue()
        if entry_id not in ids:
            ids.append(entry_id)
        await self._save_queue(ids)

    async def _remove_from_queue(self, entry_id: str) -> None:
        ids = await self._load_queue()
        await self._save_queue([i for i in ids if i != entry_id])

    # Operations

    async def archive(self, job_id: str, reason: DeadLetterReason) -> ArchiveResult:
        """
        Move a delivery into the dead letter queue.

        The entry is written before its id joins the queue list, and the
        delivery status is flipped last. If the status write fails the
        entry is withdrawn again and failure is reported.
        """
        log = logger.bind(job_id=job_id, reason=reason.value)
        log.info("dead_letter_archiving")
        try:
            status = await self.store.get(job_id)
        except RelayError as e:
            log.error("dead_letter_archive_failed", error=str(e))
            return ArchiveResult(success=False, error=str(e))
        if status is None:
            return ArchiveResult(success=False, error="No delivery status found for job")

        now = self.clock()
        final_error = status.last_error or ErrorSnapshot(message="Unknown error", kind=ErrorKind.NETWORK)
        entry = DeadLetterEntry(
            id=f"dead_{job_id}_{int(now.timestamp() * 1000)}",
            delivery_id=status.id,
            job_id=job_id,
            reason=reason,
            timestamp=now,
            payload=status.payload,
            final_error=final_error,
            retry_attempts=status.attempts,
            metadata=_metadata_for(reason, final_error),
        )

        entry_key = self.keys.dead_letter(entry.id)
        try:
            await self.kv.put(entry_key, entry.to_json(), ttl=self.ttl)
            await self._add_to_queue(entry.id)
        except RelayError as e:
            log.error("dead_letter_archive_failed", error=str(e))
            await self._withdraw(entry.id)
            return ArchiveResult(success=False, error=str(e))

        try:
            await self.store.update(job_id, {
                "state": DeliveryState.DEAD_LETTER,
                "dead_letter_id": entry.id,
                "timestamps": {"failed": now, "next_retry": None},
            })
        except RelayError as e:
            log.error("dead_letter_status_update_failed", dead_letter_id=entry.id, error=str(e))
            await self._withdraw(entry.id)
            return ArchiveResult(success=False, error=str(e))

        track_dead_letter(reason.value)
        log.info(
            "dead_letter_archived",
            dead_letter_id=entry.id,
            retry_attempts=status.attempts,
        )
        return ArchiveResult(success=True, dead_letter_id=entry.id)

    async def _withdraw(self, entry_id: str) -> None:
        """Best-effort rollback of a partially written archive."""
        try:
            await self._remove_from_queue(entry_id)
            await self.kv.delete(self.keys.dead_letter(entry_id))
        except RelayError as e:
            logger.error("dead_letter_withdraw_failed", dead_letter_id=entry_id, error=str(e))

    async def get(self, entry_id: str) -> DeadLetterEntry | None:
        key = self.keys.dead_letter(entry_id)
        raw = await self.kv.get(key)
        if raw is None:
            logger.debug("dead_letter_not_found", dead_letter_id=entry_id)
            return None
        try:
            return DeadLetterEntry.from_json(raw)
        except ValidationError as e:
            raise StoreError("decode", key, e) from e

    async def list_entries(self, limit: int = 50, offset: int = 0) -> DeadLetterPage:
        """
        Page through entries, newest first.

        Entries that cannot be read are skipped so one bad record never
        hides the rest of the queue.
        """
        ids = list(reversed(await self._load_queue()))
        total = len(ids)

        entries = []
        for entry_id in ids[offset:offset + limit]:
            try:
                entry = await self.get(entry_id)
            except RelayError as e:
                logger.warning("dead_letter_unreadable", dead_letter_id=entry_id, error=str(e))
                continue
            if entry is not None:
                entries.append(entry)

        entries.sort(key=lambda e: e.timestamp, reverse=True)
        logger.info(
            "dead_letter_listed",
            total=total,
            returned=len(entries),
            limit=limit,
            offset=offset,
        )
        return DeadLetterPage(entries=entries, total=total)

    async def remove(self, entry_id: str) -> None:
        """Delete an entry and its queue membership. Raises on store failure."""
        await self.kv.delete(self.keys.dead_letter(entry_id))
        await self._remove_from_queue(entry_id)
        logger.info("dead_letter_removed", dead_letter_id=entry_id)

    async def retry(self, entry_id: str) -> DeadLetterRetryResult:
        """
        Ask the retry endpoint to redeliver an archived event.

        The entry is only removed once the endpoint accepts the retry.
        """
        log = logger.bind(dead_letter_id=entry_id)
        try:
            entry = await self.get(entry_id)
        except RelayError as e:
            return DeadLetterRetryResult(success=False, message=f"Failed to load entry: {e}")
        if entry is None:
            return DeadLetterRetryResult(success=False, message="Dead letter entry not found")

        body = {
            "webhookId": entry.job_id,
            "reason": "manual",
            "metadata": {
                "deadLetterRetry": True,
                "deadLetterId": entry.id,
                "originalFailureReason": entry.reason.value,
                "originalError": entry.final_error.model_dump(mode="json"),
            },
        }
        url = f"{self.retry_service_url}/retry-webhook/{entry.job_id}"
        try:
            response = await self.client.post(url, json=body, headers=self._auth_headers())
        except httpx.HTTPError as e:
            log.error("dead_letter_retry_exception", error=str(e))
            return DeadLetterRetryResult(success=False, message=f"Exception during retry: {e}")

        if not response.is_success:
            log.error("dead_letter_retry_rejected", status_code=response.status_code, error=response.text[:200])
            return DeadLetterRetryResult(
                success=False,
                message=f"Failed to retry: {response.status_code} {response.reason_phrase}",
            )

        try:
            reply = response.json()
        except ValueError:
            reply = {}
        if reply.get("success") is False:
            return DeadLetterRetryResult(success=False, message=reply.get("message") or "Retry was refused")

        message = reply.get("message") or "Retry scheduled successfully"
        removed = True
        try:
            await self.remove(entry_id)
        except RelayError as e:
            log.warning("dead_letter_remove_after_retry_failed", error=str(e))
            message = f"{message}; entry could not be removed: {e}"
            removed = False

        log.info("dead_letter_retried", job_id=entry.job_id, retry_id=reply.get("retryId"))
        return DeadLetterRetryResult(
            success=True,
            message=message,
            retry_id=reply.get("retryId"),
            entry_removed=removed,
        )

    async def is_stale(self, entry: DeadLetterEntry) -> bool:
        """An entry is stale once its delivery has left the dead letter state."""
        status = await self.store.get(entry.job_id)
        return (
            status is None
            or status.state != DeliveryState.DEAD_LETTER
            or status.dead_letter_id != entry.id
        )

    async def process(self, limit: int = 10) -> DeadLetterProcessingResult:
        """Retry up to `limit` of the newest entries."""
        result = DeadLetterProcessingResult()
        try:
            page = await self.list_entries(limit=limit)
        except RelayError as e:
            logger.error("dead_letter_process_failed", error=str(e))
            return DeadLetterProcessingResult(success=False, errors=[str(e)])

        for entry in page.entries:
            try:
                stale = await self.is_stale(entry)
            except RelayError as e:
                result.failed_count += 1
                result.errors.append(f"{entry.id}: {e}")
                continue
            if stale:
                try:
                    await self.remove(entry.id)
                except RelayError as e:
                    logger.warning("dead_letter_stale_remove_failed", dead_letter_id=entry.id, error=str(e))
                result.details.append({"dead_letter_id": entry.id, "success": True, "skipped": "stale"})
                continue

            outcome = await self.retry(entry.id)
            result.details.append({"dead_letter_id": entry.id, "success": outcome.success})
            if outcome.success:
                result.processed_count += 1
            else:
                result.failed_count += 1
                result.errors.append(f"{entry.id}: {outcome.message}")

        result.success = result.failed_count == 0
        logger.info(
            "dead_letter_processed",
            processed_count=result.processed_count,
            failed_count=result.failed_count,
            total_entries=page.total,
        )
        return result

    async def clear(self) -> ClearResult:
        """Remove every listed entry, continuing past individual failures."""
        try:
            page = await self.list_entries(limit=self.scan_limit)
        except RelayError as e:
            logger.error("dead_letter_clear_failed", error=str(e))
            return ClearResult(success=False, cleared_count=0, error=str(e))

        cleared = 0
        for entry in page.entries:
            try:
                await self.remove(entry.id)
                cleared += 1
            except RelayError as e:
                logger.warning("dead_letter_clear_entry_failed", dead_letter_id=entry.id, error=str(e))

        logger.info("dead_letter_cleared", cleared_count=cleared, total_entries=len(page.entries))
        return ClearResult(success=True, cleared_count=cleared, total=len(page.entries))

    async def stats(self) -> DeadLetterStats:
        """Aggregate counts over at most scan_limit entries."""
        page = await self.list_entries(limit=self.scan_limit)
        stats = DeadLetterStats(total_entries=page.total, scanned_entries=len(page.entries))

        for entry in page.entries:
            reason = entry.reason.value
            stats.entries_by_reason[reason] = stats.entries_by_reason.get(reason, 0) + 1
            day = entry.timestamp.date().isoformat()
            stats.entries_by_date[day] = stats.entries_by_date.get(day, 0) + 1

            if stats.oldest_entry is None or entry.timestamp < stats.oldest_entry:
                stats.oldest_entry = entry.timestamp
            if stats.newest_entry is None or entry.timestamp > stats.newest_entry:
                stats.newest_entry = entry.timestamp

        return stats

