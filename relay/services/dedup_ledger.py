"""
Deduplication Ledger

Content-hash keyed "already processed" markers. Duplicate detection is
an optimisation, not a correctness guarantee: both operations are
advisory and report store failures in their result instead of raising.
"""
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import structlog

from relay.config import settings
from relay.exceptions import RelayError
from relay.models.base import utc_now
from relay.models.webhook import DeduplicationRecord
from relay.services.keyspace import KeySpace
from relay.services.kv_store import KVStore

logger = structlog.get_logger()


@dataclass
class AdvisoryResult:
    ok: bool
    error: str | None = None


@dataclass
class DuplicateCheck(AdvisoryResult):
    is_duplicate: bool = False
    record: DeduplicationRecord | None = None


def compute_hash(job_id: str, state: str, target_id: str) -> str:
    """SHA-256 over the canonical JSON of the event's identity fields."""
    identity = json.dumps(
        {"jobId": job_id, "state": state, "targetId": target_id},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(identity.encode()).hexdigest()


def event_identity(payload: dict[str, Any]) -> tuple[str, str, str]:
    """Extract (job_id, state, target_id); volatile fields are ignored."""
    job_id = str(payload.get("job_id", ""))
    state = str(payload.get("status", ""))
    target_id = str(payload.get("target_id") or job_id)
    return job_id, state, target_id


def event_hash(payload: dict[str, Any]) -> str:
    return compute_hash(*event_identity(payload))


class DeduplicationLedger:
    """Tracks which inbound events have already been delivered."""

    def __init__(
        self,
        kv: KVStore,
        keys: KeySpace = None,
        ttl: int = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.kv = kv
        self.keys = keys or KeySpace.from_settings()
        self.ttl = ttl or settings.DEDUPE_TTL_SECONDS
        self.clock = clock

    async def check_duplicate(self, payload: dict[str, Any]) -> DuplicateCheck:
        """
        Look up the event's marker, creating an unprocessed one if absent.

        Fails open: on a store error the event is treated as new.
        """
        digest = event_hash(payload)
        key = self.keys.dedupe(digest)
        job_id = event_identity(payload)[0]
        try:
            raw = await self.kv.get(key)
            if raw is not None:
                record = DeduplicationRecord.from_json(raw)
                return DuplicateCheck(ok=True, is_duplicate=record.processed, record=record)

            record = DeduplicationRecord(id=digest, job_id=job_id, ttl_seconds=self.ttl)
            await self.kv.put(key, record.to_json(), ttl=self.ttl)
            return DuplicateCheck(ok=True, is_duplicate=False, record=record)
        except (RelayError, ValueError) as e:
            logger.error("dedup_check_failed", job_id=job_id, error=str(e))
            return DuplicateCheck(ok=False, error=str(e), is_duplicate=False)

    async def mark_processed(self, payload: dict[str, Any]) -> AdvisoryResult:
        """Flag the event's marker as processed. Missing marker is a no-op."""
        digest = event_hash(payload)
        key = self.keys.dedupe(digest)
        try:
            raw = await self.kv.get(key)
            if raw is None:
                return AdvisoryResult(ok=True)
            record = DeduplicationRecord.from_json(raw)
            if record.processed:
                return AdvisoryResult(ok=True)
            record.processed = True
            record.processed_at = self.clock()
            await self.kv.put(key, record.to_json(), ttl=record.ttl_seconds)
            return AdvisoryResult(ok=True)
        except (RelayError, ValueError) as e:
            logger.error("dedup_mark_failed", job_id=event_identity(payload)[0], error=str(e))
            return AdvisoryResult(ok=False, error=str(e))
