"""
Dead letter archive tests.
"""
import json

import httpx
import pytest

from conftest import RETRY_SERVICE_URL, TARGET_URL, ScriptedReceiver, job_event, mock_client
from relay.exceptions import StoreError
from relay.models.dead_letter import DeadLetterCategory, DeadLetterReason
from relay.models.webhook import DeliveryState, ErrorKind, ErrorSnapshot, Severity
from relay.services.dead_letter import DeadLetterArchive
from relay.services.delivery_store import DeliveryStatusStore
from relay.services.jwt_service import JWTService
from relay.services.kv_store import MemoryKVStore


class FlakyDeleteStore(MemoryKVStore):
    """Memory store whose deletes fail for chosen keys."""

    def __init__(self):
        super().__init__()
        self.fail_deletes: set[str] = set()

    async def delete(self, key):
        if key in self.fail_deletes:
            raise StoreError("delete", key, ConnectionError("store unreachable"))
        await super().delete(key)


@pytest.fixture
def store(kv, keys, clock):
    return DeliveryStatusStore(kv, keys=keys, clock=clock)


def make_archive(store, clock, receiver=None):
    return DeadLetterArchive(
        store,
        mock_client(receiver or ScriptedReceiver(200)),
        retry_service_url=RETRY_SERVICE_URL,
        clock=clock,
    )


async def failed_delivery(store, job_id="job-1", attempts=3):
    return await store.create(
        job_id,
        payload=job_event(job_id),
        target_url=TARGET_URL,
        state=DeliveryState.FAILED,
        attempts=attempts,
        last_error=ErrorSnapshot(
            message="Server error: 500 Internal Server Error",
            kind=ErrorKind.SERVER,
            code="500",
            severity=Severity.MEDIUM,
        ),
    )


async def test_archive_writes_entry_and_flips_status(store, clock):
    archive = make_archive(store, clock)
    delivery = await failed_delivery(store)

    result = await archive.archive("job-1", DeadLetterReason.MAX_ATTEMPTS_EXCEEDED)

    assert result.success is True
    entry = await archive.get(result.dead_letter_id)
    assert entry.job_id == "job-1"
    assert entry.delivery_id == delivery.id
    assert entry.reason == DeadLetterReason.MAX_ATTEMPTS_EXCEEDED
    assert entry.retry_attempts == 3
    assert entry.final_error.code == "500"
    assert entry.payload == job_event("job-1")
    assert entry.metadata.category == DeadLetterCategory.TEMPORARY
    assert entry.metadata.severity == Severity.MEDIUM

    status = await store.get("job-1")
    assert status.state == DeliveryState.DEAD_LETTER
    assert status.dead_letter_id == entry.id
    assert status.timestamps.failed == clock.now
    assert status.timestamps.next_retry is None
    assert status.attempts <= status.max_attempts


async def test_permanent_failure_is_categorised(store, clock):
    archive = make_archive(store, clock)
    await failed_delivery(store, attempts=1)

    result = await archive.archive("job-1", DeadLetterReason.PERMANENT_FAILURE)

    entry = await archive.get(result.dead_letter_id)
    assert entry.metadata.category == DeadLetterCategory.PERMANENT
    assert entry.metadata.action == "Contact support"


async def test_archive_without_status_fails(store, clock):
    result = await make_archive(store, clock).archive("ghost", DeadLetterReason.MANUAL)
    assert result.success is False
    assert result.error == "No delivery status found for job"


async def test_get_missing_entry_returns_none(store, clock):
    assert await make_archive(store, clock).get("dead_nope_0") is None


async def test_list_is_newest_first_and_paginated(store, clock):
    archive = make_archive(store, clock)
    ids = []
    for i in range(4):
        await failed_delivery(store, f"job-{i}")
        ids.append((await archive.archive(f"job-{i}", DeadLetterReason.MAX_ATTEMPTS_EXCEEDED)).dead_letter_id)
        clock.advance(60)

    page = await archive.list_entries(limit=2)
    assert page.total == 4
    assert [e.id for e in page.entries] == [ids[3], ids[2]]

    page = await archive.list_entries(limit=2, offset=2)
    assert [e.id for e in page.entries] == [ids[1], ids[0]]


async def test_list_skips_unreadable_entries(store, kv, keys, clock):
    archive = make_archive(store, clock)
    await failed_delivery(store)
    result = await archive.archive("job-1", DeadLetterReason.MAX_ATTEMPTS_EXCEEDED)
    await kv.put(keys.dead_letter_queue, json.dumps(["dead_broken_1", result.dead_letter_id]))
    await kv.put(keys.dead_letter("dead_broken_1"), "not json")

    page = await archive.list_entries()
    assert page.total == 2
    assert [e.id for e in page.entries] == [result.dead_letter_id]


async def test_retry_posts_to_retry_endpoint_and_removes_entry(store, clock):
    reply = httpx.Response(200, json={"success": True, "message": "Retry scheduled (manual)", "retryId": "retry_x_1"})
    receiver = ScriptedReceiver(reply)
    archive = make_archive(store, clock, receiver)
    await failed_delivery(store)
    entry_id = (await archive.archive("job-1", DeadLetterReason.MAX_ATTEMPTS_EXCEEDED)).dead_letter_id

    result = await archive.retry(entry_id)

    assert result.success is True
    assert result.retry_id == "retry_x_1"
    assert await archive.get(entry_id) is None
    assert (await archive.list_entries()).total == 0

    request = receiver.requests[0]
    assert str(request.url) == f"{RETRY_SERVICE_URL}/retry-webhook/job-1"
    body = json.loads(request.content)
    assert body["webhookId"] == "job-1"
    assert body["reason"] == "manual"
    assert body["metadata"]["deadLetterRetry"] is True
    assert body["metadata"]["deadLetterId"] == entry_id
    assert body["metadata"]["originalFailureReason"] == "max_attempts_exceeded"
    assert body["metadata"]["originalError"]["code"] == "500"


@pytest.mark.parametrize("reply", [
    httpx.Response(500, text="boom"),
    httpx.Response(200, json={"success": False, "message": "Webhook has already been delivered successfully"}),
])
async def test_rejected_retry_keeps_entry(store, clock, reply):
    archive = make_archive(store, clock, ScriptedReceiver(reply))
    await failed_delivery(store)
    entry_id = (await archive.archive("job-1", DeadLetterReason.MAX_ATTEMPTS_EXCEEDED)).dead_letter_id

    result = await archive.retry(entry_id)

    assert result.success is False
    assert await archive.get(entry_id) is not None


async def test_retry_network_error_keeps_entry(store, clock):
    archive = make_archive(store, clock, ScriptedReceiver(httpx.ConnectError("Connection refused")))
    await failed_delivery(store)
    entry_id = (await archive.archive("job-1", DeadLetterReason.MAX_ATTEMPTS_EXCEEDED)).dead_letter_id

    result = await archive.retry(entry_id)

    assert result.success is False
    assert "Connection refused" in result.message
    assert await archive.get(entry_id) is not None


async def test_retry_missing_entry(store, clock):
    result = await make_archive(store, clock).retry("dead_nope_0")
    assert result.success is False
    assert result.message == "Dead letter entry not found"


async def test_process_aggregates_results(store, clock):
    receiver = ScriptedReceiver(
        httpx.Response(200, json={"success": True, "message": "ok"}),
        httpx.Response(503, text="unavailable"),
    )
    archive = make_archive(store, clock, receiver)
    for i in range(2):
        await failed_delivery(store, f"job-{i}")
        await archive.archive(f"job-{i}", DeadLetterReason.MAX_ATTEMPTS_EXCEEDED)
        clock.advance(1)

    result = await archive.process(limit=10)

    assert result.processed_count == 1
    assert result.failed_count == 1
    assert result.success is False
    assert len(result.errors) == 1


async def test_clear_continues_past_failures(keys, clock):
    kv = FlakyDeleteStore()
    store = DeliveryStatusStore(kv, keys=keys, clock=clock)
    archive = make_archive(store, clock)
    ids = []
    for i in range(5):
        await failed_delivery(store, f"job-{i}")
        ids.append((await archive.archive(f"job-{i}", DeadLetterReason.MAX_ATTEMPTS_EXCEEDED)).dead_letter_id)
        clock.advance(1)
    kv.fail_deletes.add(keys.dead_letter(ids[2]))

    result = await archive.clear()

    assert result.success is True
    assert result.cleared_count == 4
    assert result.total == 5
    remaining = await archive.list_entries()
    assert [e.id for e in remaining.entries] == [ids[2]]


async def test_stats_group_by_reason_and_day(store, clock):
    archive = make_archive(store, clock)
    first_day = clock.now
    await failed_delivery(store, "job-1")
    await archive.archive("job-1", DeadLetterReason.MAX_ATTEMPTS_EXCEEDED)
    clock.advance(3600)
    await failed_delivery(store, "job-2", attempts=1)
    await archive.archive("job-2", DeadLetterReason.PERMANENT_FAILURE)
    clock.advance(86400)
    await failed_delivery(store, "job-3", attempts=1)
    await archive.archive("job-3", DeadLetterReason.PERMANENT_FAILURE)

    stats = await archive.stats()

    assert stats.total_entries == 3
    assert stats.scanned_entries == 3
    assert stats.entries_by_reason == {"max_attempts_exceeded": 1, "permanent_failure": 2}
    assert stats.entries_by_date == {"2024-03-01": 2, "2024-03-02": 1}
    assert stats.oldest_entry == first_day
    assert stats.newest_entry == clock.now


async def test_stats_on_empty_queue(store, clock):
    stats = await make_archive(store, clock).stats()
    assert stats.total_entries == 0
    assert stats.oldest_entry is None


async def test_retry_sends_service_token(store, clock):
    receiver = ScriptedReceiver(httpx.Response(200, json={"success": True}))
    archive = make_archive(store, clock, receiver)
    await failed_delivery(store)
    entry_id = (await archive.archive("job-1", DeadLetterReason.MAX_ATTEMPTS_EXCEEDED)).dead_letter_id

    await archive.retry(entry_id)

    scheme, token = receiver.requests[0].headers["authorization"].split(" ", 1)
    assert scheme == "Bearer"
    claims = JWTService().verify_token(token)
    assert claims["role"] == "service"


async def test_accepted_retry_reports_entry_left_behind(keys, clock):
    kv = FlakyDeleteStore()
    store = DeliveryStatusStore(kv, keys=keys, clock=clock)
    receiver = ScriptedReceiver(httpx.Response(200, json={"success": True, "message": "Retry scheduled"}))
    archive = make_archive(store, clock, receiver)
    await failed_delivery(store)
    entry_id = (await archive.archive("job-1", DeadLetterReason.MAX_ATTEMPTS_EXCEEDED)).dead_letter_id
    kv.fail_deletes.add(keys.dead_letter(entry_id))

    result = await archive.retry(entry_id)

    assert result.success is True
    assert result.entry_removed is False
    assert "entry could not be removed" in result.message
    assert await archive.get(entry_id) is not None


async def test_process_skips_entries_whose_delivery_moved_on(store, clock):
    receiver = ScriptedReceiver(httpx.Response(200, json={"success": True}))
    archive = make_archive(store, clock, receiver)
    await failed_delivery(store)
    entry_id = (await archive.archive("job-1", DeadLetterReason.MAX_ATTEMPTS_EXCEEDED)).dead_letter_id
    # the delivery was reopened but its entry survived
    await store.update("job-1", {"state": DeliveryState.RETRYING, "dead_letter_id": None})

    result = await archive.process()

    assert result.success is True
    assert result.processed_count == 0
    assert result.failed_count == 0
    assert result.details == [{"dead_letter_id": entry_id, "success": True, "skipped": "stale"}]
    assert receiver.requests == []
    assert await archive.get(entry_id) is None


async def test_corrupt_queue_list_is_a_store_error(store, kv, keys, clock):
    archive = make_archive(store, clock)
    await kv.put(keys.dead_letter_queue, "not a list")

    with pytest.raises(StoreError):
        await archive.stats()

    cleared = await archive.clear()
    assert cleared.success is False
    assert cleared.cleared_count == 0

    processed = await archive.process()
    assert processed.success is False
    assert processed.errors
