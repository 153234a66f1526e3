"""
Delivery engine tests: whole event lifecycles against scripted receivers.
"""
import json
from datetime import timedelta

import httpx
import pytest

from conftest import RETRY_SERVICE_URL, TARGET_URL, BrokenKVStore, ScriptedReceiver, job_event
from relay.exceptions import DeliveryNotFoundError, DeliveryStateError, InvalidPayloadError, StoreError
from relay.models.dead_letter import DeadLetterReason
from relay.models.webhook import DeliveryState, ErrorKind
from relay.services.dedup_ledger import event_hash


async def drain_retries(engine, clock, rounds=10):
    """Advance past each scheduled retry and sweep until nothing is due."""
    for _ in range(rounds):
        clock.advance(60)
        result = await engine.run_due_retries()
        if result.executed == 0:
            return


async def test_successful_delivery(make_engine, kv, keys):
    receiver = ScriptedReceiver(200)
    engine = make_engine(receiver)

    result = await engine.process_event(job_event(summary="ok"), TARGET_URL)

    assert result.success is True
    assert result.state == DeliveryState.DELIVERED
    assert result.attempt_number == 1
    status = await engine.get_status("job-1")
    assert status.state == DeliveryState.DELIVERED
    assert status.attempts == 1
    assert len(receiver.requests) == 1

    marker = json.loads(await kv.get(keys.dedupe(event_hash(job_event()))))
    assert marker["processed"] is True


async def test_duplicate_event_is_suppressed(make_engine):
    receiver = ScriptedReceiver(200)
    engine = make_engine(receiver)
    await engine.process_event(job_event(summary="first"), TARGET_URL)

    result = await engine.process_event(job_event(summary="second"), TARGET_URL)

    assert result.success is True
    assert result.duplicate is True
    assert result.attempt_number is None
    assert len(receiver.requests) == 1


async def test_server_errors_exhaust_into_dead_letter(make_engine, clock):
    receiver = ScriptedReceiver(500)
    engine = make_engine(receiver)

    first = await engine.process_event(job_event(), TARGET_URL)
    assert first.state == DeliveryState.RETRYING
    assert first.error.kind == ErrorKind.SERVER

    await drain_retries(engine, clock)

    status = await engine.get_status("job-1")
    assert status.state == DeliveryState.DEAD_LETTER
    assert status.attempts == 3
    assert len(receiver.requests) == 3

    attempts = await engine.list_attempts("job-1")
    assert [a.attempt_number for a in attempts] == [1, 2, 3]
    assert not any(a.success for a in attempts)

    entry = await engine.archive.get(status.dead_letter_id)
    assert entry.reason == DeadLetterReason.MAX_ATTEMPTS_EXCEEDED
    assert entry.retry_attempts == 3


async def test_retries_wait_for_backoff(make_engine, clock):
    engine = make_engine(ScriptedReceiver(500, 200))
    await engine.process_event(job_event(), TARGET_URL)

    early = await engine.run_due_retries()
    assert early.executed == 0

    clock.advance(1)
    due = await engine.run_due_retries()
    assert due.executed == 1
    assert due.delivered == 1
    status = await engine.get_status("job-1")
    assert status.state == DeliveryState.DELIVERED
    assert status.attempts == 2

    attempts = await engine.list_attempts("job-1")
    assert attempts[1].delay_seconds == 1.0


async def test_client_error_is_permanent_failure(make_engine, clock):
    receiver = ScriptedReceiver(400)
    engine = make_engine(receiver)

    result = await engine.process_event(job_event(), TARGET_URL)

    assert result.success is False
    assert result.state == DeliveryState.DEAD_LETTER
    status = await engine.get_status("job-1")
    assert status.attempts == 1
    entry = await engine.archive.get(result.dead_letter_id)
    assert entry.reason == DeadLetterReason.PERMANENT_FAILURE

    await drain_retries(engine, clock)
    assert len(receiver.requests) == 1


async def test_network_failure_is_retried(make_engine, clock):
    engine = make_engine(ScriptedReceiver(httpx.ConnectError("Connection refused"), 200))

    result = await engine.process_event(job_event(), TARGET_URL)
    assert result.state == DeliveryState.RETRYING
    assert result.error.kind == ErrorKind.NETWORK

    await drain_retries(engine, clock)
    assert (await engine.get_status("job-1")).state == DeliveryState.DELIVERED


async def test_invalid_event_status_is_archived_without_attempt(make_engine):
    receiver = ScriptedReceiver(200)
    engine = make_engine(receiver)

    result = await engine.process_event(job_event(status="running"), TARGET_URL)

    assert result.success is False
    assert result.state == DeliveryState.DEAD_LETTER
    assert receiver.requests == []
    entry = await engine.archive.get(result.dead_letter_id)
    assert entry.reason == DeadLetterReason.INVALID_PAYLOAD
    assert entry.retry_attempts == 0


@pytest.mark.parametrize("payload", [{}, {"job_id": 42, "status": "completed"}, {"job_id": "", "status": "failed"}])
async def test_event_without_job_id_is_rejected(make_engine, payload):
    engine = make_engine(ScriptedReceiver(200))
    with pytest.raises(InvalidPayloadError):
        await engine.process_event(payload, TARGET_URL)


async def test_attempt_in_flight_is_not_repeated(make_engine, kv, keys):
    receiver = ScriptedReceiver(200)
    engine = make_engine(receiver)
    await kv.set_if_absent(keys.delivery_lock("job-1"), "held", ttl=60)

    result = await engine.process_event(job_event(), TARGET_URL)

    assert result.success is False
    assert result.message == "Delivery already in flight"
    assert receiver.requests == []
    assert (await engine.get_status("job-1")).state == DeliveryState.PENDING


async def test_lock_is_released_after_attempt(make_engine, kv, keys):
    engine = make_engine(ScriptedReceiver(500))
    await engine.process_event(job_event(), TARGET_URL)
    assert await kv.get(keys.delivery_lock("job-1")) is None


async def test_new_event_after_delivery_starts_fresh_delivery(make_engine):
    engine = make_engine(ScriptedReceiver(200))
    await engine.process_event(job_event(), TARGET_URL)
    first = await engine.get_status("job-1")

    result = await engine.process_event(job_event(status="failed", error="boom"), TARGET_URL)

    assert result.success is True
    second = await engine.get_status("job-1")
    assert second.id != first.id
    assert second.attempts == 1
    assert second.payload["status"] == "failed"


async def test_event_for_dead_lettered_job_is_refused(make_engine):
    receiver = ScriptedReceiver(400)
    engine = make_engine(receiver)
    archived = await engine.process_event(job_event(), TARGET_URL)

    result = await engine.process_event(job_event(status="failed"), TARGET_URL)

    assert result.success is False
    assert result.dead_letter_id == archived.dead_letter_id
    assert len(receiver.requests) == 1

    await engine.archive.clear()
    fresh = await engine.process_event(job_event(status="failed"), TARGET_URL)
    assert fresh.attempt_number == 1
    assert len(receiver.requests) == 2


async def test_dead_letter_retry_redelivers_through_retry_endpoint(make_engine, clock):
    outcomes = iter([400, 200])
    engine = None

    async def network(request: httpx.Request) -> httpx.Response:
        if str(request.url).startswith(f"{RETRY_SERVICE_URL}/retry-webhook/"):
            body = json.loads(request.content)
            scheduled = await engine.manual_retry(body["webhookId"], body["reason"], body["metadata"])
            return httpx.Response(200, json={
                "success": scheduled.success,
                "message": scheduled.message,
                "retryId": scheduled.retry_id,
            })
        return httpx.Response(next(outcomes))

    engine = make_engine(network)
    archived = await engine.process_event(job_event(), TARGET_URL)
    old_delivery = archived.delivery_id

    retried = await engine.archive.retry(archived.dead_letter_id)
    assert retried.success is True
    assert await engine.archive.get(archived.dead_letter_id) is None

    status = await engine.get_status("job-1")
    assert status.state == DeliveryState.RETRYING
    assert status.attempts == 0
    assert status.id != old_delivery

    sweep = await engine.run_due_retries()
    assert sweep.delivered == 1
    status = await engine.get_status("job-1")
    assert status.state == DeliveryState.DELIVERED
    assert status.attempts == 1
    assert len(await engine.store.list_attempts(old_delivery)) == 1


async def test_sweep_reschedules_stale_failed_deliveries(make_engine, clock):
    engine = make_engine(ScriptedReceiver(200))
    await engine.store.create(
        "job-1",
        payload=job_event(),
        target_url=TARGET_URL,
        state=DeliveryState.FAILED,
        attempts=1,
    )

    clock.advance(30)
    assert (await engine.run_due_retries()).rescheduled == 0

    clock.advance(60)
    result = await engine.run_due_retries()
    assert result.rescheduled == 1
    assert (await engine.get_status("job-1")).state == DeliveryState.RETRYING


async def test_sweep_respects_batch_limit(make_engine, clock):
    engine = make_engine(ScriptedReceiver(500, 500, 500, 200))
    for i in range(3):
        await engine.process_event(job_event(f"job-{i}"), TARGET_URL)

    clock.advance(5)
    result = await engine.run_due_retries(limit=2)
    assert result.executed == 2


async def test_manual_retry_of_failed_delivery(make_engine):
    engine = make_engine(ScriptedReceiver(500, 200))
    await engine.process_event(job_event(), TARGET_URL)

    scheduled = await engine.manual_retry("job-1", reason="admin")
    assert scheduled.success is True

    result = await engine.run_due_retries()
    assert result.delivered == 1


async def test_archive_manually(make_engine):
    engine = make_engine(ScriptedReceiver(500))
    await engine.process_event(job_event(), TARGET_URL)

    result = await engine.archive_manually("job-1")

    assert result.success is True
    entry = await engine.archive.get(result.dead_letter_id)
    assert entry.reason == DeadLetterReason.MANUAL
    assert (await engine.get_status("job-1")).state == DeliveryState.DEAD_LETTER


async def test_archive_manually_refuses_terminal_delivery(make_engine):
    engine = make_engine(ScriptedReceiver(200))
    await engine.process_event(job_event(), TARGET_URL)

    with pytest.raises(DeliveryStateError):
        await engine.archive_manually("job-1")


async def test_unknown_job_raises_not_found(make_engine):
    engine = make_engine(ScriptedReceiver(200))
    with pytest.raises(DeliveryNotFoundError):
        await engine.get_status("ghost")
    with pytest.raises(DeliveryNotFoundError):
        await engine.list_attempts("ghost")


async def test_store_outage_surfaces_to_caller(make_engine):
    engine = make_engine(ScriptedReceiver(200), store=BrokenKVStore())
    with pytest.raises(StoreError):
        await engine.process_event(job_event(), TARGET_URL)


async def test_per_event_policy_limits_attempts(make_engine, clock, policy):
    receiver = ScriptedReceiver(503)
    engine = make_engine(receiver)

    await engine.process_event(job_event(), TARGET_URL, policy=policy.model_copy(update={"max_attempts": 2}))
    await drain_retries(engine, clock)

    status = await engine.get_status("job-1")
    assert status.max_attempts == 2
    assert status.state == DeliveryState.DEAD_LETTER
    assert len(receiver.requests) == 2


async def test_sweep_attempts_stale_pending_delivery(make_engine, kv, keys, clock):
    engine = make_engine(ScriptedReceiver(200))
    await kv.set_if_absent(keys.delivery_lock("job-1"), "held", ttl=60)
    await engine.process_event(job_event(), TARGET_URL)
    await kv.delete(keys.delivery_lock("job-1"))

    assert (await engine.run_due_retries()).executed == 0

    clock.advance(60)
    result = await engine.run_due_retries()
    assert result.delivered == 1
    assert (await engine.get_status("job-1")).attempts == 1


async def test_different_event_for_unfinished_delivery_is_refused(make_engine, clock):
    receiver = ScriptedReceiver(500, 200)
    engine = make_engine(receiver)
    first = await engine.process_event(job_event(result="A"), TARGET_URL)
    assert first.state == DeliveryState.RETRYING

    result = await engine.process_event(job_event(status="failed", result="B"), TARGET_URL)

    assert result.success is False
    assert result.message == "Another event for this job is still being delivered"
    assert result.delivery_id == first.delivery_id
    assert result.state == DeliveryState.RETRYING
    assert len(receiver.requests) == 1
    status = await engine.get_status("job-1")
    assert status.payload == job_event(result="A")

    # once the first delivery lands the refused event can be sent again
    await drain_retries(engine, clock)
    resent = await engine.process_event(job_event(status="failed", result="B"), TARGET_URL)
    assert resent.success is True
    assert resent.duplicate is False
    assert json.loads(receiver.requests[-1].content)["result"] == "B"


async def test_same_event_resumes_unfinished_delivery(make_engine):
    receiver = ScriptedReceiver(500, 200)
    engine = make_engine(receiver)
    first = await engine.process_event(job_event(result="A"), TARGET_URL)

    result = await engine.process_event(job_event(result="A"), TARGET_URL)

    assert result.success is True
    assert result.delivery_id == first.delivery_id
    assert result.attempt_number == 2


async def test_invalid_event_leaves_live_delivery_untouched(make_engine, kv, keys):
    engine = make_engine(ScriptedReceiver(500))
    first = await engine.process_event(job_event(), TARGET_URL)

    result = await engine.process_event(job_event(status="running"), TARGET_URL)

    assert result.success is False
    assert result.dead_letter_id is None
    status = await engine.get_status("job-1")
    assert status.id == first.delivery_id
    assert status.state == DeliveryState.RETRYING
    assert status.payload == job_event()
    assert (await engine.archive.list_entries()).total == 0


async def test_invalid_event_after_delivery_archives_its_own_payload(make_engine):
    engine = make_engine(ScriptedReceiver(200))
    await engine.process_event(job_event(), TARGET_URL)

    result = await engine.process_event(job_event(status="running"), TARGET_URL)

    assert result.state == DeliveryState.DEAD_LETTER
    entry = await engine.archive.get(result.dead_letter_id)
    assert entry.reason == DeadLetterReason.INVALID_PAYLOAD
    assert entry.payload == job_event(status="running")
    assert entry.delivery_id == result.delivery_id


async def test_sweep_keeps_policy_submitted_with_event(make_engine, clock, policy):
    engine = make_engine(ScriptedReceiver(500))
    slow = policy.model_copy(update={"base_delay_seconds": 10.0})

    first = await engine.process_event(job_event(), TARGET_URL, policy=slow)
    assert first.next_retry_at == clock.now + timedelta(seconds=10)

    clock.advance(10)
    sweep = await engine.run_due_retries()
    assert sweep.failed == 1

    status = await engine.get_status("job-1")
    assert status.policy == slow
    assert status.last_delay_seconds == 20.0
    assert status.timestamps.next_retry == clock.now + timedelta(seconds=20)
