"""
Shared fixtures: in-process store, frozen clock and scripted webhook
receivers served through httpx.MockTransport.
"""
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from relay.exceptions import StoreError
from relay.models.webhook import RetryPolicy
from relay.services.keyspace import KeySpace
from relay.services.kv_store import KVStore, MemoryKVStore
from relay.services.webhook_service import WebhookDeliveryEngine

TARGET_URL = "https://receiver.test/hooks/jobs"
RETRY_SERVICE_URL = "http://relay.test"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ScriptedReceiver:
    """
    Webhook receiver that replies from a script.

    Each item is a status code, an httpx.Response or an exception to
    raise; the last item repeats once the script runs out.
    """

    def __init__(self, *script):
        self.script = list(script) or [200]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, int):
            return httpx.Response(item, json={"received": item < 300})
        return item


class BrokenKVStore(KVStore):
    """Every operation fails like an unreachable backend."""

    async def get(self, key):
        raise StoreError("get", key, ConnectionError("store unreachable"))

    async def put(self, key, value, ttl=None):
        raise StoreError("put", key, ConnectionError("store unreachable"))

    async def delete(self, key):
        raise StoreError("delete", key, ConnectionError("store unreachable"))

    async def keys(self, prefix, limit=None):
        raise StoreError("scan", prefix, ConnectionError("store unreachable"))

    async def set_if_absent(self, key, value, ttl):
        raise StoreError("set_if_absent", key, ConnectionError("store unreachable"))


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def job_event(job_id: str = "job-1", status: str = "completed", **extra) -> dict:
    return {"job_id": job_id, "status": status, **extra}


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def kv():
    return MemoryKVStore()


@pytest.fixture
def keys():
    return KeySpace()


@pytest.fixture
def policy():
    return RetryPolicy(
        max_attempts=3,
        base_delay_seconds=1.0,
        max_delay_seconds=30.0,
        backoff_factor=2.0,
        jitter=False,
    )


@pytest.fixture
def make_engine(kv, keys, clock, policy):
    """Build an engine whose outbound HTTP is answered by `handler`."""

    def _make(handler, store=None, **kwargs):
        options = {
            "policy": policy,
            "keys": keys,
            "clock": clock,
            "signing_secret": "",
            "retry_service_url": RETRY_SERVICE_URL,
        }
        options.update(kwargs)
        return WebhookDeliveryEngine(store or kv, mock_client(handler), **options)

    return _make
