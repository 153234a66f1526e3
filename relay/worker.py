"""
ARQ Background Worker for Webhook Relay.

Fires due retries on a cron schedule and delivers events that producers
enqueue instead of calling the API.
"""
from typing import Any

import httpx
import structlog
from arq import Retry, cron
from arq.connections import RedisSettings

from relay.config import settings
from relay.exceptions import InvalidPayloadError, StoreError
from relay.logging_config import configure_logging
from relay.sentry_config import configure_sentry
from relay.services.kv_store import create_kv_store
from relay.services.webhook_service import WebhookDeliveryEngine

logger = structlog.get_logger()


async def startup(ctx: dict):
    """Build the store, HTTP client and engine shared by all jobs."""
    configure_logging()
    configure_sentry()
    ctx["kv"] = create_kv_store()
    ctx["http_client"] = httpx.AsyncClient(timeout=settings.DELIVERY_TIMEOUT_SECONDS)
    ctx["engine"] = WebhookDeliveryEngine(ctx["kv"], ctx["http_client"])
    logger.info("worker_started", kv_backend=settings.KV_BACKEND)


async def shutdown(ctx: dict):
    await ctx["http_client"].aclose()
    await ctx["kv"].close()
    logger.info("worker_stopped")


async def sweep_due_retries(ctx: dict) -> dict:
    """Cron job: run every retry whose due time has passed."""
    engine: WebhookDeliveryEngine = ctx["engine"]
    result = await engine.run_due_retries(limit=settings.SWEEP_BATCH_SIZE)
    return {
        "executed": result.executed,
        "delivered": result.delivered,
        "failed": result.failed,
        "rescheduled": result.rescheduled,
        "errors": len(result.errors),
    }


async def deliver_event(
    ctx: dict,
    payload: dict[str, Any],
    target_url: str,
    headers: dict[str, str] | None = None,
) -> dict:
    """Deliver an enqueued job event. Store outages are retried by ARQ."""
    # ARQ uses job_try (starts at 1) and max_tries in context
    job_try = ctx.get("job_try", 1)
    engine: WebhookDeliveryEngine = ctx["engine"]

    try:
        result = await engine.process_event(payload, target_url, headers=headers)
    except InvalidPayloadError as e:
        logger.error("deliver_event_rejected", error=str(e))
        return {"success": False, "message": str(e)}
    except StoreError as e:
        if job_try >= WorkerSettings.max_tries:
            logger.error("deliver_event_failed", job_try=job_try, error=str(e))
            raise
        logger.warning("deliver_event_store_unavailable", job_try=job_try, error=str(e))
        raise Retry(defer=job_try * 5)

    return {
        "success": result.success,
        "job_id": result.job_id,
        "message": result.message,
        "state": result.state.value if result.state else None,
        "duplicate": result.duplicate,
    }


async def enqueue_event(
    payload: dict[str, Any],
    target_url: str,
    headers: dict[str, str] | None = None,
) -> bool:
    """Enqueue an event for background delivery using ARQ."""
    from arq import create_pool

    try:
        # Create ARQ Redis pool using from_dsn
        redis = await create_pool(RedisSettings.from_dsn(settings.REDIS_URL))
        try:
            await redis.enqueue_job("deliver_event", payload, target_url, headers)
        finally:
            await redis.aclose()
    except Exception as e:
        logger.error("enqueue_event_failed", job_id=payload.get("job_id"), error=str(e))
        return False

    logger.info("event_enqueued", job_id=payload.get("job_id"), target_url=target_url)
    return True


def sweep_seconds(interval: int) -> set[int]:
    """Seconds of the minute at which the sweep cron fires."""
    if interval <= 0 or interval >= 60:
        return {0}
    return set(range(0, 60, interval))


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq relay.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    job_timeout = 300
    max_tries = 3
    functions = [deliver_event]
    cron_jobs = [
        cron(sweep_due_retries, second=sweep_seconds(settings.SWEEP_INTERVAL_SECONDS), unique=True)
    ]
    on_startup = startup
    on_shutdown = shutdown
