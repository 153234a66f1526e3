"""
Sentry configuration for error tracking.

Captures unhandled exceptions and primary-path store failures.
"""
import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.redis import RedisIntegration

from relay.config import settings

logger = structlog.get_logger()


def configure_sentry():
    """
    Initialize Sentry with FastAPI and Redis integrations.

    Requires SENTRY_DSN environment variable to be set.
    """
    dsn = settings.SENTRY_DSN

    if not dsn:
        logger.warning("sentry_disabled", reason="SENTRY_DSN not set")
        return

    sentry_sdk.init(
        dsn=dsn,
        integrations=[
            FastApiIntegration(),
            RedisIntegration(),
        ],
        before_send=add_context,
        # Sample rate: capture 10% of transactions for performance monitoring
        traces_sample_rate=0.1,
        environment=settings.ENVIRONMENT,
        release=settings.APP_VERSION,
    )

    logger.info("sentry_initialized", dsn_prefix=dsn[:20])


def add_context(event, hint):
    """
    Tag error events with the delivery they concern.

    The engine passes job_id through sentry scope tags; this keeps
    the service name on every event so alerts can be routed.
    """
    event.setdefault("tags", {})["service"] = settings.APP_NAME
    return event


def capture_exception(exc_info=None, **tags):
    """
    Capture an exception to Sentry.

    Usage:
        try:
            # some code
        except StoreError:
            capture_exception(job_id=job_id)
    """
    if not sentry_sdk.get_client().is_active():
        return
    with sentry_sdk.new_scope() as scope:
        for key, value in tags.items():
            scope.set_tag(key, value)
        sentry_sdk.capture_exception(exc_info)


def capture_message(message, level="info"):
    """
    Capture a message to Sentry.

    Usage:
        capture_message("Dead letter queue cleared", level="warning")
    """
    if sentry_sdk.get_client().is_active():
        sentry_sdk.capture_message(message, level=level)
