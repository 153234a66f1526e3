"""
Webhook Relay - reliable delivery of job completion webhooks

FastAPI application entry point.
"""
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

# Import observability modules
from relay.config import settings
from relay.exceptions import (
    DeliveryNotFoundError,
    DeliveryStateError,
    InvalidPayloadError,
    RelayError,
    StoreError,
)
from relay.logging_config import configure_logging
from relay.sentry_config import configure_sentry
from relay.middleware.logging import LoggingMiddleware
from relay.routes.metrics import router as metrics_router

# Import route modules
from relay.routes.webhooks import router as webhooks_router, retry_router
from relay.routes.dead_letters import router as dead_letters_router

from relay.services.kv_store import create_kv_store
from relay.services.webhook_service import WebhookDeliveryEngine

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the shared store, HTTP client and delivery engine."""
    kv = create_kv_store()
    client = httpx.AsyncClient(timeout=settings.DELIVERY_TIMEOUT_SECONDS)
    app.state.kv = kv
    app.state.engine = WebhookDeliveryEngine(kv, client)
    logger.info("app_started", environment=settings.ENVIRONMENT, kv_backend=settings.KV_BACKEND)
    try:
        yield
    finally:
        await client.aclose()
        await kv.close()
        logger.info("app_stopped")


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Reliable delivery of job completion webhooks with retries and a dead letter queue",
    lifespan=lifespan,
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)


ERROR_STATUS = {
    DeliveryNotFoundError: 404,
    DeliveryStateError: 409,
    InvalidPayloadError: 422,
    StoreError: 503,
}


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError):
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    logger.warning(
        "request_rejected",
        path=request.url.path,
        status_code=status_code,
        error_type=type(exc).__name__,
        error=str(exc),
    )
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

# Include retry trigger (called by the dead letter archive)
app.include_router(retry_router)

# Include webhook delivery routes
app.include_router(webhooks_router)

# Include dead letter operator routes
app.include_router(dead_letters_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health(request: Request):
    """Detailed health check."""
    kv = getattr(request.app.state, "kv", None)
    if kv is None:
        return {"status": "starting", "store": "unknown"}

    try:
        await kv.get(f"{settings.KEY_PREFIX}health")
    except RelayError as e:
        logger.error("health_store_unavailable", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "unhealthy", "store": "unavailable"},
        )
    return {
        "status": "healthy",
        "store": "connected"
    }
