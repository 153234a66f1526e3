"""
Prometheus metrics endpoint.

Exposes delivery engine metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'relay_http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'relay_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Delivery Metrics
# ============================================

delivery_attempts = Counter(
    'webhook_delivery_attempts_total',
    'Total webhook delivery attempts',
    ['outcome', 'kind']
)

delivery_attempt_duration = Histogram(
    'webhook_delivery_attempt_duration_seconds',
    'Webhook delivery attempt duration in seconds',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

duplicates_suppressed = Counter(
    'webhook_duplicates_suppressed_total',
    'Inbound events skipped as already processed'
)

retries_scheduled = Counter(
    'webhook_retries_scheduled_total',
    'Total retries scheduled'
)

dead_letters = Counter(
    'webhook_dead_letters_total',
    'Deliveries moved to the dead letter queue',
    ['reason']
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_delivery_attempt(success: bool, kind: str | None, duration_ms: float):
    """Record one delivery attempt and its duration."""
    delivery_attempts.labels(
        outcome="delivered" if success else "failed",
        kind=kind or "none"
    ).inc()
    delivery_attempt_duration.observe(duration_ms / 1000)


def track_duplicate_suppressed():
    duplicates_suppressed.inc()


def track_retry_scheduled():
    retries_scheduled.inc()


def track_dead_letter(reason: str):
    """Record a delivery being archived."""
    dead_letters.labels(reason=reason).inc()


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
