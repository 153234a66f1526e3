"""
Dead letter queue routes.

Operator commands for inspecting, retrying and clearing permanently
failed deliveries. All endpoints require an admin token.
"""
from dataclasses import asdict

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from relay.dependencies.auth import TokenPayload, require_admin
from relay.dependencies.engine import get_engine
from relay.sentry_config import capture_message
from relay.services.webhook_service import WebhookDeliveryEngine

logger = structlog.get_logger()

router = APIRouter(prefix="/api/dead-letters", tags=["dead-letters"])


@router.get("", response_model=dict)
async def list_dead_letters(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    operator: TokenPayload = Depends(require_admin),
    engine: WebhookDeliveryEngine = Depends(get_engine),
):
    """List dead letter entries, newest first."""
    page = await engine.archive.list_entries(limit=limit, offset=offset)
    return {
        "entries": [e.model_dump(mode="json") for e in page.entries],
        "total": page.total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/stats", response_model=dict)
async def dead_letter_stats(
    operator: TokenPayload = Depends(require_admin),
    engine: WebhookDeliveryEngine = Depends(get_engine),
):
    """Counts by reason and by day, plus the oldest and newest entry."""
    stats = await engine.archive.stats()
    return stats.model_dump(mode="json")


@router.post("/process", response_model=dict)
async def process_dead_letters(
    limit: int = Query(10, ge=1, le=100),
    operator: TokenPayload = Depends(require_admin),
    engine: WebhookDeliveryEngine = Depends(get_engine),
):
    """Retry up to `limit` of the newest entries."""
    logger.info("dead_letter_process_requested", operator=operator.sub, limit=limit)
    result = await engine.archive.process(limit=limit)
    return asdict(result)


@router.delete("", response_model=dict)
async def clear_dead_letters(
    operator: TokenPayload = Depends(require_admin),
    engine: WebhookDeliveryEngine = Depends(get_engine),
):
    """Remove every dead letter entry."""
    logger.warning("dead_letter_clear_requested", operator=operator.sub)
    result = await engine.archive.clear()
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Failed to clear dead letter queue: {result.error}"
        )
    capture_message(f"Dead letter queue cleared by {operator.sub}: {result.cleared_count} entries", level="warning")
    return {"cleared_count": result.cleared_count, "total": result.total}


@router.get("/{entry_id}", response_model=dict)
async def get_dead_letter(
    entry_id: str,
    operator: TokenPayload = Depends(require_admin),
    engine: WebhookDeliveryEngine = Depends(get_engine),
):
    """Get a single dead letter entry."""
    entry = await engine.archive.get(entry_id)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Dead letter entry not found"
        )
    return entry.model_dump(mode="json")


@router.post("/{entry_id}/retry", response_model=dict)
async def retry_dead_letter(
    entry_id: str,
    operator: TokenPayload = Depends(require_admin),
    engine: WebhookDeliveryEngine = Depends(get_engine),
):
    """Send an entry back through the retry-webhook endpoint."""
    logger.info("dead_letter_retry_requested", operator=operator.sub, dead_letter_id=entry_id)
    result = await engine.archive.retry(entry_id)
    return asdict(result)
