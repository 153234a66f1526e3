"""
Webhook API routes.

Event intake, delivery inspection, the retry-webhook trigger used by the
dead letter archive, and the retry sweep.
"""
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from relay.dependencies.auth import TokenPayload, require_admin, require_service
from relay.dependencies.engine import get_engine
from relay.models.webhook import RetryPolicy
from relay.services.webhook_service import ProcessResult, WebhookDeliveryEngine


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

# Mounted at the root: the dead letter archive posts to {RETRY_SERVICE_URL}/retry-webhook/{job_id}
retry_router = APIRouter(tags=["webhooks"])


class SubmitEventRequest(BaseModel):
    """Request model for submitting a job event."""
    payload: dict[str, Any]
    target_url: str
    headers: dict[str, str] = Field(default_factory=dict)
    policy: Optional[RetryPolicy] = None


class RetryWebhookRequest(BaseModel):
    """Request model for the manual retry trigger."""
    webhookId: str
    reason: Literal["manual", "system", "admin"] = "manual"
    metadata: Optional[dict[str, Any]] = None


def _process_result(result: ProcessResult) -> dict:
    return {
        "success": result.success,
        "job_id": result.job_id,
        "message": result.message,
        "delivery_id": result.delivery_id,
        "state": result.state.value if result.state else None,
        "duplicate": result.duplicate,
        "attempt_number": result.attempt_number,
        "error": result.error.snapshot().model_dump(mode="json") if result.error else None,
        "next_retry_at": result.next_retry_at.isoformat() if result.next_retry_at else None,
        "dead_letter_id": result.dead_letter_id,
    }


@retry_router.post("/retry-webhook/{job_id}", response_model=dict)
async def retry_webhook(
    job_id: str,
    request: RetryWebhookRequest,
    engine: WebhookDeliveryEngine = Depends(get_engine),
    operator: TokenPayload = Depends(require_service),
):
    """
    Make a delivery due for another attempt now.

    Dead-lettered deliveries are reopened only when the request comes from
    the dead letter archive (metadata.deadLetterRetry).
    """
    if request.webhookId != job_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="webhookId does not match the job in the path"
        )

    result = await engine.manual_retry(job_id, reason=request.reason, metadata=request.metadata)

    response = {"success": result.success, "message": result.message}
    if result.retry_id:
        response["retryId"] = result.retry_id
    if result.next_retry_at:
        response["scheduledAt"] = int(result.next_retry_at.timestamp() * 1000)
    return response


@router.post("/deliveries", response_model=dict, status_code=status.HTTP_202_ACCEPTED)
async def submit_event(
    request: SubmitEventRequest,
    engine: WebhookDeliveryEngine = Depends(get_engine),
    operator: TokenPayload = Depends(require_service),
):
    """Deliver a job event to its target, retrying per policy on failure."""
    result = await engine.process_event(
        request.payload,
        request.target_url,
        headers=request.headers,
        policy=request.policy,
    )
    return _process_result(result)


@router.get("/deliveries/{job_id}", response_model=dict)
async def get_delivery(
    job_id: str,
    engine: WebhookDeliveryEngine = Depends(get_engine),
    operator: TokenPayload = Depends(require_service),
):
    """Get the current delivery status for a job."""
    delivery = await engine.get_status(job_id)
    return delivery.model_dump(mode="json")


@router.get("/deliveries/{job_id}/attempts", response_model=dict)
async def list_delivery_attempts(
    job_id: str,
    engine: WebhookDeliveryEngine = Depends(get_engine),
    operator: TokenPayload = Depends(require_service),
):
    """List the attempt records of the job's current delivery."""
    attempts = await engine.list_attempts(job_id)
    return {
        "job_id": job_id,
        "attempts": [a.model_dump(mode="json") for a in attempts],
        "count": len(attempts),
    }


@router.post("/deliveries/{job_id}/archive", response_model=dict)
async def archive_delivery(
    job_id: str,
    engine: WebhookDeliveryEngine = Depends(get_engine),
    operator: TokenPayload = Depends(require_admin),
):
    """Move a delivery to the dead letter queue by hand."""
    result = await engine.archive_manually(job_id)
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Archiving failed: {result.error}"
        )
    return {
        "message": "Delivery moved to dead letter queue",
        "dead_letter_id": result.dead_letter_id,
    }


@router.post("/sweep", response_model=dict)
async def sweep(
    limit: Optional[int] = None,
    engine: WebhookDeliveryEngine = Depends(get_engine),
    operator: TokenPayload = Depends(require_service),
):
    """Run retries that have come due."""
    result = await engine.run_due_retries(limit=limit)
    return {
        "executed": result.executed,
        "delivered": result.delivered,
        "failed": result.failed,
        "rescheduled": result.rescheduled,
        "errors": result.errors,
    }
