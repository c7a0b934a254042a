"""
API routes for payment verification, order transitions, locks, notifications
and monitoring.

Core errors are not caught here; the application's FulfillmentError handler
turns them into structured responses.
"""
from typing import Any, Dict, List
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from fulfillment_core.core.errors import FulfillmentError, LockConflict
from fulfillment_core.database.models import NotificationStatus
from fulfillment_core.integrations.webhook_handler import SIGNATURE_HEADER
from fulfillment_core.monitoring.health import HealthCheckError
from fulfillment_core.services import Services

from .schemas import (
    AcquireLockRequest,
    AcquireLockResponse,
    AssignCourierRequest,
    ClaimNotificationsRequest,
    ErrorResponse,
    ForceReleaseLockRequest,
    HealthCheckResponse,
    HealthSnapshotResponse,
    LockInfoResponse,
    MarkFailedRequest,
    MarkFailedResponse,
    MarkSentResponse,
    NotificationResponse,
    OrderReconciliationResponse,
    OrderResponse,
    ReconciliationRequest,
    ReconciliationResponse,
    ReleaseLockRequest,
    ReleaseLockResponse,
    RequeueNotificationRequest,
    TransitionRequest,
    VerificationResponse,
    VerifyPaymentRequest,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
order_router = APIRouter(prefix="/orders", tags=["orders"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
worker_router = APIRouter(prefix="/workers", tags=["workers"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])

ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    404: {"model": ErrorResponse, "description": "Order not found"},
    409: {"model": ErrorResponse, "description": "Order locked or stock exhausted"},
    422: {"model": ErrorResponse, "description": "Validation failed"},
}


def get_services(request: Request) -> Services:
    """Services bound to the running application."""
    return request.app.state.services


@payment_router.post(
    "/verify",
    response_model=VerificationResponse,
    responses=ERROR_RESPONSES,
    summary="Verify a payment",
    description="Reconcile a provider-reported payment with its order (idempotent)",
)
async def verify_payment(
    request: VerifyPaymentRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Verify a payment and apply it to its order."""
    logger.info(
        "api_verify_payment_request",
        order_ref=request.order_ref,
        provider_ref=request.provider_ref,
        amount=str(request.amount),
        currency=request.currency,
    )
    result = await services.payments.verify_payment(
        request.order_ref,
        request.provider_ref,
        request.provider,
        request.amount,
        request.currency,
        request.raw,
    )
    return result.to_dict()


@order_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    summary="Get an order",
)
async def get_order(order_id: UUID, services: Services = Depends(get_services)) -> Any:
    """Get an order by id."""
    return await services.orders.get_order(order_id)


@order_router.post(
    "/{order_id}/transition",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    summary="Transition order status",
    description="Move an order along the transition table under the order lock",
)
async def transition_order(
    order_id: UUID,
    request: TransitionRequest,
    services: Services = Depends(get_services),
) -> Any:
    """Apply an order status transition."""
    logger.info(
        "api_transition_order_request",
        order_id=str(order_id),
        new_status=request.new_status,
        actor_id=request.actor_id,
    )
    return await services.orders.transition_order(order_id, request.new_status, request.actor_id)


@order_router.post(
    "/{order_id}/courier",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    summary="Assign a courier",
)
async def assign_courier(
    order_id: UUID,
    request: AssignCourierRequest,
    services: Services = Depends(get_services),
) -> Any:
    """Assign a courier to an order."""
    return await services.orders.assign_courier(order_id, request.courier_id, request.actor_id)


@order_router.post(
    "/{order_id}/lock",
    response_model=AcquireLockResponse,
    summary="Acquire order lock",
    description="Take (or renew) the order's advisory lease without waiting",
)
async def acquire_order_lock(
    order_id: UUID,
    request: AcquireLockRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Acquire an order lock."""
    await services.orders.get_order(order_id)
    acquired = await services.locks.acquire(order_id, request.holder_id, request.ttl_seconds)
    info = await services.locks.info(order_id)
    return {"acquired": acquired, "lock": LockInfoResponse.model_validate(info)}


@order_router.post(
    "/{order_id}/lock/release",
    response_model=ReleaseLockResponse,
    summary="Release order lock",
)
async def release_order_lock(
    order_id: UUID,
    request: ReleaseLockRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Release an order lock held by the caller."""
    return {"released": await services.locks.release(order_id, request.holder_id)}


@order_router.get(
    "/{order_id}/lock",
    response_model=LockInfoResponse,
    summary="Get order lock",
)
async def get_order_lock(order_id: UUID, services: Services = Depends(get_services)) -> Any:
    """Describe an order's lease."""
    return await services.locks.info(order_id)


@admin_router.post(
    "/orders/{order_id}/lock/force-release",
    response_model=ReleaseLockResponse,
    summary="Force release order lock",
)
async def force_release_order_lock(
    order_id: UUID,
    request: ForceReleaseLockRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Release an order lock regardless of holder."""
    return {"released": await services.locks.force_release(order_id, request.actor_id)}


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Heal up to `limit` orders whose ledger shows an unapplied success",
)
async def run_reconciliation(
    request: ReconciliationRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Run one reconciliation batch."""
    processed, updated = await services.reconciliation.reconcile_batch(
        request.limit, actor_id=request.actor_id
    )
    logger.info("api_reconciliation_completed", processed=processed, updated=updated)
    return {"processed": processed, "updated": updated}


@admin_router.post(
    "/orders/{order_id}/reconcile",
    response_model=OrderReconciliationResponse,
    summary="Reconcile one order",
)
async def reconcile_order(
    order_id: UUID,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Heal a single order if needed."""
    needed = await services.reconciliation.needs_reconciliation(order_id)
    updated = await services.reconciliation.reconcile_order(order_id) if needed else False
    return {"order_id": order_id, "needs_reconciliation": needed, "updated": updated}


@admin_router.post(
    "/notifications/{event_id}/requeue",
    response_model=NotificationResponse,
    summary="Requeue a failed notification",
)
async def requeue_failed_notification(
    event_id: UUID,
    request: RequeueNotificationRequest,
    services: Services = Depends(get_services),
) -> Any:
    """Put a permanently failed notification back on the queue."""
    return await services.queue.requeue_failed(event_id, request.actor_id)


@worker_router.post(
    "/notifications/claim",
    response_model=List[NotificationResponse],
    summary="Claim notification batch",
)
async def claim_notification_batch(
    request: ClaimNotificationsRequest,
    services: Services = Depends(get_services),
) -> Any:
    """Claim due notifications for one worker."""
    return await services.queue.claim_batch(request.limit, worker_id=request.worker_id)


@worker_router.post(
    "/notifications/{event_id}/sent",
    response_model=MarkSentResponse,
    summary="Mark notification sent",
)
async def mark_notification_sent(
    event_id: UUID,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Settle a claimed notification as sent."""
    return {"id": event_id, "updated": await services.queue.mark_sent(event_id)}


@worker_router.post(
    "/notifications/{event_id}/failed",
    response_model=MarkFailedResponse,
    summary="Mark notification failed",
)
async def mark_notification_failed(
    event_id: UUID,
    request: MarkFailedRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Record a failed delivery attempt."""
    new_status = await services.queue.mark_failed(event_id, request.reason)
    return {
        "id": event_id,
        "status": new_status,
        "permanent": new_status == NotificationStatus.FAILED.value,
    }


@webhook_router.post(
    "/payments",
    response_model=WebhookResponse,
    summary="Payment provider webhook endpoint",
    description="Handle signed payment provider events",
)
async def payment_webhook(
    request: Request,
    signature: str | None = Header(default=None, alias=SIGNATURE_HEADER),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Handle payment provider webhook events.

    Bad signatures are rejected with 400. Business rejections (mismatch, orphan)
    are acknowledged so the provider stops retrying; lock conflicts are not, so
    it retries.
    """
    body = await request.body()
    event = await services.webhooks.verify_signature(body, signature)
    logger.info("api_webhook_received", event_type=event["event"])

    try:
        return await services.webhooks.process_event(event)
    except LockConflict:
        raise
    except FulfillmentError as e:
        return {"status": "rejected", "event_type": event["event"], "error": e.code}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await services.health.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await services.health.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await services.health.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/health/snapshot",
    response_model=HealthSnapshotResponse,
    summary="Consistency snapshot",
    description="Counters consumed by alerting",
)
async def health_snapshot(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Consistency snapshot endpoint."""
    try:
        return await services.health.snapshot()
    except HealthCheckError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
