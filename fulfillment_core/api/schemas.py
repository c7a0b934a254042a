"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ErrorResponse(BaseModel):
    """Structured error body returned for every core error."""

    error: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human readable message")
    details: Dict[str, Any] = Field(default_factory=dict, description="Error context")


class VerifyPaymentRequest(BaseModel):
    """Request schema for verifying a provider-reported payment."""

    order_ref: str = Field(default="", description="Order number or payment reference")
    provider_ref: str = Field(..., min_length=1, description="Provider transaction reference")
    provider: str = Field(..., min_length=1, description="Payment provider name")
    amount: Decimal = Field(..., ge=0, description="Reported amount in major units")
    currency: str = Field(..., min_length=3, max_length=3, description="Currency code (e.g., NGN)")
    raw: Dict[str, Any] = Field(default_factory=dict, description="Provider payload")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        return v.upper()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "order_ref": "ORD-1001",
                    "provider_ref": "ref_8f2k1",
                    "provider": "paystack",
                    "amount": "5000.00",
                    "currency": "NGN",
                    "raw": {"channel": "card"},
                }
            ]
        }
    }


class VerificationResponse(BaseModel):
    """Response schema for payment verification."""

    status: str = Field(..., description="verified, already_processed or failure_recorded")
    order_id: str
    order_number: str
    order_status: str
    payment_status: str
    provider_reference: str
    amount: str
    currency: str
    transaction_id: Optional[int] = None
    notification_id: Optional[str] = None


class OrderResponse(BaseModel):
    """Response schema for an order."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    status: str
    payment_status: str
    total_amount: Decimal
    currency: str
    customer_email: Optional[str] = None
    assigned_courier_id: Optional[str] = None
    payment_reference: Optional[str] = None
    paid_at: Optional[datetime] = None
    updated_by: Optional[str] = None
    updated_at: datetime


class TransitionRequest(BaseModel):
    """Request schema for an order status transition."""

    new_status: str = Field(..., min_length=1, description="Target status")
    actor_id: str = Field(..., min_length=1, description="Administrator making the change")


class AssignCourierRequest(BaseModel):
    """Request schema for assigning a courier."""

    courier_id: str = Field(..., min_length=1, description="Courier identifier")
    actor_id: str = Field(..., min_length=1, description="Administrator making the change")


class AcquireLockRequest(BaseModel):
    """Request schema for acquiring an order lock."""

    holder_id: str = Field(..., min_length=1, description="Lock holder identity")
    ttl_seconds: Optional[int] = Field(default=None, gt=0, description="Lease duration")


class ReleaseLockRequest(BaseModel):
    """Request schema for releasing an order lock."""

    holder_id: str = Field(..., min_length=1, description="Lock holder identity")


class ForceReleaseLockRequest(BaseModel):
    """Request schema for an administrator releasing someone else's lock."""

    actor_id: str = Field(..., min_length=1, description="Administrator forcing the release")


class LockInfoResponse(BaseModel):
    """Response schema for an order's lease."""

    model_config = ConfigDict(from_attributes=True)

    order_id: UUID
    lock_key: str
    is_locked: bool
    holder_id: Optional[str] = None
    acquired_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    release_reason: Optional[str] = None
    renewal_count: int = 0
    seconds_remaining: float = 0.0


class AcquireLockResponse(BaseModel):
    """Response schema for lock acquisition."""

    acquired: bool
    lock: LockInfoResponse


class ReleaseLockResponse(BaseModel):
    """Response schema for lock release."""

    released: bool


class ClaimNotificationsRequest(BaseModel):
    """Request schema for a worker claiming notifications."""

    limit: int = Field(default=10, gt=0, le=500, description="Maximum events to claim")
    worker_id: Optional[str] = Field(default=None, description="Worker identity for logs")


class NotificationResponse(BaseModel):
    """Response schema for a notification event."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    event_type: str
    recipient: str
    template_key: str
    variables: Dict[str, Any]
    status: str
    priority: str
    retry_count: int
    order_id: Optional[UUID] = None
    last_error: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    created_at: datetime


class MarkFailedRequest(BaseModel):
    """Request schema for reporting a failed delivery."""

    reason: str = Field(..., min_length=1, description="Delivery error")


class MarkSentResponse(BaseModel):
    """Response schema for marking a notification sent."""

    id: UUID
    updated: bool


class MarkFailedResponse(BaseModel):
    """Response schema for a failed delivery report."""

    id: UUID
    status: str
    permanent: bool


class RequeueNotificationRequest(BaseModel):
    """Request schema for manually requeuing a failed notification."""

    actor_id: str = Field(..., min_length=1, description="Administrator requeuing the event")


class ReconciliationRequest(BaseModel):
    """Request schema for a reconciliation run."""

    limit: Optional[int] = Field(default=None, gt=0, le=10000, description="Orders per run")
    actor_id: str = Field(default="reconciliation", description="Recorded actor")


class ReconciliationResponse(BaseModel):
    """Response schema for a reconciliation run."""

    processed: int = Field(..., description="Orders examined")
    updated: int = Field(..., description="Orders healed")


class OrderReconciliationResponse(BaseModel):
    """Response schema for single-order reconciliation."""

    order_id: UUID
    needs_reconciliation: bool
    updated: bool = False


class HealthSnapshotResponse(BaseModel):
    """Response schema for the consistency snapshot."""

    inconsistent_orders: int
    stale_queued: int
    unprocessed_transactions: int
    reconciliations_24h: int


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="processed, ignored or rejected")
    event_type: str = Field(..., description="Provider event type")
    error: Optional[str] = Field(default=None, description="Error code when rejected")
    result: Optional[Dict[str, Any]] = Field(default=None, description="Handler result")
