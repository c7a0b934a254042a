"""
Exception hierarchy for the fulfillment core.

Every error carries a stable machine-readable `code`, a human message and a
`details` mapping. The API layer turns them into structured responses; the core
never retries them itself.
"""
from typing import Any, Dict


class FulfillmentError(Exception):
    """Base class for all fulfillment core errors."""

    code = "fulfillment_error"
    http_status = 400

    def __init__(self, message: str, details: Dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses."""
        return {"error": self.code, "message": self.message, "details": self.details}


class OrderNotFound(FulfillmentError):
    """Raised when no order matches the given id or reference."""

    code = "order_not_found"
    http_status = 404


class InvalidTransition(FulfillmentError):
    """Raised when (old, new) status is not in the transition table."""

    code = "invalid_transition"
    http_status = 422


class PreconditionFailed(FulfillmentError):
    """Raised when a transition's precondition (courier assignment) is not met."""

    code = "precondition_failed"
    http_status = 422


class AmountMismatch(FulfillmentError):
    """Raised when the reported amount differs from the expected amount."""

    code = "amount_mismatch"
    http_status = 422


class InsufficientInventory(FulfillmentError):
    """Raised when decrementing stock would drive a product negative."""

    code = "insufficient_inventory"
    http_status = 409


class LockConflict(FulfillmentError):
    """Raised when another holder has an unexpired lease on the order."""

    code = "lock_conflict"
    http_status = 409

    def __init__(
        self,
        order_id: Any,
        holder_id: str | None = None,
        seconds_remaining: float | None = None,
    ) -> None:
        super().__init__(
            f"Order {order_id} is locked by another operation, retry shortly",
            details={
                "order_id": str(order_id),
                "holder_id": holder_id,
                "seconds_remaining": seconds_remaining,
            },
        )
        self.order_id = order_id
        self.holder_id = holder_id
        self.seconds_remaining = seconds_remaining


class AlreadyProcessed(FulfillmentError):
    """Idempotent success path: the payment was already applied."""

    code = "already_processed"
    http_status = 200


class DeliveryFailurePermanent(FulfillmentError):
    """Raised when a notification reaches its retry ceiling."""

    code = "delivery_failure_permanent"
    http_status = 409


class NotificationNotFound(FulfillmentError):
    """Raised when a notification id does not exist."""

    code = "notification_not_found"
    http_status = 404


class InvalidRequest(FulfillmentError):
    """Raised for malformed input: unknown provider, bad currency, bad TTL, bad signature."""

    code = "invalid_request"
    http_status = 400
