"""Core payment-verification and order-transition logic."""
from .audit import AuditLogger
from .errors import (
    AlreadyProcessed,
    AmountMismatch,
    DeliveryFailurePermanent,
    FulfillmentError,
    InsufficientInventory,
    InvalidRequest,
    InvalidTransition,
    LockConflict,
    NotificationNotFound,
    OrderNotFound,
    PreconditionFailed,
)
from .locks import LockInfo, LockManager
from .notifications import NotificationQueue, NotificationRequest
from .state_machine import OrderService, TransitionResult, apply_transition
from .payment_verification import PaymentVerificationService, VerificationResult
from .reconciliation import HealthSnapshot, ReconciliationMonitor

__all__ = [
    "AlreadyProcessed",
    "AmountMismatch",
    "AuditLogger",
    "DeliveryFailurePermanent",
    "FulfillmentError",
    "HealthSnapshot",
    "InsufficientInventory",
    "InvalidRequest",
    "InvalidTransition",
    "LockConflict",
    "LockInfo",
    "LockManager",
    "NotificationNotFound",
    "NotificationQueue",
    "NotificationRequest",
    "OrderNotFound",
    "OrderService",
    "PaymentVerificationService",
    "PreconditionFailed",
    "ReconciliationMonitor",
    "TransitionResult",
    "VerificationResult",
    "apply_transition",
]
