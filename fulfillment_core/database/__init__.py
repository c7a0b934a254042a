"""Database package."""
from fulfillment_core.database.connection import (
    build_engine,
    build_session_factory,
    close_db,
    get_engine,
    get_session_factory,
    init_db,
)
from fulfillment_core.database.models import (
    AuditEntry,
    Base,
    IncidentSeverity,
    NotificationEvent,
    NotificationPriority,
    NotificationStatus,
    Order,
    OrderItem,
    OrderLock,
    OrderStatus,
    PaymentIntent,
    PaymentStatus,
    PaymentTransaction,
    Product,
    SecurityIncident,
    TransactionStatus,
    as_utc,
    utcnow,
)

__all__ = [
    "AuditEntry",
    "Base",
    "IncidentSeverity",
    "NotificationEvent",
    "NotificationPriority",
    "NotificationStatus",
    "Order",
    "OrderItem",
    "OrderLock",
    "OrderStatus",
    "PaymentIntent",
    "PaymentStatus",
    "PaymentTransaction",
    "Product",
    "SecurityIncident",
    "TransactionStatus",
    "as_utc",
    "build_engine",
    "build_session_factory",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
    "utcnow",
]
