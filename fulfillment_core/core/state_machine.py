"""
Order state machine.

Validates and applies order status transitions against an explicit table:
- unchanged status is an idempotent no-op
- (old, new) pairs outside the table raise InvalidTransition
- delivery states require an assigned courier (PreconditionFailed)

Applying a transition never sends anything itself. It returns the notification
intents the change implies and the caller enqueues them in the same transaction.
"""
import uuid
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment_core.config import Settings, get_settings
from fulfillment_core.core.audit import AuditLogger
from fulfillment_core.core.errors import (
    InvalidRequest,
    InvalidTransition,
    OrderNotFound,
    PreconditionFailed,
)
from fulfillment_core.core.locks import LockManager
from fulfillment_core.core.notifications import NotificationQueue, NotificationRequest
from fulfillment_core.database.connection import get_session_factory
from fulfillment_core.database.models import (
    NotificationPriority,
    Order,
    OrderStatus,
    PaymentStatus,
    utcnow,
)
from fulfillment_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset(
        {OrderStatus.CONFIRMED, OrderStatus.CANCELLED, OrderStatus.REFUNDED, OrderStatus.FAILED}
    ),
    OrderStatus.CONFIRMED: frozenset(
        {OrderStatus.PREPARING, OrderStatus.READY, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
    ),
    OrderStatus.PREPARING: frozenset(
        {OrderStatus.READY, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
    ),
    OrderStatus.READY: frozenset(
        {OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED, OrderStatus.CANCELLED}
    ),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.COMPLETED, OrderStatus.REFUNDED}),
    OrderStatus.COMPLETED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.REFUNDED: frozenset(),
    OrderStatus.FAILED: frozenset({OrderStatus.CANCELLED}),
}

COURIER_REQUIRED: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED, OrderStatus.COMPLETED}
)

# Statuses customers are told about, and the template each one uses
STATUS_TEMPLATES: Dict[OrderStatus, str] = {
    OrderStatus.CONFIRMED: "order_confirmed",
    OrderStatus.PREPARING: "order_preparing",
    OrderStatus.READY: "order_ready",
    OrderStatus.OUT_FOR_DELIVERY: "order_out_for_delivery",
    OrderStatus.DELIVERED: "order_delivered",
    OrderStatus.CANCELLED: "order_cancelled",
}

CLOSED_STATUSES: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REFUNDED, OrderStatus.FAILED}
)


def can_transition(old_status: str, new_status: str) -> bool:
    """Whether (old, new) is in the transition table."""
    try:
        old, new = OrderStatus(old_status), OrderStatus(new_status)
    except ValueError:
        return False
    return new in ALLOWED_TRANSITIONS[old]


@dataclass
class TransitionResult:
    """Outcome of applying a transition, including the intents it produced."""

    order: Order
    old_status: str
    new_status: str
    changed: bool
    side_effects: List[NotificationRequest] = field(default_factory=list)


async def apply_transition(
    db: AsyncSession,
    order: Order,
    new_status: str,
    actor_id: str | None,
    audit: AuditLogger,
    notify: bool = True,
) -> TransitionResult:
    """
    Validate and apply a status change to an order loaded in `db`.

    Does not commit. The order must have been read under the order lock.

    Args:
        db: Session holding the order
        order: Order to change
        new_status: Target status
        actor_id: Who requested the change
        audit: Audit logger
        notify: Whether to produce the customer notification intent

    Returns:
        TransitionResult: Applied change and notification intents

    Raises:
        InvalidTransition: Pair not in the table (including unknown statuses)
        PreconditionFailed: Delivery state without a courier
    """
    old_status = order.status
    if new_status == old_status:
        logger.debug("order_transition_noop", order_id=str(order.id), status=old_status)
        return TransitionResult(order=order, old_status=old_status, new_status=new_status, changed=False)

    if not can_transition(old_status, new_status):
        metrics.record_transition_rejected("invalid_transition")
        logger.warning(
            "order_transition_rejected",
            order_id=str(order.id),
            from_status=old_status,
            to_status=new_status,
        )
        raise InvalidTransition(
            f"Cannot move order {order.order_number} from {old_status} to {new_status}",
            details={"order_id": str(order.id), "from_status": old_status, "to_status": new_status},
        )

    target = OrderStatus(new_status)
    if target in COURIER_REQUIRED and not order.assigned_courier_id:
        metrics.record_transition_rejected("precondition_failed")
        raise PreconditionFailed(
            f"Order {order.order_number} needs an assigned courier before {new_status}",
            details={"order_id": str(order.id), "to_status": new_status, "missing": "assigned_courier_id"},
        )

    old_values = {"status": old_status, "payment_status": order.payment_status}
    order.status = target.value
    if target == OrderStatus.REFUNDED and order.payment_status == PaymentStatus.PAID.value:
        order.payment_status = PaymentStatus.REFUNDED.value
    order.updated_by = actor_id
    order.updated_at = utcnow()

    await audit.record(
        db,
        "order_status_changed",
        f"Order {order.order_number} moved from {old_status} to {target.value}",
        category="order",
        entity_id=order.id,
        actor_id=actor_id,
        old_values=old_values,
        new_values={"status": order.status, "payment_status": order.payment_status},
    )
    metrics.record_transition(old_status, target.value)
    logger.info(
        "order_transition_applied",
        order_id=str(order.id),
        from_status=old_status,
        to_status=target.value,
        actor_id=actor_id,
    )

    result = TransitionResult(order=order, old_status=old_status, new_status=target.value, changed=True)
    template_key = STATUS_TEMPLATES.get(target)
    if notify and template_key:
        if order.customer_email:
            result.side_effects.append(
                NotificationRequest(
                    event_type="order_status_changed",
                    recipient=order.customer_email,
                    template_key=template_key,
                    variables={
                        "order_number": order.order_number,
                        "customer_name": order.customer_name,
                        "old_status": old_status,
                        "new_status": target.value,
                    },
                    order_id=order.id,
                    priority=NotificationPriority.HIGH,
                )
            )
        else:
            await audit.record(
                db,
                "notification_skipped",
                f"No customer email on order {order.order_number}; {template_key} not queued",
                category="notification",
                entity_id=order.id,
                actor_id=actor_id,
                new_values={"template_key": template_key},
            )
    return result


class OrderService:
    """
    Admin-facing order operations.

    Each operation takes the order lock (holder = actor), re-reads the order,
    applies the change and enqueues its notifications in one transaction.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        lock_manager: LockManager | None = None,
        queue: NotificationQueue | None = None,
        audit: AuditLogger | None = None,
        settings: Settings | None = None,
    ) -> None:
        """
        Initialize order service.

        Args:
            session_factory: Session factory (defaults to the global one)
            lock_manager: Order lock manager
            queue: Notification queue for side-effect intents
            audit: Audit logger
            settings: Application settings
        """
        self.session_factory = session_factory or get_session_factory()
        self.settings = settings or get_settings()
        self.audit = audit or AuditLogger(self.session_factory)
        self.lock_manager = lock_manager or LockManager(self.session_factory, self.audit, self.settings)
        self.queue = queue or NotificationQueue(self.session_factory, self.audit, self.settings)

        logger.info("order_service_initialized")

    async def get_order(self, order_id: uuid.UUID) -> Order:
        """
        Fetch an order by id.

        Raises:
            OrderNotFound: Unknown id
        """
        async with self.session_factory() as db:
            order = await db.get(Order, order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", details={"order_id": str(order_id)})
        return order

    async def _load_for_update(self, db: AsyncSession, order_id: uuid.UUID) -> Order:
        order = (
            await db.execute(select(Order).where(Order.id == order_id).with_for_update())
        ).scalar_one_or_none()
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", details={"order_id": str(order_id)})
        return order

    async def transition_order(self, order_id: uuid.UUID, new_status: str, actor_id: str) -> Order:
        """
        Move an order to `new_status`.

        Args:
            order_id: Order to change
            new_status: Target status
            actor_id: Administrator making the change (also the lock holder)

        Returns:
            Order: Order after the change (unchanged for a same-status call)

        Raises:
            OrderNotFound: Unknown order
            LockConflict: Another holder has the order locked
            InvalidTransition: Pair not in the table
            PreconditionFailed: Delivery state without a courier
        """
        if not actor_id:
            raise InvalidRequest("actor_id is required")
        await self.get_order(order_id)

        async with self.lock_manager.hold(order_id, actor_id):
            async with self.session_factory() as db:
                order = await self._load_for_update(db, order_id)
                result = await apply_transition(db, order, new_status, actor_id, self.audit)
                for request in result.side_effects:
                    await self.queue.enqueue(request, db)
                await db.commit()

        return result.order

    async def assign_courier(self, order_id: uuid.UUID, courier_id: str, actor_id: str) -> Order:
        """
        Record the courier responsible for delivering an order.

        Args:
            order_id: Order to change
            courier_id: Courier to assign
            actor_id: Administrator making the change

        Returns:
            Order: Updated order

        Raises:
            OrderNotFound: Unknown order
            LockConflict: Another holder has the order locked
            PreconditionFailed: Order is already closed
        """
        courier_id = (courier_id or "").strip()
        if not courier_id or not actor_id:
            raise InvalidRequest("courier_id and actor_id are required")
        await self.get_order(order_id)

        async with self.lock_manager.hold(order_id, actor_id):
            async with self.session_factory() as db:
                order = await self._load_for_update(db, order_id)
                if OrderStatus(order.status) in CLOSED_STATUSES:
                    raise PreconditionFailed(
                        f"Order {order.order_number} is {order.status}; couriers cannot be assigned",
                        details={"order_id": str(order_id), "status": order.status},
                    )

                previous = order.assigned_courier_id
                if previous != courier_id:
                    order.assigned_courier_id = courier_id
                    order.updated_by = actor_id
                    order.updated_at = utcnow()
                    await self.audit.record(
                        db,
                        "courier_assigned",
                        f"Courier {courier_id} assigned to order {order.order_number}",
                        category="order",
                        entity_id=order.id,
                        actor_id=actor_id,
                        old_values={"assigned_courier_id": previous},
                        new_values={"assigned_courier_id": courier_id},
                    )
                await db.commit()

        logger.info(
            "courier_assigned",
            order_id=str(order_id),
            courier_id=courier_id,
            previous_courier_id=previous,
            actor_id=actor_id,
        )
        return order
