"""
Payment verification.

Reconciles a provider-reported payment against the order it pays for:
1. Validate the report and resolve the order (orphans raise an incident)
2. Return idempotently if the order is already paid
3. Reject amount mismatches with a critical security incident
4. Under the order lock, in one transaction: record the ledger row, mark the
   order paid, advance it to confirmed, decrement stock and fail the whole unit
   if any product would go negative
5. Queue the payment confirmation (deduplicated)
6. Audit the outcome

Steps 1-3 never retry. Step 4 is safe to re-run: the ledger is unique on the
provider reference and the paid check short-circuits replays.
"""
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from fulfillment_core.config import Settings, get_settings
from fulfillment_core.core.audit import AuditLogger, jsonable
from fulfillment_core.core.errors import (
    AlreadyProcessed,
    AmountMismatch,
    FulfillmentError,
    InsufficientInventory,
    InvalidRequest,
    LockConflict,
    OrderNotFound,
)
from fulfillment_core.core.locks import ACQUIRED, LockManager
from fulfillment_core.core.notifications import NotificationQueue, NotificationRequest
from fulfillment_core.core.state_machine import CLOSED_STATUSES, apply_transition
from fulfillment_core.database.connection import get_session_factory
from fulfillment_core.database.models import (
    IncidentSeverity,
    NotificationPriority,
    Order,
    OrderItem,
    OrderStatus,
    PaymentIntent,
    PaymentStatus,
    PaymentTransaction,
    Product,
    TransactionStatus,
    utcnow,
)
from fulfillment_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ALTERNATE_PREFIXES = {"txn_": "pay_", "pay_": "txn_"}


def alternate_reference(provider_ref: str) -> str | None:
    """The txn_/pay_ twin of a provider reference, if it has one."""
    for prefix, twin in ALTERNATE_PREFIXES.items():
        if provider_ref.startswith(prefix):
            return twin + provider_ref[len(prefix):]
    return None


def to_decimal(value: Any) -> Decimal:
    """Parse an amount without going through float."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidRequest("Amount must be a decimal number", details={"amount": str(value)})
    if not amount.is_finite():
        raise InvalidRequest("Amount must be a finite number", details={"amount": str(value)})
    return amount


@dataclass
class VerificationResult:
    """Outcome of verify_payment / record_payment_failure."""

    status: str  # verified, already_processed, failure_recorded
    order_id: uuid.UUID
    order_number: str
    order_status: str
    payment_status: str
    provider_reference: str
    amount: Decimal
    currency: str
    transaction_id: int | None = None
    notification_id: uuid.UUID | None = None

    @property
    def already_processed(self) -> bool:
        return self.status == "already_processed"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses."""
        return jsonable(
            {
                "status": self.status,
                "order_id": self.order_id,
                "order_number": self.order_number,
                "order_status": self.order_status,
                "payment_status": self.payment_status,
                "provider_reference": self.provider_reference,
                "amount": self.amount,
                "currency": self.currency,
                "transaction_id": self.transaction_id,
                "notification_id": self.notification_id,
            }
        )


@dataclass
class PaymentApplication:
    """What the atomic payment unit changed."""

    order: Order
    transaction: PaymentTransaction
    notification_id: uuid.UUID | None


class PaymentVerificationService:
    """
    Verifies provider payment reports and applies them to orders.

    Holds the order lock around the atomic unit; lock conflicts are retried a
    bounded number of times with exponential backoff.
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
        Initialize payment verification service.

        Args:
            session_factory: Session factory (defaults to the global one)
            lock_manager: Order lock manager
            queue: Notification queue
            audit: Audit logger
            settings: Provider, tolerance and retry settings
        """
        self.session_factory = session_factory or get_session_factory()
        self.settings = settings or get_settings()
        self.audit = audit or AuditLogger(self.session_factory)
        self.lock_manager = lock_manager or LockManager(self.session_factory, self.audit, self.settings)
        self.queue = queue or NotificationQueue(self.session_factory, self.audit, self.settings)

        logger.info(
            "payment_verification_service_initialized",
            provider=self.settings.payment_provider,
            tolerance=str(self.settings.payment_amount_tolerance),
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def verify_payment(
        self,
        order_ref: str,
        provider_ref: str,
        provider: str,
        amount: Any,
        currency: str,
        raw_payload: Dict[str, Any] | None = None,
    ) -> VerificationResult:
        """
        Verify a successful payment report and apply it to its order.

        Calling again with the same arguments after a success changes nothing
        and returns an already_processed result.

        Args:
            order_ref: Order number or payment reference (may be empty)
            provider_ref: Provider's transaction reference
            provider: Provider name
            amount: Reported amount in major units
            currency: 3-letter currency code
            raw_payload: Provider payload, stored on the ledger row

        Returns:
            VerificationResult: verified or already_processed

        Raises:
            InvalidRequest: Malformed report or unknown provider
            OrderNotFound: No order matches (orphan incident written)
            AmountMismatch: Amount or currency disagrees (critical incident written)
            LockConflict: Order stayed locked through every retry
            InsufficientInventory: Stock would go negative (nothing applied)
        """
        started = time.perf_counter()
        outcome = "error"
        try:
            result = await self._verify(order_ref, provider_ref, provider, amount, currency, raw_payload)
            outcome = result.status
            return result
        except FulfillmentError as e:
            outcome = e.code
            raise
        finally:
            metrics.record_payment_verification(outcome, time.perf_counter() - started)

    async def record_payment_failure(
        self,
        provider_ref: str,
        provider: str,
        amount: Any,
        currency: str,
        raw_payload: Dict[str, Any] | None = None,
        order_ref: str | None = None,
    ) -> VerificationResult:
        """
        Record a provider's failed-charge report.

        Writes a failed ledger row and marks an unpaid order's payment as failed.
        The order status stays pending so a later payment can still confirm it.

        Returns:
            VerificationResult: failure_recorded or already_processed
        """
        provider_ref, provider, amount, currency = await self._normalize(
            provider_ref, provider, amount, currency
        )
        order = await self._resolve_or_orphan((order_ref or "").strip(), provider_ref, amount)

        holder_id = self._holder_id("payment-failure", provider_ref)
        lock_outcome = await self._acquire_with_retry(order.id, holder_id)
        try:
            async with self.session_factory() as db:
                order = await self._load_order_for_update(db, order.id)
                transaction = await self._upsert_ledger(
                    db, order, provider_ref, provider, amount, currency,
                    TransactionStatus.FAILED, raw_payload,
                )
                if order.payment_status != PaymentStatus.PENDING.value:
                    await db.commit()
                    logger.info(
                        "payment_failure_ignored",
                        order_id=str(order.id),
                        payment_status=order.payment_status,
                        provider_reference=provider_ref,
                    )
                    return self._result("already_processed", order, provider_ref, amount, currency, transaction)

                order.payment_status = PaymentStatus.FAILED.value
                order.updated_at = utcnow()
                transaction.processed_at = utcnow()

                notification_id = None
                if order.customer_email:
                    notification_id = await self.queue.enqueue(
                        NotificationRequest(
                            event_type="payment_failed",
                            recipient=order.customer_email,
                            template_key="payment_failed",
                            variables={
                                "order_number": order.order_number,
                                "customer_name": order.customer_name,
                                "amount": str(amount),
                                "currency": currency,
                            },
                            order_id=order.id,
                            priority=NotificationPriority.NORMAL,
                        ),
                        db,
                    )

                await self.audit.record(
                    db,
                    "payment_failed",
                    f"Provider reported failed payment {provider_ref} for order {order.order_number}",
                    category="payment",
                    entity_id=order.id,
                    actor_id=holder_id,
                    old_values={"payment_status": PaymentStatus.PENDING.value},
                    new_values={"payment_status": order.payment_status, "provider_reference": provider_ref},
                )
                await db.commit()
        finally:
            if lock_outcome == ACQUIRED:
                await self.lock_manager.release(order.id, holder_id)

        logger.info("payment_failure_recorded", order_id=str(order.id), provider_reference=provider_ref)
        return self._result(
            "failure_recorded", order, provider_ref, amount, currency, transaction, notification_id
        )

    # ------------------------------------------------------------------
    # Verification flow
    # ------------------------------------------------------------------

    async def _verify(
        self,
        order_ref: str,
        provider_ref: str,
        provider: str,
        amount: Any,
        currency: str,
        raw_payload: Dict[str, Any] | None,
    ) -> VerificationResult:
        provider_ref, provider, amount, currency = await self._normalize(
            provider_ref, provider, amount, currency
        )
        order_ref = (order_ref or "").strip()

        # Local validation, no lock held
        order = await self._resolve_or_orphan(order_ref, provider_ref, amount)
        if order.payment_status in (PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value):
            logger.info(
                "payment_already_processed",
                order_id=str(order.id),
                provider_reference=provider_ref,
                payment_reference=order.payment_reference,
            )
            return self._result("already_processed", order, provider_ref, amount, currency)
        await self._check_amount(order, provider_ref, amount, currency)

        holder_id = self._holder_id("payment-verification", provider_ref)
        lock_outcome = await self._acquire_with_retry(order.id, holder_id)
        try:
            application = await self._run_unit(
                order.id, provider_ref, provider, amount, currency, raw_payload, holder_id
            )
        except AlreadyProcessed:
            current = await self._get_order(order.id)
            return self._result("already_processed", current, provider_ref, amount, currency)
        finally:
            if lock_outcome == ACQUIRED:
                await self.lock_manager.release(order.id, holder_id)

        logger.info(
            "payment_verified",
            order_id=str(application.order.id),
            order_number=application.order.order_number,
            provider_reference=provider_ref,
            amount=str(amount),
            currency=currency,
        )
        return self._result(
            "verified",
            application.order,
            provider_ref,
            amount,
            currency,
            application.transaction,
            application.notification_id,
        )

    async def _run_unit(
        self,
        order_id: uuid.UUID,
        provider_ref: str,
        provider: str,
        amount: Decimal,
        currency: str,
        raw_payload: Dict[str, Any] | None,
        actor_id: str,
    ) -> PaymentApplication:
        """Run apply_payment in its own transaction, auditing failures after rollback."""
        try:
            async with self.session_factory() as db:
                application = await self.apply_payment(
                    db, order_id, provider_ref, provider, amount, currency, raw_payload, actor_id
                )
                await db.commit()
                return application
        except (InsufficientInventory, InvalidRequest) as e:
            await self.audit.record_detached(
                "payment_verification_failed",
                e.message,
                category="payment",
                entity_id=order_id,
                actor_id=actor_id,
                new_values={"error": e.code, "provider_reference": provider_ref, **e.details},
            )
            raise

    async def apply_payment(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        provider_ref: str,
        provider: str,
        amount: Decimal,
        currency: str,
        raw_payload: Dict[str, Any] | None,
        actor_id: str,
        action: str = "payment_verified",
    ) -> PaymentApplication:
        """
        The atomic payment unit. Caller holds the order lock and commits.

        Also used by reconciliation to heal orders whose ledger shows success.

        Raises:
            AlreadyProcessed: Order is already paid
            InsufficientInventory: A product's stock would go negative
            InvalidRequest: Provider reference already recorded differently
        """
        now = utcnow()
        order = await self._load_order_for_update(db, order_id)
        if order.payment_status in (PaymentStatus.PAID.value, PaymentStatus.REFUNDED.value):
            raise AlreadyProcessed(
                f"Order {order.order_number} is already {order.payment_status}",
                details={"order_id": str(order.id)},
            )

        transaction = await self._upsert_ledger(
            db, order, provider_ref, provider, amount, currency, TransactionStatus.SUCCESS, raw_payload
        )
        await self._settle_payment_intent(db, order, provider_ref)

        old_values = {"status": order.status, "payment_status": order.payment_status}
        order.payment_status = PaymentStatus.PAID.value
        order.paid_at = now
        if order.payment_reference is None:
            order.payment_reference = provider_ref
        order.updated_at = now

        if order.status == OrderStatus.PENDING.value:
            # The payment confirmation below replaces the order_confirmed email
            await apply_transition(db, order, OrderStatus.CONFIRMED.value, actor_id, self.audit, notify=False)

        if OrderStatus(order.status) in CLOSED_STATUSES:
            await self.audit.incident(
                db,
                "payment_for_closed_order",
                f"Payment {provider_ref} received for {order.status} order {order.order_number}",
                severity=IncidentSeverity.HIGH,
                reference=provider_ref,
                order_id=order.id,
                expected_amount=order.total_amount,
                received_amount=amount,
            )
        else:
            await self._decrement_stock(db, order)

        transaction.processed_at = now
        notification_id = await self._enqueue_confirmation(db, order, provider_ref, amount, currency)

        await self.audit.record(
            db,
            action,
            f"Payment {provider_ref} applied to order {order.order_number}",
            category="payment",
            entity_id=order.id,
            actor_id=actor_id,
            old_values=old_values,
            new_values={
                "status": order.status,
                "payment_status": order.payment_status,
                "provider_reference": provider_ref,
                "amount": amount,
                "currency": currency,
            },
        )
        return PaymentApplication(order=order, transaction=transaction, notification_id=notification_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _normalize(
        self, provider_ref: str, provider: str, amount: Any, currency: str
    ) -> tuple[str, str, Decimal, str]:
        provider_ref = (provider_ref or "").strip()
        if not provider_ref:
            raise InvalidRequest("provider_ref is required")

        amount = to_decimal(amount)
        if amount < 0:
            raise InvalidRequest("Amount must not be negative", details={"amount": str(amount)})

        currency = (currency or "").strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            raise InvalidRequest("Currency must be 3-letter code", details={"currency": currency})

        provider = (provider or "").strip().lower()
        if provider != self.settings.payment_provider:
            await self.audit.incident_detached(
                "payment_provider_unrecognized",
                f"Verification attempted with unknown provider {provider!r}",
                severity=IncidentSeverity.HIGH,
                reference=provider_ref,
                received_amount=amount,
                details={"provider": provider},
            )
            raise InvalidRequest(
                "Unknown payment provider",
                details={"provider": provider},
            )
        return provider_ref, provider, amount, currency

    def _holder_id(self, purpose: str, provider_ref: str) -> str:
        return f"{purpose}:{provider_ref}:{uuid.uuid4().hex[:8]}"

    async def _acquire_with_retry(self, order_id: uuid.UUID, holder_id: str) -> str:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(LockConflict),
            stop=stop_after_attempt(self.settings.payment_lock_attempts),
            wait=wait_exponential(multiplier=0.1, max=2),
            reraise=True,
        ):
            with attempt:
                return await self.lock_manager.acquire_or_raise(order_id, holder_id)
        raise LockConflict(order_id)  # pragma: no cover

    async def _get_order(self, order_id: uuid.UUID) -> Order:
        async with self.session_factory() as db:
            order = await db.get(Order, order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", details={"order_id": str(order_id)})
        return order

    async def _load_order_for_update(self, db: AsyncSession, order_id: uuid.UUID) -> Order:
        order = (
            await db.execute(
                select(Order)
                .where(Order.id == order_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", details={"order_id": str(order_id)})
        return order

    async def resolve_order(self, db: AsyncSession, order_ref: str, provider_ref: str) -> Order | None:
        """
        Find the order a payment belongs to.

        Tries the order reference (order number, payment reference, order id),
        then the provider reference and its txn_/pay_ twin against order payment
        references, payment intents and the ledger.
        """
        if order_ref:
            order = (
                await db.execute(select(Order).where(Order.order_number == order_ref))
            ).scalar_one_or_none()
            if order is None:
                order = (
                    await db.execute(select(Order).where(Order.payment_reference == order_ref))
                ).scalar_one_or_none()
            if order is None:
                try:
                    order = await db.get(Order, uuid.UUID(order_ref))
                except ValueError:
                    order = None
            if order is not None:
                return order

        references: List[str] = [provider_ref]
        twin = alternate_reference(provider_ref)
        if twin:
            references.append(twin)

        order = (
            await db.execute(select(Order).where(Order.payment_reference.in_(references)).limit(1))
        ).scalar_one_or_none()
        if order is not None:
            return order

        order_id = (
            await db.execute(
                select(PaymentIntent.order_id)
                .where(PaymentIntent.external_reference.in_(references))
                .order_by(PaymentIntent.created_at.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        if order_id is None:
            order_id = (
                await db.execute(
                    select(PaymentTransaction.order_id)
                    .where(
                        PaymentTransaction.provider_reference.in_(references),
                        PaymentTransaction.order_id.is_not(None),
                    )
                    .limit(1)
                )
            ).scalar_one_or_none()
        if order_id is None:
            return None
        return await db.get(Order, order_id)

    async def _resolve_or_orphan(self, order_ref: str, provider_ref: str, amount: Decimal) -> Order:
        async with self.session_factory() as db:
            order = await self.resolve_order(db, order_ref, provider_ref)
            if order is None:
                await self.audit.incident(
                    db,
                    "payment_verification_orphaned",
                    f"No order matches payment {provider_ref} (order ref {order_ref!r})",
                    severity=IncidentSeverity.MEDIUM,
                    reference=provider_ref,
                    received_amount=amount,
                    details={"order_ref": order_ref, "provider_ref": provider_ref},
                )
                await db.commit()

        if order is None:
            raise OrderNotFound(
                "No order matches this payment",
                details={"order_ref": order_ref, "provider_ref": provider_ref},
            )
        return order

    async def _check_amount(
        self, order: Order, provider_ref: str, amount: Decimal, currency: str
    ) -> None:
        expected = Decimal(order.total_amount)
        currency_matches = currency == (order.currency or self.settings.default_currency).upper()
        if currency_matches and abs(amount - expected) <= self.settings.payment_amount_tolerance:
            return

        await self.audit.incident_detached(
            "payment_amount_mismatch_critical",
            f"Payment {provider_ref} reported {amount} {currency}, "
            f"order {order.order_number} expects {expected} {order.currency}",
            severity=IncidentSeverity.CRITICAL,
            reference=provider_ref,
            order_id=order.id,
            expected_amount=expected,
            received_amount=amount,
            details={"expected_currency": order.currency, "received_currency": currency},
        )
        raise AmountMismatch(
            f"Reported amount does not match order {order.order_number}",
            details={
                "order_id": str(order.id),
                "expected": str(expected),
                "received": str(amount),
                "expected_currency": order.currency,
                "received_currency": currency,
            },
        )

    async def _upsert_ledger(
        self,
        db: AsyncSession,
        order: Order,
        provider_ref: str,
        provider: str,
        amount: Decimal,
        currency: str,
        status: TransactionStatus,
        raw_payload: Dict[str, Any] | None,
    ) -> PaymentTransaction:
        """Insert the ledger row for provider_ref, or return the matching existing one."""
        existing = await self._get_transaction(db, provider_ref)
        if existing is None:
            transaction = PaymentTransaction(
                order_id=order.id,
                provider=provider,
                provider_reference=provider_ref,
                amount=amount,
                currency=currency,
                status=status.value,
                raw_payload=jsonable(raw_payload) if raw_payload is not None else None,
            )
            try:
                async with db.begin_nested():
                    db.add(transaction)
                return transaction
            except IntegrityError:
                existing = await self._get_transaction(db, provider_ref)
                if existing is None:
                    raise

        conflicts = []
        if existing.order_id is not None and existing.order_id != order.id:
            conflicts.append("order_id")
        if existing.status != status.value:
            conflicts.append("status")
        if Decimal(existing.amount) != amount:
            conflicts.append("amount")
        if conflicts:
            raise InvalidRequest(
                f"Provider reference {provider_ref} is already recorded with different details",
                details={"provider_reference": provider_ref, "conflicts": conflicts},
            )

        if existing.order_id is None:
            existing.order_id = order.id
        return existing

    async def _get_transaction(self, db: AsyncSession, provider_ref: str) -> PaymentTransaction | None:
        return (
            await db.execute(
                select(PaymentTransaction).where(PaymentTransaction.provider_reference == provider_ref)
            )
        ).scalar_one_or_none()

    async def _settle_payment_intent(self, db: AsyncSession, order: Order, provider_ref: str) -> None:
        """
        Mark the intent carrying provider_ref succeeded.

        Without one, the most recent unreferenced intent takes the reference; a new
        intent is created when the latest already belongs to another attempt.

        Raises:
            InvalidRequest: provider_ref is an intent reference of another order
        """
        intent = (
            await db.execute(
                select(PaymentIntent).where(PaymentIntent.external_reference == provider_ref)
            )
        ).scalar_one_or_none()
        if intent is not None and intent.order_id != order.id:
            raise InvalidRequest(
                f"Provider reference {provider_ref} belongs to another order's payment intent",
                details={"provider_reference": provider_ref, "conflicts": ["payment_intent"]},
            )

        if intent is None:
            latest = (
                await db.execute(
                    select(PaymentIntent)
                    .where(PaymentIntent.order_id == order.id)
                    .order_by(PaymentIntent.created_at.desc(), PaymentIntent.id.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
            if latest is not None and latest.external_reference is None:
                intent = latest
                intent.external_reference = provider_ref

        if intent is None:
            db.add(
                PaymentIntent(
                    order_id=order.id,
                    amount=order.total_amount,
                    currency=order.currency,
                    external_reference=provider_ref,
                    status="succeeded",
                )
            )
            return
        intent.status = "succeeded"

    async def _decrement_stock(self, db: AsyncSession, order: Order) -> None:
        items = (
            await db.execute(select(OrderItem).where(OrderItem.order_id == order.id))
        ).scalars().all()
        if not items:
            return

        for item in items:
            await db.execute(
                update(Product)
                .where(Product.id == item.product_id)
                .values(stock_quantity=Product.stock_quantity - item.quantity)
                .execution_options(synchronize_session=False)
            )

        short = (
            await db.execute(
                select(Product.id, Product.name, Product.stock_quantity).where(
                    Product.id.in_([item.product_id for item in items]),
                    Product.stock_quantity < 0,
                )
            )
        ).all()
        if short:
            logger.warning(
                "insufficient_inventory",
                order_id=str(order.id),
                products=[str(row.id) for row in short],
            )
            raise InsufficientInventory(
                f"Not enough stock to fulfil order {order.order_number}",
                details={
                    "order_id": str(order.id),
                    "products": [
                        {"product_id": str(row.id), "name": row.name, "shortfall": -row.stock_quantity}
                        for row in short
                    ],
                },
            )

    async def _enqueue_confirmation(
        self, db: AsyncSession, order: Order, provider_ref: str, amount: Decimal, currency: str
    ) -> uuid.UUID | None:
        if not order.customer_email:
            await self.audit.record(
                db,
                "notification_skipped",
                f"No customer email on order {order.order_number}; payment_confirmation not queued",
                category="notification",
                entity_id=order.id,
                new_values={"template_key": "payment_confirmation"},
            )
            return None

        return await self.queue.enqueue(
            NotificationRequest(
                event_type="payment_confirmed",
                recipient=order.customer_email,
                template_key="payment_confirmation",
                variables={
                    "order_number": order.order_number,
                    "customer_name": order.customer_name,
                    "amount": str(amount),
                    "currency": currency,
                    "payment_reference": provider_ref,
                },
                order_id=order.id,
                priority=NotificationPriority.HIGH,
            ),
            db,
        )

    def _result(
        self,
        status: str,
        order: Order,
        provider_ref: str,
        amount: Decimal,
        currency: str,
        transaction: PaymentTransaction | None = None,
        notification_id: uuid.UUID | None = None,
    ) -> VerificationResult:
        return VerificationResult(
            status=status,
            order_id=order.id,
            order_number=order.order_number,
            order_status=order.status,
            payment_status=order.payment_status,
            provider_reference=provider_ref,
            amount=amount,
            currency=currency,
            transaction_id=transaction.id if transaction is not None else None,
            notification_id=notification_id,
        )
