"""
Reconciliation and health monitoring.

Detects orders whose ledger shows a successful payment while the order itself is
still unpaid, and heals them through the same atomic unit payment verification
uses. Runs are capped per invocation; orders locked by someone else are skipped
until the next run.

Also produces the health snapshot consumed by alerting:
- inconsistent orders
- notifications queued past the staleness threshold
- successful ledger rows never processed
- reconciliations in the last 24 hours
"""
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Tuple

import structlog
from sqlalchemy import and_, func, not_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment_core.config import Settings, get_settings
from fulfillment_core.core.audit import AuditLogger
from fulfillment_core.core.errors import (
    AlreadyProcessed,
    InsufficientInventory,
    InvalidRequest,
    LockConflict,
    OrderNotFound,
)
from fulfillment_core.core.locks import ACQUIRED, LockManager
from fulfillment_core.core.notifications import NotificationQueue
from fulfillment_core.core.payment_verification import PaymentVerificationService
from fulfillment_core.database.connection import get_session_factory
from fulfillment_core.database.models import (
    AuditEntry,
    IncidentSeverity,
    Order,
    PaymentStatus,
    PaymentTransaction,
    TransactionStatus,
    utcnow,
)
from fulfillment_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

RECONCILIATION_ACTION = "payment_reconciliation"
UNPAID_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.FAILED.value)


@dataclass
class HealthSnapshot:
    """Consistency counters for alerting."""

    inconsistent_orders: int
    stale_queued: int
    unprocessed_transactions: int
    reconciliations_24h: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class LedgerCandidate:
    """A successful ledger row whose order is still unpaid."""

    transaction_id: int
    order_id: uuid.UUID
    provider_reference: str
    provider: str
    amount: Decimal
    currency: str


class ReconciliationMonitor:
    """
    Heals ledger/order divergence and reports consistency counters.

    Shares the payment unit, lock manager and queue with payment verification.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        payments: PaymentVerificationService | None = None,
        lock_manager: LockManager | None = None,
        queue: NotificationQueue | None = None,
        audit: AuditLogger | None = None,
        settings: Settings | None = None,
    ) -> None:
        """
        Initialize reconciliation monitor.

        Args:
            session_factory: Session factory (defaults to the global one)
            payments: Payment verification service providing the atomic unit
            lock_manager: Order lock manager
            queue: Notification queue (for the staleness counter)
            audit: Audit logger
            settings: Batch limit, tolerance and staleness threshold
        """
        self.session_factory = session_factory or get_session_factory()
        self.settings = settings or get_settings()
        self.audit = audit or AuditLogger(self.session_factory)
        self.lock_manager = lock_manager or LockManager(self.session_factory, self.audit, self.settings)
        self.queue = queue or NotificationQueue(self.session_factory, self.audit, self.settings)
        self.payments = payments or PaymentVerificationService(
            self.session_factory, self.lock_manager, self.queue, self.audit, self.settings
        )

        logger.info(
            "reconciliation_monitor_initialized",
            batch_limit=self.settings.reconciliation_batch_limit,
        )

    def _unpaid_success_filter(self):
        return (
            PaymentTransaction.status == TransactionStatus.SUCCESS.value,
            Order.payment_status.in_(UNPAID_STATUSES),
        )

    def _amount_matches(self):
        tolerance = self.settings.payment_amount_tolerance
        return and_(
            PaymentTransaction.amount >= Order.total_amount - tolerance,
            PaymentTransaction.amount <= Order.total_amount + tolerance,
            PaymentTransaction.currency == Order.currency,
        )

    async def _candidates(
        self,
        db: AsyncSession,
        limit: int,
        order_id: uuid.UUID | None = None,
        matching: bool = True,
    ) -> List[LedgerCandidate]:
        """
        Unapplied successful ledger rows, one per order.

        `matching` selects rows whose amount and currency fit the order; the rest
        can only be flagged. Rows never attempted come first, then the least
        recently rejected, so unhealable orders cannot starve the rest.
        """
        amount_filter = self._amount_matches() if matching else not_(self._amount_matches())
        stmt = (
            select(PaymentTransaction)
            .join(Order, PaymentTransaction.order_id == Order.id)
            .where(*self._unpaid_success_filter(), amount_filter)
            .order_by(
                PaymentTransaction.reconciliation_attempted_at.is_not(None),
                PaymentTransaction.reconciliation_attempted_at,
                PaymentTransaction.created_at,
                PaymentTransaction.id,
            )
            .limit(limit)
        )
        if order_id is not None:
            stmt = stmt.where(Order.id == order_id)

        candidates: Dict[uuid.UUID, LedgerCandidate] = {}
        for tx in (await db.execute(stmt)).scalars().all():
            # One heal per order even if it has several successful rows
            candidates.setdefault(
                tx.order_id,
                LedgerCandidate(
                    transaction_id=tx.id,
                    order_id=tx.order_id,
                    provider_reference=tx.provider_reference,
                    provider=tx.provider,
                    amount=Decimal(tx.amount),
                    currency=tx.currency,
                ),
            )
        return list(candidates.values())

    async def _mark_attempted(self, candidate: LedgerCandidate) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(PaymentTransaction)
                .where(PaymentTransaction.id == candidate.transaction_id)
                .values(reconciliation_attempted_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def needs_reconciliation(self, order_id: uuid.UUID) -> bool:
        """
        Whether the order has a successful ledger row but is not marked paid.

        Raises:
            OrderNotFound: Unknown order
        """
        async with self.session_factory() as db:
            if await db.get(Order, order_id) is None:
                raise OrderNotFound(f"Order {order_id} not found", details={"order_id": str(order_id)})
            count = (
                await db.execute(
                    select(func.count())
                    .select_from(PaymentTransaction)
                    .join(Order, PaymentTransaction.order_id == Order.id)
                    .where(Order.id == order_id, *self._unpaid_success_filter())
                )
            ).scalar_one()
        return count > 0

    async def reconcile_batch(
        self, limit: int | None = None, actor_id: str = "reconciliation"
    ) -> Tuple[int, int]:
        """
        Heal up to `limit` inconsistent orders.

        Args:
            limit: Maximum orders examined (defaults to reconciliation_batch_limit)
            actor_id: Recorded as the actor of each heal

        Ledger rows whose amount or currency disagrees with the order are never
        healed. Up to `limit` of them are flagged with a critical incident per run
        and do not count as processed.

        Returns:
            Tuple[int, int]: (processed, updated)
        """
        limit = self.settings.reconciliation_batch_limit if limit is None else limit
        if limit <= 0:
            raise InvalidRequest("Reconciliation limit must be positive", details={"limit": limit})

        started = time.perf_counter()
        async with self.session_factory() as db:
            candidates = await self._candidates(db, limit)
            mismatched = await self._candidates(db, limit, matching=False)

        processed = 0
        updated = 0
        healed = set()
        for candidate in candidates:
            processed += 1
            if await self._heal(candidate, actor_id):
                updated += 1
                healed.add(candidate.order_id)

        flagged = 0
        for candidate in mismatched:
            if candidate.order_id in healed:
                continue
            if await self._heal(candidate, actor_id):
                # Inside the tolerance after all (database rounding)
                updated += 1
            else:
                flagged += 1

        duration = time.perf_counter() - started
        await self.audit.record_detached(
            "reconciliation_batch_completed",
            f"Reconciliation examined {processed} orders, healed {updated}, flagged {flagged}",
            category="reconciliation",
            actor_id=actor_id,
            new_values={"processed": processed, "updated": updated, "flagged": flagged, "limit": limit},
        )
        metrics.record_reconciliation(processed, updated, duration)
        logger.info(
            "reconciliation_batch_completed",
            processed=processed,
            updated=updated,
            flagged=flagged,
            limit=limit,
            duration_seconds=duration,
        )
        return processed, updated

    async def reconcile_order(self, order_id: uuid.UUID, actor_id: str = "reconciliation") -> bool:
        """
        Heal a single order if its ledger shows an unapplied success.

        Returns:
            bool: True if the order was updated

        Raises:
            OrderNotFound: Unknown order
        """
        async with self.session_factory() as db:
            if await db.get(Order, order_id) is None:
                raise OrderNotFound(f"Order {order_id} not found", details={"order_id": str(order_id)})
            candidates = await self._candidates(db, 1, order_id=order_id)
            if not candidates:
                candidates = await self._candidates(db, 1, order_id=order_id, matching=False)

        if not candidates:
            return False
        return await self._heal(candidates[0], actor_id)

    async def _heal(self, candidate: LedgerCandidate, actor_id: str) -> bool:
        async with self.session_factory() as db:
            order = await db.get(Order, candidate.order_id)
        if order is None:
            return False

        expected = Decimal(order.total_amount)
        tolerance = self.settings.payment_amount_tolerance
        if abs(candidate.amount - expected) > tolerance or candidate.currency != order.currency:
            # Never heal toward a ledger amount the order does not expect
            await self.audit.incident_detached(
                "reconciliation_amount_mismatch",
                f"Ledger row {candidate.provider_reference} reports {candidate.amount} "
                f"{candidate.currency}, order {order.order_number} expects {expected} {order.currency}",
                severity=IncidentSeverity.CRITICAL,
                reference=candidate.provider_reference,
                order_id=order.id,
                expected_amount=expected,
                received_amount=candidate.amount,
            )
            logger.error(
                "reconciliation_skipped_amount_mismatch",
                order_id=str(order.id),
                provider_reference=candidate.provider_reference,
            )
            await self._mark_attempted(candidate)
            return False

        holder_id = f"reconciliation:{candidate.order_id}:{uuid.uuid4().hex[:8]}"
        try:
            lock_outcome = await self.lock_manager.acquire_or_raise(candidate.order_id, holder_id)
        except LockConflict as e:
            logger.info(
                "reconciliation_skipped_locked",
                order_id=str(candidate.order_id),
                holder_id=e.holder_id,
            )
            await self._mark_attempted(candidate)
            return False

        try:
            async with self.session_factory() as db:
                await self.payments.apply_payment(
                    db,
                    candidate.order_id,
                    candidate.provider_reference,
                    candidate.provider,
                    candidate.amount,
                    candidate.currency,
                    None,
                    actor_id,
                    action=RECONCILIATION_ACTION,
                )
                await db.commit()
        except AlreadyProcessed:
            return False
        except (InsufficientInventory, InvalidRequest) as e:
            await self.audit.record_detached(
                "reconciliation_failed",
                e.message,
                category="reconciliation",
                entity_id=candidate.order_id,
                actor_id=actor_id,
                new_values={"error": e.code, "provider_reference": candidate.provider_reference},
            )
            logger.warning(
                "reconciliation_heal_failed",
                order_id=str(candidate.order_id),
                error=e.code,
            )
            await self._mark_attempted(candidate)
            return False
        finally:
            if lock_outcome == ACQUIRED:
                await self.lock_manager.release(candidate.order_id, holder_id)

        logger.info(
            "order_reconciled",
            order_id=str(candidate.order_id),
            provider_reference=candidate.provider_reference,
            actor_id=actor_id,
        )
        return True

    async def health_snapshot(self) -> HealthSnapshot:
        """
        Count consistency problems and update the matching gauges.

        Returns:
            HealthSnapshot: Current counters
        """
        since = utcnow() - timedelta(hours=24)
        async with self.session_factory() as db:
            inconsistent = (
                await db.execute(
                    select(func.count(func.distinct(Order.id)))
                    .select_from(PaymentTransaction)
                    .join(Order, PaymentTransaction.order_id == Order.id)
                    .where(*self._unpaid_success_filter())
                )
            ).scalar_one()
            unprocessed = (
                await db.execute(
                    select(func.count())
                    .select_from(PaymentTransaction)
                    .where(
                        PaymentTransaction.status == TransactionStatus.SUCCESS.value,
                        PaymentTransaction.processed_at.is_(None),
                    )
                )
            ).scalar_one()
            reconciliations = (
                await db.execute(
                    select(func.count())
                    .select_from(AuditEntry)
                    .where(
                        AuditEntry.action == RECONCILIATION_ACTION,
                        AuditEntry.created_at >= since,
                    )
                )
            ).scalar_one()

        depth = await self.queue.queue_depth()
        snapshot = HealthSnapshot(
            inconsistent_orders=inconsistent,
            stale_queued=depth["stale_queued"],
            unprocessed_transactions=unprocessed,
            reconciliations_24h=reconciliations,
        )
        metrics.set_consistency_gauges(inconsistent, unprocessed)
        logger.info("health_snapshot_taken", **snapshot.to_dict())
        return snapshot
