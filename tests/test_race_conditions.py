"""
Race condition tests for concurrent payment verification and admin transitions.

Tests idempotency and order locking under concurrent load.
"""
import asyncio
from decimal import Decimal

import pytest

from fulfillment_core.core.errors import InvalidTransition, LockConflict
from fulfillment_core.core.payment_verification import PaymentVerificationService, VerificationResult
from fulfillment_core.database.models import (
    NotificationEvent,
    OrderStatus,
    PaymentStatus,
    PaymentTransaction,
)


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_verification_same_payment(
        self, services, fetch, reload_order, stock_of, make_order
    ) -> None:
        """
        Test concurrent verification of the same payment.

        Exactly one call applies it; the rest see it as already processed.
        """
        order = await make_order(order_number="ORD-RACE-1", items=[(20, 4)])

        results = await asyncio.gather(
            *(
                services.payments.verify_payment(
                    "ORD-RACE-1", "ref_race_1", "paystack", Decimal("5000.00"), "NGN"
                )
                for _ in range(6)
            ),
            return_exceptions=True,
        )

        outcomes = [r.status if isinstance(r, VerificationResult) else type(r).__name__ for r in results]
        assert outcomes.count("verified") == 1
        assert set(outcomes) <= {"verified", "already_processed", "LockConflict"}

        stored = await reload_order(order.id)
        assert stored.payment_status == PaymentStatus.PAID.value
        assert stored.status == OrderStatus.CONFIRMED.value
        assert await stock_of(order.id) == [16]
        assert len(await fetch(PaymentTransaction)) == 1
        assert len(await fetch(NotificationEvent)) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_verification_different_references(
        self, services, fetch, stock_of, make_order
    ) -> None:
        """
        Two different successful payments for one order race.

        Only the first applied counts; stock is decremented once.
        """
        order = await make_order(order_number="ORD-RACE-2", items=[(5, 1)])

        results = await asyncio.gather(
            services.payments.verify_payment("ORD-RACE-2", "ref_a", "paystack", "5000.00", "NGN"),
            services.payments.verify_payment("ORD-RACE-2", "ref_b", "paystack", "5000.00", "NGN"),
            return_exceptions=True,
        )

        statuses = sorted(r.status for r in results if isinstance(r, VerificationResult))
        assert statuses.count("verified") == 1
        assert await stock_of(order.id) == [4]

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_admin_transitions(self, services, reload_order, make_order) -> None:
        """
        Two administrators move the same order at once.

        One wins; the other is refused with a lock conflict or, having waited,
        an invalid transition. The order never skips a state.
        """
        order = await make_order(status=OrderStatus.CONFIRMED)

        results = await asyncio.gather(
            services.orders.transition_order(order.id, "preparing", "admin-1"),
            services.orders.transition_order(order.id, "cancelled", "admin-2"),
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(succeeded) >= 1
        assert all(isinstance(e, (LockConflict, InvalidTransition)) for e in failed)
        assert (await reload_order(order.id)).status in {"preparing", "cancelled"}

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_verification_waits_out_admin_lock(
        self, services, reload_order, make_order
    ) -> None:
        """A payment arriving while an admin holds the lock succeeds once it is released."""
        order = await make_order(order_number="ORD-RACE-3")
        await services.locks.acquire(order.id, "admin-1")

        async def release_soon() -> None:
            await asyncio.sleep(0.2)
            await services.locks.release(order.id, "admin-1")

        result, _ = await asyncio.gather(
            services.payments.verify_payment(
                "ORD-RACE-3", "ref_wait", "paystack", Decimal("5000.00"), "NGN"
            ),
            release_soon(),
        )

        assert result.status == "verified"
        assert (await reload_order(order.id)).payment_status == "paid"

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_verification_gives_up_on_held_lock(
        self, services, session_factory, test_settings, make_order
    ) -> None:
        """A lock held through every retry surfaces as LockConflict."""
        settings = test_settings.model_copy(update={"payment_lock_attempts": 2})
        payments = PaymentVerificationService(
            session_factory, services.locks, services.queue, services.audit, settings
        )
        order = await make_order(order_number="ORD-RACE-4")
        await services.locks.acquire(order.id, "admin-1", ttl_seconds=60)

        with pytest.raises(LockConflict):
            await payments.verify_payment(
                "ORD-RACE-4", "ref_blocked", "paystack", Decimal("5000.00"), "NGN"
            )
