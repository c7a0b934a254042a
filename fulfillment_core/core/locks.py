"""
Advisory order locks.

Short-lived leases stored in the `order_locks` table, one row per lock key
(`order:<order_id>`). Acquisition never blocks:
- the current holder re-acquiring renews the lease
- a released or expired row is taken over with a conditional UPDATE
- otherwise a new row is INSERTed; a unique violation means someone else holds it

Locks only constrain callers that take them. Anything that read-modify-writes an
order takes the lease first.
"""
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment_core.config import Settings, get_settings
from fulfillment_core.core.audit import AuditLogger
from fulfillment_core.core.errors import InvalidRequest, LockConflict
from fulfillment_core.database.connection import get_session_factory
from fulfillment_core.database.models import OrderLock, as_utc, utcnow
from fulfillment_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ACQUIRED = "acquired"
RENEWED = "renewed"
CONFLICT = "conflict"


def lock_key_for(order_id: uuid.UUID | str) -> str:
    """Derive the lock name for an order."""
    return f"order:{order_id}"


@dataclass
class LockInfo:
    """Snapshot of an order's lease."""

    order_id: uuid.UUID
    lock_key: str
    is_locked: bool
    holder_id: str | None = None
    acquired_at: datetime | None = None
    expires_at: datetime | None = None
    released_at: datetime | None = None
    release_reason: str | None = None
    renewal_count: int = 0
    seconds_remaining: float = 0.0


class LockManager:
    """
    Acquires, renews, releases and sweeps order leases.

    Every operation runs in its own short transaction; a lease is never held
    inside the caller's unit of work.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        audit: AuditLogger | None = None,
        settings: Settings | None = None,
    ) -> None:
        """
        Initialize lock manager.

        Args:
            session_factory: Session factory (defaults to the global one)
            audit: Audit logger for lock operations
            settings: Settings for default and maximum TTL
        """
        self.session_factory = session_factory or get_session_factory()
        self.audit = audit or AuditLogger(self.session_factory)
        self.settings = settings or get_settings()

        logger.info(
            "lock_manager_initialized",
            default_ttl=self.settings.lock_default_ttl_seconds,
            max_ttl=self.settings.lock_max_ttl_seconds,
        )

    def _resolve_ttl(self, ttl_seconds: float | None) -> float:
        ttl = self.settings.lock_default_ttl_seconds if ttl_seconds is None else ttl_seconds
        if ttl <= 0 or ttl > self.settings.lock_max_ttl_seconds:
            raise InvalidRequest(
                f"Lock TTL must be between 0 and {self.settings.lock_max_ttl_seconds} seconds",
                details={"ttl_seconds": ttl},
            )
        return ttl

    async def _try_acquire(
        self, order_id: uuid.UUID, holder_id: str, ttl_seconds: float | None
    ) -> str:
        """
        Attempt to take or renew the lease.

        Returns:
            str: "acquired", "renewed" or "conflict"
        """
        if not holder_id or not holder_id.strip():
            raise InvalidRequest("holder_id is required")
        ttl = self._resolve_ttl(ttl_seconds)
        key = lock_key_for(order_id)
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl)

        async with self.session_factory() as db:
            renewed = await db.execute(
                update(OrderLock)
                .where(
                    OrderLock.lock_key == key,
                    OrderLock.holder_id == holder_id,
                    OrderLock.released_at.is_(None),
                    OrderLock.expires_at > now,
                )
                .values(expires_at=expires_at, renewal_count=OrderLock.renewal_count + 1)
                .execution_options(synchronize_session=False)
            )
            if renewed.rowcount == 1:
                outcome = RENEWED
            else:
                taken_over = await db.execute(
                    update(OrderLock)
                    .where(
                        OrderLock.lock_key == key,
                        or_(OrderLock.released_at.is_not(None), OrderLock.expires_at <= now),
                    )
                    .values(
                        holder_id=holder_id,
                        acquired_at=now,
                        expires_at=expires_at,
                        released_at=None,
                        release_reason=None,
                        renewal_count=0,
                    )
                    .execution_options(synchronize_session=False)
                )
                if taken_over.rowcount == 1:
                    outcome = ACQUIRED
                else:
                    try:
                        async with db.begin_nested():
                            db.add(
                                OrderLock(
                                    order_id=order_id,
                                    lock_key=key,
                                    holder_id=holder_id,
                                    acquired_at=now,
                                    expires_at=expires_at,
                                )
                            )
                        outcome = ACQUIRED
                    except IntegrityError:
                        outcome = CONFLICT

            if outcome != CONFLICT:
                await self.audit.record(
                    db,
                    f"lock_{outcome}",
                    f"Order lock {outcome} by {holder_id}",
                    category="lock",
                    entity_id=order_id,
                    actor_id=holder_id,
                    new_values={"lock_key": key, "expires_at": expires_at, "ttl_seconds": ttl},
                )
                await db.commit()

        metrics.record_lock_operation("acquire", outcome)
        logger.info(
            "order_lock_acquire_attempted",
            order_id=str(order_id),
            holder_id=holder_id,
            outcome=outcome,
            ttl_seconds=ttl,
        )
        return outcome

    async def acquire(
        self, order_id: uuid.UUID, holder_id: str, ttl_seconds: float | None = None
    ) -> bool:
        """
        Take the order's lease without waiting.

        Args:
            order_id: Order to lock
            holder_id: Identity of the caller
            ttl_seconds: Lease duration (defaults to lock_default_ttl_seconds)

        Returns:
            bool: True if the caller now holds the lease (new or renewed)

        Raises:
            InvalidRequest: TTL out of range or empty holder
        """
        return await self._try_acquire(order_id, holder_id, ttl_seconds) != CONFLICT

    async def acquire_or_raise(
        self, order_id: uuid.UUID, holder_id: str, ttl_seconds: float | None = None
    ) -> str:
        """
        Take the lease or raise LockConflict with the current holder's details.

        Returns:
            str: "acquired" or "renewed"
        """
        outcome = await self._try_acquire(order_id, holder_id, ttl_seconds)
        if outcome == CONFLICT:
            current = await self.info(order_id)
            raise LockConflict(
                order_id,
                holder_id=current.holder_id if current.is_locked else None,
                seconds_remaining=current.seconds_remaining if current.is_locked else None,
            )
        return outcome

    async def release(
        self, order_id: uuid.UUID, holder_id: str, reason: str = "released"
    ) -> bool:
        """
        Release a lease held by `holder_id`.

        Double release and release by a non-holder are no-ops.

        Returns:
            bool: True only if this call released the lease
        """
        key = lock_key_for(order_id)
        now = utcnow()

        async with self.session_factory() as db:
            row = (
                await db.execute(select(OrderLock).where(OrderLock.lock_key == key))
            ).scalar_one_or_none()
            if row is None or row.holder_id != holder_id or row.released_at is not None:
                metrics.record_lock_operation("release", "noop")
                logger.info(
                    "order_lock_release_noop",
                    order_id=str(order_id),
                    holder_id=holder_id,
                    current_holder=row.holder_id if row else None,
                )
                return False

            result = await db.execute(
                update(OrderLock)
                .where(
                    OrderLock.lock_key == key,
                    OrderLock.holder_id == holder_id,
                    OrderLock.released_at.is_(None),
                )
                .values(released_at=now, release_reason=reason)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                metrics.record_lock_operation("release", "noop")
                return False

            await self.audit.record(
                db,
                "lock_released",
                f"Order lock released by {holder_id}",
                category="lock",
                entity_id=order_id,
                actor_id=holder_id,
                new_values={"lock_key": key, "reason": reason},
            )
            await db.commit()
            held_seconds = (now - as_utc(row.acquired_at)).total_seconds()

        metrics.record_lock_operation("release", "released", held_seconds=held_seconds)
        logger.info(
            "order_lock_released",
            order_id=str(order_id),
            holder_id=holder_id,
            held_seconds=held_seconds,
        )
        return True

    async def force_release(self, order_id: uuid.UUID, actor_id: str) -> bool:
        """
        Release the lease regardless of holder (administrator override).

        Returns:
            bool: True if an active lease was released
        """
        key = lock_key_for(order_id)
        now = utcnow()

        async with self.session_factory() as db:
            row = (
                await db.execute(select(OrderLock).where(OrderLock.lock_key == key))
            ).scalar_one_or_none()
            if row is None or row.released_at is not None:
                metrics.record_lock_operation("force_release", "noop")
                return False

            previous_holder = row.holder_id
            await db.execute(
                update(OrderLock)
                .where(OrderLock.lock_key == key, OrderLock.released_at.is_(None))
                .values(released_at=now, release_reason="force_released")
                .execution_options(synchronize_session=False)
            )
            await self.audit.record(
                db,
                "lock_force_released",
                f"Order lock held by {previous_holder} force released by {actor_id}",
                category="lock",
                entity_id=order_id,
                actor_id=actor_id,
                old_values={"holder_id": previous_holder, "expires_at": row.expires_at},
            )
            await db.commit()

        metrics.record_lock_operation("force_release", "released")
        logger.warning(
            "order_lock_force_released",
            order_id=str(order_id),
            previous_holder=previous_holder,
            actor_id=actor_id,
        )
        return True

    async def info(self, order_id: uuid.UUID) -> LockInfo:
        """
        Describe the order's lease.

        Returns:
            LockInfo: is_locked is False when there is no row, or it is released or expired
        """
        key = lock_key_for(order_id)
        async with self.session_factory() as db:
            row = (
                await db.execute(select(OrderLock).where(OrderLock.lock_key == key))
            ).scalar_one_or_none()

        if row is None:
            return LockInfo(order_id=order_id, lock_key=key, is_locked=False)

        now = utcnow()
        expires_at = as_utc(row.expires_at)
        is_locked = row.released_at is None and expires_at > now
        return LockInfo(
            order_id=order_id,
            lock_key=key,
            is_locked=is_locked,
            holder_id=row.holder_id,
            acquired_at=as_utc(row.acquired_at),
            expires_at=expires_at,
            released_at=as_utc(row.released_at),
            release_reason=row.release_reason,
            renewal_count=row.renewal_count,
            seconds_remaining=max((expires_at - now).total_seconds(), 0.0) if is_locked else 0.0,
        )

    async def sweep_expired(self) -> int:
        """
        Mark every expired, unreleased lease as released.

        Returns:
            int: Number of leases swept
        """
        now = utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                update(OrderLock)
                .where(OrderLock.released_at.is_(None), OrderLock.expires_at <= now)
                .values(released_at=now, release_reason="expired")
                .execution_options(synchronize_session=False)
            )
            swept = result.rowcount or 0
            if swept:
                await self.audit.record(
                    db,
                    "locks_expired_swept",
                    f"Swept {swept} expired order locks",
                    category="lock",
                    new_values={"swept": swept},
                )
            await db.commit()

        if swept:
            metrics.record_lock_operation("sweep", "expired")
            logger.info("order_locks_swept", swept=swept)
        return swept

    @asynccontextmanager
    async def hold(
        self, order_id: uuid.UUID, holder_id: str, ttl_seconds: float | None = None
    ) -> AsyncIterator[str]:
        """
        Hold the lease for the duration of a block.

        Only a lease acquired here is released on exit; a renewed one still
        belongs to the enclosing holder.

        Raises:
            LockConflict: Another holder has an active lease
        """
        started = time.monotonic()
        outcome = await self.acquire_or_raise(order_id, holder_id, ttl_seconds)
        try:
            yield outcome
        finally:
            if outcome == ACQUIRED:
                await self.release(order_id, holder_id)
                logger.debug(
                    "order_lock_hold_finished",
                    order_id=str(order_id),
                    holder_id=holder_id,
                    duration_seconds=time.monotonic() - started,
                )
