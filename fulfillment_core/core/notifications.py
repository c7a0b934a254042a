"""
Durable notification queue.

Rows in `notification_events` are:
- collapsed by a deterministic dedupe key (event type, recipient, template,
  order, hour bucket) so bursts of identical requests produce one row
- claimed queued -> processing by exactly one worker, highest priority first
- marked sent, or retried with backoff until the retry ceiling, then failed

A janitor requeues rows stuck in processing after a worker crash. Failed rows
only come back through an explicit administrator requeue.
"""
import hashlib
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List

import structlog
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment_core.config import Settings, get_settings
from fulfillment_core.core.audit import AuditLogger, jsonable
from fulfillment_core.core.errors import (
    DeliveryFailurePermanent,
    InvalidRequest,
    NotificationNotFound,
)
from fulfillment_core.database.connection import get_session_factory
from fulfillment_core.database.models import (
    NotificationEvent,
    NotificationPriority,
    NotificationStatus,
    utcnow,
)
from fulfillment_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PRIORITY_RANK = {
    NotificationPriority.HIGH.value: 0,
    NotificationPriority.NORMAL.value: 1,
    NotificationPriority.LOW.value: 2,
}

_SCALARS = (str, int, float, bool, type(None))


def _check_json_tree(value: Any, path: str) -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            _check_json_tree(item, f"{path}.{key}")
    elif isinstance(value, list):
        for index, item in enumerate(value):
            _check_json_tree(item, f"{path}[{index}]")
    elif not isinstance(value, _SCALARS):
        raise ValueError(f"Unsupported template variable type at {path}: {type(value).__name__}")


class NotificationRequest(BaseModel):
    """A notification to enqueue, validated before it reaches the table."""

    event_type: str = Field(..., min_length=1, max_length=100)
    recipient: str = Field(..., min_length=1, max_length=255)
    template_key: str = Field(..., min_length=1, max_length=100)
    variables: Dict[str, Any] = Field(default_factory=dict)
    order_id: uuid.UUID | None = None
    priority: NotificationPriority = NotificationPriority.NORMAL
    scheduled_at: datetime | None = None

    @field_validator("recipient")
    @classmethod
    def validate_recipient(cls, v: str) -> str:
        """Recipients are stored trimmed."""
        v = v.strip()
        if not v:
            raise ValueError("Recipient must not be blank")
        return v

    @field_validator("variables", mode="before")
    @classmethod
    def validate_variables(cls, v: Any) -> Dict[str, Any]:
        """Template variables must be a JSON object of plain values."""
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("Template variables must be a mapping")
        converted = jsonable(v)
        _check_json_tree(converted, "variables")
        return converted


def compute_dedupe_key(
    event_type: str,
    recipient: str,
    template_key: str,
    order_id: uuid.UUID | None,
    at: datetime | None = None,
) -> str:
    """
    Deterministic dedupe key for a notification.

    The hour bucket lets a legitimate re-send through after the hour while
    collapsing bursts inside it.

    Args:
        event_type: Event type
        recipient: Recipient address (compared case-insensitively)
        template_key: Template identifier
        order_id: Related order, if any
        at: Time used for the bucket (defaults to now, UTC)

    Returns:
        str: 64 character hex digest
    """
    bucket = (at or utcnow()).strftime("%Y-%m-%dT%H")
    material = "|".join(
        [
            event_type,
            recipient.strip().lower(),
            template_key,
            str(order_id) if order_id else "",
            bucket,
        ]
    )
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class NotificationQueue:
    """
    Enqueue, claim and settle notification events.

    Enqueue can join the caller's transaction so the notification commits with
    the state change that caused it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        audit: AuditLogger | None = None,
        settings: Settings | None = None,
    ) -> None:
        """
        Initialize notification queue.

        Args:
            session_factory: Session factory (defaults to the global one)
            audit: Audit logger for dead letters and manual requeues
            settings: Retry ceiling, backoff and timeouts
        """
        self.session_factory = session_factory or get_session_factory()
        self.audit = audit or AuditLogger(self.session_factory)
        self.settings = settings or get_settings()

        logger.info(
            "notification_queue_initialized",
            max_retries=self.settings.notification_max_retries,
            retry_delays_minutes=self.settings.notification_retry_delays_minutes,
        )

    async def enqueue(
        self, request: NotificationRequest, db: AsyncSession | None = None
    ) -> uuid.UUID:
        """
        Insert a notification, or refresh the existing row with the same dedupe key.

        A row that was already sent is left untouched.

        Args:
            request: Validated notification
            db: Caller's session; when omitted the insert commits on its own

        Returns:
            uuid.UUID: Id of the new or existing row
        """
        if db is not None:
            return await self._enqueue(db, request)

        async with self.session_factory() as session:
            event_id = await self._enqueue(session, request)
            await session.commit()
            return event_id

    async def _enqueue(self, db: AsyncSession, request: NotificationRequest) -> uuid.UUID:
        dedupe_key = compute_dedupe_key(
            request.event_type, request.recipient, request.template_key, request.order_id
        )

        existing = await self._get_by_dedupe_key(db, dedupe_key)
        if existing is None:
            event = NotificationEvent(
                id=uuid.uuid4(),
                event_type=request.event_type,
                recipient=request.recipient,
                template_key=request.template_key,
                variables=request.variables,
                status=NotificationStatus.QUEUED.value,
                dedupe_key=dedupe_key,
                order_id=request.order_id,
                priority=request.priority.value,
                scheduled_at=request.scheduled_at,
            )
            try:
                async with db.begin_nested():
                    db.add(event)
            except IntegrityError:
                # Lost an insert race for the same key
                existing = await self._get_by_dedupe_key(db, dedupe_key)
                if existing is None:
                    raise
            else:
                metrics.record_notification_enqueued(request.event_type, "created")
                logger.info(
                    "notification_enqueued",
                    event_id=str(event.id),
                    event_type=request.event_type,
                    template_key=request.template_key,
                    order_id=str(request.order_id) if request.order_id else None,
                    priority=request.priority.value,
                )
                return event.id

        if existing.status != NotificationStatus.SENT.value:
            existing.variables = request.variables
            existing.updated_at = utcnow()

        metrics.record_notification_enqueued(request.event_type, "deduplicated")
        logger.info(
            "notification_deduplicated",
            event_id=str(existing.id),
            event_type=request.event_type,
            status=existing.status,
        )
        return existing.id

    async def _get_by_dedupe_key(
        self, db: AsyncSession, dedupe_key: str
    ) -> NotificationEvent | None:
        result = await db.execute(
            select(NotificationEvent).where(NotificationEvent.dedupe_key == dedupe_key)
        )
        return result.scalar_one_or_none()

    async def get(self, event_id: uuid.UUID) -> NotificationEvent:
        """
        Fetch one event.

        Raises:
            NotificationNotFound: Unknown id
        """
        async with self.session_factory() as db:
            event = await db.get(NotificationEvent, event_id)
        if event is None:
            raise NotificationNotFound(f"Notification {event_id} not found")
        return event

    async def claim_batch(self, limit: int, worker_id: str | None = None) -> List[NotificationEvent]:
        """
        Claim up to `limit` due events for one worker.

        Rows are picked by priority then age and moved queued -> processing.
        Rows another transaction is examining are skipped rather than waited on,
        and every move is conditional on the row still being queued, so two
        callers never receive the same row.

        Args:
            limit: Maximum number of events to claim
            worker_id: Worker identity, for logs

        Returns:
            List[NotificationEvent]: Claimed events (detached)
        """
        if limit <= 0:
            raise InvalidRequest("Claim limit must be positive", details={"limit": limit})

        now = utcnow()
        priority_rank = case(PRIORITY_RANK, value=NotificationEvent.priority, else_=len(PRIORITY_RANK))

        async with self.session_factory() as db:
            candidates = (
                await db.execute(
                    select(NotificationEvent.id)
                    .where(
                        NotificationEvent.status == NotificationStatus.QUEUED.value,
                        or_(
                            NotificationEvent.scheduled_at.is_(None),
                            NotificationEvent.scheduled_at <= now,
                        ),
                    )
                    .order_by(priority_rank, NotificationEvent.created_at)
                    .limit(limit)
                    .with_for_update(skip_locked=True)
                )
            ).scalars().all()

            claimed_ids = []
            for event_id in candidates:
                result = await db.execute(
                    update(NotificationEvent)
                    .where(
                        NotificationEvent.id == event_id,
                        NotificationEvent.status == NotificationStatus.QUEUED.value,
                    )
                    .values(
                        status=NotificationStatus.PROCESSING.value,
                        processing_started_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed_ids.append(event_id)

            events: List[NotificationEvent] = []
            if claimed_ids:
                events = list(
                    (
                        await db.execute(
                            select(NotificationEvent)
                            .where(NotificationEvent.id.in_(claimed_ids))
                            .order_by(priority_rank, NotificationEvent.created_at)
                            .execution_options(populate_existing=True)
                        )
                    ).scalars().all()
                )
            await db.commit()

        if events:
            logger.info("notifications_claimed", count=len(events), worker_id=worker_id)
        return events

    async def mark_sent(self, event_id: uuid.UUID) -> bool:
        """
        Settle a processing event as sent.

        Returns:
            bool: False if the event was not in processing (already settled or requeued)

        Raises:
            NotificationNotFound: Unknown id
        """
        now = utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                update(NotificationEvent)
                .where(
                    NotificationEvent.id == event_id,
                    NotificationEvent.status == NotificationStatus.PROCESSING.value,
                )
                .values(
                    status=NotificationStatus.SENT.value,
                    sent_at=now,
                    last_error=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                exists = await db.get(NotificationEvent, event_id)
                if exists is None:
                    raise NotificationNotFound(f"Notification {event_id} not found")
                logger.warning(
                    "notification_mark_sent_ignored", event_id=str(event_id), status=exists.status
                )
                return False
            await db.commit()

        metrics.record_notification_delivery("sent")
        logger.info("notification_sent", event_id=str(event_id))
        return True

    async def mark_failed(self, event_id: uuid.UUID, reason: str) -> str:
        """
        Record a failed delivery attempt.

        The event goes back to queued with a backoff delay, or to failed once
        `notification_max_retries` attempts have failed. Permanent failures are
        written to the audit log as dead letters.

        Args:
            event_id: Event that failed
            reason: Delivery error

        Returns:
            str: Resulting status (queued, failed, or the unchanged status if not processing)

        Raises:
            NotificationNotFound: Unknown id
        """
        now = utcnow()
        async with self.session_factory() as db:
            event = (
                await db.execute(
                    select(NotificationEvent)
                    .where(NotificationEvent.id == event_id)
                    .with_for_update()
                )
            ).scalar_one_or_none()
            if event is None:
                raise NotificationNotFound(f"Notification {event_id} not found")

            if event.status != NotificationStatus.PROCESSING.value:
                logger.warning(
                    "notification_mark_failed_ignored", event_id=str(event_id), status=event.status
                )
                return event.status

            event.retry_count += 1
            event.last_error = reason[:2000]
            event.processing_started_at = None
            event.updated_at = now

            if event.retry_count >= self.settings.notification_max_retries:
                event.status = NotificationStatus.FAILED.value
                event.failed_at = now
                permanent = DeliveryFailurePermanent(
                    f"Notification {event_id} failed {event.retry_count} times",
                    details={
                        "event_type": event.event_type,
                        "template_key": event.template_key,
                        "retry_count": event.retry_count,
                        "last_error": event.last_error,
                    },
                )
                await self.audit.record(
                    db,
                    "notification_dead_lettered",
                    permanent.message,
                    category="notification",
                    entity_id=event.id,
                    new_values=permanent.to_dict(),
                )
                outcome = "failed"
            else:
                delays = self.settings.notification_retry_delays_minutes
                delay = delays[min(event.retry_count - 1, len(delays) - 1)]
                event.status = NotificationStatus.QUEUED.value
                event.scheduled_at = now + timedelta(minutes=delay)
                outcome = "retry"

            status = event.status
            retry_count = event.retry_count
            await db.commit()

        metrics.record_notification_delivery(outcome)
        log = logger.error if outcome == "failed" else logger.warning
        log(
            "notification_delivery_failed",
            event_id=str(event_id),
            retry_count=retry_count,
            status=status,
            reason=reason,
        )
        return status

    async def requeue_stuck(self, timeout_seconds: int | None = None) -> int:
        """
        Return processing rows older than the timeout to queued.

        Args:
            timeout_seconds: Processing age that counts as stuck
                (defaults to notification_processing_timeout_seconds)

        Returns:
            int: Number of rows requeued
        """
        timeout = (
            self.settings.notification_processing_timeout_seconds
            if timeout_seconds is None
            else timeout_seconds
        )
        now = utcnow()
        cutoff = now - timedelta(seconds=timeout)

        async with self.session_factory() as db:
            result = await db.execute(
                update(NotificationEvent)
                .where(
                    NotificationEvent.status == NotificationStatus.PROCESSING.value,
                    NotificationEvent.processing_started_at < cutoff,
                )
                .values(
                    status=NotificationStatus.QUEUED.value,
                    processing_started_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        requeued = result.rowcount or 0
        if requeued:
            logger.warning("stuck_notifications_requeued", count=requeued, timeout_seconds=timeout)
        return requeued

    async def requeue_failed(self, event_id: uuid.UUID, actor_id: str) -> NotificationEvent:
        """
        Manually put a permanently failed event back on the queue.

        Raises:
            NotificationNotFound: Unknown id
            InvalidRequest: Event is not in failed state
        """
        async with self.session_factory() as db:
            event = await db.get(NotificationEvent, event_id, with_for_update=True)
            if event is None:
                raise NotificationNotFound(f"Notification {event_id} not found")
            if event.status != NotificationStatus.FAILED.value:
                raise InvalidRequest(
                    f"Only failed notifications can be requeued (status is {event.status})",
                    details={"event_id": str(event_id), "status": event.status},
                )

            previous_retries = event.retry_count
            event.status = NotificationStatus.QUEUED.value
            event.retry_count = 0
            event.scheduled_at = None
            event.failed_at = None
            event.updated_at = utcnow()

            await self.audit.record(
                db,
                "notification_requeued",
                f"Failed notification requeued by {actor_id}",
                category="notification",
                entity_id=event.id,
                actor_id=actor_id,
                old_values={"status": NotificationStatus.FAILED.value, "retry_count": previous_retries},
                new_values={"status": NotificationStatus.QUEUED.value, "retry_count": 0},
            )
            await db.commit()

        logger.info("failed_notification_requeued", event_id=str(event_id), actor_id=actor_id)
        return event

    async def queue_depth(self, stale_after_minutes: int | None = None) -> Dict[str, int]:
        """
        Count queued events, and those queued longer than the staleness threshold.

        Returns:
            Dict[str, int]: {"queued": ..., "stale_queued": ...}
        """
        minutes = (
            self.settings.notification_stale_queued_minutes
            if stale_after_minutes is None
            else stale_after_minutes
        )
        cutoff = utcnow() - timedelta(minutes=minutes)
        queued_filter = NotificationEvent.status == NotificationStatus.QUEUED.value

        async with self.session_factory() as db:
            queued = (
                await db.execute(select(func.count()).select_from(NotificationEvent).where(queued_filter))
            ).scalar_one()
            stale = (
                await db.execute(
                    select(func.count())
                    .select_from(NotificationEvent)
                    .where(queued_filter, NotificationEvent.created_at < cutoff)
                )
            ).scalar_one()

        metrics.set_queue_depth(queued, stale)
        return {"queued": queued, "stale_queued": stale}
