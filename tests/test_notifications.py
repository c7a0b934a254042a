"""
Tests for the durable notification queue.
"""
import asyncio
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy import update

from fulfillment_core.core.errors import InvalidRequest, NotificationNotFound
from fulfillment_core.core.notifications import (
    NotificationQueue,
    NotificationRequest,
    compute_dedupe_key,
)
from fulfillment_core.database.models import (
    AuditEntry,
    NotificationEvent,
    NotificationPriority,
    utcnow,
)


def request_for(event_type: str = "payment_confirmed", **overrides) -> NotificationRequest:
    """Build a notification request with sensible defaults."""
    fields = {
        "event_type": event_type,
        "recipient": "ada@example.com",
        "template_key": "payment_confirmation",
        "variables": {"order_number": "ORD-1001"},
        "order_id": uuid.UUID("7b0e4a8e-0c5f-4d6b-9a43-2f6f1c3b8d11"),
    }
    fields.update(overrides)
    return NotificationRequest(**fields)


@pytest.fixture
def fast_retry_queue(session_factory, services, test_settings) -> NotificationQueue:
    """Queue whose retries are due immediately."""
    settings = test_settings.model_copy(update={"notification_retry_delays_minutes": [0]})
    return NotificationQueue(session_factory, services.audit, settings)


class TestNotificationRequest:
    """Validation and dedupe keys."""

    @pytest.mark.unit
    def test_variables_are_made_json_safe(self) -> None:
        """Decimals and UUIDs in variables become strings."""
        request = request_for(variables={"amount": Decimal("5000.00"), "ref": uuid.UUID(int=1)})

        assert request.variables == {
            "amount": "5000.00",
            "ref": "00000000-0000-0000-0000-000000000001",
        }

    @pytest.mark.unit
    def test_unsupported_variables_rejected(self) -> None:
        """Objects that cannot be stored as JSON are refused."""
        with pytest.raises(ValidationError):
            request_for(variables={"handler": object()})

    @pytest.mark.unit
    def test_blank_recipient_rejected(self) -> None:
        """Whitespace-only recipients are refused."""
        with pytest.raises(ValidationError):
            request_for(recipient="   ")

    @pytest.mark.unit
    def test_dedupe_key_ignores_recipient_case(self) -> None:
        """Recipient case does not split the dedupe bucket."""
        at = utcnow()
        order_id = uuid.uuid4()

        assert compute_dedupe_key("e", "Ada@Example.com", "t", order_id, at) == compute_dedupe_key(
            "e", "ada@example.com ", "t", order_id, at
        )

    @pytest.mark.unit
    def test_dedupe_key_changes_with_hour(self) -> None:
        """A new hour bucket produces a new key."""
        at = utcnow()
        order_id = uuid.uuid4()

        assert compute_dedupe_key("e", "r", "t", order_id, at) != compute_dedupe_key(
            "e", "r", "t", order_id, at + timedelta(hours=1)
        )


class TestEnqueue:
    """Enqueue and deduplication."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_enqueue_collapses(self, services, fetch) -> None:
        """The same notification enqueued twice is one row with the latest variables."""
        first = await services.queue.enqueue(request_for(variables={"attempt": 1}))
        second = await services.queue.enqueue(request_for(variables={"attempt": 2}))

        assert first == second
        rows = await fetch(NotificationEvent)
        assert len(rows) == 1
        assert rows[0].variables == {"attempt": 2}
        assert rows[0].status == "queued"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sent_row_not_refreshed(self, services) -> None:
        """A duplicate of an already sent notification changes nothing."""
        event_id = await services.queue.enqueue(request_for(variables={"attempt": 1}))
        await services.queue.claim_batch(10)
        await services.queue.mark_sent(event_id)

        again = await services.queue.enqueue(request_for(variables={"attempt": 2}))

        event = await services.queue.get(again)
        assert again == event_id
        assert event.status == "sent"
        assert event.variables == {"attempt": 1}

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_duplicate_enqueue(self, services, fetch) -> None:
        """A burst of identical enqueues yields one row."""
        ids = await asyncio.gather(*(services.queue.enqueue(request_for()) for _ in range(6)))

        assert len(set(ids)) == 1
        assert len(await fetch(NotificationEvent)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_unknown(self, services) -> None:
        """Unknown ids raise NotificationNotFound."""
        with pytest.raises(NotificationNotFound):
            await services.queue.get(uuid.uuid4())


class TestClaim:
    """Claiming batches."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_claim_orders_by_priority(self, services) -> None:
        """High priority events are claimed before normal and low ones."""
        low = await services.queue.enqueue(request_for("digest", priority=NotificationPriority.LOW))
        normal = await services.queue.enqueue(request_for("reminder"))
        high = await services.queue.enqueue(request_for("alert", priority=NotificationPriority.HIGH))

        claimed = await services.queue.claim_batch(10, worker_id="worker-1")

        assert [e.id for e in claimed] == [high, normal, low]
        assert all(e.status == "processing" for e in claimed)
        assert all(e.processing_started_at is not None for e in claimed)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_claim_respects_limit_and_schedule(self, services) -> None:
        """Future-scheduled events wait; the limit caps the batch."""
        await services.queue.enqueue(request_for("a"))
        await services.queue.enqueue(request_for("b"))
        await services.queue.enqueue(
            request_for("later", scheduled_at=utcnow() + timedelta(minutes=30))
        )

        first = await services.queue.claim_batch(1)
        second = await services.queue.claim_batch(10)

        assert len(first) == 1
        assert len(second) == 1
        assert await services.queue.claim_batch(10) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_claim_limit_must_be_positive(self, services) -> None:
        """A zero limit is rejected."""
        with pytest.raises(InvalidRequest):
            await services.queue.claim_batch(0)

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_claims_are_disjoint(self, services) -> None:
        """Concurrent workers never receive the same event."""
        for i in range(12):
            await services.queue.enqueue(request_for(f"event-{i}"))

        batches = await asyncio.gather(
            *(services.queue.claim_batch(5, worker_id=f"worker-{w}") for w in range(4))
        )

        claimed = [event.id for batch in batches for event in batch]
        assert len(claimed) == len(set(claimed)) == 12


class TestSettlement:
    """mark_sent, mark_failed and requeues."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_mark_sent(self, services) -> None:
        """A processing event can be marked sent once."""
        event_id = await services.queue.enqueue(request_for())
        await services.queue.claim_batch(10)

        assert await services.queue.mark_sent(event_id) is True
        assert await services.queue.mark_sent(event_id) is False

        event = await services.queue.get(event_id)
        assert event.status == "sent"
        assert event.sent_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_mark_sent_requires_processing(self, services) -> None:
        """Unclaimed events cannot be marked sent."""
        event_id = await services.queue.enqueue(request_for())

        assert await services.queue.mark_sent(event_id) is False
        assert (await services.queue.get(event_id)).status == "queued"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_mark_sent_unknown(self, services) -> None:
        """Unknown ids raise NotificationNotFound."""
        with pytest.raises(NotificationNotFound):
            await services.queue.mark_sent(uuid.uuid4())

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_mark_failed_schedules_retry(self, services) -> None:
        """A failed attempt goes back to queued with the first backoff delay."""
        event_id = await services.queue.enqueue(request_for())
        await services.queue.claim_batch(10)
        before = utcnow()

        status = await services.queue.mark_failed(event_id, "smtp timeout")

        event = await services.queue.get(event_id)
        assert status == "queued"
        assert event.retry_count == 1
        assert event.last_error == "smtp timeout"
        scheduled = event.scheduled_at.replace(tzinfo=before.tzinfo)
        assert scheduled >= before + timedelta(minutes=5) - timedelta(seconds=1)
        assert await services.queue.claim_batch(10) == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_ceiling_dead_letters(self, fast_retry_queue, fetch) -> None:
        """After max retries the event fails permanently and is dead-lettered."""
        event_id = await fast_retry_queue.enqueue(request_for())

        statuses = []
        for _ in range(3):
            claimed = await fast_retry_queue.claim_batch(10)
            assert [e.id for e in claimed] == [event_id]
            statuses.append(await fast_retry_queue.mark_failed(event_id, "bounced"))

        assert statuses == ["queued", "queued", "failed"]
        event = await fast_retry_queue.get(event_id)
        assert event.failed_at is not None
        assert await fast_retry_queue.claim_batch(10) == []

        dead = await fetch(AuditEntry, AuditEntry.action == "notification_dead_lettered")
        assert dead[0].entity_id == str(event_id)
        assert dead[0].new_values["error"] == "delivery_failure_permanent"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_requeue_failed(self, fast_retry_queue) -> None:
        """An administrator can put a failed event back on the queue."""
        event_id = await fast_retry_queue.enqueue(request_for())
        for _ in range(3):
            await fast_retry_queue.claim_batch(10)
            await fast_retry_queue.mark_failed(event_id, "bounced")

        event = await fast_retry_queue.requeue_failed(event_id, "admin-1")

        assert event.status == "queued"
        assert event.retry_count == 0
        assert [e.id for e in await fast_retry_queue.claim_batch(10)] == [event_id]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_requeue_failed_rejects_other_states(self, services) -> None:
        """Only failed events can be requeued manually."""
        event_id = await services.queue.enqueue(request_for())

        with pytest.raises(InvalidRequest):
            await services.queue.requeue_failed(event_id, "admin-1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_requeue_stuck(self, services, session_factory) -> None:
        """Events stuck in processing past the timeout return to the queue."""
        stuck = await services.queue.enqueue(request_for("stuck"))
        fresh = await services.queue.enqueue(request_for("fresh"))
        await services.queue.claim_batch(10)
        async with session_factory() as db:
            await db.execute(
                update(NotificationEvent)
                .where(NotificationEvent.id == stuck)
                .values(processing_started_at=utcnow() - timedelta(hours=1))
            )
            await db.commit()

        assert await services.queue.requeue_stuck() == 1

        assert (await services.queue.get(stuck)).status == "queued"
        assert (await services.queue.get(stuck)).retry_count == 0
        assert (await services.queue.get(fresh)).status == "processing"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_queue_depth(self, services, session_factory) -> None:
        """Depth counts queued rows and those older than the staleness threshold."""
        old = await services.queue.enqueue(request_for("old"))
        await services.queue.enqueue(request_for("new"))
        async with session_factory() as db:
            await db.execute(
                update(NotificationEvent)
                .where(NotificationEvent.id == old)
                .values(created_at=utcnow() - timedelta(hours=2))
            )
            await db.commit()

        assert await services.queue.queue_depth() == {"queued": 2, "stale_queued": 1}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_zero_thresholds_are_honoured(self, services, session_factory) -> None:
        """An explicit zero timeout or staleness is not replaced by the configured default."""
        claimed = await services.queue.enqueue(request_for("claimed"))
        await services.queue.claim_batch(10)
        queued = await services.queue.enqueue(request_for("queued"))
        async with session_factory() as db:
            await db.execute(
                update(NotificationEvent)
                .where(NotificationEvent.id == claimed)
                .values(processing_started_at=utcnow() - timedelta(seconds=1))
            )
            await db.execute(
                update(NotificationEvent)
                .where(NotificationEvent.id == queued)
                .values(created_at=utcnow() - timedelta(seconds=1))
            )
            await db.commit()

        assert await services.queue.queue_depth() == {"queued": 1, "stale_queued": 0}
        assert await services.queue.queue_depth(stale_after_minutes=0) == {"queued": 1, "stale_queued": 1}
        assert await services.queue.requeue_stuck() == 0
        assert await services.queue.requeue_stuck(timeout_seconds=0) == 1
        assert (await services.queue.get(claimed)).status == "queued"
