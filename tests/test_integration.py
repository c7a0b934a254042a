"""
Integration tests for the HTTP API.

Runs the FastAPI application in-process against the per-test SQLite store.
"""
import json
import uuid
from typing import Any

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select

from fulfillment_core.api.main import create_app
from fulfillment_core.config import Settings
from fulfillment_core.core.notifications import NotificationRequest
from fulfillment_core.database import connection
from fulfillment_core.database.connection import build_engine, build_session_factory
from fulfillment_core.database.models import Order, OrderStatus
from fulfillment_core.services import build_services


class TestPaymentIntegration:
    """Payment verification over HTTP."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verify_payment_endpoint(self, client: AsyncClient, make_order) -> None:
        """A matching payment is verified, a replay is already processed."""
        await make_order(order_number="ORD-API-1")
        body = {
            "order_ref": "ORD-API-1",
            "provider_ref": "ref_api_1",
            "provider": "paystack",
            "amount": "5000.00",
            "currency": "ngn",
        }

        response = await client.post("/payments/verify", json=body)
        replay = await client.post("/payments/verify", json=body)

        assert response.status_code == 200
        assert response.json()["status"] == "verified"
        assert response.json()["order_status"] == "confirmed"
        assert replay.json()["status"] == "already_processed"
        assert "X-Request-ID" in response.headers

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_amount_mismatch_is_structured(self, client: AsyncClient, make_order) -> None:
        """Core errors come back with code, message and details."""
        await make_order(order_number="ORD-API-2")

        response = await client.post(
            "/payments/verify",
            json={
                "order_ref": "ORD-API-2",
                "provider_ref": "ref_api_2",
                "provider": "paystack",
                "amount": "1.00",
                "currency": "NGN",
            },
        )

        assert response.status_code == 422
        data = response.json()
        assert data["error"] == "amount_mismatch"
        assert data["details"]["expected"] == "5000.00"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_orphan_payment_404(self, client: AsyncClient) -> None:
        """Unknown orders return order_not_found."""
        response = await client.post(
            "/payments/verify",
            json={
                "provider_ref": "ref_api_nobody",
                "provider": "paystack",
                "amount": "10",
                "currency": "NGN",
            },
        )

        assert response.status_code == 404
        assert response.json()["error"] == "order_not_found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_validation(self, client: AsyncClient) -> None:
        """Malformed bodies are rejected before reaching the core."""
        response = await client.post(
            "/payments/verify",
            json={"provider_ref": "r", "provider": "paystack", "amount": "-5", "currency": "NGN"},
        )

        assert response.status_code == 422


class TestOrderIntegration:
    """Orders and locks over HTTP."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_order(self, client: AsyncClient, make_order) -> None:
        """Orders are readable by id; unknown ids are 404."""
        order = await make_order(order_number="ORD-API-3")

        found = await client.get(f"/orders/{order.id}")
        missing = await client.get(f"/orders/{uuid.uuid4()}")

        assert found.status_code == 200
        assert found.json()["order_number"] == "ORD-API-3"
        assert missing.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transition_and_courier(self, client: AsyncClient, make_order) -> None:
        """Admin transitions respect the table and the courier precondition."""
        order = await make_order(status=OrderStatus.READY)

        blocked = await client.post(
            f"/orders/{order.id}/transition",
            json={"new_status": "out_for_delivery", "actor_id": "admin-1"},
        )
        assigned = await client.post(
            f"/orders/{order.id}/courier", json={"courier_id": "courier-3", "actor_id": "admin-1"}
        )
        moved = await client.post(
            f"/orders/{order.id}/transition",
            json={"new_status": "out_for_delivery", "actor_id": "admin-1"},
        )
        backwards = await client.post(
            f"/orders/{order.id}/transition",
            json={"new_status": "pending", "actor_id": "admin-1"},
        )

        assert blocked.status_code == 422
        assert blocked.json()["error"] == "precondition_failed"
        assert assigned.status_code == 200
        assert moved.json()["status"] == "out_for_delivery"
        assert backwards.status_code == 422
        assert backwards.json()["error"] == "invalid_transition"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_lock_endpoints(self, client: AsyncClient, make_order) -> None:
        """Locks can be taken, inspected, contested and released."""
        order = await make_order()

        taken = await client.post(f"/orders/{order.id}/lock", json={"holder_id": "admin-1"})
        contested = await client.post(f"/orders/{order.id}/lock", json={"holder_id": "admin-2"})
        transition = await client.post(
            f"/orders/{order.id}/transition", json={"new_status": "confirmed", "actor_id": "admin-2"}
        )
        forced = await client.post(
            f"/admin/orders/{order.id}/lock/force-release", json={"actor_id": "admin-9"}
        )
        info = await client.get(f"/orders/{order.id}/lock")
        released = await client.post(f"/orders/{order.id}/lock/release", json={"holder_id": "admin-1"})

        assert taken.json()["acquired"] is True
        assert taken.json()["lock"]["holder_id"] == "admin-1"
        assert contested.json()["acquired"] is False
        assert contested.json()["lock"]["holder_id"] == "admin-1"
        assert transition.status_code == 409
        assert transition.json()["error"] == "lock_conflict"
        assert forced.json()["released"] is True
        assert info.json()["is_locked"] is False
        assert released.json()["released"] is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_lock_ttl_validation(self, client: AsyncClient, make_order) -> None:
        """TTL above the maximum is a bad request."""
        order = await make_order()

        response = await client.post(
            f"/orders/{order.id}/lock", json={"holder_id": "admin-1", "ttl_seconds": 3600}
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"


class TestNotificationIntegration:
    """Worker and admin notification endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_claim_and_settle(self, client: AsyncClient, make_order) -> None:
        """A worker claims the confirmation queued by a payment and settles it."""
        await make_order(order_number="ORD-API-4")
        await client.post(
            "/payments/verify",
            json={
                "order_ref": "ORD-API-4",
                "provider_ref": "ref_api_4",
                "provider": "paystack",
                "amount": "5000",
                "currency": "NGN",
            },
        )

        claimed = await client.post("/workers/notifications/claim", json={"limit": 5, "worker_id": "w-1"})
        events = claimed.json()
        assert [e["template_key"] for e in events] == ["payment_confirmation"]

        event_id = events[0]["id"]
        failed = await client.post(
            f"/workers/notifications/{event_id}/failed", json={"reason": "mailbox full"}
        )
        assert failed.json() == {"id": event_id, "status": "queued", "permanent": False}

        sent = await client.post(f"/workers/notifications/{event_id}/sent")
        assert sent.json()["updated"] is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_requeue_requires_failed(self, client: AsyncClient, services) -> None:
        """Manual requeue of a non-failed event is refused."""
        event_id = await services.queue.enqueue(
            NotificationRequest(event_type="x", recipient="ada@example.com", template_key="t")
        )

        response = await client.post(
            f"/admin/notifications/{event_id}/requeue", json={"actor_id": "admin-1"}
        )

        assert response.status_code == 400


class TestWebhookIntegration:
    """Provider webhooks over HTTP."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_signed_webhook_processed(
        self, client: AsyncClient, services, sample_webhook_data, make_order
    ) -> None:
        """A signed charge.success applies the payment."""
        await make_order(order_number="ORD-API-5")
        payload = json.dumps(
            sample_webhook_data(reference="ref_api_5", order_number="ORD-API-5")
        ).encode("utf-8")

        response = await client.post(
            "/webhooks/payments",
            content=payload,
            headers={
                "x-paystack-signature": services.webhooks.compute_signature(payload),
                "content-type": "application/json",
            },
        )

        assert response.status_code == 200
        assert response.json()["status"] == "processed"
        assert response.json()["result"]["status"] == "verified"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, client: AsyncClient, sample_webhook_data) -> None:
        """Unsigned deliveries are refused."""
        response = await client.post(
            "/webhooks/payments",
            content=json.dumps(sample_webhook_data()).encode("utf-8"),
            headers={"x-paystack-signature": "0" * 128},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_business_rejection_acknowledged(
        self, client: AsyncClient, services, sample_webhook_data, make_order
    ) -> None:
        """Mismatched amounts are acknowledged so the provider stops retrying."""
        await make_order(order_number="ORD-API-6")
        payload = json.dumps(
            sample_webhook_data(reference="ref_api_6", order_number="ORD-API-6", amount_minor=1)
        ).encode("utf-8")

        response = await client.post(
            "/webhooks/payments",
            content=payload,
            headers={"x-paystack-signature": services.webhooks.compute_signature(payload)},
        )

        assert response.status_code == 200
        assert response.json() == {
            "status": "rejected",
            "event_type": "charge.success",
            "error": "amount_mismatch",
            "result": None,
        }


class TestMonitoringIntegration:
    """Health, reconciliation and metrics endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient) -> None:
        """Test health check endpoint."""
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert (await client.get("/health/live")).json()["status"] == "alive"
        assert (await client.get("/health/ready")).status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_snapshot(self, client: AsyncClient) -> None:
        """The consistency snapshot is exposed."""
        response = await client.get("/health/snapshot")

        assert response.status_code == 200
        assert response.json()["inconsistent_orders"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reconcile_endpoint(self, client: AsyncClient, make_order) -> None:
        """Admin reconciliation runs report processed and updated counts."""
        order = await make_order()

        batch = await client.post("/admin/reconcile", json={"limit": 10})
        single = await client.post(f"/admin/orders/{order.id}/reconcile")

        assert batch.json() == {"processed": 0, "updated": 0}
        assert single.json()["needs_reconciliation"] is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics_endpoint(self, client: AsyncClient) -> None:
        """Test Prometheus metrics endpoint."""
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_root(self, client: AsyncClient) -> None:
        """The root endpoint describes the service."""
        response = await client.get("/")

        assert response.json()["service"] == "order-fulfillment-core-test"


class TestApplicationLifespan:
    """Start-up and shutdown against the served store."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_lifespan_uses_services_engine(self, test_settings: Settings, tmp_path: Any) -> None:
        """Tables are created on the injected engine; the global engine is never built."""
        settings = test_settings.model_copy(
            update={"database_url": f"sqlite+aiosqlite:///{tmp_path / 'lifespan.db'}"}
        )
        engine = build_engine(settings.database_url, settings)
        services = build_services(build_session_factory(engine), settings)
        global_engine = connection._engine
        app = create_app(services, init_database=True)

        async with app.router.lifespan_context(app):
            async with services.session_factory() as db:
                count = (await db.execute(select(func.count()).select_from(Order))).scalar_one()

        assert count == 0
        assert connection._engine is global_engine
        assert (tmp_path / "lifespan.db").exists()
