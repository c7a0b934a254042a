"""
Payment provider webhook handler with signature verification and event routing.

Implements:
- HMAC-SHA512 signature verification of the raw body (x-paystack-signature)
- Security incident on every rejected signature
- Event type routing: charge.success -> verify_payment, charge.failed -> record_payment_failure
- Other event types are acknowledged and ignored

Replays need no separate dedupe store: the ledger is unique on the provider
reference and verification is idempotent.
"""
import hashlib
import hmac
import json
import time
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict

import structlog

from fulfillment_core.config import Settings, get_settings
from fulfillment_core.core.audit import AuditLogger
from fulfillment_core.core.errors import FulfillmentError, InvalidRequest
from fulfillment_core.core.payment_verification import PaymentVerificationService, to_decimal
from fulfillment_core.database.models import IncidentSeverity
from fulfillment_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"

EventHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


class WebhookHandler:
    """
    Handles payment provider webhook events.

    Features:
    - Signature verification using the shared webhook secret
    - Event type routing to registered handlers
    - Amounts converted from minor units before verification
    """

    def __init__(
        self,
        payments: PaymentVerificationService | None = None,
        audit: AuditLogger | None = None,
        settings: Settings | None = None,
    ) -> None:
        """
        Initialize webhook handler.

        Args:
            payments: Payment verification service
            audit: Audit logger for rejected signatures
            settings: Provider name and webhook secret
        """
        self.settings = settings or get_settings()
        self.payments = payments or PaymentVerificationService(settings=self.settings)
        self.audit = audit or self.payments.audit
        self.event_handlers: Dict[str, EventHandler] = {}

        self.register_handler("charge.success", self.handle_charge_success)
        self.register_handler("charge.failed", self.handle_charge_failed)

        logger.info("webhook_handler_initialized", provider=self.settings.payment_provider)

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Provider event type (e.g., 'charge.success')
            handler: Async callable receiving the event's data object
        """
        self.event_handlers[event_type] = handler
        logger.debug("webhook_handler_registered", event_type=event_type)

    def compute_signature(self, payload: bytes, secret: str | None = None) -> str:
        """Hex HMAC-SHA512 of the raw body."""
        key = (secret or self.settings.payment_webhook_secret).encode("utf-8")
        return hmac.new(key, payload, hashlib.sha512).hexdigest()

    async def verify_signature(self, payload: bytes, signature: str | None) -> Dict[str, Any]:
        """
        Verify the webhook signature and parse the event.

        Args:
            payload: Raw request body as bytes
            signature: Signature header value

        Returns:
            Dict[str, Any]: Parsed event

        Raises:
            InvalidRequest: Missing secret, bad signature or malformed body
        """
        if not self.settings.payment_webhook_secret:
            logger.error("webhook_secret_not_configured")
            raise InvalidRequest("Webhook secret is not configured")

        expected = self.compute_signature(payload)
        if not signature or not hmac.compare_digest(expected, signature.strip().lower()):
            await self.audit.incident_detached(
                "webhook_signature_invalid",
                "Webhook rejected: signature does not match body",
                severity=IncidentSeverity.HIGH,
                details={"signature_present": bool(signature), "body_bytes": len(payload)},
            )
            logger.error("webhook_signature_verification_failed", signature_present=bool(signature))
            raise InvalidRequest("Invalid webhook signature")

        try:
            event = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidRequest(f"Webhook body is not valid JSON: {e}")
        if not isinstance(event, dict) or not isinstance(event.get("event"), str):
            raise InvalidRequest("Webhook body has no event type")

        logger.info("webhook_signature_verified", event_type=event["event"])
        return event

    async def process_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Route a verified event to its handler.

        Args:
            event: Parsed event ({"event": type, "data": {...}})

        Returns:
            Dict[str, Any]: Processing result
        """
        event_type = event["event"]
        data = event.get("data") or {}
        started = time.perf_counter()

        handler = self.event_handlers.get(event_type)
        if handler is None:
            logger.info("webhook_event_ignored", event_type=event_type)
            metrics.record_webhook_event(event_type, "ignored", time.perf_counter() - started)
            return {"status": "ignored", "event_type": event_type}

        try:
            result = await handler(data)
        except FulfillmentError as e:
            metrics.record_webhook_event(event_type, "failed", time.perf_counter() - started)
            logger.warning(
                "webhook_event_processing_failed",
                event_type=event_type,
                error=e.code,
                reference=data.get("reference"),
            )
            raise

        metrics.record_webhook_event(event_type, "success", time.perf_counter() - started)
        logger.info(
            "webhook_event_processed_successfully",
            event_type=event_type,
            reference=data.get("reference"),
        )
        return {"status": "processed", "event_type": event_type, "result": result}

    async def handle(self, payload: bytes, signature: str | None) -> Dict[str, Any]:
        """Verify and process a raw webhook delivery."""
        event = await self.verify_signature(payload, signature)
        return await self.process_event(event)

    def _payment_fields(self, data: Dict[str, Any]) -> Dict[str, Any]:
        reference = str(data.get("reference") or "").strip()
        if not reference:
            raise InvalidRequest("Webhook event has no payment reference")

        if data.get("amount") is None:
            raise InvalidRequest("Webhook event has no amount", details={"reference": reference})
        # Provider amounts are in minor units (kobo, cents)
        amount = to_decimal(data["amount"]) / Decimal(100)

        metadata = data.get("metadata")
        if not isinstance(metadata, dict):
            metadata = {}
        order_ref = str(metadata.get("order_number") or metadata.get("order_id") or "").strip()

        return {
            "order_ref": order_ref,
            "provider_ref": reference,
            "amount": amount,
            "currency": str(data.get("currency") or self.settings.default_currency),
        }

    async def handle_charge_success(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Handle charge.success: verify and apply the payment.

        Args:
            data: Event data object

        Returns:
            Dict[str, Any]: Verification result
        """
        fields = self._payment_fields(data)
        result = await self.payments.verify_payment(
            fields["order_ref"],
            fields["provider_ref"],
            self.settings.payment_provider,
            fields["amount"],
            fields["currency"],
            data,
        )
        return result.to_dict()

    async def handle_charge_failed(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Handle charge.failed: record the failed attempt.

        Args:
            data: Event data object

        Returns:
            Dict[str, Any]: Failure recording result
        """
        fields = self._payment_fields(data)
        result = await self.payments.record_payment_failure(
            fields["provider_ref"],
            self.settings.payment_provider,
            fields["amount"],
            fields["currency"],
            data,
            order_ref=fields["order_ref"],
        )
        return result.to_dict()
