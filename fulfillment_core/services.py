"""Wiring of the core services shared by the API and the workers."""
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment_core.config import Settings, get_settings
from fulfillment_core.core.audit import AuditLogger
from fulfillment_core.core.locks import LockManager
from fulfillment_core.core.notifications import NotificationQueue
from fulfillment_core.core.payment_verification import PaymentVerificationService
from fulfillment_core.core.reconciliation import ReconciliationMonitor
from fulfillment_core.core.state_machine import OrderService
from fulfillment_core.database.connection import get_session_factory
from fulfillment_core.integrations.webhook_handler import WebhookHandler
from fulfillment_core.monitoring.health import HealthCheck


@dataclass
class Services:
    """One instance of every service, all bound to the same store."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    audit: AuditLogger
    locks: LockManager
    queue: NotificationQueue
    orders: OrderService
    payments: PaymentVerificationService
    reconciliation: ReconciliationMonitor
    webhooks: WebhookHandler
    health: HealthCheck


def build_services(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    settings: Settings | None = None,
) -> Services:
    """
    Build the service graph.

    Args:
        session_factory: Session factory (defaults to the global one)
        settings: Settings (defaults to get_settings())

    Returns:
        Services: Wired services
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()

    audit = AuditLogger(session_factory)
    locks = LockManager(session_factory, audit, settings)
    queue = NotificationQueue(session_factory, audit, settings)
    orders = OrderService(session_factory, locks, queue, audit, settings)
    payments = PaymentVerificationService(session_factory, locks, queue, audit, settings)
    reconciliation = ReconciliationMonitor(session_factory, payments, locks, queue, audit, settings)
    webhooks = WebhookHandler(payments, audit, settings)
    health = HealthCheck(session_factory, reconciliation)

    return Services(
        settings=settings,
        session_factory=session_factory,
        audit=audit,
        locks=locks,
        queue=queue,
        orders=orders,
        payments=payments,
        reconciliation=reconciliation,
        webhooks=webhooks,
        health=health,
    )
