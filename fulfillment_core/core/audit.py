"""
Audit and security incident logging.

Append-only sink shared by every component:
- AuditEntry rows for state changes and error forensics
- SecurityIncident rows for amount mismatches, orphan payments, bad signatures

`record` / `incident` write inside the caller's transaction so the entry commits or
rolls back with the change it describes. The `*_detached` variants open their own
transaction; they are used when the caller's unit has been rolled back and the
failure itself still has to be persisted.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment_core.database.connection import get_session_factory
from fulfillment_core.database.models import AuditEntry, IncidentSeverity, SecurityIncident
from fulfillment_core.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def jsonable(value: Any) -> Any:
    """Convert Decimal, UUID, datetime and enums into JSON-safe values."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class AuditLogger:
    """Writes audit entries and security incidents."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        """
        Initialize audit logger.

        Args:
            session_factory: Used only by the detached variants
        """
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def record(
        self,
        db: AsyncSession,
        action: str,
        message: str,
        *,
        category: str = "order",
        entity_id: Any = None,
        actor_id: str | None = None,
        old_values: Dict[str, Any] | None = None,
        new_values: Dict[str, Any] | None = None,
    ) -> AuditEntry:
        """
        Append an audit entry to the caller's transaction.

        Args:
            db: Session of the unit being audited
            action: Snake_case action name (order_status_changed, lock_acquired, ...)
            message: Human readable summary
            category: Area of the system (order, payment, lock, notification, reconciliation)
            entity_id: Id of the affected entity
            actor_id: Who triggered the change
            old_values: State before the change
            new_values: State after the change

        Returns:
            AuditEntry: Pending row (flushed with the caller's commit)
        """
        entry = AuditEntry(
            action=action,
            category=category,
            message=message,
            entity_id=str(entity_id) if entity_id is not None else None,
            actor_id=actor_id,
            old_values=jsonable(old_values) if old_values is not None else None,
            new_values=jsonable(new_values) if new_values is not None else None,
        )
        db.add(entry)

        logger.info(
            "audit_entry_recorded",
            action=action,
            category=category,
            entity_id=entry.entity_id,
            actor_id=actor_id,
        )
        return entry

    async def incident(
        self,
        db: AsyncSession,
        incident_type: str,
        description: str,
        *,
        severity: IncidentSeverity,
        reference: str | None = None,
        order_id: uuid.UUID | None = None,
        expected_amount: Decimal | None = None,
        received_amount: Decimal | None = None,
        details: Dict[str, Any] | None = None,
    ) -> SecurityIncident:
        """
        Append a security incident to the caller's transaction.

        Args:
            db: Session to write in
            incident_type: Snake_case incident type
            description: Human readable summary
            severity: Incident severity
            reference: Payment or provider reference involved
            order_id: Affected order, if resolved
            expected_amount: Amount the system expected
            received_amount: Amount that was reported
            details: Extra forensic context

        Returns:
            SecurityIncident: Pending row
        """
        incident = SecurityIncident(
            incident_type=incident_type,
            severity=severity.value,
            description=description,
            reference=reference,
            order_id=order_id,
            expected_amount=expected_amount,
            received_amount=received_amount,
            details=jsonable(details) if details is not None else None,
        )
        db.add(incident)
        metrics.record_security_incident(incident_type, severity.value)

        log = logger.error if severity in (IncidentSeverity.HIGH, IncidentSeverity.CRITICAL) else logger.warning
        log(
            "security_incident_recorded",
            incident_type=incident_type,
            severity=severity.value,
            reference=reference,
            order_id=str(order_id) if order_id else None,
        )
        return incident

    async def record_detached(self, action: str, message: str, **kwargs: Any) -> None:
        """Write an audit entry in its own transaction."""
        async with self.session_factory() as db:
            await self.record(db, action, message, **kwargs)
            await db.commit()

    async def incident_detached(self, incident_type: str, description: str, **kwargs: Any) -> None:
        """Write a security incident in its own transaction."""
        async with self.session_factory() as db:
            await self.incident(db, incident_type, description, **kwargs)
            await db.commit()
