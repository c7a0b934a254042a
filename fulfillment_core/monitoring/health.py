"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Consistency snapshot (inconsistent orders, stale queue, unprocessed ledger rows)
"""
from typing import Any, Dict

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment_core.config import get_settings
from fulfillment_core.database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Liveness and readiness probes
    - The reconciliation monitor's consistency snapshot
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        monitor: Any = None,
    ) -> None:
        """
        Initialize health check service.

        Args:
            session_factory: Session factory (defaults to the global one)
            monitor: ReconciliationMonitor providing health_snapshot()
        """
        self.settings = get_settings()
        self.session_factory = session_factory or get_session_factory()
        self.monitor = monitor

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

            return {
                "status": "healthy",
                "service": "database",
                "message": "Database connection successful",
            }

        except (SQLAlchemyError, OSError) as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {
                "status": "unhealthy",
                "service": "database",
                "error": str(e),
            }
            all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Simple check that the application is running.
        Does not check external dependencies.

        Returns:
            Dict[str, Any]: Liveness status
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness probe endpoint.

        Returns:
            Dict[str, Any]: Readiness status
        """
        return await self.check_all()

    async def snapshot(self) -> Dict[str, int]:
        """
        Consistency counters for alerting.

        Returns:
            Dict[str, int]: inconsistent_orders, stale_queued,
                unprocessed_transactions, reconciliations_24h
        """
        if self.monitor is None:
            raise HealthCheckError("No reconciliation monitor configured")
        snapshot = await self.monitor.health_snapshot()
        return snapshot.to_dict()
