"""
Maintenance background worker.

Every cycle:
- sweeps expired order locks
- requeues notifications stuck in processing
- runs one reconciliation batch
- takes a health snapshot (updates the consistency gauges)
"""
import asyncio
import signal
from typing import Any, Dict

import structlog

from fulfillment_core.monitoring.logging import setup_logging
from fulfillment_core.services import Services, build_services

logger = structlog.get_logger(__name__)


async def run_maintenance_cycle(services: Services) -> Dict[str, Any]:
    """
    Run one maintenance cycle.

    Args:
        services: Wired services

    Returns:
        Dict[str, Any]: What the cycle did
    """
    swept = await services.locks.sweep_expired()
    requeued = await services.queue.requeue_stuck()
    processed, updated = await services.reconciliation.reconcile_batch()
    snapshot = await services.reconciliation.health_snapshot()

    summary = {
        "locks_swept": swept,
        "notifications_requeued": requeued,
        "reconciliation_processed": processed,
        "reconciliation_updated": updated,
        **snapshot.to_dict(),
    }
    logger.info("maintenance_cycle_completed", **summary)

    if snapshot.inconsistent_orders or snapshot.unprocessed_transactions:
        logger.warning(
            "consistency_issues_detected",
            inconsistent_orders=snapshot.inconsistent_orders,
            unprocessed_transactions=snapshot.unprocessed_transactions,
        )
    return summary


async def start_maintenance_worker(services: Services | None = None) -> None:
    """
    Start the maintenance worker.

    Runs a cycle every `maintenance_interval_seconds` until signalled.
    """
    services = services or build_services()
    setup_logging("maintenance", services.settings)
    interval = services.settings.maintenance_interval_seconds

    logger.info("maintenance_worker_starting", interval_seconds=interval)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("maintenance_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_maintenance_cycle(services)
            except Exception as e:
                # One failed cycle must not stop the next
                logger.error("maintenance_cycle_error", error=str(e))

            remaining = interval
            while remaining > 0 and running:
                sleep_time = min(remaining, 1)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time
    finally:
        logger.info("maintenance_worker_stopped")


def main() -> None:
    """Console entry point."""
    asyncio.run(start_maintenance_worker())


if __name__ == "__main__":
    main()
