"""
Notification delivery background worker.

Claims due notification events, hands each to a sender and settles it as sent
or failed. Senders are plain async callables; the default one only logs.
"""
import asyncio
import signal
import socket
import sys
import uuid
from typing import Any, Awaitable, Callable

import structlog

from fulfillment_core.config import Settings, get_settings
from fulfillment_core.core.notifications import NotificationQueue
from fulfillment_core.database.models import NotificationEvent
from fulfillment_core.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)

Sender = Callable[[NotificationEvent], Awaitable[None]]


async def log_sender(event: NotificationEvent) -> None:
    """
    Deliver a notification.

    Replace this with the email/SMS/push provider client.

    Args:
        event: Claimed notification event
    """
    logger.info(
        "notification_delivered_to_log",
        event_id=str(event.id),
        event_type=event.event_type,
        template_key=event.template_key,
        recipient=event.recipient,
    )


class NotificationWorker:
    """
    Polls the notification queue and delivers claimed events.

    A sender raising any exception counts as a failed delivery attempt; the
    queue decides between retry and permanent failure.
    """

    def __init__(
        self,
        queue: NotificationQueue | None = None,
        sender: Sender = log_sender,
        settings: Settings | None = None,
        worker_id: str | None = None,
    ) -> None:
        """
        Initialize notification worker.

        Args:
            queue: Notification queue to claim from
            sender: Async callable delivering one event
            settings: Batch size and poll interval
            worker_id: Identity used in logs (defaults to host:random)
        """
        self.settings = settings or get_settings()
        self.queue = queue or NotificationQueue(settings=self.settings)
        self.sender = sender
        self.worker_id = worker_id or f"{socket.gethostname()}:{uuid.uuid4().hex[:6]}"
        self.batch_size = self.settings.notification_batch_size
        self.poll_interval_seconds = self.settings.notification_poll_interval_seconds
        self._running = False

    async def deliver(self, event: NotificationEvent) -> str:
        """
        Send one claimed event and settle it.

        Returns:
            str: "sent", or the status mark_failed left the event in
        """
        try:
            await self.sender(event)
        except Exception as e:
            logger.warning(
                "notification_send_failed",
                event_id=str(event.id),
                worker_id=self.worker_id,
                error=str(e),
            )
            return await self.queue.mark_failed(event.id, str(e) or type(e).__name__)

        await self.queue.mark_sent(event.id)
        return "sent"

    async def process_batch(self) -> int:
        """
        Claim and deliver one batch.

        Returns:
            int: Number of events claimed
        """
        events = await self.queue.claim_batch(self.batch_size, worker_id=self.worker_id)
        for event in events:
            await self.deliver(event)
        return len(events)

    async def start(self) -> None:
        """Poll until stop() is called."""
        self._running = True
        logger.info("notification_worker_started", worker_id=self.worker_id)

        try:
            while self._running:
                try:
                    claimed = await self.process_batch()
                    await asyncio.sleep(self.poll_interval_seconds if claimed == 0 else 0.1)
                except Exception as e:
                    logger.error("notification_worker_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)
        finally:
            logger.info("notification_worker_stopped", worker_id=self.worker_id)

    def stop(self) -> None:
        """Stop the worker after the current batch."""
        self._running = False
        logger.info("notification_worker_stop_requested", worker_id=self.worker_id)


async def start_notification_worker() -> None:
    """
    Start the notification worker.

    Runs continuously until stopped.
    """
    setup_logging("notifications")
    logger.info("notification_worker_starting")

    worker = NotificationWorker()

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("notification_worker_shutdown_signal_received", signal=sig)
        worker.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await worker.start()
    except Exception as e:
        logger.error("notification_worker_fatal", error=str(e))
        raise


def main() -> None:
    """Console entry point."""
    asyncio.run(start_notification_worker())
    sys.exit(0)


if __name__ == "__main__":
    main()
