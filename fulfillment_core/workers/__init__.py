"""Background workers: notification delivery and maintenance."""
from .maintenance_worker import run_maintenance_cycle, start_maintenance_worker
from .notification_worker import NotificationWorker, log_sender, start_notification_worker

__all__ = [
    "NotificationWorker",
    "log_sender",
    "run_maintenance_cycle",
    "start_maintenance_worker",
    "start_notification_worker",
]
