"""External integrations for payment ingress."""
from .webhook_handler import WebhookHandler

__all__ = ["WebhookHandler"]
