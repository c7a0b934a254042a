"""Payment-verification and order-transition core for order fulfillment."""

__version__ = "1.0.0"
