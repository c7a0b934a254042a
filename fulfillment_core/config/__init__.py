"""Configuration package for the fulfillment core."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
