"""Configuration package for the payment reconciliation service."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
