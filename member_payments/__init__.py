"""Payment reconciliation service for the membership portal."""

__version__ = "1.0.0"
