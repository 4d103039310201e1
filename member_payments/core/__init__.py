"""Core payment reconciliation logic."""
from .errors import PaymentError
from .states import PaymentStatus, PaymentType, ProviderStatus

__all__ = ["PaymentError", "PaymentStatus", "PaymentType", "ProviderStatus"]
