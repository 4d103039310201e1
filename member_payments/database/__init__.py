"""Database package for the payment ledger."""
from .connection import (
    close_db,
    create_engine_for,
    create_session_factory,
    get_session_factory,
    init_db,
)
from .models import (
    Base,
    CallbackReceipt,
    MemberProfile,
    OutboxEvent,
    Payment,
    PaymentEvent,
)

__all__ = [
    "Base",
    "CallbackReceipt",
    "MemberProfile",
    "OutboxEvent",
    "Payment",
    "PaymentEvent",
    "close_db",
    "create_engine_for",
    "create_session_factory",
    "get_session_factory",
    "init_db",
]
