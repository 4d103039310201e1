"""
Payment lifecycle states and the provider status mapping.

The lattice is pending -> {completed | failed}; both right-hand states are
terminal.
"""
from enum import Enum
from typing import Optional


class PaymentStatus(str, Enum):
    """Local lifecycle state of a payment."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED})


class PaymentType(str, Enum):
    """What a payment is for. The prefix is embedded in its reference."""

    REGISTRATION_FEE = "registration_fee"
    MEMBERSHIP_DUES = "membership_dues"
    EVENT_FEE = "event_fee"
    DONATION = "donation"

    @property
    def reference_prefix(self) -> str:
        return _TYPE_PREFIXES[self]

    @classmethod
    def from_prefix(cls, prefix: str) -> Optional["PaymentType"]:
        for payment_type, candidate in _TYPE_PREFIXES.items():
            if candidate == prefix:
                return payment_type
        return None


_TYPE_PREFIXES = {
    PaymentType.REGISTRATION_FEE: "REG",
    PaymentType.MEMBERSHIP_DUES: "DUES",
    PaymentType.EVENT_FEE: "EVT",
    PaymentType.DONATION: "DON",
}


class ProviderStatus(str, Enum):
    """Transaction status as reported by the provider's status API."""

    PAID = "Paid"
    UNPAID = "Unpaid"
    REFUNDED = "Refunded"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "ProviderStatus":
        """Exact match on the provider's spelling; anything else is Unknown."""
        if raw is None:
            return cls.UNKNOWN
        value = str(raw).strip()
        for status in (cls.PAID, cls.UNPAID, cls.REFUNDED):
            if value == status.value:
                return status
        return cls.UNKNOWN


_PROVIDER_TO_LOCAL = {
    ProviderStatus.PAID: PaymentStatus.COMPLETED,
    ProviderStatus.UNPAID: PaymentStatus.PENDING,
    # A refund voids the payment as far as membership is concerned.
    ProviderStatus.REFUNDED: PaymentStatus.FAILED,
}


def map_provider_status(provider_status: ProviderStatus) -> PaymentStatus:
    """
    Translate a provider status into the local lifecycle state.

    Ambiguous provider output never fails a payment; it stays pending.
    """
    return _PROVIDER_TO_LOCAL.get(provider_status, PaymentStatus.PENDING)
