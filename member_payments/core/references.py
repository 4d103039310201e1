"""
Payment reference generation and validation.

Format: {PREFIX}-{unix_millis}-{16 hex chars}, e.g.
REG-1760781234567-9f2c41d07be85a13. The random tail carries 64 bits from
the OS CSPRNG so references cannot be enumerated.
"""
import re
import secrets
import time
from typing import Callable, Optional

from .states import PaymentType

REFERENCE_MIN_LENGTH = 10
REFERENCE_MAX_LENGTH = 100
RANDOM_BYTES = 8

_REFERENCE_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_PREFIX_RE = re.compile(r"^[A-Z0-9]{2,8}$")


def generate_reference(
    type_prefix: str, clock: Callable[[], float] = time.time
) -> str:
    """
    Generate a new payment reference.

    Args:
        type_prefix: Short uppercase tag identifying the payment type
        clock: Time source (seconds since epoch)

    Returns:
        str: Reference accepted by the provider's charset and length rules
    """
    if not _PREFIX_RE.match(type_prefix):
        raise ValueError(f"Invalid reference prefix: {type_prefix!r}")
    millis = int(clock() * 1000)
    return f"{type_prefix}-{millis}-{secrets.token_hex(RANDOM_BYTES)}"


def reference_for(payment_type: PaymentType) -> str:
    """Generate a reference tagged with the payment type's prefix."""
    return generate_reference(payment_type.reference_prefix)


def is_valid_reference(reference: object) -> bool:
    """10-100 characters of letters, digits, hyphen or underscore."""
    return (
        isinstance(reference, str)
        and REFERENCE_MIN_LENGTH <= len(reference) <= REFERENCE_MAX_LENGTH
        and bool(_REFERENCE_RE.match(reference))
    )


def parse_payment_type(reference: str) -> Optional[PaymentType]:
    """Recover the payment type from a generated reference, if it has a known prefix."""
    prefix, _, _ = reference.partition("-")
    return PaymentType.from_prefix(prefix)
