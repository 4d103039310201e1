"""SQLAlchemy database models for the payment ledger."""
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in development and tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    # Client-side so timestamps are loaded on the instance after flush
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Payment(Base):
    """
    Payment ledger table.

    One row per checkout attempt. ``reference``, ``user_id`` and ``amount``
    are write-once; ``status`` only moves from pending to a terminal state,
    and only through the reconciliation engine's conditional updates.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reference: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="GHS")
    payment_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)
    provider_transaction_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    webhook_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed')",
            name="valid_status",
        ),
        CheckConstraint("length(reference) >= 10", name="reference_min_length"),
        Index("idx_payments_user_status", "user_id", "status"),
    )

    @validates("reference", "user_id", "amount")
    def _write_once(self, key: str, value: Any) -> Any:
        current = getattr(self, key)
        if current is not None and current != value:
            raise ValueError(f"Payment.{key} cannot be changed once set")
        return value

    def __repr__(self) -> str:
        """String representation of Payment."""
        return (
            f"<Payment(reference={self.reference}, user_id={self.user_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class MemberProfile(Base):
    """
    Member profile, owned by the portal.

    The payment service only reads contact details and writes the three
    membership columns when a payment completes.
    """

    __tablename__ = "profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    membership_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    membership_start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    membership_expiry_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    notify_payment_receipts: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    def __repr__(self) -> str:
        return f"<MemberProfile(user_id={self.user_id}, membership={self.membership_status})>"


class PaymentEvent(Base):
    """
    Payment events audit trail table.

    Stores every transition and callback seen for a payment.
    Immutable once written.
    """

    __tablename__ = "payment_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    payment_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, index=True
    )

    def __repr__(self) -> str:
        """String representation of PaymentEvent."""
        return (
            f"<PaymentEvent(id={self.id}, payment_id={self.payment_id}, "
            f"type={self.event_type})>"
        )


class CallbackReceipt(Base):
    """
    Provider webhook deliveries, recorded before they are acted on.

    ``outcome`` starts as ``received`` and is overwritten once the status
    re-derivation has run.
    """

    __tablename__ = "callback_receipts"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    reference: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    source_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claimed_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    outcome: Mapped[str] = mapped_column(String(30), nullable=False, default="received")
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Side effects that leave the process (receipt emails) are written here in
    the same transaction as the payment transition, then delivered by the
    outbox publisher with its own retry policy.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Claimed by a publisher, or backing off after a failure, until this time
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_outbox_unpublished", "published", "created_at"),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )
