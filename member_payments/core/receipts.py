"""Receipt requests: enqueueing resends and delivering outbox receipts."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from member_payments.config import Settings, get_settings
from member_payments.core.errors import (
    PaymentNotFoundError,
    PaymentValidationError,
    PersistenceError,
)
from member_payments.core.outbox import PermanentDeliveryError
from member_payments.core.reconciliation import PaymentSnapshot
from member_payments.core.side_effects import enqueue_receipt
from member_payments.core.states import PaymentStatus
from member_payments.database.models import MemberProfile, Payment
from member_payments.integrations.email_client import (
    EmailClient,
    EmailDeliveryError,
    ReceiptDetails,
    render_receipt,
)

logger = structlog.get_logger(__name__)


async def request_receipt(
    session_factory: async_sessionmaker[AsyncSession], snapshot: PaymentSnapshot
) -> None:
    """
    Enqueue a receipt resend for a completed payment.

    Ownership is checked by the caller.

    Raises:
        PaymentValidationError: Payment is not completed
        PersistenceError: Outbox write failed
    """
    if snapshot.status != PaymentStatus.COMPLETED:
        raise PaymentValidationError("Receipts are only available for completed payments")

    async with session_factory() as session:
        try:
            payment = (
                await session.execute(select(Payment).where(Payment.reference == snapshot.reference))
            ).scalar_one_or_none()
            if payment is None:
                raise PaymentNotFoundError("Payment not found")
            enqueue_receipt(session, payment, requested_by="member")
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error("receipt_request_failed", reference=snapshot.reference, error=str(e))
            raise PersistenceError("Failed to queue receipt")

    logger.info("receipt_requested", reference=snapshot.reference, user_id=snapshot.user_id)


class ReceiptSender:
    """Outbox handler that turns receipt events into emails."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        email_client: EmailClient,
        settings: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.email_client = email_client
        self.settings = settings or get_settings()

    async def __call__(self, event_data: Dict[str, Any]) -> str:
        payload = event_data["payload"]
        async with self.session_factory() as session:
            profile = (
                await session.execute(
                    select(MemberProfile).where(MemberProfile.user_id == payload["user_id"])
                )
            ).scalar_one_or_none()

        if profile is None:
            raise PermanentDeliveryError(f"No profile for user {payload['user_id']}")
        if not profile.notify_payment_receipts:
            logger.info("receipt_skipped_by_preference", reference=payload["reference"])
            return "skipped"

        paid_at = payload.get("payment_date")
        details = ReceiptDetails(
            recipient_name=profile.full_name,
            reference=payload["reference"],
            amount=Decimal(payload["amount"]),
            currency=payload.get("currency") or self.settings.currency,
            payment_type=payload.get("payment_type") or "membership_dues",
            payment_method=payload.get("payment_method"),
            payment_date=datetime.fromisoformat(paid_at) if paid_at else None,
        )
        message = render_receipt(details, self.settings.organisation_name)
        try:
            await self.email_client.send(profile.email, message["subject"], message["html"])
        except EmailDeliveryError as e:
            if e.permanent:
                raise PermanentDeliveryError(e.message) from e
            raise
        return "sent"
