"""
Side effects of the pending -> completed edge.

The dispatcher runs inside the transaction that performed the conditional
status update, so it fires at most once per payment. It does not guard
against double invocation itself.
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from member_payments.database.models import MemberProfile, OutboxEvent, Payment
from member_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

RECEIPT_EVENT_TYPE = "payment.receipt_requested"
INVALIDATED_VIEWS: Tuple[str, ...] = ("payments", "profile")

InvalidationListener = Callable[[str, Tuple[str, ...]], Any]


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def add_one_year(start: date) -> date:
    """Same calendar day next year; Feb 29 rolls over to Mar 1."""
    try:
        return start.replace(year=start.year + 1)
    except ValueError:
        return date(start.year + 1, 3, 1)


def receipt_payload(payment: Payment) -> Dict[str, Any]:
    """Outbox payload for a receipt; contact details are resolved at delivery."""
    return {
        "payment_id": str(payment.id),
        "reference": payment.reference,
        "user_id": payment.user_id,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "payment_type": payment.payment_type,
        "payment_method": payment.payment_method,
        "payment_date": payment.payment_date.isoformat() if payment.payment_date else None,
    }


def enqueue_receipt(session: AsyncSession, payment: Payment, requested_by: str) -> OutboxEvent:
    """Add a receipt outbox row to the session's current transaction."""
    payload = receipt_payload(payment)
    payload["requested_by"] = requested_by
    event = OutboxEvent(
        aggregate_id=payment.id,
        aggregate_type="payment",
        event_type=RECEIPT_EVENT_TYPE,
        payload=payload,
    )
    session.add(event)
    return event


@dataclass
class DispatchReport:
    """What the dispatcher did for one completed payment."""

    membership_activated: bool = False
    membership_expiry: Optional[date] = None
    receipt_enqueued: bool = False
    invalidate: Tuple[str, ...] = ()
    errors: List[str] = field(default_factory=list)


class SideEffectDispatcher:
    """
    Membership activation, receipt request and view invalidation.

    ``dispatch`` runs in the transition transaction; ``notify_committed``
    runs after that transaction commits.
    """

    def __init__(self, today: Callable[[], date] = utc_today):
        self._today = today
        self._listeners: List[InvalidationListener] = []

    def subscribe(self, listener: InvalidationListener) -> None:
        """Register a callback receiving ``(user_id, views)`` after each completion."""
        self._listeners.append(listener)

    async def dispatch(self, session: AsyncSession, payment: Payment) -> DispatchReport:
        """
        Apply completion side effects for ``payment`` inside ``session``.

        Membership activation is part of the transition; a failure there
        propagates and rolls the transition back. The receipt request is
        isolated in a savepoint, so its failure is logged and swallowed.
        """
        report = DispatchReport(invalidate=INVALIDATED_VIEWS)

        start = self._today()
        expiry = add_one_year(start)
        result = await session.execute(
            update(MemberProfile)
            .where(MemberProfile.user_id == payment.user_id)
            .values(
                membership_status="active",
                membership_start_date=start,
                membership_expiry_date=expiry,
            )
        )
        if result.rowcount == 1:
            report.membership_activated = True
            report.membership_expiry = expiry
            metrics.record_side_effect("membership_activation")
            logger.info(
                "membership_activated",
                user_id=payment.user_id,
                reference=payment.reference,
                expiry=expiry.isoformat(),
            )
        else:
            report.errors.append("profile_not_found")
            logger.warning(
                "membership_activation_skipped_no_profile",
                user_id=payment.user_id,
                reference=payment.reference,
            )

        try:
            async with session.begin_nested():
                enqueue_receipt(session, payment, requested_by="completion")
            report.receipt_enqueued = True
            metrics.record_side_effect("receipt_request")
        except SQLAlchemyError as e:
            report.errors.append("receipt_enqueue_failed")
            logger.error(
                "receipt_enqueue_failed",
                reference=payment.reference,
                error=str(e),
            )

        return report

    def notify_committed(self, payment: Payment, report: DispatchReport) -> None:
        """Fan out the invalidation signal once the transition is durable."""
        metrics.record_side_effect("invalidation")
        for listener in self._listeners:
            try:
                listener(payment.user_id, report.invalidate)
            except Exception as e:
                logger.error(
                    "invalidation_listener_failed",
                    user_id=payment.user_id,
                    error=str(e),
                )
