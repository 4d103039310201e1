"""
Reconciliation engine.

Drives a payment from ``pending`` to a terminal state from three unordered
entry points (checkout initiation, provider callback, status query) and
triggers completion side effects exactly once.

Key points:
- Provider status is always re-derived with an authenticated status query;
  callback bodies are never trusted.
- The ledger row is the only coordination point: every transition is a
  conditional UPDATE guarded by ``status = 'pending'``. A caller that loses
  the race sees ``rowcount == 0`` and reports the winner's state.
- No database transaction is held open across a provider call.
"""
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from member_payments.config import Settings, get_settings
from member_payments.core.errors import (
    ForbiddenError,
    PaymentNotFoundError,
    PaymentValidationError,
    PersistenceError,
    ProviderError,
    ProviderUnavailable,
)
from member_payments.core.references import is_valid_reference, reference_for
from member_payments.core.side_effects import DispatchReport, SideEffectDispatcher
from member_payments.core.states import (
    PaymentStatus,
    PaymentType,
    ProviderStatus,
    map_provider_status,
)
from member_payments.database.models import MemberProfile, Payment, PaymentEvent
from member_payments.integrations.hubtel_client import (
    CheckoutSession,
    HubtelClient,
    PayerInfo,
    ProviderStatusReport,
)
from member_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

WEBHOOK_TOKEN_BYTES = 32


class EventSource:
    """Where a transition request came from; recorded on audit events."""

    INITIATE = "initiate"
    WEBHOOK = "webhook"
    VERIFY = "verify"
    STATUS_CHECK = "status_check"
    ADMIN = "admin"
    SWEEP = "sweep"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_amount(raw: Any, maximum: Decimal) -> Decimal:
    """
    Parse and validate a payment amount.

    Raises:
        PaymentValidationError: Not a positive number with at most two
            decimal places, or above ``maximum``
    """
    if isinstance(raw, bool) or raw is None:
        raise PaymentValidationError("Amount must be a number")
    try:
        amount = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise PaymentValidationError("Amount must be a number")
    if not amount.is_finite():
        raise PaymentValidationError("Amount must be a number")
    if amount <= 0:
        raise PaymentValidationError("Amount must be greater than zero")
    if amount > maximum:
        raise PaymentValidationError(
            f"Amount must not exceed {maximum}", details={"max_amount": str(maximum)}
        )
    if amount != amount.quantize(Decimal("0.01")):
        raise PaymentValidationError("Amount must have at most two decimal places")
    return amount.quantize(Decimal("0.01"))


def validate_payment_type(raw: Any) -> PaymentType:
    try:
        return PaymentType(raw)
    except ValueError:
        allowed = ", ".join(t.value for t in PaymentType)
        raise PaymentValidationError(f"Invalid payment type. Must be one of: {allowed}")


def require_reference(reference: Any) -> str:
    if not is_valid_reference(reference):
        raise PaymentValidationError("Invalid reference format")
    return reference


def normalise_phone(phone: Optional[str]) -> Optional[str]:
    """Ghanaian numbers in international form without the plus: 233XXXXXXXXX."""
    if not phone:
        return None
    digits = "".join(phone.split())
    if digits.startswith("+"):
        digits = digits[1:]
    if digits.startswith("0"):
        digits = "233" + digits[1:]
    if not digits.startswith("233"):
        digits = "233" + digits
    return digits


def _append_note(existing: Optional[str], line: str) -> str:
    return f"{existing}\n{line}" if existing else line


@dataclass
class PaymentSnapshot:
    """Detached, read-only view of a ledger row."""

    id: str
    reference: str
    user_id: str
    amount: Decimal
    currency: str
    payment_type: str
    status: PaymentStatus
    payment_method: Optional[str]
    provider_transaction_id: Optional[str]
    payment_date: Optional[datetime]
    created_at: Optional[datetime]
    notes: Optional[str] = None

    @classmethod
    def from_model(cls, payment: Payment) -> "PaymentSnapshot":
        return cls(
            id=str(payment.id),
            reference=payment.reference,
            user_id=payment.user_id,
            amount=Decimal(payment.amount),
            currency=payment.currency,
            payment_type=payment.payment_type,
            status=PaymentStatus(payment.status),
            payment_method=payment.payment_method,
            provider_transaction_id=payment.provider_transaction_id,
            payment_date=payment.payment_date,
            created_at=payment.created_at,
            notes=payment.notes,
        )


@dataclass
class ReconciliationResult:
    """Outcome of one status re-derivation."""

    payment: PaymentSnapshot
    transitioned: bool = False
    provider: Optional[ProviderStatusReport] = None
    side_effects: Optional[DispatchReport] = None

    @property
    def status(self) -> PaymentStatus:
        return self.payment.status

    @property
    def keep_polling(self) -> bool:
        return self.payment.status == PaymentStatus.PENDING


@dataclass
class CheckoutRequest:
    """Everything needed to start a hosted checkout."""

    user_id: str
    amount: Any
    payment_type: Any = PaymentType.MEMBERSHIP_DUES.value
    reference: Optional[str] = None
    description: Optional[str] = None
    payer: Optional[PayerInfo] = None
    return_base_url: Optional[str] = None
    return_path: str = "/dashboard/payment-callback"
    return_params: Dict[str, str] = field(default_factory=dict)
    notes: Optional[str] = None
    webhook_token: Optional[str] = None


@dataclass
class CheckoutResult:
    checkout_url: str
    reference: str
    amount: Decimal
    payment_id: str


@dataclass
class SweepReport:
    """Summary of one pending-payment sweep."""

    examined: int = 0
    completed: int = 0
    failed: int = 0
    still_pending: int = 0
    errors: int = 0
    references: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "examined": self.examined,
            "completed": self.completed,
            "failed": self.failed,
            "still_pending": self.still_pending,
            "errors": self.errors,
            "references": self.references,
        }


class ReconciliationEngine:
    """
    State machine over the payment ledger.

    Entry points:
    - initiate_checkout / create_pending: create the pending row
    - verify: owner-scoped re-derivation (client poll or status check)
    - handle_callback: provider webhook trigger
    - recheck: administrative re-derivation without the owner check
    - close_abandoned: periodic sweep of stale pending rows
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: HubtelClient,
        dispatcher: Optional[SideEffectDispatcher] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """
        Initialize the engine.

        Args:
            session_factory: Factory for ledger sessions
            provider: Provider gateway client
            dispatcher: Completion side effect dispatcher
            settings: Application settings
            clock: Source of "now" (UTC)
        """
        self.session_factory = session_factory
        self.provider = provider
        self.dispatcher = dispatcher or SideEffectDispatcher()
        self.settings = settings or get_settings()
        self._clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _find(self, session: AsyncSession, reference: str) -> Optional[Payment]:
        result = await session.execute(select(Payment).where(Payment.reference == reference))
        return result.scalar_one_or_none()

    async def get_payment(self, reference: str) -> PaymentSnapshot:
        """
        Load a payment by reference.

        Raises:
            PaymentNotFoundError: No payment has this reference
        """
        async with self.session_factory() as session:
            payment = await self._find(session, reference)
            if payment is None:
                raise PaymentNotFoundError("Payment not found", details={"reference": reference})
            return PaymentSnapshot.from_model(payment)

    async def get_owned_payment(self, reference: str, principal: str) -> PaymentSnapshot:
        """
        Load a payment and require that ``principal`` owns it.

        Raises:
            PaymentValidationError: Malformed reference
            PaymentNotFoundError: Unknown reference
            ForbiddenError: Payment belongs to someone else
        """
        require_reference(reference)
        snapshot = await self.get_payment(reference)
        if snapshot.user_id != principal:
            logger.warning(
                "payment_access_denied",
                reference=reference,
                principal=principal,
            )
            raise ForbiddenError("Access denied")
        return snapshot

    async def list_pending(self, user_id: str) -> List[PaymentSnapshot]:
        """Pending payments of one member, oldest first."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Payment)
                .where(Payment.user_id == user_id, Payment.status == PaymentStatus.PENDING.value)
                .order_by(Payment.created_at)
            )
            return [PaymentSnapshot.from_model(p) for p in result.scalars().all()]

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_pending(
        self,
        user_id: str,
        amount: Any,
        payment_type: Any = PaymentType.MEMBERSHIP_DUES.value,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
        webhook_token: Optional[str] = None,
    ) -> PaymentSnapshot:
        """
        Insert a new pending payment.

        Raises:
            PaymentValidationError: Bad amount, type or reference, or the
                reference is already taken
            PersistenceError: The insert failed for another reason
        """
        valid_amount = validate_amount(amount, self.settings.max_payment_amount)
        valid_type = validate_payment_type(payment_type)
        if reference is not None:
            require_reference(reference)
        reference = reference or reference_for(valid_type)

        payment = Payment(
            reference=reference,
            user_id=user_id,
            amount=valid_amount,
            currency=self.settings.currency,
            payment_type=valid_type.value,
            status=PaymentStatus.PENDING.value,
            notes=notes,
            webhook_token=webhook_token,
        )
        async with self.session_factory() as session:
            try:
                session.add(payment)
                await session.flush()
                session.add(
                    PaymentEvent(
                        payment_id=payment.id,
                        event_type="payment.created",
                        event_data={"amount": str(valid_amount), "payment_type": valid_type.value},
                        source=EventSource.INITIATE,
                    )
                )
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.warning("payment_reference_conflict", reference=reference)
                raise PaymentValidationError(
                    "Payment reference already in use", details={"reference": reference}
                )
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("payment_create_failed", reference=reference, error=str(e))
                raise PersistenceError("Failed to create payment record")

        logger.info(
            "payment_created",
            reference=reference,
            user_id=user_id,
            amount=str(valid_amount),
            payment_type=valid_type.value,
        )
        return PaymentSnapshot.from_model(payment)

    async def _resolve_checkout_row(self, request: CheckoutRequest) -> PaymentSnapshot:
        """Reuse a pre-created pending row or create a new one."""
        if request.reference is not None:
            require_reference(request.reference)
            async with self.session_factory() as session:
                existing = await self._find(session, request.reference)
            if existing is not None:
                if existing.user_id != request.user_id:
                    raise ForbiddenError("Access denied")
                if existing.status != PaymentStatus.PENDING.value:
                    raise PaymentValidationError("Payment has already been settled")
                amount = validate_amount(request.amount, self.settings.max_payment_amount)
                if Decimal(existing.amount) != amount:
                    raise PaymentValidationError("Amount does not match the pending payment")
                return PaymentSnapshot.from_model(existing)

        return await self.create_pending(
            user_id=request.user_id,
            amount=request.amount,
            payment_type=request.payment_type,
            reference=request.reference,
            notes=request.notes,
            webhook_token=request.webhook_token,
        )

    def build_return_urls(
        self,
        base_url: Optional[str],
        path: str,
        reference: str,
        params: Optional[Dict[str, str]] = None,
    ) -> tuple[str, str]:
        """Success and cancellation URLs the provider redirects the payer to."""
        base = (base_url or self.settings.frontend_url).rstrip("/")
        extra = params or {}
        success = urlencode({"reference": reference, "status": "success", **extra})
        cancelled = urlencode({"reference": reference, "status": "cancelled", **extra})
        return f"{base}{path}?{success}", f"{base}{path}?{cancelled}"

    def callback_url_for(self, webhook_token: Optional[str]) -> str:
        url = self.settings.callback_url
        if webhook_token:
            url = f"{url}?{urlencode({'token': webhook_token})}"
        return url

    async def initiate_checkout(self, request: CheckoutRequest) -> CheckoutResult:
        """
        Create (or reuse) a pending payment and open a provider checkout.

        Validation and configuration failures happen before any row is
        written. If the provider call fails the row is closed as failed so
        no orphaned pending payment is left behind.

        Raises:
            PaymentValidationError: Bad amount, type or reference
            ForbiddenError: Reference belongs to another member
            ProviderError: The provider could not open a checkout
        """
        validate_amount(request.amount, self.settings.max_payment_amount)
        payment_type = validate_payment_type(request.payment_type)
        if request.reference is not None:
            require_reference(request.reference)
        if not self.provider.configured:
            logger.error("checkout_provider_not_configured")
            raise ProviderUnavailable("Payment service not configured")

        snapshot = await self._resolve_checkout_row(request)
        return_url, cancel_url = self.build_return_urls(
            request.return_base_url,
            request.return_path,
            snapshot.reference,
            request.return_params,
        )
        description = request.description or (
            f"{payment_type.value.replace('_', ' ').title()} ({snapshot.currency} {snapshot.amount})"
        )

        try:
            session: CheckoutSession = await self.provider.initiate_checkout(
                amount=snapshot.amount,
                description=description,
                reference=snapshot.reference,
                return_url=return_url,
                cancel_url=cancel_url,
                callback_url=self.callback_url_for(request.webhook_token),
                payer=request.payer,
            )
        except ProviderError as e:
            logger.error(
                "checkout_initiation_failed",
                reference=snapshot.reference,
                error_code=e.error_code,
                error=e.message,
            )
            await self._close_failed_checkout(snapshot, e)
            raise

        logger.info(
            "checkout_initiated",
            reference=snapshot.reference,
            user_id=snapshot.user_id,
            amount=str(snapshot.amount),
        )
        return CheckoutResult(
            checkout_url=session.checkout_url,
            reference=snapshot.reference,
            amount=snapshot.amount,
            payment_id=snapshot.id,
        )

    async def _close_failed_checkout(self, snapshot: PaymentSnapshot, error: ProviderError) -> None:
        note = f"Checkout initiation failed: {error.message}"
        try:
            await self._transition(
                snapshot,
                PaymentStatus.FAILED,
                source=EventSource.INITIATE,
                note=note,
                event_data={"error": error.error_code, "message": error.message},
            )
        except PersistenceError:
            # The original provider error is what the caller needs to see
            logger.error("failed_checkout_not_closed", reference=snapshot.reference)

    async def initiate_registration(
        self,
        email: str,
        full_name: str,
        phone: Optional[str] = None,
        return_base_url: Optional[str] = None,
    ) -> CheckoutResult:
        """
        Flat-fee checkout for a member who signed up moments ago.

        The caller is unauthenticated; the email must belong to a profile
        created within the registration window. The payment carries a
        one-time webhook token that the callback must echo.

        Raises:
            PaymentValidationError: Missing email or name
            PaymentNotFoundError: No recent registration for this email
        """
        if not email or not full_name:
            raise PaymentValidationError("Missing required fields")

        window_start = self._clock() - timedelta(minutes=self.settings.registration_window_minutes)
        async with self.session_factory() as session:
            result = await session.execute(
                select(MemberProfile).where(
                    func.lower(MemberProfile.email) == email.strip().lower(),
                    MemberProfile.created_at >= window_start,
                )
            )
            profile = result.scalars().first()
        if profile is None:
            logger.warning("registration_profile_not_found")
            raise PaymentNotFoundError("Registration not found or expired. Please try again.")

        fee = self.settings.registration_fee
        return await self.initiate_checkout(
            CheckoutRequest(
                user_id=profile.user_id,
                amount=fee,
                payment_type=PaymentType.REGISTRATION_FEE.value,
                description=f"Registration Fee ({self.settings.currency} {fee})",
                payer=PayerInfo(name=full_name, email=email, phone=normalise_phone(phone)),
                return_base_url=return_base_url,
                return_path="/payment-callback",
                return_params={"type": "registration"},
                notes="Registration fee (flat rate)",
                webhook_token=secrets.token_hex(WEBHOOK_TOKEN_BYTES),
            )
        )

    # ------------------------------------------------------------------
    # Status re-derivation
    # ------------------------------------------------------------------

    async def verify(
        self, reference: str, principal: str, source: str = EventSource.VERIFY
    ) -> ReconciliationResult:
        """
        Owner-scoped status re-derivation.

        The ownership check happens before any provider call. Terminal
        payments are returned as stored.

        Raises:
            PaymentValidationError: Malformed reference
            PaymentNotFoundError: Unknown reference
            ForbiddenError: ``principal`` does not own the payment
            ProviderError: Status query failed (local state unchanged)
        """
        snapshot = await self.get_owned_payment(reference, principal)
        return await self._rederive(snapshot, source)

    async def recheck(self, reference: str) -> ReconciliationResult:
        """Administrative re-derivation; no ownership check."""
        require_reference(reference)
        snapshot = await self.get_payment(reference)
        return await self._rederive(snapshot, EventSource.ADMIN)

    async def handle_callback(
        self, reference: str, token: Optional[str] = None
    ) -> ReconciliationResult:
        """
        Provider webhook trigger.

        The callback body only names the reference; status comes from the
        provider's status API. Payments created with a webhook token only
        accept callbacks that echo it.

        Raises:
            PaymentValidationError: Malformed reference
            PaymentNotFoundError: Unknown reference
            ForbiddenError: Token missing or wrong
        """
        require_reference(reference)
        async with self.session_factory() as session:
            payment = await self._find(session, reference)
            if payment is None:
                logger.warning("callback_unknown_reference", reference=reference)
                raise PaymentNotFoundError("Payment not found", details={"reference": reference})
            expected_token = payment.webhook_token
            snapshot = PaymentSnapshot.from_model(payment)

        if expected_token and not (token and secrets.compare_digest(token, expected_token)):
            logger.warning("callback_token_mismatch", reference=reference)
            raise ForbiddenError("Invalid callback token")

        return await self._rederive(snapshot, EventSource.WEBHOOK)

    async def _rederive(self, snapshot: PaymentSnapshot, source: str) -> ReconciliationResult:
        if snapshot.status.is_terminal:
            logger.info(
                "payment_already_terminal",
                reference=snapshot.reference,
                status=snapshot.status.value,
                source=source,
            )
            return ReconciliationResult(payment=snapshot)

        report = await self.provider.query_status(snapshot.reference)
        return await self.apply(snapshot.reference, report, source=source)

    async def apply(
        self,
        reference: str,
        report: ProviderStatusReport,
        source: str = EventSource.VERIFY,
    ) -> ReconciliationResult:
        """
        Apply a provider determination to the ledger.

        - terminal payment: no-op, current state returned
        - provider says completed: conditional transition plus side effects
        - provider says failed: conditional transition, no side effects
        - provider says pending/unknown: no mutation

        Raises:
            PaymentNotFoundError: Unknown reference
            PersistenceError: Ledger write failed
        """
        snapshot = await self.get_payment(reference)
        if snapshot.status.is_terminal:
            return ReconciliationResult(payment=snapshot, provider=report)

        target = map_provider_status(report.provider_status)
        if target == PaymentStatus.PENDING:
            logger.info(
                "payment_still_pending",
                reference=reference,
                provider_status=report.provider_status.value,
                source=source,
            )
            return ReconciliationResult(payment=snapshot, provider=report)

        if (
            target == PaymentStatus.COMPLETED
            and report.amount is not None
            and report.amount < snapshot.amount
        ):
            logger.warning(
                "provider_amount_below_ledger",
                reference=reference,
                ledger_amount=str(snapshot.amount),
                provider_amount=str(report.amount),
            )

        if report.provider_status == ProviderStatus.REFUNDED:
            note = f"Refunded per provider ({source})"
        elif target == PaymentStatus.COMPLETED:
            note = (
                f"Payment completed via {source}. "
                f"Transaction ID: {report.transaction_id or 'N/A'}"
            )
        else:
            note = f"Payment failed via {source}"

        result = await self._transition(
            snapshot,
            target,
            source=source,
            note=note,
            report=report,
            event_data={
                "provider_status": report.provider_status.value,
                "transaction_id": report.transaction_id,
                "provider_amount": str(report.amount) if report.amount is not None else None,
            },
        )
        result.provider = report
        return result

    async def _transition(
        self,
        snapshot: PaymentSnapshot,
        target: PaymentStatus,
        source: str,
        note: str,
        report: Optional[ProviderStatusReport] = None,
        event_data: Optional[Dict[str, Any]] = None,
    ) -> ReconciliationResult:
        """Conditional pending -> target update, side effects on completion."""
        now = self._clock()
        values: Dict[str, Any] = {
            "status": target.value,
            "webhook_token": None,
            "notes": _append_note(snapshot.notes, note),
        }
        if target == PaymentStatus.COMPLETED:
            values["payment_date"] = now
        if report is not None:
            if report.transaction_id:
                values["provider_transaction_id"] = report.transaction_id
            if report.payment_method:
                values["payment_method"] = report.payment_method

        dispatch_report: Optional[DispatchReport] = None
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    update(Payment)
                    .where(
                        Payment.reference == snapshot.reference,
                        Payment.status == PaymentStatus.PENDING.value,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    metrics.record_transition_race_lost()
                    logger.info(
                        "transition_race_lost",
                        reference=snapshot.reference,
                        target=target.value,
                        source=source,
                    )
                    return ReconciliationResult(payment=await self.get_payment(snapshot.reference))

                payment = (
                    await session.execute(
                        select(Payment)
                        .where(Payment.reference == snapshot.reference)
                        .execution_options(populate_existing=True)
                    )
                ).scalar_one()

                if target == PaymentStatus.COMPLETED:
                    dispatch_report = await self.dispatcher.dispatch(session, payment)

                session.add(
                    PaymentEvent(
                        payment_id=payment.id,
                        event_type=f"payment.{target.value}",
                        event_data={**(event_data or {}), "note": note},
                        source=source,
                    )
                )
                updated = PaymentSnapshot.from_model(payment)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(
                    "transition_persist_failed",
                    reference=snapshot.reference,
                    target=target.value,
                    source=source,
                    error=str(e),
                )
                raise PersistenceError(
                    "Payment status could not be saved; retry verification",
                    details={"reference": snapshot.reference, "provider_status": target.value},
                )

        metrics.record_transition(target.value, source)
        logger.info(
            "payment_transitioned",
            reference=snapshot.reference,
            user_id=snapshot.user_id,
            status=target.value,
            source=source,
        )
        if dispatch_report is not None:
            self.dispatcher.notify_committed(payment, dispatch_report)
        return ReconciliationResult(
            payment=updated, transitioned=True, side_effects=dispatch_report
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def close_abandoned(
        self, older_than_hours: Optional[int] = None, batch_size: int = 100
    ) -> SweepReport:
        """
        Re-derive stale pending payments and close the ones the provider
        reports as unpaid after the abandonment threshold.

        Ambiguous provider answers leave the payment pending.
        """
        hours = older_than_hours if older_than_hours is not None else (
            self.settings.abandoned_checkout_hours
        )
        cutoff = self._clock() - timedelta(hours=hours)
        async with self.session_factory() as session:
            result = await session.execute(
                select(Payment)
                .where(
                    Payment.status == PaymentStatus.PENDING.value,
                    Payment.created_at < cutoff,
                )
                .order_by(Payment.created_at)
                .limit(batch_size)
            )
            stale = [PaymentSnapshot.from_model(p) for p in result.scalars().all()]

        report = SweepReport()
        logger.info("abandoned_sweep_started", candidates=len(stale), cutoff=cutoff.isoformat())
        for snapshot in stale:
            report.examined += 1
            try:
                provider_report = await self.provider.query_status(snapshot.reference)
                if provider_report.provider_status == ProviderStatus.UNPAID:
                    outcome = await self._transition(
                        snapshot,
                        PaymentStatus.FAILED,
                        source=EventSource.SWEEP,
                        note=f"Checkout abandoned: unpaid after {hours} hours",
                        event_data={"provider_status": provider_report.provider_status.value},
                    )
                else:
                    outcome = await self.apply(
                        snapshot.reference, provider_report, source=EventSource.SWEEP
                    )
            except (ProviderError, PersistenceError) as e:
                report.errors += 1
                logger.error(
                    "abandoned_sweep_item_failed",
                    reference=snapshot.reference,
                    error=e.message,
                )
                continue

            if outcome.status == PaymentStatus.COMPLETED:
                report.completed += 1
            elif outcome.status == PaymentStatus.FAILED:
                report.failed += 1
            else:
                report.still_pending += 1
            if outcome.transitioned:
                report.references.append(snapshot.reference)

        metrics.record_sweep_run(self._clock().timestamp())
        logger.info("abandoned_sweep_completed", **report.to_dict())
        return report
