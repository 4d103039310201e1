"""
API routes for payment checkout, reconciliation and provider callbacks.
"""
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from member_payments.core.errors import PaymentError, PersistenceError
from member_payments.core.receipts import request_receipt
from member_payments.core.reconciliation import (
    CheckoutRequest,
    PaymentSnapshot,
    ReconciliationResult,
)
from member_payments.core.references import is_valid_reference
from member_payments.core.states import ProviderStatus
from member_payments.database.models import CallbackReceipt
from member_payments.integrations.hubtel_client import PayerInfo
from member_payments.monitoring.health import HealthCheck
from member_payments.monitoring.metrics import metrics
from member_payments.services import Services

from .dependencies import (
    check_rate_limit,
    client_ip,
    get_principal,
    get_services,
    rate_limit_ip,
    rate_limit_user,
    require_admin,
    return_base_url,
)
from .schemas import (
    CheckoutResponse,
    CreatePendingRequest,
    HealthCheckResponse,
    InitiateCheckoutRequest,
    PaymentResponse,
    PendingPaymentsResponse,
    ReceiptResponse,
    ReferenceRequest,
    RegistrationPaymentRequest,
    StatusCheckResponse,
    SweepResponse,
    VerifyResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def _payment_payload(snapshot: PaymentSnapshot) -> Dict[str, Any]:
    return {
        "success": True,
        "payment_id": snapshot.id,
        "reference": snapshot.reference,
        "amount": snapshot.amount,
        "currency": snapshot.currency,
        "payment_type": snapshot.payment_type,
        "status": snapshot.status.value,
        "created_at": snapshot.created_at.isoformat() if snapshot.created_at else None,
    }


def _status_payload(result: ReconciliationResult) -> Dict[str, Any]:
    payment = result.payment
    provider = result.provider
    determined = payment.status.is_terminal or (
        provider is not None and provider.provider_status != ProviderStatus.UNKNOWN
    )
    return {
        "success": determined,
        "reference": payment.reference,
        "status": payment.status.value,
        "hubtel_status": provider.provider_status.value if provider else None,
        "transaction_id": (provider.transaction_id if provider else None)
        or payment.provider_transaction_id,
        "amount": payment.amount,
        "payment_method": (provider.payment_method if provider else None)
        or payment.payment_method,
        "message": provider.message if provider else None,
        "keep_polling": result.keep_polling,
        "invalidate": list(result.side_effects.invalidate) if result.side_effects else [],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def _schedule_receipt_delivery(background_tasks: BackgroundTasks, services: Services) -> None:
    """Deliver queued receipts after the response; the worker retries leftovers."""
    if services.settings.email_api_key:
        background_tasks.add_task(services.outbox.drain)


def _after_reconciliation(
    result: ReconciliationResult, background_tasks: BackgroundTasks, services: Services
) -> None:
    if result.side_effects is not None and result.side_effects.receipt_enqueued:
        _schedule_receipt_delivery(background_tasks, services)


@payment_router.post(
    "/initiate-checkout",
    response_model=CheckoutResponse,
    summary="Start a hosted checkout",
    description="Create (or reuse) a pending payment and return the provider checkout URL",
    dependencies=[Depends(rate_limit_user("initiate_checkout", "initiate_checkout_rate_limit"))],
)
async def initiate_checkout(
    body: InitiateCheckoutRequest,
    request: Request,
    principal: str = Depends(get_principal),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Start a checkout for the signed-in member."""
    logger.info(
        "api_initiate_checkout_request",
        amount=str(body.amount),
        payment_type=body.payment_type,
        reference=body.reference,
    )
    payer = PayerInfo(**body.payer.model_dump()) if body.payer else None
    result = await services.engine.initiate_checkout(
        CheckoutRequest(
            user_id=principal,
            amount=body.amount,
            payment_type=body.payment_type,
            reference=body.reference,
            description=body.description,
            payer=payer,
            return_base_url=return_base_url(request, services.settings),
        )
    )
    return {
        "success": True,
        "checkout_url": result.checkout_url,
        "reference": result.reference,
        "amount": result.amount,
    }


@payment_router.post(
    "/create-pending",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Pre-create a pending payment",
    dependencies=[Depends(rate_limit_user("create_pending", "create_pending_rate_limit"))],
)
async def create_pending_payment(
    body: CreatePendingRequest,
    principal: str = Depends(get_principal),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Insert a pending payment that a later checkout will reuse."""
    snapshot = await services.engine.create_pending(
        user_id=principal,
        amount=body.amount,
        payment_type=body.payment_type,
        reference=body.reference,
        notes=body.notes,
    )
    return _payment_payload(snapshot)


@payment_router.post(
    "/registration",
    response_model=CheckoutResponse,
    summary="Registration fee checkout",
    description="Unauthenticated flat-fee checkout for a member who has just signed up",
    dependencies=[Depends(rate_limit_ip("registration", "registration_rate_limit"))],
)
async def registration_payment(
    body: RegistrationPaymentRequest,
    request: Request,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    result = await services.engine.initiate_registration(
        email=body.email,
        full_name=body.full_name,
        phone=body.phone,
        return_base_url=return_base_url(request, services.settings),
    )
    return {
        "success": True,
        "checkout_url": result.checkout_url,
        "reference": result.reference,
        "amount": result.amount,
    }


@payment_router.post(
    "/status-check",
    response_model=StatusCheckResponse,
    summary="Check payment status with the provider",
    dependencies=[Depends(rate_limit_user("status_check", "status_check_rate_limit"))],
)
async def status_check(
    body: ReferenceRequest,
    background_tasks: BackgroundTasks,
    principal: str = Depends(get_principal),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Re-derive the payment's status from the provider.

    Only the owner may check; terminal payments are answered from the
    ledger without a provider call.
    """
    result = await services.engine.verify(body.reference, principal, source="status_check")
    _after_reconciliation(result, background_tasks, services)
    return _status_payload(result)


@payment_router.post(
    "/verify",
    response_model=VerifyResponse,
    summary="Verify a payment",
    dependencies=[Depends(rate_limit_user("verify", "verify_rate_limit"))],
)
async def verify_payment(
    body: ReferenceRequest,
    background_tasks: BackgroundTasks,
    principal: str = Depends(get_principal),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Poll target for the client after the provider redirect."""
    result = await services.engine.verify(body.reference, principal)
    _after_reconciliation(result, background_tasks, services)
    return {
        "verified": result.status.value == "completed",
        "status": result.status.value,
        "amount": result.payment.amount,
        "reference": result.payment.reference,
        "invalidate": list(result.side_effects.invalidate) if result.side_effects else [],
    }


@payment_router.get(
    "/pending",
    response_model=PendingPaymentsResponse,
    summary="List the member's pending payments",
    dependencies=[Depends(rate_limit_user("list_pending", "status_check_rate_limit"))],
)
async def list_pending_payments(
    principal: str = Depends(get_principal),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    pending = await services.engine.list_pending(principal)
    return {"payments": [_payment_payload(p) for p in pending]}


@payment_router.post(
    "/send-receipt",
    response_model=ReceiptResponse,
    summary="Resend a payment receipt",
    dependencies=[Depends(rate_limit_user("receipt", "receipt_rate_limit"))],
)
async def send_receipt(
    body: ReferenceRequest,
    background_tasks: BackgroundTasks,
    principal: str = Depends(get_principal),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    snapshot = await services.engine.get_owned_payment(body.reference, principal)
    await request_receipt(services.session_factory, snapshot)
    _schedule_receipt_delivery(background_tasks, services)
    return {"success": True, "message": "Receipt queued for delivery"}


def _callback_field(body: Dict[str, Any], *names: str) -> Optional[Any]:
    nested = body.get("Data") or body.get("data")
    for source in (body, nested if isinstance(nested, dict) else {}):
        for name in names:
            value = source.get(name)
            if value not in (None, ""):
                return value
    return None


async def _record_callback(
    services: Services, request: Request, reference: str, body: Dict[str, Any]
) -> int:
    claimed = _callback_field(body, "Status", "status")
    receipt = CallbackReceipt(
        reference=reference,
        source_ip=client_ip(request, services.settings),
        claimed_status=str(claimed)[:50] if claimed is not None else None,
        payload=body,
    )
    async with services.session_factory() as session:
        try:
            session.add(receipt)
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error("callback_receipt_not_recorded", reference=reference, error=str(e))
            raise PersistenceError("Callback could not be recorded")
    return receipt.id


async def _finish_callback(services: Services, receipt_id: int, outcome: str) -> None:
    async with services.session_factory() as session:
        try:
            await session.execute(
                update(CallbackReceipt)
                .where(CallbackReceipt.id == receipt_id)
                .values(outcome=outcome, processed_at=datetime.now(timezone.utc))
            )
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error("callback_outcome_not_recorded", receipt_id=receipt_id, error=str(e))


def _callback_rejected(error: str, start_time: float) -> JSONResponse:
    metrics.record_webhook_callback("rejected", time.time() - start_time)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": error},
    )


@webhook_router.post(
    "/hubtel-callback",
    response_model=WebhookResponse,
    summary="Hubtel callback endpoint",
    description=(
        "Unauthenticated provider notification. The body only names the payment; "
        "its status is re-derived from the provider's status API."
    ),
)
async def hubtel_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    token: Optional[str] = Query(default=None, max_length=128),
    services: Services = Depends(get_services),
) -> Any:
    """
    Handle a provider callback.

    Malformed bodies get a 400. Anything else is recorded and answered with
    200; ``success`` reports whether the status re-derivation succeeded.
    Over the per-IP limit the callback is still recorded and answered with
    200, but the provider is not queried.
    """
    start_time = time.time()
    try:
        body = await request.json()
    except ValueError:
        logger.warning("callback_invalid_json")
        return _callback_rejected("invalid_json", start_time)
    if not isinstance(body, dict):
        return _callback_rejected("invalid_body", start_time)

    reference = _callback_field(body, "ClientReference", "clientReference")
    if reference is None:
        logger.warning("callback_missing_reference")
        return _callback_rejected("missing_reference", start_time)
    if not is_valid_reference(reference):
        logger.warning("callback_invalid_reference")
        return _callback_rejected("invalid_reference", start_time)

    logger.info("api_callback_received", reference=reference)
    receipt_id = await _record_callback(services, request, reference, body)

    limit = await check_rate_limit(
        request, services, "webhook", client_ip(request, services.settings), "webhook_rate_limit"
    )
    if not limit.allowed:
        await _finish_callback(services, receipt_id, "rate_limited")
        metrics.record_webhook_callback("rate_limited", time.time() - start_time)
        return {"success": False, "error": "rate_limited"}

    try:
        result = await services.engine.handle_callback(reference, token)
    except PaymentError as e:
        await _finish_callback(services, receipt_id, e.error_code)
        metrics.record_webhook_callback(e.error_code, time.time() - start_time)
        logger.warning("api_callback_unresolved", reference=reference, error_code=e.error_code)
        return {"success": False, "error": e.error_code}

    await _finish_callback(services, receipt_id, result.status.value)
    _after_reconciliation(result, background_tasks, services)
    metrics.record_webhook_callback(result.status.value, time.time() - start_time)
    return {"success": True, "status": result.status.value}


@admin_router.post(
    "/payments/{reference}/recheck",
    response_model=StatusCheckResponse,
    summary="Re-check a payment with the provider",
    dependencies=[Depends(require_admin)],
)
async def admin_recheck(
    reference: str,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    logger.info("api_admin_recheck", reference=reference)
    result = await services.engine.recheck(reference)
    _after_reconciliation(result, background_tasks, services)
    return _status_payload(result)


@admin_router.post(
    "/reconcile-pending",
    response_model=SweepResponse,
    summary="Sweep stale pending payments",
    description="Re-check old pending payments and close abandoned checkouts",
    dependencies=[Depends(require_admin)],
)
async def reconcile_pending(
    background_tasks: BackgroundTasks,
    older_than_hours: Optional[int] = Query(default=None, ge=0),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    report = await services.engine.close_abandoned(older_than_hours=older_than_hours)
    if report.completed:
        _schedule_receipt_delivery(background_tasks, services)
    return report.to_dict()


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    checker = HealthCheck(services.settings, services.session_factory, services.provider)
    return await checker.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    checker = HealthCheck(services.settings, services.session_factory, services.provider)
    return await checker.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    checker = HealthCheck(services.settings, services.session_factory, services.provider)
    result = await checker.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
