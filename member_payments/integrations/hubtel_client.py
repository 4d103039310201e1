"""
Hubtel API client with circuit breaker.

Implements:
- Online checkout initiation
- Transaction status queries (one request per call; callers re-verify)
- Circuit breaker pattern
- Error classification into the provider error taxonomy
"""
import json
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx
import structlog

from member_payments.config import Settings, get_settings
from member_payments.core.errors import (
    ProviderProtocolError,
    ProviderRejected,
    ProviderUnavailable,
)
from member_payments.core.states import ProviderStatus
from member_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SUCCESS_RESPONSE_CODE = "0000"


@dataclass
class PayerInfo:
    """Optional payer details forwarded to the hosted checkout page."""

    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class CheckoutSession:
    """Result of a successful checkout initiation."""

    checkout_url: str
    checkout_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderStatusReport:
    """Normalised answer of the status API."""

    provider_status: ProviderStatus
    transaction_id: Optional[str] = None
    amount: Optional[Decimal] = None
    payment_method: Optional[str] = None
    timestamp: Optional[str] = None
    message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class CircuitBreaker:
    """
    Circuit breaker for provider API calls.

    Stops calling the provider for ``timeout`` seconds after
    ``failure_threshold`` consecutive availability failures. Business
    rejections do not count as failures.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 1,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
            clock: Time source
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open
        self._clock = clock

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Execute an awaitable factory with circuit breaker protection.

        Raises:
            ProviderUnavailable: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time is not None
                and self._clock() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise ProviderUnavailable("Payment provider temporarily unavailable")

        try:
            result = await func()
        except ProviderUnavailable:
            self.on_failure()
            raise
        except ProviderProtocolError:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


def _first(mapping: Dict[str, Any], *keys: str) -> Any:
    """First non-empty value among keys; the provider mixes key casing."""
    for key in keys:
        value = mapping.get(key)
        if value not in (None, ""):
            return value
    return None


def _provider_message(body: Any, default: str) -> str:
    if isinstance(body, dict):
        message = _first(body, "message", "Message", "error", "Error")
        if message:
            return str(message)
    return default


class HubtelClient:
    """
    Wrapper for the Hubtel checkout and status APIs.

    Both operations authenticate with HTTP basic auth built from the
    server-side client id and secret. Missing credentials raise
    ProviderUnavailable before any network traffic.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """
        Initialize Hubtel client.

        Args:
            settings: Application settings (defaults to the cached instance)
            http_client: Shared httpx client; one is created when omitted
            circuit_breaker: Circuit breaker shared across calls
        """
        self.settings = settings or get_settings()
        self._http = http_client or httpx.AsyncClient(
            timeout=self.settings.hubtel_timeout_seconds
        )
        self._owns_http = http_client is None
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=self.settings.hubtel_circuit_failure_threshold,
            timeout=self.settings.hubtel_circuit_reset_seconds,
        )

    @property
    def configured(self) -> bool:
        return self.settings.hubtel_configured

    def _auth(self) -> httpx.BasicAuth:
        if not self.configured:
            logger.error("hubtel_credentials_missing")
            raise ProviderUnavailable("Payment service not configured")
        return httpx.BasicAuth(
            self.settings.hubtel_client_id, self.settings.hubtel_client_secret
        )

    def _merchant_account(self) -> int:
        try:
            return int(self.settings.hubtel_merchant_account_number)
        except ValueError:
            logger.error("hubtel_merchant_account_invalid")
            raise ProviderUnavailable("Payment service misconfigured")

    async def _send(
        self, operation: str, request: Callable[[], Awaitable[httpx.Response]]
    ) -> httpx.Response:
        """Run one HTTP exchange, mapping transport and auth failures."""
        start_time = time.time()
        outcome = "error"
        try:
            try:
                response = await request()
            except httpx.TransportError as e:
                logger.error("hubtel_transport_error", operation=operation, error=str(e))
                raise ProviderUnavailable(
                    "Payment provider unreachable", details={"reason": type(e).__name__}
                ) from e

            if response.status_code in (401, 403):
                logger.error(
                    "hubtel_credentials_rejected",
                    operation=operation,
                    status_code=response.status_code,
                )
                raise ProviderUnavailable("Payment provider rejected our credentials")
            if response.status_code >= 500:
                logger.error(
                    "hubtel_server_error",
                    operation=operation,
                    status_code=response.status_code,
                    body_preview=response.text[:200],
                )
                raise ProviderUnavailable(
                    "Payment provider error", details={"status_code": response.status_code}
                )
            outcome = "ok"
            return response
        finally:
            metrics.record_provider_call(operation, outcome, time.time() - start_time)

    async def initiate_checkout(
        self,
        amount: Decimal,
        description: str,
        reference: str,
        return_url: str,
        cancel_url: str,
        callback_url: str,
        payer: Optional[PayerInfo] = None,
    ) -> CheckoutSession:
        """
        Create a hosted checkout session.

        Args:
            amount: Amount in the settlement currency
            description: Line shown to the payer
            reference: Our client reference for the transaction
            return_url: Where the payer lands after paying
            cancel_url: Where the payer lands after cancelling
            callback_url: Server-to-server notification URL
            payer: Optional payer details

        Returns:
            CheckoutSession: URL to redirect the payer to

        Raises:
            ProviderUnavailable: Credentials missing or provider unreachable
            ProviderRejected: Provider refused the request
            ProviderProtocolError: Response could not be interpreted
        """
        auth = self._auth()
        payload: Dict[str, Any] = {
            "totalAmount": float(amount),
            "description": description,
            "callbackUrl": callback_url,
            "returnUrl": return_url,
            "cancellationUrl": cancel_url,
            "merchantAccountNumber": self._merchant_account(),
            "clientReference": reference,
        }
        if payer is not None:
            if payer.name:
                payload["payeeName"] = payer.name
            if payer.email:
                payload["payeeEmail"] = payer.email
            if payer.phone:
                payload["payeeMobileNumber"] = payer.phone

        logger.info("initiating_hubtel_checkout", reference=reference, amount=str(amount))

        async def _post() -> httpx.Response:
            return await self._http.post(
                self.settings.hubtel_checkout_url,
                json=payload,
                auth=auth,
                headers={"Accept": "application/json"},
            )

        async def _exchange() -> CheckoutSession:
            response = await self._send("initiate_checkout", _post)
            return self._parse_checkout(response, reference)

        return await self.circuit_breaker.call(_exchange)

    @staticmethod
    def _parse_checkout(response: httpx.Response, reference: str) -> CheckoutSession:
        text = response.text
        if not text.strip():
            logger.error("hubtel_checkout_empty_response", status_code=response.status_code)
            raise ProviderProtocolError("Empty response from payment service")
        try:
            body = json.loads(text)
        except ValueError:
            logger.error(
                "hubtel_checkout_unparseable_response",
                status_code=response.status_code,
                body_preview=text[:200],
            )
            raise ProviderProtocolError("Invalid response from payment service")

        if not response.is_success:
            message = _provider_message(body, f"Payment service returned {response.status_code}")
            logger.warning(
                "hubtel_checkout_rejected", status_code=response.status_code, message=message
            )
            raise ProviderRejected(message, details={"status_code": response.status_code})

        if not isinstance(body, dict):
            raise ProviderProtocolError("Unexpected response shape from payment service")

        response_code = _first(body, "responseCode", "ResponseCode")
        if response_code is not None and str(response_code) != SUCCESS_RESPONSE_CODE:
            message = _provider_message(body, "Payment service declined the checkout")
            logger.warning(
                "hubtel_checkout_declined", response_code=response_code, message=message
            )
            raise ProviderRejected(message, details={"response_code": str(response_code)})

        data = body.get("data") or body.get("Data") or {}
        if not isinstance(data, dict):
            data = {}
        checkout_url = _first(data, "checkoutUrl", "CheckoutUrl") or _first(
            body, "checkoutUrl", "CheckoutUrl"
        )
        if not checkout_url:
            logger.error("hubtel_checkout_url_missing", reference=reference)
            raise ProviderProtocolError("No checkout URL received from payment service")

        checkout_id = _first(data, "checkoutId", "CheckoutId")
        logger.info("hubtel_checkout_created", reference=reference, checkout_id=checkout_id)
        return CheckoutSession(
            checkout_url=str(checkout_url),
            checkout_id=str(checkout_id) if checkout_id is not None else None,
            raw=body,
        )

    async def query_status(self, reference: str) -> ProviderStatusReport:
        """
        Ask the provider for the authoritative status of a transaction.

        Empty or malformed bodies yield ``ProviderStatus.UNKNOWN`` rather than
        an error, so callers keep the payment pending. Exactly one request is
        made; a transport failure is reported, not retried.

        Raises:
            ProviderUnavailable: Credentials missing or provider unreachable
            ProviderRejected: Provider refused the query
        """
        auth = self._auth()
        url = self.settings.hubtel_status_url.format(
            merchant_account=self.settings.hubtel_merchant_account_number
        )

        async def _get() -> httpx.Response:
            return await self._http.get(
                url,
                params={"clientReference": reference},
                auth=auth,
                headers={"Accept": "application/json"},
            )

        async def _exchange() -> ProviderStatusReport:
            response = await self._send("query_status", _get)
            return self._parse_status(response, reference)

        return await self.circuit_breaker.call(_exchange)

    @staticmethod
    def _parse_status(response: httpx.Response, reference: str) -> ProviderStatusReport:
        text = response.text
        try:
            body = json.loads(text) if text.strip() else None
        except ValueError:
            body = None

        if response.status_code == 404:
            # The provider has no transaction for this reference yet
            return ProviderStatusReport(
                provider_status=ProviderStatus.UNKNOWN,
                message=_provider_message(body, "Transaction not found"),
            )
        if not response.is_success:
            message = _provider_message(body, f"Status query returned {response.status_code}")
            logger.warning(
                "hubtel_status_rejected",
                reference=reference,
                status_code=response.status_code,
                message=message,
            )
            raise ProviderRejected(message, details={"status_code": response.status_code})

        if not isinstance(body, dict):
            logger.warning(
                "hubtel_status_unparseable",
                reference=reference,
                body_preview=text[:200],
            )
            return ProviderStatusReport(
                provider_status=ProviderStatus.UNKNOWN,
                message="Could not parse status response",
            )

        message = _provider_message(body, "")
        response_code = _first(body, "ResponseCode", "responseCode")
        data = body.get("Data") or body.get("data")
        if str(response_code) != SUCCESS_RESPONSE_CODE or not isinstance(data, dict):
            logger.info(
                "hubtel_status_indeterminate",
                reference=reference,
                response_code=response_code,
                message=message,
            )
            return ProviderStatusReport(
                provider_status=ProviderStatus.UNKNOWN,
                message=message or "Unable to retrieve transaction status",
                raw=body,
            )

        raw_amount = _first(data, "Amount", "amount")
        try:
            amount = Decimal(str(raw_amount)) if raw_amount is not None else None
        except ArithmeticError:
            amount = None

        transaction_id = _first(data, "TransactionId", "transactionId")
        report = ProviderStatusReport(
            provider_status=ProviderStatus.parse(_first(data, "Status", "status")),
            transaction_id=str(transaction_id) if transaction_id is not None else None,
            amount=amount,
            payment_method=_first(data, "PaymentMethod", "paymentMethod"),
            timestamp=_first(data, "Date", "date", "TransactionDate"),
            message=message or None,
            raw=body,
        )
        logger.info(
            "hubtel_status_received",
            reference=reference,
            provider_status=report.provider_status.value,
            transaction_id=report.transaction_id,
        )
        return report

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()


__all__ = [
    "CheckoutSession",
    "CircuitBreaker",
    "HubtelClient",
    "PayerInfo",
    "ProviderStatusReport",
]
