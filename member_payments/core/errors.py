"""
Error taxonomy for the payment reconciliation service.

Every error carries the HTTP status it maps to and a short machine-readable
code, so the API layer renders all of them through a single handler.
"""
from typing import Any, Dict, Optional


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    status_code: int = 500
    error_code: str = "payment_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class PaymentValidationError(PaymentError):
    """Malformed amount, reference or request body. Nothing is written."""

    status_code = 400
    error_code = "validation_error"


class UnauthorizedError(PaymentError):
    """Missing or invalid principal."""

    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(PaymentError):
    """Authenticated, but not allowed to touch this payment."""

    status_code = 403
    error_code = "forbidden"


class PaymentNotFoundError(PaymentError):
    """No payment carries the given reference."""

    status_code = 404
    error_code = "not_found"


class RateLimitExceeded(PaymentError):
    """The caller's bucket for this operation is exhausted."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(self, result: Any, message: str = "Too many requests. Please try again later."):
        super().__init__(message, details={"retry_after_seconds": result.retry_after})
        self.result = result


class ProviderError(PaymentError):
    """Base class for failures talking to the payment provider."""

    status_code = 502
    error_code = "provider_error"


class ProviderUnavailable(ProviderError):
    """Credentials missing or misconfigured, or the provider is unreachable."""

    status_code = 503
    error_code = "provider_unavailable"


class ProviderRejected(ProviderError):
    """The provider refused the request on business grounds."""

    status_code = 422
    error_code = "provider_rejected"


class ProviderProtocolError(ProviderError):
    """The provider answered with something that cannot be interpreted."""

    status_code = 502
    error_code = "provider_protocol_error"


class PersistenceError(PaymentError):
    """
    A ledger write failed.

    When raised after the provider confirmed payment, the provider and the
    ledger disagree until a later verify succeeds; callers should retry.
    """

    status_code = 500
    error_code = "persistence_error"
    retriable = True

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["retriable"] = self.retriable
        return body
