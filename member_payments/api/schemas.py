"""
Pydantic schemas for API request/response models.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class PayerInfoSchema(BaseModel):
    """Payer details forwarded to the hosted checkout page."""

    name: Optional[str] = Field(default=None, max_length=200, description="Payer full name")
    email: Optional[str] = Field(default=None, max_length=255, description="Payer email")
    phone: Optional[str] = Field(default=None, max_length=32, description="Payer mobile number")


class InitiateCheckoutRequest(BaseModel):
    """Request schema for starting a hosted checkout."""

    amount: Decimal = Field(..., description="Amount in the settlement currency (max 2 decimals)")
    payment_type: str = Field(default="membership_dues", description="What the payment is for")
    reference: Optional[str] = Field(
        default=None, description="Reference of a pre-created pending payment"
    )
    description: Optional[str] = Field(
        default=None, max_length=200, description="Line shown on the checkout page"
    )
    payer: Optional[PayerInfoSchema] = Field(default=None, description="Optional payer details")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"amount": "120.00", "payment_type": "membership_dues"},
                {"amount": "50", "payment_type": "event_fee", "description": "Annual dinner"},
            ]
        }
    }


class CheckoutResponse(BaseModel):
    """Response schema for checkout initiation."""

    success: bool = Field(default=True)
    checkout_url: str = Field(..., description="Provider page to redirect the payer to")
    reference: str = Field(..., description="Payment reference")
    amount: Decimal = Field(..., description="Amount charged")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "success": True,
                    "checkout_url": "https://pay.hubtel.com/4f1b2c3d",
                    "reference": "DUES-1760781234567-9f2c41d07be85a13",
                    "amount": "120.00",
                }
            ]
        }
    }


class CreatePendingRequest(BaseModel):
    """Request schema for pre-creating a pending payment."""

    amount: Decimal = Field(..., description="Amount in the settlement currency")
    payment_type: str = Field(default="membership_dues", description="What the payment is for")
    reference: Optional[str] = Field(default=None, description="Client-chosen reference")
    notes: Optional[str] = Field(default=None, max_length=500, description="Free text note")


class PaymentResponse(BaseModel):
    """A ledger row as shown to its owner."""

    success: bool = Field(default=True)
    payment_id: str = Field(..., description="Payment ID")
    reference: str = Field(..., description="Payment reference")
    amount: Decimal = Field(..., description="Amount")
    currency: str = Field(..., description="Currency code")
    payment_type: str = Field(..., description="Payment type")
    status: str = Field(..., description="pending, completed or failed")
    created_at: Optional[str] = Field(default=None, description="Creation timestamp (ISO 8601)")


class RegistrationPaymentRequest(BaseModel):
    """Request schema for the post-signup registration fee checkout."""

    email: str = Field(..., min_length=3, max_length=255, description="Email used at sign-up")
    full_name: str = Field(..., min_length=1, max_length=200, description="Member full name")
    phone: Optional[str] = Field(default=None, max_length=32, description="Mobile number")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Shallow shape check; the profile lookup is authoritative."""
        v = v.strip()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v


class ReferenceRequest(BaseModel):
    """Request body naming one payment."""

    reference: str = Field(..., description="Payment reference")

    model_config = {
        "json_schema_extra": {"examples": [{"reference": "REG-1760781234567-9f2c41d07be85a13"}]}
    }


class StatusCheckResponse(BaseModel):
    """Response schema for status checks and admin re-checks."""

    success: bool = Field(..., description="The status could be determined")
    reference: str = Field(..., description="Payment reference")
    status: str = Field(..., description="Local status after reconciliation")
    hubtel_status: Optional[str] = Field(default=None, description="Raw provider status")
    transaction_id: Optional[str] = Field(default=None, description="Provider transaction ID")
    amount: Decimal = Field(..., description="Ledger amount")
    payment_method: Optional[str] = Field(default=None, description="Method used by the payer")
    message: Optional[str] = Field(default=None, description="Provider message")
    keep_polling: bool = Field(..., description="True while the payment is still pending")
    invalidate: List[str] = Field(default_factory=list, description="Client views to refresh")
    timestamp: str = Field(..., description="When the check ran (ISO 8601)")


class VerifyResponse(BaseModel):
    """Response schema for payment verification."""

    verified: bool = Field(..., description="The payment is completed")
    status: str = Field(..., description="pending, completed or failed")
    amount: Decimal = Field(..., description="Ledger amount")
    reference: str = Field(..., description="Payment reference")
    invalidate: List[str] = Field(default_factory=list, description="Client views to refresh")


class PendingPaymentsResponse(BaseModel):
    """Pending payments of the signed-in member."""

    payments: List[PaymentResponse] = Field(default_factory=list)


class ReceiptResponse(BaseModel):
    success: bool = Field(...)
    message: str = Field(...)


class WebhookResponse(BaseModel):
    """Response schema for provider callbacks."""

    success: bool = Field(..., description="Status re-derivation ran and succeeded")
    status: Optional[str] = Field(default=None, description="Local status after processing")
    error: Optional[str] = Field(default=None, description="Error code when success is false")


class SweepResponse(BaseModel):
    """Response schema for the pending payment sweep."""

    examined: int
    completed: int
    failed: int
    still_pending: int
    errors: int
    references: List[str]


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
