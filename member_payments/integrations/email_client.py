"""
Transactional email API client and receipt rendering.

Receipts are sent through a Resend-compatible HTTP API with bearer auth.
Transient failures (transport errors, 429, 5xx) are retried with
exponential backoff; anything else is reported as permanent.
"""
import html
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from member_payments.config import Settings, get_settings

logger = structlog.get_logger(__name__)


class EmailDeliveryError(Exception):
    """Email API refused or could not be reached."""

    def __init__(self, message: str, permanent: bool = False):
        super().__init__(message)
        self.message = message
        self.permanent = permanent


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, EmailDeliveryError) and not error.permanent


@dataclass
class ReceiptDetails:
    """Fields shown on a payment receipt."""

    recipient_name: str
    reference: str
    amount: Decimal
    currency: str
    payment_type: str
    payment_method: Optional[str]
    payment_date: Optional[datetime]


def render_receipt(details: ReceiptDetails, organisation: str) -> Dict[str, str]:
    """
    Build the subject and HTML body of a receipt.

    Every interpolated value is HTML-escaped.
    """
    paid_on = (details.payment_date or datetime.now()).strftime("%d %B %Y").lstrip("0")
    amount = f"{details.currency} {details.amount:.2f}"
    rows = [
        ("Transaction Reference", details.reference),
        ("Payment Type", details.payment_type.replace("_", " ").title()),
        ("Payment Method", details.payment_method or "Mobile Money"),
        ("Date", paid_on),
    ]
    table = "\n".join(
        f'<tr><td style="padding:8px 0;color:#666;">{html.escape(label)}:</td>'
        f'<td style="padding:8px 0;text-align:right;font-weight:600;">{html.escape(value)}</td></tr>'
        for label, value in rows
    )
    body = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Payment Receipt</title></head>
<body style="font-family:'Segoe UI',Tahoma,sans-serif;line-height:1.6;color:#333;max-width:600px;margin:0 auto;padding:20px;">
  <h1 style="font-size:22px;">{html.escape(organisation)}</h1>
  <p>Dear <strong>{html.escape(details.recipient_name or "Member")}</strong>,</p>
  <p>Thank you for your payment. This email confirms that we have received your payment successfully.</p>
  <table style="width:100%;border-collapse:collapse;">
{table}
    <tr><td style="padding:15px 0 8px 0;font-weight:700;">Amount Paid:</td>
    <td style="padding:15px 0 8px 0;text-align:right;font-weight:700;">{html.escape(amount)}</td></tr>
  </table>
  <p><strong>Payment Status:</strong> Completed</p>
  <p style="color:#666;font-size:12px;">This is an automated receipt. Please keep this email for your records.</p>
</body>
</html>
"""
    return {"subject": f"Payment Receipt - {amount}", "html": body}


class EmailClient:
    """Minimal client for the transactional email API."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_attempts: int = 3,
        retry_wait_multiplier: float = 0.5,
    ) -> None:
        self.settings = settings or get_settings()
        self._http = http_client or httpx.AsyncClient(timeout=15.0)
        self._owns_http = http_client is None
        self.retry_attempts = retry_attempts
        self.retry_wait_multiplier = retry_wait_multiplier

    async def _post(self, payload: Dict[str, Any]) -> str:
        try:
            response = await self._http.post(
                self.settings.email_api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.settings.email_api_key}"},
            )
        except httpx.TransportError as e:
            raise EmailDeliveryError(f"Email API unreachable: {type(e).__name__}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise EmailDeliveryError(f"Email API returned {response.status_code}")
        if not response.is_success:
            raise EmailDeliveryError(
                f"Email API rejected message ({response.status_code}): {response.text[:200]}",
                permanent=True,
            )
        try:
            return str(response.json().get("id", "sent"))
        except ValueError:
            return "sent"

    async def send(self, to: str, subject: str, html_body: str) -> str:
        """
        Send one email.

        Returns:
            str: Provider message id

        Raises:
            EmailDeliveryError: After retries are exhausted, or immediately
                for permanent rejections
        """
        if not self.settings.email_api_key:
            raise EmailDeliveryError("Email API key not configured")

        payload = {
            "from": self.settings.receipt_from_address,
            "to": [to],
            "subject": subject,
            "html": html_body,
        }
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_multiplier, max=8),
            reraise=True,
        )
        message_id = await retrying(self._post, payload)
        logger.info("email_sent", message_id=message_id, subject=subject)
        return message_id

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()
