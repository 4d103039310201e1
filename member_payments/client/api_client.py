"""
HTTP client for the payments API, used by portal-side code and the poller.
"""
from typing import Any, Dict, List, Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)


class ApiCallError(Exception):
    """The payments API answered with an error status."""

    def __init__(self, status_code: int, error_code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.message = message

    @property
    def retriable(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500


class RateLimited(ApiCallError):
    """HTTP 429; ``retry_after`` is the server's requested wait in seconds."""

    def __init__(self, retry_after: float, message: str = "Too many requests"):
        super().__init__(429, "rate_limited", message)
        self.retry_after = retry_after


def _retry_after(response: httpx.Response, body: Dict[str, Any]) -> float:
    header = response.headers.get("Retry-After")
    if header:
        try:
            return float(header)
        except ValueError:
            pass
    details = body.get("details") or {}
    return float(details.get("retry_after_seconds") or 1)


class PaymentsApiClient:
    """
    Bearer-token client for the member-facing payment endpoints.

    Args:
        base_url: API base URL
        token: The member's access token
        http_client: Optional preconfigured client (tests pass a mock transport)
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 15.0,
    ):
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {token}"}

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._http.request(
            method, f"{self._base_url}{path}", headers=self._headers, **kwargs
        )
        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code == 429:
            retry_after = _retry_after(response, body if isinstance(body, dict) else {})
            logger.info("payments_api_rate_limited", path=path, retry_after=retry_after)
            raise RateLimited(retry_after)
        if response.is_error:
            payload = body if isinstance(body, dict) else {}
            raise ApiCallError(
                response.status_code,
                payload.get("error", "http_error"),
                payload.get("message", response.reason_phrase),
            )
        return body

    async def verify(self, reference: str) -> Dict[str, Any]:
        """POST /payments/verify."""
        return await self._request("POST", "/payments/verify", json={"reference": reference})

    async def status_check(self, reference: str) -> Dict[str, Any]:
        """POST /payments/status-check."""
        return await self._request(
            "POST", "/payments/status-check", json={"reference": reference}
        )

    async def list_pending(self) -> List[Dict[str, Any]]:
        body = await self._request("GET", "/payments/pending")
        return list(body.get("payments", []))

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> "PaymentsApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
