"""
Client-side convergence loop for a checkout that has just redirected back.

The provider's redirect only hints at the outcome. The poller verifies once
straight away and, while the payment is still pending, keeps verifying on a
fixed interval up to a bounded number of attempts. It then stops quietly and
leaves the payment to the callback, a manual re-check or the sweep.
"""
import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog

from .api_client import ApiCallError, PaymentsApiClient, RateLimited

logger = structlog.get_logger(__name__)


class PollState(str, enum.Enum):
    IDLE = "idle"
    VERIFYING = "verifying"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    ERROR = "error"

    @property
    def is_final(self) -> bool:
        return self not in (PollState.IDLE, PollState.VERIFYING, PollState.POLLING)


_TERMINAL = {"completed": PollState.COMPLETED, "failed": PollState.FAILED}


@dataclass
class PollUpdate:
    """What the UI needs after each verify."""

    state: PollState
    reference: str
    attempts: int
    response: Optional[Dict[str, Any]] = None
    invalidate: List[str] = field(default_factory=list)


UpdateListener = Callable[[PollUpdate], None]


class PaymentPoller:
    """
    Cooperative verify loop for one payment.

    Use as an async context manager so the background task is cancelled when
    the owning view goes away::

        async with PaymentPoller(api, reference) as poller:
            await poller.start(redirect_status="success")
            final = await poller.wait()
    """

    def __init__(
        self,
        api: PaymentsApiClient,
        reference: str,
        interval_seconds: float = 5.0,
        max_attempts: int = 6,
        on_update: Optional[UpdateListener] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.api = api
        self.reference = reference
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self.on_update = on_update
        self._sleep = sleep
        self.state = PollState.IDLE
        self.attempts = 0
        self.last_response: Optional[Dict[str, Any]] = None
        self._task: Optional[asyncio.Task[PollState]] = None

    def _set_state(self, state: PollState, response: Optional[Dict[str, Any]] = None) -> None:
        self.state = state
        if response is not None:
            self.last_response = response
        if self.on_update is not None:
            self.on_update(
                PollUpdate(
                    state=state,
                    reference=self.reference,
                    attempts=self.attempts,
                    response=response,
                    invalidate=list((response or {}).get("invalidate", [])),
                )
            )

    async def _verify_once(self) -> Optional[PollState]:
        """One verify call. Returns the final state, or None to keep going."""
        self.attempts += 1
        response = await self.api.verify(self.reference)
        final = _TERMINAL.get(response.get("status", ""))
        if final is not None:
            logger.info(
                "payment_poll_resolved",
                reference=self.reference,
                status=final.value,
                attempts=self.attempts,
            )
            self._set_state(final, response)
            return final
        self._set_state(PollState.POLLING, response)
        return None

    async def start(self, redirect_status: Optional[str] = None) -> PollState:
        """
        React to the provider redirect.

        ``cancelled`` and ``failed`` redirects end the flow without a call.
        Anything else is verified immediately; a pending result starts the
        background loop.
        """
        if self._task is not None:
            raise RuntimeError("Poller already started")

        hint = (redirect_status or "").strip().lower()
        if hint == "cancelled":
            self._set_state(PollState.CANCELLED)
            return self.state
        if hint == "failed":
            self._set_state(PollState.FAILED)
            return self.state

        self._set_state(PollState.VERIFYING)
        try:
            final = await self._verify_once()
        except RateLimited as e:
            logger.info("payment_poll_rate_limited", reference=self.reference, retry_after=e.retry_after)
            self._set_state(PollState.POLLING)
            self._task = asyncio.create_task(self._poll_loop(first_delay=e.retry_after))
            return self.state
        except ApiCallError as e:
            if not e.retriable:
                logger.warning("payment_poll_rejected", reference=self.reference, error_code=e.error_code)
                self._set_state(PollState.ERROR)
                return self.state
            self._set_state(PollState.POLLING)
            final = None
        except httpx.TransportError as e:
            logger.warning("payment_poll_transport_error", reference=self.reference, error=str(e))
            self._set_state(PollState.POLLING)
            final = None

        if final is None:
            self._task = asyncio.create_task(self._poll_loop())
        return self.state

    async def _poll_loop(self, first_delay: Optional[float] = None) -> PollState:
        delay = first_delay if first_delay is not None else self.interval_seconds
        while self.attempts < self.max_attempts:
            await self._sleep(max(delay, self.interval_seconds))
            delay = self.interval_seconds
            try:
                final = await self._verify_once()
            except RateLimited as e:
                delay = e.retry_after
                continue
            except ApiCallError as e:
                if not e.retriable:
                    logger.warning(
                        "payment_poll_rejected", reference=self.reference, error_code=e.error_code
                    )
                    self._set_state(PollState.ERROR)
                    return self.state
                continue
            except httpx.TransportError as e:
                logger.warning("payment_poll_transport_error", reference=self.reference, error=str(e))
                continue
            if final is not None:
                return final

        logger.info("payment_poll_exhausted", reference=self.reference, attempts=self.attempts)
        self._set_state(PollState.TIMED_OUT)
        return self.state

    async def wait(self) -> PollState:
        """Wait for the background loop, if any, and return the final state."""
        if self._task is None:
            return self.state
        try:
            return await self._task
        except asyncio.CancelledError:
            return self.state

    async def cancel(self) -> None:
        """Stop polling; safe to call more than once."""
        if self._task is None or self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._set_state(PollState.CANCELLED)
        logger.info("payment_poll_cancelled", reference=self.reference, attempts=self.attempts)

    async def __aenter__(self) -> "PaymentPoller":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.cancel()


async def sync_pending_payments(api: PaymentsApiClient) -> List[Dict[str, Any]]:
    """
    Re-check every pending payment of the signed-in member once.

    Returns:
        The status-check responses of payments that are no longer pending
    """
    changed: List[Dict[str, Any]] = []
    pending = await api.list_pending()
    for payment in pending:
        reference = payment["reference"]
        try:
            result = await api.status_check(reference)
        except RateLimited as e:
            logger.info("pending_sync_rate_limited", reference=reference, retry_after=e.retry_after)
            break
        except ApiCallError as e:
            logger.warning("pending_sync_check_failed", reference=reference, error_code=e.error_code)
            continue
        if result.get("status") != "pending":
            changed.append(result)

    logger.info("pending_sync_completed", checked=len(pending), changed=len(changed))
    return changed
