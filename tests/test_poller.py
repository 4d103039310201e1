"""
Tests for the client-side poller and the payments API client.
"""
import asyncio
from typing import Any, Dict, List, Optional, Union

import httpx
import pytest

from member_payments.client import (
    ApiCallError,
    PaymentPoller,
    PaymentsApiClient,
    PollState,
    PollUpdate,
    RateLimited,
    sync_pending_payments,
)

REFERENCE = "DUES-1760781234567-9f2c41d07be85a13"

Answer = Union[Dict[str, Any], Exception]


class ScriptedApi:
    """Answers verify/status-check calls from a script; the last answer repeats."""

    def __init__(self, answers: List[Answer], pending: Optional[List[Dict[str, Any]]] = None):
        self.answers = answers
        self.pending = pending or []
        self.verify_calls = 0
        self.checked: List[str] = []
        self.status_answers: Dict[str, Answer] = {}

    def _next(self) -> Dict[str, Any]:
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def verify(self, reference: str) -> Dict[str, Any]:
        self.verify_calls += 1
        return self._next()

    async def status_check(self, reference: str) -> Dict[str, Any]:
        self.checked.append(reference)
        answer = self.status_answers[reference]
        if isinstance(answer, Exception):
            raise answer
        return answer

    async def list_pending(self) -> List[Dict[str, Any]]:
        return self.pending


def pending() -> Dict[str, Any]:
    return {"verified": False, "status": "pending", "reference": REFERENCE, "invalidate": []}


def completed() -> Dict[str, Any]:
    return {
        "verified": True,
        "status": "completed",
        "reference": REFERENCE,
        "invalidate": ["payments", "profile"],
    }


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class TestRedirectHints:
    """Cancelled and failed redirects end without a call."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "hint,expected", [("cancelled", PollState.CANCELLED), ("FAILED", PollState.FAILED)]
    )
    async def test_no_call(self, hint: str, expected: PollState) -> None:
        api = ScriptedApi([completed()])
        poller = PaymentPoller(api, REFERENCE)

        state = await poller.start(redirect_status=hint)

        assert state == expected
        assert await poller.wait() == expected
        assert api.verify_calls == 0


class TestPolling:
    """Verify once, then poll on a fixed interval."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_immediate_success(self) -> None:
        api = ScriptedApi([completed()])
        updates: List[PollUpdate] = []
        poller = PaymentPoller(api, REFERENCE, on_update=updates.append)

        state = await poller.start(redirect_status="success")

        assert state == PollState.COMPLETED
        assert api.verify_calls == 1
        assert [u.state for u in updates] == [PollState.VERIFYING, PollState.COMPLETED]
        assert updates[-1].invalidate == ["payments", "profile"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pending_then_completed(self) -> None:
        api = ScriptedApi([pending(), pending(), completed()])
        sleep = SleepRecorder()
        poller = PaymentPoller(api, REFERENCE, interval_seconds=5.0, sleep=sleep)

        assert await poller.start() == PollState.POLLING
        assert not poller.state.is_final
        assert await poller.wait() == PollState.COMPLETED

        assert api.verify_calls == 3
        assert sleep.delays == [5.0, 5.0]
        assert poller.last_response == completed()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_payment(self) -> None:
        api = ScriptedApi([pending(), {"verified": False, "status": "failed", "reference": REFERENCE}])
        poller = PaymentPoller(api, REFERENCE, sleep=SleepRecorder())

        await poller.start()

        assert await poller.wait() == PollState.FAILED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_attempts_are_bounded(self) -> None:
        api = ScriptedApi([pending()])
        sleep = SleepRecorder()
        poller = PaymentPoller(api, REFERENCE, max_attempts=6, sleep=sleep)

        await poller.start()

        assert await poller.wait() == PollState.TIMED_OUT
        assert poller.state.is_final
        assert api.verify_calls == 6
        assert len(sleep.delays) == 5

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self) -> None:
        api = ScriptedApi([RateLimited(12), completed()])
        sleep = SleepRecorder()
        poller = PaymentPoller(api, REFERENCE, interval_seconds=5.0, sleep=sleep)

        assert await poller.start() == PollState.POLLING
        assert await poller.wait() == PollState.COMPLETED

        assert sleep.delays == [12]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_errors_keep_polling(self) -> None:
        api = ScriptedApi([ApiCallError(503, "provider_unavailable", "down"), pending(), completed()])
        poller = PaymentPoller(api, REFERENCE, sleep=SleepRecorder())

        await poller.start()

        assert await poller.wait() == PollState.COMPLETED
        assert api.verify_calls == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_client_error_stops(self) -> None:
        api = ScriptedApi([ApiCallError(403, "forbidden", "Not your payment")])
        poller = PaymentPoller(api, REFERENCE, sleep=SleepRecorder())

        assert await poller.start() == PollState.ERROR
        assert await poller.wait() == PollState.ERROR
        assert api.verify_calls == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cannot_start_twice(self) -> None:
        api = ScriptedApi([pending()])
        poller = PaymentPoller(api, REFERENCE, interval_seconds=60)

        await poller.start()
        with pytest.raises(RuntimeError):
            await poller.start()
        await poller.cancel()


class TestCancellation:
    """Leaving the view stops the loop."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_mid_loop(self) -> None:
        api = ScriptedApi([pending()])
        poller = PaymentPoller(api, REFERENCE, interval_seconds=60)

        await poller.start()
        await asyncio.sleep(0)
        await poller.cancel()

        assert poller.state == PollState.CANCELLED
        assert await poller.wait() == PollState.CANCELLED
        assert api.verify_calls == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_context_manager_cancels(self) -> None:
        api = ScriptedApi([pending()])

        async with PaymentPoller(api, REFERENCE, interval_seconds=60) as poller:
            await poller.start()

        assert poller.state == PollState.CANCELLED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_after_completion_is_noop(self) -> None:
        api = ScriptedApi([completed()])
        poller = PaymentPoller(api, REFERENCE)

        await poller.start()
        await poller.cancel()

        assert poller.state == PollState.COMPLETED


class TestSyncPending:
    """Bulk re-check of a member's pending payments."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_returns_changed_payments(self) -> None:
        api = ScriptedApi([pending()], pending=[{"reference": r} for r in ("A", "B", "C")])
        api.status_answers = {
            "A": {"reference": "A", "status": "completed"},
            "B": ApiCallError(404, "not_found", "Payment not found"),
            "C": {"reference": "C", "status": "pending"},
        }

        changed = await sync_pending_payments(api)

        assert [c["reference"] for c in changed] == ["A"]
        assert api.checked == ["A", "B", "C"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stops_when_rate_limited(self) -> None:
        api = ScriptedApi([pending()], pending=[{"reference": r} for r in ("A", "B")])
        api.status_answers = {"A": RateLimited(30), "B": {"reference": "B", "status": "failed"}}

        changed = await sync_pending_payments(api)

        assert changed == []
        assert api.checked == ["A"]


class TestPaymentsApiClient:
    """HTTP error mapping."""

    @staticmethod
    def _client(handler: Any) -> PaymentsApiClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return PaymentsApiClient("https://api.portal.test/", "member-token", http_client=http)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_verify_request(self) -> None:
        seen: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=completed())

        client = self._client(handler)
        result = await client.verify(REFERENCE)

        assert result["status"] == "completed"
        assert str(seen[0].url) == "https://api.portal.test/payments/verify"
        assert seen[0].headers["Authorization"] == "Bearer member-token"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_pending(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"payments": [{"reference": REFERENCE}]})

        client = self._client(handler)

        assert await client.list_pending() == [{"reference": REFERENCE}]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_after_header(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, headers={"Retry-After": "7"}, json={"error": "rate_limited"})

        client = self._client(handler)

        with pytest.raises(RateLimited) as exc_info:
            await client.status_check(REFERENCE)
        assert exc_info.value.retry_after == 7.0
        assert exc_info.value.retriable

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retry_after_from_body(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                429, json={"error": "rate_limited", "details": {"retry_after_seconds": 3}}
            )

        client = self._client(handler)

        with pytest.raises(RateLimited) as exc_info:
            await client.verify(REFERENCE)
        assert exc_info.value.retry_after == 3.0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_error_body(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(403, json={"error": "forbidden", "message": "Not your payment"})

        client = self._client(handler)

        with pytest.raises(ApiCallError) as exc_info:
            await client.verify(REFERENCE)
        assert exc_info.value.error_code == "forbidden"
        assert exc_info.value.message == "Not your payment"
        assert not exc_info.value.retriable
