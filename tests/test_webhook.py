"""
Tests for the provider callback endpoint.
"""
import dataclasses
from typing import Any, List
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from sqlalchemy import select

from member_payments.api.main import create_app
from member_payments.core.references import generate_reference
from member_payments.database.models import CallbackReceipt
from member_payments.services import Services

from .conftest import MEMBER_ID, FakeEmailApi, FakeHubtel

CALLBACK_URL = "/webhooks/hubtel-callback"


def callback_body(reference: str, status: str = "Success") -> dict:
    return {
        "ResponseCode": "0000",
        "Status": status,
        "Data": {
            "CheckoutId": "4f1b2c3d",
            "ClientReference": reference,
            "Status": status,
            "Amount": 120.0,
        },
    }


async def _receipts(services: Services) -> List[CallbackReceipt]:
    async with services.session_factory() as session:
        result = await session.execute(select(CallbackReceipt).order_by(CallbackReceipt.id))
        return list(result.scalars().all())


class TestMalformedCallbacks:
    """Bodies that cannot name a payment are rejected with 400."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_json(self, api_client: httpx.AsyncClient, services: Services) -> None:
        response = await api_client.post(
            CALLBACK_URL, content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "invalid_json"}
        assert await _receipts(services) == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_body_must_be_an_object(self, api_client: httpx.AsyncClient) -> None:
        response = await api_client.post(CALLBACK_URL, json=["DUES-1-abc"])

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_body"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_reference(self, api_client: httpx.AsyncClient) -> None:
        response = await api_client.post(CALLBACK_URL, json={"Status": "Success", "Data": {}})

        assert response.status_code == 400
        assert response.json()["error"] == "missing_reference"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_reference(self, api_client: httpx.AsyncClient, fake_hubtel: FakeHubtel) -> None:
        response = await api_client.post(CALLBACK_URL, json=callback_body("'; DROP TABLE payments; --"))

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_reference"
        assert fake_hubtel.status_calls == []


class TestCallbackProcessing:
    """Well-formed callbacks are recorded and answered with 200."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_reference_is_acknowledged(
        self, api_client: httpx.AsyncClient, services: Services
    ) -> None:
        reference = generate_reference("DUES")

        response = await api_client.post(CALLBACK_URL, json=callback_body(reference))

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["error"] == "not_found"
        receipts = await _receipts(services)
        assert len(receipts) == 1
        assert receipts[0].reference == reference
        assert receipts[0].outcome == "not_found"
        assert receipts[0].processed_at is not None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_paid_callback_completes_payment(
        self,
        api_client: httpx.AsyncClient,
        services: Services,
        fake_hubtel: FakeHubtel,
        fake_email: FakeEmailApi,
        create_profile: Any,
        load_payment: Any,
        load_profile: Any,
    ) -> None:
        await create_profile()
        snapshot = await services.engine.create_pending(user_id=MEMBER_ID, amount="120")
        fake_hubtel.set_status(snapshot.reference, "Paid")

        response = await api_client.post(CALLBACK_URL, json=callback_body(snapshot.reference))

        assert response.status_code == 200
        assert response.json() == {"success": True, "status": "completed", "error": None}
        payment = await load_payment(snapshot.reference)
        assert payment.status == "completed"
        assert payment.provider_transaction_id == f"TXN-{snapshot.reference[-6:]}"
        assert (await load_profile()).membership_status == "active"
        receipts = await _receipts(services)
        assert receipts[0].claimed_status == "Success"
        assert receipts[0].outcome == "completed"
        # Receipt delivered by the post-response task
        assert len(fake_email.sent) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_claimed_success_is_not_trusted(
        self,
        api_client: httpx.AsyncClient,
        services: Services,
        fake_hubtel: FakeHubtel,
        load_payment: Any,
    ) -> None:
        snapshot = await services.engine.create_pending(user_id=MEMBER_ID, amount="120")
        fake_hubtel.set_status(snapshot.reference, "Unpaid")

        response = await api_client.post(CALLBACK_URL, json=callback_body(snapshot.reference, "Success"))

        assert response.json()["status"] == "pending"
        assert (await load_payment(snapshot.reference)).status == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_replayed_callback_is_harmless(
        self,
        api_client: httpx.AsyncClient,
        services: Services,
        fake_hubtel: FakeHubtel,
        fake_email: FakeEmailApi,
        create_profile: Any,
    ) -> None:
        await create_profile()
        snapshot = await services.engine.create_pending(user_id=MEMBER_ID, amount="120")
        fake_hubtel.set_status(snapshot.reference, "Paid")

        for _ in range(3):
            response = await api_client.post(CALLBACK_URL, json=callback_body(snapshot.reference))
            assert response.json()["status"] == "completed"

        assert len(await _receipts(services)) == 3
        # Terminal after the first delivery: no further provider queries
        assert fake_hubtel.status_calls == [snapshot.reference]
        assert len(fake_email.sent) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reference_in_lowercase_top_level_field(
        self, api_client: httpx.AsyncClient, services: Services, fake_hubtel: FakeHubtel
    ) -> None:
        snapshot = await services.engine.create_pending(user_id=MEMBER_ID, amount="120")
        fake_hubtel.set_status(snapshot.reference, "Unknown")

        response = await api_client.post(
            CALLBACK_URL, json={"clientReference": snapshot.reference, "status": "Pending"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_provider_outage_still_acknowledged(
        self, api_client: httpx.AsyncClient, services: Services, fake_hubtel: FakeHubtel
    ) -> None:
        snapshot = await services.engine.create_pending(user_id=MEMBER_ID, amount="120")
        fake_hubtel.status_response = httpx.Response(503, json={"message": "maintenance"})

        response = await api_client.post(CALLBACK_URL, json=callback_body(snapshot.reference))

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["error"] == "provider_unavailable"
        assert (await _receipts(services))[0].outcome == "provider_unavailable"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_over_limit_is_recorded_and_acknowledged(
        self, services: Services, fake_hubtel: FakeHubtel
    ) -> None:
        settings = services.settings.model_copy(update={"webhook_rate_limit": 1})
        app = create_app(services=dataclasses.replace(services, settings=settings))
        snapshot = await services.engine.create_pending(user_id=MEMBER_ID, amount="120")
        fake_hubtel.set_status(snapshot.reference, "Unpaid")

        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            first = await client.post(CALLBACK_URL, json=callback_body(snapshot.reference))
            second = await client.post(CALLBACK_URL, json=callback_body(snapshot.reference))

        assert first.status_code == 200
        assert first.json()["success"] is True
        assert second.status_code == 200
        assert second.json() == {"success": False, "error": "rate_limited"}
        assert second.headers["X-RateLimit-Remaining"] == "0"
        assert "Retry-After" in second.headers
        assert len(fake_hubtel.status_calls) == 1
        assert [r.outcome for r in await _receipts(services)] == ["pending", "rate_limited"]


class TestRegistrationCallbackToken:
    """Registration payments only accept callbacks echoing their token."""

    async def _start_registration(
        self, api_client: httpx.AsyncClient, fake_hubtel: FakeHubtel, create_profile: Any
    ) -> tuple:
        await create_profile(email="kofi.boateng@example.org", full_name="Kofi Boateng")
        response = await api_client.post(
            "/payments/registration",
            json={"email": "Kofi.Boateng@example.org", "full_name": "Kofi Boateng", "phone": "0241234567"},
        )
        assert response.status_code == 200
        reference = response.json()["reference"]
        callback_url = fake_hubtel.checkout_calls[0]["callbackUrl"]
        token = parse_qs(urlparse(callback_url).query)["token"][0]
        fake_hubtel.set_status(reference, "Paid")
        return reference, token

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_token_is_refused(
        self,
        api_client: httpx.AsyncClient,
        fake_hubtel: FakeHubtel,
        create_profile: Any,
        load_payment: Any,
    ) -> None:
        reference, _ = await self._start_registration(api_client, fake_hubtel, create_profile)

        response = await api_client.post(CALLBACK_URL, json=callback_body(reference))

        assert response.status_code == 200
        assert response.json()["error"] == "forbidden"
        assert (await load_payment(reference)).status == "pending"
        assert fake_hubtel.status_calls == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_wrong_token_is_refused(
        self, api_client: httpx.AsyncClient, fake_hubtel: FakeHubtel, create_profile: Any
    ) -> None:
        reference, token = await self._start_registration(api_client, fake_hubtel, create_profile)

        response = await api_client.post(
            CALLBACK_URL, params={"token": "0" * len(token)}, json=callback_body(reference)
        )

        assert response.json()["error"] == "forbidden"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_echoed_token_completes_payment(
        self,
        api_client: httpx.AsyncClient,
        fake_hubtel: FakeHubtel,
        create_profile: Any,
        load_payment: Any,
    ) -> None:
        reference, token = await self._start_registration(api_client, fake_hubtel, create_profile)

        response = await api_client.post(CALLBACK_URL, params={"token": token}, json=callback_body(reference))

        assert response.json()["status"] == "completed"
        payment = await load_payment(reference)
        assert payment.status == "completed"
        assert payment.payment_type == "registration_fee"
