"""
Pytest configuration and fixtures.

The ledger is a temporary SQLite file per test; the provider and the email
API are served by ``httpx.MockTransport`` fakes.
"""
import json
import time
from datetime import date, datetime
from decimal import Decimal
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx
import jwt
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from member_payments.config import Settings
from member_payments.core.rate_limiter import InMemoryRateLimiter
from member_payments.core.reconciliation import ReconciliationEngine
from member_payments.core.side_effects import SideEffectDispatcher
from member_payments.database.connection import create_engine_for, create_session_factory, init_db
from member_payments.database.models import MemberProfile, Payment
from member_payments.integrations.email_client import EmailClient
from member_payments.integrations.hubtel_client import HubtelClient
from member_payments.services import Services, build_services

JWT_SECRET = "test-jwt-secret-that-is-long-enough-for-hs256-keys"
ADMIN_KEY = "test-admin-key"
MEMBER_ID = "11111111-1111-1111-1111-111111111111"
OTHER_MEMBER_ID = "22222222-2222-2222-2222-222222222222"
TODAY = date(2026, 10, 18)


def pytest_configure(config: Any) -> None:
    config.addinivalue_line("markers", "unit: fast tests without I/O beyond SQLite")
    config.addinivalue_line("markers", "integration: tests driving the HTTP application")
    config.addinivalue_line("markers", "race: concurrent access to the same payment")


class FakeHubtel:
    """In-process stand-in for the checkout and status APIs."""

    def __init__(self) -> None:
        self.statuses: Dict[str, List[str]] = {}
        self.amounts: Dict[str, Decimal] = {}
        self.checkout_calls: List[Dict[str, Any]] = []
        self.status_calls: List[str] = []
        self.checkout_response: Optional[httpx.Response] = None
        self.status_response: Optional[httpx.Response] = None
        self.transport_errors = 0

    def set_status(self, reference: str, *statuses: str, amount: Optional[Decimal] = None) -> None:
        """Successive status answers; the last one repeats."""
        self.statuses[reference] = list(statuses)
        if amount is not None:
            self.amounts[reference] = amount

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST" and request.url.path.endswith("/items/initiate"):
            body = json.loads(request.content)
            self.checkout_calls.append(body)
            if self.checkout_response is not None:
                return self.checkout_response
            checkout_id = body["clientReference"][-8:]
            return httpx.Response(
                200,
                json={
                    "responseCode": "0000",
                    "status": "Success",
                    "data": {
                        "checkoutUrl": f"https://pay.hubtel.test/{checkout_id}",
                        "checkoutId": checkout_id,
                        "clientReference": body["clientReference"],
                    },
                },
            )

        if request.method == "GET" and request.url.path.endswith("/transactions/status"):
            reference = request.url.params["clientReference"]
            self.status_calls.append(reference)
            if self.transport_errors > 0:
                self.transport_errors -= 1
                raise httpx.ConnectError("connection refused", request=request)
            if self.status_response is not None:
                return self.status_response
            queue = self.statuses.get(reference)
            if not queue:
                return httpx.Response(404, json={"message": "Transaction not found"})
            status = queue.pop(0) if len(queue) > 1 else queue[0]
            data: Dict[str, Any] = {
                "Status": status,
                "ClientReference": reference,
                "TransactionId": f"TXN-{reference[-6:]}",
                "PaymentMethod": "mobilemoney",
                "Date": "2026-10-18T09:30:00Z",
            }
            if reference in self.amounts:
                data["Amount"] = float(self.amounts[reference])
            return httpx.Response(200, json={"ResponseCode": "0000", "Message": "Successful", "Data": data})

        return httpx.Response(404, json={"message": "unexpected request"})


class FakeEmailApi:
    """Records sent messages; ``failures`` is a queue of status codes to answer first."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []
        self.failures: List[int] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.failures:
            return httpx.Response(self.failures.pop(0), json={"message": "failure"})
        body = json.loads(request.content)
        self.sent.append(body)
        return httpx.Response(200, json={"id": f"msg_{len(self.sent)}"})


def make_token(
    user_id: str = MEMBER_ID,
    secret: str = JWT_SECRET,
    audience: str = "authenticated",
    expires_in: int = 3600,
) -> str:
    claims = {"sub": user_id, "aud": audience, "exp": int(time.time()) + expires_in}
    return jwt.encode(claims, secret, algorithm="HS256")


def auth_headers(user_id: str = MEMBER_ID) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        app_name="member-payments-test",
        app_env="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}",
        database_busy_timeout_seconds=10.0,
        hubtel_client_id="test-client-id",
        hubtel_client_secret="test-client-secret",
        hubtel_merchant_account_number="2017101",
        public_api_url="https://api.portal.test",
        frontend_url="https://portal.test",
        allowed_origins="https://portal.test,http://localhost:5173",
        auth_jwt_secret=JWT_SECRET,
        admin_api_key=ADMIN_KEY,
        email_api_key="re_test_key",
        rate_limit_backend="memory",
    )


@pytest_asyncio.fixture
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    engine = create_engine_for(test_settings.database_url, test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest.fixture
def fake_hubtel() -> FakeHubtel:
    return FakeHubtel()


@pytest.fixture
def fake_email() -> FakeEmailApi:
    return FakeEmailApi()


@pytest_asyncio.fixture
async def hubtel_client(
    test_settings: Settings, fake_hubtel: FakeHubtel
) -> AsyncGenerator[HubtelClient, Any]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake_hubtel.handler))
    yield HubtelClient(settings=test_settings, http_client=http)
    await http.aclose()


@pytest_asyncio.fixture
async def email_client(
    test_settings: Settings, fake_email: FakeEmailApi
) -> AsyncGenerator[EmailClient, Any]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake_email.handler))
    yield EmailClient(settings=test_settings, http_client=http, retry_wait_multiplier=0)
    await http.aclose()


@pytest.fixture
def dispatcher() -> SideEffectDispatcher:
    return SideEffectDispatcher(today=lambda: TODAY)


@pytest.fixture
def recon_engine(
    session_factory: async_sessionmaker[AsyncSession],
    hubtel_client: HubtelClient,
    dispatcher: SideEffectDispatcher,
    test_settings: Settings,
) -> ReconciliationEngine:
    return ReconciliationEngine(
        session_factory=session_factory,
        provider=hubtel_client,
        dispatcher=dispatcher,
        settings=test_settings,
    )


@pytest.fixture
def services(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    hubtel_client: HubtelClient,
    email_client: EmailClient,
    dispatcher: SideEffectDispatcher,
) -> Services:
    return build_services(
        settings=test_settings,
        session_factory=session_factory,
        provider=hubtel_client,
        rate_limiter=InMemoryRateLimiter(),
        email_client=email_client,
        dispatcher=dispatcher,
    )


@pytest_asyncio.fixture
async def api_client(services: Services) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """HTTP client bound to the ASGI app."""
    from member_payments.api.main import create_app

    app = create_app(settings=services.settings, services=services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def create_profile(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    """Factory inserting a member profile."""

    async def _create(
        user_id: str = MEMBER_ID,
        email: str = "ama.mensah@example.org",
        full_name: str = "Ama Mensah",
        created_at: Optional[datetime] = None,
        notify: bool = True,
    ) -> MemberProfile:
        profile = MemberProfile(
            user_id=user_id,
            email=email,
            full_name=full_name,
            notify_payment_receipts=notify,
        )
        if created_at is not None:
            profile.created_at = created_at
        async with session_factory() as session:
            session.add(profile)
            await session.commit()
        return profile

    return _create


@pytest.fixture
def load_payment(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    """Read a payment row straight from the ledger."""
    from sqlalchemy import select

    async def _load(reference: str) -> Optional[Payment]:
        async with session_factory() as session:
            result = await session.execute(select(Payment).where(Payment.reference == reference))
            return result.scalar_one_or_none()

    return _load


@pytest.fixture
def load_profile(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    from sqlalchemy import select

    async def _load(user_id: str = MEMBER_ID) -> Optional[MemberProfile]:
        async with session_factory() as session:
            result = await session.execute(
                select(MemberProfile).where(MemberProfile.user_id == user_id)
            )
            return result.scalar_one_or_none()

    return _load
