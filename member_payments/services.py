"""Construction of the long-lived collaborators shared by the API and workers."""
from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from member_payments.config import Settings, get_settings
from member_payments.core.outbox import OutboxPublisher
from member_payments.core.rate_limiter import (
    InMemoryRateLimiter,
    RateLimiter,
    RedisRateLimiter,
)
from member_payments.core.receipts import ReceiptSender
from member_payments.core.reconciliation import ReconciliationEngine
from member_payments.core.side_effects import RECEIPT_EVENT_TYPE, SideEffectDispatcher
from member_payments.database.connection import get_session_factory
from member_payments.integrations.email_client import EmailClient
from member_payments.integrations.hubtel_client import HubtelClient

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    """Everything a request handler or worker needs."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    provider: HubtelClient
    dispatcher: SideEffectDispatcher
    engine: ReconciliationEngine
    rate_limiter: RateLimiter
    email_client: EmailClient
    outbox: OutboxPublisher

    async def close(self) -> None:
        await self.provider.close()
        await self.email_client.close()
        await self.rate_limiter.close()


def build_rate_limiter(settings: Settings) -> RateLimiter:
    if settings.rate_limit_backend == "redis":
        logger.info("rate_limiter_backend_selected", backend="redis")
        return RedisRateLimiter(redis_url=settings.redis_url)
    return InMemoryRateLimiter()


def build_services(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    provider: Optional[HubtelClient] = None,
    rate_limiter: Optional[RateLimiter] = None,
    email_client: Optional[EmailClient] = None,
    dispatcher: Optional[SideEffectDispatcher] = None,
) -> Services:
    """
    Wire the service graph.

    Every collaborator can be supplied, which is how tests swap in a SQLite
    session factory and mock HTTP transports.
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    provider = provider or HubtelClient(settings=settings)
    dispatcher = dispatcher or SideEffectDispatcher()
    email_client = email_client or EmailClient(settings=settings)

    engine = ReconciliationEngine(
        session_factory=session_factory,
        provider=provider,
        dispatcher=dispatcher,
        settings=settings,
    )
    outbox = OutboxPublisher(
        session_factory=session_factory,
        max_attempts=settings.receipt_max_attempts,
        retry_backoff_seconds=settings.receipt_retry_backoff_seconds,
    )
    outbox.register_handler(
        RECEIPT_EVENT_TYPE, ReceiptSender(session_factory, email_client, settings)
    )

    return Services(
        settings=settings,
        session_factory=session_factory,
        provider=provider,
        dispatcher=dispatcher,
        engine=engine,
        rate_limiter=rate_limiter or build_rate_limiter(settings),
        email_client=email_client,
        outbox=outbox,
    )
