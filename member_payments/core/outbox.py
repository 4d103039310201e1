"""
Transactional outbox publisher.

Events are written to ``outbox_events`` in the same transaction as the
payment transition, then delivered here with their own retry policy:
- an event is claimed with a conditional UPDATE that takes a lease, so two
  publishers never deliver the same event concurrently
- each claim counts as an attempt; failures back off exponentially
- after ``max_attempts`` the event is parked (left unpublished, not retried)
"""
import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from member_payments.database.connection import get_session_factory
from member_payments.database.models import OutboxEvent
from member_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Awaitable[Optional[str]]]


class PermanentDeliveryError(Exception):
    """The event can never be delivered; park it without further retries."""


class OutboxPublisher:
    """
    Delivers events from the outbox table to registered handlers.

    A handler receives the event data dict and returns an optional outcome
    label (e.g. ``"skipped"``); raising marks the attempt as failed.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
        max_attempts: int = 5,
        lease_seconds: float = 120.0,
        retry_backoff_seconds: float = 30.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        """
        Initialize outbox publisher.

        Args:
            session_factory: Session factory (defaults to the application's)
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval when idle
            max_attempts: Deliveries attempted before an event is parked
            lease_seconds: How long a claim blocks other publishers
            retry_backoff_seconds: First retry delay; doubles per attempt
            clock: Source of "now" (UTC)
        """
        self.session_factory = session_factory or get_session_factory()
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max_attempts
        self.lease_seconds = lease_seconds
        self.retry_backoff_seconds = retry_backoff_seconds
        self._clock = clock
        self._handlers: Dict[str, EventHandler] = {}
        self._running = False
        self._drain_lock = asyncio.Lock()

        logger.info(
            "outbox_publisher_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
            max_attempts=max_attempts,
        )

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register handler for specific event type.

        Args:
            event_type: Outbox event type
            handler: Async handler function
        """
        self._handlers[event_type] = handler
        logger.info("outbox_handler_registered", event_type=event_type)

    def _deliverable(self, now: datetime) -> Any:
        return (
            (OutboxEvent.published == False)  # noqa: E712
            & (OutboxEvent.attempts < self.max_attempts)
            & or_(OutboxEvent.locked_until.is_(None), OutboxEvent.locked_until <= now)
        )

    async def _fetch_deliverable_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(self._deliverable(self._clock()))
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _claim(self, event: OutboxEvent) -> bool:
        """Take a lease on the event; False if another publisher got it first."""
        now = self._clock()
        async with self.session_factory() as db:
            result = await db.execute(
                update(OutboxEvent)
                .where(
                    OutboxEvent.id == event.id,
                    OutboxEvent.attempts == event.attempts,
                    self._deliverable(now),
                )
                .values(
                    attempts=OutboxEvent.attempts + 1,
                    locked_until=now + timedelta(seconds=self.lease_seconds),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def _settle(self, event_id: int, values: Dict[str, Any]) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == event_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def _publish_event(self, event: OutboxEvent) -> bool:
        """
        Deliver a single claimed event.

        Returns:
            bool: True if delivered (or deliberately skipped)
        """
        attempt = event.attempts + 1
        handler = self._handlers.get(event.event_type)
        event_data = {
            "id": event.id,
            "aggregate_id": str(event.aggregate_id),
            "aggregate_type": event.aggregate_type,
            "event_type": event.event_type,
            "payload": event.payload,
            "attempt": attempt,
        }

        try:
            if handler is None:
                raise PermanentDeliveryError(f"No handler for {event.event_type}")
            outcome = await handler(event_data) or "sent"
        except PermanentDeliveryError as e:
            await self._settle(
                event.id,
                {"attempts": self.max_attempts, "last_error": str(e), "locked_until": None},
            )
            metrics.record_receipt_delivery("abandoned")
            logger.error(
                "outbox_event_parked",
                event_id=event.id,
                event_type=event.event_type,
                error=str(e),
            )
            return False
        except Exception as e:
            backoff = self.retry_backoff_seconds * (2 ** (attempt - 1))
            await self._settle(
                event.id,
                {
                    "last_error": str(e)[:1000],
                    "locked_until": self._clock() + timedelta(seconds=backoff),
                },
            )
            exhausted = attempt >= self.max_attempts
            metrics.record_receipt_delivery("abandoned" if exhausted else "failed")
            logger.error(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                attempt=attempt,
                exhausted=exhausted,
                error=str(e),
            )
            return False

        await self._settle(
            event.id,
            {"published": True, "published_at": self._clock(), "locked_until": None},
        )
        metrics.record_receipt_delivery(outcome)
        logger.info(
            "outbox_event_published",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_id=str(event.aggregate_id),
            outcome=outcome,
        )
        return True

    async def process_batch(self) -> int:
        """
        Process a batch of deliverable events.

        Returns:
            int: Number of events delivered
        """
        start_time = time.time()
        async with self.session_factory() as db:
            events = await self._fetch_deliverable_events(db)

        if not events:
            return 0

        logger.info("outbox_batch_processing_started", batch_size=len(events))

        delivered = 0
        for event in events:
            if not await self._claim(event):
                logger.debug("outbox_event_claimed_elsewhere", event_id=event.id)
                continue
            if await self._publish_event(event):
                delivered += 1

        metrics.record_outbox_batch(time.time() - start_time)
        logger.info(
            "outbox_batch_processed",
            total=len(events),
            published=delivered,
            failed=len(events) - delivered,
        )
        return delivered

    async def drain(self) -> int:
        """Process batches until nothing is deliverable right now."""
        async with self._drain_lock:
            total = 0
            while True:
                published = await self.process_batch()
                total += published
                if published == 0:
                    break
            metrics.set_outbox_queue_depth(await self.get_pending_count())
            return total

    async def start(self) -> None:
        """
        Start the outbox publisher loop.

        Continuously polls for deliverable events and publishes them.
        """
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())

                    if published_count == 0:
                        await asyncio.sleep(self.poll_interval_seconds)
                    else:
                        await asyncio.sleep(0.1)

                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)

        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        """
        Count undelivered events that will still be retried.

        Returns:
            int: Number of pending events
        """
        async with self.session_factory() as db:
            stmt = select(func.count(OutboxEvent.id)).where(
                OutboxEvent.published == False,  # noqa: E712
                OutboxEvent.attempts < self.max_attempts,
            )
            return int((await db.execute(stmt)).scalar_one())
