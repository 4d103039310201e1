"""
Tests for the abandoned checkout sweep.
"""
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest
from sqlalchemy import update

from member_payments.core.reconciliation import ReconciliationEngine
from member_payments.database.models import Payment

from .conftest import MEMBER_ID, FakeHubtel


async def _age(session_factory: Any, reference: str, hours: float) -> None:
    async with session_factory() as session:
        await session.execute(
            update(Payment)
            .where(Payment.reference == reference)
            .values(created_at=datetime.now(timezone.utc) - timedelta(hours=hours))
        )
        await session.commit()


class TestAbandonedSweep:
    """Stale pending payments are re-derived, and unpaid ones closed."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_closes_unpaid_and_completes_paid(
        self,
        recon_engine: ReconciliationEngine,
        fake_hubtel: FakeHubtel,
        session_factory: Any,
        create_profile: Any,
        load_payment: Any,
        load_profile: Any,
    ) -> None:
        await create_profile()
        unpaid = await recon_engine.create_pending(user_id=MEMBER_ID, amount="5")
        paid = await recon_engine.create_pending(user_id=MEMBER_ID, amount="5")
        unknown = await recon_engine.create_pending(user_id=MEMBER_ID, amount="5")
        fresh = await recon_engine.create_pending(user_id=MEMBER_ID, amount="5")
        for snapshot in (unpaid, paid, unknown):
            await _age(session_factory, snapshot.reference, 30)
        fake_hubtel.set_status(unpaid.reference, "Unpaid")
        fake_hubtel.set_status(paid.reference, "Paid")

        report = await recon_engine.close_abandoned()

        assert report.examined == 3
        assert report.failed == 1
        assert report.completed == 1
        assert report.still_pending == 1
        assert report.errors == 0
        assert set(report.references) == {unpaid.reference, paid.reference}

        closed = await load_payment(unpaid.reference)
        assert closed.status == "failed"
        assert "Checkout abandoned" in closed.notes
        assert (await load_payment(paid.reference)).status == "completed"
        assert (await load_payment(unknown.reference)).status == "pending"
        assert (await load_payment(fresh.reference)).status == "pending"
        assert fresh.reference not in fake_hubtel.status_calls
        assert (await load_profile()).membership_status == "active"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_threshold_override(
        self, recon_engine: ReconciliationEngine, fake_hubtel: FakeHubtel, session_factory: Any
    ) -> None:
        snapshot = await recon_engine.create_pending(user_id=MEMBER_ID, amount="5")
        await _age(session_factory, snapshot.reference, 2)
        fake_hubtel.set_status(snapshot.reference, "Unpaid")

        assert (await recon_engine.close_abandoned()).examined == 0
        report = await recon_engine.close_abandoned(older_than_hours=1)

        assert report.failed == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_provider_outage_is_counted_not_raised(
        self,
        recon_engine: ReconciliationEngine,
        fake_hubtel: FakeHubtel,
        session_factory: Any,
        load_payment: Any,
    ) -> None:
        snapshot = await recon_engine.create_pending(user_id=MEMBER_ID, amount="5")
        await _age(session_factory, snapshot.reference, 48)
        fake_hubtel.status_response = httpx.Response(503, text="down")

        report = await recon_engine.close_abandoned()

        assert report.errors == 1
        assert (await load_payment(snapshot.reference)).status == "pending"
