"""
Pending payment sweep worker.

Periodically re-derives stale pending payments from the provider and
closes checkouts the provider reports as unpaid. Payments whose status
cannot be determined are left pending for the next run.
"""
import argparse
import asyncio
import signal
from typing import Any, List, Optional

import structlog

from member_payments.config import Settings, get_settings
from member_payments.core.reconciliation import ReconciliationEngine, SweepReport
from member_payments.database.connection import close_db, init_db
from member_payments.monitoring.logging import setup_logging
from member_payments.services import build_services

logger = structlog.get_logger(__name__)


async def run_sweep(engine: ReconciliationEngine, older_than_hours: Optional[int] = None) -> SweepReport:
    """Run one sweep and log anything that needs attention."""
    report = await engine.close_abandoned(older_than_hours=older_than_hours)
    if report.errors:
        logger.warning(
            "pending_sweep_incomplete",
            errors=report.errors,
            examined=report.examined,
        )
    return report


async def start_reconciliation_worker(
    interval_seconds: float = 3600.0,
    older_than_hours: Optional[int] = None,
    once: bool = False,
    settings: Optional[Settings] = None,
) -> None:
    """
    Start the sweep worker.

    Args:
        interval_seconds: Delay between sweeps
        older_than_hours: Abandonment threshold (defaults to settings)
        once: Run a single sweep and exit
        settings: Application settings
    """
    settings = settings or get_settings()
    setup_logging(settings, component="reconciliation_worker")

    logger.info(
        "reconciliation_worker_starting",
        interval_seconds=interval_seconds,
        older_than_hours=older_than_hours or settings.abandoned_checkout_hours,
    )

    await init_db()
    services = build_services(settings)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                report = await run_sweep(services.engine, older_than_hours)
                if report.completed and settings.email_api_key:
                    await services.outbox.drain()
            except Exception as e:
                # Keep sweeping even if one run fails
                logger.error("reconciliation_execution_error", error=str(e))

            if once:
                break

            remaining = interval_seconds
            while remaining > 0 and running:
                sleep_time = min(remaining, 5)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time
    finally:
        await services.close()
        await close_db()
        logger.info("reconciliation_worker_stopped")


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Pending payment sweep worker")
    parser.add_argument("--once", action="store_true", help="Run one sweep and exit")
    parser.add_argument(
        "--interval", type=float, default=3600.0, help="Seconds between sweeps"
    )
    parser.add_argument(
        "--older-than-hours",
        type=int,
        default=None,
        help="Only sweep pending payments older than this (default from settings)",
    )
    args = parser.parse_args(argv)

    asyncio.run(
        start_reconciliation_worker(
            interval_seconds=args.interval,
            older_than_hours=args.older_than_hours,
            once=args.once,
        )
    )


if __name__ == "__main__":
    main()
