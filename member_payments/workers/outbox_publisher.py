"""
Outbox publisher background worker.

Continuously polls the outbox table and delivers receipt emails.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from member_payments.config import Settings, get_settings
from member_payments.database.connection import close_db, init_db
from member_payments.monitoring.logging import setup_logging
from member_payments.services import build_services

logger = structlog.get_logger(__name__)


async def start_outbox_publisher(settings: Optional[Settings] = None) -> None:
    """
    Start the outbox publisher worker.

    Runs continuously until SIGINT/SIGTERM.
    """
    settings = settings or get_settings()
    setup_logging(settings, component="outbox_publisher")

    logger.info("outbox_publisher_worker_starting")
    if not settings.email_api_key:
        logger.warning("outbox_publisher_email_not_configured")

    await init_db()
    services = build_services(settings)
    publisher = services.outbox

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await services.close()
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    asyncio.run(start_outbox_publisher())


if __name__ == "__main__":
    main()
