"""
Structured logging for the API and the background workers.

Every event carries the process component (``api``, ``reconciliation_worker``,
``outbox_publisher``) alongside the app name, environment and version taken
from the settings the process was started with.
"""
import logging
import sys
from typing import Any, Callable, Optional

import structlog
from pythonjsonlogger import jsonlogger

from member_payments import __version__
from member_payments.config import Settings, get_settings

Processor = Callable[[Any, str, dict[str, Any]], dict[str, Any]]

# Loggers that echo every provider/email request at INFO
_CHATTY_LOGGERS = ("httpx", "httpcore", "aiosqlite")


def app_context_processor(settings: Settings, component: str) -> Processor:
    """
    Build a processor stamping process identity onto each event.

    Values are captured once from ``settings``; fields already present on
    the event are left alone.
    """
    context = {
        "app_name": settings.app_name,
        "app_env": settings.app_env,
        "app_version": __version__,
        "component": component,
    }

    def add_app_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        for key, value in context.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_app_context


def setup_logging(
    settings: Optional[Settings] = None, component: str = "api"
) -> None:
    """Configure structlog and route stdlib loggers through a JSON handler."""
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            app_context_processor(settings, component),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={
                "asctime": "@timestamp",
                "levelname": "level",
                "name": "logger",
            },
        )
    )
    root_logger.addHandler(json_handler)

    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        component=component,
    )
