"""
Main FastAPI application.

Payment reconciliation API with:
- CORS allow-list plus preview-origin pattern
- Error taxonomy rendered by a single handler
- Request ID tracking and rate limit headers
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from member_payments import __version__
from member_payments.config import Settings, get_settings
from member_payments.core.errors import PaymentError, RateLimitExceeded
from member_payments.database.connection import close_db, init_db
from member_payments.monitoring.logging import setup_logging
from member_payments.monitoring.metrics import metrics
from member_payments.services import Services, build_services

from .routes import admin_router, monitoring_router, payment_router, webhook_router

logger = structlog.get_logger(__name__)

RATE_LIMIT_HEADERS = ["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset", "Retry-After"]


def _cors_headers(settings: Settings) -> list[str]:
    return ["authorization", "content-type", "x-client-info", "apikey", settings.api_key_header.lower()]


async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also attaches rate limit headers and records the request metric.
    """
    request_id = str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    logger.info(
        "request_started",
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    try:
        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        rate_limit = getattr(request.state, "rate_limit", None)
        if rate_limit is not None:
            for name, value in rate_limit.headers().items():
                response.headers.setdefault(name, value)

        route = request.scope.get("route")
        metrics.record_api_request(
            getattr(route, "name", None) or "unmatched", str(response.status_code)
        )

        duration = time.time() - start_time
        logger.info(
            "request_completed",
            request_id=request_id,
            status_code=response.status_code,
            duration_seconds=duration,
        )

        return response

    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            "request_failed",
            request_id=request_id,
            error=str(e),
            duration_seconds=duration,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    """Render any error from the taxonomy with its status and code."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "request_rejected",
        error_code=exc.error_code,
        status_code=exc.status_code,
        error=exc.message,
        path=request.url.path,
    )
    headers = exc.result.headers() if isinstance(exc, RateLimitExceeded) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies are client errors (400), not 422."""
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    logger.warning("request_validation_failed", path=request.url.path, errors=errors)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "validation_error", "message": "Invalid request", "details": {"errors": errors}},
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Application settings (defaults to the environment)
        services: Pre-built service graph. When given, the lifespan neither
            creates tables nor closes the services; the caller owns them.
    """
    settings = settings or (services.settings if services else get_settings())
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)
        if services is not None:
            yield
            logger.info("application_shutdown")
            return

        try:
            await init_db()
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise

        app.state.services = build_services(settings)

        yield

        logger.info("application_shutdown")
        try:
            await app.state.services.close()
            await close_db()
            logger.info("database_connections_closed")
        except Exception as e:
            logger.error("shutdown_error", error=str(e))

    app = FastAPI(
        title="Member Payments",
        description=(
            "Payment reconciliation for the membership portal: hosted checkout, "
            "provider callbacks, status verification and completion side effects."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
    )
    app.state.services = services

    app.middleware("http")(request_context_middleware)

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_origin_regex=settings.preview_origin_pattern or None,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=_cors_headers(settings),
        expose_headers=RATE_LIMIT_HEADERS + ["X-Request-ID"],
    )

    app.add_exception_handler(PaymentError, payment_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(payment_router)
    app.include_router(webhook_router)
    app.include_router(admin_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "docs": app.docs_url,
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "member_payments.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
