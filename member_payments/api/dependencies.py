"""
FastAPI dependencies: service lookup, authentication and rate limiting.
"""
import re
import secrets
from typing import Awaitable, Callable, Optional

import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from member_payments.config import Settings
from member_payments.core.errors import ForbiddenError, RateLimitExceeded, UnauthorizedError
from member_payments.core.rate_limiter import RateLimitResult
from member_payments.monitoring.metrics import metrics
from member_payments.services import Services

logger = structlog.get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_settings_dep(services: Services = Depends(get_services)) -> Settings:
    return services.settings


async def get_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings_dep),
) -> str:
    """
    Resolve the authenticated member from the bearer JWT.

    Returns:
        str: The token's ``sub`` claim

    Raises:
        UnauthorizedError: Token missing, invalid or without a subject
    """
    if credentials is None or not credentials.credentials:
        raise UnauthorizedError("Missing authorization header")
    if not settings.auth_jwt_secret:
        logger.error("auth_not_configured")
        raise UnauthorizedError("Authentication is not configured")

    audience = settings.auth_jwt_audience or None
    try:
        claims = jwt.decode(
            credentials.credentials,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            audience=audience,
            options={"verify_aud": audience is not None, "require": ["sub", "exp"]},
        )
    except jwt.InvalidTokenError as e:
        logger.warning("auth_token_rejected", error=str(e))
        raise UnauthorizedError("Invalid or expired token")

    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject:
        raise UnauthorizedError("Token has no subject")
    structlog.contextvars.bind_contextvars(user_id=subject)
    return subject


async def require_admin(
    request: Request, settings: Settings = Depends(get_settings_dep)
) -> None:
    """API key check for administrative endpoints."""
    supplied = request.headers.get(settings.api_key_header)
    if not settings.admin_api_key or not supplied:
        raise UnauthorizedError("Admin API key required")
    if not secrets.compare_digest(supplied, settings.admin_api_key):
        logger.warning("admin_api_key_rejected")
        raise ForbiddenError("Invalid admin API key")


def client_ip(request: Request, settings: Settings) -> str:
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def is_allowed_origin(settings: Settings, origin: Optional[str]) -> bool:
    if not origin:
        return False
    if origin in settings.get_allowed_origins_list():
        return True
    return bool(re.fullmatch(settings.preview_origin_pattern, origin))


def return_base_url(request: Request, settings: Settings) -> str:
    """Allow-listed request Origin, else the configured front-end URL."""
    origin = request.headers.get("origin")
    return origin if is_allowed_origin(settings, origin) else settings.frontend_url


async def check_rate_limit(
    request: Request, services: Services, scope: str, key: str, limit_setting: str
) -> RateLimitResult:
    """Count one request against ``scope``; the caller decides how to refuse."""
    settings = services.settings
    result = await services.rate_limiter.check(
        f"{scope}:{key}",
        getattr(settings, limit_setting),
        settings.rate_limit_window_seconds,
    )
    request.state.rate_limit = result
    if not result.allowed:
        metrics.record_rate_limited(scope)
        logger.warning("rate_limit_exceeded", scope=scope, retry_after=result.retry_after)
    return result


async def _enforce(
    request: Request, services: Services, scope: str, key: str, limit_setting: str
) -> None:
    result = await check_rate_limit(request, services, scope, key, limit_setting)
    if not result.allowed:
        raise RateLimitExceeded(result)


def rate_limit_user(scope: str, limit_setting: str) -> Callable[..., Awaitable[None]]:
    """Per-member limit; depends on authentication."""

    async def dependency(
        request: Request,
        principal: str = Depends(get_principal),
        services: Services = Depends(get_services),
    ) -> None:
        await _enforce(request, services, scope, principal, limit_setting)

    return dependency


def rate_limit_ip(scope: str, limit_setting: str) -> Callable[..., Awaitable[None]]:
    """Per-source-IP limit for unauthenticated endpoints."""

    async def dependency(request: Request, services: Services = Depends(get_services)) -> None:
        await _enforce(request, services, scope, client_ip(request, services.settings), limit_setting)

    return dependency
