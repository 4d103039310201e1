"""
Health checks for readiness/liveness probes.

Checks:
- Database connectivity
- Provider credentials and circuit breaker state
- Redis connectivity (only when the Redis rate limiter is selected)
"""
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from member_payments.config import Settings
from member_payments.integrations.hubtel_client import HubtelClient

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for the payment service's dependencies."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        provider: Optional[HubtelClient] = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.provider = provider

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except SQLAlchemyError as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}")

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        redis_client = aioredis.from_url(self.settings.redis_url)
        try:
            await redis_client.ping()
        except aioredis.RedisError as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {e}")
        finally:
            await redis_client.aclose()

        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
        }

    def check_provider(self) -> Dict[str, Any]:
        """
        Report provider configuration without calling it.

        Raises:
            HealthCheckError: If credentials are missing or the circuit is open
        """
        if not self.settings.hubtel_configured:
            raise HealthCheckError("Payment provider credentials are not configured")
        circuit = self.provider.circuit_breaker.state if self.provider else "closed"
        if circuit == "open":
            raise HealthCheckError("Payment provider circuit breaker is open")
        return {
            "status": "healthy",
            "service": "hubtel",
            "circuit_breaker": circuit,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks: Dict[str, Any] = {}
        all_healthy = True

        try:
            checks["database"] = await self.check_database()
        except HealthCheckError as e:
            checks["database"] = {"status": "unhealthy", "service": "database", "error": str(e)}
            all_healthy = False

        try:
            checks["hubtel"] = self.check_provider()
        except HealthCheckError as e:
            checks["hubtel"] = {"status": "unhealthy", "service": "hubtel", "error": str(e)}
            all_healthy = False

        if self.settings.rate_limit_backend == "redis":
            try:
                checks["redis"] = await self.check_redis()
            except HealthCheckError as e:
                checks["redis"] = {"status": "unhealthy", "service": "redis", "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: database reachable and provider configured."""
        return await self.check_all()
