"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Service catalog loaded
"""
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from engagement_orders.config import get_settings
from engagement_orders.database.connection import get_session_factory

if TYPE_CHECKING:
    from engagement_orders.core.service_catalog import ServiceCatalog

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Service catalog readiness check
    - Overall system health status
    """

    def __init__(
        self,
        catalog: Optional["ServiceCatalog"] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        """
        Initialize health check service.

        Args:
            catalog: Service catalog whose readiness is reported
            session_factory: Optional session factory (uses the global one if not provided)
        """
        self.settings = get_settings()
        self.catalog = catalog
        self._session_factory = session_factory

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            Dict[str, Any]: Database health status

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self._session_factory or get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()

                return {
                    "status": "healthy",
                    "service": "database",
                    "message": "Database connection successful",
                }

        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_catalog(self) -> Dict[str, Any]:
        """
        Check that the supplier service catalog is loaded.

        Returns:
            Dict[str, Any]: Catalog health status

        Raises:
            HealthCheckError: If the catalog is missing or empty
        """
        if self.catalog is None or not self.catalog.is_loaded or self.catalog.size == 0:
            logger.warning("catalog_health_check_failed")
            raise HealthCheckError("Service catalog is not loaded")

        loaded_at = self.catalog.loaded_at
        return {
            "status": "healthy",
            "service": "catalog",
            "services": self.catalog.size,
            "loaded_at": loaded_at.isoformat() if loaded_at else None,
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        for name, check in (("database", self.check_database), ("catalog", self.check_catalog)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {
                    "status": "unhealthy",
                    "service": name,
                    "error": str(e),
                }
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: all dependencies available."""
        return await self.check_all()
