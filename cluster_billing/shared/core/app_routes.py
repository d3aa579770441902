from typing import Annotated, Any

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse
from prometheus_client import Gauge
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from cluster_billing.shared.db.session import get_db

SYSTEM_HEALTH = Gauge(
    "cluster_billing_system_health",
    "System health status (1=healthy, 0=unhealthy)",
)


def register_lifecycle_routes(
    app: FastAPI,
    *,
    app_name: str,
    version: str,
) -> None:
    """Register lifecycle and health endpoints."""

    @app.get("/", tags=["Lifecycle"])
    async def root() -> dict[str, str]:
        """Root endpoint for basic reachability."""
        return {"status": "ok", "app": app_name, "version": version}

    @app.get("/health/live", tags=["Lifecycle"])
    async def liveness_check() -> dict[str, str]:
        """Fast liveness check without dependencies."""
        return {"status": "healthy"}

    @app.get("/health", tags=["Lifecycle"])
    async def health_check(db: Annotated[AsyncSession, Depends(get_db)]) -> Any:
        """Liveness plus database reachability, for load balancers."""
        scheduler = getattr(app.state, "scheduler", None)
        health: dict[str, Any] = {
            "status": "healthy",
            "database": {"status": "up"},
            "scheduler": scheduler.get_status() if scheduler is not None else None,
        }
        try:
            await db.execute(text("SELECT 1"))
        except Exception as exc:  # noqa: BLE001
            health["status"] = "unhealthy"
            health["database"] = {"status": "down", "error": type(exc).__name__}
            SYSTEM_HEALTH.set(0.0)
            return JSONResponse(status_code=503, content=health)
        SYSTEM_HEALTH.set(1.0)
        return health


def register_api_routers(app: FastAPI) -> None:
    """Register API route modules in one place to keep app entrypoint focused."""
    from cluster_billing.modules.billing.api.v1.billing_components import (
        router as billing_components_router,
    )

    app.include_router(billing_components_router, prefix="/billing-components")
