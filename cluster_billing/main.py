import asyncio
import json
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncGenerator, Dict, List, Sequence

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from cluster_billing.services.scheduler import SchedulerService
from cluster_billing.shared.core.app_routes import (
    register_api_routers,
    register_lifecycle_routes,
)
from cluster_billing.shared.core.config import get_settings, reload_settings_from_environment
from cluster_billing.shared.core.error_governance import handle_exception
from cluster_billing.shared.core.exceptions import BillingException
from cluster_billing.shared.core.http import close_http_client, init_http_client
from cluster_billing.shared.core.logging import setup_logging
from cluster_billing.shared.db.session import close_db, init_db
from cluster_billing.tasks.billing_tasks import build_billing_job

settings = get_settings()
setup_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME, environment=settings.ENVIRONMENT)

    await init_http_client()
    await init_db()

    # One builder per process keeps the OpenCost cache warm across runs
    scheduler = SchedulerService(job=build_billing_job(settings=settings), settings=settings)
    app.state.scheduler = scheduler
    startup_job: asyncio.Task[None] | None = None
    if settings.TESTING:
        logger.info("scheduler_skipped_in_testing")
    else:
        scheduler.start()
        if settings.JOB_ENABLED:
            # Serve requests while the first run computes
            startup_job = asyncio.create_task(scheduler.billing_job())
        else:
            logger.info("startup_billing_job_disabled")

    yield

    logger.info("app_shutting_down")
    if startup_job is not None and not startup_job.done():
        startup_job.cancel()
        with suppress(asyncio.CancelledError):
            await startup_job
    scheduler.stop()
    await close_http_client()
    await close_db()


# Application instance
billing_app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)
# Uvicorn looks up 'app' by default.
app: FastAPI = billing_app

__all__ = ["app", "billing_app", "lifespan"]


@billing_app.exception_handler(BillingException)
async def billing_exception_handler(
    request: Request, exc: BillingException
) -> JSONResponse:
    """Handle custom application exceptions."""
    return handle_exception(request, exc)


@billing_app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed path or query parameters are caller errors (400)."""

    def _json_safe(value: Any) -> Any:
        if isinstance(value, Exception):
            return str(value)
        try:
            json.dumps(value)
            return value
        except (TypeError, ValueError):
            return str(value)

    def _sanitize_errors(errors: Sequence[Any]) -> List[Dict[str, Any]]:
        sanitized = []
        for err in errors:
            clean = dict(err)
            if "ctx" in clean and isinstance(clean["ctx"], dict):
                clean["ctx"] = {k: _json_safe(v) for k, v in clean["ctx"].items()}
            if "input" in clean:
                clean["input"] = _json_safe(clean["input"])
            sanitized.append(clean)
        return sanitized

    return handle_exception(
        request,
        BillingException(
            "The request parameters are invalid.",
            code="validation_error",
            status_code=400,
            details={"errors": _sanitize_errors(exc.errors())},
        ),
    )


@billing_app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Handle business logic ValueErrors via central governance."""
    return handle_exception(request, exc)


@billing_app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled exceptions get a sanitized 500 with a correlation id."""
    return handle_exception(request, exc)


register_lifecycle_routes(
    billing_app,
    app_name=settings.APP_NAME,
    version=settings.VERSION,
)
register_api_routers(billing_app)

# Request metrics plus the billing pipeline metrics on /metrics
Instrumentator().instrument(billing_app).expose(billing_app, include_in_schema=False)
