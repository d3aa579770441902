"""
Unified Error Governance

Centrally handles exception classification, structured logging
and OpenTelemetry span recording for API errors.
"""

from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from opentelemetry import trace

from cluster_billing.shared.core.config import get_settings
from cluster_billing.shared.core.exceptions import BillingException
from cluster_billing.shared.core.ops_metrics import API_ERRORS_TOTAL

logger = structlog.get_logger()
tracer = trace.get_tracer(__name__)

# Messages of these codes describe caller input and are safe to return as-is.
SAFE_CODES = {"auth_error", "not_found", "invalid_period", "validation_error"}


def handle_exception(
    request: Request, exc: Exception, error_id: Optional[str] = None
) -> JSONResponse:
    """
    Classifies and records exceptions, returning a standardized JSON response.
    """
    error_id = error_id or str(uuid4())
    is_prod = get_settings().ENVIRONMENT.lower() in ("production", "staging")

    if isinstance(exc, BillingException):
        billing_exc = exc
    elif isinstance(exc, ValueError):
        billing_exc = BillingException(
            message="Invalid request parameters" if is_prod else str(exc),
            code="value_error",
            status_code=400,
        )
        logger.warning(
            "business_validation_error",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )
    else:
        # Always sanitize unhandled exceptions.
        billing_exc = BillingException(
            message="An unexpected internal error occurred",
            code="internal_error",
            status_code=500,
        )
        logger.exception(
            "unhandled_raw_exception",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )

    message = billing_exc.message
    response_details: Optional[Dict[str, Any]] = billing_exc.details or None
    if is_prod and billing_exc.code not in SAFE_CODES:
        message = "An error occurred while processing your request"
        response_details = None

    with tracer.start_as_current_span("handle_exception") as span:
        span.set_attribute("error.id", error_id)
        span.set_attribute("http.path", request.url.path)
        span.set_attribute("http.method", request.method)
        span.record_exception(exc)
        span.set_status(trace.Status(trace.StatusCode.ERROR, billing_exc.code))

    API_ERRORS_TOTAL.labels(
        path=request.url.path,
        method=request.method,
        status_code=billing_exc.status_code,
    ).inc()

    logger.error(
        "api_error",
        error_id=error_id,
        code=billing_exc.code,
        message=billing_exc.message,
        status_code=billing_exc.status_code,
        path=request.url.path,
        details=billing_exc.details,
    )

    return JSONResponse(
        status_code=billing_exc.status_code,
        content={
            "error": {
                "message": message,
                "code": billing_exc.code,
                "id": error_id,
                "details": response_details,
            }
        },
    )
