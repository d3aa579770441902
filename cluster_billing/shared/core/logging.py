import sys
import structlog
import logging
from typing import Any, cast
from cluster_billing.shared.core.config import get_settings


def redact_sensitive(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Redact credentials that may travel with upstream request logging
    (authorization headers, tokens).
    """
    sensitive_fields = {"authorization", "token", "password", "secret", "api_key"}

    def redact_recursive(data: Any) -> Any:
        if isinstance(data, dict):
            return {
                k: (
                    "[REDACTED]"
                    if str(k).lower().replace("-", "_") in sensitive_fields
                    else redact_recursive(v)
                )
                for k, v in data.items()
            }
        if isinstance(data, list):
            return [redact_recursive(item) for item in data]
        return data

    redacted = redact_recursive(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def setup_logging() -> None:
    settings = get_settings()

    # 1. Common processors
    base_processors = [
        structlog.contextvars.merge_contextvars,  # Support async context
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        redact_sensitive,
    ]

    # 2. Choose the renderer based on environment
    if settings.DEBUG:
        renderer: Any = structlog.dev.ConsoleRenderer()
        processors = base_processors + [renderer]
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        processors = base_processors + [structlog.processors.dict_tracebacks, renderer]
        min_level = logging.INFO

    structlog.configure(
        processors=cast(Any, processors),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # 3. Intercept the standard logging (uvicorn, apscheduler, httpx).
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level,
    )
