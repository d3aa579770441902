"""
Async HTTP Client Shared Infrastructure

Ensures singleton httpx.AsyncClient usage across the FastAPI lifespan
and the billing job so OpenCost and Prometheus calls share one pool.
"""

import inspect
from typing import Optional
import httpx
import structlog

logger = structlog.get_logger()

_client: Optional[httpx.AsyncClient] = None


def _build_client(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        http2=True,
        timeout=httpx.Timeout(timeout, connect=10.0),
        limits=httpx.Limits(
            max_connections=50,
            max_keepalive_connections=10,
            keepalive_expiry=30.0,
        ),
        headers={"User-Agent": "cluster-billing/0.1"},
    )


def get_http_client(timeout: Optional[float] = None) -> httpx.AsyncClient:
    """
    Returns the global shared httpx.AsyncClient, creating it lazily.
    Per-request deadlines are passed by the callers.
    """
    global _client
    if _client is None:
        logger.warning(
            "http_client_lazy_initialized",
            msg="Client was not pre-initialized",
        )
        _client = _build_client(timeout or 60.0)
    return _client


async def init_http_client() -> None:
    """Initializes the global httpx.AsyncClient."""
    global _client
    if _client is not None:
        logger.warning("http_client_already_initialized")
        return
    _client = _build_client(60.0)
    logger.info("http_client_initialized", http2=True, max_connections=50)


async def close_http_client() -> None:
    """Gracefully shuts down the global client, flushing its connection pool."""
    global _client
    client = _client
    _client = None
    if client is None:
        return
    close_result = client.aclose()
    if inspect.isawaitable(close_result):
        await close_result
    logger.info("http_client_closed")
