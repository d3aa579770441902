from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import structlog

from cluster_billing.modules.billing.domain.cost_tree import (
    AllocationEntry,
    AllocationSet,
    Granularity,
)
from cluster_billing.shared.adapters.http_retry import execute_with_http_retry
from cluster_billing.shared.core.config import Settings, get_settings
from cluster_billing.shared.core.exceptions import ExternalAPIError
from cluster_billing.shared.core.http import get_http_client
from cluster_billing.shared.core.ops_metrics import ALLOCATION_FETCH_DURATION

logger = structlog.get_logger()

_ALLOCATION_PATH = "/allocation/compute"


def format_window(start: datetime, end: datetime) -> str:
    """OpenCost window parameter: two RFC3339 timestamps in UTC."""
    def _fmt(value: datetime) -> str:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    return f"{_fmt(start)},{_fmt(end)}"


@dataclass
class _CacheEntry:
    value: AllocationSet
    valid_until: float


class OpenCostClient:
    """
    Allocation source adapter.

    Fetches accumulated allocation data for a window at one aggregation
    granularity. Responses are cached per (window, aggregate) for
    OPENCOST_CACHE_TTL_SECONDS; the cache is guarded by an asyncio.Lock and
    is safe for concurrent callers.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._client = client
        self._cache: dict[str, _CacheEntry] = {}
        self._cache_lock = asyncio.Lock()

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or get_http_client(self.settings.OPENCOST_TIMEOUT_SECONDS)

    @property
    def base_url(self) -> str:
        if not self.settings.OPENCOST_URL:
            raise ExternalAPIError("OPENCOST_URL is not configured")
        return self.settings.OPENCOST_URL.rstrip("/")

    async def _cache_get(self, key: str) -> Optional[AllocationSet]:
        async with self._cache_lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            if entry.valid_until <= time.monotonic():
                del self._cache[key]
                return None
            return entry.value

    async def _cache_put(self, key: str, value: AllocationSet) -> None:
        ttl = self.settings.OPENCOST_CACHE_TTL_SECONDS
        if ttl <= 0:
            return
        async with self._cache_lock:
            self._cache[key] = _CacheEntry(value=value, valid_until=time.monotonic() + ttl)

    async def clear_cache(self) -> None:
        async with self._cache_lock:
            self._cache.clear()

    async def allocation(
        self, start: datetime, end: datetime, granularity: Granularity
    ) -> AllocationSet:
        """Return `{composite key -> AllocationEntry}` for the window."""
        window = format_window(start, end)
        cache_key = f"{window}|{granularity.aggregate}"

        started = time.perf_counter()
        cached = await self._cache_get(cache_key)
        if cached is not None:
            ALLOCATION_FETCH_DURATION.labels(
                aggregate=granularity.aggregate, cache="hit"
            ).observe(time.perf_counter() - started)
            logger.debug(
                "opencost_cache_hit", window=window, aggregate=granularity.aggregate
            )
            return cached

        url = f"{self.base_url}{_ALLOCATION_PATH}"
        params = {
            "window": window,
            "aggregate": granularity.aggregate,
            "accumulate": "true",
        }
        timeout = self.settings.OPENCOST_TIMEOUT_SECONDS

        async def _request() -> httpx.Response:
            return await self.client.get(url, params=params, timeout=timeout)

        try:
            async with asyncio.timeout(timeout):
                response = await execute_with_http_retry(
                    request=_request,
                    url=url,
                    max_retries=self.settings.HTTP_MAX_RETRIES,
                    retry_http_status_log_event="opencost_retry_http_status",
                    retry_transport_log_event="opencost_retry_transport_error",
                    status_error_prefix="OpenCost allocation request failed",
                    transport_error_prefix="OpenCost allocation request error",
                )
        except TimeoutError as exc:
            raise ExternalAPIError(
                f"OpenCost allocation request timed out after {timeout} seconds",
                code="timeout_error",
                details={"aggregate": granularity.aggregate, "window": window},
            ) from exc

        allocations = parse_allocation_response(self._decode(response), granularity)
        ALLOCATION_FETCH_DURATION.labels(
            aggregate=granularity.aggregate, cache="miss"
        ).observe(time.perf_counter() - started)
        logger.info(
            "opencost_allocation_fetched",
            window=window,
            aggregate=granularity.aggregate,
            entries=len(allocations),
        )
        await self._cache_put(cache_key, allocations)
        return allocations

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise ExternalAPIError(
                "OpenCost returned a non-JSON allocation response"
            ) from exc


def parse_allocation_response(payload: Any, granularity: Granularity) -> AllocationSet:
    """
    Validate the envelope of an accumulated allocation response and return
    its single allocation set. Key shapes are checked later by the builder.
    """
    if not isinstance(payload, dict):
        raise ExternalAPIError("unexpected OpenCost response: not an object")
    code = payload.get("code")
    if code is not None and code != 200:
        raise ExternalAPIError(
            f"unexpected OpenCost response code {code}",
            details={"aggregate": granularity.aggregate, "message": payload.get("message")},
        )
    data = payload.get("data")
    if not isinstance(data, list) or not data:
        raise ExternalAPIError(
            "unexpected OpenCost response: missing allocation data",
            details={"aggregate": granularity.aggregate},
        )
    first = data[0] or {}
    if not isinstance(first, dict):
        raise ExternalAPIError("unexpected OpenCost response: malformed allocation set")

    allocations: AllocationSet = {}
    for key, value in first.items():
        if not isinstance(value, dict):
            raise ExternalAPIError(
                f"unexpected OpenCost allocation for key {key}",
                details={"aggregate": granularity.aggregate},
            )
        allocations[key] = AllocationEntry.from_payload(value)
    return allocations
