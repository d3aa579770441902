from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import structlog

from cluster_billing.shared.adapters.http_retry import execute_with_http_retry
from cluster_billing.shared.core.config import Settings, get_settings
from cluster_billing.shared.core.exceptions import ExternalAPIError
from cluster_billing.shared.core.http import get_http_client
from cluster_billing.shared.core.ops_metrics import METRICS_QUERY_FAILURES

logger = structlog.get_logger()

_QUERY_PATH = "/api/v1/query"
RESULT_SCALAR = "scalar"
RESULT_VECTOR = "vector"


def _sample_value(sample: Any) -> float:
    """Prometheus encodes samples as [timestamp, "value"]; "NaN" stays NaN here."""
    if not isinstance(sample, (list, tuple)) or len(sample) != 2:
        raise ExternalAPIError(f"unexpected prometheus sample {sample!r}")
    try:
        return float(sample[1])
    except (TypeError, ValueError) as exc:
        raise ExternalAPIError(f"unexpected prometheus sample {sample!r}") from exc


class PrometheusClient:
    """Instant-query client for the Prometheus HTTP API."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client or get_http_client(self.settings.PROMETHEUS_TIMEOUT_SECONDS)

    @property
    def base_url(self) -> str:
        if not self.settings.PROMETHEUS_URL:
            raise ExternalAPIError("PROMETHEUS_URL is not configured")
        return self.settings.PROMETHEUS_URL.rstrip("/")

    async def query(self, query: str, at: datetime) -> dict[str, Any]:
        """Evaluate `query` at `at` and return the `data` section of the response."""
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        url = f"{self.base_url}{_QUERY_PATH}"
        params = {"query": query, "time": f"{at.timestamp():.3f}"}
        timeout = self.settings.PROMETHEUS_TIMEOUT_SECONDS

        async def _request() -> httpx.Response:
            return await self.client.get(url, params=params, timeout=timeout)

        try:
            async with asyncio.timeout(timeout):
                response = await execute_with_http_retry(
                    request=_request,
                    url=url,
                    max_retries=self.settings.HTTP_MAX_RETRIES,
                    retry_http_status_log_event="prometheus_retry_http_status",
                    retry_transport_log_event="prometheus_retry_transport_error",
                    status_error_prefix="Prometheus query failed",
                    transport_error_prefix="Prometheus query error",
                )
        except TimeoutError as exc:
            raise ExternalAPIError(
                f"Prometheus query timed out after {timeout} seconds",
                code="timeout_error",
                details={"query": query},
            ) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise ExternalAPIError("Prometheus returned a non-JSON response") from exc

        if not isinstance(payload, dict) or payload.get("status") != "success":
            raise ExternalAPIError(
                "unexpected prometheus response",
                details={
                    "query": query,
                    "error": payload.get("error") if isinstance(payload, dict) else None,
                },
            )
        warnings = payload.get("warnings")
        if warnings:
            logger.warning("prometheus_query_warnings", query=query, warnings=warnings)
        data = payload.get("data")
        if not isinstance(data, dict):
            raise ExternalAPIError("unexpected prometheus response: missing data")
        return data

    async def query_scalar(self, query: str, at: datetime) -> float:
        data = await self.query(query, at)
        if data.get("resultType") != RESULT_SCALAR:
            METRICS_QUERY_FAILURES.labels(kind=RESULT_SCALAR).inc()
            raise ExternalAPIError(
                f"unexpected prometheus response type {data.get('resultType')!r}, expected scalar",
                details={"query": query},
            )
        return _sample_value(data.get("result"))

    async def query_vector(
        self, query: str, at: datetime, label_name: Optional[str] = None
    ) -> dict[str, float]:
        """
        Return `{label value -> sample}` for a vector result. Each series is
        keyed by `label_name` when given, else by its only label.
        """
        data = await self.query(query, at)
        if data.get("resultType") != RESULT_VECTOR:
            METRICS_QUERY_FAILURES.labels(kind=RESULT_VECTOR).inc()
            raise ExternalAPIError(
                f"unexpected prometheus response type {data.get('resultType')!r}, expected vector",
                details={"query": query},
            )
        series_list = data.get("result")
        if series_list is None:
            series_list = []
        if not isinstance(series_list, list):
            METRICS_QUERY_FAILURES.labels(kind=RESULT_VECTOR).inc()
            raise ExternalAPIError(
                "unexpected prometheus vector result", details={"query": query}
            )
        result: dict[str, float] = {}
        for series in series_list:
            metric = series.get("metric", {}) if isinstance(series, dict) else None
            if not isinstance(metric, dict):
                METRICS_QUERY_FAILURES.labels(kind=RESULT_VECTOR).inc()
                raise ExternalAPIError(
                    f"unexpected prometheus series {series!r}", details={"query": query}
                )
            if label_name is not None:
                if label_name not in metric:
                    raise ExternalAPIError(
                        f"prometheus series without label {label_name!r}",
                        details={"query": query, "metric": metric},
                    )
                label = str(metric[label_name])
            elif len(metric) == 1:
                label = str(next(iter(metric.values())))
            else:
                METRICS_QUERY_FAILURES.labels(kind=RESULT_VECTOR).inc()
                raise ExternalAPIError(
                    "ambiguous prometheus series labels; configure PROMETHEUS_LABEL_NAME",
                    details={"query": query, "metric": metric},
                )
            result[label] = _sample_value(series.get("value"))
        return result
