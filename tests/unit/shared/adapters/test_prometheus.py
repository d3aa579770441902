from __future__ import annotations

import math
from datetime import datetime, timezone

import httpx
import pytest

from cluster_billing.shared.adapters.prometheus import PrometheusClient
from cluster_billing.shared.core.exceptions import ExternalAPIError

AT = datetime(2024, 2, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_query_scalar_evaluates_at_given_time(
    settings, mock_http_client, scalar_payload
) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=scalar_payload("0.25"))

    client = PrometheusClient(settings=settings, client=mock_http_client(handler))
    value = await client.query_scalar("vector(0.25)", AT)

    assert value == 0.25
    assert seen[0].url.path == "/api/v1/query"
    assert seen[0].url.params["query"] == "vector(0.25)"
    assert float(seen[0].url.params["time"]) == AT.timestamp()


@pytest.mark.asyncio
async def test_query_scalar_passes_nan_through(
    settings, mock_http_client, scalar_payload
) -> None:
    client = PrometheusClient(
        settings=settings,
        client=mock_http_client(lambda request: httpx.Response(200, json=scalar_payload("NaN"))),
    )
    assert math.isnan(await client.query_scalar("q", AT))


@pytest.mark.asyncio
async def test_query_scalar_rejects_vector_result(
    settings, mock_http_client, vector_payload
) -> None:
    client = PrometheusClient(
        settings=settings,
        client=mock_http_client(
            lambda request: httpx.Response(200, json=vector_payload({"a": "1"}))
        ),
    )
    with pytest.raises(ExternalAPIError, match="expected scalar"):
        await client.query_scalar("q", AT)


@pytest.mark.asyncio
async def test_query_vector_keys_series_by_single_label(
    settings, mock_http_client, vector_payload
) -> None:
    client = PrometheusClient(
        settings=settings,
        client=mock_http_client(
            lambda request: httpx.Response(
                200, json=vector_payload({"def-a": "3", "def-b": "1"})
            )
        ),
    )
    assert await client.query_vector("q", AT) == {"def-a": 3.0, "def-b": 1.0}


@pytest.mark.asyncio
async def test_query_vector_uses_configured_label(settings, mock_http_client) -> None:
    payload = {
        "status": "success",
        "data": {
            "resultType": "vector",
            "result": [
                {"metric": {"job": "engine", "definition": "d1"}, "value": [0, "2"]},
            ],
        },
    }
    client = PrometheusClient(
        settings=settings,
        client=mock_http_client(lambda request: httpx.Response(200, json=payload)),
    )

    assert await client.query_vector("q", AT, label_name="definition") == {"d1": 2.0}
    with pytest.raises(ExternalAPIError, match="ambiguous"):
        await client.query_vector("q", AT)


@pytest.mark.asyncio
async def test_query_error_status_raises(settings, mock_http_client) -> None:
    client = PrometheusClient(
        settings=settings,
        client=mock_http_client(
            lambda request: httpx.Response(
                200, json={"status": "error", "error": "parse error"}
            )
        ),
    )
    with pytest.raises(ExternalAPIError) as exc:
        await client.query_scalar("q", AT)
    assert exc.value.details["error"] == "parse error"


@pytest.mark.asyncio
async def test_query_with_warnings_still_returns_value(
    settings, mock_http_client, scalar_payload
) -> None:
    payload = scalar_payload("0.5")
    payload["warnings"] = ["partial response"]
    client = PrometheusClient(
        settings=settings,
        client=mock_http_client(lambda request: httpx.Response(200, json=payload)),
    )
    assert await client.query_scalar("q", AT) == 0.5


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "result",
    [
        [["pd1", 1]],
        [{"metric": ["pd1"], "value": [0, "1"]}],
        {"metric": {"definition": "d1"}},
    ],
)
async def test_query_vector_rejects_malformed_series(
    settings, mock_http_client, result
) -> None:
    payload = {"status": "success", "data": {"resultType": "vector", "result": result}}
    client = PrometheusClient(
        settings=settings,
        client=mock_http_client(lambda request: httpx.Response(200, json=payload)),
    )
    with pytest.raises(ExternalAPIError, match="unexpected prometheus"):
        await client.query_vector("q", AT)
