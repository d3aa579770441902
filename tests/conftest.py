"""
Global pytest fixtures for the cluster billing test suite.

Provides:
- Settings with OpenCost/Prometheus endpoints pointing at mock transports
- Async database session with SQLite in-memory
- FastAPI async client sharing the test session
- Allocation payload helpers
"""
import os
from typing import Any, AsyncGenerator, Callable

import httpx
import pytest
import pytest_asyncio

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["OPENCOST_URL"] = "http://opencost.test:9003"
os.environ["PROMETHEUS_URL"] = "http://prometheus.test:9090"

OPENCOST_URL = os.environ["OPENCOST_URL"]
PROMETHEUS_URL = os.environ["PROMETHEUS_URL"]


@pytest.fixture
def settings():
    """Settings built per test, independent of the cached singleton."""
    from cluster_billing.shared.core.config import Settings

    return Settings(
        TESTING=True,
        OPENCOST_URL=OPENCOST_URL,
        PROMETHEUS_URL=PROMETHEUS_URL,
        HTTP_MAX_RETRIES=1,
        OPENCOST_CACHE_TTL_SECONDS=0,
        USER_PROCESS_COST_FRACTION_QUERY='user_process_fraction{user="$user_id"}[$__range]',
        PROCESS_MARSHALLER_COST_FRACTION_QUERY="process_marshaller_fraction[$__range]",
        USER_MARSHALLER_COST_FRACTION_QUERY='user_marshaller_fraction{user="$user_id"}[$__range]',
        USER_PROCESS_IO_COST_FRACTION_QUERY='user_process_io_fraction{user="$user_id"}[$__range]',
        USER_PROCESS_DEFINITION_COST_FRACTION_QUERY=(
            'sum by (process_definition_id) '
            '(increase(process_steps{user="$user_id",instance="$instance_id"}[$__range]))'
        ),
    )


# ============================================================================
# HTTP helpers
# ============================================================================

def _allocation_payload(data: dict[str, dict[str, float]]) -> dict[str, Any]:
    """OpenCost accumulated allocation envelope for `{key: {cpu, ram, storage}}`."""
    return {
        "code": 200,
        "data": [
            {
                key: {
                    "name": key,
                    "cpuCost": value.get("cpu", 0.0),
                    "ramCost": value.get("ram", 0.0),
                    "pvCost": value.get("storage", 0.0),
                }
                for key, value in data.items()
            }
        ],
    }


def _scalar_payload(value: str) -> dict[str, Any]:
    return {"status": "success", "data": {"resultType": "scalar", "result": [1706745600, value]}}


def _vector_payload(series: dict[str, str], label: str = "process_definition_id") -> dict[str, Any]:
    return {
        "status": "success",
        "data": {
            "resultType": "vector",
            "result": [
                {"metric": {label: name}, "value": [1706745600, value]}
                for name, value in series.items()
            ],
        },
    }


@pytest.fixture
def allocation_payload():
    return _allocation_payload


@pytest.fixture
def scalar_payload():
    return _scalar_payload


@pytest.fixture
def vector_payload():
    return _vector_payload


@pytest.fixture
def mock_http_client() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """Build an httpx.AsyncClient whose requests are answered by `handler`."""

    def _build(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _build


# ============================================================================
# Async Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def async_engine():
    """In-memory SQLite engine shared by every session of one test."""
    from sqlalchemy.ext.asyncio import create_async_engine
    from sqlalchemy.pool import StaticPool

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(async_engine):
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    import cluster_billing.models  # noqa: F401
    from cluster_billing.shared.db.base import Base

    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator:
    async with session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest_asyncio.fixture
async def db(db_session):
    """Alias for db_session."""
    return db_session


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================

@pytest.fixture
def app():
    from cluster_billing.main import app as billing_app

    return billing_app


@pytest_asyncio.fixture
async def async_client(app, db) -> AsyncGenerator:
    """Async test client for FastAPI. Overrides get_db to share the test session."""
    from httpx import ASGITransport, AsyncClient

    from cluster_billing.shared.db.session import get_db

    old_override = app.dependency_overrides.get(get_db)
    app.dependency_overrides[get_db] = lambda: db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    if old_override:
        app.dependency_overrides[get_db] = old_override
    else:
        app.dependency_overrides.pop(get_db, None)
