import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, AsyncGenerator

import structlog
from sqlalchemy import event
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from cluster_billing.shared.core.config import get_settings
from cluster_billing.shared.db.base import Base

logger = structlog.get_logger()

# Ensure ORM mappings are registered for the job entrypoint and tests
# that import the DB layer without importing `cluster_billing/main.py`.
import cluster_billing.models  # noqa: F401, E402

SLOW_QUERY_THRESHOLD_SECONDS = 0.5


@dataclass(slots=True)
class _DBRuntime:
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    effective_url: str


_db_runtime: _DBRuntime | None = None
_db_runtime_lock = Lock()


def _normalize_db_url(raw_url: str) -> str:
    url = (raw_url or "").strip()
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _resolve_effective_url(settings_obj: Any) -> str:
    db_url = _normalize_db_url(str(getattr(settings_obj, "DATABASE_URL", "") or ""))
    if not db_url:
        if not getattr(settings_obj, "TESTING", False):
            raise ValueError("DATABASE_URL is not set. The application cannot start.")
        logger.debug("missing_db_url_in_testing_using_sqlite")
        return "sqlite+aiosqlite:///:memory:"
    return db_url


def _build_pool_config(settings_obj: Any, effective_url: str) -> dict[str, Any]:
    pool_config: dict[str, Any] = {
        "pool_pre_ping": True,
        "echo": bool(getattr(settings_obj, "DB_ECHO", False)),
    }
    if "sqlite" in effective_url:
        pool_config["poolclass"] = StaticPool
        return pool_config
    pool_config.update(
        {
            "pool_size": int(settings_obj.DB_POOL_SIZE),
            "max_overflow": int(settings_obj.DB_MAX_OVERFLOW),
            "pool_timeout": int(settings_obj.DB_POOL_TIMEOUT),
            "pool_recycle": int(settings_obj.DB_POOL_RECYCLE),
        }
    )
    return pool_config


def before_cursor_execute(
    conn: Connection,
    _cursor: Any,
    _statement: str,
    _parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Record query start time."""
    conn.info.setdefault("query_start_time", []).append(time.perf_counter())


def after_cursor_execute(
    conn: Connection,
    _cursor: Any,
    statement: str,
    _parameters: Any,
    _context: Any,
    _executemany: bool,
) -> None:
    """Log slow queries."""
    total = time.perf_counter() - conn.info["query_start_time"].pop(-1)
    if total > SLOW_QUERY_THRESHOLD_SECONDS:
        logger.warning(
            "slow_query_detected",
            duration_seconds=round(total, 3),
            threshold_seconds=SLOW_QUERY_THRESHOLD_SECONDS,
            statement=statement[:200] + "..." if len(statement) > 200 else statement,
        )


def _build_db_runtime() -> _DBRuntime:
    settings_obj = get_settings()
    effective_url = _resolve_effective_url(settings_obj)
    engine = create_async_engine(
        effective_url, **_build_pool_config(settings_obj, effective_url)
    )
    event.listen(engine.sync_engine, "before_cursor_execute", before_cursor_execute)
    event.listen(engine.sync_engine, "after_cursor_execute", after_cursor_execute)
    session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return _DBRuntime(
        engine=engine,
        session_maker=session_maker,
        effective_url=effective_url,
    )


def _get_db_runtime() -> _DBRuntime:
    global _db_runtime
    runtime = _db_runtime
    if runtime is not None:
        return runtime
    with _db_runtime_lock:
        runtime = _db_runtime
        if runtime is None:
            runtime = _build_db_runtime()
            _db_runtime = runtime
    return runtime


def get_engine() -> AsyncEngine:
    """Return the active async engine."""
    return _get_db_runtime().engine


def async_session_maker(*args: Any, **kwargs: Any) -> AsyncSession:
    """Return a new async session from the active session factory."""
    return _get_db_runtime().session_maker(*args, **kwargs)


async def init_db() -> None:
    """Create missing tables. Existing tables and data are left untouched."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _db_runtime
    runtime = _db_runtime
    _db_runtime = None
    if runtime is not None:
        await runtime.engine.dispose()
        logger.info("database_closed")


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request."""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()
