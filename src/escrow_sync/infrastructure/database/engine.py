"""Async database engine, session management and retrying raw queries.

Provides:
    - _get_engine / _get_session_factory: lazy singletons built from settings.
    - query: parameterised SQL with bounded retry on transient errors.
    - transient_retry: the tenacity policy shared by query and the reconciler.
    - init_db / close_db: lifecycle hooks for the app and the worker.

Usage:
    rows = await query("SELECT id FROM escrows WHERE state = :state", {"state": "FUNDED"})
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from escrow_sync.config import get_settings
from escrow_sync.domain.exceptions import DeadlineInvariantViolationError
from escrow_sync.infrastructure.database.triggers import is_deadline_violation
from escrow_sync.logging_config import get_logger

logger = get_logger(__name__)

# Connection reset / connection failure / admin shutdown
TRANSIENT_SQLSTATES = frozenset({"08006", "08001", "57P01"})

# Module-level singletons (initialized in init_db)
_engine = None
_session_factory = None


def is_transient_error(exc: BaseException) -> bool:
    """Return True for connection-reset-class errors worth retrying."""
    if isinstance(exc, ConnectionResetError):
        return True
    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        orig = exc.orig
        sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        if sqlstate in TRANSIENT_SQLSTATES:
            return True
        if isinstance(orig, ConnectionResetError) or "ECONNRESET" in str(orig):
            return True
    return False


def _log_retry(retry_state) -> None:  # noqa: ANN001
    logger.warning(
        "database.transient_error_retry",
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()),
    )


transient_retry = retry(
    retry=retry_if_exception(is_transient_error),
    stop=stop_after_attempt(get_settings().db_query_max_attempts),
    wait=wait_exponential(multiplier=0.1, min=0.2, max=2),
    before_sleep=_log_retry,
    reraise=True,
)


def _get_engine():
    """Get or create the async engine (lazy singleton)."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_pre_ping=True,
            echo=settings.db_echo_sql,
        )
        logger.info(
            "database.engine_created",
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
        )
    return _engine


def _get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory (lazy singleton)."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=_get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Public accessor used by the runtime to hand one factory to every service."""
    return _get_session_factory()


@transient_retry
async def query(
    sql: str,
    params: dict[str, Any] | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> list[dict[str, Any]]:
    """Execute parameterised SQL and return the rows as dicts.

    Retries up to three times on transient connection errors only; anything
    else propagates on the first attempt. A write rejected by the trades
    deadline trigger surfaces as DeadlineInvariantViolationError.
    """
    factory = session_factory or _get_session_factory()
    async with factory() as session:
        try:
            result = await session.execute(text(sql), params or {})
            rows = [dict(row) for row in result.mappings().all()] if result.returns_rows else []
            await session.commit()
        except DBAPIError as exc:
            await session.rollback()
            if is_deadline_violation(exc):
                raise DeadlineInvariantViolationError(
                    (params or {}).get("trade_id"), str(exc.orig)
                ) from exc
            raise
        except Exception:
            await session.rollback()
            raise
    return rows


async def init_db() -> None:
    """Initialize the database engine and create tables if they don't exist.

    In production, the schema is managed outside the application.
    """
    from escrow_sync.infrastructure.database.orm_models import Base

    engine = _get_engine()
    settings = get_settings()

    if settings.is_development:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("database.tables_created")
    else:
        logger.info("database.skipping_create_all", reason="not in development mode")


async def close_db() -> None:
    """Dispose of the database engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database.engine_disposed")
        _engine = None
        _session_factory = None
