"""Transaction ledger entry point for callers outside a unit of work.

`record_transaction` opens its own session, upserts one row through
TransactionRepository.record and commits, retrying transient DB errors.
Callers already holding a session use the repository directly.

The `error_message` column doubles as a metadata slot: for FAILED rows it is
the failure reason, otherwise `ledger_metadata()` stores a small JSON object.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from escrow_sync.infrastructure.database.engine import (
    get_session_factory,
    transient_retry,
)
from escrow_sync.infrastructure.database.repositories import TransactionRepository

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

MAX_ERROR_MESSAGE_LENGTH = 2000


def ledger_metadata(**fields: Any) -> str:
    """Compact JSON metadata for a non-FAILED ledger row (None values dropped)."""
    return json.dumps(
        {key: value for key, value in fields.items() if value is not None},
        default=str,
        sort_keys=True,
        separators=(",", ":"),
    )


def failure_message(exc: BaseException | str) -> str:
    text = exc if isinstance(exc, str) else f"{type(exc).__name__}: {exc}"
    return text[:MAX_ERROR_MESSAGE_LENGTH]


@transient_retry
async def record_transaction(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    **fields: Any,
) -> int:
    """Upsert a ledger row in its own transaction and return its id.

    Accepts the keyword arguments of TransactionRepository.record.
    """
    factory = session_factory or get_session_factory()
    async with factory() as session:
        try:
            row_id = await TransactionRepository(session).record(**fields)
            await session.commit()
        except Exception:
            await session.rollback()
            raise
    return row_id
