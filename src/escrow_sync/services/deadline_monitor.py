"""Deadline Monitor: submits auto-cancellations for escrows past their deadlines.

Runs as an APScheduler interval job (single instance, coalesced) on the
service's event loop. Each sweep:
    1. Selects candidate escrows (see TradeRepository.find_deadline_candidates).
    2. Per escrow, in isolation: optional on-chain eligibility check, optional
       balance audit (BALANCE_CHECK row), then a PENDING attempt row, the
       on-chain submission, and SUCCESS/FAILED on that row.

The monitor never touches escrow or trade state; the resulting
EscrowCancelled event flows back through the listener and the reconciler,
which attributes it to the attempt row.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from escrow_sync.domain.enums import AutoCancelStatus
from escrow_sync.domain.exceptions import (
    ChainAdapterError,
    NetworkInactiveError,
    NetworkNotFoundError,
    UnsupportedChainOperationError,
)
from escrow_sync.infrastructure.database.engine import transient_retry
from escrow_sync.infrastructure.database.repositories import (
    AutoCancellationRepository,
    TradeRepository,
)
from escrow_sync.logging_config import get_logger
from escrow_sync.services.ledger import failure_message, ledger_metadata

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_sync.chains.base import ChainAdapter
    from escrow_sync.chains.network_registry import NetworkRegistry
    from escrow_sync.chains.registry import ChainAdapterRegistry
    from escrow_sync.config import Settings
    from escrow_sync.domain.models import CancelTarget

logger = get_logger(__name__)

JOB_ID = "escrow_deadline_monitor"


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass
class MonitorRunSummary:
    """Counters for one monitor sweep."""

    checked: int = 0
    submitted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class DeadlineMonitor:
    """Periodic auto-cancel sweep over expired escrows.

    Usage:
        monitor = DeadlineMonitor(session_factory, networks, adapters, settings)
        monitor.start()              # schedules run_once every interval
        summary = await monitor.run_once()
        monitor.shutdown()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        networks: NetworkRegistry,
        adapters: ChainAdapterRegistry,
        settings: Settings,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self._session_factory = session_factory
        self._networks = networks
        self._adapters = adapters
        self._settings = settings
        self._clock = clock
        self._scheduler: AsyncIOScheduler | None = None

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Schedule the sweep; must be called from inside the running event loop."""
        if not self._settings.escrow_monitor_enabled:
            logger.info("monitor.disabled")
            return
        if self.running:
            return
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(seconds=self._settings.escrow_monitor_interval_seconds),
            id=JOB_ID,
            name="Escrow deadline monitor",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(
            "monitor.started",
            interval_seconds=self._settings.escrow_monitor_interval_seconds,
            batch_size=self._settings.escrow_monitor_batch_size,
        )

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("monitor.stopped")

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def run_once(self) -> MonitorRunSummary:
        """Run one sweep. Per-escrow failures are counted, never raised."""
        summary = MonitorRunSummary()
        cutoff = self._clock() - timedelta(seconds=self._settings.auto_cancel_delay_seconds)
        try:
            targets = await self._load_targets(cutoff)
        except Exception as exc:
            logger.error("monitor.candidate_query_failed", error=str(exc), exc_info=True)
            return summary

        for target in targets:
            summary.checked += 1
            try:
                await self._process(target, summary)
            except Exception as exc:
                summary.failed += 1
                logger.error(
                    "monitor.escrow_failed",
                    escrow_db_id=target.escrow_db_id,
                    escrow_id=target.onchain_escrow_id,
                    network_id=target.network_id,
                    error=str(exc),
                    exc_info=True,
                )

        logger.info("monitor.run_complete", cutoff=cutoff.isoformat(), **summary.to_dict())
        return summary

    @transient_retry
    async def _load_targets(self, cutoff: datetime) -> list[CancelTarget]:
        async with self._session_factory() as session:
            return await TradeRepository(session).find_deadline_candidates(
                cutoff, self._settings.escrow_monitor_batch_size
            )

    async def _process(self, target: CancelTarget, summary: MonitorRunSummary) -> None:
        log = logger.bind(
            escrow_db_id=target.escrow_db_id,
            escrow_id=target.onchain_escrow_id,
            trade_id=target.trade_id,
            leg=target.leg,
        )
        try:
            network = await self._networks.validate(target.network_id)
        except (NetworkNotFoundError, NetworkInactiveError) as exc:
            summary.skipped += 1
            log.warning("monitor.network_unavailable", error=exc.message)
            return
        log = log.bind(network=network.name)
        adapter = self._adapters.get(network)

        if self._settings.auto_cancel_eligibility_check:
            try:
                eligible = await adapter.is_eligible_for_auto_cancel(target)
            except UnsupportedChainOperationError:
                eligible = True
            if not eligible:
                summary.skipped += 1
                log.info("monitor.not_eligible")
                return

        if self._settings.auto_cancel_balance_check:
            await self._balance_check(adapter, target)

        attempt_id = await self._create_attempt(target)
        summary.submitted += 1
        try:
            submission = await adapter.submit_auto_cancel(target)
        except Exception as exc:
            summary.failed += 1
            await self._mark(attempt_id, AutoCancelStatus.FAILED, error_message=failure_message(exc))
            log.error("monitor.auto_cancel_failed", attempt_id=attempt_id, error=str(exc))
            return

        if submission.success:
            summary.succeeded += 1
            await self._mark(
                attempt_id,
                AutoCancelStatus.SUCCESS,
                transaction_hash=submission.tx_id,
                gas_used=submission.gas_used,
                gas_price=submission.gas_price,
            )
            log.info("monitor.auto_cancel_succeeded", attempt_id=attempt_id, tx_id=submission.tx_id)
        else:
            summary.failed += 1
            await self._mark(
                attempt_id,
                AutoCancelStatus.FAILED,
                transaction_hash=submission.tx_id,
                gas_used=submission.gas_used,
                gas_price=submission.gas_price,
                error_message=failure_message(submission.error or "auto-cancel failed"),
            )
            log.error(
                "monitor.auto_cancel_failed",
                attempt_id=attempt_id,
                tx_id=submission.tx_id,
                error=submission.error,
            )

    async def _balance_check(self, adapter: ChainAdapter, target: CancelTarget) -> None:
        """Write a BALANCE_CHECK audit row comparing chain and ledger balances."""
        try:
            stored = await adapter.get_stored_balance(target)
        except UnsupportedChainOperationError:
            return
        except Exception as exc:
            logger.warning(
                "monitor.balance_check_failed",
                escrow_db_id=target.escrow_db_id,
                error=str(exc),
            )
            return
        try:
            calculated = await adapter.get_calculated_balance(target)
        except ChainAdapterError:
            calculated = None

        recorded = target.current_balance
        mismatch = recorded is not None and stored != recorded
        payload = ledger_metadata(
            stored_balance=str(stored),
            calculated_balance=str(calculated) if calculated is not None else None,
            recorded_balance=str(recorded) if recorded is not None else None,
            mismatch=mismatch,
        )
        await self._write_attempt(target, AutoCancelStatus.BALANCE_CHECK, error_message=payload)
        if mismatch:
            logger.warning(
                "monitor.balance_mismatch",
                escrow_db_id=target.escrow_db_id,
                stored=str(stored),
                recorded=str(recorded),
            )

    async def _create_attempt(self, target: CancelTarget) -> int:
        return await self._write_attempt(target, AutoCancelStatus.PENDING)

    @transient_retry
    async def _write_attempt(
        self,
        target: CancelTarget,
        status: AutoCancelStatus,
        error_message: str | None = None,
    ) -> int:
        async with self._session_factory() as session:
            attempt = await AutoCancellationRepository(session).create(
                target.escrow_db_id,
                target.network_id,
                status,
                error_message=error_message,
            )
            await session.commit()
            return attempt.id

    @transient_retry
    async def _mark(self, attempt_id: int, status: AutoCancelStatus, **fields) -> None:  # noqa: ANN003
        async with self._session_factory() as session:
            await AutoCancellationRepository(session).mark(attempt_id, status, **fields)
            await session.commit()
