"""Reconciler: applies decoded on-chain events to the ledger.

One event is one unit of work in its own session:
    1. Resolve the trade and the escrow (mapping -> on-chain id -> the
       trade's newest escrow without an id), upserting the id mapping.
    2. Upsert the transactions row and append the event to contract_events.
    3. Insert the escrow for EscrowCreated when nothing resolved.
    4. Apply the forward-only state change. Trade writes are guarded by the
       deadline trigger; a rejection there is a correct outcome, not a failure.
    5. For EscrowCancelled, attribute the cancellation to an auto-cancel
       attempt (or to the network's arbitrator) and pick AUTO_CANCELLED.

The unit is retried on transient DB errors. Anything else is logged, a
FAILED ledger row is written in a fresh session, and the next event proceeds.
Replayed events hit the same unique keys and state guards, so processing an
event twice leaves the ledger unchanged.
"""

from __future__ import annotations

from contextlib import nullcontext
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import DBAPIError

from escrow_sync.domain.enums import (
    AutoCancelStatus,
    EscrowEventName,
    EscrowState,
    NetworkFamily,
    TradeStatus,
    TransactionStatus,
    TransactionType,
    transaction_type_for,
)
from escrow_sync.domain.models import usdc_from_raw
from escrow_sync.infrastructure.database.engine import transient_retry
from escrow_sync.infrastructure.database.repositories import (
    AutoCancellationRepository,
    ContractEventRepository,
    EscrowIdMappingRepository,
    EscrowRepository,
    TradeRepository,
    TransactionRepository,
)
from escrow_sync.infrastructure.database.triggers import is_deadline_violation
from escrow_sync.logging_config import get_logger
from escrow_sync.services.ledger import (
    failure_message,
    ledger_metadata,
    record_transaction,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_sync.domain.models import (
        DecodedEvent,
        DecodeResult,
        LogBatch,
        NetworkConfig,
    )
    from escrow_sync.infrastructure.database.orm_models import Escrow, Trade

logger = get_logger(__name__)

# The party that acted, per event
EVENT_SENDER_FIELDS: dict[str, tuple[str, ...]] = {
    EscrowEventName.ESCROW_CREATED: ("seller",),
    EscrowEventName.FUNDS_DEPOSITED: ("depositor", "seller"),
    EscrowEventName.FIAT_MARKED_PAID: ("buyer",),
    EscrowEventName.ESCROW_RELEASED: ("releaser",),
    EscrowEventName.ESCROW_CANCELLED: ("canceller",),
    EscrowEventName.DISPUTE_OPENED: ("disputing_party",),
    EscrowEventName.DISPUTE_RESPONSE_SUBMITTED: ("responding_party",),
    EscrowEventName.DISPUTE_RESOLVED: ("arbitrator",),
    EscrowEventName.DISPUTE_DEFAULT_JUDGMENT: ("arbitrator",),
}

SENDER_FIELDS = (
    "seller",
    "buyer",
    "depositor",
    "releaser",
    "canceller",
    "disputing_party",
    "responding_party",
    "arbitrator",
)


def _now() -> datetime:
    return datetime.now(UTC)


def _as_int(value: Any) -> int | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_onchain_id(value: Any) -> str | None:
    number = _as_int(value)
    return str(number) if number is not None else None


def _as_datetime(value: Any) -> datetime | None:
    seconds = _as_int(value)
    if not seconds or seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, UTC)


def _same_address(family: NetworkFamily, left: str, right: str) -> bool:
    if family is NetworkFamily.EVM:
        return left.lower() == right.lower()
    return left == right


def sender_for(event: DecodedEvent) -> str | None:
    """The acting party for known events, else the first party field present."""
    sender = event.arg(*EVENT_SENDER_FIELDS.get(event.name, ()))
    return sender if sender is not None else event.arg(*SENDER_FIELDS)


def receiver_for(network: NetworkConfig, event: DecodedEvent) -> str | None:
    if event.name == EscrowEventName.ESCROW_RELEASED:
        receiver = event.arg("destination", "buyer")
    elif event.name == EscrowEventName.ESCROW_CANCELLED:
        receiver = event.arg("seller")
    else:
        receiver = None
    if receiver:
        return receiver
    if network.family is NetworkFamily.SOLANA:
        return event.arg("object_id", default=network.program_id)
    return network.contract_address


class Reconciler:
    """Turns decoded events into ledger rows and forward-only state changes.

    Usage:
        reconciler = Reconciler(session_factory)
        await reconciler.handle_batch(network, batch, decoder.decode(batch))
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle_batch(
        self, network: NetworkConfig, batch: LogBatch, result: DecodeResult
    ) -> int:
        """Process one decoded batch; returns the number of events applied."""
        if batch.error is not None:
            await self._record_failure(
                network,
                tx_id=batch.tx_id,
                block_or_slot=batch.block_or_slot,
                tx_type=transaction_type_for(result.events[0].name)
                if result.events
                else TransactionType.OTHER,
                error=f"transaction failed on chain: {batch.error}",
            )
            return 0

        if not result.events:
            if result.errors:
                await self._record_failure(
                    network,
                    tx_id=batch.tx_id,
                    block_or_slot=batch.block_or_slot,
                    tx_type=TransactionType.EVENT,
                    error="; ".join(result.errors),
                )
            return 0

        applied = 0
        for event in result.events:
            if await self.process_event(network, event):
                applied += 1
        return applied

    async def process_event(self, network: NetworkConfig, event: DecodedEvent) -> bool:
        """Apply one event; never raises. Returns False if the unit failed."""
        try:
            await self._apply_unit(network, event)
        except Exception as exc:
            logger.error(
                "reconciler.event_failed",
                network=network.name,
                event_name=event.name,
                tx_id=event.tx_id,
                error=str(exc),
                exc_info=True,
            )
            await self._record_failure(
                network,
                tx_id=event.tx_id,
                block_or_slot=event.block_or_slot,
                tx_type=transaction_type_for(event.name),
                error=failure_message(exc),
            )
            return False
        return True

    @transient_retry
    async def _apply_unit(self, network: NetworkConfig, event: DecodedEvent) -> None:
        async with self._session_factory() as session:
            try:
                await self._apply(session, network, event)
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def _record_failure(
        self,
        network: NetworkConfig,
        *,
        tx_id: str | None,
        block_or_slot: int | None,
        tx_type: TransactionType,
        error: str,
    ) -> None:
        if not tx_id:
            return
        try:
            await record_transaction(
                session_factory=self._session_factory,
                tx_id=tx_id,
                network_id=network.id,
                network_family=network.family,
                status=TransactionStatus.FAILED,
                type=tx_type,
                block_or_slot=block_or_slot,
                error_message=failure_message(error),
            )
        except Exception as exc:
            logger.error(
                "reconciler.failure_record_failed",
                network=network.name,
                tx_id=tx_id,
                error=str(exc),
            )

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    async def _apply(
        self, session: AsyncSession, network: NetworkConfig, event: DecodedEvent
    ) -> None:
        trades = TradeRepository(session)
        escrows = EscrowRepository(session)
        mappings = EscrowIdMappingRepository(session)
        log = logger.bind(network=network.name, event_name=event.name, tx_id=event.tx_id)

        onchain_id = _as_onchain_id(event.arg("escrow_id"))
        event_trade_id = _as_int(event.arg("trade_id"))

        # --- Resolve ---
        trade = await trades.get(event_trade_id, network.id) if event_trade_id else None
        escrow = await self._resolve_escrow(session, network, onchain_id, trade)
        if trade is None and escrow is not None:
            trade = await trades.get(escrow.trade_id, network.id)
        if trade is None and event_trade_id is not None:
            log.warning("reconciler.trade_missing", trade_id=event_trade_id, escrow_id=onchain_id)

        # --- Ledger ---
        transaction_id = await TransactionRepository(session).record(
            tx_id=event.tx_id,
            network_id=network.id,
            network_family=network.family,
            status=TransactionStatus.SUCCESS,
            type=transaction_type_for(event.name),
            block_or_slot=event.block_or_slot,
            sender_address=sender_for(event),
            receiver_address=receiver_for(network, event),
            error_message=ledger_metadata(
                event=event.name,
                log_index=event.log_index,
                escrow_id=onchain_id,
                degraded=event.degraded or None,
                discriminator=event.discriminator,
            ),
            related_trade_id=trade.id if trade else None,
            related_escrow_db_id=escrow.id if escrow else None,
        )
        await ContractEventRepository(session).record(
            network_id=network.id,
            event_name=event.name,
            tx_id=event.tx_id,
            log_index=event.log_index,
            block_or_slot=event.block_or_slot,
            args=event.args,
            trade_id=trade.id if trade else event_trade_id,
            transaction_id=transaction_id,
        )

        escrow_db_id = escrow.id if escrow else None
        if (
            escrow_db_id is None
            and event.name == EscrowEventName.ESCROW_CREATED
            and trade is not None
            and onchain_id is not None
        ):
            escrow_db_id = await escrows.insert_if_absent(
                self._new_escrow_values(network, event, trade, onchain_id)
            )
            await mappings.upsert(onchain_id, network.id, escrow_db_id)
            await TransactionRepository(session).link_escrow(transaction_id, escrow_db_id)
            log.info("reconciler.escrow_inserted", escrow_db_id=escrow_db_id, trade_id=trade.id)

        if escrow_db_id is None and onchain_id is not None:
            log.warning("reconciler.escrow_unresolved", escrow_id=onchain_id)

        # --- State ---
        leg = TradeRepository.leg_for_escrow(trade, onchain_id) if trade else None
        await self._transition(session, network, event, escrow_db_id, trade, leg, onchain_id)
        log.info(
            "reconciler.event_applied",
            escrow_db_id=escrow_db_id,
            trade_id=trade.id if trade else None,
            leg=leg,
            degraded=event.degraded,
        )

    async def _resolve_escrow(
        self,
        session: AsyncSession,
        network: NetworkConfig,
        onchain_id: str | None,
        trade: Trade | None,
    ) -> Escrow | None:
        """Mapping first, then (a) by on-chain id, then (b) the trade's newest escrow."""
        if onchain_id is None:
            return None
        escrows = EscrowRepository(session)
        mappings = EscrowIdMappingRepository(session)

        database_id = await mappings.lookup(onchain_id, network.id)
        if database_id is not None:
            escrow = await escrows.get(database_id)
            if escrow is not None and escrow.network_id == network.id:
                return escrow

        escrow = await escrows.get_by_onchain_id(onchain_id, network.id)
        if escrow is None and trade is not None:
            escrow = await escrows.latest_for_trade(trade.id, network.id, onchain_id)
            if escrow is not None and escrow.onchain_escrow_id is None:
                await escrows.backfill_onchain_id(escrow.id, onchain_id)
                logger.info(
                    "reconciler.onchain_id_backfilled",
                    escrow_db_id=escrow.id,
                    escrow_id=onchain_id,
                    network=network.name,
                )
        if escrow is not None:
            await mappings.upsert(onchain_id, network.id, escrow.id)
        return escrow

    def _new_escrow_values(
        self,
        network: NetworkConfig,
        event: DecodedEvent,
        trade: Trade,
        onchain_id: str,
    ) -> dict[str, Any]:
        is_solana = network.family is NetworkFamily.SOLANA
        object_id = event.arg("object_id")
        return {
            "trade_id": trade.id,
            "network_id": network.id,
            "onchain_escrow_id": onchain_id,
            "escrow_address": object_id if is_solana else network.contract_address,
            "program_id": network.program_id if is_solana else None,
            "escrow_pda": object_id if is_solana else None,
            "trade_onchain_id": _as_onchain_id(event.arg("trade_id")),
            "seller_address": event.arg("seller"),
            "buyer_address": event.arg("buyer"),
            "arbitrator_address": event.arg("arbitrator", default=network.arbitrator_address),
            "amount": usdc_from_raw(event.arg("amount")),
            "current_balance": usdc_from_raw(0),
            "state": EscrowState.CREATED.value,
            "sequential": bool(event.arg("sequential", default=False)),
            "sequential_escrow_address": event.arg("sequential_escrow_address"),
            "deposit_deadline": _as_datetime(event.arg("deposit_deadline")),
            "fiat_deadline": _as_datetime(event.arg("fiat_deadline")),
        }

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    async def _transition(
        self,
        session: AsyncSession,
        network: NetworkConfig,
        event: DecodedEvent,
        escrow_db_id: int | None,
        trade: Trade | None,
        leg: int | None,
        onchain_id: str | None,
    ) -> None:
        escrows = EscrowRepository(session)
        trades = TradeRepository(session)
        name = event.name
        now = _now()
        counter = _as_int(event.arg("counter"))
        extra = {"counter": counter} if counter is not None else {}

        if name == EscrowEventName.ESCROW_CREATED:
            if trade is not None and onchain_id is not None:
                address = event.arg("object_id") if network.family is NetworkFamily.SOLANA else (
                    network.contract_address
                )
                await self._trade_write(
                    session,
                    trade.id,
                    lambda: trades.set_leg_escrow(trade.id, network.id, leg, onchain_id, address),
                )

        elif name == EscrowEventName.FUNDS_DEPOSITED:
            if escrow_db_id is not None:
                await escrows.advance_state(
                    escrow_db_id,
                    "deposit",
                    {"current_balance": usdc_from_raw(event.arg("amount")), **extra},
                )
            await self._advance_legs(session, network, trade, [leg], "deposit")

        elif name == EscrowEventName.FIAT_MARKED_PAID:
            if escrow_db_id is not None:
                await escrows.update_if_open(escrow_db_id, {"fiat_paid": True})
            await self._advance_legs(
                session, network, trade, [leg], "mark_fiat_paid", timestamp_column="fiat_paid_at"
            )

        elif name == EscrowEventName.ESCROW_RELEASED:
            if escrow_db_id is not None:
                await escrows.advance_state(
                    escrow_db_id,
                    "release",
                    {"current_balance": usdc_from_raw(0), "completed_at": now, **extra},
                )
            await self._advance_legs(
                session, network, trade, [leg], "release", timestamp_column="released_at"
            )
            await self._set_overall(session, trade, network, TradeStatus.COMPLETED)

        elif name == EscrowEventName.ESCROW_CANCELLED:
            attributed = False
            if escrow_db_id is not None:
                attributed = await self._attribute_cancellation(
                    session, network, event, escrow_db_id
                )
                await escrows.advance_state(
                    escrow_db_id,
                    "auto_cancel" if attributed else "cancel",
                    {"current_balance": usdc_from_raw(0), **extra},
                )
            # CANCELLED overall first: the deadline trigger lets cancelled trades through
            await self._set_overall(session, trade, network, TradeStatus.CANCELLED)
            await self._advance_legs(
                session, network, trade, [leg], "cancel", timestamp_column="cancelled_at"
            )

        elif name == EscrowEventName.DISPUTE_OPENED:
            if escrow_db_id is not None:
                await escrows.advance_state(escrow_db_id, "open_dispute")
            await self._advance_legs(session, network, trade, [1, 2], "open_dispute")
            await self._set_overall(session, trade, network, TradeStatus.DISPUTED)

        elif name in (
            EscrowEventName.DISPUTE_RESOLVED,
            EscrowEventName.DISPUTE_DEFAULT_JUDGMENT,
        ):
            if escrow_db_id is not None:
                await escrows.advance_state(
                    escrow_db_id,
                    "resolve",
                    {"current_balance": usdc_from_raw(0), "completed_at": now, **extra},
                )
            await self._advance_legs(session, network, trade, [1, 2], "resolve")
            await self._set_overall(session, trade, network, TradeStatus.COMPLETED)

        elif name == EscrowEventName.ESCROW_BALANCE_CHANGED:
            if escrow_db_id is not None:
                await escrows.update_if_open(
                    escrow_db_id, {"current_balance": usdc_from_raw(event.arg("new_balance"))}
                )

        elif name == EscrowEventName.SEQUENTIAL_ADDRESS_UPDATED:
            new_address = event.arg("new_address")
            if escrow_db_id is not None and new_address:
                await escrows.update_if_open(
                    escrow_db_id, {"sequential_escrow_address": new_address}
                )

    async def _advance_legs(
        self,
        session: AsyncSession,
        network: NetworkConfig,
        trade: Trade | None,
        legs: list[int | None],
        event_name: str,
        timestamp_column: str | None = None,
    ) -> None:
        if trade is None:
            return
        trades = TradeRepository(session)
        for leg in legs:
            if leg is None:
                continue
            values = {f"leg{leg}_{timestamp_column}": _now()} if timestamp_column else None
            await self._trade_write(
                session,
                trade.id,
                lambda leg=leg, values=values: trades.advance_leg(
                    trade.id, network.id, leg, event_name, values
                ),
            )

    async def _set_overall(
        self,
        session: AsyncSession,
        trade: Trade | None,
        network: NetworkConfig,
        status: TradeStatus,
    ) -> None:
        if trade is None:
            return
        trades = TradeRepository(session)
        await self._trade_write(
            session,
            trade.id,
            lambda: trades.set_overall_status(trade.id, network.id, status),
        )

    async def _trade_write(
        self,
        session: AsyncSession,
        trade_id: int,
        write: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Run a trades UPDATE, treating a deadline trigger rejection as a no-op.

        PostgreSQL aborts the whole transaction on a trigger error, so the write
        runs inside a SAVEPOINT there. SQLite's RAISE(ABORT) only undoes the
        failing statement.
        """
        savepoint = (
            session.begin_nested() if session.bind.dialect.name == "postgresql" else nullcontext()
        )
        try:
            async with savepoint:
                return await write()
        except DBAPIError as exc:
            if not is_deadline_violation(exc):
                raise
            logger.info(
                "reconciler.trade_write_rejected",
                trade_id=trade_id,
                detail=str(exc.orig),
            )
            return False

    # ------------------------------------------------------------------
    # Auto-cancel attribution
    # ------------------------------------------------------------------

    async def _attribute_cancellation(
        self,
        session: AsyncSession,
        network: NetworkConfig,
        event: DecodedEvent,
        escrow_db_id: int,
    ) -> bool:
        """Return True when the cancellation was performed by the auto-cancel path."""
        attempts = AutoCancellationRepository(session)
        attempt = await attempts.find_for_cancellation(escrow_db_id, network.id, event.tx_id)
        if attempt is not None:
            await attempts.mark(
                attempt.id, AutoCancelStatus.SUCCESS, transaction_hash=event.tx_id
            )
            logger.info(
                "reconciler.auto_cancel_confirmed",
                escrow_db_id=escrow_db_id,
                attempt_id=attempt.id,
                tx_id=event.tx_id,
            )
            return True

        canceller = event.arg("canceller")
        arbitrator = network.arbitrator_address
        if canceller and arbitrator and _same_address(network.family, canceller, arbitrator):
            await attempts.create(
                escrow_db_id,
                network.id,
                AutoCancelStatus.SUCCESS,
                transaction_hash=event.tx_id,
            )
            logger.info(
                "reconciler.auto_cancel_retro_linked",
                escrow_db_id=escrow_db_id,
                tx_id=event.tx_id,
            )
            return True
        return False
