"""Repository classes for database access.

Repositories encapsulate all SQL and provide a clean interface to the
service layer. They accept an AsyncSession and never manage their own
transactions (that's the caller's responsibility).

Every state-changing UPDATE here is guarded by the source states the domain
lattice allows for the event, and every lookup is scoped by network_id.
Upserts use the dialect's native INSERT ... ON CONFLICT so they behave the
same on PostgreSQL and SQLite.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, case, exists, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite

from escrow_sync.domain.enums import (
    AutoCancelStatus,
    EscrowState,
    LegState,
    NetworkFamily,
    TradeStatus,
)
from escrow_sync.domain.models import CancelTarget
from escrow_sync.domain.state_machine import (
    EscrowStateMachine,
    LegStateMachine,
    allowed_sources,
    transition_target,
)
from escrow_sync.infrastructure.database.orm_models import (
    ContractAutoCancellation,
    ContractEvent,
    Escrow,
    EscrowIdMapping,
    Network,
    Trade,
    Transaction,
)

if TYPE_CHECKING:
    from sqlalchemy import Table
    from sqlalchemy.ext.asyncio import AsyncSession


def _now() -> datetime:
    return datetime.now(UTC)


class _Repository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    def _insert(self, table: Table):  # noqa: ANN202
        """Dialect-specific INSERT supporting ON CONFLICT."""
        if self._session.bind.dialect.name == "postgresql":
            return postgresql.insert(table)
        return sqlite.insert(table)


# ---------------------------------------------------------------------------
# Networks
# ---------------------------------------------------------------------------
class NetworkRepository(_Repository):
    """Data access for network configuration rows."""

    async def list_all(self) -> list[Network]:
        result = await self._session.execute(select(Network).order_by(Network.id))
        return list(result.scalars().all())

    async def get_by_id(self, network_id: int) -> Network | None:
        return await self._session.get(Network, network_id)

    async def get_by_name(self, name: str) -> Network | None:
        result = await self._session.execute(select(Network).where(Network.name == name))
        return result.scalar_one_or_none()

    async def create(self, network: Network) -> Network:
        self._session.add(network)
        await self._session.flush()
        return network

    async def update(self, network_id: int, values: dict[str, Any]) -> Network | None:
        network = await self.get_by_id(network_id)
        if network is None:
            return None
        for key, value in values.items():
            setattr(network, key, value)
        await self._session.flush()
        return network


# ---------------------------------------------------------------------------
# Trades
# ---------------------------------------------------------------------------
class TradeRepository(_Repository):
    """Data access for trades and their per-leg columns."""

    async def get(self, trade_id: int, network_id: int) -> Trade | None:
        result = await self._session.execute(
            select(Trade).where(Trade.id == trade_id, Trade.network_id == network_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def leg_for_escrow(trade: Trade, onchain_escrow_id: str | None) -> int:
        """Pick the leg an on-chain escrow belongs to (defaults to leg 1)."""
        if onchain_escrow_id is not None:
            if trade.leg1_escrow_onchain_id == onchain_escrow_id:
                return 1
            if trade.leg2_escrow_onchain_id == onchain_escrow_id:
                return 2
            if trade.leg1_escrow_onchain_id is not None and trade.leg2_escrow_onchain_id is None:
                return 2 if trade.leg2_state is not None else 1
        return 1

    async def set_leg_escrow(
        self,
        trade_id: int,
        network_id: int,
        leg: int,
        onchain_escrow_id: str,
        escrow_address: str | None,
    ) -> None:
        """Fill the leg's escrow reference without overwriting an existing one."""
        onchain_col = getattr(Trade, f"leg{leg}_escrow_onchain_id")
        address_col = getattr(Trade, f"leg{leg}_escrow_address")
        await self._session.execute(
            update(Trade)
            .where(Trade.id == trade_id, Trade.network_id == network_id)
            .values(
                {
                    onchain_col: func.coalesce(onchain_col, onchain_escrow_id),
                    address_col: func.coalesce(address_col, escrow_address),
                    Trade.updated_at: _now(),
                }
            )
            .execution_options(synchronize_session=False)
        )

    async def advance_leg(
        self,
        trade_id: int,
        network_id: int,
        leg: int,
        event_name: str,
        values: dict[str, Any] | None = None,
    ) -> bool:
        """Move one leg forward; returns False when the guard matched no row."""
        state_col = getattr(Trade, f"leg{leg}_state")
        target = transition_target(LegStateMachine, event_name)
        result = await self._session.execute(
            update(Trade)
            .where(
                Trade.id == trade_id,
                Trade.network_id == network_id,
                state_col.in_(allowed_sources(LegStateMachine, event_name)),
            )
            .values({state_col.key: target, "updated_at": _now(), **(values or {})})
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def set_overall_status(
        self, trade_id: int, network_id: int, status: TradeStatus
    ) -> bool:
        """Advance overall_status; COMPLETED and CANCELLED are never left."""
        sources = [TradeStatus.IN_PROGRESS]
        if status is not TradeStatus.DISPUTED:
            sources.append(TradeStatus.DISPUTED)
        values: dict[str, Any] = {"overall_status": status.value, "updated_at": _now()}
        if status is TradeStatus.COMPLETED:
            values["completed_at"] = _now()
        elif status is TradeStatus.CANCELLED:
            values["cancelled_at"] = _now()
        result = await self._session.execute(
            update(Trade)
            .where(
                Trade.id == trade_id,
                Trade.network_id == network_id,
                Trade.overall_status.in_([s.value for s in sources]),
            )
            .values(values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def find_deadline_candidates(
        self, cutoff: datetime, limit: int
    ) -> list[CancelTarget]:
        """Escrows whose leg deadline passed while the leg is still CREATED/FUNDED.

        FIAT_PAID, DISPUTED and terminal legs never qualify. Escrows with a
        PENDING or SUCCESS auto-cancel attempt are skipped.
        """
        open_attempt = exists().where(
            ContractAutoCancellation.escrow_id == Escrow.id,
            ContractAutoCancellation.network_id == Escrow.network_id,
            ContractAutoCancellation.status.in_(
                [AutoCancelStatus.PENDING.value, AutoCancelStatus.SUCCESS.value]
            ),
        )
        targets: list[CancelTarget] = []
        for leg in (1, 2):
            if len(targets) >= limit:
                break
            state = getattr(Trade, f"leg{leg}_state")
            onchain = getattr(Trade, f"leg{leg}_escrow_onchain_id")
            deposit_deadline = getattr(Trade, f"leg{leg}_escrow_deposit_deadline")
            fiat_deadline = getattr(Trade, f"leg{leg}_fiat_payment_deadline")
            stmt = (
                select(Escrow)
                .join(
                    Trade,
                    and_(
                        Escrow.trade_id == Trade.id,
                        Escrow.network_id == Trade.network_id,
                        Escrow.onchain_escrow_id == onchain,
                    ),
                )
                .where(
                    Trade.overall_status == TradeStatus.IN_PROGRESS.value,
                    onchain.is_not(None),
                    or_(
                        and_(
                            deposit_deadline.is_not(None),
                            deposit_deadline <= cutoff,
                            state == LegState.CREATED.value,
                        ),
                        and_(
                            fiat_deadline.is_not(None),
                            fiat_deadline <= cutoff,
                            state.in_([LegState.CREATED.value, LegState.FUNDED.value]),
                        ),
                    ),
                    Escrow.state.in_([EscrowState.CREATED.value, EscrowState.FUNDED.value]),
                    ~open_attempt,
                )
                .order_by(Trade.id)
                .limit(limit - len(targets))
            )
            result = await self._session.execute(stmt)
            for escrow in result.scalars().all():
                targets.append(
                    CancelTarget(
                        escrow_db_id=escrow.id,
                        trade_id=escrow.trade_id,
                        network_id=escrow.network_id,
                        onchain_escrow_id=escrow.onchain_escrow_id,
                        leg=leg,
                        escrow_address=escrow.escrow_address,
                        escrow_token_account=escrow.escrow_token_account,
                        seller_address=escrow.seller_address,
                        current_balance=escrow.current_balance,
                    )
                )
        return targets


# ---------------------------------------------------------------------------
# Escrows
# ---------------------------------------------------------------------------
class EscrowRepository(_Repository):
    """Data access for escrow rows."""

    async def get(self, escrow_id: int) -> Escrow | None:
        return await self._session.get(Escrow, escrow_id)

    async def get_by_onchain_id(self, onchain_escrow_id: str, network_id: int) -> Escrow | None:
        result = await self._session.execute(
            select(Escrow).where(
                Escrow.onchain_escrow_id == onchain_escrow_id,
                Escrow.network_id == network_id,
            )
        )
        return result.scalar_one_or_none()

    async def latest_for_trade(
        self, trade_id: int, network_id: int, onchain_escrow_id: str | None
    ) -> Escrow | None:
        """Most recently created escrow of a trade that can own `onchain_escrow_id`."""
        result = await self._session.execute(
            select(Escrow)
            .where(
                Escrow.trade_id == trade_id,
                Escrow.network_id == network_id,
                or_(
                    Escrow.onchain_escrow_id.is_(None),
                    Escrow.onchain_escrow_id == onchain_escrow_id,
                ),
            )
            .order_by(Escrow.created_at.desc(), Escrow.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def backfill_onchain_id(self, escrow_id: int, onchain_escrow_id: str) -> None:
        await self._session.execute(
            update(Escrow)
            .where(Escrow.id == escrow_id, Escrow.onchain_escrow_id.is_(None))
            .values(onchain_escrow_id=onchain_escrow_id, updated_at=_now())
            .execution_options(synchronize_session=False)
        )

    async def insert_if_absent(self, values: dict[str, Any]) -> int:
        """Insert an escrow keyed by (onchain_escrow_id, network_id); return its id."""
        stmt = (
            self._insert(Escrow.__table__)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["onchain_escrow_id", "network_id"])
            .returning(Escrow.__table__.c.id)
        )
        escrow_id = (await self._session.execute(stmt)).scalar_one_or_none()
        if escrow_id is None:
            existing = await self.get_by_onchain_id(values["onchain_escrow_id"], values["network_id"])
            escrow_id = existing.id
        return escrow_id

    async def upsert_record(self, values: dict[str, Any]) -> int:
        """Insert or refresh an escrow's descriptive columns, never its state or trade."""
        table = Escrow.__table__
        stmt = self._insert(table).values(**values)
        fixed = {"onchain_escrow_id", "network_id", "trade_id", "state", "current_balance", "created_at"}
        descriptive = {key: stmt.excluded[key] for key in values if key not in fixed}
        descriptive["updated_at"] = _now()
        stmt = stmt.on_conflict_do_update(
            index_elements=["onchain_escrow_id", "network_id"],
            set_=descriptive,
        ).returning(table.c.id)
        return (await self._session.execute(stmt)).scalar_one()

    async def advance_state(
        self, escrow_id: int, event_name: str, values: dict[str, Any] | None = None
    ) -> bool:
        """Move an escrow forward; returns False when the guard matched no row."""
        result = await self._session.execute(
            update(Escrow)
            .where(
                Escrow.id == escrow_id,
                Escrow.state.in_(allowed_sources(EscrowStateMachine, event_name)),
            )
            .values(
                state=transition_target(EscrowStateMachine, event_name),
                updated_at=_now(),
                **(values or {}),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def update_if_open(self, escrow_id: int, values: dict[str, Any]) -> bool:
        """Update non-state columns of an escrow that is not terminal."""
        terminal = [
            EscrowState.RELEASED.value,
            EscrowState.RESOLVED.value,
            EscrowState.CANCELLED.value,
            EscrowState.AUTO_CANCELLED.value,
        ]
        result = await self._session.execute(
            update(Escrow)
            .where(Escrow.id == escrow_id, Escrow.state.not_in(terminal))
            .values(updated_at=_now(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Escrow id mapping
# ---------------------------------------------------------------------------
class EscrowIdMappingRepository(_Repository):
    """Chain-native escrow id <-> escrows.id, per network."""

    async def lookup(self, blockchain_id: str, network_id: int) -> int | None:
        result = await self._session.execute(
            select(EscrowIdMapping.database_id).where(
                EscrowIdMapping.blockchain_id == blockchain_id,
                EscrowIdMapping.network_id == network_id,
            )
        )
        return result.scalar_one_or_none()

    async def upsert(self, blockchain_id: str, network_id: int, database_id: int) -> None:
        stmt = self._insert(EscrowIdMapping.__table__).values(
            blockchain_id=blockchain_id,
            network_id=network_id,
            database_id=database_id,
            created_at=_now(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["blockchain_id", "network_id"],
            set_={"database_id": stmt.excluded.database_id},
        )
        await self._session.execute(stmt)


# ---------------------------------------------------------------------------
# Transactions ledger
# ---------------------------------------------------------------------------
def _prefer_new(new, old):  # noqa: ANN001, ANN202
    """Take the incoming value only when it is non-empty."""
    return case((func.coalesce(new, "") != "", new), else_=old)


class TransactionRepository(_Repository):
    """Idempotent upserts into the transactions ledger."""

    async def record(
        self,
        *,
        tx_id: str,
        network_id: int,
        network_family: NetworkFamily | str,
        status: str,
        type: str,  # noqa: A002
        block_or_slot: int | None = None,
        sender_address: str | None = None,
        receiver_address: str | None = None,
        gas_used: int | None = None,
        error_message: str | None = None,
        related_trade_id: int | None = None,
        related_escrow_db_id: int | None = None,
    ) -> int:
        """Upsert a ledger row keyed by (hash-or-signature, network_id).

        On conflict: status/type/error_message are overwritten, block/slot/gas
        keep the existing value when none is supplied, sender/receiver change
        only for non-empty values, and related ids are first-writer-wins.
        """
        family = NetworkFamily(network_family)
        is_solana = family is NetworkFamily.SOLANA
        table = Transaction.__table__
        now = _now()

        stmt = self._insert(table).values(
            transaction_hash=None if is_solana else tx_id,
            signature=tx_id if is_solana else None,
            status=str(status),
            type=str(type),
            block_number=None if is_solana else block_or_slot,
            slot=block_or_slot if is_solana else None,
            sender_address=sender_address,
            receiver_or_contract_address=receiver_address,
            gas_used=gas_used,
            error_message=error_message,
            related_trade_id=related_trade_id,
            related_escrow_db_id=related_escrow_db_id,
            network_id=network_id,
            network_family=family.value,
            created_at=now,
            updated_at=now,
        )
        excluded = stmt.excluded
        conflict_key = ["signature", "network_id"] if is_solana else ["transaction_hash", "network_id"]
        stmt = stmt.on_conflict_do_update(
            index_elements=conflict_key,
            set_={
                "status": excluded.status,
                "type": excluded.type,
                "block_number": func.coalesce(excluded.block_number, table.c.block_number),
                "slot": func.coalesce(excluded.slot, table.c.slot),
                "gas_used": func.coalesce(excluded.gas_used, table.c.gas_used),
                "sender_address": _prefer_new(excluded.sender_address, table.c.sender_address),
                "receiver_or_contract_address": _prefer_new(
                    excluded.receiver_or_contract_address,
                    table.c.receiver_or_contract_address,
                ),
                "error_message": excluded.error_message,
                "related_trade_id": func.coalesce(
                    table.c.related_trade_id, excluded.related_trade_id
                ),
                "related_escrow_db_id": func.coalesce(
                    table.c.related_escrow_db_id, excluded.related_escrow_db_id
                ),
                "updated_at": now,
            },
        ).returning(table.c.id)

        row_id = (await self._session.execute(stmt)).scalar_one_or_none()
        if row_id is None:
            key_col = table.c.signature if is_solana else table.c.transaction_hash
            row_id = (
                await self._session.execute(
                    select(table.c.id).where(key_col == tx_id, table.c.network_id == network_id)
                )
            ).scalar_one()
        return row_id

    async def link_escrow(self, transaction_id: int, escrow_db_id: int) -> None:
        """Set related_escrow_db_id unless an earlier writer already did."""
        await self._session.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.related_escrow_db_id.is_(None))
            .values(related_escrow_db_id=escrow_db_id, updated_at=_now())
            .execution_options(synchronize_session=False)
        )

    async def get(self, tx_id: str, network_id: int) -> Transaction | None:
        result = await self._session.execute(
            select(Transaction).where(
                or_(Transaction.transaction_hash == tx_id, Transaction.signature == tx_id),
                Transaction.network_id == network_id,
            )
        )
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Auto-cancellation attempts
# ---------------------------------------------------------------------------
class AutoCancellationRepository(_Repository):
    """Audit trail of auto-cancel attempts and balance checks."""

    async def create(
        self,
        escrow_id: int,
        network_id: int,
        status: AutoCancelStatus,
        transaction_hash: str | None = None,
        error_message: str | None = None,
    ) -> ContractAutoCancellation:
        attempt = ContractAutoCancellation(
            escrow_id=escrow_id,
            network_id=network_id,
            status=status.value,
            transaction_hash=transaction_hash,
            error_message=error_message,
        )
        self._session.add(attempt)
        await self._session.flush()
        return attempt

    async def mark(
        self,
        attempt_id: int,
        status: AutoCancelStatus,
        *,
        transaction_hash: str | None = None,
        gas_used: int | None = None,
        gas_price: int | None = None,
        error_message: str | None = None,
    ) -> None:
        values: dict[str, Any] = {"status": status.value}
        if transaction_hash is not None:
            values["transaction_hash"] = transaction_hash
        if gas_used is not None:
            values["gas_used"] = gas_used
        if gas_price is not None:
            values["gas_price"] = gas_price
        if error_message is not None:
            values["error_message"] = error_message
        await self._session.execute(
            update(ContractAutoCancellation)
            .where(ContractAutoCancellation.id == attempt_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    async def find_for_cancellation(
        self, escrow_id: int, network_id: int, tx_id: str
    ) -> ContractAutoCancellation | None:
        """Attempt matching this cancel tx, else the escrow's PENDING attempt."""
        base = select(ContractAutoCancellation).where(
            ContractAutoCancellation.escrow_id == escrow_id,
            ContractAutoCancellation.network_id == network_id,
        )
        result = await self._session.execute(
            base.where(ContractAutoCancellation.transaction_hash == tx_id).limit(1)
        )
        attempt = result.scalar_one_or_none()
        if attempt is not None:
            return attempt
        result = await self._session.execute(
            base.where(ContractAutoCancellation.status == AutoCancelStatus.PENDING.value)
            .order_by(ContractAutoCancellation.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_for_escrow(self, escrow_id: int, network_id: int) -> list[ContractAutoCancellation]:
        result = await self._session.execute(
            select(ContractAutoCancellation)
            .where(
                ContractAutoCancellation.escrow_id == escrow_id,
                ContractAutoCancellation.network_id == network_id,
            )
            .order_by(ContractAutoCancellation.id)
        )
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Contract events
# ---------------------------------------------------------------------------
class ContractEventRepository(_Repository):
    """Append-only decoded event log; duplicates are ignored."""

    async def record(
        self,
        *,
        network_id: int,
        event_name: str,
        tx_id: str,
        log_index: int,
        block_or_slot: int | None,
        args: dict,
        trade_id: int | None = None,
        transaction_id: int | None = None,
    ) -> None:
        stmt = (
            self._insert(ContractEvent.__table__)
            .values(
                network_id=network_id,
                event_name=event_name,
                block_number=block_or_slot,
                transaction_hash=tx_id,
                log_index=log_index,
                args=args,
                trade_id=trade_id,
                transaction_id=transaction_id,
                created_at=_now(),
            )
            .on_conflict_do_nothing(
                index_elements=["transaction_hash", "log_index", "network_id"]
            )
        )
        await self._session.execute(stmt)
