"""Read-only escrow queries answered by the chain, not the ledger.

The ledger row is only used to locate the escrow (token account, PDA); the
numbers come straight from the adapter.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from escrow_sync.domain.exceptions import EscrowNotFoundError
from escrow_sync.domain.models import CancelTarget
from escrow_sync.infrastructure.database.repositories import (
    EscrowIdMappingRepository,
    EscrowRepository,
    TradeRepository,
)

if TYPE_CHECKING:
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_sync.chains.base import ChainAdapter
    from escrow_sync.chains.network_registry import NetworkRegistry
    from escrow_sync.chains.registry import ChainAdapterRegistry
    from escrow_sync.domain.models import NetworkConfig
    from escrow_sync.infrastructure.database.orm_models import Escrow


class EscrowReadService:
    """Stored/calculated balance, sequential info and auto-cancel eligibility."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        networks: NetworkRegistry,
        adapters: ChainAdapterRegistry,
    ) -> None:
        self._session_factory = session_factory
        self._networks = networks
        self._adapters = adapters

    async def resolve(
        self, onchain_escrow_id: str, network_id: int | None
    ) -> tuple[NetworkConfig, ChainAdapter, CancelTarget]:
        """Locate an escrow on an active network (the default one when omitted).

        Raises:
            NetworkNotFoundError / NetworkInactiveError: Bad network id.
            EscrowNotFoundError: The ledger has no such escrow on that network.
        """
        if network_id is None:
            network = await self._networks.get_default()
        else:
            network = await self._networks.validate(network_id)
        async with self._session_factory() as session:
            escrows = EscrowRepository(session)
            database_id = await EscrowIdMappingRepository(session).lookup(
                onchain_escrow_id, network.id
            )
            escrow = await escrows.get(database_id) if database_id is not None else None
            if escrow is None or escrow.network_id != network.id:
                escrow = await escrows.get_by_onchain_id(onchain_escrow_id, network.id)
            if escrow is None:
                raise EscrowNotFoundError(onchain_escrow_id, network.id)
            trade = await TradeRepository(session).get(escrow.trade_id, network.id)
            leg = TradeRepository.leg_for_escrow(trade, onchain_escrow_id) if trade else 1
            target = CancelTarget(
                escrow_db_id=escrow.id,
                trade_id=escrow.trade_id,
                network_id=network.id,
                onchain_escrow_id=onchain_escrow_id,
                leg=leg,
                escrow_address=escrow.escrow_pda or escrow.escrow_address,
                escrow_token_account=escrow.escrow_token_account,
                seller_address=escrow.seller_address,
                current_balance=escrow.current_balance,
            )
        return network, self._adapters.get(network), target

    async def ledger_escrow(self, onchain_escrow_id: str, network_id: int | None) -> Escrow:
        """The escrow row itself, as the ledger currently has it."""
        _, _, target = await self.resolve(onchain_escrow_id, network_id)
        async with self._session_factory() as session:
            escrow = await EscrowRepository(session).get(target.escrow_db_id)
        if escrow is None:
            raise EscrowNotFoundError(onchain_escrow_id, target.network_id)
        return escrow

    async def stored_balance(
        self, onchain_escrow_id: str, network_id: int | None
    ) -> tuple[str, Decimal]:
        network, adapter, target = await self.resolve(onchain_escrow_id, network_id)
        return network.name, await adapter.get_stored_balance(target)

    async def calculated_balance(
        self, onchain_escrow_id: str, network_id: int | None
    ) -> tuple[str, Decimal]:
        network, adapter, target = await self.resolve(onchain_escrow_id, network_id)
        return network.name, await adapter.get_calculated_balance(target)

    async def sequential_info(
        self, onchain_escrow_id: str, network_id: int | None
    ) -> tuple[str, dict[str, Any]]:
        network, adapter, target = await self.resolve(onchain_escrow_id, network_id)
        return network.name, await adapter.get_sequential_info(target)

    async def auto_cancel_eligible(
        self, onchain_escrow_id: str, network_id: int | None
    ) -> tuple[str, bool]:
        network, adapter, target = await self.resolve(onchain_escrow_id, network_id)
        return network.name, await adapter.is_eligible_for_auto_cancel(target)
