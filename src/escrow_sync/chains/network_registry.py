"""Network Registry: cached access to the `networks` table.

Every other component asks the registry for a `NetworkConfig` instead of
reading the table. The whole table is loaded at once and kept for a TTL
(5 minutes by default), indexed by id and by name; `invalidate()` forces
a reload on the next access and is called by every write path.

Lookups that fail raise NetworkNotFoundError / NetworkInactiveError. Those
are configuration errors: callers must not retry them.

Usage:
    registry = NetworkRegistry(session_factory, settings)
    network = await registry.validate(3)
    for network in await registry.get_active():
        ...
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any

from escrow_sync.domain.enums import NetworkFamily
from escrow_sync.domain.exceptions import (
    NetworkInactiveError,
    NetworkNotFoundError,
)
from escrow_sync.domain.models import NetworkConfig
from escrow_sync.infrastructure.database.orm_models import Network
from escrow_sync.infrastructure.database.repositories import NetworkRepository
from escrow_sync.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_sync.config import Settings

logger = get_logger(__name__)


def network_config_from_row(row: Network) -> NetworkConfig:
    return NetworkConfig(
        id=row.id,
        name=row.name,
        family=NetworkFamily(row.network_family),
        chain_id=row.chain_id,
        rpc_url=row.rpc_url,
        ws_url=row.ws_url,
        contract_address=row.contract_address,
        program_id=row.program_id,
        usdc_mint=row.usdc_mint,
        arbitrator_address=row.arbitrator_address,
        block_explorer_url=row.block_explorer_url,
        is_testnet=row.is_testnet,
        is_active=row.is_active,
    )


class NetworkRegistry:
    """TTL cache over the networks table, owned by one long-lived runtime."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._ttl = settings.network_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._by_id: dict[int, NetworkConfig] = {}
        self._by_name: dict[str, NetworkConfig] = {}
        self._loaded_at: float | None = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _is_fresh(self) -> bool:
        return self._loaded_at is not None and self._clock() - self._loaded_at < self._ttl

    async def _ensure_loaded(self) -> None:
        if self._is_fresh():
            return
        async with self._lock:
            if self._is_fresh():
                return
            async with self._session_factory() as session:
                rows = await NetworkRepository(session).list_all()
            configs = [network_config_from_row(row) for row in rows]
            self._by_id = {c.id: c for c in configs}
            self._by_name = {c.name: c for c in configs}
            self._loaded_at = self._clock()
            logger.debug("network_registry.loaded", count=len(configs))

    def invalidate(self) -> None:
        """Drop the cache; the next lookup reloads from the database."""
        self._loaded_at = None
        self._by_id = {}
        self._by_name = {}
        logger.debug("network_registry.invalidated")

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_by_id(self, network_id: int) -> NetworkConfig:
        await self._ensure_loaded()
        network = self._by_id.get(network_id)
        if network is None:
            raise NetworkNotFoundError(network_id)
        return network

    async def get_by_name(self, name: str) -> NetworkConfig:
        await self._ensure_loaded()
        network = self._by_name.get(name)
        if network is None:
            raise NetworkNotFoundError(name)
        return network

    async def get_active(self) -> list[NetworkConfig]:
        await self._ensure_loaded()
        return [n for n in self._by_id.values() if n.is_active]

    async def get_by_family(self, family: NetworkFamily) -> list[NetworkConfig]:
        await self._ensure_loaded()
        return [n for n in self._by_id.values() if n.is_active and n.family is family]

    async def get_default(self) -> NetworkConfig:
        """Mainnet default in production, testnet default everywhere else."""
        network = await self.get_by_name(self._settings.default_network_name)
        if not network.is_active:
            raise NetworkInactiveError(network.name)
        return network

    async def validate(self, network_id: int) -> NetworkConfig:
        """Return an active network or raise a configuration error."""
        network = await self.get_by_id(network_id)
        if not network.is_active:
            raise NetworkInactiveError(network.name)
        return network

    # ------------------------------------------------------------------
    # Writes (each one invalidates the cache)
    # ------------------------------------------------------------------

    async def create(self, **values: Any) -> NetworkConfig:
        if isinstance(values.get("network_family"), NetworkFamily):
            values["network_family"] = values["network_family"].value
        async with self._session_factory() as session:
            row = await NetworkRepository(session).create(Network(**values))
            await session.commit()
            config = network_config_from_row(row)
        self.invalidate()
        logger.info("network_registry.created", network=config.name, network_id=config.id)
        return config

    async def update(self, network_id: int, **values: Any) -> NetworkConfig:
        async with self._session_factory() as session:
            row = await NetworkRepository(session).update(network_id, values)
            if row is None:
                raise NetworkNotFoundError(network_id)
            await session.commit()
            config = network_config_from_row(row)
        self.invalidate()
        logger.info("network_registry.updated", network_id=network_id, fields=sorted(values))
        return config

    async def deactivate(self, network_id: int) -> NetworkConfig:
        return await self.update(network_id, is_active=False)
