"""Chain adapter factory and per-network adapter registry.

The factory picks the adapter class by network family; the registry owns one
adapter per network id so RPC clients are shared by the listener, the
monitor and the API, and are closed together on shutdown.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from escrow_sync.chains.evm import EvmAdapter
from escrow_sync.chains.solana import SolanaAdapter
from escrow_sync.domain.enums import NetworkFamily
from escrow_sync.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from escrow_sync.chains.base import ChainAdapter
    from escrow_sync.config import Settings
    from escrow_sync.domain.models import NetworkConfig

logger = get_logger(__name__)


class ChainAdapterFactory:
    """Creates the adapter matching a network's family.

    Usage:
        adapter = ChainAdapterFactory.create(network, settings)
        url = adapter.get_block_explorer_url(tx_id)
    """

    _registry: dict[str, type] = {
        NetworkFamily.EVM.value: EvmAdapter,
        NetworkFamily.SOLANA.value: SolanaAdapter,
    }

    @classmethod
    def create(cls, network: NetworkConfig, settings: Settings) -> ChainAdapter:
        """Create an adapter for `network`.

        Raises:
            ValueError: If the network family has no adapter.
        """
        adapter_class = cls._registry.get(str(network.family))
        if adapter_class is None:
            raise ValueError(
                f"Unknown network family: '{network.family}'. "
                f"Valid families: {list(cls._registry.keys())}"
            )
        return adapter_class(network, settings)

    @classmethod
    def get_supported_families(cls) -> list[str]:
        return list(cls._registry.keys())


class ChainAdapterRegistry:
    """One lazily created adapter per network id."""

    def __init__(
        self,
        settings: Settings,
        factory: Callable[[NetworkConfig, Settings], ChainAdapter] = ChainAdapterFactory.create,
    ) -> None:
        self._settings = settings
        self._factory = factory
        self._adapters: dict[int, ChainAdapter] = {}
        # Adapters replaced after a config change, closed on aclose()
        self._retired: list[ChainAdapter] = []

    def get(self, network: NetworkConfig) -> ChainAdapter:
        """Return the adapter for `network`, rebuilding it if the config changed."""
        adapter = self._adapters.get(network.id)
        if adapter is None or adapter.network != network:
            if adapter is not None:
                self._retired.append(adapter)
            adapter = self._factory(network, self._settings)
            self._adapters[network.id] = adapter
            logger.debug("chain_adapters.created", network=network.name, family=str(network.family))
        return adapter

    def invalidate(self, network_id: int) -> ChainAdapter | None:
        """Forget a network's adapter; the caller closes the returned one."""
        return self._adapters.pop(network_id, None)

    def clear(self) -> None:
        self._retired.extend(self._adapters.values())
        self._adapters.clear()

    async def aclose(self) -> None:
        adapters = [*self._retired, *self._adapters.values()]
        self._retired.clear()
        self._adapters.clear()
        for adapter in adapters:
            try:
                await adapter.aclose()
            except Exception as exc:
                logger.warning(
                    "chain_adapters.close_failed",
                    network=adapter.network.name,
                    error=str(exc),
                )
