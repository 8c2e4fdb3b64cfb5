"""Runs one NetworkListener per active network.

Networks are started and stopped concurrently. A listener that fails to
start is logged and skipped; the others keep running.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from escrow_sync.listeners.network_listener import NetworkListener
from escrow_sync.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from escrow_sync.chains.network_registry import NetworkRegistry
    from escrow_sync.chains.registry import ChainAdapterRegistry
    from escrow_sync.config import Settings
    from escrow_sync.domain.models import NetworkConfig
    from escrow_sync.services.reconciler import Reconciler

logger = get_logger(__name__)


class MultiNetworkListener:
    """Supervisor for the per-network listeners.

    Usage:
        supervisor = MultiNetworkListener(networks, adapters, reconciler, settings)
        await supervisor.start_all()
        supervisor.statuses()
        await supervisor.stop_all()
    """

    def __init__(
        self,
        networks: NetworkRegistry,
        adapters: ChainAdapterRegistry,
        reconciler: Reconciler,
        settings: Settings,
        listener_factory: Callable[..., NetworkListener] = NetworkListener,
    ) -> None:
        self._networks = networks
        self._adapters = adapters
        self._reconciler = reconciler
        self._settings = settings
        self._listener_factory = listener_factory
        self.listeners: dict[int, NetworkListener] = {}

    def _build(self, network: NetworkConfig) -> NetworkListener:
        return self._listener_factory(network, self._adapters, self._reconciler, self._settings)

    async def start_all(self) -> dict[int, NetworkListener]:
        """Start a listener for every active network not already running."""
        networks = [n for n in await self._networks.get_active() if n.id not in self.listeners]
        candidates = [self._build(network) for network in networks]
        results = await asyncio.gather(
            *(listener.start() for listener in candidates), return_exceptions=True
        )
        for listener, result in zip(candidates, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "supervisor.listener_start_failed",
                    network=listener.network.name,
                    network_id=listener.network.id,
                    error=str(result),
                )
                continue
            self.listeners[listener.network.id] = listener
        logger.info(
            "supervisor.started",
            networks=len(self.listeners),
            states={lst.network.name: lst.state.value for lst in self.listeners.values()},
        )
        return self.listeners

    async def stop_all(self) -> None:
        listeners = list(self.listeners.values())
        results = await asyncio.gather(
            *(listener.stop() for listener in listeners), return_exceptions=True
        )
        for listener, result in zip(listeners, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "supervisor.listener_stop_failed",
                    network=listener.network.name,
                    error=str(result),
                )
        self.listeners.clear()
        logger.info("supervisor.stopped", networks=len(listeners))

    def statuses(self) -> list[dict[str, Any]]:
        return [listener.status() for listener in self.listeners.values()]
