"""Wires the long-lived components together.

One SyncRuntime per process owns the network registry cache, the adapter
registry, the reconciler, the listener supervisor, the deadline monitor and
the API-facing services. The FastAPI lifespan and the worker entry point
both build one and drive it with start()/stop().
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from escrow_sync.chains.network_registry import NetworkRegistry
from escrow_sync.chains.registry import ChainAdapterFactory, ChainAdapterRegistry
from escrow_sync.config import get_settings
from escrow_sync.infrastructure.database.engine import get_session_factory
from escrow_sync.listeners.supervisor import MultiNetworkListener
from escrow_sync.logging_config import get_logger
from escrow_sync.services.deadline_monitor import DeadlineMonitor
from escrow_sync.services.escrow_intake import EscrowIntakeService
from escrow_sync.services.escrow_reads import EscrowReadService
from escrow_sync.services.reconciler import Reconciler

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_sync.chains.base import ChainAdapter
    from escrow_sync.config import Settings
    from escrow_sync.domain.models import NetworkConfig

logger = get_logger(__name__)


class SyncRuntime:
    """Owns every component with process lifetime."""

    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        adapter_factory: Callable[[NetworkConfig, Settings], ChainAdapter] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory or get_session_factory()

        self.networks = NetworkRegistry(self.session_factory, self.settings)
        self.adapters = ChainAdapterRegistry(
            self.settings, factory=adapter_factory or ChainAdapterFactory.create
        )
        self.reconciler = Reconciler(self.session_factory)
        self.supervisor = MultiNetworkListener(
            self.networks, self.adapters, self.reconciler, self.settings
        )
        self.monitor = DeadlineMonitor(
            self.session_factory, self.networks, self.adapters, self.settings
        )
        self.intake = EscrowIntakeService(self.session_factory, self.networks, self.adapters)
        self.reads = EscrowReadService(self.session_factory, self.networks, self.adapters)
        self.started = False

    async def start(self) -> None:
        """Start listeners for every active network, then the monitor."""
        if self.started:
            return
        logger.info("runtime.starting", env=self.settings.app_env)
        await self.supervisor.start_all()
        self.monitor.start()
        self.started = True
        logger.info("runtime.started", listeners=len(self.supervisor.listeners))

    async def stop(self) -> None:
        """Stop the monitor and listeners, then release chain clients."""
        if self.started:
            self.monitor.shutdown()
            await self.supervisor.stop_all()
            self.started = False
        await self.adapters.aclose()
        logger.info("runtime.stopped")
