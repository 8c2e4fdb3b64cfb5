"""Event listener for a single network.

Lifecycle (domain/state_machine.py ListenerStateMachine):
    STOPPED -> STARTING -> MONITORING | DEGRADED -> STOPPED

Start resolves the chain adapter, checks that the contract/program exists
and builds the decoder. A network that cannot be monitored (missing address,
no websocket URL, program absent, startup check failure) goes DEGRADED: it counts as
running but never subscribes, and the other networks are unaffected.

While MONITORING two tasks run:
    - the subscription task reads LogBatches from the adapter, drops ones
      already seen and queues the rest; a dropped connection is reopened
      after `listener_reconnect_delay_seconds`.
    - the worker decodes each queued batch and hands it to the reconciler.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

from escrow_sync.domain.enums import ListenerState
from escrow_sync.domain.exceptions import EscrowSyncError
from escrow_sync.domain.state_machine import ListenerStateMachine
from escrow_sync.logging_config import get_logger

if TYPE_CHECKING:
    from escrow_sync.chains.base import ChainAdapter, EventDecoder
    from escrow_sync.chains.registry import ChainAdapterRegistry
    from escrow_sync.config import Settings
    from escrow_sync.domain.models import LogBatch, NetworkConfig
    from escrow_sync.services.reconciler import Reconciler

logger = get_logger(__name__)

_STOP = object()


class NetworkListener:
    """Subscribes to one network's escrow logs and feeds the reconciler.

    Usage:
        listener = NetworkListener(network, adapters, reconciler, settings)
        await listener.start()
        ...
        await listener.stop()
    """

    def __init__(
        self,
        network: NetworkConfig,
        adapters: ChainAdapterRegistry,
        reconciler: Reconciler,
        settings: Settings,
    ) -> None:
        self.network = network
        self._adapters = adapters
        self._reconciler = reconciler
        self._settings = settings
        self._machine = ListenerStateMachine()
        self._log = logger.bind(network=network.name, network_id=network.id)

        self._adapter: ChainAdapter | None = None
        self._decoder: EventDecoder | None = None
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._seen: set[tuple] = set()
        self._subscription_task: asyncio.Task | None = None
        self._worker_task: asyncio.Task | None = None
        self._stop_lock = asyncio.Lock()

        self.processed_batches = 0
        self.duplicate_batches = 0
        self.reconnects = 0
        self.detail: str | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ListenerState:
        return ListenerState(self._machine.status)

    @property
    def is_running(self) -> bool:
        return self.state in (ListenerState.MONITORING, ListenerState.DEGRADED)

    def status(self) -> dict[str, Any]:
        return {
            "network": self.network.name,
            "network_id": self.network.id,
            "family": self.network.family.value,
            "state": self.state.value,
            "processed_batches": self.processed_batches,
            "duplicate_batches": self.duplicate_batches,
            "detail": self.detail,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> ListenerState:
        """Start monitoring; returns the state reached (MONITORING or DEGRADED)."""
        if self.state is not ListenerState.STOPPED:
            return self.state
        self._machine.begin()
        self._log.info("listener.starting", family=self.network.family.value)

        if not self.network.onchain_address:
            return self._degrade("no contract address or program id configured")
        if not self.network.ws_url:
            return self._degrade("no websocket URL configured")

        try:
            self._adapter = self._adapters.get(self.network)
            exists = await asyncio.wait_for(
                self._adapter.program_exists(),
                timeout=self._settings.listener_startup_timeout_seconds,
            )
        except Exception as exc:
            reason = exc.message if isinstance(exc, EscrowSyncError) else str(exc) or type(exc).__name__
            return self._degrade(f"startup check failed: {reason}")
        if not exists:
            return self._degrade(f"{self.network.onchain_address} is not deployed")

        try:
            self._decoder = self._adapter.create_decoder()
        except EscrowSyncError as exc:
            return self._degrade(exc.message)

        self._worker_task = asyncio.create_task(
            self._worker(), name=f"listener-worker-{self.network.name}"
        )
        self._subscription_task = asyncio.create_task(
            self._subscribe_forever(), name=f"listener-subscription-{self.network.name}"
        )
        self._machine.monitor()
        self.detail = None
        self._log.info("listener.started", address=self.network.onchain_address)
        return self.state

    async def stop(self) -> None:
        """Unsubscribe, finish queued batches and reset. Safe to call twice or concurrently."""
        async with self._stop_lock:
            if self.state is ListenerState.STOPPED:
                return
            await self._shutdown()

    async def _shutdown(self) -> None:
        if self._subscription_task is not None:
            self._subscription_task.cancel()
            await asyncio.gather(self._subscription_task, return_exceptions=True)
            self._subscription_task = None

        if self._worker_task is not None:
            await self._queue.put(_STOP)
            await asyncio.gather(self._worker_task, return_exceptions=True)
            self._worker_task = None

        self._seen.clear()
        self._decoder = None
        self._adapter = None
        self._queue = asyncio.Queue()
        self._machine.halt()
        self._log.info(
            "listener.stopped",
            processed_batches=self.processed_batches,
            duplicate_batches=self.duplicate_batches,
        )

    def _degrade(self, reason: str) -> ListenerState:
        self._machine.degrade()
        self.detail = reason
        self._log.warning("listener.degraded", reason=reason)
        return self.state

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def accept(self, batch: LogBatch) -> bool:
        """Queue a batch unless it was already seen; returns True if queued."""
        key = batch.dedup_key
        if key in self._seen:
            self.duplicate_batches += 1
            self._log.debug("listener.duplicate_batch", tx_id=batch.tx_id)
            return False
        self._seen.add(key)
        self._queue.put_nowait(batch)
        return True

    async def handle(self, batch: LogBatch) -> int:
        """Decode one batch and reconcile it; returns the events applied."""
        result = self._decoder.decode(batch)
        for error in result.errors:
            self._log.warning("listener.decode_error", tx_id=batch.tx_id, error=error)
        applied = await self._reconciler.handle_batch(self.network, batch, result)
        self.processed_batches += 1
        return applied

    async def _subscribe_forever(self) -> None:
        delay = self._settings.listener_reconnect_delay_seconds
        while True:
            try:
                async for batch in self._adapter.subscribe():
                    self.accept(batch)
                self._log.warning("listener.subscription_closed")
            except Exception as exc:
                self._log.warning("listener.subscription_dropped", error=str(exc))
            self.reconnects += 1
            await asyncio.sleep(delay)
            self._log.info("listener.reconnecting", attempt=self.reconnects)

    async def _worker(self) -> None:
        while True:
            batch = await self._queue.get()
            try:
                if batch is _STOP:
                    return
                await self.handle(batch)
            except Exception as exc:
                self._log.error(
                    "listener.batch_failed",
                    tx_id=batch.tx_id,
                    error=str(exc),
                    exc_info=True,
                )
            finally:
                self._queue.task_done()
