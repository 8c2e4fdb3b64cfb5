"""Chain layer: network registry, per-family adapters and the adapter registry."""

from escrow_sync.chains.base import ChainAdapter, EventDecoder
from escrow_sync.chains.network_registry import NetworkRegistry
from escrow_sync.chains.registry import ChainAdapterFactory, ChainAdapterRegistry

__all__ = [
    "ChainAdapter",
    "ChainAdapterFactory",
    "ChainAdapterRegistry",
    "EventDecoder",
    "NetworkRegistry",
]
