"""Per-network event listeners and their supervisor."""

from escrow_sync.listeners.network_listener import NetworkListener
from escrow_sync.listeners.supervisor import MultiNetworkListener

__all__ = ["MultiNetworkListener", "NetworkListener"]
