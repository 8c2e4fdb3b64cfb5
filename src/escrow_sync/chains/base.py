"""Chain Adapter Protocol.

Defines the interface every chain family implements. Call sites never branch
on EVM vs Solana: the adapter is picked once per network by the factory in
chains/registry.py and everything downstream talks to this shape.

This is a Protocol (structural subtyping) so test doubles only need to match
the methods they are exercised through.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from decimal import Decimal

    from escrow_sync.domain.enums import NetworkFamily
    from escrow_sync.domain.models import (
        CancelSubmission,
        CancelTarget,
        DecodeResult,
        LogBatch,
        NetworkConfig,
    )


@runtime_checkable
class EventDecoder(Protocol):
    """Turns one raw log batch into named events."""

    def decode(self, batch: LogBatch) -> DecodeResult:
        """Decode a batch. Must never raise on malformed input."""


@runtime_checkable
class ChainAdapter(Protocol):
    """Per-family capabilities used by listeners, the monitor and the API.

    Concrete implementations:
        - chains/evm.py     (web3.py / eth_abi)
        - chains/solana.py  (solana-py / solders / anchorpy)
    """

    network: NetworkConfig
    family: NetworkFamily

    # --- Validation & formatting ---
    def validate_address(self, address: str) -> bool: ...

    def validate_transaction_hash(self, tx_id: str) -> bool: ...

    def get_block_explorer_url(self, tx_id: str) -> str: ...

    # --- Diagnostics ---
    async def get_network_info(self) -> dict[str, Any]: ...

    async def program_exists(self) -> bool:
        """Check whether the configured contract / program is deployed."""

    # --- Event ingestion ---
    def create_decoder(self) -> EventDecoder: ...

    def subscribe(self) -> AsyncIterator[LogBatch]:
        """Open a live log subscription; yields until cancelled or dropped."""

    # --- Read-only escrow calls ---
    async def get_stored_balance(self, target: CancelTarget) -> Decimal: ...

    async def get_calculated_balance(self, target: CancelTarget) -> Decimal: ...

    async def get_sequential_info(self, target: CancelTarget) -> dict[str, Any]: ...

    async def is_eligible_for_auto_cancel(self, target: CancelTarget) -> bool: ...

    # --- Auto-cancellation (the only signed write) ---
    async def submit_auto_cancel(self, target: CancelTarget) -> CancelSubmission: ...

    async def aclose(self) -> None: ...
