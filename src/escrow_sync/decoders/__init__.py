"""Event decoders: Solana (Anchor IDL + Borsh fallback) and EVM (ABI)."""

from escrow_sync.decoders.evm import EvmEventDecoder, load_abi
from escrow_sync.decoders.solana import SolanaEventDecoder
from escrow_sync.decoders.solana_layouts import (
    EVENT_DISCRIMINATORS,
    EventLayoutRegistry,
)

__all__ = [
    "EVENT_DISCRIMINATORS",
    "EventLayoutRegistry",
    "EvmEventDecoder",
    "SolanaEventDecoder",
    "load_abi",
]
