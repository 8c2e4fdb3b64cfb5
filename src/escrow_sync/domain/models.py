"""Immutable value objects passed between chains, decoders and services.

Nothing in here touches the database or an RPC client; the ORM rows live in
infrastructure/database/orm_models.py.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from escrow_sync.domain.enums import NetworkFamily

USDC_DECIMALS = 6
_USDC_SCALE = Decimal(10) ** USDC_DECIMALS

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")


def to_snake_case(name: str) -> str:
    """Normalise an ABI/IDL field name: `sequentialEscrowAddress` -> `sequential_escrow_address`."""
    return _CAMEL_BOUNDARY.sub(r"_\1", name).lower()


def usdc_from_raw(raw: int | str | None) -> Decimal:
    """Convert a raw 6-decimal on-chain amount into a Decimal USDC value."""
    if raw is None or raw == "":
        return Decimal(0)
    return Decimal(int(raw)) / _USDC_SCALE


@dataclass(frozen=True)
class NetworkConfig:
    """A configured network, as loaded from the `networks` table."""

    id: int
    name: str
    family: NetworkFamily
    chain_id: int
    rpc_url: str
    ws_url: str | None = None
    contract_address: str | None = None
    program_id: str | None = None
    usdc_mint: str | None = None
    arbitrator_address: str | None = None
    block_explorer_url: str | None = None
    is_testnet: bool = True
    is_active: bool = True

    @property
    def onchain_address(self) -> str | None:
        """Contract address for EVM networks, program id for Solana."""
        if self.family is NetworkFamily.SOLANA:
            return self.program_id
        return self.contract_address


@dataclass(frozen=True)
class LogBatch:
    """Logs delivered by one subscription message.

    Solana delivers every log line of a transaction at once; EVM delivers
    one log per message, so `log_index` is part of its identity.
    """

    tx_id: str
    block_or_slot: int | None
    logs: tuple[Any, ...]
    log_index: int | None = None
    error: str | None = None

    @property
    def dedup_key(self) -> tuple[str, int | None] | tuple[str, int | None, int]:
        if self.log_index is None:
            return (self.tx_id, self.block_or_slot)
        return (self.tx_id, self.block_or_slot, self.log_index)


@dataclass(frozen=True)
class DecodedEvent:
    """A named on-chain event with its arguments normalised to snake_case.

    Attributes:
        name: Event name, e.g. "EscrowCreated".
        args: Decoded fields. Integers stay raw (no USDC scaling).
        tx_id: Transaction hash (EVM) or signature (Solana).
        block_or_slot: Block number (EVM) or slot (Solana).
        log_index: Position of the event inside its transaction.
        discriminator: Hex of the 8-byte Anchor discriminator, Solana only.
        degraded: True when only the discriminator could be matched.
        raw: Base64 payload the event was decoded from, Solana only.
    """

    name: str
    args: dict[str, Any]
    tx_id: str
    block_or_slot: int | None
    log_index: int = 0
    discriminator: str | None = None
    degraded: bool = False
    raw: str | None = None

    def arg(self, *names: str, default: Any = None) -> Any:
        """Return the first present, non-empty argument among `names`."""
        for name in names:
            value = self.args.get(name)
            if value is not None and value != "":
                return value
        return default

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "args": self.args,
            "tx_id": self.tx_id,
            "block_or_slot": self.block_or_slot,
            "log_index": self.log_index,
            "discriminator": self.discriminator,
            "degraded": self.degraded,
        }


@dataclass(frozen=True)
class DecodeResult:
    """Everything a decoder extracted from one log batch."""

    events: list[DecodedEvent] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class CancelTarget:
    """Escrow selected by the deadline monitor for on-chain cancellation."""

    escrow_db_id: int
    trade_id: int
    network_id: int
    onchain_escrow_id: str
    leg: int
    escrow_address: str | None = None
    escrow_token_account: str | None = None
    seller_address: str | None = None
    current_balance: Decimal | None = None


@dataclass(frozen=True)
class CancelSubmission:
    """Outcome of an on-chain auto-cancel submission."""

    tx_id: str
    success: bool
    block_or_slot: int | None = None
    gas_used: int | None = None
    gas_price: int | None = None
    error: str | None = None
