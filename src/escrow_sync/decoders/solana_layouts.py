"""Anchor event discriminators and Borsh layouts for the escrow program.

The discriminator table is static, but each event can carry several layout
versions: a program upgrade may append fields without changing the 8-byte
discriminator. Decoding tries versions newest first and prefers one that
consumes the payload exactly; failing that, the newest version that parses
at all wins (trailing bytes from a newer program are tolerated).

Every layout starts with the same 48-byte prefix:
    discriminator (8) | object_id pubkey (32) | escrow_id u64 (8)
and, except for SequentialAddressUpdated, is followed by trade_id u64.
"""

from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from borsh_construct import I64, U64, Bool, CStruct, Option, String
from construct import Bytes
from solders.pubkey import Pubkey

from escrow_sync.domain.enums import EscrowEventName
from escrow_sync.domain.exceptions import DecodeError

if TYPE_CHECKING:
    from construct import Construct

DISCRIMINATOR_SIZE = 8
TRADE_ID_OFFSET = 48
_MAX_PLAUSIBLE_TRADE_ID = 2_147_483_647

PublicKey = Bytes(32)

EVENT_DISCRIMINATORS: dict[EscrowEventName, bytes] = {
    EscrowEventName.ESCROW_CREATED: bytes([70, 127, 105, 102, 92, 97, 7, 173]),
    EscrowEventName.FIAT_MARKED_PAID: bytes([38, 159, 7, 17, 32, 79, 143, 184]),
    EscrowEventName.ESCROW_RELEASED: bytes([131, 7, 138, 104, 166, 190, 113, 112]),
    EscrowEventName.ESCROW_CANCELLED: bytes([98, 241, 195, 122, 213, 0, 162, 161]),
    EscrowEventName.FUNDS_DEPOSITED: bytes([157, 209, 100, 95, 59, 100, 3, 68]),
    EscrowEventName.DISPUTE_OPENED: bytes([239, 222, 102, 235, 193, 85, 1, 214]),
    EscrowEventName.DISPUTE_RESPONSE_SUBMITTED: bytes([22, 179, 0, 219, 181, 109, 45, 5]),
    EscrowEventName.DISPUTE_RESOLVED: bytes([121, 64, 249, 153, 139, 128, 236, 187]),
    EscrowEventName.DISPUTE_DEFAULT_JUDGMENT: bytes([194, 12, 130, 224, 60, 204, 39, 194]),
    EscrowEventName.ESCROW_BALANCE_CHANGED: bytes([169, 241, 33, 44, 253, 206, 89, 168]),
    EscrowEventName.SEQUENTIAL_ADDRESS_UPDATED: bytes([205, 6, 123, 144, 102, 253, 81, 133]),
}

# --- Version 1 layouts (fields after the discriminator) ---

_V1_LAYOUTS: dict[EscrowEventName, Construct] = {
    EscrowEventName.ESCROW_CREATED: CStruct(
        "object_id" / PublicKey,
        "escrow_id" / U64,
        "trade_id" / U64,
        "seller" / PublicKey,
        "buyer" / PublicKey,
        "arbitrator" / PublicKey,
        "amount" / U64,
        "fee" / U64,
        "deposit_deadline" / I64,
        "fiat_deadline" / I64,
        "sequential" / Bool,
        "sequential_escrow_address" / Option(PublicKey),
        "timestamp" / I64,
    ),
    EscrowEventName.FUNDS_DEPOSITED: CStruct(
        "object_id" / PublicKey,
        "escrow_id" / U64,
        "trade_id" / U64,
        "amount" / U64,
        "fee" / U64,
        "counter" / U64,
        "timestamp" / I64,
    ),
    EscrowEventName.FIAT_MARKED_PAID: CStruct(
        "object_id" / PublicKey,
        "escrow_id" / U64,
        "trade_id" / U64,
        "timestamp" / I64,
    ),
    EscrowEventName.ESCROW_RELEASED: CStruct(
        "object_id" / PublicKey,
        "escrow_id" / U64,
        "trade_id" / U64,
        "buyer" / PublicKey,
        "amount" / U64,
        "fee" / U64,
        "counter" / U64,
        "timestamp" / I64,
        "destination" / PublicKey,
    ),
    EscrowEventName.ESCROW_CANCELLED: CStruct(
        "object_id" / PublicKey,
        "escrow_id" / U64,
        "trade_id" / U64,
        "seller" / PublicKey,
        "amount" / U64,
        "fee" / U64,
        "counter" / U64,
        "timestamp" / I64,
    ),
    EscrowEventName.DISPUTE_OPENED: CStruct(
        "object_id" / PublicKey,
        "escrow_id" / U64,
        "trade_id" / U64,
        "disputing_party" / PublicKey,
        "timestamp" / I64,
        "bond_amount" / U64,
    ),
    EscrowEventName.DISPUTE_RESPONSE_SUBMITTED: CStruct(
        "object_id" / PublicKey,
        "escrow_id" / U64,
        "trade_id" / U64,
        "responding_party" / PublicKey,
        "timestamp" / I64,
        "bond_amount" / U64,
    ),
    EscrowEventName.DISPUTE_RESOLVED: CStruct(
        "object_id" / PublicKey,
        "escrow_id" / U64,
        "trade_id" / U64,
        "decision" / Bool,
        "fee" / U64,
        "counter" / U64,
        "timestamp" / I64,
        "winner" / PublicKey,
    ),
    EscrowEventName.DISPUTE_DEFAULT_JUDGMENT: CStruct(
        "object_id" / PublicKey,
        "escrow_id" / U64,
        "trade_id" / U64,
        "defaulting_party" / PublicKey,
        "decision" / Bool,
        "timestamp" / I64,
    ),
    EscrowEventName.ESCROW_BALANCE_CHANGED: CStruct(
        "object_id" / PublicKey,
        "escrow_id" / U64,
        "trade_id" / U64,
        "new_balance" / U64,
        "reason" / String,
        "timestamp" / I64,
    ),
    EscrowEventName.SEQUENTIAL_ADDRESS_UPDATED: CStruct(
        "object_id" / PublicKey,
        "escrow_id" / U64,
        "old_address" / Option(PublicKey),
        "new_address" / PublicKey,
        "timestamp" / I64,
    ),
}


@dataclass
class EventSchema:
    """All known layouts for one discriminator, keyed by version."""

    name: str
    discriminator: bytes
    layouts: dict[int, Construct] = field(default_factory=dict)

    def newest_first(self) -> list[tuple[int, Construct]]:
        return sorted(self.layouts.items(), key=lambda item: item[0], reverse=True)


def _plain(value: Any) -> Any:
    """Convert construct output into JSON-friendly Python values."""
    if isinstance(value, bytes) and len(value) == 32:
        return str(Pubkey.from_bytes(value))
    if isinstance(value, bytes):
        return value.hex()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items() if not str(k).startswith("_")}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


class EventLayoutRegistry:
    """Discriminator -> versioned Borsh layouts.

    Usage:
        registry = EventLayoutRegistry.default()
        registry.register("EscrowCreated", disc, new_layout, version=2)
        name, fields = registry.decode(payload)
    """

    def __init__(self) -> None:
        self._schemas: dict[bytes, EventSchema] = {}

    @classmethod
    def default(cls) -> EventLayoutRegistry:
        registry = cls()
        for name, discriminator in EVENT_DISCRIMINATORS.items():
            registry.register(name.value, discriminator, _V1_LAYOUTS[name], version=1)
        return registry

    def register(
        self, name: str, discriminator: bytes, layout: Construct, version: int = 1
    ) -> None:
        if len(discriminator) != DISCRIMINATOR_SIZE:
            raise ValueError(f"Discriminator for {name} must be {DISCRIMINATOR_SIZE} bytes")
        schema = self._schemas.get(discriminator)
        if schema is None:
            schema = EventSchema(name=name, discriminator=discriminator)
            self._schemas[discriminator] = schema
        elif schema.name != name:
            raise ValueError(
                f"Discriminator {discriminator.hex()} already belongs to {schema.name}"
            )
        schema.layouts[version] = layout

    def encode(self, name: str, fields: dict[str, Any], version: int | None = None) -> bytes:
        """Build a full payload (discriminator + Borsh body) for a named event.

        Pubkey fields take 32 raw bytes. Defaults to the newest layout.
        """
        for schema in self._schemas.values():
            if schema.name != name:
                continue
            layout = schema.layouts[version] if version is not None else schema.newest_first()[0][1]
            return schema.discriminator + layout.build(fields)
        raise KeyError(f"No layout registered for {name}")

    def name_for(self, payload: bytes) -> str | None:
        schema = self._schemas.get(payload[:DISCRIMINATOR_SIZE])
        return schema.name if schema else None

    def decode(self, payload: bytes) -> tuple[str, dict[str, Any]]:
        """Decode a full event payload (discriminator included).

        Raises:
            DecodeError: Unknown discriminator, or no layout version parses.
        """
        discriminator = payload[:DISCRIMINATOR_SIZE]
        schema = self._schemas.get(discriminator)
        if schema is None:
            raise DecodeError("unknown discriminator", discriminator=discriminator.hex())

        body = payload[DISCRIMINATOR_SIZE:]
        fallback: dict[str, Any] | None = None
        last_error: Exception | None = None
        for _version, layout in schema.newest_first():
            stream = io.BytesIO(body)
            try:
                parsed = layout.parse_stream(stream)
            except Exception as exc:
                last_error = exc
                continue
            fields = _plain(dict(parsed))
            if stream.tell() == len(body):
                return schema.name, fields
            if fallback is None:
                fallback = fields
        if fallback is not None:
            return schema.name, fallback
        raise DecodeError(
            f"{schema.name} payload did not match any layout: {last_error}",
            discriminator=discriminator.hex(),
        )


def extract_trade_id(payload: bytes) -> int | None:
    """Best-effort trade id from the fixed prefix of a raw event payload."""
    end = TRADE_ID_OFFSET + 8
    if len(payload) < end:
        return None
    trade_id = int.from_bytes(payload[TRADE_ID_OFFSET:end], "little")
    if 0 < trade_id <= _MAX_PLAUSIBLE_TRADE_ID:
        return trade_id
    return None
