"""EVM escrow event decoder.

Maps topic0 (keccak of the canonical event signature) to the event's ABI
entry, then decodes indexed inputs from topics[1:] and the rest from the
data field with eth_abi. Logs from any other address are ignored.

Output conventions:
    - argument names are snake_case (`escrowId` -> `escrow_id`)
    - uint256/int256 become decimal strings, keeping args JSON-safe
    - addresses are checksummed, bytes become 0x-prefixed hex
    - amounts stay raw (no 6-decimal scaling here)
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from eth_abi import decode as abi_decode
from eth_utils import keccak, to_checksum_address
from hexbytes import HexBytes

from escrow_sync.domain.models import (
    DecodedEvent,
    DecodeResult,
    LogBatch,
    to_snake_case,
)
from escrow_sync.logging_config import get_logger

logger = get_logger(__name__)

_BIG_INT_TYPES = frozenset({"uint256", "int256"})


def load_abi(path: str | Path) -> list[dict[str, Any]]:
    """Read a contract ABI from a JSON file."""
    return json.loads(Path(path).read_text(encoding="utf-8"))


def event_signature(event_abi: dict[str, Any]) -> str:
    types = ",".join(inp["type"] for inp in event_abi["inputs"])
    return f"{event_abi['name']}({types})"


def event_topic(event_abi: dict[str, Any]) -> str:
    """0x-prefixed lowercase topic0 for an event ABI entry."""
    return "0x" + keccak(text=event_signature(event_abi)).hex()


def _to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, str)):
        return bytes(HexBytes(value))
    raise TypeError(f"Cannot interpret {type(value).__name__} as bytes")


def to_hex(value: Any) -> str:
    """Normalise a hash-like value (HexBytes, bytes, str) to 0x-prefixed hex."""
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return "0x" + _to_bytes(value).hex()


def _normalize(abi_type: str, value: Any) -> Any:
    if abi_type in _BIG_INT_TYPES:
        return str(value)
    if abi_type == "address":
        return to_checksum_address(value)
    if abi_type.startswith("bytes"):
        return "0x" + bytes(value).hex()
    return value


class EvmEventDecoder:
    """Decodes logs emitted by one escrow contract.

    Usage:
        decoder = EvmEventDecoder(network.contract_address, load_abi(settings.evm_abi_path))
        result = decoder.decode(batch)
    """

    def __init__(self, contract_address: str, abi: list[dict[str, Any]]) -> None:
        self._contract_address = contract_address.lower()
        self._events_by_topic: dict[str, dict[str, Any]] = {
            event_topic(entry): entry
            for entry in abi
            if entry.get("type") == "event" and not entry.get("anonymous", False)
        }

    @property
    def known_topics(self) -> list[str]:
        return list(self._events_by_topic)

    def decode(self, batch: LogBatch) -> DecodeResult:
        events: list[DecodedEvent] = []
        errors: list[str] = []
        for position, log in enumerate(batch.logs):
            address = str(log.get("address", "")).lower()
            if address != self._contract_address:
                continue
            log_index = log.get("logIndex")
            if log_index is None:
                log_index = batch.log_index if batch.log_index is not None else position
            try:
                name, args = self._decode_log(log)
            except Exception as exc:
                errors.append(f"log {log_index}: {exc}")
                logger.warning(
                    "decoder.evm_log_undecodable",
                    tx_id=batch.tx_id,
                    log_index=log_index,
                    error=str(exc),
                )
                continue
            events.append(
                DecodedEvent(
                    name=name,
                    args=args,
                    tx_id=batch.tx_id,
                    block_or_slot=batch.block_or_slot,
                    log_index=int(log_index),
                )
            )
        return DecodeResult(events=events, errors=errors)

    def _decode_log(self, log: Any) -> tuple[str, dict[str, Any]]:
        topics = list(log.get("topics") or [])
        if not topics:
            raise ValueError("log has no topics")
        topic0 = to_hex(topics[0]).lower()
        event_abi = self._events_by_topic.get(topic0)
        if event_abi is None:
            raise ValueError(f"unknown event topic {topic0}")

        indexed = [inp for inp in event_abi["inputs"] if inp.get("indexed")]
        non_indexed = [inp for inp in event_abi["inputs"] if not inp.get("indexed")]
        if len(topics) - 1 != len(indexed):
            raise ValueError(
                f"{event_abi['name']} expects {len(indexed)} indexed topics, got {len(topics) - 1}"
            )

        args: dict[str, Any] = {}
        for inp, raw_topic in zip(indexed, topics[1:], strict=True):
            (value,) = abi_decode([inp["type"]], _to_bytes(raw_topic))
            args[to_snake_case(inp["name"])] = _normalize(inp["type"], value)

        data = _to_bytes(log.get("data") or b"")
        values = abi_decode([inp["type"] for inp in non_indexed], data) if non_indexed else ()
        for inp, value in zip(non_indexed, values, strict=True):
            args[to_snake_case(inp["name"])] = _normalize(inp["type"], value)

        return event_abi["name"], args
