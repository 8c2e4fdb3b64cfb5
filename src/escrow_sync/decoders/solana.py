"""Solana escrow event decoder.

Decode order for one transaction's log lines:
    1. Anchor IDL parser (anchorpy), when an IDL is configured.
    2. If that raises or finds nothing: scan for `Program data:` lines,
       base64-decode them and match the 8-byte discriminator.
    3. Borsh-decode matched payloads with the versioned layouts.
    4. If Borsh fails, emit a degraded event carrying only the name,
       discriminator hex, payload length and (when readable) the trade id.

A recognised discriminator always produces an event. Unknown discriminators
and malformed base64 are reported as decode errors; nothing raises.
Events get a per-signature log index in emission order.
"""

from __future__ import annotations

import base64
import binascii
from typing import TYPE_CHECKING, Any

from escrow_sync.decoders.solana_layouts import (
    DISCRIMINATOR_SIZE,
    EventLayoutRegistry,
    extract_trade_id,
)
from escrow_sync.domain.exceptions import DecodeError
from escrow_sync.domain.models import (
    DecodedEvent,
    DecodeResult,
    LogBatch,
    to_snake_case,
)
from escrow_sync.logging_config import get_logger

if TYPE_CHECKING:
    from escrow_sync.decoders.anchor_idl import IdlLogParser

logger = get_logger(__name__)

PROGRAM_DATA_MARKER = "Program data:"


def _normalize_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {to_snake_case(str(key)): value for key, value in fields.items()}


class SolanaEventDecoder:
    """Decodes the escrow program's Anchor events from transaction logs."""

    def __init__(
        self,
        program_id: str,
        idl_parser: IdlLogParser | None = None,
        layouts: EventLayoutRegistry | None = None,
    ) -> None:
        self.program_id = program_id
        self._idl_parser = idl_parser
        self._layouts = layouts or EventLayoutRegistry.default()

    def decode(self, batch: LogBatch) -> DecodeResult:
        logs = [str(line) for line in batch.logs]

        parsed = self._parse_with_idl(batch.tx_id, logs)
        if parsed:
            events = [
                DecodedEvent(
                    name=name,
                    args=_normalize_fields(fields),
                    tx_id=batch.tx_id,
                    block_or_slot=batch.block_or_slot,
                    log_index=index,
                )
                for index, (name, fields) in enumerate(parsed)
            ]
            return DecodeResult(events=events)

        return self._decode_program_data(batch, logs)

    def _parse_with_idl(self, tx_id: str, logs: list[str]) -> list[tuple[str, dict[str, Any]]]:
        if self._idl_parser is None:
            return []
        try:
            return self._idl_parser.parse(logs)
        except Exception as exc:
            logger.debug("decoder.idl_parse_failed", tx_id=tx_id, error=str(exc))
            return []

    def _decode_program_data(self, batch: LogBatch, logs: list[str]) -> DecodeResult:
        events: list[DecodedEvent] = []
        errors: list[str] = []

        for line in logs:
            if PROGRAM_DATA_MARKER not in line:
                continue
            encoded = line.split(PROGRAM_DATA_MARKER, 1)[1].strip()
            try:
                payload = base64.b64decode(encoded, validate=True)
            except (binascii.Error, ValueError) as exc:
                errors.append(f"invalid base64 program data: {exc}")
                continue
            if len(payload) < DISCRIMINATOR_SIZE:
                errors.append(f"program data too short ({len(payload)} bytes)")
                continue

            discriminator = payload[:DISCRIMINATOR_SIZE].hex()
            name = self._layouts.name_for(payload)
            if name is None:
                errors.append(f"unknown discriminator {discriminator}")
                continue

            degraded = False
            try:
                _, fields = self._layouts.decode(payload)
            except DecodeError as exc:
                degraded = True
                fields = {"discriminator": discriminator, "length": len(payload)}
                trade_id = extract_trade_id(payload)
                if trade_id is not None:
                    fields["trade_id"] = trade_id
                logger.warning(
                    "decoder.borsh_decode_failed",
                    event_name=name,
                    tx_id=batch.tx_id,
                    error=exc.message,
                )

            events.append(
                DecodedEvent(
                    name=name,
                    args=fields,
                    tx_id=batch.tx_id,
                    block_or_slot=batch.block_or_slot,
                    log_index=len(events),
                    discriminator=discriminator,
                    degraded=degraded,
                    raw=encoded,
                )
            )

        if errors:
            logger.debug("decoder.program_data_errors", tx_id=batch.tx_id, errors=errors)
        return DecodeResult(events=events, errors=errors)
