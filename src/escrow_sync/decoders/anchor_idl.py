"""Anchor IDL-based log parser (primary Solana decode path).

Wraps anchorpy's EventParser over the escrow program's IDL. anchorpy is
imported lazily: it is only loaded when an IDL file is configured.
"""

from __future__ import annotations

from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from solders.pubkey import Pubkey

from escrow_sync.logging_config import get_logger

logger = get_logger(__name__)


@runtime_checkable
class IdlLogParser(Protocol):
    """Anything that turns Solana log lines into (event name, fields) pairs."""

    def parse(self, logs: list[str]) -> list[tuple[str, dict[str, Any]]]: ...


def to_plain(value: Any) -> Any:
    """Convert anchorpy/borsh values into JSON-friendly Python values."""
    if isinstance(value, Pubkey):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items() if not str(k).startswith("_")}
    if isinstance(value, (list, tuple)):
        return [to_plain(v) for v in value]
    if is_dataclass(value) and not isinstance(value, type):
        return to_plain(asdict(value))
    if isinstance(value, (int, float, str, bool)) or value is None:
        return value
    if hasattr(value, "__dict__"):
        return to_plain(vars(value))
    return str(value)


class AnchorIdlParser:
    """Parses `Program data:` events emitted inside the program's invocation.

    Usage:
        parser = AnchorIdlParser.from_file(program_id, "idl/localsolana.json")
        for name, fields in parser.parse(logs):
            ...
    """

    def __init__(self, program_id: str, idl_json: str) -> None:
        from anchorpy import Coder, EventParser, Idl

        idl = Idl.from_json(idl_json)
        self._parser = EventParser(Pubkey.from_string(program_id), Coder(idl))

    @classmethod
    def from_file(cls, program_id: str, path: str | Path) -> AnchorIdlParser:
        return cls(program_id, Path(path).read_text(encoding="utf-8"))

    def parse(self, logs: list[str]) -> list[tuple[str, dict[str, Any]]]:
        found: list[tuple[str, dict[str, Any]]] = []
        self._parser.parse_logs(
            logs, lambda event: found.append((event.name, to_plain(event.data)))
        )
        return found


def load_idl_parser(program_id: str | None, idl_path: str) -> IdlLogParser | None:
    """Build the IDL parser if an IDL file is configured; None means fallback-only."""
    if not program_id or not idl_path:
        return None
    path = Path(idl_path)
    if not path.is_file():
        logger.warning("decoder.idl_missing", path=str(path))
        return None
    try:
        return AnchorIdlParser.from_file(program_id, path)
    except Exception as exc:
        logger.warning("decoder.idl_unusable", path=str(path), error=str(exc))
        return None
