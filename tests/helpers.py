"""Builders and test doubles shared by the test modules.

Provides:
    - Deterministic Solana signatures and EVM transaction hashes
    - Solana `Program data:` log builders (via EventLayoutRegistry.encode)
    - EVM log builders for the packaged escrow ABI
    - FakeAdapter: a ChainAdapter that never touches an RPC endpoint
    - Row factories for trades and escrows
"""

from __future__ import annotations

import asyncio
import base64
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any

from eth_abi import encode as abi_encode
from solders.pubkey import Pubkey
from solders.signature import Signature

import escrow_sync
from escrow_sync.decoders.evm import EvmEventDecoder, event_topic, load_abi
from escrow_sync.decoders.solana import SolanaEventDecoder
from escrow_sync.decoders.solana_layouts import EventLayoutRegistry
from escrow_sync.domain.enums import NetworkFamily
from escrow_sync.domain.models import CancelSubmission, LogBatch, NetworkConfig
from escrow_sync.infrastructure.database.orm_models import Escrow, Trade

ESCROW_ID = 12345
TRADE_ID = 67890
AMOUNT_RAW = 50_000_000

EVM_CONTRACT = "0x" + "c0" * 20
EVM_ARBITRATOR = "0x" + "a1" * 20
EVM_SELLER = "0x" + "5e" * 20
EVM_BUYER = "0x" + "b0" * 20

SOLANA_PROGRAM_ID = str(Pubkey.new_unique())
SOLANA_USDC_MINT = str(Pubkey.new_unique())
SOLANA_ARBITRATOR = str(Pubkey.new_unique())

ABI_PATH = Path(escrow_sync.__file__).resolve().parent / "contracts" / "escrow_abi.json"
ESCROW_ABI = load_abi(ABI_PATH)
LAYOUTS = EventLayoutRegistry.default()


def utcnow() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Transaction ids
# ---------------------------------------------------------------------------


def solana_signature(n: int = 0) -> str:
    """A valid 88-character base58 signature, distinct per `n` (0-150)."""
    return str(Signature.from_bytes(bytes([100 + n]) + bytes([7]) * 63))


def evm_tx_hash(n: int = 0) -> str:
    return "0x" + f"{n + 1:064x}"


# ---------------------------------------------------------------------------
# Solana logs
# ---------------------------------------------------------------------------


def program_data(name: str, fields: dict[str, Any]) -> str:
    return base64.b64encode(LAYOUTS.encode(name, fields)).decode()


def program_logs(program_id: str, *payloads: str) -> tuple[str, ...]:
    """Log lines of one transaction emitting each base64 payload in order."""
    lines = [f"Program {program_id} invoke [1]", "Program log: Instruction: Escrow"]
    lines.extend(f"Program data: {payload}" for payload in payloads)
    lines.append(f"Program {program_id} success")
    return tuple(lines)


def escrow_created_fields(
    escrow_pda: Pubkey,
    seller: Pubkey,
    buyer: Pubkey,
    arbitrator: Pubkey,
    *,
    escrow_id: int = ESCROW_ID,
    trade_id: int = TRADE_ID,
    amount: int = AMOUNT_RAW,
    deposit_deadline: int = 0,
    fiat_deadline: int = 0,
) -> dict[str, Any]:
    return {
        "object_id": bytes(escrow_pda),
        "escrow_id": escrow_id,
        "trade_id": trade_id,
        "seller": bytes(seller),
        "buyer": bytes(buyer),
        "arbitrator": bytes(arbitrator),
        "amount": amount,
        "fee": 0,
        "deposit_deadline": deposit_deadline,
        "fiat_deadline": fiat_deadline,
        "sequential": False,
        "sequential_escrow_address": None,
        "timestamp": 1_700_000_000,
    }


def funds_deposited_fields(
    escrow_pda: Pubkey,
    *,
    escrow_id: int = ESCROW_ID,
    trade_id: int = TRADE_ID,
    amount: int = AMOUNT_RAW,
    counter: int = 1,
) -> dict[str, Any]:
    return {
        "object_id": bytes(escrow_pda),
        "escrow_id": escrow_id,
        "trade_id": trade_id,
        "amount": amount,
        "fee": 0,
        "counter": counter,
        "timestamp": 1_700_000_100,
    }


# ---------------------------------------------------------------------------
# EVM logs
# ---------------------------------------------------------------------------


def _event_abi(name: str) -> dict[str, Any]:
    return next(e for e in ESCROW_ABI if e.get("type") == "event" and e["name"] == name)


def evm_log(
    name: str,
    values: dict[str, Any],
    *,
    address: str = EVM_CONTRACT,
    log_index: int = 0,
) -> dict[str, Any]:
    """A raw eth_subscribe log for `name`, values keyed by ABI input name."""
    event_abi = _event_abi(name)
    indexed = [inp for inp in event_abi["inputs"] if inp.get("indexed")]
    non_indexed = [inp for inp in event_abi["inputs"] if not inp.get("indexed")]
    topics = [event_topic(event_abi)]
    topics.extend(
        "0x" + abi_encode([inp["type"]], [values[inp["name"]]]).hex() for inp in indexed
    )
    data = abi_encode(
        [inp["type"] for inp in non_indexed], [values[inp["name"]] for inp in non_indexed]
    )
    return {
        "address": address,
        "topics": topics,
        "data": "0x" + data.hex(),
        "logIndex": log_index,
    }


# ---------------------------------------------------------------------------
# Chain adapter double
# ---------------------------------------------------------------------------


class FakeAdapter:
    """ChainAdapter stand-in: real decoders, canned RPC answers.

    `batches` are yielded by subscribe(), which then blocks until cancelled.
    """

    def __init__(
        self,
        network: NetworkConfig,
        *,
        exists: bool = True,
        eligible: bool | Exception = True,
        stored_balance: Decimal | Exception = Decimal("50"),
        calculated_balance: Decimal | Exception = Decimal("50"),
        submit_error: Exception | None = None,
        submit_success: bool = True,
        batches: list[LogBatch] | None = None,
    ) -> None:
        self.network = network
        self.family = network.family
        self.exists = exists
        self.eligible = eligible
        self.stored_balance = stored_balance
        self.calculated_balance = calculated_balance
        self.submit_error = submit_error
        self.submit_success = submit_success
        self.batches = list(batches or [])
        self.submitted: list[Any] = []
        self.subscriptions = 0
        self.closed = False

    def validate_address(self, address: str) -> bool:
        return bool(address) and not address.startswith("bad")

    def validate_transaction_hash(self, tx_id: str) -> bool:
        return bool(tx_id) and not tx_id.startswith("bad")

    def get_block_explorer_url(self, tx_id: str) -> str:
        return f"https://explorer.test/tx/{tx_id}"

    async def get_network_info(self) -> dict[str, Any]:
        return {"network": self.network.name, "family": self.family.value}

    async def program_exists(self) -> bool:
        return self.exists

    def create_decoder(self) -> Any:
        if self.family is NetworkFamily.SOLANA:
            return SolanaEventDecoder(self.network.program_id)
        return EvmEventDecoder(self.network.contract_address, ESCROW_ABI)

    async def subscribe(self):  # noqa: ANN201
        self.subscriptions += 1
        for batch in self.batches:
            yield batch
        await asyncio.Event().wait()

    async def get_stored_balance(self, target: Any) -> Decimal:
        if isinstance(self.stored_balance, Exception):
            raise self.stored_balance
        return self.stored_balance

    async def get_calculated_balance(self, target: Any) -> Decimal:
        if isinstance(self.calculated_balance, Exception):
            raise self.calculated_balance
        return self.calculated_balance

    async def get_sequential_info(self, target: Any) -> dict[str, Any]:
        return {"sequential": False, "escrow_id": target.onchain_escrow_id}

    async def is_eligible_for_auto_cancel(self, target: Any) -> bool:
        if isinstance(self.eligible, Exception):
            raise self.eligible
        return self.eligible

    async def submit_auto_cancel(self, target: Any) -> CancelSubmission:
        self.submitted.append(target)
        if self.submit_error is not None:
            raise self.submit_error
        tx_id = (
            solana_signature(len(self.submitted))
            if self.family is NetworkFamily.SOLANA
            else evm_tx_hash(len(self.submitted))
        )
        return CancelSubmission(
            tx_id=tx_id,
            success=self.submit_success,
            error=None if self.submit_success else "transaction reverted",
        )

    async def aclose(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------


async def make_trade(
    session_factory,  # noqa: ANN001
    network_id: int,
    trade_id: int | None = None,
    **values: Any,
) -> int:
    """Insert a trade (leg 1 CREATED by default) and return its id."""
    async with session_factory() as session:
        trade = Trade(network_id=network_id, **values)
        if trade_id is not None:
            trade.id = trade_id
        session.add(trade)
        await session.commit()
        return trade.id


async def make_escrow(
    session_factory,  # noqa: ANN001
    trade_id: int,
    network_id: int,
    onchain_escrow_id: str | None,
    **values: Any,
) -> int:
    """Insert an escrow row directly and return its id."""
    defaults: dict[str, Any] = {
        "amount": Decimal("50"),
        "current_balance": Decimal("0"),
        "state": "CREATED",
    }
    defaults.update(values)
    async with session_factory() as session:
        escrow = Escrow(
            trade_id=trade_id,
            network_id=network_id,
            onchain_escrow_id=onchain_escrow_id,
            **defaults,
        )
        session.add(escrow)
        await session.commit()
        return escrow.id


async def fetch(session_factory, model, row_id: int):  # noqa: ANN001, ANN201
    """Load a fresh copy of a row."""
    async with session_factory() as session:
        return await session.get(model, row_id)
