"""Tests for the EVM event decoder against the packaged escrow ABI."""

from __future__ import annotations

from eth_utils import to_checksum_address
from hexbytes import HexBytes

from escrow_sync.decoders.evm import EvmEventDecoder, event_signature, to_hex
from escrow_sync.domain.models import LogBatch
from tests.helpers import (
    AMOUNT_RAW,
    ESCROW_ABI,
    ESCROW_ID,
    EVM_BUYER,
    EVM_CONTRACT,
    EVM_SELLER,
    TRADE_ID,
    evm_log,
    evm_tx_hash,
)


def _decoder() -> EvmEventDecoder:
    return EvmEventDecoder(EVM_CONTRACT, ESCROW_ABI)


def _batch(*logs: dict) -> LogBatch:
    return LogBatch(tx_id=evm_tx_hash(1), block_or_slot=21_000_000, logs=logs, log_index=0)


def _deposit_values() -> dict:
    return {
        "escrowId": ESCROW_ID,
        "tradeId": TRADE_ID,
        "amount": AMOUNT_RAW,
        "counter": 1,
        "depositor": EVM_SELLER,
    }


class TestDecode:
    def test_funds_deposited(self) -> None:
        result = _decoder().decode(_batch(evm_log("FundsDeposited", _deposit_values(), log_index=3)))

        assert result.errors == []
        event = result.events[0]
        assert event.name == "FundsDeposited"
        assert event.args == {
            "escrow_id": str(ESCROW_ID),
            "trade_id": str(TRADE_ID),
            "amount": str(AMOUNT_RAW),
            "counter": str(1),
            "depositor": to_checksum_address(EVM_SELLER),
        }
        assert event.log_index == 3
        assert event.block_or_slot == 21_000_000

    def test_escrow_created_with_indexed_address(self) -> None:
        values = {
            "escrowId": ESCROW_ID,
            "tradeId": TRADE_ID,
            "seller": EVM_SELLER,
            "buyer": EVM_BUYER,
            "arbitrator": EVM_BUYER,
            "amount": AMOUNT_RAW,
            "deposit_deadline": 1_700_000_000,
            "fiat_deadline": 1_700_003_600,
            "sequential": True,
            "sequentialEscrowAddress": EVM_BUYER,
        }
        event = _decoder().decode(_batch(evm_log("EscrowCreated", values))).events[0]

        assert event.args["seller"] == to_checksum_address(EVM_SELLER)
        assert event.args["sequential"] is True
        assert event.args["sequential_escrow_address"] == to_checksum_address(EVM_BUYER)
        assert event.args["deposit_deadline"] == "1700000000"

    def test_hexbytes_topics_accepted(self) -> None:
        log = evm_log("FundsDeposited", _deposit_values())
        log["topics"] = [HexBytes(topic) for topic in log["topics"]]
        log["data"] = HexBytes(log["data"])

        assert _decoder().decode(_batch(log)).events[0].args["escrow_id"] == str(ESCROW_ID)

    def test_other_contracts_ignored(self) -> None:
        log = evm_log("FundsDeposited", _deposit_values(), address="0x" + "99" * 20)
        result = _decoder().decode(_batch(log))
        assert result.events == []
        assert result.errors == []

    def test_address_match_is_case_insensitive(self) -> None:
        log = evm_log("FundsDeposited", _deposit_values(), address=to_checksum_address(EVM_CONTRACT))
        assert len(_decoder().decode(_batch(log)).events) == 1


class TestErrors:
    def test_unknown_topic(self) -> None:
        log = evm_log("FundsDeposited", _deposit_values())
        log["topics"][0] = "0x" + "00" * 32
        result = _decoder().decode(_batch(log))
        assert result.events == []
        assert "unknown event topic" in result.errors[0]

    def test_wrong_topic_count(self) -> None:
        log = evm_log("FundsDeposited", _deposit_values())
        log["topics"] = log["topics"][:2]
        result = _decoder().decode(_batch(log))
        assert "indexed topics" in result.errors[0]

    def test_no_topics(self) -> None:
        log = {"address": EVM_CONTRACT, "topics": [], "data": "0x", "logIndex": 0}
        assert "no topics" in _decoder().decode(_batch(log)).errors[0]


class TestHelpers:
    def test_event_signature(self) -> None:
        deposited = next(e for e in ESCROW_ABI if e.get("name") == "FundsDeposited")
        assert event_signature(deposited) == "FundsDeposited(uint256,uint256,uint256,uint256,address)"

    def test_known_topics_cover_every_event(self) -> None:
        events = [e for e in ESCROW_ABI if e.get("type") == "event"]
        assert len(_decoder().known_topics) == len(events)

    def test_to_hex(self) -> None:
        assert to_hex("ab") == "0xab"
        assert to_hex(b"\xab") == "0xab"
        assert to_hex(HexBytes("0xab")) == "0xab"
