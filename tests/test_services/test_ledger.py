"""Tests for the ledger helpers and TransactionRepository upsert rules."""

from __future__ import annotations

import json

import pytest

from escrow_sync.infrastructure.database.orm_models import Transaction
from escrow_sync.infrastructure.database.repositories import TransactionRepository
from escrow_sync.services.ledger import (
    MAX_ERROR_MESSAGE_LENGTH,
    failure_message,
    ledger_metadata,
    record_transaction,
)
from tests.helpers import evm_tx_hash, fetch, make_trade, solana_signature


class TestHelpers:
    def test_metadata_drops_none_and_sorts(self) -> None:
        payload = ledger_metadata(event="FundsDeposited", log_index=2, degraded=None)
        assert payload == '{"event":"FundsDeposited","log_index":2}'

    def test_failure_message_from_exception(self) -> None:
        assert failure_message(ValueError("bad data")) == "ValueError: bad data"

    def test_failure_message_truncated(self) -> None:
        assert len(failure_message("x" * 5000)) == MAX_ERROR_MESSAGE_LENGTH


class TestRecordTransaction:
    @pytest.mark.asyncio
    async def test_solana_row_uses_signature_and_slot(self, session_factory, solana_network) -> None:
        row_id = await record_transaction(
            session_factory=session_factory,
            tx_id=solana_signature(1),
            network_id=solana_network.id,
            network_family="solana",
            status="SUCCESS",
            type="FUND_ESCROW",
            block_or_slot=77,
        )
        row = await fetch(session_factory, Transaction, row_id)
        assert row.signature == solana_signature(1)
        assert row.slot == 77
        assert row.transaction_hash is None
        assert row.block_number is None
        assert row.network_family == "solana"

    @pytest.mark.asyncio
    async def test_upsert_merges_fields(self, session_factory, evm_network) -> None:
        first_trade = await make_trade(session_factory, evm_network.id)
        second_trade = await make_trade(session_factory, evm_network.id)
        common = {
            "session_factory": session_factory,
            "tx_id": evm_tx_hash(5),
            "network_id": evm_network.id,
            "network_family": "evm",
            "type": "FUND_ESCROW",
        }
        first = await record_transaction(
            **common,
            status="SUCCESS",
            block_or_slot=100,
            sender_address="0xsender",
            error_message=ledger_metadata(event="FundsDeposited"),
            related_trade_id=first_trade,
        )
        second = await record_transaction(
            **common,
            status="FAILED",
            sender_address="",
            error_message="boom",
            related_trade_id=second_trade,
        )

        assert first == second
        row = await fetch(session_factory, Transaction, first)
        assert row.status == "FAILED"
        assert row.error_message == "boom"
        assert row.block_number == 100
        assert row.sender_address == "0xsender"
        assert row.related_trade_id == first_trade

    @pytest.mark.asyncio
    async def test_same_hash_on_two_networks(self, session_factory, solana_network, evm_network) -> None:
        fields = {"tx_id": evm_tx_hash(1), "network_family": "evm", "status": "SUCCESS", "type": "EVENT"}
        async with session_factory() as session:
            repo = TransactionRepository(session)
            on_evm = await repo.record(network_id=evm_network.id, **fields)
            on_other = await repo.record(network_id=solana_network.id, **fields)
            await session.commit()
        assert on_evm != on_other

    @pytest.mark.asyncio
    async def test_get_by_either_key(self, session_factory, solana_network) -> None:
        metadata = ledger_metadata(source="test")
        await record_transaction(
            session_factory=session_factory,
            tx_id=solana_signature(2),
            network_id=solana_network.id,
            network_family="solana",
            status="SUCCESS",
            type="EVENT",
            error_message=metadata,
        )
        async with session_factory() as session:
            row = await TransactionRepository(session).get(solana_signature(2), solana_network.id)
        assert json.loads(row.error_message) == {"source": "test"}
