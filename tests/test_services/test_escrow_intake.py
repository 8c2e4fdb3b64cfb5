"""Tests for EscrowIntakeService and record validation.

Uses the production adapters, so address and signature checks are the real ones.
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import patch

import pytest
from pydantic import ValidationError
from solders.pubkey import Pubkey
from sqlalchemy import select

from escrow_sync.domain.exceptions import (
    InvalidEscrowRecordError,
    NetworkInactiveError,
    TradeNotFoundError,
)
from escrow_sync.infrastructure.database.orm_models import Escrow, Trade, Transaction
from escrow_sync.infrastructure.database.repositories import EscrowRepository
from escrow_sync.schemas.escrow import EscrowRecordRequest
from escrow_sync.services.escrow_intake import EscrowIntakeService
from tests.helpers import (
    AMOUNT_RAW,
    EVM_BUYER,
    EVM_CONTRACT,
    EVM_SELLER,
    SOLANA_PROGRAM_ID,
    evm_tx_hash,
    fetch,
    make_trade,
    solana_signature,
)

PDA = str(Pubkey.new_unique())
TOKEN_ACCOUNT = str(Pubkey.new_unique())
SELLER = str(Pubkey.new_unique())
BUYER = str(Pubkey.new_unique())


def _evm_request(network_id: int, trade_id: int, **overrides) -> EscrowRecordRequest:  # noqa: ANN003
    values = {
        "network_id": network_id,
        "trade_id": trade_id,
        "transaction_hash": evm_tx_hash(0),
        "escrow_id": "12345",
        "seller": EVM_SELLER,
        "buyer": EVM_BUYER,
        "amount": AMOUNT_RAW,
    }
    values.update(overrides)
    return EscrowRecordRequest(**values)


def _solana_request(trade_id: int, **overrides) -> EscrowRecordRequest:  # noqa: ANN003
    values = {
        "trade_id": trade_id,
        "signature": solana_signature(0),
        "escrow_id": "12345",
        "seller": SELLER,
        "buyer": BUYER,
        "amount": AMOUNT_RAW,
        "program_id": SOLANA_PROGRAM_ID,
        "escrow_pda": PDA,
        "escrow_token_account": TOKEN_ACCOUNT,
        "trade_onchain_id": "67890",
    }
    values.update(overrides)
    return EscrowRecordRequest(**values)


async def _transactions(session_factory) -> list[Transaction]:  # noqa: ANN001
    async with session_factory() as session:
        return list((await session.execute(select(Transaction))).scalars().all())


@pytest.fixture
def intake(session_factory, network_registry, real_adapters) -> EscrowIntakeService:  # noqa: ANN001
    return EscrowIntakeService(session_factory, network_registry, real_adapters)


class TestRecordEvm:
    @pytest.mark.asyncio
    async def test_records_escrow_and_ledger_row(self, intake, session_factory, evm_network) -> None:
        trade_id = await make_trade(session_factory, evm_network.id)

        response = await intake.record(_evm_request(evm_network.id, trade_id))

        assert response.success is True
        assert response.network_family == "evm"
        assert response.tx_id == evm_tx_hash(0)
        assert response.block_explorer_url == f"https://alfajores.celoscan.io/tx/{evm_tx_hash(0)}"

        escrow = await fetch(session_factory, Escrow, response.escrow_db_id)
        assert escrow.onchain_escrow_id == "12345"
        assert escrow.escrow_address == EVM_CONTRACT
        assert escrow.amount == Decimal("50")
        assert escrow.state == "CREATED"
        assert escrow.escrow_pda is None

        trade = await fetch(session_factory, Trade, trade_id)
        assert trade.leg1_escrow_onchain_id == "12345"
        assert trade.leg1_escrow_address == EVM_CONTRACT

        [tx] = await _transactions(session_factory)
        assert tx.id == response.transaction_id
        assert tx.transaction_hash == evm_tx_hash(0)
        assert tx.signature is None
        assert tx.type == "CREATE_ESCROW"
        assert tx.status == "SUCCESS"
        assert tx.related_escrow_db_id == escrow.id

    @pytest.mark.asyncio
    async def test_rejects_malformed_hash(self, intake, session_factory, evm_network) -> None:
        trade_id = await make_trade(session_factory, evm_network.id)

        with pytest.raises(InvalidEscrowRecordError) as exc_info:
            await intake.record(_evm_request(evm_network.id, trade_id, transaction_hash="0x1234"))

        assert exc_info.value.field == "transaction_hash"
        assert await _transactions(session_factory) == []

    @pytest.mark.asyncio
    async def test_rejects_solana_seller_on_evm(self, intake, session_factory, evm_network) -> None:
        trade_id = await make_trade(session_factory, evm_network.id)
        with pytest.raises(InvalidEscrowRecordError, match="seller"):
            await intake.record(_evm_request(evm_network.id, trade_id, seller=SELLER))


class TestRecordSolana:
    @pytest.mark.asyncio
    async def test_default_network_used(self, intake, session_factory, solana_network, evm_network) -> None:
        trade_id = await make_trade(session_factory, solana_network.id)

        response = await intake.record(_solana_request(trade_id))

        assert response.network_family == "solana"
        assert response.block_explorer_url.endswith("?cluster=devnet")
        escrow = await fetch(session_factory, Escrow, response.escrow_db_id)
        assert escrow.network_id == solana_network.id
        assert escrow.escrow_pda == PDA
        assert escrow.escrow_address == PDA
        assert escrow.escrow_token_account == TOKEN_ACCOUNT
        assert escrow.trade_onchain_id == "67890"
        [tx] = await _transactions(session_factory)
        assert tx.signature == solana_signature(0)
        assert tx.transaction_hash is None

    @pytest.mark.asyncio
    async def test_program_mismatch(self, intake, session_factory, solana_network) -> None:
        trade_id = await make_trade(session_factory, solana_network.id)
        other_program = str(Pubkey.new_unique())

        with pytest.raises(InvalidEscrowRecordError) as exc_info:
            await intake.record(_solana_request(trade_id, program_id=other_program))
        assert exc_info.value.field == "program_id"

    @pytest.mark.asyncio
    async def test_missing_token_account(self, intake, session_factory, solana_network) -> None:
        trade_id = await make_trade(session_factory, solana_network.id)
        with pytest.raises(InvalidEscrowRecordError, match="escrow_token_account"):
            await intake.record(_solana_request(trade_id, escrow_token_account=None))

    @pytest.mark.asyncio
    async def test_evm_hash_instead_of_signature(self, intake, session_factory, solana_network) -> None:
        trade_id = await make_trade(session_factory, solana_network.id)
        with pytest.raises(InvalidEscrowRecordError, match="signature"):
            await intake.record(_solana_request(trade_id, signature=evm_tx_hash(0)))


class TestRecordingRules:
    @pytest.mark.asyncio
    async def test_unknown_trade_writes_nothing(self, intake, session_factory, evm_network) -> None:
        with pytest.raises(TradeNotFoundError):
            await intake.record(_evm_request(evm_network.id, 999))
        assert await _transactions(session_factory) == []

    @pytest.mark.asyncio
    async def test_trade_on_other_network_is_unknown(
        self, intake, session_factory, solana_network, evm_network
    ) -> None:
        trade_id = await make_trade(session_factory, solana_network.id)
        with pytest.raises(TradeNotFoundError):
            await intake.record(_evm_request(evm_network.id, trade_id))

    @pytest.mark.asyncio
    async def test_inactive_network(self, intake, session_factory, network_registry, evm_network) -> None:
        trade_id = await make_trade(session_factory, evm_network.id)
        await network_registry.deactivate(evm_network.id)
        with pytest.raises(NetworkInactiveError):
            await intake.record(_evm_request(evm_network.id, trade_id))

    @pytest.mark.asyncio
    async def test_re_recording_keeps_state_and_balance(self, intake, session_factory, evm_network) -> None:
        trade_id = await make_trade(session_factory, evm_network.id)
        first = await intake.record(_evm_request(evm_network.id, trade_id))
        async with session_factory() as session:
            await EscrowRepository(session).advance_state(
                first.escrow_db_id, "deposit", {"current_balance": Decimal("50")}
            )
            await session.commit()

        second = await intake.record(
            _evm_request(evm_network.id, trade_id, buyer="0x" + "b1" * 20)
        )

        assert second.escrow_db_id == first.escrow_db_id
        assert second.transaction_id == first.transaction_id
        escrow = await fetch(session_factory, Escrow, first.escrow_db_id)
        assert escrow.state == "FUNDED"
        assert escrow.current_balance == Decimal("50")
        assert escrow.buyer_address == "0x" + "b1" * 20
        assert len(await _transactions(session_factory)) == 1

    @pytest.mark.asyncio
    async def test_escrow_cannot_move_to_another_trade(
        self, intake, session_factory, evm_network
    ) -> None:
        owner = await make_trade(session_factory, evm_network.id)
        other = await make_trade(session_factory, evm_network.id)
        first = await intake.record(_evm_request(evm_network.id, owner))

        with pytest.raises(InvalidEscrowRecordError) as exc_info:
            await intake.record(
                _evm_request(evm_network.id, other, transaction_hash=evm_tx_hash(1))
            )

        assert exc_info.value.field == "trade_id"
        assert (await fetch(session_factory, Escrow, first.escrow_db_id)).trade_id == owner
        assert (await fetch(session_factory, Trade, other)).leg1_escrow_onchain_id is None
        statuses = sorted(tx.status for tx in await _transactions(session_factory))
        assert statuses == ["FAILED", "SUCCESS"]

    @pytest.mark.asyncio
    async def test_unit_failure_leaves_failed_row(self, intake, session_factory, evm_network) -> None:
        trade_id = await make_trade(session_factory, evm_network.id)

        with (
            patch.object(EscrowRepository, "upsert_record", side_effect=RuntimeError("db gone")),
            pytest.raises(RuntimeError, match="db gone"),
        ):
            await intake.record(_evm_request(evm_network.id, trade_id))

        [tx] = await _transactions(session_factory)
        assert tx.status == "FAILED"
        assert tx.type == "CREATE_ESCROW"
        assert tx.related_trade_id == trade_id
        assert "db gone" in tx.error_message
        assert (await fetch(session_factory, Trade, trade_id)).leg1_escrow_onchain_id is None


class TestRequestSchema:
    def test_sequential_requires_address(self) -> None:
        with pytest.raises(ValidationError, match="sequential_escrow_address"):
            _evm_request(1, 1, sequential=True)

    def test_escrow_id_must_be_decimal(self) -> None:
        with pytest.raises(ValidationError):
            _evm_request(1, 1, escrow_id="0xabc")

    def test_tx_id_property(self) -> None:
        assert _evm_request(1, 1).tx_id == evm_tx_hash(0)
