"""Tests for the chain adapter factory, the adapter registry and adapter helpers.

No test here opens a connection: constructing an adapter only builds clients.
"""

from __future__ import annotations

import dataclasses
import json
import struct

import pytest
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from escrow_sync.chains.base import ChainAdapter
from escrow_sync.chains.evm import EvmAdapter
from escrow_sync.chains.registry import ChainAdapterFactory, ChainAdapterRegistry
from escrow_sync.chains.solana import (
    AUTO_CANCEL_DISCRIMINATOR,
    SolanaAdapter,
    auto_cancel_data,
    load_keypair,
)
from escrow_sync.decoders.evm import EvmEventDecoder
from escrow_sync.decoders.solana import SolanaEventDecoder
from escrow_sync.domain.enums import NetworkFamily
from escrow_sync.domain.exceptions import InvalidNetworkError, UnsupportedChainOperationError
from escrow_sync.domain.models import CancelTarget, NetworkConfig
from tests.helpers import (
    EVM_CONTRACT,
    EVM_SELLER,
    SOLANA_PROGRAM_ID,
    FakeAdapter,
    evm_tx_hash,
    solana_signature,
)

SOLANA = NetworkConfig(
    id=1,
    name="solana-devnet",
    family=NetworkFamily.SOLANA,
    chain_id=103,
    rpc_url="https://api.devnet.solana.com",
    ws_url="wss://api.devnet.solana.com",
    program_id=SOLANA_PROGRAM_ID,
)
EVM = NetworkConfig(
    id=2,
    name="celo-alfajores",
    family=NetworkFamily.EVM,
    chain_id=44787,
    rpc_url="https://alfajores-forno.celo-testnet.org",
    contract_address=EVM_CONTRACT,
)


class TestFactory:
    def test_picks_adapter_by_family(self, settings) -> None:
        assert isinstance(ChainAdapterFactory.create(SOLANA, settings), SolanaAdapter)
        assert isinstance(ChainAdapterFactory.create(EVM, settings), EvmAdapter)

    def test_unknown_family(self, settings) -> None:
        network = dataclasses.replace(SOLANA, family="cosmos")
        with pytest.raises(ValueError, match="Unknown network family"):
            ChainAdapterFactory.create(network, settings)

    def test_supported_families(self) -> None:
        assert set(ChainAdapterFactory.get_supported_families()) == {"evm", "solana"}

    def test_adapters_satisfy_protocol(self, settings) -> None:
        assert isinstance(ChainAdapterFactory.create(SOLANA, settings), ChainAdapter)
        assert isinstance(ChainAdapterFactory.create(EVM, settings), ChainAdapter)


class TestRegistry:
    def test_one_adapter_per_network(self, fake_adapters) -> None:
        assert fake_adapters.get(SOLANA) is fake_adapters.get(SOLANA)
        assert fake_adapters.get(SOLANA) is not fake_adapters.get(EVM)

    @pytest.mark.asyncio
    async def test_config_change_rebuilds_and_retires(self, fake_adapters) -> None:
        original = fake_adapters.get(SOLANA)
        changed = fake_adapters.get(dataclasses.replace(SOLANA, ws_url="wss://other"))

        assert changed is not original
        await fake_adapters.aclose()
        assert original.closed
        assert changed.closed

    @pytest.mark.asyncio
    async def test_close_failure_does_not_stop_others(self, settings) -> None:
        class _Broken(FakeAdapter):
            async def aclose(self) -> None:
                raise RuntimeError("socket already gone")

        def factory(network, _settings):  # noqa: ANN001, ANN202
            return (_Broken if network.family is NetworkFamily.SOLANA else FakeAdapter)(network)

        registry = ChainAdapterRegistry(settings, factory=factory)
        registry.get(SOLANA)
        evm = registry.get(EVM)

        await registry.aclose()
        assert evm.closed

    def test_invalidate_returns_adapter(self, fake_adapters) -> None:
        adapter = fake_adapters.get(EVM)
        assert fake_adapters.invalidate(EVM.id) is adapter
        assert fake_adapters.get(EVM) is not adapter


class TestSolanaAdapter:
    def test_address_validation(self, settings) -> None:
        adapter = SolanaAdapter(SOLANA, settings)
        assert adapter.validate_address(str(Pubkey.new_unique()))
        assert not adapter.validate_address("not-a-pubkey")
        assert not adapter.validate_address("")

    def test_signature_validation(self, settings) -> None:
        adapter = SolanaAdapter(SOLANA, settings)
        assert adapter.validate_transaction_hash(solana_signature(3))
        assert not adapter.validate_transaction_hash(evm_tx_hash(3))

    def test_explorer_url_uses_cluster_on_testnets(self, settings) -> None:
        sig = solana_signature(4)
        assert SolanaAdapter(SOLANA, settings).get_block_explorer_url(sig) == (
            f"https://explorer.solana.com/tx/{sig}?cluster=devnet"
        )
        mainnet = dataclasses.replace(SOLANA, is_testnet=False)
        assert SolanaAdapter(mainnet, settings).get_block_explorer_url(sig).endswith(sig)

    def test_decoder(self, settings) -> None:
        assert isinstance(SolanaAdapter(SOLANA, settings).create_decoder(), SolanaEventDecoder)

    def test_decoder_requires_program_id(self, settings) -> None:
        adapter = SolanaAdapter(dataclasses.replace(SOLANA, program_id=None), settings)
        with pytest.raises(InvalidNetworkError):
            adapter.create_decoder()

    @pytest.mark.asyncio
    async def test_contract_only_reads_unsupported(self, settings) -> None:
        adapter = SolanaAdapter(SOLANA, settings)
        target = CancelTarget(escrow_db_id=1, trade_id=2, network_id=1, onchain_escrow_id="3", leg=1)
        with pytest.raises(UnsupportedChainOperationError):
            await adapter.get_calculated_balance(target)
        with pytest.raises(UnsupportedChainOperationError):
            await adapter.is_eligible_for_auto_cancel(target)
        await adapter.aclose()

    def test_auto_cancel_instruction_data(self) -> None:
        data = auto_cancel_data(12345, 67890)
        assert data[:8] == AUTO_CANCEL_DISCRIMINATOR
        assert struct.unpack("<QQ", data[8:]) == (12345, 67890)

    def test_keypair_from_json_array(self) -> None:
        keypair = Keypair()
        loaded = load_keypair(json.dumps(list(bytes(keypair))))
        assert loaded.pubkey() == keypair.pubkey()

    def test_keypair_from_file(self, tmp_path) -> None:
        keypair = Keypair()
        path = tmp_path / "arbitrator.json"
        path.write_text(json.dumps(list(bytes(keypair))))
        assert load_keypair(str(path)).pubkey() == keypair.pubkey()


class TestEvmAdapter:
    def test_address_validation(self, settings) -> None:
        adapter = EvmAdapter(EVM, settings)
        assert adapter.validate_address(EVM_SELLER)
        assert not adapter.validate_address(str(Pubkey.new_unique()))

    def test_hash_validation(self, settings) -> None:
        adapter = EvmAdapter(EVM, settings)
        assert adapter.validate_transaction_hash(evm_tx_hash(1))
        assert not adapter.validate_transaction_hash("0x1234")
        assert not adapter.validate_transaction_hash(solana_signature(1))

    def test_explorer_url(self, settings) -> None:
        tx = evm_tx_hash(2)
        assert EvmAdapter(EVM, settings).get_block_explorer_url(tx) == (
            f"https://alfajores.celoscan.io/tx/{tx}"
        )
        configured = dataclasses.replace(EVM, block_explorer_url="https://explorer.celo.org/")
        assert EvmAdapter(configured, settings).get_block_explorer_url(tx) == (
            f"https://explorer.celo.org/tx/{tx}"
        )

    def test_decoder(self, settings) -> None:
        assert isinstance(EvmAdapter(EVM, settings).create_decoder(), EvmEventDecoder)

    def test_decoder_requires_contract(self, settings) -> None:
        adapter = EvmAdapter(dataclasses.replace(EVM, contract_address=None), settings)
        with pytest.raises(InvalidNetworkError):
            adapter.create_decoder()

    @pytest.mark.asyncio
    async def test_program_missing_without_contract(self, settings) -> None:
        adapter = EvmAdapter(dataclasses.replace(EVM, contract_address=None), settings)
        assert await adapter.program_exists() is False
