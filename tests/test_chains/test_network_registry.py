"""Tests for the NetworkRegistry TTL cache and its configuration errors."""

from __future__ import annotations

import pytest

from escrow_sync.chains.network_registry import NetworkRegistry
from escrow_sync.domain.enums import NetworkFamily
from escrow_sync.domain.exceptions import NetworkInactiveError, NetworkNotFoundError


class _Clock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


async def _create_other(session_factory, settings, name: str = "solana-mainnet"):  # noqa: ANN001, ANN202
    """Write a network through a second registry so the first one's cache is stale."""
    return await NetworkRegistry(session_factory, settings).create(
        name=name,
        network_family=NetworkFamily.SOLANA,
        chain_id=101,
        rpc_url="https://api.mainnet-beta.solana.com",
        is_testnet=False,
    )


class TestLookups:
    @pytest.mark.asyncio
    async def test_get_by_id_and_name(self, network_registry, solana_network) -> None:
        assert (await network_registry.get_by_id(solana_network.id)).name == "solana-devnet"
        assert (await network_registry.get_by_name("solana-devnet")).id == solana_network.id

    @pytest.mark.asyncio
    async def test_unknown_network(self, network_registry, solana_network) -> None:
        with pytest.raises(NetworkNotFoundError):
            await network_registry.get_by_id(999)
        with pytest.raises(NetworkNotFoundError):
            await network_registry.get_by_name("nowhere")

    @pytest.mark.asyncio
    async def test_family_filter(self, network_registry, solana_network, evm_network) -> None:
        evm = await network_registry.get_by_family(NetworkFamily.EVM)
        assert [n.id for n in evm] == [evm_network.id]

    @pytest.mark.asyncio
    async def test_default_is_testnet_default_outside_production(
        self, network_registry, solana_network, evm_network
    ) -> None:
        assert (await network_registry.get_default()).id == solana_network.id


class TestActivation:
    @pytest.mark.asyncio
    async def test_deactivated_network_fails_validation(
        self, network_registry, solana_network, evm_network
    ) -> None:
        await network_registry.deactivate(evm_network.id)

        with pytest.raises(NetworkInactiveError):
            await network_registry.validate(evm_network.id)
        active = await network_registry.get_active()
        assert [n.id for n in active] == [solana_network.id]
        # Still visible by id
        assert (await network_registry.get_by_id(evm_network.id)).is_active is False

    @pytest.mark.asyncio
    async def test_update_unknown_network(self, network_registry) -> None:
        with pytest.raises(NetworkNotFoundError):
            await network_registry.update(42, is_active=False)


class TestCache:
    @pytest.mark.asyncio
    async def test_ttl_expiry_reloads(self, session_factory, settings, solana_network) -> None:
        clock = _Clock()
        registry = NetworkRegistry(session_factory, settings, ttl_seconds=300, clock=clock)
        assert len(await registry.get_active()) == 1

        await _create_other(session_factory, settings)
        clock.now += 299
        assert len(await registry.get_active()) == 1

        clock.now += 2
        assert len(await registry.get_active()) == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_reload(self, session_factory, settings, solana_network) -> None:
        registry = NetworkRegistry(session_factory, settings, clock=_Clock())
        await registry.get_active()
        await _create_other(session_factory, settings)

        registry.invalidate()
        assert {n.name for n in await registry.get_active()} == {"solana-devnet", "solana-mainnet"}

    @pytest.mark.asyncio
    async def test_own_writes_invalidate(self, network_registry, solana_network) -> None:
        await network_registry.get_active()
        updated = await network_registry.update(solana_network.id, ws_url=None)

        assert updated.ws_url is None
        assert (await network_registry.get_by_id(solana_network.id)).ws_url is None
