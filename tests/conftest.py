"""Shared test fixtures for the escrow sync test suite.

Provides:
    - An in-memory SQLite ledger (tables + deadline trigger) per test
    - Settings that ignore the developer's .env
    - Registered Solana and EVM networks
    - Adapter registries backed by FakeAdapter
"""

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from escrow_sync.chains.network_registry import NetworkRegistry
from escrow_sync.chains.registry import ChainAdapterRegistry
from escrow_sync.config import Settings
from escrow_sync.domain.enums import NetworkFamily
from escrow_sync.infrastructure.database.orm_models import Base
from tests.helpers import (
    EVM_ARBITRATOR,
    EVM_CONTRACT,
    SOLANA_ARBITRATOR,
    SOLANA_PROGRAM_ID,
    SOLANA_USDC_MINT,
    FakeAdapter,
)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    """Settings with explicit values so a local .env cannot leak in."""
    return Settings(
        _env_file=None,
        app_env="development",
        database_url="sqlite+aiosqlite:///:memory:",
        default_testnet_network="solana-devnet",
        default_mainnet_network="solana-mainnet",
        network_cache_ttl_seconds=300,
        listener_reconnect_delay_seconds=0.01,
        listener_startup_timeout_seconds=0.5,
        escrow_monitor_enabled=True,
        escrow_monitor_interval_seconds=60,
        escrow_monitor_batch_size=50,
        auto_cancel_delay_seconds=0,
        auto_cancel_eligibility_check=True,
        auto_cancel_balance_check=True,
        evm_arbitrator_private_key="",
        solana_arbitrator_keypair="",
        solana_idl_path="",
    )


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:  # noqa: ANN001
    return async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture
def network_registry(session_factory, settings) -> NetworkRegistry:  # noqa: ANN001
    return NetworkRegistry(session_factory, settings)


# ---------------------------------------------------------------------------
# Networks
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def solana_network(network_registry):  # noqa: ANN001
    return await network_registry.create(
        name="solana-devnet",
        network_family=NetworkFamily.SOLANA,
        chain_id=103,
        rpc_url="https://api.devnet.solana.com",
        ws_url="wss://api.devnet.solana.com",
        program_id=SOLANA_PROGRAM_ID,
        usdc_mint=SOLANA_USDC_MINT,
        arbitrator_address=SOLANA_ARBITRATOR,
        is_testnet=True,
    )


@pytest_asyncio.fixture
async def evm_network(network_registry):  # noqa: ANN001
    return await network_registry.create(
        name="celo-alfajores",
        network_family=NetworkFamily.EVM,
        chain_id=44787,
        rpc_url="https://alfajores-forno.celo-testnet.org",
        ws_url="wss://alfajores-forno.celo-testnet.org/ws",
        contract_address=EVM_CONTRACT,
        arbitrator_address=EVM_ARBITRATOR,
        is_testnet=True,
    )


# ---------------------------------------------------------------------------
# Chain adapters
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_adapters(settings) -> ChainAdapterRegistry:  # noqa: ANN001
    """Registry that builds a default FakeAdapter per network."""
    return ChainAdapterRegistry(settings, factory=lambda network, _settings: FakeAdapter(network))


@pytest_asyncio.fixture
async def real_adapters(settings):  # noqa: ANN001
    """Registry with the production adapters; constructing them opens no connection."""
    registry = ChainAdapterRegistry(settings)
    yield registry
    await registry.aclose()
