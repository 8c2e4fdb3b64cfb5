#!/usr/bin/env python3
"""Escrow Sync: End-to-End Dry-Run Replay.

Replays Solana escrow program logs through the real decoder, reconciler and
deadline monitor against an in-memory SQLite ledger. No RPC endpoint is
contacted: the chain adapter is a local stand-in that "submits" auto-cancels
and hands back a fake signature.

    Scenario 1: Lifecycle + auto-cancel
        - EscrowCreated (escrow 12345, trade 67890, 50 USDC) -> CREATED
        - FundsDeposited                                     -> FUNDED, balance 50.0
        - the fiat deadline passes; a monitor sweep submits an auto-cancel
        - EscrowCancelled with that signature                -> AUTO_CANCELLED

    Scenario 2: Deadline isolation
        - a FIAT_PAID trade past its deposit deadline is never swept, and
          unrelated updates to it are not rejected by the deadline trigger

    Scenario 3: Replay
        - the same log batch is delivered twice; the listener drops the
          duplicate and a forced re-reconcile leaves the ledger unchanged

Usage:
    uv run python simulation.py
    uv run python simulation.py --scenario 1
"""

from __future__ import annotations

import argparse
import asyncio
import base64
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from solders.pubkey import Pubkey
from solders.signature import Signature

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from escrow_sync.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from escrow_sync.chains.network_registry import NetworkRegistry  # noqa: E402
from escrow_sync.chains.registry import ChainAdapterRegistry  # noqa: E402
from escrow_sync.config import Settings  # noqa: E402
from escrow_sync.decoders.solana import SolanaEventDecoder  # noqa: E402
from escrow_sync.decoders.solana_layouts import EventLayoutRegistry  # noqa: E402
from escrow_sync.domain.enums import NetworkFamily  # noqa: E402
from escrow_sync.domain.models import (  # noqa: E402
    CancelSubmission,
    CancelTarget,
    LogBatch,
    NetworkConfig,
)
from escrow_sync.infrastructure.database.orm_models import (  # noqa: E402
    Base,
    ContractAutoCancellation,
    Escrow,
    Trade,
    Transaction,
)
from escrow_sync.listeners.network_listener import NetworkListener  # noqa: E402
from escrow_sync.services.deadline_monitor import DeadlineMonitor  # noqa: E402
from escrow_sync.services.reconciler import Reconciler  # noqa: E402

ESCROW_ID = 12345
TRADE_ID = 67890
AMOUNT_RAW = 50_000_000

LAYOUTS = EventLayoutRegistry.default()


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database():
    """Create an in-memory SQLite ledger (tables + deadline trigger)."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
    from sqlalchemy.pool import StaticPool

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    logger.info("database.sqlite_initialized")
    return engine, factory


# ---------------------------------------------------------------------------
# Chain stand-in
# ---------------------------------------------------------------------------
@dataclass
class SimulatedSolanaAdapter:
    """Chain adapter double: real decoder, fake RPC."""

    network: NetworkConfig
    settings: Settings
    family: NetworkFamily = NetworkFamily.SOLANA
    submitted: list[CancelTarget] = field(default_factory=list)
    batches: list[LogBatch] = field(default_factory=list)

    def validate_address(self, address: str) -> bool:
        try:
            Pubkey.from_string(address)
        except ValueError:
            return False
        return True

    def validate_transaction_hash(self, tx_id: str) -> bool:
        return 87 <= len(tx_id) <= 88

    def get_block_explorer_url(self, tx_id: str) -> str:
        return f"https://explorer.solana.com/tx/{tx_id}?cluster=devnet"

    async def get_network_info(self) -> dict[str, Any]:
        return {"chain_id": self.network.chain_id, "simulated": True}

    async def program_exists(self) -> bool:
        return True

    def create_decoder(self) -> SolanaEventDecoder:
        return SolanaEventDecoder(self.network.program_id)

    async def subscribe(self):
        for batch in self.batches:
            yield batch

    async def get_stored_balance(self, target: CancelTarget) -> Decimal:
        return target.current_balance or Decimal(0)

    async def get_calculated_balance(self, target: CancelTarget) -> Decimal:
        return target.current_balance or Decimal(0)

    async def get_sequential_info(self, target: CancelTarget) -> dict[str, Any]:
        return {"is_sequential": False}

    async def is_eligible_for_auto_cancel(self, target: CancelTarget) -> bool:
        return True

    async def submit_auto_cancel(self, target: CancelTarget) -> CancelSubmission:
        self.submitted.append(target)
        return CancelSubmission(tx_id=str(Signature.new_unique()), success=True, block_or_slot=2_000)

    async def aclose(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Log builders
# ---------------------------------------------------------------------------
def program_logs(program_id: str, instruction: str, event_name: str, fields: dict) -> tuple:
    payload = LAYOUTS.encode(event_name, fields)
    return (
        f"Program {program_id} invoke [1]",
        f"Program log: Instruction: {instruction}",
        f"Program data: {base64.b64encode(payload).decode()}",
        f"Program {program_id} success",
    )


@dataclass
class Parties:
    pda: Pubkey = field(default_factory=Pubkey.new_unique)
    seller: Pubkey = field(default_factory=Pubkey.new_unique)
    buyer: Pubkey = field(default_factory=Pubkey.new_unique)
    arbitrator: Pubkey = field(default_factory=Pubkey.new_unique)


def escrow_created(program_id: str, parties: Parties, escrow_id: int, trade_id: int, slot: int):
    now = int(datetime.now(UTC).timestamp())
    logs = program_logs(
        program_id,
        "CreateEscrow",
        "EscrowCreated",
        {
            "object_id": bytes(parties.pda),
            "escrow_id": escrow_id,
            "trade_id": trade_id,
            "seller": bytes(parties.seller),
            "buyer": bytes(parties.buyer),
            "arbitrator": bytes(parties.arbitrator),
            "amount": AMOUNT_RAW,
            "fee": 0,
            "deposit_deadline": now + 3600,
            "fiat_deadline": now + 7200,
            "sequential": False,
            "sequential_escrow_address": None,
            "timestamp": now,
        },
    )
    return LogBatch(tx_id=str(Signature.new_unique()), block_or_slot=slot, logs=logs)


def funds_deposited(program_id: str, parties: Parties, escrow_id: int, trade_id: int, slot: int):
    logs = program_logs(
        program_id,
        "FundEscrow",
        "FundsDeposited",
        {
            "object_id": bytes(parties.pda),
            "escrow_id": escrow_id,
            "trade_id": trade_id,
            "amount": AMOUNT_RAW,
            "fee": 0,
            "counter": 1,
            "timestamp": int(datetime.now(UTC).timestamp()),
        },
    )
    return LogBatch(tx_id=str(Signature.new_unique()), block_or_slot=slot, logs=logs)


def escrow_cancelled(
    program_id: str, parties: Parties, escrow_id: int, trade_id: int, slot: int, tx_id: str
):
    logs = program_logs(
        program_id,
        "AutoCancel",
        "EscrowCancelled",
        {
            "object_id": bytes(parties.pda),
            "escrow_id": escrow_id,
            "trade_id": trade_id,
            "seller": bytes(parties.seller),
            "amount": AMOUNT_RAW,
            "fee": 0,
            "counter": 2,
            "timestamp": int(datetime.now(UTC).timestamp()),
        },
    )
    return LogBatch(tx_id=tx_id, block_or_slot=slot, logs=logs)


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    print(f"\n--- {text} ---\n")


async def print_ledger(factory, trade_id: int) -> None:
    from sqlalchemy import select

    async with factory() as session:
        trade = await session.get(Trade, trade_id)
        escrows = (await session.execute(select(Escrow).where(Escrow.trade_id == trade_id))).scalars()
        for escrow in escrows:
            print(
                f"  Escrow {escrow.onchain_escrow_id}: state={escrow.state} "
                f"balance={escrow.current_balance} amount={escrow.amount}"
            )
            attempts = (
                await session.execute(
                    select(ContractAutoCancellation).where(
                        ContractAutoCancellation.escrow_id == escrow.id
                    )
                )
            ).scalars()
            for attempt in attempts:
                print(f"    auto-cancel attempt #{attempt.id}: {attempt.status}")
        if trade is not None:
            print(
                f"  Trade {trade.id}: overall={trade.overall_status} "
                f"leg1={trade.leg1_state} leg1_escrow={trade.leg1_escrow_onchain_id}"
            )
        rows = (
            await session.execute(
                select(Transaction).where(Transaction.related_trade_id == trade_id)
            )
        ).scalars()
        for row in rows:
            print(f"    tx {row.signature[:16]}...  {row.type:<15} {row.status}")


# ---------------------------------------------------------------------------
# Harness
# ---------------------------------------------------------------------------
@dataclass
class Harness:
    factory: Any
    settings: Settings
    networks: NetworkRegistry
    adapters: ChainAdapterRegistry
    reconciler: Reconciler
    network: NetworkConfig

    @property
    def adapter(self) -> SimulatedSolanaAdapter:
        return self.adapters.get(self.network)

    async def deliver(self, batch: LogBatch) -> int:
        result = self.adapter.create_decoder().decode(batch)
        return await self.reconciler.handle_batch(self.network, batch, result)

    async def add_trade(self, trade_id: int, **values: Any) -> None:
        async with self.factory() as session:
            session.add(Trade(id=trade_id, network_id=self.network.id, **values))
            await session.commit()


async def build_harness() -> tuple[Any, Harness]:
    engine, factory = await init_database()
    settings = Settings(
        escrow_monitor_enabled=True,
        auto_cancel_delay_seconds=0,
        default_testnet_network="solana-devnet",
    )
    networks = NetworkRegistry(factory, settings)
    network = await networks.create(
        name="solana-devnet",
        network_family=NetworkFamily.SOLANA,
        chain_id=103,
        rpc_url="https://api.devnet.solana.com",
        ws_url="wss://api.devnet.solana.com",
        program_id=str(Pubkey.new_unique()),
        usdc_mint=str(Pubkey.new_unique()),
        is_testnet=True,
    )
    adapters = ChainAdapterRegistry(settings, factory=SimulatedSolanaAdapter)
    harness = Harness(
        factory=factory,
        settings=settings,
        networks=networks,
        adapters=adapters,
        reconciler=Reconciler(factory),
        network=network,
    )
    return engine, harness


# ===========================================================================
# Scenarios
# ===========================================================================
async def scenario_1_lifecycle(h: Harness) -> None:
    banner("SCENARIO 1: Create -> Fund -> Deadline -> Auto-cancel")
    program_id = h.network.program_id
    parties = Parties()
    now = datetime.now(UTC)
    await h.add_trade(
        TRADE_ID,
        leg1_escrow_deposit_deadline=now + timedelta(hours=1),
        leg1_fiat_payment_deadline=now + timedelta(hours=2),
    )

    section("EscrowCreated")
    await h.deliver(escrow_created(program_id, parties, ESCROW_ID, TRADE_ID, slot=1_000))
    await print_ledger(h.factory, TRADE_ID)

    section("FundsDeposited")
    await h.deliver(funds_deposited(program_id, parties, ESCROW_ID, TRADE_ID, slot=1_001))
    await print_ledger(h.factory, TRADE_ID)

    section("Fiat deadline passes; monitor sweep")
    async with h.factory() as session:
        trade = await session.get(Trade, TRADE_ID)
        trade.leg1_fiat_payment_deadline = now - timedelta(minutes=5)
        await session.commit()
    monitor = DeadlineMonitor(h.factory, h.networks, h.adapters, h.settings)
    summary = await monitor.run_once()
    print(f"  Sweep: {summary.to_dict()}")

    submitted = h.adapter.submitted
    if not submitted:
        print("  No escrow was submitted for cancellation")
        return
    async with h.factory() as session:
        from sqlalchemy import select

        attempt = (
            await session.execute(
                select(ContractAutoCancellation).where(
                    ContractAutoCancellation.escrow_id == submitted[-1].escrow_db_id,
                    ContractAutoCancellation.status == "SUCCESS",
                )
            )
        ).scalar_one()

    section("EscrowCancelled arrives for the monitor's signature")
    await h.deliver(
        escrow_cancelled(
            program_id, parties, ESCROW_ID, TRADE_ID, slot=2_000, tx_id=attempt.transaction_hash
        )
    )
    await print_ledger(h.factory, TRADE_ID)


async def scenario_2_isolation(h: Harness) -> None:
    banner("SCENARIO 2: FIAT_PAID trade past its deposit deadline")
    trade_id = TRADE_ID + 1
    past = datetime.now(UTC) - timedelta(hours=1)
    await h.add_trade(
        trade_id,
        leg1_state="FIAT_PAID",
        leg1_escrow_onchain_id="22222",
        leg1_escrow_deposit_deadline=past,
    )
    async with h.factory() as session:
        session.add(
            Escrow(
                trade_id=trade_id,
                network_id=h.network.id,
                onchain_escrow_id="22222",
                amount=Decimal("10"),
                current_balance=Decimal("10"),
                state="FUNDED",
                fiat_paid=True,
            )
        )
        await session.commit()

    before = len(h.adapter.submitted)
    monitor = DeadlineMonitor(h.factory, h.networks, h.adapters, h.settings)
    summary = await monitor.run_once()
    print(f"  Sweep: {summary.to_dict()}")
    print(f"  New submissions: {len(h.adapter.submitted) - before}")

    async with h.factory() as session:
        trade = await session.get(Trade, trade_id)
        trade.leg1_escrow_address = "updated-without-state-change"
        await session.commit()
    print("  Unrelated update to the FIAT_PAID trade accepted by the trigger")
    await print_ledger(h.factory, trade_id)


async def scenario_3_replay(h: Harness) -> None:
    banner("SCENARIO 3: Duplicate delivery")
    trade_id = TRADE_ID + 2
    parties = Parties()
    await h.add_trade(trade_id)
    batch = escrow_created(h.network.program_id, parties, 33333, trade_id, slot=3_000)

    listener = NetworkListener(h.network, h.adapters, h.reconciler, h.settings)
    print(f"  First delivery queued:  {listener.accept(batch)}")
    print(f"  Second delivery queued: {listener.accept(batch)}")

    await h.deliver(batch)
    await h.deliver(batch)
    print("  Reconciled twice anyway; the ledger holds one escrow and one transaction:")
    await print_ledger(h.factory, trade_id)


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    1: scenario_1_lifecycle,
    2: scenario_2_isolation,
    3: scenario_3_replay,
}


async def run(scenario: int = 0) -> None:
    engine, harness = await build_harness()
    try:
        print("\n  ESCROW SYNC: DRY-RUN REPLAY (SQLite in-memory, simulated chain)\n")
        selected = SCENARIOS.values() if scenario == 0 else [SCENARIOS.get(scenario)]
        for run_scenario in selected:
            if run_scenario is None:
                print(f"Unknown scenario {scenario}. Available: 1, 2, 3")
                return
            await run_scenario(harness)
        print("\n" + "=" * 70)
        print("  ALL SCENARIOS COMPLETED")
        print("=" * 70 + "\n")
    finally:
        await harness.adapters.aclose()
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Escrow Sync dry-run replay")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1, 2, or 3). Default: run all.",
    )
    args = parser.parse_args()
    asyncio.run(run(args.scenario))
