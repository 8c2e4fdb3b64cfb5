"""Tests for the DeadlineMonitor sweep and its scheduler wiring."""

from __future__ import annotations

import json
from datetime import timedelta
from decimal import Decimal

import pytest

from escrow_sync.chains.registry import ChainAdapterRegistry
from escrow_sync.domain.enums import NetworkFamily
from escrow_sync.domain.exceptions import UnsupportedChainOperationError
from escrow_sync.infrastructure.database.orm_models import Escrow, Trade
from escrow_sync.infrastructure.database.repositories import AutoCancellationRepository
from escrow_sync.services.deadline_monitor import DeadlineMonitor
from tests.helpers import FakeAdapter, fetch, make_escrow, make_trade, utcnow


async def _expired_escrow(session_factory, network, onchain_id: str = "12345", **trade_values):  # noqa: ANN001, ANN003, ANN202
    """A FUNDED leg-1 escrow whose fiat deadline passed an hour ago."""
    values = {
        "leg1_state": "FUNDED",
        "leg1_escrow_onchain_id": onchain_id,
        "leg1_fiat_payment_deadline": utcnow() - timedelta(hours=1),
    }
    values.update(trade_values)
    trade_id = await make_trade(session_factory, network.id, **values)
    escrow_id = await make_escrow(
        session_factory,
        trade_id,
        network.id,
        onchain_id,
        state="FUNDED",
        current_balance=Decimal("50"),
    )
    return trade_id, escrow_id


async def _attempts(session_factory, escrow_id: int, network_id: int) -> list:  # noqa: ANN001
    async with session_factory() as session:
        return await AutoCancellationRepository(session).list_for_escrow(escrow_id, network_id)


def _registry(settings, **adapter_options) -> ChainAdapterRegistry:  # noqa: ANN001, ANN003
    """Adapter registry whose FakeAdapters all take `adapter_options`."""
    return ChainAdapterRegistry(
        settings, factory=lambda network, _settings: FakeAdapter(network, **adapter_options)
    )


@pytest.fixture
def monitor(session_factory, network_registry, fake_adapters, settings) -> DeadlineMonitor:  # noqa: ANN001
    return DeadlineMonitor(session_factory, network_registry, fake_adapters, settings)


class TestSweep:
    @pytest.mark.asyncio
    async def test_submits_expired_escrow(
        self, monitor, session_factory, solana_network, fake_adapters
    ) -> None:
        trade_id, escrow_id = await _expired_escrow(session_factory, solana_network)

        summary = await monitor.run_once()

        assert summary.to_dict() == {
            "checked": 1,
            "submitted": 1,
            "succeeded": 1,
            "failed": 0,
            "skipped": 0,
        }
        adapter = fake_adapters.get(solana_network)
        assert [t.escrow_db_id for t in adapter.submitted] == [escrow_id]
        assert adapter.submitted[0].leg == 1
        assert adapter.submitted[0].trade_id == trade_id

        attempts = await _attempts(session_factory, escrow_id, solana_network.id)
        assert [a.status for a in attempts] == ["BALANCE_CHECK", "SUCCESS"]
        audit = json.loads(attempts[0].error_message)
        assert audit["mismatch"] is False
        assert audit["stored_balance"] == "50"
        assert attempts[1].transaction_hash is not None

    @pytest.mark.asyncio
    async def test_state_left_to_the_reconciler(self, monitor, session_factory, solana_network) -> None:
        trade_id, escrow_id = await _expired_escrow(session_factory, solana_network)

        await monitor.run_once()

        assert (await fetch(session_factory, Escrow, escrow_id)).state == "FUNDED"
        trade = await fetch(session_factory, Trade, trade_id)
        assert trade.leg1_state == "FUNDED"
        assert trade.overall_status == "IN_PROGRESS"

    @pytest.mark.asyncio
    async def test_second_sweep_skips_attempted_escrow(self, monitor, session_factory, solana_network) -> None:
        await _expired_escrow(session_factory, solana_network)

        await monitor.run_once()
        summary = await monitor.run_once()

        assert summary.checked == 0

    @pytest.mark.asyncio
    async def test_fiat_paid_leg_untouched(self, monitor, session_factory, solana_network) -> None:
        await _expired_escrow(session_factory, solana_network, leg1_state="FIAT_PAID")
        assert (await monitor.run_once()).checked == 0

    @pytest.mark.asyncio
    async def test_deposit_deadline_only_applies_to_created_legs(
        self, monitor, session_factory, solana_network
    ) -> None:
        await _expired_escrow(
            session_factory,
            solana_network,
            leg1_fiat_payment_deadline=None,
            leg1_escrow_deposit_deadline=utcnow() - timedelta(hours=1),
        )
        assert (await monitor.run_once()).checked == 0

    @pytest.mark.asyncio
    async def test_delay_pushes_cutoff_back(
        self, session_factory, network_registry, fake_adapters, settings, solana_network
    ) -> None:
        await _expired_escrow(session_factory, solana_network)
        monitor = DeadlineMonitor(
            session_factory,
            network_registry,
            fake_adapters,
            settings.model_copy(update={"auto_cancel_delay_seconds": 7200}),
        )
        assert (await monitor.run_once()).checked == 0

    @pytest.mark.asyncio
    async def test_balance_mismatch_recorded(
        self, session_factory, network_registry, settings, solana_network
    ) -> None:
        _, escrow_id = await _expired_escrow(session_factory, solana_network)
        adapters = _registry(settings, stored_balance=Decimal("10"))

        await DeadlineMonitor(session_factory, network_registry, adapters, settings).run_once()

        attempts = await _attempts(session_factory, escrow_id, solana_network.id)
        audit = json.loads(attempts[0].error_message)
        assert audit["mismatch"] is True
        assert audit["stored_balance"] == "10"


class TestFailures:
    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_sweep(
        self, session_factory, network_registry, settings, solana_network, evm_network
    ) -> None:
        def factory(network, _settings):  # noqa: ANN001, ANN202
            if network.family is NetworkFamily.EVM:
                return FakeAdapter(network, submit_error=RuntimeError("rpc down"))
            return FakeAdapter(network)

        _, solana_escrow = await _expired_escrow(session_factory, solana_network)
        _, evm_escrow = await _expired_escrow(session_factory, evm_network, onchain_id="7")
        adapters = ChainAdapterRegistry(settings, factory=factory)

        summary = await DeadlineMonitor(session_factory, network_registry, adapters, settings).run_once()

        assert summary.checked == 2
        assert summary.submitted == 2
        assert summary.succeeded == 1
        assert summary.failed == 1
        evm_attempts = await _attempts(session_factory, evm_escrow, evm_network.id)
        assert evm_attempts[-1].status == "FAILED"
        assert "rpc down" in evm_attempts[-1].error_message
        solana_attempts = await _attempts(session_factory, solana_escrow, solana_network.id)
        assert solana_attempts[-1].status == "SUCCESS"

    @pytest.mark.asyncio
    async def test_reverted_submission_marked_failed(
        self, session_factory, network_registry, settings, solana_network
    ) -> None:
        _, escrow_id = await _expired_escrow(session_factory, solana_network)
        adapters = _registry(settings, submit_success=False)

        summary = await DeadlineMonitor(session_factory, network_registry, adapters, settings).run_once()

        assert summary.failed == 1
        attempt = (await _attempts(session_factory, escrow_id, solana_network.id))[-1]
        assert attempt.status == "FAILED"
        assert attempt.transaction_hash is not None
        assert attempt.error_message == "transaction reverted"

    @pytest.mark.asyncio
    async def test_failed_attempt_not_retried_automatically(
        self, session_factory, network_registry, settings, solana_network
    ) -> None:
        # A FAILED attempt does not block the next sweep
        await _expired_escrow(session_factory, solana_network)
        adapters = _registry(settings, submit_error=RuntimeError("rpc down"))
        monitor = DeadlineMonitor(session_factory, network_registry, adapters, settings)

        await monitor.run_once()
        assert (await monitor.run_once()).checked == 1


class TestSkips:
    @pytest.mark.asyncio
    async def test_ineligible_escrow_skipped(
        self, session_factory, network_registry, settings, solana_network
    ) -> None:
        _, escrow_id = await _expired_escrow(session_factory, solana_network)
        adapters = _registry(settings, eligible=False)

        summary = await DeadlineMonitor(session_factory, network_registry, adapters, settings).run_once()

        assert summary.skipped == 1
        assert summary.submitted == 0
        assert await _attempts(session_factory, escrow_id, solana_network.id) == []

    @pytest.mark.asyncio
    async def test_unsupported_eligibility_check_proceeds(
        self, session_factory, network_registry, settings, solana_network
    ) -> None:
        await _expired_escrow(session_factory, solana_network)
        adapters = _registry(
            settings,
            eligible=UnsupportedChainOperationError("solana", "is_eligible_for_auto_cancel"),
        )

        summary = await DeadlineMonitor(session_factory, network_registry, adapters, settings).run_once()
        assert summary.succeeded == 1

    @pytest.mark.asyncio
    async def test_inactive_network_skipped(
        self, monitor, session_factory, network_registry, solana_network
    ) -> None:
        await _expired_escrow(session_factory, solana_network)
        await network_registry.deactivate(solana_network.id)

        summary = await monitor.run_once()
        assert summary.skipped == 1
        assert summary.submitted == 0

    @pytest.mark.asyncio
    async def test_unsupported_balance_read_skips_audit(
        self, session_factory, network_registry, settings, solana_network
    ) -> None:
        _, escrow_id = await _expired_escrow(session_factory, solana_network)
        adapters = _registry(
            settings, stored_balance=UnsupportedChainOperationError("solana", "get_stored_balance")
        )

        await DeadlineMonitor(session_factory, network_registry, adapters, settings).run_once()

        attempts = await _attempts(session_factory, escrow_id, solana_network.id)
        assert [a.status for a in attempts] == ["SUCCESS"]


class TestScheduling:
    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, monitor) -> None:
        monitor.start()
        assert monitor.running
        monitor.start()  # idempotent
        monitor.shutdown()
        assert not monitor.running
        monitor.shutdown()

    @pytest.mark.asyncio
    async def test_disabled_monitor_never_schedules(
        self, session_factory, network_registry, fake_adapters, settings
    ) -> None:
        disabled = settings.model_copy(update={"escrow_monitor_enabled": False})
        monitor = DeadlineMonitor(session_factory, network_registry, fake_adapters, disabled)

        monitor.start()
        assert not monitor.running
