"""Escrow intake: records an escrow a client created on-chain.

The client submits the creation transaction itself, then reports it here so
the ledger knows about the escrow before the listener sees the event. The
record is validated against the target network's chain family, then in one
unit of work:
    1. The escrow row is inserted or its descriptive columns refreshed.
       State and balance are left alone; those only move through events.
    2. The id mapping and the trade leg's escrow reference are filled.
    3. A CREATE_ESCROW ledger row (SUCCESS) is upserted.

If the unit fails, a FAILED ledger row is written in a fresh session and the
original error is re-raised to the caller.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from escrow_sync.domain.enums import NetworkFamily, TransactionStatus, TransactionType
from escrow_sync.domain.exceptions import (
    EscrowSyncError,
    InvalidEscrowRecordError,
    TradeNotFoundError,
)
from escrow_sync.domain.models import usdc_from_raw
from escrow_sync.infrastructure.database.repositories import (
    EscrowIdMappingRepository,
    EscrowRepository,
    TradeRepository,
    TransactionRepository,
)
from escrow_sync.logging_config import get_logger
from escrow_sync.schemas.escrow import EscrowRecordResponse
from escrow_sync.services.ledger import failure_message, ledger_metadata, record_transaction

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_sync.chains.base import ChainAdapter
    from escrow_sync.chains.network_registry import NetworkRegistry
    from escrow_sync.chains.registry import ChainAdapterRegistry
    from escrow_sync.domain.models import NetworkConfig
    from escrow_sync.schemas.escrow import EscrowRecordRequest

logger = get_logger(__name__)


def validate_record(
    request: EscrowRecordRequest, network: NetworkConfig, adapter: ChainAdapter
) -> str:
    """Check a record against its network's chain family; return its tx id.

    Raises:
        InvalidEscrowRecordError: On the first field that does not fit.
    """
    if network.family is NetworkFamily.EVM:
        if not request.transaction_hash or not adapter.validate_transaction_hash(
            request.transaction_hash
        ):
            raise InvalidEscrowRecordError("transaction_hash", "a valid EVM transaction hash is required")
        tx_id = request.transaction_hash
    else:
        if not request.signature or not adapter.validate_transaction_hash(request.signature):
            raise InvalidEscrowRecordError("signature", "a valid Solana signature is required")
        for field in ("program_id", "escrow_pda", "escrow_token_account"):
            value = getattr(request, field)
            if not value or not adapter.validate_address(value):
                raise InvalidEscrowRecordError(field, "a valid Solana address is required")
        if request.trade_onchain_id is None:
            raise InvalidEscrowRecordError("trade_onchain_id", "required for Solana escrows")
        if network.program_id and request.program_id != network.program_id:
            raise InvalidEscrowRecordError(
                "program_id", f"does not match the program configured for {network.name}"
            )
        tx_id = request.signature

    for field in ("seller", "buyer"):
        if not adapter.validate_address(getattr(request, field)):
            raise InvalidEscrowRecordError(field, f"not a valid {network.family.value} address")
    if request.sequential_escrow_address is not None and not adapter.validate_address(
        request.sequential_escrow_address
    ):
        raise InvalidEscrowRecordError(
            "sequential_escrow_address", f"not a valid {network.family.value} address"
        )
    return tx_id


class EscrowIntakeService:
    """Validates and records client-reported escrows.

    Usage:
        intake = EscrowIntakeService(session_factory, networks, adapters)
        response = await intake.record(request)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        networks: NetworkRegistry,
        adapters: ChainAdapterRegistry,
    ) -> None:
        self._session_factory = session_factory
        self._networks = networks
        self._adapters = adapters

    async def resolve_network(self, network_id: int | None) -> NetworkConfig:
        """The requested network, or the environment default; must be active."""
        if network_id is None:
            network = await self._networks.get_default()
            return await self._networks.validate(network.id)
        return await self._networks.validate(network_id)

    async def record(self, request: EscrowRecordRequest) -> EscrowRecordResponse:
        network = await self.resolve_network(request.network_id)
        adapter = self._adapters.get(network)
        tx_id = validate_record(request, network, adapter)
        log = logger.bind(
            network=network.name,
            trade_id=request.trade_id,
            escrow_id=request.escrow_id,
            tx_id=tx_id,
        )

        try:
            escrow_db_id, transaction_id = await self._record_unit(request, network, tx_id)
        except EscrowSyncError as exc:
            if not isinstance(exc, TradeNotFoundError):
                await self._record_failure(request, network, tx_id, exc)
            raise
        except Exception as exc:
            log.error("intake.record_failed", error=str(exc), exc_info=True)
            await self._record_failure(request, network, tx_id, exc)
            raise

        log.info("intake.escrow_recorded", escrow_db_id=escrow_db_id)
        return EscrowRecordResponse(
            escrow_id=request.escrow_id,
            escrow_db_id=escrow_db_id,
            transaction_id=transaction_id,
            tx_id=tx_id,
            network_family=network.family.value,
            block_explorer_url=adapter.get_block_explorer_url(tx_id),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _record_unit(
        self, request: EscrowRecordRequest, network: NetworkConfig, tx_id: str
    ) -> tuple[int, int]:
        async with self._session_factory() as session:
            try:
                trades = TradeRepository(session)
                trade = await trades.get(request.trade_id, network.id)
                if trade is None:
                    raise TradeNotFoundError(request.trade_id, network.id)
                leg = request.leg or TradeRepository.leg_for_escrow(trade, request.escrow_id)

                escrows = EscrowRepository(session)
                existing = await escrows.get_by_onchain_id(request.escrow_id, network.id)
                if existing is not None and existing.trade_id != request.trade_id:
                    raise InvalidEscrowRecordError(
                        "trade_id",
                        f"escrow {request.escrow_id} belongs to trade {existing.trade_id}",
                    )

                escrow_address = self._escrow_address(request, network)
                escrow_db_id = await escrows.upsert_record(
                    self._escrow_values(request, network, escrow_address)
                )
                await EscrowIdMappingRepository(session).upsert(
                    request.escrow_id, network.id, escrow_db_id
                )
                await trades.set_leg_escrow(
                    request.trade_id, network.id, leg, request.escrow_id, escrow_address
                )
                transaction_id = await TransactionRepository(session).record(
                    tx_id=tx_id,
                    network_id=network.id,
                    network_family=network.family,
                    status=TransactionStatus.SUCCESS,
                    type=TransactionType.CREATE_ESCROW,
                    sender_address=request.seller,
                    receiver_address=escrow_address,
                    error_message=ledger_metadata(source="intake", leg=leg),
                    related_trade_id=request.trade_id,
                    related_escrow_db_id=escrow_db_id,
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return escrow_db_id, transaction_id

    @staticmethod
    def _escrow_address(request: EscrowRecordRequest, network: NetworkConfig) -> str | None:
        if network.family is NetworkFamily.SOLANA:
            return request.escrow_pda
        return network.contract_address

    @staticmethod
    def _escrow_values(
        request: EscrowRecordRequest, network: NetworkConfig, escrow_address: str | None
    ) -> dict:
        values = {
            "trade_id": request.trade_id,
            "network_id": network.id,
            "onchain_escrow_id": request.escrow_id,
            "escrow_address": escrow_address,
            "seller_address": request.seller,
            "buyer_address": request.buyer,
            "arbitrator_address": network.arbitrator_address,
            "amount": usdc_from_raw(request.amount),
            "sequential": request.sequential,
            "sequential_escrow_address": request.sequential_escrow_address,
            "deposit_deadline": request.deposit_deadline,
            "fiat_deadline": request.fiat_deadline,
        }
        if network.family is NetworkFamily.SOLANA:
            values.update(
                program_id=request.program_id,
                escrow_pda=request.escrow_pda,
                escrow_token_account=request.escrow_token_account,
                trade_onchain_id=request.trade_onchain_id,
            )
        return values

    async def _record_failure(
        self,
        request: EscrowRecordRequest,
        network: NetworkConfig,
        tx_id: str,
        exc: BaseException,
    ) -> None:
        try:
            await record_transaction(
                session_factory=self._session_factory,
                tx_id=tx_id,
                network_id=network.id,
                network_family=network.family,
                status=TransactionStatus.FAILED,
                type=TransactionType.CREATE_ESCROW,
                sender_address=request.seller,
                error_message=failure_message(exc),
                related_trade_id=request.trade_id,
            )
        except Exception as record_exc:
            logger.error(
                "intake.failure_record_failed",
                network=network.name,
                tx_id=tx_id,
                error=str(record_exc),
            )
