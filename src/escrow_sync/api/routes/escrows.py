"""Escrow REST API routes.

Routes:
    POST   /api/v1/escrows/record                              Record a client-created escrow
    GET    /api/v1/escrows/{escrow_id}                         Ledger view of an escrow
    GET    /api/v1/escrows/{escrow_id}/stored-balance          On-chain stored balance
    GET    /api/v1/escrows/{escrow_id}/calculated-balance      On-chain calculated balance
    GET    /api/v1/escrows/{escrow_id}/sequential-info         Sequential escrow details
    GET    /api/v1/escrows/{escrow_id}/auto-cancel-eligible    Auto-cancel eligibility

`escrow_id` is the chain-native id; `network_id` selects the network and
defaults to the environment's default network.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from escrow_sync.api.deps import get_intake_service, get_read_service
from escrow_sync.logging_config import get_logger
from escrow_sync.schemas.escrow import (
    AutoCancelEligibilityResponse,
    BalanceResponse,
    EscrowRecordRequest,
    EscrowRecordResponse,
    EscrowResponse,
    SequentialInfoResponse,
)
from escrow_sync.services.escrow_intake import EscrowIntakeService  # noqa: TC001 - resolved by FastAPI
from escrow_sync.services.escrow_reads import EscrowReadService  # noqa: TC001

router = APIRouter(prefix="/api/v1/escrows", tags=["Escrows"])
logger = get_logger(__name__)

_NETWORK_QUERY = Query(default=None, description="Network id; the default network when omitted")


# ---------------------------------------------------------------------------
# Record
# ---------------------------------------------------------------------------


@router.post(
    "/record",
    response_model=EscrowRecordResponse,
    status_code=201,
    summary="Record an escrow created on-chain",
)
async def record_escrow(
    request: EscrowRecordRequest,
    intake: EscrowIntakeService = Depends(get_intake_service),
) -> EscrowRecordResponse:
    """Validate the record for its network and write escrow, mapping and ledger rows."""
    return await intake.record(request)


# ---------------------------------------------------------------------------
# Ledger view
# ---------------------------------------------------------------------------


@router.get(
    "/{escrow_id}",
    response_model=EscrowResponse,
    summary="Get the ledger view of an escrow",
)
async def get_escrow(
    escrow_id: str,
    network_id: int | None = _NETWORK_QUERY,
    reads: EscrowReadService = Depends(get_read_service),
) -> EscrowResponse:
    escrow = await reads.ledger_escrow(escrow_id, network_id)
    return EscrowResponse.model_validate(escrow)


# ---------------------------------------------------------------------------
# On-chain reads
# ---------------------------------------------------------------------------


@router.get(
    "/{escrow_id}/stored-balance",
    response_model=BalanceResponse,
    summary="Stored balance reported by the contract or token account",
)
async def get_stored_balance(
    escrow_id: str,
    network_id: int | None = _NETWORK_QUERY,
    reads: EscrowReadService = Depends(get_read_service),
) -> BalanceResponse:
    network, balance = await reads.stored_balance(escrow_id, network_id)
    return BalanceResponse(network=network, escrow_id=escrow_id, balance=balance)


@router.get(
    "/{escrow_id}/calculated-balance",
    response_model=BalanceResponse,
    summary="Balance calculated by the contract from its deposits",
)
async def get_calculated_balance(
    escrow_id: str,
    network_id: int | None = _NETWORK_QUERY,
    reads: EscrowReadService = Depends(get_read_service),
) -> BalanceResponse:
    network, balance = await reads.calculated_balance(escrow_id, network_id)
    return BalanceResponse(network=network, escrow_id=escrow_id, balance=balance)


@router.get(
    "/{escrow_id}/sequential-info",
    response_model=SequentialInfoResponse,
    summary="Sequential escrow details",
)
async def get_sequential_info(
    escrow_id: str,
    network_id: int | None = _NETWORK_QUERY,
    reads: EscrowReadService = Depends(get_read_service),
) -> SequentialInfoResponse:
    network, info = await reads.sequential_info(escrow_id, network_id)
    return SequentialInfoResponse(network=network, escrow_id=escrow_id, sequential_info=info)


@router.get(
    "/{escrow_id}/auto-cancel-eligible",
    response_model=AutoCancelEligibilityResponse,
    summary="Whether the contract would accept an auto-cancel now",
)
async def get_auto_cancel_eligibility(
    escrow_id: str,
    network_id: int | None = _NETWORK_QUERY,
    reads: EscrowReadService = Depends(get_read_service),
) -> AutoCancelEligibilityResponse:
    network, eligible = await reads.auto_cancel_eligible(escrow_id, network_id)
    return AutoCancelEligibilityResponse(
        network=network, escrow_id=escrow_id, is_eligible_for_auto_cancel=eligible
    )
