"""Network REST API routes (read-only).

Routes:
    GET    /api/v1/networks              Active networks
    GET    /api/v1/networks/{id}/info    Adapter diagnostics for one network
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from escrow_sync.api.deps import get_runtime
from escrow_sync.domain.exceptions import ChainAdapterError
from escrow_sync.domain.models import NetworkConfig  # noqa: TC001
from escrow_sync.logging_config import get_logger
from escrow_sync.runtime import SyncRuntime  # noqa: TC001 - resolved by FastAPI
from escrow_sync.schemas.network import NetworkInfoResponse, NetworkResponse

router = APIRouter(prefix="/api/v1/networks", tags=["Networks"])
logger = get_logger(__name__)


def _to_response(network: NetworkConfig) -> NetworkResponse:
    return NetworkResponse(
        id=network.id,
        name=network.name,
        family=network.family.value,
        chain_id=network.chain_id,
        contract_address=network.contract_address,
        program_id=network.program_id,
        usdc_mint=network.usdc_mint,
        block_explorer_url=network.block_explorer_url,
        is_testnet=network.is_testnet,
        is_active=network.is_active,
    )


@router.get(
    "",
    response_model=list[NetworkResponse],
    summary="List active networks",
)
async def list_networks(runtime: SyncRuntime = Depends(get_runtime)) -> list[NetworkResponse]:
    return [_to_response(network) for network in await runtime.networks.get_active()]


@router.get(
    "/{network_id}/info",
    response_model=NetworkInfoResponse,
    summary="Adapter diagnostics for a network",
)
async def get_network_info(
    network_id: int,
    runtime: SyncRuntime = Depends(get_runtime),
) -> NetworkInfoResponse:
    """Chain id, node version, latest block/slot and whether the program is deployed.

    RPC failures are reported in the body instead of failing the request.
    """
    network = await runtime.networks.validate(network_id)
    adapter = runtime.adapters.get(network)
    response = NetworkInfoResponse(network=_to_response(network))
    try:
        response.info = await adapter.get_network_info()
        response.program_exists = await adapter.program_exists()
    except ChainAdapterError as exc:
        logger.warning("networks.info_failed", network=network.name, error=exc.message)
        response.error = exc.message
    return response
