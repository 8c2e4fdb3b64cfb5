"""Health check endpoint.

Verifies database connectivity and reports each network listener's state.
Used by container healthchecks, load balancers, and monitoring systems.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from escrow_sync import __version__
from escrow_sync.api.deps import get_runtime
from escrow_sync.domain.enums import ListenerState
from escrow_sync.infrastructure.database.engine import query
from escrow_sync.logging_config import get_logger
from escrow_sync.runtime import SyncRuntime  # noqa: TC001 - resolved by FastAPI
from escrow_sync.schemas.network import HealthResponse, ListenerStatus

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns database connectivity and the per-network listener state.",
)
async def health_check(runtime: SyncRuntime = Depends(get_runtime)) -> HealthResponse:
    db_status = "unknown"
    try:
        await query("SELECT 1", session_factory=runtime.session_factory)
        db_status = "healthy"
    except Exception as exc:
        db_status = f"unhealthy: {exc}"
        logger.error("health.db_check_failed", error=str(exc))

    listeners = [ListenerStatus(**status) for status in runtime.supervisor.statuses()]
    if db_status != "healthy":
        overall = "error"
    elif any(listener.state == ListenerState.DEGRADED for listener in listeners):
        overall = "degraded"
    else:
        overall = "ok"

    return HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        listeners=listeners,
        monitor_running=runtime.monitor.running,
    )
