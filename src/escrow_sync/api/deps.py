"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject the process
runtime and its services.
"""

from __future__ import annotations

from fastapi import Depends, Request

from escrow_sync.runtime import SyncRuntime  # noqa: TC001 - resolved by FastAPI
from escrow_sync.services.escrow_intake import EscrowIntakeService
from escrow_sync.services.escrow_reads import EscrowReadService


def get_runtime(request: Request) -> SyncRuntime:
    """Provide the runtime created by the application lifespan."""
    return request.app.state.runtime


def get_intake_service(runtime: SyncRuntime = Depends(get_runtime)) -> EscrowIntakeService:
    return runtime.intake


def get_read_service(runtime: SyncRuntime = Depends(get_runtime)) -> EscrowReadService:
    return runtime.reads
