"""Pydantic schemas for networks and service health."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class NetworkResponse(BaseModel):
    """Public view of a configured network (no credentials)."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    family: str
    chain_id: int
    contract_address: str | None = None
    program_id: str | None = None
    usdc_mint: str | None = None
    block_explorer_url: str | None = None
    is_testnet: bool
    is_active: bool


class NetworkInfoResponse(BaseModel):
    """Adapter diagnostics for one network."""

    network: NetworkResponse
    program_exists: bool | None = None
    info: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class ListenerStatus(BaseModel):
    network: str
    network_id: int
    family: str
    state: str
    processed_batches: int = 0
    duplicate_batches: int = 0
    detail: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Overall status: ok, degraded, or error")
    version: str
    database: str
    listeners: list[ListenerStatus] = Field(default_factory=list)
    monitor_running: bool = False
