"""Pydantic schemas for the escrow API.

These schemas define the request/response shapes for the REST API. They are
separate from the ORM models to keep the API and database layers apart.
Chain-specific validation (address formats, signature shapes) happens in the
intake service, which knows the network family.
"""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - pydantic resolves annotations at runtime
from decimal import Decimal  # noqa: TC003
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class EscrowRecordRequest(BaseModel):
    """Request body for recording an escrow created on-chain by a client."""

    network_id: int | None = Field(
        default=None,
        description="Target network; the environment's default network when omitted",
    )
    trade_id: int = Field(..., gt=0, description="Database id of the trade")
    transaction_hash: str | None = Field(
        default=None,
        description="EVM transaction hash (0x + 64 hex chars)",
        examples=["0x" + "ab" * 32],
    )
    signature: str | None = Field(
        default=None,
        description="Solana transaction signature (base58, 87-88 chars)",
    )
    escrow_id: str = Field(
        ...,
        pattern=r"^\d+$",
        max_length=80,
        description="Chain-native escrow id as a decimal string",
        examples=["12345"],
    )
    seller: str = Field(..., min_length=1, max_length=64)
    buyer: str = Field(..., min_length=1, max_length=64)
    amount: int = Field(
        ...,
        gt=0,
        description="Escrow amount in raw USDC units (6 decimals)",
        examples=[50_000_000],
    )
    sequential: bool = False
    sequential_escrow_address: str | None = Field(default=None, max_length=64)
    leg: int | None = Field(default=None, ge=1, le=2)
    deposit_deadline: datetime | None = None
    fiat_deadline: datetime | None = None

    # --- Solana only ---
    program_id: str | None = Field(default=None, max_length=64)
    escrow_pda: str | None = Field(default=None, max_length=64)
    escrow_token_account: str | None = Field(default=None, max_length=64)
    trade_onchain_id: str | None = Field(default=None, pattern=r"^\d+$", max_length=80)

    @model_validator(mode="after")
    def _check_sequential(self) -> EscrowRecordRequest:
        if self.sequential and not self.sequential_escrow_address:
            raise ValueError("sequential_escrow_address must be provided when sequential is true")
        return self

    @property
    def tx_id(self) -> str | None:
        return self.transaction_hash or self.signature


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class EscrowRecordResponse(BaseModel):
    """Result of recording an escrow."""

    success: bool = True
    escrow_id: str
    escrow_db_id: int
    transaction_id: int
    tx_id: str
    network_family: str
    block_explorer_url: str


class EscrowResponse(BaseModel):
    """Ledger view of one escrow."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    trade_id: int
    network_id: int
    onchain_escrow_id: str | None
    escrow_address: str | None
    program_id: str | None
    escrow_pda: str | None
    escrow_token_account: str | None
    seller_address: str | None
    buyer_address: str | None
    amount: Decimal
    current_balance: Decimal
    state: str
    fiat_paid: bool
    sequential: bool
    sequential_escrow_address: str | None
    counter: int
    deposit_deadline: datetime | None
    fiat_deadline: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


class BalanceResponse(BaseModel):
    network: str
    escrow_id: str
    balance: Decimal


class SequentialInfoResponse(BaseModel):
    network: str
    escrow_id: str
    sequential_info: dict[str, Any]


class AutoCancelEligibilityResponse(BaseModel):
    network: str
    escrow_id: str
    is_eligible_for_auto_cancel: bool
