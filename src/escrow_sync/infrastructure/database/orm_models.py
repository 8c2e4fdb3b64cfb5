"""SQLAlchemy 2.0 ORM models for the escrow ledger.

Seven tables:
    1. networks                     - Chain configuration, one row per network.
    2. trades                       - Two-leg trades whose legs mirror escrows.
    3. escrows                      - Off-chain mirror of on-chain escrows.
    4. escrow_id_mapping            - Chain-native escrow id -> escrows.id.
    5. transactions                 - Idempotent ledger of on-chain actions.
    6. contract_auto_cancellations  - Audit trail of auto-cancel attempts.
    7. contract_events              - Raw decoded events, one row per log.

Design decisions:
    - Integer surrogate keys; chain-native ids are stored as strings so u64 /
      uint256 counters never lose precision.
    - Decimal for USDC amounts (no floating point rounding errors).
    - JSON columns become JSONB on PostgreSQL and plain JSON elsewhere, so the
      same models run against SQLite in tests and the simulation.
    - Every (chain id, network_id) pair is unique: two networks may share
      identical on-chain escrow ids without colliding.
    - CHECK constraints pin enum columns to their allowed values.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from escrow_sync.infrastructure.database.triggers import attach_deadline_trigger

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# 1. networks
# ---------------------------------------------------------------------------
class Network(Base):
    """A configured EVM or Solana network."""

    __tablename__ = "networks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    network_family: Mapped[str] = mapped_column(String(16), nullable=False)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    rpc_url: Mapped[str] = mapped_column(Text, nullable=False)
    ws_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- On-chain targets ---
    contract_address: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="Escrow contract address (EVM networks)",
    )
    program_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="Escrow program id (Solana networks)",
    )
    usdc_mint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    arbitrator_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    block_explorer_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_testnet: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "network_family IN ('evm', 'solana')",
            name="ck_networks_family",
        ),
        Index("idx_networks_active", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<Network id={self.id} name={self.name} family={self.network_family}>"


# ---------------------------------------------------------------------------
# 2. trades
# ---------------------------------------------------------------------------
_LEG_STATES = "('CREATED', 'FUNDED', 'FIAT_PAID', 'DISPUTED', 'RELEASED', 'RESOLVED', 'CANCELLED')"


class Trade(Base):
    """A trade with up to two legs, each backed by its own escrow."""

    __tablename__ = "trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    network_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("networks.id"), nullable=False
    )
    overall_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="IN_PROGRESS"
    )

    # --- Leg 1 ---
    leg1_state: Mapped[str | None] = mapped_column(String(20), nullable=True, default="CREATED")
    leg1_escrow_onchain_id: Mapped[str | None] = mapped_column(String(80), nullable=True)
    leg1_escrow_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    leg1_escrow_deposit_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    leg1_fiat_payment_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    leg1_fiat_paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    leg1_released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    leg1_cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # --- Leg 2 ---
    leg2_state: Mapped[str | None] = mapped_column(String(20), nullable=True)
    leg2_escrow_onchain_id: Mapped[str | None] = mapped_column(String(80), nullable=True)
    leg2_escrow_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    leg2_escrow_deposit_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    leg2_fiat_payment_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    leg2_fiat_paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    leg2_released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    leg2_cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "overall_status IN ('IN_PROGRESS', 'COMPLETED', 'CANCELLED', 'DISPUTED')",
            name="ck_trades_overall_status",
        ),
        CheckConstraint(f"leg1_state IS NULL OR leg1_state IN {_LEG_STATES}", name="ck_trades_leg1_state"),
        CheckConstraint(f"leg2_state IS NULL OR leg2_state IN {_LEG_STATES}", name="ck_trades_leg2_state"),
        Index("idx_trades_network_status", "network_id", "overall_status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Trade id={self.id} status={self.overall_status} "
            f"leg1={self.leg1_state} leg2={self.leg2_state}>"
        )


attach_deadline_trigger(Trade.__table__)


# ---------------------------------------------------------------------------
# 3. escrows
# ---------------------------------------------------------------------------
class Escrow(Base):
    """Off-chain mirror of one on-chain escrow account or contract entry."""

    __tablename__ = "escrows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trade_id: Mapped[int] = mapped_column(Integer, ForeignKey("trades.id"), nullable=False)
    network_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("networks.id"), nullable=False
    )
    onchain_escrow_id: Mapped[str | None] = mapped_column(
        String(80),
        nullable=True,
        comment="Chain-native escrow counter, string-encoded",
    )
    escrow_address: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="Contract address (EVM) or escrow PDA (Solana)",
    )

    # --- Solana specifics ---
    program_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    escrow_pda: Mapped[str | None] = mapped_column(String(64), nullable=True)
    escrow_token_account: Mapped[str | None] = mapped_column(String(64), nullable=True)
    trade_onchain_id: Mapped[str | None] = mapped_column(String(80), nullable=True)

    # --- Participants ---
    seller_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    buyer_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    arbitrator_address: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # --- Financials ---
    amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 6),
        nullable=False,
        default=Decimal(0),
        comment="Escrow amount in USDC (6 decimal precision)",
    )
    current_balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 6), nullable=False, default=Decimal(0)
    )

    state: Mapped[str] = mapped_column(String(20), nullable=False, default="CREATED")
    fiat_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sequential: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sequential_escrow_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    counter: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[str | None] = mapped_column(String(32), nullable=True)

    deposit_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    fiat_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("onchain_escrow_id", "network_id", name="uq_escrows_onchain_network"),
        CheckConstraint(
            "state IN ('CREATED', 'FUNDED', 'DISPUTED', 'RELEASED', 'RESOLVED', "
            "'CANCELLED', 'AUTO_CANCELLED')",
            name="ck_escrows_state",
        ),
        CheckConstraint("current_balance >= 0", name="ck_escrows_balance_non_negative"),
        Index("idx_escrows_trade", "trade_id"),
        Index("idx_escrows_state", "state"),
    )

    def __repr__(self) -> str:
        return (
            f"<Escrow id={self.id} onchain={self.onchain_escrow_id} "
            f"network={self.network_id} state={self.state}>"
        )


# ---------------------------------------------------------------------------
# 4. escrow_id_mapping
# ---------------------------------------------------------------------------
class EscrowIdMapping(Base):
    """Chain-native escrow id to database id, unique per network."""

    __tablename__ = "escrow_id_mapping"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    blockchain_id: Mapped[str] = mapped_column(String(80), nullable=False)
    database_id: Mapped[int] = mapped_column(Integer, ForeignKey("escrows.id"), nullable=False)
    network_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("networks.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("blockchain_id", "network_id", name="uq_escrow_id_mapping_chain_network"),
    )


# ---------------------------------------------------------------------------
# 5. transactions
# ---------------------------------------------------------------------------
class Transaction(Base):
    """Ledger row for one on-chain transaction, upserted and never deleted.

    `error_message` holds the failure reason when status is FAILED and a JSON
    metadata string otherwise.
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    signature: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    type: Mapped[str] = mapped_column(String(32), nullable=False)

    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    slot: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    sender_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    receiver_or_contract_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    gas_used: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    related_trade_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("trades.id"), nullable=True
    )
    related_escrow_db_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("escrows.id"), nullable=True
    )
    network_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("networks.id"), nullable=False
    )
    network_family: Mapped[str] = mapped_column(String(16), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("transaction_hash", "network_id", name="uq_transactions_hash_network"),
        UniqueConstraint("signature", "network_id", name="uq_transactions_signature_network"),
        CheckConstraint(
            "(transaction_hash IS NULL) <> (signature IS NULL)",
            name="ck_transactions_hash_xor_signature",
        ),
        CheckConstraint(
            "status IN ('PENDING', 'SUCCESS', 'FAILED')",
            name="ck_transactions_status",
        ),
        Index("idx_transactions_related_escrow", "related_escrow_db_id"),
        Index("idx_transactions_related_trade", "related_trade_id"),
    )

    @property
    def tx_id(self) -> str:
        return self.transaction_hash or self.signature or ""


# ---------------------------------------------------------------------------
# 6. contract_auto_cancellations
# ---------------------------------------------------------------------------
class ContractAutoCancellation(Base):
    """One auto-cancel attempt (or balance audit) for an escrow."""

    __tablename__ = "contract_auto_cancellations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    escrow_id: Mapped[int] = mapped_column(Integer, ForeignKey("escrows.id"), nullable=False)
    network_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("networks.id"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    transaction_hash: Mapped[str | None] = mapped_column(String(100), nullable=True)
    gas_used: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    gas_price: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'SUCCESS', 'FAILED', 'BALANCE_CHECK')",
            name="ck_auto_cancellations_status",
        ),
        Index("idx_auto_cancellations_escrow", "escrow_id", "network_id"),
    )


# ---------------------------------------------------------------------------
# 7. contract_events
# ---------------------------------------------------------------------------
class ContractEvent(Base):
    """Append-only copy of every decoded event."""

    __tablename__ = "contract_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    network_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("networks.id"), nullable=False
    )
    event_name: Mapped[str] = mapped_column(String(64), nullable=False)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    transaction_hash: Mapped[str] = mapped_column(String(100), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    args: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    trade_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    transaction_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("transactions.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint(
            "transaction_hash", "log_index", "network_id", name="uq_contract_events_tx_log_network"
        ),
        Index("idx_contract_events_name", "event_name"),
    )
