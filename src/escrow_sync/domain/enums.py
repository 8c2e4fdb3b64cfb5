"""Domain enumerations for the escrow sync engine.

These enums define the canonical states and types stored in the ledger.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class NetworkFamily(enum.StrEnum):
    """Blockchain family of a configured network."""

    EVM = "evm"
    SOLANA = "solana"


class EscrowState(enum.StrEnum):
    """Lifecycle states of an escrow row.

    Forward-only; see domain/state_machine.py for the lattice.
    """

    CREATED = "CREATED"
    FUNDED = "FUNDED"
    DISPUTED = "DISPUTED"
    RELEASED = "RELEASED"
    RESOLVED = "RESOLVED"
    CANCELLED = "CANCELLED"
    AUTO_CANCELLED = "AUTO_CANCELLED"


class LegState(enum.StrEnum):
    """Per-leg state of a trade, mirroring the leg's escrow."""

    CREATED = "CREATED"
    FUNDED = "FUNDED"
    FIAT_PAID = "FIAT_PAID"
    DISPUTED = "DISPUTED"
    RELEASED = "RELEASED"
    RESOLVED = "RESOLVED"
    CANCELLED = "CANCELLED"


class TradeStatus(enum.StrEnum):
    """Overall status of a trade."""

    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


class TransactionStatus(enum.StrEnum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class TransactionType(enum.StrEnum):
    """Escrow lifecycle actions recorded in the transactions ledger."""

    CREATE_ESCROW = "CREATE_ESCROW"
    FUND_ESCROW = "FUND_ESCROW"
    MARK_FIAT_PAID = "MARK_FIAT_PAID"
    RELEASE_ESCROW = "RELEASE_ESCROW"
    CANCEL_ESCROW = "CANCEL_ESCROW"
    AUTO_CANCEL = "AUTO_CANCEL"
    OPEN_DISPUTE = "OPEN_DISPUTE"
    RESPOND_DISPUTE = "RESPOND_DISPUTE"
    RESOLVE_DISPUTE = "RESOLVE_DISPUTE"
    EVENT = "EVENT"
    OTHER = "OTHER"


class AutoCancelStatus(enum.StrEnum):
    """Status of a contract_auto_cancellations row.

    BALANCE_CHECK rows are audit entries written before a cancel attempt.
    """

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    BALANCE_CHECK = "BALANCE_CHECK"


class ListenerState(enum.StrEnum):
    """Lifecycle of a per-network event listener."""

    STOPPED = "STOPPED"
    STARTING = "STARTING"
    MONITORING = "MONITORING"
    DEGRADED = "DEGRADED"


class EscrowEventName(enum.StrEnum):
    """On-chain escrow program/contract events understood by the decoders."""

    ESCROW_CREATED = "EscrowCreated"
    FUNDS_DEPOSITED = "FundsDeposited"
    FIAT_MARKED_PAID = "FiatMarkedPaid"
    ESCROW_RELEASED = "EscrowReleased"
    ESCROW_CANCELLED = "EscrowCancelled"
    DISPUTE_OPENED = "DisputeOpened"
    DISPUTE_RESPONSE_SUBMITTED = "DisputeResponseSubmitted"
    DISPUTE_RESOLVED = "DisputeResolved"
    DISPUTE_DEFAULT_JUDGMENT = "DisputeDefaultJudgment"
    ESCROW_BALANCE_CHANGED = "EscrowBalanceChanged"
    SEQUENTIAL_ADDRESS_UPDATED = "SequentialAddressUpdated"


TERMINAL_ESCROW_STATES = frozenset(
    {
        EscrowState.RELEASED,
        EscrowState.RESOLVED,
        EscrowState.CANCELLED,
        EscrowState.AUTO_CANCELLED,
    }
)

TERMINAL_LEG_STATES = frozenset(
    {LegState.RELEASED, LegState.RESOLVED, LegState.CANCELLED}
)

EVENT_TRANSACTION_TYPES: dict[str, TransactionType] = {
    EscrowEventName.ESCROW_CREATED: TransactionType.CREATE_ESCROW,
    EscrowEventName.FUNDS_DEPOSITED: TransactionType.FUND_ESCROW,
    EscrowEventName.ESCROW_BALANCE_CHANGED: TransactionType.FUND_ESCROW,
    EscrowEventName.FIAT_MARKED_PAID: TransactionType.MARK_FIAT_PAID,
    EscrowEventName.ESCROW_RELEASED: TransactionType.RELEASE_ESCROW,
    EscrowEventName.ESCROW_CANCELLED: TransactionType.CANCEL_ESCROW,
    EscrowEventName.DISPUTE_OPENED: TransactionType.OPEN_DISPUTE,
    EscrowEventName.DISPUTE_RESPONSE_SUBMITTED: TransactionType.RESPOND_DISPUTE,
    EscrowEventName.DISPUTE_RESOLVED: TransactionType.RESOLVE_DISPUTE,
    EscrowEventName.DISPUTE_DEFAULT_JUDGMENT: TransactionType.RESOLVE_DISPUTE,
}


def transaction_type_for(event_name: str) -> TransactionType:
    """Map an on-chain event name to its ledger transaction type."""
    return EVENT_TRANSACTION_TYPES.get(event_name, TransactionType.EVENT)
