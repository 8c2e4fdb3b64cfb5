"""Domain layer: enums, value objects, state lattices, zero I/O."""

from escrow_sync.domain.enums import (
    EscrowEventName,
    EscrowState,
    LegState,
    NetworkFamily,
    TransactionStatus,
    TransactionType,
)
from escrow_sync.domain.exceptions import (
    EscrowSyncError,
    NetworkInactiveError,
    NetworkNotFoundError,
)
from escrow_sync.domain.models import (
    DecodedEvent,
    DecodeResult,
    LogBatch,
    NetworkConfig,
)
from escrow_sync.domain.state_machine import (
    EscrowStateMachine,
    LegStateMachine,
    allowed_sources,
)

__all__ = [
    "EscrowEventName",
    "EscrowState",
    "LegState",
    "NetworkFamily",
    "TransactionStatus",
    "TransactionType",
    "EscrowSyncError",
    "NetworkInactiveError",
    "NetworkNotFoundError",
    "DecodedEvent",
    "DecodeResult",
    "LogBatch",
    "NetworkConfig",
    "EscrowStateMachine",
    "LegStateMachine",
    "allowed_sources",
]
