"""Domain exceptions for the escrow sync engine.

These exceptions are framework-agnostic. Configuration errors (network
lookups) are non-retryable and degrade a single network; the API layer's
middleware translates the rest into HTTP responses.
"""


class EscrowSyncError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "ESCROW_SYNC_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Configuration Errors ---


class NetworkNotFoundError(EscrowSyncError):
    """Raised when a network id or name is not configured."""

    def __init__(self, identifier: int | str) -> None:
        super().__init__(
            message=f"Network not found: {identifier}",
            code="NETWORK_NOT_FOUND",
        )
        self.identifier = identifier


class NetworkInactiveError(EscrowSyncError):
    """Raised when a network exists but is switched off."""

    def __init__(self, name: str) -> None:
        super().__init__(
            message=f"Network is not active: {name}",
            code="NETWORK_INACTIVE",
        )
        self.name = name


class InvalidNetworkError(EscrowSyncError):
    """Raised when a network's configuration cannot be used (e.g. no program id)."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(
            message=f"Invalid network configuration for {name}: {reason}",
            code="INVALID_NETWORK",
        )
        self.name = name
        self.reason = reason


# --- Chain Errors ---


class ChainAdapterError(EscrowSyncError):
    """Raised when an RPC call or on-chain submission fails."""

    def __init__(self, message: str, tx_id: str | None = None) -> None:
        super().__init__(message=message, code="CHAIN_ADAPTER_ERROR")
        self.tx_id = tx_id


class UnsupportedChainOperationError(ChainAdapterError):
    """Raised when a chain family has no counterpart for a read or write call."""

    def __init__(self, family: str, operation: str) -> None:
        super().__init__(message=f"{operation} is not supported on {family} networks")
        self.code = "UNSUPPORTED_CHAIN_OPERATION"
        self.family = family
        self.operation = operation


class AutoCancelError(ChainAdapterError):
    """Raised when an auto-cancel submission is rejected or reverts."""

    def __init__(self, message: str, tx_id: str | None = None) -> None:
        super().__init__(message=message, tx_id=tx_id)
        self.code = "AUTO_CANCEL_FAILED"


# --- Decode Errors ---


class DecodeError(EscrowSyncError):
    """Raised internally by decoders; never propagated past a decoder."""

    def __init__(self, message: str, discriminator: str | None = None) -> None:
        super().__init__(message=message, code="DECODE_ERROR")
        self.discriminator = discriminator


# --- Ledger Errors ---


class EscrowNotFoundError(EscrowSyncError):
    def __init__(self, escrow_id: str, network_id: int) -> None:
        super().__init__(
            message=f"Escrow {escrow_id} not found on network {network_id}",
            code="ESCROW_NOT_FOUND",
        )
        self.escrow_id = escrow_id
        self.network_id = network_id


class TradeNotFoundError(EscrowSyncError):
    def __init__(self, trade_id: int, network_id: int) -> None:
        super().__init__(
            message=f"Trade {trade_id} not found on network {network_id}",
            code="TRADE_NOT_FOUND",
        )
        self.trade_id = trade_id
        self.network_id = network_id


class InvalidEscrowRecordError(EscrowSyncError):
    """Raised when an escrow record does not fit its network's chain family."""

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(
            message=f"Invalid escrow record field '{field}': {reason}",
            code="INVALID_ESCROW_RECORD",
        )
        self.field = field
        self.reason = reason


class DeadlineInvariantViolationError(EscrowSyncError):
    """Raised when the trades deadline trigger rejects a write.

    Callers treat this as a correctly rejected write, not as a bug.
    """

    def __init__(self, trade_id: int | None, detail: str) -> None:
        super().__init__(
            message=f"Trade {trade_id} update rejected: {detail}",
            code="DEADLINE_INVARIANT_VIOLATION",
        )
        self.trade_id = trade_id
        self.detail = detail
