"""Database infrastructure: engine, ORM models, trigger DDL and repositories."""

from escrow_sync.infrastructure.database.engine import (
    close_db,
    get_session_factory,
    init_db,
    query,
)
from escrow_sync.infrastructure.database.orm_models import (
    Base,
    ContractAutoCancellation,
    ContractEvent,
    Escrow,
    EscrowIdMapping,
    Network,
    Trade,
    Transaction,
)
from escrow_sync.infrastructure.database.repositories import (
    AutoCancellationRepository,
    ContractEventRepository,
    EscrowIdMappingRepository,
    EscrowRepository,
    NetworkRepository,
    TradeRepository,
    TransactionRepository,
)

__all__ = [
    "Base",
    "ContractAutoCancellation",
    "ContractEvent",
    "Escrow",
    "EscrowIdMapping",
    "Network",
    "Trade",
    "Transaction",
    "AutoCancellationRepository",
    "ContractEventRepository",
    "EscrowIdMappingRepository",
    "EscrowRepository",
    "NetworkRepository",
    "TradeRepository",
    "TransactionRepository",
    "close_db",
    "get_session_factory",
    "init_db",
    "query",
]
