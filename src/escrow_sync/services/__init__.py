"""Service layer: reconciliation, deadline monitoring, intake and reads."""

from escrow_sync.services.deadline_monitor import DeadlineMonitor, MonitorRunSummary
from escrow_sync.services.escrow_intake import EscrowIntakeService
from escrow_sync.services.escrow_reads import EscrowReadService
from escrow_sync.services.reconciler import Reconciler

__all__ = [
    "DeadlineMonitor",
    "EscrowIntakeService",
    "EscrowReadService",
    "MonitorRunSummary",
    "Reconciler",
]
