"""Connectivity, ledger access, the offline queue and import history."""

from ledger_intake.services.connectivity import ConnectivityMonitor
from ledger_intake.services.import_history import CommitError, CommitTotals, ImportHistoryService
from ledger_intake.services.ledger import Ledger, SQLiteLedger
from ledger_intake.services.offline_queue import OfflineQueueService, QueueStats, SyncOutcome

__all__ = [
    "CommitError",
    "CommitTotals",
    "ConnectivityMonitor",
    "ImportHistoryService",
    "Ledger",
    "OfflineQueueService",
    "QueueStats",
    "SQLiteLedger",
    "SyncOutcome",
]
