"""
State Store (SQLite-based).

Lightweight persistent DB for tracking:
- The local ledger
- Import history
- Offline queue items and the sync log
"""

from .sqlite_store import (
    HistoryStatus,
    ImportHistoryRecord,
    QueuedImage,
    QueuedTransaction,
    QueueStatus,
    StateStore,
    SyncLogEntry,
)

__all__ = [
    "HistoryStatus",
    "ImportHistoryRecord",
    "QueuedImage",
    "QueuedTransaction",
    "QueueStatus",
    "StateStore",
    "SyncLogEntry",
]
