"""
SQLite-based state store implementation.

Tables:
- ledger_transactions: Confirmed transactions (local ledger)
- import_history: One record per confirmed import
- pending_images: Offline queue of receipt photos (migration 001)
- pending_transactions: Offline queue of transactions to commit (migration 001)
- sync_log: Append-only audit trail of queue activity (migration 001)
"""

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from ledger_intake.errors import PersistenceError


TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> str:
    """Fixed-width UTC timestamp; sorts chronologically as text."""
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)


class QueueStatus(str, Enum):
    """Lifecycle of an offline queue item."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class HistoryStatus(str, Enum):
    """Lifecycle of an import-history record."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class QueuedImage:
    """Receipt photo waiting for extraction."""

    id: str
    file_name: str
    mime_type: str | None
    size: int
    data: bytes
    created_at: str
    status: QueueStatus
    retry_count: int
    last_error: str | None
    exhausted_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "QueuedImage":
        """Create from database row."""
        return cls(
            id=row["id"],
            file_name=row["file_name"],
            mime_type=row["mime_type"],
            size=row["size"],
            data=bytes(row["data"]),
            created_at=row["created_at"],
            status=QueueStatus(row["status"]),
            retry_count=row["retry_count"],
            last_error=row["last_error"],
            exhausted_at=row["exhausted_at"],
        )


@dataclass
class QueuedTransaction:
    """Transaction waiting to be committed to the ledger."""

    id: str
    payload: dict[str, Any]
    created_at: str
    status: QueueStatus
    retry_count: int
    last_error: str | None
    synced_at: str | None
    exhausted_at: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "QueuedTransaction":
        """Create from database row."""
        return cls(
            id=row["id"],
            payload=json.loads(row["payload_json"]),
            created_at=row["created_at"],
            status=QueueStatus(row["status"]),
            retry_count=row["retry_count"],
            last_error=row["last_error"],
            synced_at=row["synced_at"],
            exhausted_at=row["exhausted_at"],
        )


@dataclass
class SyncLogEntry:
    """Immutable audit record of queue activity."""

    id: str
    timestamp: str
    action: str
    item_id: str | None
    details: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SyncLogEntry":
        """Create from database row."""
        return cls(
            id=row["id"],
            timestamp=row["timestamp"],
            action=row["action"],
            item_id=row["item_id"],
            details=row["details"],
        )


@dataclass
class ImportHistoryRecord:
    """Record of one confirmed import."""

    id: str
    user_id: str
    file_name: str
    file_type: str
    source: str
    file_size: int
    status: HistoryStatus
    transaction_count: int
    imported_count: int
    skipped_count: int
    duplicates_skipped: int
    error_count: int
    total_income: str
    total_expenses: str
    errors: list[dict[str, Any]]
    created_at: str
    completed_at: str | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ImportHistoryRecord":
        """Create from database row."""
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            file_name=row["file_name"],
            file_type=row["file_type"],
            source=row["source"],
            file_size=row["file_size"],
            status=HistoryStatus(row["status"]),
            transaction_count=row["transaction_count"],
            imported_count=row["imported_count"],
            skipped_count=row["skipped_count"],
            duplicates_skipped=row["duplicates_skipped"],
            error_count=row["error_count"],
            total_income=row["total_income"],
            total_expenses=row["total_expenses"],
            errors=json.loads(row["errors_json"]) if row["errors_json"] else [],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )


class StateStore:
    """
    SQLite-based state store for the import pipeline.

    Provides persistent tracking of:
    - The local ledger (confirmed transactions)
    - Import history
    - Offline queue items and the sync log

    Every sqlite3 failure surfaces as PersistenceError.
    Single-writer: the pipeline runs on one event loop.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        try:
            conn = self._get_connection()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not open state database {self.db_path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"State database operation failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ledger_transactions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    description TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    date TEXT NOT NULL,
                    type TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    category_id TEXT,
                    notes TEXT,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS import_history (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    file_name TEXT NOT NULL,
                    file_type TEXT NOT NULL,
                    source TEXT NOT NULL,
                    file_size INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    transaction_count INTEGER NOT NULL DEFAULT 0,
                    imported_count INTEGER NOT NULL DEFAULT 0,
                    skipped_count INTEGER NOT NULL DEFAULT 0,
                    duplicates_skipped INTEGER NOT NULL DEFAULT 0,
                    error_count INTEGER NOT NULL DEFAULT 0,
                    total_income TEXT NOT NULL DEFAULT '0',
                    total_expenses TEXT NOT NULL DEFAULT '0',
                    errors_json TEXT,
                    created_at TEXT NOT NULL,
                    completed_at TEXT
                )
            """
            )

            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_ledger_user_date ON ledger_transactions(user_id, date)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_import_history_user ON import_history(user_id, created_at)"
            )

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        except sqlite3.Error as e:
            raise PersistenceError(f"State database migration failed: {e}") from e
        finally:
            conn.close()

    # Ledger methods

    def insert_ledger_transaction(
        self,
        txn_id: str,
        description: str,
        amount: str,
        date: str,
        txn_type: str,
        currency: str,
        category_id: str | None = None,
        notes: str | None = None,
        user_id: str | None = None,
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO ledger_transactions
                (id, user_id, description, amount, date, type, currency, category_id, notes, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    txn_id,
                    user_id,
                    description,
                    amount,
                    date,
                    txn_type,
                    currency,
                    category_id,
                    notes,
                    utc_now(),
                ),
            )

    def list_ledger_transactions(self, user_id: str | None = None) -> list[dict[str, Any]]:
        """Ledger rows in insertion order."""
        with self._transaction() as conn:
            if user_id is None:
                rows = conn.execute(
                    "SELECT * FROM ledger_transactions ORDER BY created_at ASC, rowid ASC"
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM ledger_transactions
                    WHERE user_id = ?
                    ORDER BY created_at ASC, rowid ASC
                """,
                    (user_id,),
                ).fetchall()
            return [dict(row) for row in rows]

    # Import history methods

    def create_import_history(
        self,
        history_id: str,
        user_id: str,
        file_name: str,
        file_type: str,
        source: str,
        file_size: int,
        transaction_count: int,
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO import_history
                (id, user_id, file_name, file_type, source, file_size, status,
                 transaction_count, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    history_id,
                    user_id,
                    file_name,
                    file_type,
                    source,
                    file_size,
                    HistoryStatus.PROCESSING.value,
                    transaction_count,
                    utc_now(),
                ),
            )

    def finish_import_history(
        self,
        history_id: str,
        status: HistoryStatus,
        imported_count: int = 0,
        skipped_count: int = 0,
        duplicates_skipped: int = 0,
        error_count: int = 0,
        total_income: str = "0",
        total_expenses: str = "0",
        errors: list[dict[str, Any]] | None = None,
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE import_history
                SET status = ?, imported_count = ?, skipped_count = ?,
                    duplicates_skipped = ?, error_count = ?, total_income = ?,
                    total_expenses = ?, errors_json = ?, completed_at = ?
                WHERE id = ?
            """,
                (
                    status.value,
                    imported_count,
                    skipped_count,
                    duplicates_skipped,
                    error_count,
                    total_income,
                    total_expenses,
                    json.dumps(errors or []),
                    utc_now(),
                    history_id,
                ),
            )

    def get_import_history(self, history_id: str) -> ImportHistoryRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM import_history WHERE id = ?", (history_id,)
            ).fetchone()
            return ImportHistoryRecord.from_row(row) if row else None

    def list_import_history(
        self, user_id: str | None = None, limit: int = 20
    ) -> list[ImportHistoryRecord]:
        """Most recent imports first."""
        with self._transaction() as conn:
            if user_id is None:
                rows = conn.execute(
                    "SELECT * FROM import_history ORDER BY created_at DESC, rowid DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM import_history WHERE user_id = ?
                    ORDER BY created_at DESC, rowid DESC LIMIT ?
                """,
                    (user_id, limit),
                ).fetchall()
            return [ImportHistoryRecord.from_row(row) for row in rows]

    def delete_import_history(self, history_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM import_history WHERE id = ?", (history_id,))
            return cursor.rowcount > 0

    # Offline queue methods

    def insert_queued_image(
        self,
        image_id: str,
        file_name: str,
        mime_type: str | None,
        data: bytes,
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO pending_images
                (id, file_name, mime_type, size, data, created_at, status, retry_count)
                VALUES (?, ?, ?, ?, ?, ?, ?, 0)
            """,
                (
                    image_id,
                    file_name,
                    mime_type,
                    len(data),
                    sqlite3.Binary(data),
                    utc_now(),
                    QueueStatus.PENDING.value,
                ),
            )

    def insert_queued_transaction(self, txn_id: str, payload: dict[str, Any]) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO pending_transactions
                (id, payload_json, created_at, status, retry_count)
                VALUES (?, ?, ?, ?, 0)
            """,
                (txn_id, json.dumps(payload), utc_now(), QueueStatus.PENDING.value),
            )

    def get_queued_image(self, image_id: str) -> QueuedImage | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM pending_images WHERE id = ?", (image_id,)).fetchone()
            return QueuedImage.from_row(row) if row else None

    def get_queued_transaction(self, txn_id: str) -> QueuedTransaction | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM pending_transactions WHERE id = ?", (txn_id,)
            ).fetchone()
            return QueuedTransaction.from_row(row) if row else None

    def get_drainable_images(self, include_processing: bool = False) -> list[QueuedImage]:
        """
        Pending images plus failed ones not yet given up on, oldest first.

        With include_processing, images left in processing are returned too;
        the caller decides which of those are still being worked on.
        """
        statuses = [QueueStatus.PENDING.value]
        if include_processing:
            statuses.append(QueueStatus.PROCESSING.value)
        placeholders = ", ".join("?" for _ in statuses)
        with self._transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM pending_images
                WHERE status IN ({placeholders}) OR (status = ? AND exhausted_at IS NULL)
                ORDER BY created_at ASC, rowid ASC
            """,
                (*statuses, QueueStatus.FAILED.value),
            ).fetchall()
            return [QueuedImage.from_row(row) for row in rows]

    def get_drainable_transactions(self) -> list[QueuedTransaction]:
        """Pending transactions plus failed ones not yet given up on, oldest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM pending_transactions
                WHERE status = ? OR (status = ? AND exhausted_at IS NULL)
                ORDER BY created_at ASC, rowid ASC
            """,
                (QueueStatus.PENDING.value, QueueStatus.FAILED.value),
            ).fetchall()
            return [QueuedTransaction.from_row(row) for row in rows]

    def update_queued_image(
        self,
        image_id: str,
        status: QueueStatus,
        error: str | None = None,
        increment_retry: bool = False,
        exhausted: bool = False,
    ) -> None:
        """Apply a status transition to a queued image."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE pending_images
                SET status = ?,
                    last_error = COALESCE(?, last_error),
                    retry_count = retry_count + ?,
                    exhausted_at = CASE WHEN ? THEN ? ELSE exhausted_at END
                WHERE id = ?
            """,
                (
                    status.value,
                    error,
                    1 if increment_retry else 0,
                    1 if exhausted else 0,
                    utc_now(),
                    image_id,
                ),
            )

    def update_queued_transaction(
        self,
        txn_id: str,
        status: QueueStatus,
        error: str | None = None,
        increment_retry: bool = False,
        exhausted: bool = False,
        synced: bool = False,
    ) -> None:
        """Apply a status transition to a queued transaction."""
        now = utc_now()
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE pending_transactions
                SET status = ?,
                    last_error = COALESCE(?, last_error),
                    retry_count = retry_count + ?,
                    exhausted_at = CASE WHEN ? THEN ? ELSE exhausted_at END,
                    synced_at = CASE WHEN ? THEN ? ELSE synced_at END
                WHERE id = ?
            """,
                (
                    status.value,
                    error,
                    1 if increment_retry else 0,
                    1 if exhausted else 0,
                    now,
                    1 if synced else 0,
                    now,
                    txn_id,
                ),
            )

    def delete_queue_items(self, status: QueueStatus | None = None) -> int:
        """Delete queue items with a status (or all of them). Sync log untouched."""
        with self._transaction() as conn:
            if status is None:
                images = conn.execute("DELETE FROM pending_images").rowcount
                txns = conn.execute("DELETE FROM pending_transactions").rowcount
            else:
                images = conn.execute(
                    "DELETE FROM pending_images WHERE status = ?", (status.value,)
                ).rowcount
                txns = conn.execute(
                    "DELETE FROM pending_transactions WHERE status = ?", (status.value,)
                ).rowcount
            return images + txns

    def append_sync_log(
        self,
        entry_id: str,
        action: str,
        item_id: str | None = None,
        details: str | None = None,
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO sync_log (id, timestamp, action, item_id, details)
                VALUES (?, ?, ?, ?, ?)
            """,
                (entry_id, utc_now(), action, item_id, details),
            )

    def get_sync_log(self, limit: int = 50) -> list[SyncLogEntry]:
        """Most recent entries first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_log ORDER BY timestamp DESC, rowid DESC LIMIT ?", (limit,)
            ).fetchall()
            return [SyncLogEntry.from_row(row) for row in rows]

    def prune_sync_log(self, older_than_days: int) -> int:
        cutoff = (datetime.now(timezone.utc) - timedelta(days=older_than_days)).strftime(
            TIMESTAMP_FORMAT
        )
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM sync_log WHERE timestamp < ?", (cutoff,))
            return cursor.rowcount

    def get_last_sync_time(self) -> str | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT MAX(timestamp) AS ts FROM sync_log WHERE action = 'sync_completed'"
            ).fetchone()
            return row["ts"] if row else None

    # Statistics

    def get_queue_stats(self) -> dict[str, Any]:
        """Queue counters (pending images, pending transactions, failed items)."""
        with self._transaction() as conn:
            pending_images = conn.execute(
                "SELECT COUNT(*) as count FROM pending_images WHERE status = ?",
                (QueueStatus.PENDING.value,),
            ).fetchone()
            pending_txns = conn.execute(
                "SELECT COUNT(*) as count FROM pending_transactions WHERE status = ?",
                (QueueStatus.PENDING.value,),
            ).fetchone()
            failed_images = conn.execute(
                "SELECT COUNT(*) as count FROM pending_images WHERE status = ?",
                (QueueStatus.FAILED.value,),
            ).fetchone()
            failed_txns = conn.execute(
                "SELECT COUNT(*) as count FROM pending_transactions WHERE status = ?",
                (QueueStatus.FAILED.value,),
            ).fetchone()

            return {
                "pending_images": pending_images["count"] if pending_images else 0,
                "pending_transactions": pending_txns["count"] if pending_txns else 0,
                "failed_items": (failed_images["count"] if failed_images else 0)
                + (failed_txns["count"] if failed_txns else 0),
            }
