"""
Migration 001: Offline queue tables.

Creates the three durable collections of the offline queue:
- pending_images: receipt photos (BLOB) waiting for extraction
- pending_transactions: transaction payloads (JSON) waiting for commit
- sync_log: append-only audit trail

Ids are generated by the application (img_/tx_/log_ prefixes).
All three are indexed on creation time for FIFO draining; transactions
are also indexed on status.
"""

import sqlite3

VERSION = 1
NAME = "offline_queue"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create the offline queue tables."""
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS pending_images (
            id TEXT PRIMARY KEY,
            file_name TEXT NOT NULL,
            mime_type TEXT,
            size INTEGER NOT NULL DEFAULT 0,
            data BLOB NOT NULL,
            created_at TEXT NOT NULL,

            -- Status: pending, processing, completed, failed
            status TEXT NOT NULL DEFAULT 'pending',
            retry_count INTEGER NOT NULL DEFAULT 0,
            last_error TEXT
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS pending_transactions (
            id TEXT PRIMARY KEY,
            payload_json TEXT NOT NULL,
            created_at TEXT NOT NULL,

            -- Status: pending, processing, completed, failed
            status TEXT NOT NULL DEFAULT 'pending',
            retry_count INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            synced_at TEXT
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS sync_log (
            id TEXT PRIMARY KEY,
            timestamp TEXT NOT NULL,
            -- sync_started, sync_completed, sync_failed, item_processed, item_failed
            action TEXT NOT NULL,
            item_id TEXT,
            details TEXT
        )
    """)

    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_pending_images_created ON pending_images (created_at)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_pending_transactions_created "
        "ON pending_transactions (created_at)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_pending_transactions_status "
        "ON pending_transactions (status)"
    )
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_sync_log_timestamp ON sync_log (timestamp)")

    conn.commit()


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop the offline queue tables."""
    cursor = conn.cursor()
    cursor.execute("DROP TABLE IF EXISTS pending_images")
    cursor.execute("DROP TABLE IF EXISTS pending_transactions")
    cursor.execute("DROP TABLE IF EXISTS sync_log")
    conn.commit()
