"""
Migration 002: Track permanently failed queue items.

Adds exhausted_at to both queue tables. A failed item with exhausted_at set
has used up its retry budget and is no longer picked up by a drain; a
failed item without it is retried on the next drain.
"""

import sqlite3

VERSION = 2
NAME = "retry_exhaustion"

_TABLES = ("pending_images", "pending_transactions")


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def upgrade(conn: sqlite3.Connection) -> None:
    """Add exhausted_at columns."""
    for table in _TABLES:
        if "exhausted_at" not in _columns(conn, table):
            conn.execute(f"ALTER TABLE {table} ADD COLUMN exhausted_at TEXT")
    conn.commit()


def downgrade(conn: sqlite3.Connection) -> None:
    """Drop exhausted_at columns (SQLite 3.35+)."""
    for table in _TABLES:
        if "exhausted_at" in _columns(conn, table):
            conn.execute(f"ALTER TABLE {table} DROP COLUMN exhausted_at")
    conn.commit()
