from __future__ import annotations

import sqlite3


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def ensure_payment_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS payment_records (
            payment_id TEXT PRIMARY KEY,
            shop_domain TEXT NOT NULL,
            order_id INTEGER NOT NULL,
            canonical_status TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            version INTEGER NOT NULL DEFAULT 0,
            created_at_epoch INTEGER NOT NULL,
            expires_at_epoch INTEGER NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_payment_records_expires_at
        ON payment_records(expires_at_epoch)
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS shops (
            shop_domain TEXT PRIMARY KEY,
            access_token TEXT NOT NULL,
            scope TEXT NOT NULL DEFAULT '',
            installed_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS observation_log (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            payment_id TEXT NOT NULL,
            source TEXT NOT NULL,
            event TEXT NOT NULL DEFAULT '',
            observed_status TEXT NOT NULL DEFAULT '',
            outcome TEXT NOT NULL,
            detail TEXT NOT NULL DEFAULT '',
            observed_at TEXT NOT NULL,
            recorded_at_epoch INTEGER NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_observation_log_payment
        ON observation_log(payment_id, id)
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_observation_log_outcome
        ON observation_log(outcome, id)
        """
    )
