"""SQLite connection helpers."""

from __future__ import annotations

import sqlite3
from pathlib import Path

_SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"


def get_db(db_path: str) -> sqlite3.Connection:
    """Return a configured SQLite connection.

    Enables WAL mode, foreign keys, and sqlite3.Row factory.
    """
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def _existing_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    """Return column names of *table*, or an empty set if it does not exist yet."""
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _migrate_connection_sync_columns(conn: sqlite3.Connection) -> None:
    """Add last_sync_at / approved_vendors / setup_complete to older connection tables."""
    existing = _existing_columns(conn, "connections")
    if not existing:
        return  # Fresh database, schema.sql creates the full table

    if "last_sync_at" not in existing:
        conn.execute("ALTER TABLE connections ADD COLUMN last_sync_at TEXT")
    if "approved_vendors" not in existing:
        conn.execute("ALTER TABLE connections ADD COLUMN approved_vendors TEXT")
    if "setup_complete" not in existing:
        # Connections created before vendor approval existed keep full access
        conn.execute(
            "ALTER TABLE connections ADD COLUMN setup_complete INTEGER NOT NULL DEFAULT 1"
        )
    conn.commit()


def _migrate_product_inventory_item(conn: sqlite3.Connection) -> None:
    """Add the inventory_item_id column used by the inventory reconciler."""
    existing = _existing_columns(conn, "products")
    if not existing or "inventory_item_id" in existing:
        return
    conn.execute("ALTER TABLE products ADD COLUMN inventory_item_id TEXT")
    conn.commit()


def _migrate_sync_log_conflicts(conn: sqlite3.Connection) -> None:
    """Add the sku_conflicts counter to older sync_logs tables."""
    existing = _existing_columns(conn, "sync_logs")
    if not existing or "sku_conflicts" in existing:
        return
    conn.execute("ALTER TABLE sync_logs ADD COLUMN sku_conflicts INTEGER NOT NULL DEFAULT 0")
    conn.commit()


def init_database(db_path: str) -> None:
    """Create all tables by executing schema.sql.

    Safe to call repeatedly; uses CREATE TABLE IF NOT EXISTS.
    Column migrations run first so the schema's indexes find their columns.
    """
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = get_db(db_path)
    try:
        _migrate_connection_sync_columns(conn)
        _migrate_product_inventory_item(conn)
        _migrate_sync_log_conflicts(conn)
        conn.executescript(_SCHEMA_PATH.read_text())
    finally:
        conn.close()
