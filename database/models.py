"""Database CRUD operations.

Implements all data-access functions for connections, products, inventory
levels, alerts, sync logs, restock requests, webhook log, and OAuth states.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, datetime
from typing import Any

# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _row_to_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    """Convert a sqlite3.Row to a plain dict, or return None."""
    if row is None:
        return None
    return dict(row)


def _rows_to_list(rows: list[sqlite3.Row]) -> list[dict[str, Any]]:
    """Convert a list of sqlite3.Row to a list of dicts."""
    return [dict(r) for r in rows]


def _now() -> str:
    """Return the current UTC timestamp as an ISO-8601 string."""
    return datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")


def _build_update(
    table: str,
    row_id: int,
    fields: dict[str, Any],
    allowed: set[str],
) -> tuple[str, list[Any]]:
    """Build a dynamic UPDATE statement from validated field names.

    Only column names in *allowed* are interpolated into the query; other
    keys are ignored.

    Returns (sql, params) ready for ``conn.execute()``.
    """
    to_set: dict[str, Any] = {}
    for key, value in fields.items():
        if key in allowed:
            to_set[key] = value
    if not to_set:
        msg = "No valid fields to update"
        raise ValueError(msg)

    clauses = [f"{col} = ?" for col in to_set]
    params = list(to_set.values())
    params.append(row_id)
    sql = f"UPDATE {table} SET {', '.join(clauses)} WHERE id = ?"  # noqa: S608
    return sql, params


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------

_CONNECTION_UPDATE_ALLOWED = {
    "shop_name",
    "access_token",
    "scopes",
    "is_active",
    "setup_complete",
    "last_sync_at",
    "updated_at",
}


def _decode_connection(row: sqlite3.Row | None) -> dict[str, Any] | None:
    """Decode the JSON approved_vendors column and boolean flags."""
    conn_dict = _row_to_dict(row)
    if conn_dict is None:
        return None
    raw = conn_dict.get("approved_vendors")
    conn_dict["approved_vendors"] = json.loads(raw) if raw is not None else None
    conn_dict["is_active"] = bool(conn_dict["is_active"])
    conn_dict["setup_complete"] = bool(conn_dict["setup_complete"])
    return conn_dict


def create_connection(
    conn: sqlite3.Connection,
    shop_domain: str,
    access_token: str | None,
    platform: str = "shopify",
    scopes: str | None = None,
    shop_name: str | None = None,
) -> dict[str, Any]:
    """Insert a new platform connection (setup incomplete) and return it."""
    cur = conn.execute(
        """
        INSERT INTO connections (platform, shop_domain, shop_name, access_token, scopes)
        VALUES (?, ?, ?, ?, ?)
        """,
        (platform, shop_domain, shop_name, access_token, scopes),
    )
    conn.commit()
    return get_connection(conn, cur.lastrowid)  # type: ignore[return-value]


def get_connection(conn: sqlite3.Connection, connection_id: int) -> dict[str, Any] | None:
    """Return a single connection by ID."""
    return _decode_connection(
        conn.execute("SELECT * FROM connections WHERE id = ?", (connection_id,)).fetchone()
    )


def get_connection_by_domain(
    conn: sqlite3.Connection,
    shop_domain: str,
    platform: str = "shopify",
) -> dict[str, Any] | None:
    """Return a connection by its shop domain."""
    return _decode_connection(
        conn.execute(
            "SELECT * FROM connections WHERE platform = ? AND shop_domain = ?",
            (platform, shop_domain),
        ).fetchone()
    )


def get_first_active_connection(conn: sqlite3.Connection) -> dict[str, Any] | None:
    """Return the oldest active connection, used when a trigger omits the ID."""
    return _decode_connection(
        conn.execute(
            "SELECT * FROM connections WHERE is_active = 1 ORDER BY id LIMIT 1"
        ).fetchone()
    )


def list_connections(conn: sqlite3.Connection) -> list[dict[str, Any]]:
    """Return all connections ordered by shop domain."""
    rows = conn.execute("SELECT * FROM connections ORDER BY shop_domain").fetchall()
    return [_decode_connection(r) for r in rows]  # type: ignore[misc]


def update_connection(
    conn: sqlite3.Connection,
    connection_id: int,
    **fields: Any,
) -> dict[str, Any] | None:
    """Update a connection's fields and return the updated row."""
    fields["updated_at"] = _now()
    sql, params = _build_update("connections", connection_id, fields, _CONNECTION_UPDATE_ALLOWED)
    conn.execute(sql, params)
    conn.commit()
    return get_connection(conn, connection_id)


def set_approved_vendors(
    conn: sqlite3.Connection,
    connection_id: int,
    vendors: list[str] | None,
) -> dict[str, Any] | None:
    """Record the retailer's vendor decision and mark setup complete.

    ``None`` means full access, ``[]`` means no access.
    """
    encoded = json.dumps(vendors) if vendors is not None else None
    conn.execute(
        """
        UPDATE connections
        SET approved_vendors = ?, setup_complete = 1, updated_at = ?
        WHERE id = ?
        """,
        (encoded, _now(), connection_id),
    )
    conn.commit()
    return get_connection(conn, connection_id)


def list_connection_ids_by_domain(conn: sqlite3.Connection, shop_domain: str) -> list[int]:
    """Return the IDs of every connection (any platform) for a domain."""
    rows = conn.execute(
        "SELECT id FROM connections WHERE shop_domain = ? ORDER BY id", (shop_domain,)
    ).fetchall()
    return [r["id"] for r in rows]


def mark_connection_synced(conn: sqlite3.Connection, connection_id: int) -> None:
    """Stamp a connection's last successful sync time."""
    now = _now()
    conn.execute(
        "UPDATE connections SET last_sync_at = ?, updated_at = ? WHERE id = ?",
        (now, now, connection_id),
    )
    conn.commit()


def deactivate_connections_by_domain(conn: sqlite3.Connection, shop_domain: str) -> list[int]:
    """Mark every connection for *shop_domain* inactive and clear its token.

    Returns the IDs of the affected connections.
    """
    ids = list_connection_ids_by_domain(conn, shop_domain)
    if ids:
        conn.execute(
            """
            UPDATE connections
            SET is_active = 0, access_token = NULL, updated_at = ?
            WHERE shop_domain = ?
            """,
            (_now(), shop_domain),
        )
        conn.commit()
    return ids


def delete_connection_cascade(conn: sqlite3.Connection, connection_id: int) -> dict[str, int]:
    """Delete a connection and everything that hangs off it, in FK order.

    Runs in one transaction. Returns per-table deleted row counts.
    """
    counts: dict[str, int] = {}
    try:
        counts["restock_request_items"] = conn.execute(
            """
            DELETE FROM restock_request_items
            WHERE request_id IN (SELECT id FROM restock_requests WHERE connection_id = ?)
            """,
            (connection_id,),
        ).rowcount
        for table in (
            "restock_requests",
            "alerts",
            "inventory_levels",
            "products",
            "sync_logs",
        ):
            counts[table] = conn.execute(
                f"DELETE FROM {table} WHERE connection_id = ?",  # noqa: S608
                (connection_id,),
            ).rowcount
        counts["connections"] = conn.execute(
            "DELETE FROM connections WHERE id = ?", (connection_id,)
        ).rowcount
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return counts


# ---------------------------------------------------------------------------
# Products
# ---------------------------------------------------------------------------

_PRODUCT_UPDATE_ALLOWED = {
    "external_id",
    "product_external_id",
    "inventory_item_id",
    "sku",
    "name",
    "brand",
    "low_stock_threshold",
    "is_archived",
    "updated_at",
}


def create_product(
    conn: sqlite3.Connection,
    connection_id: int,
    sku: str,
    name: str,
    external_id: str | None = None,
    product_external_id: str | None = None,
    inventory_item_id: str | None = None,
    brand: str | None = None,
    low_stock_threshold: int = 10,
) -> dict[str, Any] | None:
    """Insert a new product and return it, or None on a unique-key collision."""
    try:
        cur = conn.execute(
            """
            INSERT INTO products
                (connection_id, external_id, product_external_id, inventory_item_id,
                 sku, name, brand, low_stock_threshold)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                connection_id,
                external_id,
                product_external_id,
                inventory_item_id,
                sku,
                name,
                brand,
                low_stock_threshold,
            ),
        )
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        return None
    return get_product(conn, cur.lastrowid)  # type: ignore[arg-type]


def get_product(conn: sqlite3.Connection, product_id: int) -> dict[str, Any] | None:
    """Return a single product by ID."""
    return _row_to_dict(
        conn.execute("SELECT * FROM products WHERE id = ?", (product_id,)).fetchone()
    )


def get_product_by_external_id(
    conn: sqlite3.Connection,
    connection_id: int,
    external_id: str,
) -> dict[str, Any] | None:
    """Return the product mapped to an upstream variant ID."""
    return _row_to_dict(
        conn.execute(
            "SELECT * FROM products WHERE connection_id = ? AND external_id = ?",
            (connection_id, external_id),
        ).fetchone()
    )


def get_product_by_sku(
    conn: sqlite3.Connection,
    connection_id: int,
    sku: str,
) -> dict[str, Any] | None:
    """Return a single product by SKU within a connection."""
    return _row_to_dict(
        conn.execute(
            "SELECT * FROM products WHERE connection_id = ? AND sku = ?",
            (connection_id, sku),
        ).fetchone()
    )


def get_products_by_inventory_item(
    conn: sqlite3.Connection,
    connection_id: int,
    inventory_item_id: str,
) -> list[dict[str, Any]]:
    """Return products tracking a given upstream inventory item."""
    return _rows_to_list(
        conn.execute(
            "SELECT * FROM products WHERE connection_id = ? AND inventory_item_id = ?",
            (connection_id, inventory_item_id),
        ).fetchall()
    )


def list_products(
    conn: sqlite3.Connection,
    connection_id: int | None = None,
    include_archived: bool = True,
) -> list[dict[str, Any]]:
    """Return products ordered by brand, name."""
    sql = "SELECT * FROM products"
    conditions: list[str] = []
    params: list[Any] = []

    if connection_id is not None:
        conditions.append("connection_id = ?")
        params.append(connection_id)
    if not include_archived:
        conditions.append("is_archived = 0")

    if conditions:
        sql += " WHERE " + " AND ".join(conditions)
    sql += " ORDER BY brand, name"

    return _rows_to_list(conn.execute(sql, params).fetchall())


def update_product(
    conn: sqlite3.Connection,
    product_id: int,
    **fields: Any,
) -> dict[str, Any] | None:
    """Update a product's fields and return the updated row."""
    fields["updated_at"] = _now()
    sql, params = _build_update("products", product_id, fields, _PRODUCT_UPDATE_ALLOWED)
    conn.execute(sql, params)
    conn.commit()
    return get_product(conn, product_id)


# ---------------------------------------------------------------------------
# Inventory levels
# ---------------------------------------------------------------------------


def get_inventory_level(
    conn: sqlite3.Connection,
    product_id: int,
    location_external_id: str,
) -> dict[str, Any] | None:
    """Return the stored row for one (product, location) pair."""
    return _row_to_dict(
        conn.execute(
            """
            SELECT * FROM inventory_levels
            WHERE product_id = ? AND location_external_id = ?
            """,
            (product_id, location_external_id),
        ).fetchone()
    )


def list_inventory_levels_for_product(
    conn: sqlite3.Connection,
    product_id: int,
) -> list[dict[str, Any]]:
    """Return all location rows for a product."""
    return _rows_to_list(
        conn.execute(
            "SELECT * FROM inventory_levels WHERE product_id = ? ORDER BY location_name",
            (product_id,),
        ).fetchall()
    )


def upsert_inventory_level(
    conn: sqlite3.Connection,
    connection_id: int,
    product_id: int,
    location_external_id: str,
    location_name: str,
    quantity: int,
) -> None:
    """Insert or update the quantity for a (product, location) pair.

    Leaves any per-location threshold override untouched.
    """
    conn.execute(
        """
        INSERT INTO inventory_levels
            (connection_id, product_id, location_external_id, location_name,
             quantity, last_updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT (product_id, location_external_id) DO UPDATE SET
            quantity = excluded.quantity,
            location_name = excluded.location_name,
            last_updated_at = excluded.last_updated_at
        """,
        (connection_id, product_id, location_external_id, location_name, quantity, _now()),
    )
    conn.commit()


def rename_inventory_location(
    conn: sqlite3.Connection,
    level_id: int,
    location_name: str,
) -> None:
    """Replace the display name of one inventory row."""
    conn.execute(
        "UPDATE inventory_levels SET location_name = ? WHERE id = ?",
        (location_name, level_id),
    )
    conn.commit()


def set_inventory_threshold(
    conn: sqlite3.Connection,
    level_id: int,
    threshold: int | None,
) -> dict[str, Any] | None:
    """Set or clear the per-location threshold override."""
    conn.execute(
        "UPDATE inventory_levels SET low_stock_threshold = ? WHERE id = ?",
        (threshold, level_id),
    )
    conn.commit()
    return _row_to_dict(
        conn.execute("SELECT * FROM inventory_levels WHERE id = ?", (level_id,)).fetchone()
    )


def list_inventory(
    conn: sqlite3.Connection,
    connection_id: int | None = None,
    default_threshold: int = 10,
    low_stock_only: bool = False,
) -> list[dict[str, Any]]:
    """Inventory rows joined with product info and the effective threshold."""
    sql = """
        SELECT * FROM (
            SELECT
                i.*,
                p.sku,
                p.name,
                p.brand,
                p.is_archived,
                COALESCE(i.low_stock_threshold, p.low_stock_threshold, ?)
                    AS effective_threshold
            FROM inventory_levels i
            JOIN products p ON i.product_id = p.id
        )
    """
    conditions: list[str] = []
    params: list[Any] = [default_threshold]

    if connection_id is not None:
        conditions.append("connection_id = ?")
        params.append(connection_id)
    if low_stock_only:
        conditions.append("quantity <= effective_threshold")

    if conditions:
        sql += " WHERE " + " AND ".join(conditions)
    sql += " ORDER BY quantity, name"

    return _rows_to_list(conn.execute(sql, params).fetchall())


def list_product_stock(
    conn: sqlite3.Connection,
    connection_id: int,
    default_threshold: int = 10,
) -> list[dict[str, Any]]:
    """Every inventory row of non-archived products with its effective threshold.

    Ordered by product then quantity, ready for per-product alert evaluation.
    """
    return _rows_to_list(
        conn.execute(
            """
            SELECT
                p.id            AS product_id,
                i.quantity,
                COALESCE(i.low_stock_threshold, p.low_stock_threshold, ?)
                                AS effective_threshold
            FROM products p
            JOIN inventory_levels i ON i.product_id = p.id
            WHERE p.connection_id = ? AND p.is_archived = 0
            ORDER BY p.id, i.quantity
            """,
            (default_threshold, connection_id),
        ).fetchall()
    )


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------

_VALID_ALERT_STATUSES = {"open", "resolved", "ordered"}


def get_alert(conn: sqlite3.Connection, alert_id: int) -> dict[str, Any] | None:
    """Return a single alert by ID."""
    return _row_to_dict(conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone())


def get_open_alert(conn: sqlite3.Connection, product_id: int) -> dict[str, Any] | None:
    """Return the open alert for a product, if any."""
    return _row_to_dict(
        conn.execute(
            "SELECT * FROM alerts WHERE product_id = ? AND status = 'open'",
            (product_id,),
        ).fetchone()
    )


def list_open_alerts_by_product(
    conn: sqlite3.Connection,
    connection_id: int,
) -> dict[int, dict[str, Any]]:
    """Return a product_id -> open alert map for one connection."""
    rows = conn.execute(
        "SELECT * FROM alerts WHERE connection_id = ? AND status = 'open'",
        (connection_id,),
    ).fetchall()
    return {r["product_id"]: dict(r) for r in rows}


def open_alert(
    conn: sqlite3.Connection,
    connection_id: int,
    product_id: int,
    quantity: int,
    threshold: int,
) -> dict[str, Any] | None:
    """Insert an open alert. Returns None if one is already open for the product.

    The partial unique index on (product_id) WHERE status='open' makes this
    safe against a concurrent run inserting the same alert.
    """
    try:
        cur = conn.execute(
            """
            INSERT INTO alerts (connection_id, product_id, quantity, threshold, status, opened_at)
            VALUES (?, ?, ?, ?, 'open', ?)
            """,
            (connection_id, product_id, quantity, threshold, _now()),
        )
        conn.commit()
    except sqlite3.IntegrityError:
        conn.rollback()
        return None
    return get_alert(conn, cur.lastrowid)  # type: ignore[arg-type]


def close_alert(
    conn: sqlite3.Connection,
    alert_id: int,
    status: str = "resolved",
) -> bool:
    """Move an open alert to resolved/ordered. Returns False if it was not open."""
    if status not in _VALID_ALERT_STATUSES - {"open"}:
        msg = f"Invalid alert status: {status!r}"
        raise ValueError(msg)
    cur = conn.execute(
        """
        UPDATE alerts SET status = ?, resolved_at = ?
        WHERE id = ? AND status = 'open'
        """,
        (status, _now(), alert_id),
    )
    conn.commit()
    return cur.rowcount > 0


def list_alerts(
    conn: sqlite3.Connection,
    connection_id: int | None = None,
    status: str | None = None,
    limit: int | None = 500,
) -> list[dict[str, Any]]:
    """Return alerts joined with product info, newest first."""
    sql = """
        SELECT a.*, p.sku, p.name, p.brand, p.is_archived
        FROM alerts a
        JOIN products p ON a.product_id = p.id
    """
    conditions: list[str] = []
    params: list[Any] = []

    if connection_id is not None:
        conditions.append("a.connection_id = ?")
        params.append(connection_id)
    if status is not None:
        conditions.append("a.status = ?")
        params.append(status)

    if conditions:
        sql += " WHERE " + " AND ".join(conditions)
    sql += " ORDER BY a.opened_at DESC, a.id DESC"

    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)

    return _rows_to_list(conn.execute(sql, params).fetchall())


# ---------------------------------------------------------------------------
# Sync logs
# ---------------------------------------------------------------------------

_SYNC_STAT_COLUMNS = (
    "products_processed",
    "products_created",
    "products_updated",
    "inventory_updated",
    "alerts_created",
    "alerts_resolved",
    "item_errors",
    "sku_conflicts",
)


def create_sync_log(
    conn: sqlite3.Connection,
    connection_id: int | None,
    sync_type: str = "full",
) -> dict[str, Any]:
    """Insert a running sync log entry and return it."""
    cur = conn.execute(
        """
        INSERT INTO sync_logs (connection_id, sync_type, status, started_at)
        VALUES (?, ?, 'running', ?)
        """,
        (connection_id, sync_type, _now()),
    )
    conn.commit()
    return get_sync_log(conn, cur.lastrowid)  # type: ignore[arg-type, return-value]


def get_sync_log(conn: sqlite3.Connection, log_id: int) -> dict[str, Any] | None:
    """Return a single sync log entry by ID."""
    return _row_to_dict(conn.execute("SELECT * FROM sync_logs WHERE id = ?", (log_id,)).fetchone())


def finish_sync_log(
    conn: sqlite3.Connection,
    log_id: int,
    status: str,
    stats: dict[str, int] | None = None,
    error: str | None = None,
) -> dict[str, Any] | None:
    """Record the terminal status, error and counters of a sync run."""
    if status not in ("completed", "failed"):
        msg = f"Invalid sync status: {status!r}"
        raise ValueError(msg)
    stats = stats or {}
    assignments = ", ".join(f"{col} = ?" for col in _SYNC_STAT_COLUMNS)
    params: list[Any] = [stats.get(col, 0) for col in _SYNC_STAT_COLUMNS]
    conn.execute(
        f"""
        UPDATE sync_logs
        SET status = ?, error_message = ?, completed_at = ?, {assignments}
        WHERE id = ?
        """,  # noqa: S608
        [status, error, _now(), *params, log_id],
    )
    conn.commit()
    return get_sync_log(conn, log_id)


def list_sync_logs(
    conn: sqlite3.Connection,
    connection_id: int | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    """Return recent sync runs, newest first."""
    if connection_id is not None:
        return _rows_to_list(
            conn.execute(
                """
                SELECT * FROM sync_logs WHERE connection_id = ?
                ORDER BY started_at DESC, id DESC LIMIT ?
                """,
                (connection_id, limit),
            ).fetchall()
        )
    return _rows_to_list(
        conn.execute(
            "SELECT * FROM sync_logs ORDER BY started_at DESC, id DESC LIMIT ?",
            (limit,),
        ).fetchall()
    )


# ---------------------------------------------------------------------------
# Restock requests
# ---------------------------------------------------------------------------


def create_restock_request(
    conn: sqlite3.Connection,
    connection_id: int,
    status: str,
    magic_token: str,
    token_expires_at: str,
    items: list[dict[str, Any]],
    agency_notes: str | None = None,
) -> dict[str, Any]:
    """Insert a restock request and its items in one transaction."""
    sent_at = _now() if status == "pending" else None
    try:
        cur = conn.execute(
            """
            INSERT INTO restock_requests
                (connection_id, status, magic_token, token_expires_at, agency_notes, sent_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (connection_id, status, magic_token, token_expires_at, agency_notes, sent_at),
        )
        request_id = cur.lastrowid
        conn.executemany(
            """
            INSERT INTO restock_request_items
                (request_id, product_id, current_quantity, requested_quantity)
            VALUES (?, ?, ?, ?)
            """,
            [
                (
                    request_id,
                    item["product_id"],
                    item.get("current_quantity", 0),
                    item["requested_quantity"],
                )
                for item in items
            ],
        )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return get_restock_request(conn, request_id)  # type: ignore[arg-type, return-value]


def get_restock_request(conn: sqlite3.Connection, request_id: int) -> dict[str, Any] | None:
    """Return a restock request with its items nested under an 'items' key."""
    request = _row_to_dict(
        conn.execute(
            """
            SELECT r.*, c.shop_domain
            FROM restock_requests r
            JOIN connections c ON r.connection_id = c.id
            WHERE r.id = ?
            """,
            (request_id,),
        ).fetchone()
    )
    if request is None:
        return None
    request["items"] = get_restock_request_items(conn, request_id)
    return request


def get_restock_request_by_token(
    conn: sqlite3.Connection,
    magic_token: str,
) -> dict[str, Any] | None:
    """Return a restock request (with items) by its magic token."""
    row = conn.execute(
        "SELECT id FROM restock_requests WHERE magic_token = ?", (magic_token,)
    ).fetchone()
    if row is None:
        return None
    return get_restock_request(conn, row["id"])


def get_restock_request_items(
    conn: sqlite3.Connection,
    request_id: int,
) -> list[dict[str, Any]]:
    """Return the items of a request joined with product name and SKU."""
    return _rows_to_list(
        conn.execute(
            """
            SELECT ri.*, p.name, p.sku
            FROM restock_request_items ri
            JOIN products p ON ri.product_id = p.id
            WHERE ri.request_id = ?
            ORDER BY ri.id
            """,
            (request_id,),
        ).fetchall()
    )


def list_restock_requests(
    conn: sqlite3.Connection,
    connection_id: int | None = None,
    status: str | None = None,
) -> list[dict[str, Any]]:
    """Return requests newest first with shop domain and item count."""
    sql = """
        SELECT r.*, c.shop_domain,
               (SELECT COUNT(*) FROM restock_request_items ri WHERE ri.request_id = r.id)
                   AS item_count
        FROM restock_requests r
        JOIN connections c ON r.connection_id = c.id
    """
    conditions: list[str] = []
    params: list[Any] = []

    if connection_id is not None:
        conditions.append("r.connection_id = ?")
        params.append(connection_id)
    if status is not None:
        conditions.append("r.status = ?")
        params.append(status)

    if conditions:
        sql += " WHERE " + " AND ".join(conditions)
    sql += " ORDER BY r.created_at DESC, r.id DESC"

    return _rows_to_list(conn.execute(sql, params).fetchall())


def transition_restock_request(
    conn: sqlite3.Connection,
    request_id: int,
    from_statuses: tuple[str, ...],
    to_status: str,
    retailer_notes: str | None = None,
    token_expires_at: str | None = None,
    approved_quantities: dict[int, int] | None = None,
) -> bool:
    """Move a request between statuses if it is currently in *from_statuses*.

    The status guard is part of the UPDATE so a concurrent decision cannot
    apply twice. Approved quantities are written in the same transaction.
    Returns False when the request was not in an allowed state.
    """
    now = _now()
    stamp_col = {
        "pending": "sent_at",
        "approved": "approved_at",
        "rejected": "rejected_at",
    }[to_status]
    placeholders = ", ".join("?" for _ in from_statuses)
    sql = f"UPDATE restock_requests SET status = ?, {stamp_col} = ?"  # noqa: S608
    params: list[Any] = [to_status, now]
    if retailer_notes is not None:
        sql += ", retailer_notes = ?"
        params.append(retailer_notes)
    if token_expires_at is not None:
        sql += ", token_expires_at = ?"
        params.append(token_expires_at)
    sql += f" WHERE id = ? AND status IN ({placeholders})"
    params.extend([request_id, *from_statuses])

    try:
        cur = conn.execute(sql, params)
        if cur.rowcount == 0:
            conn.rollback()
            return False
        for item_id, qty in (approved_quantities or {}).items():
            conn.execute(
                """
                UPDATE restock_request_items SET approved_quantity = ?
                WHERE id = ? AND request_id = ?
                """,
                (qty, item_id, request_id),
            )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return True


def delete_restock_request(conn: sqlite3.Connection, request_id: int) -> bool:
    """Delete a request and its items. Returns True if a row was deleted."""
    conn.execute("DELETE FROM restock_request_items WHERE request_id = ?", (request_id,))
    cur = conn.execute("DELETE FROM restock_requests WHERE id = ?", (request_id,))
    conn.commit()
    return cur.rowcount > 0


# ---------------------------------------------------------------------------
# Webhook Log
# ---------------------------------------------------------------------------


def create_webhook_log(
    conn: sqlite3.Connection,
    webhook_id: str,
    topic: str,
    payload: str | None = None,
    shop_domain: str | None = None,
) -> dict[str, Any]:
    """Insert a webhook log entry. Raises IntegrityError on duplicate webhook_id."""
    cur = conn.execute(
        """
        INSERT INTO webhook_log (webhook_id, topic, shop_domain, payload)
        VALUES (?, ?, ?, ?)
        """,
        (webhook_id, topic, shop_domain, payload),
    )
    conn.commit()
    row = conn.execute("SELECT * FROM webhook_log WHERE id = ?", (cur.lastrowid,)).fetchone()
    return dict(row)


def is_duplicate_webhook(conn: sqlite3.Connection, webhook_id: str) -> bool:
    """Check if a webhook_id already exists."""
    row = conn.execute("SELECT 1 FROM webhook_log WHERE webhook_id = ?", (webhook_id,)).fetchone()
    return row is not None


def update_webhook_status(
    conn: sqlite3.Connection,
    webhook_id: str,
    status: str,
    error: str | None = None,
) -> bool:
    """Update a webhook log entry's status. Returns True if found."""
    cur = conn.execute(
        "UPDATE webhook_log SET status = ?, error = ? WHERE webhook_id = ?",
        (status, error, webhook_id),
    )
    conn.commit()
    return cur.rowcount > 0


# ---------------------------------------------------------------------------
# OAuth states
# ---------------------------------------------------------------------------


def create_oauth_state(
    conn: sqlite3.Connection,
    state: str,
    shop_domain: str,
    expires_at: str,
) -> None:
    """Store a pending OAuth handshake state token."""
    conn.execute(
        "INSERT INTO oauth_states (state, shop_domain, expires_at) VALUES (?, ?, ?)",
        (state, shop_domain, expires_at),
    )
    conn.commit()


def consume_oauth_state(conn: sqlite3.Connection, state: str) -> dict[str, Any] | None:
    """Delete and return an OAuth state (single use)."""
    row = _row_to_dict(
        conn.execute("SELECT * FROM oauth_states WHERE state = ?", (state,)).fetchone()
    )
    if row is None:
        return None
    cur = conn.execute("DELETE FROM oauth_states WHERE state = ?", (state,))
    conn.commit()
    # Another request consumed it first
    if cur.rowcount == 0:
        return None
    return row


def purge_expired_oauth_states(conn: sqlite3.Connection, now: str | None = None) -> int:
    """Delete expired OAuth states. Returns the number removed."""
    cur = conn.execute(
        "DELETE FROM oauth_states WHERE expires_at < ?", (now or _now(),)
    )
    conn.commit()
    return cur.rowcount
