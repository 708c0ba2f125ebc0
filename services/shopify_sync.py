"""Shopify sync orchestration.

:func:`run_sync` drives one full run for a connection: vendor scope check,
product reconciliation, per-product inventory reconciliation, then alert
reconciliation over all of the connection's products.  Re-running converges
to the same state; inventory writes only happen on real changes and the
alert state machine never duplicates an open alert.

:func:`start_sync` wraps a run with a ``sync_logs`` entry and an in-process
per-connection lock, executing it on a background thread.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import asdict, dataclass

import database.models as models
from api.exceptions import (
    ShopifyRateLimitError,
    ShopifySyncError,
    SyncInProgressError,
    ValidationError,
)
from config import settings
from database.connection import get_db
from services.alert_engine import reconcile_alerts
from services.inventory_sync import reconcile_inventory
from services.product_sync import sync_products
from services.shopify_client import ShopifyClient
from services.vendor_scope import resolve_scope

logger = logging.getLogger(__name__)


@dataclass
class SyncStats:
    products_processed: int = 0
    products_created: int = 0
    products_updated: int = 0
    inventory_updated: int = 0
    alerts_created: int = 0
    alerts_resolved: int = 0
    item_errors: int = 0
    sku_conflicts: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def run_sync(
    conn: sqlite3.Connection,
    connection_id: int,
    client: ShopifyClient | None = None,
) -> SyncStats:
    """Run one full synchronisation for a connection and return its counters.

    Raises a ``PreconditionError`` subclass before any API call when the
    connection is missing, unsupported, inactive or not set up.  An empty
    vendor allow-list returns zero stats without contacting Shopify.
    """
    connection = models.get_connection(conn, connection_id)
    scope = resolve_scope(connection)
    stats = SyncStats()
    if scope.empty:
        logger.info("Connection %d has no approved vendors, nothing to sync", connection_id)
        return stats

    client = client or ShopifyClient.for_connection(connection)  # type: ignore[arg-type]
    logger.info("Starting sync for %s (filter: %s)", client.shop_domain, scope.query or "all")

    products = sync_products(conn, connection_id, client, scope.query)
    stats.products_processed = products.processed
    stats.products_created = products.created
    stats.products_updated = products.updated
    stats.sku_conflicts = products.conflicts
    stats.item_errors = products.errors

    for product_id, inventory_item_id in products.tracked:
        try:
            inventory = reconcile_inventory(
                conn, connection_id, client, product_id, inventory_item_id
            )
        except ShopifyRateLimitError:
            # Retries are exhausted; the rest of the run would hit the same budget
            raise
        except (ShopifySyncError, sqlite3.Error) as exc:
            logger.warning(
                "Inventory sync failed for product %d (%s): %s",
                product_id, inventory_item_id, exc,
            )
            stats.item_errors += 1
            continue
        stats.inventory_updated += inventory.updated

    alerts = reconcile_alerts(conn, connection_id)
    stats.alerts_created = alerts.created
    stats.alerts_resolved = alerts.resolved

    models.mark_connection_synced(conn, connection_id)
    logger.info("Sync finished for %s: %s", client.shop_domain, stats.as_dict())
    return stats


# ---------------------------------------------------------------------------
# Logged background runs
# ---------------------------------------------------------------------------

_run_locks: dict[int, threading.Lock] = {}
_run_locks_guard = threading.Lock()


def _lock_for(connection_id: int) -> threading.Lock:
    with _run_locks_guard:
        return _run_locks.setdefault(connection_id, threading.Lock())


def is_sync_running(connection_id: int) -> bool:
    return _lock_for(connection_id).locked()


def _failure_message(exc: Exception) -> str:
    if isinstance(exc, ShopifySyncError) and exc.retryable:
        return f"{exc} (retryable)"
    return str(exc) or exc.__class__.__name__


def _run_logged(
    connection_id: int,
    log_id: int,
    lock: threading.Lock,
    conn: sqlite3.Connection | None = None,
) -> SyncStats | None:
    """Execute a run and record its outcome on the sync log. Releases *lock*."""
    owns_conn = conn is None
    try:
        try:
            if owns_conn:
                conn = get_db(settings.database_path)
            stats = run_sync(conn, connection_id)  # type: ignore[arg-type]
        except Exception as exc:
            logger.exception("Sync run %d for connection %d failed", log_id, connection_id)
            _record_failure(conn, log_id, _failure_message(exc))
            return None
        models.finish_sync_log(conn, log_id, "completed", stats.as_dict())  # type: ignore[arg-type]
        return stats
    finally:
        if owns_conn and conn is not None:
            conn.close()
        lock.release()


def _record_failure(conn: sqlite3.Connection | None, log_id: int, message: str) -> None:
    """Mark a sync log failed, opening a fresh connection when *conn* is unusable."""
    if conn is not None:
        models.finish_sync_log(conn, log_id, "failed", error=message)
        return
    try:
        fresh = get_db(settings.database_path)
    except sqlite3.Error:
        logger.exception("Could not record failure of sync run %d", log_id)
        return
    try:
        models.finish_sync_log(fresh, log_id, "failed", error=message)
    finally:
        fresh.close()


def start_sync(
    conn: sqlite3.Connection,
    connection_id: int | None = None,
    sync_type: str = "full",
    background: bool = True,
) -> dict:
    """Start a logged sync run and return its ``sync_logs`` row.

    Without *connection_id* the oldest active connection is used.
    Preconditions are checked before the run starts so callers get an
    immediate error.  With ``background=False`` the run executes on *conn*
    and the returned row reflects its final state.
    """
    if connection_id is None:
        first = models.get_first_active_connection(conn)
        if first is None:
            msg = "No shops connected"
            raise ValidationError(msg)
        connection_id = first["id"]

    resolve_scope(models.get_connection(conn, connection_id))

    lock = _lock_for(connection_id)
    if not lock.acquire(blocking=False):
        msg = f"A sync is already running for connection {connection_id}"
        raise SyncInProgressError(msg)
    try:
        log = models.create_sync_log(conn, connection_id, sync_type)
    except Exception:
        lock.release()
        raise

    if background:
        thread = threading.Thread(
            target=_run_logged,
            args=(connection_id, log["id"], lock),
            name=f"sync-{connection_id}",
            daemon=True,
        )
        thread.start()
        return log

    _run_logged(connection_id, log["id"], lock, conn=conn)
    return models.get_sync_log(conn, log["id"])  # type: ignore[return-value]
