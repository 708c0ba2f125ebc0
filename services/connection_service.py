"""Connection lifecycle: vendor approval, uninstall, redaction and disconnect."""

from __future__ import annotations

import logging
import sqlite3
from typing import Any

import database.models as models
from api.exceptions import NotFoundError, ValidationError
from services.shopify_client import ShopifyClient
from services.shopify_queries import VENDORS_QUERY
from services.shopify_schemas import VendorList, parse_vendor_list
from services.vendor_scope import access_type

logger = logging.getLogger(__name__)

VENDOR_LIST_LIMIT = 250


def public_connection(connection: dict[str, Any]) -> dict[str, Any]:
    """Connection dict safe to return over the API (no credential)."""
    view = {k: v for k, v in connection.items() if k != "access_token"}
    view["access_type"] = access_type(connection.get("approved_vendors"))
    return view


def require_connection(conn: sqlite3.Connection, connection_id: int) -> dict[str, Any]:
    connection = models.get_connection(conn, connection_id)
    if connection is None:
        msg = f"Connection {connection_id} not found"
        raise NotFoundError(msg)
    return connection


def fetch_vendors(connection: dict[str, Any], client: ShopifyClient | None = None) -> VendorList:
    """Fetch the store's distinct product vendors."""
    client = client or ShopifyClient.for_connection(connection)
    return parse_vendor_list(client.execute(VENDORS_QUERY, {"first": VENDOR_LIST_LIMIT}))


def approve_vendors(
    conn: sqlite3.Connection,
    connection_id: int,
    select_all: bool = False,
    vendors: list[str] | None = None,
) -> dict[str, Any]:
    """Record the retailer's vendor decision and mark setup complete.

    ``select_all`` grants full access; otherwise *vendors* (possibly empty)
    becomes the allow-list.
    """
    require_connection(conn, connection_id)
    if select_all:
        approved = None
    else:
        if vendors is None or not all(isinstance(v, str) for v in vendors):
            msg = "vendors must be a list of vendor names"
            raise ValidationError(msg)
        approved = sorted({v.strip() for v in vendors if v.strip()}, key=str.lower)
    connection = models.set_approved_vendors(conn, connection_id, approved)
    logger.info(
        "Vendor access for connection %d set to %s",
        connection_id, access_type(approved),
    )
    return connection  # type: ignore[return-value]


def handle_uninstall(conn: sqlite3.Connection, shop_domain: str) -> list[int]:
    """Deactivate every connection for a shop and clear its credential."""
    ids = models.deactivate_connections_by_domain(conn, shop_domain)
    if ids:
        logger.info("Deactivated connections %s for uninstalled shop %s", ids, shop_domain)
    else:
        logger.warning("Uninstall for unknown shop %s", shop_domain)
    return ids


def redact_shop(conn: sqlite3.Connection, shop_domain: str) -> dict[str, int]:
    """Delete every connection for a shop and all of its data."""
    totals: dict[str, int] = {}
    for connection_id in models.list_connection_ids_by_domain(conn, shop_domain):
        for table, count in models.delete_connection_cascade(conn, connection_id).items():
            totals[table] = totals.get(table, 0) + count
    logger.info("Redacted shop %s: %s", shop_domain, totals)
    return totals


def disconnect(conn: sqlite3.Connection, connection_id: int) -> dict[str, int]:
    """Operator-initiated disconnect: cascade delete one connection."""
    require_connection(conn, connection_id)
    counts = models.delete_connection_cascade(conn, connection_id)
    logger.info("Disconnected connection %d: %s", connection_id, counts)
    return counts
