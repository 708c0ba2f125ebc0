"""Inventory reconciliation.

Upserts one ``inventory_levels`` row per (product, upstream location) from
the ``available`` quantity bucket.  A row is only written when the fetched
quantity differs from the stored one.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

import database.models as models
from services.shopify_client import ShopifyClient
from services.shopify_queries import INVENTORY_LEVELS_QUERY
from services.shopify_schemas import InventoryLevelNode, parse_inventory_levels

logger = logging.getLogger(__name__)

LOCATIONS_PER_ITEM = 50


@dataclass
class InventorySyncResult:
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0


def fetch_inventory_levels(
    client: ShopifyClient,
    inventory_item_id: str,
) -> list[InventoryLevelNode]:
    """Fetch the per-location levels of one upstream inventory item."""
    data = client.execute(
        INVENTORY_LEVELS_QUERY,
        {"inventoryItemId": inventory_item_id, "first": LOCATIONS_PER_ITEM},
    )
    return parse_inventory_levels(data)


def apply_inventory_level(
    conn: sqlite3.Connection,
    connection_id: int,
    product_id: int,
    location_external_id: str,
    quantity: int,
    location_name: str | None = None,
) -> bool:
    """Store a quantity for a (product, location) pair.

    Negative upstream quantities are stored as 0.  Returns False when the
    stored quantity already matches; only a changed location name is written
    then.
    """
    quantity = max(0, quantity)
    existing = models.get_inventory_level(conn, product_id, location_external_id)
    if existing is not None and existing["quantity"] == quantity:
        if location_name is not None and location_name != existing["location_name"]:
            models.rename_inventory_location(conn, existing["id"], location_name)
        return False
    if location_name is None:
        location_name = existing["location_name"] if existing else location_external_id
    models.upsert_inventory_level(
        conn,
        connection_id,
        product_id,
        location_external_id,
        location_name,
        quantity,
    )
    return True


def reconcile_inventory(
    conn: sqlite3.Connection,
    connection_id: int,
    client: ShopifyClient,
    product_id: int,
    inventory_item_id: str,
) -> InventorySyncResult:
    """Fetch and store every location level for one product."""
    result = InventorySyncResult()
    for level in fetch_inventory_levels(client, inventory_item_id):
        available = level.available
        if available is None:
            logger.warning(
                "No 'available' quantity for item %s at %s, skipping",
                inventory_item_id, level.location.id,
            )
            result.skipped += 1
            continue
        written = apply_inventory_level(
            conn,
            connection_id,
            product_id,
            level.location.id,
            available,
            location_name=level.location.name or level.location.id,
        )
        if written:
            result.updated += 1
        else:
            result.unchanged += 1
    return result
