"""Product/variant reconciliation.

Each upstream variant maps to one internal product row.  Rows are looked up
by external ID first and by SKU second; a SKU already owned by a different
variant is flagged as a conflict and left untouched.  Products missing from
upstream are never deleted.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

import database.models as models
from config import settings
from services.shopify_client import ShopifyClient
from services.shopify_queries import PRODUCT_QUERY, PRODUCTS_QUERY
from services.shopify_schemas import (
    ProductNode,
    ProductPage,
    VariantNode,
    parse_product,
    parse_product_page,
)
from utils.sku import derive_display_name, derive_sku

logger = logging.getLogger(__name__)

CREATED = "created"
UPDATED = "updated"
SKIPPED = "skipped"


@dataclass
class VariantOutcome:
    action: str
    product: dict[str, Any] | None = None
    conflict: bool = False


@dataclass
class ProductSyncResult:
    processed: int = 0
    created: int = 0
    updated: int = 0
    conflicts: int = 0
    errors: int = 0
    # (product_id, inventory_item_id) for every touched variant that tracks stock
    tracked: list[tuple[int, str]] = field(default_factory=list)

    def record(self, outcome: VariantOutcome, inventory_item_id: str | None) -> None:
        if outcome.action == CREATED:
            self.created += 1
        elif outcome.action == UPDATED:
            self.updated += 1
        if outcome.conflict:
            self.conflicts += 1
        if outcome.product is not None and inventory_item_id:
            self.tracked.append((outcome.product["id"], inventory_item_id))


def iter_product_pages(
    client: ShopifyClient,
    query: str | None = None,
    page_size: int | None = None,
    max_pages: int | None = None,
) -> Iterator[ProductPage]:
    """Yield upstream product pages, following cursors until the last page.

    Stops after *max_pages* pages even if upstream reports more.
    """
    page_size = page_size or settings.sync_page_size
    max_pages = max_pages or settings.sync_max_pages
    cursor: str | None = None

    for page_number in range(1, max_pages + 1):
        data = client.execute(
            PRODUCTS_QUERY,
            {"first": page_size, "cursor": cursor, "query": query},
        )
        page = parse_product_page(data)
        yield page

        if not page.page_info.has_next_page or not page.page_info.end_cursor:
            return
        if page.page_info.end_cursor == cursor:
            logger.warning("Upstream repeated cursor %s, stopping pagination", cursor)
            return
        cursor = page.page_info.end_cursor
        logger.debug("Fetched product page %d, continuing", page_number)

    logger.warning(
        "Stopped product pagination for %s after %d pages",
        client.shop_domain,
        max_pages,
    )


def reconcile_variant(
    conn: sqlite3.Connection,
    connection_id: int,
    product: ProductNode,
    variant: VariantNode,
) -> VariantOutcome:
    """Create or update the internal product row for one upstream variant."""
    external_id = variant.id
    sku = derive_sku(variant.sku, external_id)
    fields: dict[str, Any] = {
        "name": derive_display_name(product.title, variant.title),
        "brand": product.vendor,
        "product_external_id": product.id,
        "inventory_item_id": variant.tracked_inventory_item_id,
    }

    existing = models.get_product_by_external_id(conn, connection_id, external_id)
    if existing is not None:
        conflict = False
        if existing["sku"] != sku:
            holder = models.get_product_by_sku(conn, connection_id, sku)
            if holder is not None and holder["id"] != existing["id"]:
                logger.warning(
                    "SKU %s for variant %s is already used by product %d; keeping SKU %s",
                    sku, external_id, holder["id"], existing["sku"],
                )
                conflict = True
            else:
                fields["sku"] = sku
        updated = models.update_product(conn, existing["id"], **fields)
        return VariantOutcome(UPDATED, updated, conflict)

    by_sku = models.get_product_by_sku(conn, connection_id, sku)
    if by_sku is not None:
        if by_sku["external_id"] not in (None, external_id):
            logger.warning(
                "SKU %s maps to variant %s but product %d belongs to variant %s; skipping",
                sku, external_id, by_sku["id"], by_sku["external_id"],
            )
            return VariantOutcome(SKIPPED, None, conflict=True)
        updated = models.update_product(conn, by_sku["id"], external_id=external_id, **fields)
        return VariantOutcome(UPDATED, updated)

    created = models.create_product(
        conn,
        connection_id,
        sku=sku,
        external_id=external_id,
        low_stock_threshold=settings.default_low_stock_threshold,
        **fields,
    )
    if created is None:
        # A concurrent run inserted the same variant first
        logger.warning("Product for variant %s already exists, skipping insert", external_id)
        return VariantOutcome(SKIPPED, None, conflict=True)
    return VariantOutcome(CREATED, created)


def reconcile_product(
    conn: sqlite3.Connection,
    connection_id: int,
    product: ProductNode,
    result: ProductSyncResult,
) -> None:
    """Reconcile every variant of an upstream product into *result*.

    A variant that fails to persist is logged and counted; the rest continue.
    """
    for variant in product.variants:
        result.processed += 1
        try:
            outcome = reconcile_variant(conn, connection_id, product, variant)
        except sqlite3.Error:
            logger.warning(
                "Failed to reconcile variant %s of %s", variant.id, product.id, exc_info=True
            )
            result.errors += 1
            continue
        result.record(outcome, variant.tracked_inventory_item_id)


def sync_products(
    conn: sqlite3.Connection,
    connection_id: int,
    client: ShopifyClient,
    query: str | None = None,
) -> ProductSyncResult:
    """Walk all in-scope upstream products and reconcile their variants."""
    result = ProductSyncResult()
    for page in iter_product_pages(client, query):
        for product in page.products:
            reconcile_product(conn, connection_id, product, result)
    logger.info(
        "Reconciled %d variants for connection %d (%d created, %d updated, %d conflicts)",
        result.processed, connection_id, result.created, result.updated, result.conflicts,
    )
    return result


def fetch_product(client: ShopifyClient, product_gid: str) -> ProductNode | None:
    """Fetch a single upstream product by its GraphQL ID."""
    return parse_product(client.execute(PRODUCT_QUERY, {"id": product_gid}))
