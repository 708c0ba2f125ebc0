"""Low-stock alert state machine.

Per product: if any inventory row is at or below its effective threshold and
no alert is open, open one capturing the lowest row; if no row is low and an
alert is open, resolve it.  Archived products have no rows to evaluate, so
their open alerts are resolved.  Otherwise nothing is written, so repeated
evaluation never duplicates or thrashes alerts.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from itertools import groupby
from operator import itemgetter

import database.models as models
from config import settings

logger = logging.getLogger(__name__)

SEVERITY_OUT_OF_STOCK = "out_of_stock"
SEVERITY_CRITICAL = "critical"
SEVERITY_WARNING = "warning"
SEVERITY_LOW = "low"


def severity(quantity: int, threshold: int) -> str | None:
    """Display band for a quantity against its threshold, or None if not low."""
    if quantity <= 0:
        return SEVERITY_OUT_OF_STOCK
    if quantity > threshold:
        return None
    if quantity <= threshold * 0.25:
        return SEVERITY_CRITICAL
    if quantity <= threshold * 0.5:
        return SEVERITY_WARNING
    return SEVERITY_LOW


@dataclass
class AlertSyncResult:
    created: int = 0
    resolved: int = 0


def reconcile_alerts(
    conn: sqlite3.Connection,
    connection_id: int,
    product_ids: Iterable[int] | None = None,
) -> AlertSyncResult:
    """Open and resolve alerts for a connection's products.

    Limited to *product_ids* when given (single-product webhook updates).
    """
    only = set(product_ids) if product_ids is not None else None
    stock = models.list_product_stock(
        conn, connection_id, default_threshold=settings.default_low_stock_threshold
    )
    open_alerts = models.list_open_alerts_by_product(conn, connection_id)
    result = AlertSyncResult()

    for product_id, rows in groupby(stock, key=itemgetter("product_id")):
        if only is not None and product_id not in only:
            continue
        low_rows = [r for r in rows if r["quantity"] <= r["effective_threshold"]]
        alert = open_alerts.pop(product_id, None)

        if low_rows and alert is None:
            # Rows are ordered by quantity, so the first low row is the lowest
            lowest = low_rows[0]
            created = models.open_alert(
                conn,
                connection_id,
                product_id,
                lowest["quantity"],
                lowest["effective_threshold"],
            )
            if created is not None:
                result.created += 1
                logger.info(
                    "Opened alert %d for product %d (qty %d <= %d)",
                    created["id"], product_id, lowest["quantity"], lowest["effective_threshold"],
                )
        elif not low_rows and alert is not None:
            if models.close_alert(conn, alert["id"], "resolved"):
                result.resolved += 1
                logger.info("Resolved alert %d for product %d", alert["id"], product_id)

    # Whatever is left belongs to archived products (or ones without stock rows)
    for product_id, alert in open_alerts.items():
        if only is not None and product_id not in only:
            continue
        if models.close_alert(conn, alert["id"], "resolved"):
            result.resolved += 1
            logger.info("Resolved alert %d for archived product %d", alert["id"], product_id)

    return result
