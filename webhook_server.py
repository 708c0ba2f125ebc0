"""Shopify webhook listener.

Runs as a separate Flask process on the webhook port.  Every delivery is
verified (HMAC-SHA256 over the raw body), deduplicated via the webhook_log
table on ``X-Shopify-Webhook-Id``, then dispatched by topic:

* ``app/uninstalled``: deactivate the shop's connections and clear tokens
* ``shop/redact``: delete the shop's connections and all their data
* ``customers/data_request``, ``customers/redact``: acknowledged, no
  customer data is stored
* ``inventory_levels/update``: store the new level and re-evaluate alerts
* ``products/update``: re-reconcile the product's variants
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import sqlite3
from collections.abc import Callable
from typing import Any

from flask import Flask, request

import database.models as models
from api.exceptions import PreconditionError
from config import settings
from database.connection import get_db
from services.alert_engine import reconcile_alerts
from services.connection_service import handle_uninstall, redact_shop
from services.inventory_sync import apply_inventory_level
from services.product_sync import ProductSyncResult, fetch_product, reconcile_product
from services.shopify_client import ShopifyClient
from services.vendor_scope import resolve_scope, vendor_in_scope

logger = logging.getLogger(__name__)


def verify_shopify_webhook(data: bytes, hmac_header: str, secret: str | None = None) -> bool:
    """Verify Shopify webhook HMAC-SHA256 signature.

    Args:
        data: Raw request body bytes.
        hmac_header: Value of X-Shopify-Hmac-SHA256 header.
        secret: Signing secret; defaults to the configured webhook secret.

    Returns:
        True if signature is valid.
    """
    secret = secret if secret is not None else settings.webhook_secret
    if not secret:
        return False
    digest = hmac.new(secret.encode("utf-8"), data, hashlib.sha256).digest()
    computed = base64.b64encode(digest).decode("utf-8")
    return hmac.compare_digest(computed, hmac_header)


def _gid(kind: str, value: Any) -> str:
    """Turn a REST numeric ID into a GraphQL global ID."""
    value = str(value)
    if value.startswith("gid://"):
        return value
    return f"gid://shopify/{kind}/{value}"


def _active_connection(conn: sqlite3.Connection, shop_domain: str) -> dict[str, Any] | None:
    connection = models.get_connection_by_domain(conn, shop_domain)
    try:
        resolve_scope(connection)
    except PreconditionError as exc:
        logger.info("Ignoring webhook for %s: %s", shop_domain, exc)
        return None
    return connection


# ---------------------------------------------------------------------------
# Topic handlers
# ---------------------------------------------------------------------------


def _handle_uninstalled(conn: sqlite3.Connection, shop_domain: str, payload: dict) -> None:
    handle_uninstall(conn, shop_domain)


def _handle_shop_redact(conn: sqlite3.Connection, shop_domain: str, payload: dict) -> None:
    redact_shop(conn, payload.get("shop_domain") or shop_domain)


def _handle_customer_request(conn: sqlite3.Connection, shop_domain: str, payload: dict) -> None:
    customer_id = (payload.get("customer") or {}).get("id")
    logger.info("No customer data stored for customer %s of %s", customer_id, shop_domain)


def _handle_inventory_update(conn: sqlite3.Connection, shop_domain: str, payload: dict) -> None:
    connection = _active_connection(conn, shop_domain)
    if connection is None:
        return
    available = payload.get("available")
    if (
        available is None
        or payload.get("inventory_item_id") is None
        or payload.get("location_id") is None
    ):
        logger.warning("Inventory webhook for %s without item, location or quantity", shop_domain)
        return

    inventory_item_id = _gid("InventoryItem", payload["inventory_item_id"])
    location_id = _gid("Location", payload["location_id"])
    products = models.get_products_by_inventory_item(conn, connection["id"], inventory_item_id)
    changed = [
        p["id"]
        for p in products
        if apply_inventory_level(conn, connection["id"], p["id"], location_id, int(available))
    ]
    if changed:
        reconcile_alerts(conn, connection["id"], product_ids=changed)
    logger.info(
        "Inventory webhook for %s at %s: %d product(s) changed",
        inventory_item_id, location_id, len(changed),
    )


def _handle_product_update(conn: sqlite3.Connection, shop_domain: str, payload: dict) -> None:
    connection = _active_connection(conn, shop_domain)
    if connection is None:
        return
    product_gid = payload.get("admin_graphql_api_id") or _gid("Product", payload.get("id"))
    product = fetch_product(ShopifyClient.for_connection(connection), product_gid)
    if product is None:
        logger.warning("Product %s no longer exists upstream", product_gid)
        return
    if not vendor_in_scope(connection["approved_vendors"], product.vendor):
        logger.info("Product %s vendor %r is out of scope", product_gid, product.vendor)
        return
    result = ProductSyncResult()
    reconcile_product(conn, connection["id"], product, result)
    logger.info(
        "Product webhook for %s: %d created, %d updated",
        product_gid, result.created, result.updated,
    )


TOPIC_HANDLERS: dict[str, Callable[[sqlite3.Connection, str, dict], None]] = {
    "app/uninstalled": _handle_uninstalled,
    "shop/redact": _handle_shop_redact,
    "customers/data_request": _handle_customer_request,
    "customers/redact": _handle_customer_request,
    "inventory_levels/update": _handle_inventory_update,
    "products/update": _handle_product_update,
}


def create_webhook_app() -> Flask:
    """Create the webhook Flask application."""
    app = Flask(__name__)

    @app.route("/webhooks/<path:topic>", methods=["POST"])
    def handle_webhook(topic: str):
        """Verify, deduplicate and dispatch a Shopify webhook."""
        handler = TOPIC_HANDLERS.get(topic)
        if handler is None:
            return {"error": f"Unsupported topic {topic}"}, 404

        # 1. Read raw body
        data = request.get_data()

        # 2. Verify HMAC signature
        hmac_header = request.headers.get("X-Shopify-Hmac-SHA256", "")
        if not hmac_header or not verify_shopify_webhook(data, hmac_header):
            logger.warning("Invalid webhook signature for %s", topic)
            return {"error": "Invalid signature"}, 401

        # 3. Parse JSON payload
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.error("Invalid JSON in %s webhook body", topic)
            return "", 200  # Still return 200 to prevent retries

        # 4. Get webhook ID for deduplication
        webhook_id = request.headers.get("X-Shopify-Webhook-Id", "")
        if not webhook_id:
            logger.warning("Missing X-Shopify-Webhook-Id header")
            return "", 200
        shop_domain = request.headers.get("X-Shopify-Shop-Domain", "")

        # 5. Open DB connection and process
        conn = get_db(settings.database_path)
        try:
            if models.is_duplicate_webhook(conn, webhook_id):
                logger.info("Duplicate webhook %s, skipping", webhook_id)
                return "", 200

            models.create_webhook_log(
                conn, webhook_id, topic, json.dumps(payload), shop_domain=shop_domain
            )

            try:
                handler(conn, shop_domain, payload)
                models.update_webhook_status(conn, webhook_id, "processed")
            except Exception as exc:
                logger.exception("Error processing webhook %s (%s)", webhook_id, topic)
                models.update_webhook_status(conn, webhook_id, "failed", error=str(exc))
        finally:
            conn.close()

        # Always return 200 to Shopify
        return "", 200

    @app.route("/health", methods=["GET"])
    def health():
        return {"status": "ok"}

    return app


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    app = create_webhook_app()
    app.run(
        host=settings.webhook_host,
        port=settings.webhook_port,
        debug=False,
    )
