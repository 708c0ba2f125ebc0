"""API endpoints for the restock dashboard."""

from __future__ import annotations

import logging
from typing import Any

from flask import Blueprint, g, jsonify, redirect, request

import database.models as models
from api.errors import error_response, handle_errors
from api.exceptions import (
    NotFoundError,
    PreconditionError,
    SyncInProgressError,
    ValidationError,
)
from config import settings
from database.connection import get_db
from services import connection_service, oauth, restock_requests
from services.alert_engine import reconcile_alerts, severity
from services.shopify_sync import start_sync

logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__, url_prefix="/api")


# ---------------------------------------------------------------------------
# DB lifecycle
# ---------------------------------------------------------------------------


@api_bp.before_request
def _open_db() -> None:
    """Open a database connection and store it on flask.g."""
    g.db = get_db(settings.database_path)


@api_bp.teardown_request
def _close_db(exc: BaseException | None = None) -> None:
    """Close the per-request database connection."""
    db = g.pop("db", None)
    if db is not None:
        db.close()


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------


def _json_body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        msg = "Request body must be JSON"
        raise ValidationError(msg)
    return data


def _flag(name: str, default: bool = False) -> bool:
    raw = request.args.get(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes")


def _optional_int(value: Any, field: str) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        msg = f"{field} must be an integer"
        raise ValidationError(msg) from None


def _threshold(data: dict[str, Any], allow_null: bool = False) -> int | None:
    if "low_stock_threshold" not in data:
        msg = "Missing required field: low_stock_threshold"
        raise ValidationError(msg)
    value = data["low_stock_threshold"]
    if value is None and allow_null:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        msg = "low_stock_threshold must be a non-negative integer"
        raise ValidationError(msg)
    return value


def _require_product(product_id: int) -> dict[str, Any]:
    product = models.get_product(g.db, product_id)
    if product is None:
        msg = "Product not found"
        raise NotFoundError(msg)
    return product


# ===========================================================================
# Sync
# ===========================================================================


@api_bp.route("/sync/trigger", methods=["POST"])
@handle_errors
def trigger_sync() -> tuple:
    """Start a background sync for a connection (or the first active one)."""
    data = request.get_json(silent=True) or {}
    connection_id = _optional_int(
        data.get("connection_id", data.get("connectionId")), "connection_id"
    )
    sync_type = data.get("sync_type", data.get("syncType")) or "full"
    log = start_sync(g.db, connection_id, sync_type=sync_type)
    return jsonify({"message": "Sync started", "sync_log": log}), 202


@api_bp.route("/sync/logs", methods=["GET"])
@handle_errors
def list_sync_logs() -> tuple:
    """Latest sync runs, newest first."""
    connection_id = request.args.get("connection_id", type=int)
    return jsonify(models.list_sync_logs(g.db, connection_id=connection_id)), 200


# ===========================================================================
# Shopify OAuth
# ===========================================================================


@api_bp.route("/shopify/auth", methods=["GET"])
@handle_errors
def shopify_auth():
    """Redirect the merchant to the Shopify consent screen."""
    return redirect(oauth.begin_authorization(g.db, request.args.get("shop")))


@api_bp.route("/shopify/callback", methods=["GET"])
@handle_errors
def shopify_callback() -> tuple:
    """Finish the OAuth handshake and save the connection."""
    connection = oauth.complete_authorization(g.db, request.args.to_dict())
    return jsonify(connection_service.public_connection(connection)), 200


@api_bp.route("/shopify/verify", methods=["GET"])
@handle_errors
def shopify_verify() -> tuple:
    """Report whether a shop is connected."""
    shop = request.args.get("shop")
    if not shop:
        return error_response("Missing shop parameter", 400)
    shop_domain = oauth.normalize_shop_domain(shop)
    connection = models.get_connection_by_domain(g.db, shop_domain)
    if connection is None:
        return jsonify({"connected": False, "shop": shop_domain}), 200
    return jsonify(
        {
            "connected": True,
            "shop": connection["shop_domain"],
            "status": "active" if connection["is_active"] else "inactive",
            "scopes": connection["scopes"],
            "connected_at": connection["updated_at"],
        }
    ), 200


# ===========================================================================
# Connections
# ===========================================================================


@api_bp.route("/connections", methods=["GET"])
@handle_errors
def list_connections() -> tuple:
    connections = models.list_connections(g.db)
    return jsonify([connection_service.public_connection(c) for c in connections]), 200


@api_bp.route("/connections/<int:connection_id>", methods=["GET"])
@handle_errors
def get_connection(connection_id: int) -> tuple:
    connection = connection_service.require_connection(g.db, connection_id)
    return jsonify(connection_service.public_connection(connection)), 200


@api_bp.route("/connections/<int:connection_id>", methods=["DELETE"])
@handle_errors
def delete_connection(connection_id: int) -> tuple:
    """Disconnect a store and delete all of its data."""
    counts = connection_service.disconnect(g.db, connection_id)
    return jsonify({"message": "Connection deleted", "deleted": counts}), 200


# ===========================================================================
# Vendors
# ===========================================================================


@api_bp.route("/vendors/<int:connection_id>", methods=["GET"])
@handle_errors
def list_vendors(connection_id: int) -> tuple:
    """Upstream vendor list plus the current approval state."""
    connection = connection_service.require_connection(g.db, connection_id)
    vendor_list = connection_service.fetch_vendors(connection)
    return jsonify(
        {
            "shop_name": vendor_list.shop_name or connection["shop_name"],
            "vendors": vendor_list.vendors,
            "approved_vendors": connection["approved_vendors"],
            "setup_complete": connection["setup_complete"],
        }
    ), 200


@api_bp.route("/vendors/<int:connection_id>/approve", methods=["POST"])
@handle_errors
def approve_vendors(connection_id: int) -> tuple:
    """Record vendor access and kick off the first sync."""
    data = _json_body()
    connection = connection_service.approve_vendors(
        g.db,
        connection_id,
        select_all=bool(data.get("selectAll", data.get("select_all", False))),
        vendors=data.get("vendors"),
    )
    try:
        sync_log = start_sync(g.db, connection_id)
    except (SyncInProgressError, PreconditionError) as exc:
        logger.info("Not starting sync after vendor approval: %s", exc)
        sync_log = None
    return jsonify(
        {
            "connection": connection_service.public_connection(connection),
            "sync_log": sync_log,
        }
    ), 200


@api_bp.route("/vendors/<int:connection_id>/status", methods=["GET"])
@handle_errors
def vendor_status(connection_id: int) -> tuple:
    connection = connection_service.require_connection(g.db, connection_id)
    view = connection_service.public_connection(connection)
    return jsonify(
        {
            "accessType": view["access_type"],
            "approved_vendors": connection["approved_vendors"],
            "setup_complete": connection["setup_complete"],
        }
    ), 200


# ===========================================================================
# Products and inventory
# ===========================================================================


@api_bp.route("/products", methods=["GET"])
@handle_errors
def list_products() -> tuple:
    products = models.list_products(
        g.db,
        connection_id=request.args.get("connection_id", type=int),
        include_archived=_flag("include_archived", default=True),
    )
    return jsonify(products), 200


@api_bp.route("/products/<int:product_id>/archive", methods=["POST"])
@handle_errors
def archive_product(product_id: int) -> tuple:
    product = _require_product(product_id)
    updated = models.update_product(g.db, product_id, is_archived=1)
    reconcile_alerts(g.db, product["connection_id"], product_ids=[product_id])
    return jsonify(updated), 200


@api_bp.route("/products/<int:product_id>/unarchive", methods=["POST"])
@handle_errors
def unarchive_product(product_id: int) -> tuple:
    product = _require_product(product_id)
    updated = models.update_product(g.db, product_id, is_archived=0)
    reconcile_alerts(g.db, product["connection_id"], product_ids=[product_id])
    return jsonify(updated), 200


@api_bp.route("/products/<int:product_id>/threshold", methods=["PUT"])
@handle_errors
def update_product_threshold(product_id: int) -> tuple:
    """Change a product's default threshold and re-evaluate its alert."""
    product = _require_product(product_id)
    threshold = _threshold(_json_body())
    updated = models.update_product(g.db, product_id, low_stock_threshold=threshold)
    reconcile_alerts(g.db, product["connection_id"], product_ids=[product_id])
    return jsonify(updated), 200


@api_bp.route("/inventory", methods=["GET"])
@handle_errors
def list_inventory() -> tuple:
    rows = models.list_inventory(
        g.db,
        connection_id=request.args.get("connection_id", type=int),
        default_threshold=settings.default_low_stock_threshold,
        low_stock_only=_flag("low_stock"),
    )
    for row in rows:
        row["severity"] = severity(row["quantity"], row["effective_threshold"])
    return jsonify(rows), 200


@api_bp.route("/inventory/<int:level_id>/threshold", methods=["PUT"])
@handle_errors
def update_inventory_threshold(level_id: int) -> tuple:
    """Set (or clear with null) a per-location threshold override."""
    threshold = _threshold(_json_body(), allow_null=True)
    level = models.set_inventory_threshold(g.db, level_id, threshold)
    if level is None:
        return error_response("Inventory level not found", 404)
    reconcile_alerts(g.db, level["connection_id"], product_ids=[level["product_id"]])
    return jsonify(level), 200


# ===========================================================================
# Alerts
# ===========================================================================


@api_bp.route("/alerts", methods=["GET"])
@handle_errors
def list_alerts() -> tuple:
    alerts = models.list_alerts(
        g.db,
        connection_id=request.args.get("connection_id", type=int),
        status=request.args.get("status"),
    )
    for alert in alerts:
        alert["severity"] = severity(alert["quantity"], alert["threshold"])
    return jsonify(alerts), 200


@api_bp.route("/alerts/<int:alert_id>/status", methods=["POST"])
@handle_errors
def update_alert_status(alert_id: int) -> tuple:
    """Mark an open alert resolved or ordered."""
    status = _json_body().get("status")
    if status not in ("resolved", "ordered"):
        return error_response("status must be 'resolved' or 'ordered'", 400)
    if models.get_alert(g.db, alert_id) is None:
        return error_response("Alert not found", 404)
    if not models.close_alert(g.db, alert_id, status):
        return error_response("Only open alerts can change status", 409)
    return jsonify(models.get_alert(g.db, alert_id)), 200


# ===========================================================================
# Restock requests
# ===========================================================================


@api_bp.route("/requests", methods=["GET"])
@handle_errors
def list_requests() -> tuple:
    requests_ = models.list_restock_requests(
        g.db,
        connection_id=request.args.get("connection_id", type=int),
        status=request.args.get("status"),
    )
    return jsonify(requests_), 200


@api_bp.route("/requests", methods=["POST"])
@handle_errors
def create_request() -> tuple:
    data = _json_body()
    connection_id = _optional_int(data.get("connection_id"), "connection_id")
    items = data.get("items")
    if connection_id is None or not isinstance(items, list):
        return error_response("connection_id and items are required", 400)
    created = restock_requests.create_request(
        g.db,
        connection_id,
        items,
        notes=data.get("notes"),
        send_now=bool(data.get("send_now", False)),
    )
    return jsonify(created), 201


@api_bp.route("/requests/from-alerts", methods=["POST"])
@handle_errors
def create_request_from_alerts() -> tuple:
    data = _json_body()
    connection_id = _optional_int(data.get("connection_id"), "connection_id")
    if connection_id is None:
        return error_response("connection_id is required", 400)
    created = restock_requests.create_from_alerts(g.db, connection_id, notes=data.get("notes"))
    return jsonify(created), 201


@api_bp.route("/requests/<int:request_id>", methods=["GET"])
@handle_errors
def get_request(request_id: int) -> tuple:
    return jsonify(restock_requests.get_request(g.db, request_id)), 200


@api_bp.route("/requests/<int:request_id>/send", methods=["POST"])
@handle_errors
def send_request(request_id: int) -> tuple:
    return jsonify(restock_requests.send_request(g.db, request_id)), 200


@api_bp.route("/requests/<int:request_id>", methods=["DELETE"])
@handle_errors
def delete_request(request_id: int) -> tuple:
    restock_requests.delete_request(g.db, request_id)
    return jsonify({"message": "Request deleted"}), 200


@api_bp.route("/requests/approve/<token>", methods=["GET"])
@handle_errors
def get_request_by_token(token: str) -> tuple:
    """Retailer-facing view of a request behind a magic link."""
    found = restock_requests.get_request_by_token(g.db, token)
    found.pop("magic_token", None)
    return jsonify(found), 200


@api_bp.route("/requests/approve/<token>", methods=["POST"])
@handle_errors
def decide_request(token: str) -> tuple:
    """Approve or reject the request behind a magic link."""
    data = _json_body()
    if not isinstance(data.get("approved"), bool):
        return error_response("approved must be true or false", 400)
    items = data.get("items")
    if items is not None and not isinstance(items, list):
        return error_response("items must be a list", 400)
    decided = restock_requests.decide_request(
        g.db,
        token,
        approved=data["approved"],
        items=items,
        notes=data.get("notes"),
    )
    decided.pop("magic_token", None)
    return jsonify({"success": True, "approved": data["approved"], "request": decided}), 200
