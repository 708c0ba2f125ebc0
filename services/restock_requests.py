"""Restock request workflow with magic-token approval.

Requests move ``draft -> pending -> approved | rejected``.  Each carries an
opaque single-use token that lets a retailer approve or reject without a
session; the token stops working once it expires or the request is decided.
"""

from __future__ import annotations

import logging
import secrets
import sqlite3
from datetime import UTC, datetime, timedelta
from typing import Any

import database.models as models
from api.exceptions import (
    AlreadyProcessedError,
    ConflictError,
    NotFoundError,
    TokenExpiredError,
    ValidationError,
)
from config import settings

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
OPEN_STATUSES = ("draft", "pending")


def new_magic_token() -> str:
    return secrets.token_urlsafe(32)


def token_expiry(now: datetime | None = None) -> str:
    """Expiry timestamp for a token issued at *now*."""
    now = now or datetime.now(UTC)
    return (now + timedelta(hours=settings.magic_token_ttl_hours)).strftime(TIMESTAMP_FORMAT)


def is_expired(expires_at: str, now: datetime | None = None) -> bool:
    expiry = datetime.strptime(expires_at, TIMESTAMP_FORMAT).replace(tzinfo=UTC)
    return (now or datetime.now(UTC)) > expiry


def _positive_int(value: Any, field: str, allow_zero: bool = False) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        msg = f"{field} must be an integer"
        raise ValidationError(msg)
    if value < 0 or (value == 0 and not allow_zero):
        msg = f"{field} must be {'non-negative' if allow_zero else 'positive'}"
        raise ValidationError(msg)
    return value


def create_request(
    conn: sqlite3.Connection,
    connection_id: int,
    items: list[dict[str, Any]],
    notes: str | None = None,
    send_now: bool = False,
) -> dict[str, Any]:
    """Create a draft (or, with *send_now*, pending) request for a connection's products."""
    if models.get_connection(conn, connection_id) is None:
        msg = f"Connection {connection_id} not found"
        raise NotFoundError(msg)
    if not items:
        msg = "At least one item is required"
        raise ValidationError(msg)

    clean: list[dict[str, Any]] = []
    seen: set[int] = set()
    for item in items:
        if not isinstance(item, dict):
            msg = "Each item must be an object"
            raise ValidationError(msg)
        product_id = item.get("product_id")
        product = models.get_product(conn, product_id) if product_id is not None else None
        if product is None or product["connection_id"] != connection_id:
            msg = f"Product {product_id} does not belong to connection {connection_id}"
            raise ValidationError(msg)
        if product_id in seen:
            msg = f"Product {product_id} is listed more than once"
            raise ValidationError(msg)
        seen.add(product_id)
        clean.append(
            {
                "product_id": product_id,
                "current_quantity": _positive_int(
                    item.get("current_quantity", 0), "current_quantity", allow_zero=True
                ),
                "requested_quantity": _positive_int(
                    item.get("requested_quantity"), "requested_quantity"
                ),
            }
        )

    request = models.create_restock_request(
        conn,
        connection_id,
        status="pending" if send_now else "draft",
        magic_token=new_magic_token(),
        token_expires_at=token_expiry(),
        items=clean,
        agency_notes=notes,
    )
    logger.info("Created restock request %d (%s)", request["id"], request["status"])
    return request


def suggested_quantity(quantity: int, threshold: int) -> int:
    """Order enough to reach twice the threshold, at least one unit."""
    return max(1, threshold * 2 - quantity)


def create_from_alerts(
    conn: sqlite3.Connection,
    connection_id: int,
    notes: str | None = None,
) -> dict[str, Any]:
    """Build a draft request from the connection's open low-stock alerts."""
    open_alerts = models.list_alerts(conn, connection_id=connection_id, status="open", limit=None)
    alerts = [alert for alert in open_alerts if not alert["is_archived"]]
    if not alerts:
        msg = f"Connection {connection_id} has no open alerts"
        raise ValidationError(msg)
    items = [
        {
            "product_id": alert["product_id"],
            "current_quantity": alert["quantity"],
            "requested_quantity": suggested_quantity(alert["quantity"], alert["threshold"]),
        }
        for alert in alerts
    ]
    return create_request(conn, connection_id, items, notes=notes)


def get_request(conn: sqlite3.Connection, request_id: int) -> dict[str, Any]:
    request = models.get_restock_request(conn, request_id)
    if request is None:
        msg = f"Request {request_id} not found"
        raise NotFoundError(msg)
    return request


def send_request(conn: sqlite3.Connection, request_id: int) -> dict[str, Any]:
    """Move a draft to pending and restart its token lifetime."""
    get_request(conn, request_id)
    if not models.transition_restock_request(
        conn,
        request_id,
        ("draft",),
        "pending",
        token_expires_at=token_expiry(),
    ):
        msg = f"Request {request_id} is not a draft"
        raise ConflictError(msg)
    logger.info("Restock request %d sent for approval", request_id)
    return get_request(conn, request_id)


def delete_request(conn: sqlite3.Connection, request_id: int) -> None:
    if not models.delete_restock_request(conn, request_id):
        msg = f"Request {request_id} not found"
        raise NotFoundError(msg)


def get_request_by_token(
    conn: sqlite3.Connection,
    token: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Resolve a magic token to an actionable request.

    Raises NotFoundError (unknown), TokenExpiredError (past expiry) or
    AlreadyProcessedError (already approved or rejected).
    """
    request = models.get_restock_request_by_token(conn, token)
    if request is None:
        msg = "Request not found"
        raise NotFoundError(msg)
    if is_expired(request["token_expires_at"], now):
        msg = "Approval link has expired"
        raise TokenExpiredError(msg)
    if request["status"] not in OPEN_STATUSES:
        msg = f"Request already {request['status']}"
        raise AlreadyProcessedError(msg)
    return request


def decide_request(
    conn: sqlite3.Connection,
    token: str,
    approved: bool,
    items: list[dict[str, Any]] | None = None,
    notes: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Approve or reject the request behind *token*. One-way.

    When approving, per-item ``approved_quantity`` overrides may be given;
    items without one are approved at their requested quantity.
    """
    request = get_request_by_token(conn, token, now)

    approved_quantities: dict[int, int] | None = None
    if approved:
        item_ids = {item["id"] for item in request["items"]}
        approved_quantities = {
            item["id"]: item["requested_quantity"] for item in request["items"]
        }
        for override in items or []:
            if not isinstance(override, dict):
                msg = "Each item override must be an object"
                raise ValidationError(msg)
            item_id = override.get("id")
            if item_id not in item_ids:
                msg = f"Item {item_id} is not part of this request"
                raise ValidationError(msg)
            approved_quantities[item_id] = _positive_int(
                override.get("approved_quantity"), "approved_quantity", allow_zero=True
            )

    if not models.transition_restock_request(
        conn,
        request["id"],
        OPEN_STATUSES,
        "approved" if approved else "rejected",
        retailer_notes=notes,
        approved_quantities=approved_quantities,
    ):
        # Decided concurrently between the lookup and the update
        msg = "Request already processed"
        raise AlreadyProcessedError(msg)

    logger.info(
        "Restock request %d %s", request["id"], "approved" if approved else "rejected"
    )
    return get_request(conn, request["id"])
