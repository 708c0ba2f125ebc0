"""Shopify OAuth authorization-code handshake.

State tokens live in the ``oauth_states`` table with an explicit expiry, are
bound to the shop they were issued for, and are deleted on first use.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
import sqlite3
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlencode

import requests

import database.models as models
from api.exceptions import (
    AppError,
    InvalidOAuthStateError,
    InvalidSignatureError,
    ShopifySyncError,
    ValidationError,
)
from config import settings

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
SHOP_DOMAIN_SUFFIX = ".myshopify.com"
_SHOP_DOMAIN_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9\-]*[a-zA-Z0-9]\.myshopify\.com$")


def normalize_shop_domain(shop: str) -> str:
    """Strip scheme and trailing slash, and append ``.myshopify.com`` if missing."""
    shop = re.sub(r"^https?://", "", shop.strip()).rstrip("/").lower()
    if not shop.endswith(SHOP_DOMAIN_SUFFIX):
        shop = f"{shop}{SHOP_DOMAIN_SUFFIX}"
    return shop


def is_valid_shop_domain(shop: str) -> bool:
    return bool(_SHOP_DOMAIN_RE.match(shop))


def _timestamp(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


def begin_authorization(
    conn: sqlite3.Connection,
    shop: str | None,
    now: datetime | None = None,
) -> str:
    """Store a fresh state token for *shop* and return the Shopify consent URL."""
    if not shop:
        msg = "Missing shop parameter"
        raise ValidationError(msg)
    shop_domain = normalize_shop_domain(shop)
    if not is_valid_shop_domain(shop_domain):
        msg = "Shop domain must be in format: your-store.myshopify.com"
        raise ValidationError(msg)
    if not settings.shopify_api_key or not settings.shopify_redirect_uri:
        msg = "Shopify API credentials not configured"
        raise AppError(msg)

    now = now or datetime.now(UTC)
    state = secrets.token_hex(32)
    expires_at = now + timedelta(seconds=settings.oauth_state_ttl_seconds)
    models.create_oauth_state(conn, state, shop_domain, _timestamp(expires_at))

    query = urlencode(
        {
            "client_id": settings.shopify_api_key,
            "scope": settings.shopify_scopes,
            "redirect_uri": settings.shopify_redirect_uri,
            "state": state,
        }
    )
    logger.info("Starting OAuth for %s", shop_domain)
    return f"https://{shop_domain}/admin/oauth/authorize?{query}"


def verify_callback_hmac(params: dict[str, str], secret: str | None = None) -> bool:
    """Verify the hex HMAC-SHA256 Shopify appends to OAuth callback query strings."""
    secret = secret if secret is not None else settings.shopify_api_secret
    received = params.get("hmac")
    if not secret or not received:
        return False
    message = "&".join(
        f"{key}={params[key]}"
        for key in sorted(params)
        if key not in ("hmac", "signature")
    )
    expected = hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, received)


def exchange_code(shop_domain: str, code: str) -> tuple[str, str]:
    """Trade an authorization code for a permanent access token and its scopes."""
    try:
        response = requests.post(
            f"https://{shop_domain}/admin/oauth/access_token",
            json={
                "client_id": settings.shopify_api_key,
                "client_secret": settings.shopify_api_secret,
                "code": code,
            },
            timeout=settings.sync_request_timeout,
        )
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as exc:
        msg = f"Token exchange with {shop_domain} failed: {exc}"
        raise ShopifySyncError(msg) from exc
    if not data.get("access_token"):
        msg = f"Token exchange with {shop_domain} returned no access token"
        raise ShopifySyncError(msg)
    return data["access_token"], data.get("scope", "")


def complete_authorization(
    conn: sqlite3.Connection,
    params: dict[str, str],
    now: datetime | None = None,
) -> dict[str, Any]:
    """Validate an OAuth callback, exchange its code and upsert the connection.

    New connections start with setup incomplete; a reinstall of a previously
    uninstalled shop also has to go through vendor approval again.
    """
    shop, code, state = params.get("shop"), params.get("code"), params.get("state")
    if not shop or not code or not state:
        msg = "Required parameters: shop, code, state"
        raise ValidationError(msg)

    shop_domain = normalize_shop_domain(shop)
    stored = models.consume_oauth_state(conn, state)
    now = now or datetime.now(UTC)
    if (
        stored is None
        or stored["shop_domain"] != shop_domain
        or stored["expires_at"] < _timestamp(now)
    ):
        logger.warning("Invalid OAuth state for %s", shop_domain)
        msg = "OAuth state validation failed"
        raise InvalidOAuthStateError(msg)

    if not verify_callback_hmac(params):
        logger.warning("Invalid OAuth callback HMAC for %s", shop_domain)
        msg = "Invalid HMAC signature"
        raise InvalidSignatureError(msg)

    access_token, scopes = exchange_code(shop_domain, code)

    existing = models.get_connection_by_domain(conn, shop_domain)
    if existing is None:
        connection = models.create_connection(conn, shop_domain, access_token, scopes=scopes)
    else:
        fields: dict[str, Any] = {"access_token": access_token, "scopes": scopes, "is_active": 1}
        if not existing["is_active"]:
            fields["setup_complete"] = 0
        connection = models.update_connection(conn, existing["id"], **fields)
    logger.info("Shopify connection saved for %s", shop_domain)
    return connection  # type: ignore[return-value]


def purge_expired_states(conn: sqlite3.Connection, now: datetime | None = None) -> int:
    removed = models.purge_expired_oauth_states(conn, _timestamp(now or datetime.now(UTC)))
    if removed:
        logger.info("Purged %d expired OAuth states", removed)
    return removed
