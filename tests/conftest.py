"""Shared test fixtures."""

from __future__ import annotations

import sqlite3
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest

from config import settings
from database.models import (
    create_connection,
    create_product,
    set_approved_vendors,
    upsert_inventory_level,
)

_SCHEMA_PATH = Path(__file__).resolve().parent.parent / "database" / "schema.sql"

SHOP_DOMAIN = "test.myshopify.com"
ACCESS_TOKEN = "shpat_test_token"


class _NoCloseConnection:
    """Wrapper around a sqlite3.Connection that ignores .close() calls.

    Prevents finally-block closes from destroying the shared in-memory fixture.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        object.__setattr__(self, "_conn", conn)

    def close(self) -> None:  # noqa: D102
        pass

    def __getattr__(self, name: str) -> object:
        return getattr(self._conn, name)

    def __setattr__(self, name: str, value: object) -> None:
        setattr(self._conn, name, value)


@pytest.fixture(autouse=True)
def _pin_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    """Pin the settings the sync code reads so a local .env cannot leak in."""
    monkeypatch.setattr(settings, "shopify_api_version", "2025-10")
    monkeypatch.setattr(settings, "shopify_api_key", "test-api-key")
    monkeypatch.setattr(settings, "shopify_api_secret", "test-api-secret")
    monkeypatch.setattr(settings, "shopify_webhook_secret", "")
    monkeypatch.setattr(settings, "shopify_redirect_uri", "https://app.example.com/api/shopify/callback")
    monkeypatch.setattr(settings, "sync_page_size", 50)
    monkeypatch.setattr(settings, "sync_max_pages", 200)
    monkeypatch.setattr(settings, "sync_max_retries", 3)
    monkeypatch.setattr(settings, "default_low_stock_threshold", 10)
    monkeypatch.setattr(settings, "magic_token_ttl_hours", 168)
    monkeypatch.setattr(settings, "oauth_state_ttl_seconds", 600)
    monkeypatch.setattr(settings, "database_path", ":memory:")


@pytest.fixture
def db() -> Generator[sqlite3.Connection, None, None]:
    """In-memory SQLite database with the full schema applied."""
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    schema = _SCHEMA_PATH.read_text()
    conn.executescript(schema)
    yield conn
    conn.close()


@pytest.fixture
def shared_db(db: sqlite3.Connection) -> _NoCloseConnection:
    """The in-memory fixture wrapped so code under test cannot close it."""
    return _NoCloseConnection(db)


@pytest.fixture
def client(shared_db: _NoCloseConnection, monkeypatch: pytest.MonkeyPatch):
    """Flask test client for the API backed by the in-memory fixture."""
    from api.app import create_app

    monkeypatch.setattr("api.routes.get_db", lambda _path: shared_db)
    app = create_app()
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c


@pytest.fixture
def sample_connection(db: sqlite3.Connection) -> dict[str, Any]:
    """An active Shopify connection with full vendor access."""
    connection = create_connection(db, SHOP_DOMAIN, ACCESS_TOKEN, shop_name="Test Shop")
    return set_approved_vendors(db, connection["id"], None)  # type: ignore[return-value]


@pytest.fixture
def sample_product(db: sqlite3.Connection, sample_connection: dict[str, Any]) -> dict[str, Any]:
    """A synced product for the sample connection."""
    product = create_product(
        db,
        sample_connection["id"],
        sku="WIDGET-RED",
        name="Widget - Red",
        external_id="gid://shopify/ProductVariant/1001",
        product_external_id="gid://shopify/Product/100",
        inventory_item_id="gid://shopify/InventoryItem/5001",
        brand="Acme",
    )
    assert product is not None
    return product


@pytest.fixture
def stocked_product(db: sqlite3.Connection, sample_product: dict[str, Any]) -> dict[str, Any]:
    """The sample product with 3 units at one location (below threshold 10)."""
    upsert_inventory_level(
        db,
        sample_product["connection_id"],
        sample_product["id"],
        "gid://shopify/Location/1",
        "Main Warehouse",
        3,
    )
    return sample_product
