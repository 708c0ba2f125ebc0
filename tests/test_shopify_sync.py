"""Tests for services.shopify_sync: full sync runs against a mocked Admin API."""

from __future__ import annotations

import json
import sqlite3
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
import responses

from api.exceptions import (
    PreconditionError,
    SetupIncompleteError,
    SyncInProgressError,
    ValidationError,
)
from database.models import (
    create_connection,
    create_sync_log,
    get_connection,
    get_open_alert,
    get_product_by_sku,
    get_sync_log,
    list_alerts,
    list_inventory,
    list_products,
    set_approved_vendors,
    update_connection,
)
from services.shopify_sync import (
    _lock_for,
    _run_logged,
    is_sync_running,
    run_sync,
    start_sync,
)

SHOP_DOMAIN = "test.myshopify.com"
SHOPIFY_GRAPHQL_URL = "https://test.myshopify.com/admin/api/2025-10/graphql.json"
LOCATION = "gid://shopify/Location/1"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _products_payload(variant_quantities: dict[str, int]) -> dict[str, Any]:
    """One product "Widget A" with one variant per SKU."""
    edges = []
    for num, sku in enumerate(variant_quantities, start=1):
        edges.append(
            {
                "node": {
                    "id": f"gid://shopify/ProductVariant/{num}",
                    "title": sku,
                    "sku": sku,
                    "inventoryItem": {"id": f"gid://shopify/InventoryItem/{num}", "tracked": True},
                }
            }
        )
    return {
        "data": {
            "products": {
                "edges": [
                    {
                        "node": {
                            "id": "gid://shopify/Product/1",
                            "title": "Widget",
                            "vendor": "Acme",
                            "status": "ACTIVE",
                            "variants": {"edges": edges},
                        }
                    }
                ],
                "pageInfo": {"hasNextPage": False, "endCursor": None},
            }
        }
    }


def _levels_payload(item_id: str, quantity: int) -> dict[str, Any]:
    return {
        "data": {
            "inventoryItem": {
                "id": item_id,
                "inventoryLevels": {
                    "edges": [
                        {
                            "node": {
                                "id": f"{item_id}-level",
                                "quantities": [{"name": "available", "quantity": quantity}],
                                "location": {"id": LOCATION, "name": "Main Warehouse"},
                            }
                        }
                    ]
                },
            }
        }
    }


def _register_shop(variant_quantities: dict[str, int], fail_items: set[str] | None = None) -> list:
    """Serve products and inventory levels from one callback; returns seen queries."""
    item_qty = {
        f"gid://shopify/InventoryItem/{num}": qty
        for num, qty in enumerate(variant_quantities.values(), start=1)
    }
    seen: list[dict] = []

    def callback(request):
        body = json.loads(request.body)
        seen.append(body)
        if "GetProducts" in body["query"]:
            return 200, {}, json.dumps(_products_payload(variant_quantities))
        item_id = body["variables"]["inventoryItemId"]
        if fail_items and item_id in fail_items:
            return 200, {}, json.dumps({"errors": [{"message": "Access denied"}]})
        return 200, {}, json.dumps(_levels_payload(item_id, item_qty[item_id]))

    responses.add_callback(
        responses.POST, SHOPIFY_GRAPHQL_URL, callback=callback, content_type="application/json"
    )
    return seen


@pytest.fixture(autouse=True)
def _no_sleep():
    with patch("services.shopify_client.time.sleep"):
        yield


# ---------------------------------------------------------------------------
# run_sync
# ---------------------------------------------------------------------------


class TestRunSync:
    @responses.activate
    def test_full_run_creates_products_inventory_and_alert(
        self, db: sqlite3.Connection, sample_connection: dict
    ) -> None:
        cid = sample_connection["id"]
        _register_shop({"A1": 0, "A2": 15})

        stats = run_sync(db, cid)

        assert stats.products_processed == 2
        assert stats.products_created == 2
        assert stats.inventory_updated == 2
        assert stats.alerts_created == 1
        assert stats.item_errors == 0

        assert {p["sku"] for p in list_products(db, cid)} == {"A1", "A2"}
        assert get_product_by_sku(db, cid, "A1")["name"] == "Widget - A1"

        alerts = list_alerts(db, cid, status="open")
        assert len(alerts) == 1
        assert alerts[0]["sku"] == "A1"
        assert alerts[0]["quantity"] == 0
        assert get_open_alert(db, get_product_by_sku(db, cid, "A2")["id"]) is None

        assert get_connection(db, cid)["last_sync_at"] is not None

    @responses.activate
    def test_second_run_is_idempotent(
        self, db: sqlite3.Connection, sample_connection: dict
    ) -> None:
        cid = sample_connection["id"]
        _register_shop({"A1": 0, "A2": 15})
        run_sync(db, cid)
        before = list_inventory(db, cid)

        stats = run_sync(db, cid)

        assert stats.products_created == 0
        assert stats.products_updated == 2
        assert stats.inventory_updated == 0
        assert stats.alerts_created == 0
        assert stats.alerts_resolved == 0
        assert list_inventory(db, cid) == before
        assert len(list_alerts(db, cid)) == 1

    @responses.activate
    def test_restock_resolves_alert(self, db: sqlite3.Connection, sample_connection: dict) -> None:
        cid = sample_connection["id"]
        _register_shop({"A1": 0, "A2": 15})
        run_sync(db, cid)

        responses.reset()
        _register_shop({"A1": 40, "A2": 15})
        stats = run_sync(db, cid)

        assert stats.inventory_updated == 1
        assert stats.alerts_resolved == 1
        assert list_alerts(db, cid, status="open") == []

    @responses.activate
    def test_vendor_filter_sent_upstream(
        self, db: sqlite3.Connection, sample_connection: dict
    ) -> None:
        cid = sample_connection["id"]
        set_approved_vendors(db, cid, ["Acme", "Zeta"])
        seen = _register_shop({"A1": 5})

        run_sync(db, cid)

        assert seen[0]["variables"]["query"] == 'vendor:"Acme" OR vendor:"Zeta"'

    @responses.activate
    def test_full_access_sends_no_filter(
        self, db: sqlite3.Connection, sample_connection: dict
    ) -> None:
        seen = _register_shop({"A1": 5})
        run_sync(db, sample_connection["id"])
        assert seen[0]["variables"]["query"] is None

    @responses.activate
    def test_empty_vendor_list_makes_no_calls(
        self, db: sqlite3.Connection, sample_connection: dict
    ) -> None:
        cid = sample_connection["id"]
        set_approved_vendors(db, cid, [])

        stats = run_sync(db, cid)

        assert len(responses.calls) == 0
        assert stats.as_dict() == {key: 0 for key in stats.as_dict()}

    @responses.activate
    def test_item_failure_does_not_abort_run(
        self, db: sqlite3.Connection, sample_connection: dict
    ) -> None:
        cid = sample_connection["id"]
        _register_shop({"A1": 0, "A2": 15}, fail_items={"gid://shopify/InventoryItem/2"})

        stats = run_sync(db, cid)

        assert stats.item_errors == 1
        assert stats.inventory_updated == 1
        assert stats.alerts_created == 1

    def test_setup_incomplete_raises_before_api_calls(self, db: sqlite3.Connection) -> None:
        connection = create_connection(db, "new.myshopify.com", "shpat_new")
        client = MagicMock()
        with pytest.raises(SetupIncompleteError):
            run_sync(db, connection["id"], client=client)
        client.execute.assert_not_called()

    def test_inactive_connection_raises(
        self, db: sqlite3.Connection, sample_connection: dict
    ) -> None:
        update_connection(db, sample_connection["id"], is_active=0)
        with pytest.raises(PreconditionError):
            run_sync(db, sample_connection["id"], client=MagicMock())

    @responses.activate
    def test_rate_limit_aborts_run(self, db: sqlite3.Connection, sample_connection: dict) -> None:
        responses.add(
            responses.POST,
            SHOPIFY_GRAPHQL_URL,
            json={"errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}]},
        )
        from api.exceptions import ShopifyRateLimitError

        with pytest.raises(ShopifyRateLimitError):
            run_sync(db, sample_connection["id"])
        assert get_connection(db, sample_connection["id"])["last_sync_at"] is None


# ---------------------------------------------------------------------------
# start_sync
# ---------------------------------------------------------------------------


class TestStartSync:
    @responses.activate
    def test_foreground_run_completes_log(
        self, db: sqlite3.Connection, sample_connection: dict
    ) -> None:
        cid = sample_connection["id"]
        _register_shop({"A1": 0, "A2": 15})

        log = start_sync(db, cid, background=False)

        assert log["status"] == "completed"
        assert log["products_processed"] == 2
        assert log["alerts_created"] == 1
        assert log["sku_conflicts"] == 0
        assert log["completed_at"] is not None
        assert not is_sync_running(cid)

    @responses.activate
    def test_failed_run_records_error(
        self, db: sqlite3.Connection, sample_connection: dict
    ) -> None:
        responses.add(responses.POST, SHOPIFY_GRAPHQL_URL, status=401)

        log = start_sync(db, sample_connection["id"], background=False)

        assert log["status"] == "failed"
        assert log["error_message"]
        assert not is_sync_running(sample_connection["id"])

    def test_defaults_to_first_active_connection(
        self, db: sqlite3.Connection, sample_connection: dict
    ) -> None:
        with patch("services.shopify_sync.threading.Thread") as mock_thread:
            log = start_sync(db)
        assert log["connection_id"] == sample_connection["id"]
        assert log["status"] == "running"
        mock_thread.return_value.start.assert_called_once()
        _lock_for(sample_connection["id"]).release()

    def test_no_connections(self, db: sqlite3.Connection) -> None:
        with pytest.raises(ValidationError, match="No shops connected"):
            start_sync(db)

    def test_precondition_checked_before_log(self, db: sqlite3.Connection) -> None:
        connection = create_connection(db, "new.myshopify.com", "shpat_new")
        with pytest.raises(SetupIncompleteError):
            start_sync(db, connection["id"])
        count = db.execute("SELECT COUNT(*) FROM sync_logs").fetchone()[0]
        assert count == 0

    def test_concurrent_run_rejected(
        self, db: sqlite3.Connection, sample_connection: dict
    ) -> None:
        lock = _lock_for(sample_connection["id"])
        lock.acquire()
        try:
            with pytest.raises(SyncInProgressError):
                start_sync(db, sample_connection["id"])
        finally:
            lock.release()

    def test_unopenable_database_still_fails_log(
        self, db: sqlite3.Connection, shared_db, sample_connection: dict
    ) -> None:
        cid = sample_connection["id"]
        log = create_sync_log(db, cid)
        lock = _lock_for(cid)
        lock.acquire()

        side_effect = [sqlite3.OperationalError("database is locked"), shared_db]
        with patch("services.shopify_sync.get_db", side_effect=side_effect):
            assert _run_logged(cid, log["id"], lock) is None

        row = get_sync_log(db, log["id"])
        assert row["status"] == "failed"
        assert row["error_message"] == "database is locked"
        assert not lock.locked()
