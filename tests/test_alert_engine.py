"""Tests for services.alert_engine."""

from __future__ import annotations

import sqlite3

import pytest

from database.models import (
    get_inventory_level,
    get_open_alert,
    list_alerts,
    set_inventory_threshold,
    update_product,
    upsert_inventory_level,
)
from services.alert_engine import (
    SEVERITY_CRITICAL,
    SEVERITY_LOW,
    SEVERITY_OUT_OF_STOCK,
    SEVERITY_WARNING,
    reconcile_alerts,
    severity,
)

MAIN = "gid://shopify/Location/1"
BACKROOM = "gid://shopify/Location/2"


def _set_qty(db: sqlite3.Connection, product: dict, quantity: int, location: str = MAIN) -> None:
    upsert_inventory_level(db, product["connection_id"], product["id"], location, "Loc", quantity)


class TestSeverity:
    @pytest.mark.parametrize(
        ("quantity", "threshold", "expected"),
        [
            (0, 10, SEVERITY_OUT_OF_STOCK),
            (2, 10, SEVERITY_CRITICAL),
            (5, 10, SEVERITY_WARNING),
            (10, 10, SEVERITY_LOW),
            (11, 10, None),
            (0, 0, SEVERITY_OUT_OF_STOCK),
        ],
    )
    def test_bands(self, quantity: int, threshold: int, expected: str | None) -> None:
        assert severity(quantity, threshold) == expected


class TestReconcileAlerts:
    def test_opens_alert_when_low(self, db: sqlite3.Connection, stocked_product: dict) -> None:
        result = reconcile_alerts(db, stocked_product["connection_id"])
        assert result.created == 1
        alert = get_open_alert(db, stocked_product["id"])
        assert alert["quantity"] == 3
        assert alert["threshold"] == 10

    def test_idempotent(self, db: sqlite3.Connection, stocked_product: dict) -> None:
        reconcile_alerts(db, stocked_product["connection_id"])
        result = reconcile_alerts(db, stocked_product["connection_id"])
        assert (result.created, result.resolved) == (0, 0)
        assert len(list_alerts(db, stocked_product["connection_id"])) == 1

    def test_threshold_is_inclusive(self, db: sqlite3.Connection, sample_product: dict) -> None:
        _set_qty(db, sample_product, 10)
        assert reconcile_alerts(db, sample_product["connection_id"]).created == 1

    def test_no_alert_above_threshold(self, db: sqlite3.Connection, sample_product: dict) -> None:
        _set_qty(db, sample_product, 11)
        assert reconcile_alerts(db, sample_product["connection_id"]).created == 0

    def test_resolves_when_restocked(self, db: sqlite3.Connection, stocked_product: dict) -> None:
        cid = stocked_product["connection_id"]
        reconcile_alerts(db, cid)
        _set_qty(db, stocked_product, 50)
        result = reconcile_alerts(db, cid)
        assert result.resolved == 1
        assert get_open_alert(db, stocked_product["id"]) is None
        assert list_alerts(db, cid)[0]["status"] == "resolved"

    def test_reopens_after_resolution(self, db: sqlite3.Connection, stocked_product: dict) -> None:
        cid = stocked_product["connection_id"]
        reconcile_alerts(db, cid)
        _set_qty(db, stocked_product, 50)
        reconcile_alerts(db, cid)
        _set_qty(db, stocked_product, 1)
        assert reconcile_alerts(db, cid).created == 1
        assert len(list_alerts(db, cid)) == 2

    def test_captures_lowest_location(self, db: sqlite3.Connection, sample_product: dict) -> None:
        _set_qty(db, sample_product, 8, MAIN)
        _set_qty(db, sample_product, 2, BACKROOM)
        reconcile_alerts(db, sample_product["connection_id"])
        assert get_open_alert(db, sample_product["id"])["quantity"] == 2

    def test_any_low_location_keeps_alert_open(
        self, db: sqlite3.Connection, sample_product: dict
    ) -> None:
        cid = sample_product["connection_id"]
        _set_qty(db, sample_product, 50, MAIN)
        _set_qty(db, sample_product, 1, BACKROOM)
        reconcile_alerts(db, cid)
        _set_qty(db, sample_product, 60, MAIN)
        assert reconcile_alerts(db, cid).resolved == 0
        assert get_open_alert(db, sample_product["id"]) is not None

    def test_location_override_wins(self, db: sqlite3.Connection, stocked_product: dict) -> None:
        level = get_inventory_level(db, stocked_product["id"], MAIN)
        set_inventory_threshold(db, level["id"], 2)
        assert reconcile_alerts(db, stocked_product["connection_id"]).created == 0

    def test_product_threshold_used(self, db: sqlite3.Connection, stocked_product: dict) -> None:
        update_product(db, stocked_product["id"], low_stock_threshold=3)
        reconcile_alerts(db, stocked_product["connection_id"])
        assert get_open_alert(db, stocked_product["id"])["threshold"] == 3

    def test_archived_products_ignored(self, db: sqlite3.Connection, stocked_product: dict) -> None:
        update_product(db, stocked_product["id"], is_archived=1)
        assert reconcile_alerts(db, stocked_product["connection_id"]).created == 0

    def test_archiving_resolves_open_alert(
        self, db: sqlite3.Connection, stocked_product: dict
    ) -> None:
        cid = stocked_product["connection_id"]
        _set_qty(db, stocked_product, 0)
        reconcile_alerts(db, cid)
        update_product(db, stocked_product["id"], is_archived=1)
        _set_qty(db, stocked_product, 500)

        result = reconcile_alerts(db, cid)

        assert result.resolved == 1
        assert get_open_alert(db, stocked_product["id"]) is None
        assert list_alerts(db, cid)[0]["status"] == "resolved"

    def test_archived_resolution_respects_product_ids(
        self, db: sqlite3.Connection, stocked_product: dict
    ) -> None:
        cid = stocked_product["connection_id"]
        reconcile_alerts(db, cid)
        update_product(db, stocked_product["id"], is_archived=1)
        assert reconcile_alerts(db, cid, product_ids=[9999]).resolved == 0
        assert reconcile_alerts(db, cid, product_ids=[stocked_product["id"]]).resolved == 1

    def test_limited_to_product_ids(self, db: sqlite3.Connection, stocked_product: dict) -> None:
        cid = stocked_product["connection_id"]
        assert reconcile_alerts(db, cid, product_ids=[9999]).created == 0
        assert reconcile_alerts(db, cid, product_ids=[stocked_product["id"]]).created == 1

    def test_products_without_inventory_ignored(
        self, db: sqlite3.Connection, sample_product: dict
    ) -> None:
        assert reconcile_alerts(db, sample_product["connection_id"]).created == 0
