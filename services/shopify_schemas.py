"""Pydantic schemas for the Shopify GraphQL payloads the sync consumes.

Responses are validated here, at the client boundary, so the reconcilers only
ever see typed records. GraphQL connections (``{"edges": [{"node": ...}]}``)
are flattened into plain lists.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from api.exceptions import ShopifySyncError


def _unwrap_edges(value: Any) -> Any:
    """Turn a GraphQL connection into a list of its nodes."""
    if value is None:
        return []
    if isinstance(value, dict) and "edges" in value:
        return [edge["node"] for edge in value["edges"] or []]
    return value


class _Schema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class PageInfo(_Schema):
    has_next_page: bool = Field(default=False, alias="hasNextPage")
    end_cursor: str | None = Field(default=None, alias="endCursor")


class InventoryItemRef(_Schema):
    id: str
    tracked: bool = True


class VariantNode(_Schema):
    id: str
    title: str = ""
    sku: str | None = None
    inventory_item: InventoryItemRef | None = Field(default=None, alias="inventoryItem")

    @property
    def tracked_inventory_item_id(self) -> str | None:
        """Inventory item ID when the variant tracks stock, else None."""
        if self.inventory_item is None or not self.inventory_item.tracked:
            return None
        return self.inventory_item.id


class ProductNode(_Schema):
    id: str
    title: str
    vendor: str | None = None
    status: str | None = None
    variants: list[VariantNode] = []

    @field_validator("variants", mode="before")
    @classmethod
    def unwrap_variants(cls, value: Any) -> Any:
        return _unwrap_edges(value)


class ProductPage(_Schema):
    products: list[ProductNode] = Field(default_factory=list, alias="edges")
    page_info: PageInfo = Field(default_factory=PageInfo, alias="pageInfo")

    @field_validator("products", mode="before")
    @classmethod
    def unwrap_products(cls, value: Any) -> Any:
        return [edge["node"] for edge in value or []]


class InventoryQuantity(_Schema):
    name: str
    quantity: int


class LocationRef(_Schema):
    id: str
    name: str = ""


class InventoryLevelNode(_Schema):
    id: str | None = None
    quantities: list[InventoryQuantity] = []
    location: LocationRef

    @property
    def available(self) -> int | None:
        """Quantity of the ``available`` bucket, or None if it was not returned."""
        for bucket in self.quantities:
            if bucket.name == "available":
                return bucket.quantity
        return None


class InventoryItemLevels(_Schema):
    id: str
    levels: list[InventoryLevelNode] = Field(default_factory=list, alias="inventoryLevels")

    @field_validator("levels", mode="before")
    @classmethod
    def unwrap_levels(cls, value: Any) -> Any:
        return _unwrap_edges(value)


class VendorList(_Schema):
    shop_name: str | None = None
    vendors: list[str] = []


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def _invalid(kind: str, exc: Exception) -> ShopifySyncError:
    return ShopifySyncError(f"Unexpected {kind} payload from Shopify: {exc}")


def parse_product_page(data: dict[str, Any]) -> ProductPage:
    """Validate the ``products`` connection of a products query."""
    try:
        return ProductPage.model_validate(data["products"])
    except (KeyError, TypeError, ValidationError) as exc:
        raise _invalid("product page", exc) from exc


def parse_product(data: dict[str, Any]) -> ProductNode | None:
    """Validate a single-product query. Returns None if Shopify has no such product."""
    if data.get("product") is None:
        return None
    try:
        return ProductNode.model_validate(data["product"])
    except (TypeError, ValidationError) as exc:
        raise _invalid("product", exc) from exc


def parse_inventory_levels(data: dict[str, Any]) -> list[InventoryLevelNode]:
    """Validate an inventory-levels query. A missing item yields no levels."""
    item = data.get("inventoryItem")
    if item is None:
        return []
    try:
        return InventoryItemLevels.model_validate(item).levels
    except (TypeError, ValidationError) as exc:
        raise _invalid("inventory level", exc) from exc


def parse_vendor_list(data: dict[str, Any]) -> VendorList:
    """Validate a vendors query, dropping blank names and sorting the rest."""
    try:
        raw = _unwrap_edges(data["productVendors"])
        vendors = sorted(
            {v.strip() for v in raw if isinstance(v, str) and v.strip()},
            key=str.lower,
        )
        shop_name = (data.get("shop") or {}).get("name")
        return VendorList(shop_name=shop_name, vendors=vendors)
    except (KeyError, TypeError, ValidationError) as exc:
        raise _invalid("vendor list", exc) from exc
