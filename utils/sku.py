"""SKU and display-name derivation for upstream variants."""

from __future__ import annotations

DEFAULT_VARIANT_TITLE = "Default Title"


def derive_sku(sku: str | None, external_id: str) -> str:
    """Return the upstream SKU, or the variant's external ID when the SKU is blank."""
    sku = (sku or "").strip()
    return sku or external_id


def derive_display_name(product_title: str, variant_title: str | None) -> str:
    """Build a product display name from the upstream product and variant titles.

    Format: ``"{product title} - {variant title}"``.  Single-variant products
    (variant title is Shopify's ``Default Title`` placeholder, or empty) use
    the product title alone.
    """
    product_title = product_title.strip()
    variant_title = (variant_title or "").strip()
    if not variant_title or variant_title == DEFAULT_VARIANT_TITLE:
        return product_title
    return f"{product_title} - {variant_title}"
