"""Vendor allow-list scoping for a connection's sync.

A connection's ``approved_vendors`` is one of:

* ``None``: full access, every upstream product is in scope
* ``[]``: no access, the sync is a no-op
* a list of names: only products whose vendor matches one of them
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from api.exceptions import (
    ConnectionNotFoundError,
    PreconditionError,
    SetupIncompleteError,
    UnsupportedPlatformError,
)

SUPPORTED_PLATFORM = "shopify"

ACCESS_FULL = "full"
ACCESS_NONE = "none"
ACCESS_PARTIAL = "partial"


@dataclass(frozen=True)
class VendorScope:
    """The resolved product filter for one sync run."""

    query: str | None = None
    empty: bool = False


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def build_vendor_query(approved_vendors: list[str] | None) -> str | None:
    """Build the Shopify product search filter for an approved-vendor list.

    ``None`` yields no filter.  A list yields ``vendor:"A" OR vendor:"B"``.
    An empty list has no meaningful filter and raises ``ValueError``; callers
    must skip the sync instead.
    """
    if approved_vendors is None:
        return None
    names = [v for v in approved_vendors if v and v.strip()]
    if not names:
        msg = "An empty vendor allow-list has no query; skip the sync instead"
        raise ValueError(msg)
    return " OR ".join(f"vendor:{_quote(name)}" for name in names)


def access_type(approved_vendors: list[str] | None) -> str:
    """Classify an allow-list as ``full``, ``none`` or ``partial``."""
    if approved_vendors is None:
        return ACCESS_FULL
    if not approved_vendors:
        return ACCESS_NONE
    return ACCESS_PARTIAL


def vendor_in_scope(approved_vendors: list[str] | None, vendor: str | None) -> bool:
    """Whether a product with *vendor* falls inside an allow-list.

    Case-insensitive, like Shopify's ``vendor:`` search filter.
    """
    if approved_vendors is None:
        return True
    if not vendor:
        return False
    wanted = vendor.casefold()
    return any(name.casefold() == wanted for name in approved_vendors if name)


def resolve_scope(connection: dict[str, Any] | None) -> VendorScope:
    """Check a connection can be synced and return its product filter.

    Preconditions are checked in order: the connection exists, belongs to a
    supported platform, is active, and has a recorded vendor decision.
    """
    if connection is None:
        msg = "Connection not found"
        raise ConnectionNotFoundError(msg)
    if connection.get("platform") != SUPPORTED_PLATFORM:
        msg = f"Sync is not supported for platform {connection.get('platform')!r}"
        raise UnsupportedPlatformError(msg)
    if not connection.get("is_active") or not connection.get("access_token"):
        msg = f"Connection {connection['id']} is inactive"
        raise PreconditionError(msg)
    if not connection.get("setup_complete"):
        msg = f"Vendor approval for {connection['shop_domain']} has not been completed"
        raise SetupIncompleteError(msg)

    approved = connection.get("approved_vendors")
    if approved is not None:
        approved = [v for v in approved if v and v.strip()]
    if access_type(approved) == ACCESS_NONE:
        return VendorScope(empty=True)
    return VendorScope(query=build_vendor_query(approved))
