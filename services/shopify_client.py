"""Shopify GraphQL Admin API client.

One call per :func:`graphql_request`: posts a query document for a shop and
either returns the ``data`` dict or raises a classified failure:

* :class:`ShopifyTransportError`: network failure or 5xx (retryable)
* :class:`ShopifyRateLimitError`: query budget exhausted (retry after delay)
* :class:`ShopifyGraphQLError`: ``errors`` in a 200 response (terminal)

:func:`call_with_retry` wraps a call with the backoff policy for the two
retryable classes.  :class:`ShopifyClient` binds a connection's domain and
token so the sync services don't pass credentials around.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from typing import Any, TypeVar

import requests

from api.exceptions import (
    ShopifyGraphQLError,
    ShopifyRateLimitError,
    ShopifySyncError,
    ShopifyTransportError,
)
from config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Used when Shopify throttles without sending a cost block or Retry-After.
DEFAULT_RETRY_AFTER = 2


def shopify_graphql_url(shop_domain: str) -> str:
    """Admin GraphQL endpoint for a shop."""
    return f"https://{shop_domain}/admin/api/{settings.shopify_api_version}/graphql.json"


def compute_retry_after(
    requested_cost: float,
    currently_available: float,
    restore_rate: float,
) -> int:
    """Seconds until the bucket refills enough to afford *requested_cost*.

    ``ceil((requested - available) / restore_rate)``, never negative.
    """
    if restore_rate <= 0:
        return DEFAULT_RETRY_AFTER
    deficit = requested_cost - currently_available
    if deficit <= 0:
        return 0
    return math.ceil(deficit / restore_rate)


def _throttle_delay(result: dict[str, Any]) -> int | None:
    """Delay implied by the cost extension, or None if the budget covers the request."""
    try:
        cost = result["extensions"]["cost"]
        requested = cost["requestedQueryCost"]
        throttle = cost["throttleStatus"]
        available = throttle["currentlyAvailable"]
        restore_rate = throttle["restoreRate"]
    except (KeyError, TypeError):
        return None
    if available >= requested:
        return None
    return compute_retry_after(requested, available, restore_rate)


def _is_throttled(errors: list[dict[str, Any]]) -> bool:
    for error in errors:
        code = (error.get("extensions") or {}).get("code", "")
        if code == "THROTTLED" or "throttled" in str(error.get("message", "")).lower():
            return True
    return False


def graphql_request(
    shop_domain: str,
    access_token: str,
    query: str,
    variables: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Execute a GraphQL request against the Shopify Admin API.

    Returns the ``data`` dict from the response.  When the call succeeded but
    the remaining budget cannot afford another request of the same cost, sleeps
    for the computed delay before returning so the next call is not throttled.
    """
    if not access_token:
        msg = f"No access token for {shop_domain}"
        raise ShopifySyncError(msg)

    headers = {
        "X-Shopify-Access-Token": access_token,
        "Content-Type": "application/json",
    }
    body: dict[str, Any] = {"query": query}
    if variables is not None:
        body["variables"] = variables

    try:
        response = requests.post(
            shopify_graphql_url(shop_domain),
            json=body,
            headers=headers,
            timeout=settings.sync_request_timeout,
        )
    except requests.RequestException as exc:
        msg = f"Shopify request to {shop_domain} failed: {exc}"
        raise ShopifyTransportError(msg) from exc

    if response.status_code == 429:
        retry_after = response.headers.get("Retry-After")
        try:
            delay = math.ceil(float(retry_after)) if retry_after else DEFAULT_RETRY_AFTER
        except ValueError:
            delay = DEFAULT_RETRY_AFTER
        raise ShopifyRateLimitError(delay)
    if response.status_code >= 500:
        msg = f"Shopify API error: {response.status_code} {response.reason}"
        raise ShopifyTransportError(msg)
    if response.status_code >= 400:
        msg = f"Shopify API error: {response.status_code} {response.reason}"
        raise ShopifySyncError(msg)

    try:
        result = response.json()
    except ValueError as exc:
        msg = f"Shopify returned a non-JSON response ({response.status_code})"
        raise ShopifyTransportError(msg) from exc

    errors = result.get("errors")
    if errors:
        if isinstance(errors, list) and _is_throttled(errors):
            delay = _throttle_delay(result)
            raise ShopifyRateLimitError(max(1, delay or DEFAULT_RETRY_AFTER))
        msg = f"GraphQL errors: {errors}"
        raise ShopifyGraphQLError(msg, errors if isinstance(errors, list) else [errors])

    delay = _throttle_delay(result)
    if delay:
        logger.warning(
            "Shopify query budget low for %s, sleeping %ds", shop_domain, delay
        )
        time.sleep(delay)

    data = result.get("data")
    if data is None:
        msg = "Shopify response has no data"
        raise ShopifyGraphQLError(msg)
    return data


def call_with_retry(operation: Callable[[], T], max_retries: int | None = None) -> T:
    """Run *operation*, retrying transport and rate-limit failures.

    Rate limits wait exactly ``retry_after`` seconds; transport errors back off
    exponentially (1s, 2s, 4s, ...).  Other errors propagate immediately.  The
    last error is re-raised once *max_retries* retries are used up.
    """
    retries = settings.sync_max_retries if max_retries is None else max_retries
    attempt = 0
    while True:
        try:
            return operation()
        except (ShopifyRateLimitError, ShopifyTransportError) as exc:
            if attempt >= retries:
                raise
            if isinstance(exc, ShopifyRateLimitError):
                delay = exc.retry_after
            else:
                delay = 2**attempt
            attempt += 1
            logger.warning(
                "Retrying Shopify call in %ss (attempt %d/%d): %s",
                delay, attempt, retries, exc,
            )
            time.sleep(delay)


class ShopifyClient:
    """GraphQL client bound to one connection's shop domain and token."""

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        max_retries: int | None = None,
    ) -> None:
        self.shop_domain = shop_domain
        self.access_token = access_token
        self.max_retries = max_retries
        self.request_count = 0

    @classmethod
    def for_connection(cls, connection: dict[str, Any]) -> ShopifyClient:
        return cls(connection["shop_domain"], connection.get("access_token") or "")

    def execute(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run a query with the retry policy applied."""

        def _once() -> dict[str, Any]:
            self.request_count += 1
            return graphql_request(self.shop_domain, self.access_token, query, variables)

        return call_with_retry(_once, self.max_retries)
