"""Storefront inventory API.

The orchestrator only needs two calls per store: read the available
quantity of a SKU and overwrite it.  ``ShopifyInventoryClient`` implements
them on the Shopify GraphQL Admin API (the REST API is deprecated).

Error mapping:
- 429, 5xx, timeouts, connection errors -> ``TransientInfrastructureError``
- other 4xx, GraphQL ``errors`` / ``userErrors``, unknown SKU -> ``PermanentApplyError``

Retries are not done here; callers wrap these calls in ``storesync.retry``.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

import httpx

from storesync.config import Settings
from storesync.exceptions import PermanentApplyError, TransientInfrastructureError
from storesync.models import Store

logger = logging.getLogger(__name__)


@runtime_checkable
class StorefrontClient(Protocol):
    def get_inventory_level(self, store: Store, sku: str) -> int: ...

    def set_inventory_level(self, store: Store, sku: str, quantity: int) -> None: ...


class InMemoryStorefrontClient:
    """Dict-backed storefront, keyed by (store domain, SKU)."""

    def __init__(self, levels: dict[tuple[str, str], int] | None = None) -> None:
        self._lock = threading.Lock()
        self.levels: dict[tuple[str, str], int] = dict(levels or {})
        self.writes: list[tuple[str, str, int]] = []

    def get_inventory_level(self, store: Store, sku: str) -> int:
        with self._lock:
            return self.levels.get((store.domain, sku), 0)

    def set_inventory_level(self, store: Store, sku: str, quantity: int) -> None:
        with self._lock:
            self.levels[(store.domain, sku)] = quantity
            self.writes.append((store.domain, sku, quantity))


# ---------------------------------------------------------------------------
# Shopify
# ---------------------------------------------------------------------------

_VARIANT_QUERY = """
query ($query: String!) {
  productVariants(first: 1, query: $query) {
    edges {
      node {
        id
        sku
        inventoryItem {
          id
          inventoryLevels(first: 10) {
            edges {
              node {
                location { id }
                quantities(names: ["available"]) { name quantity }
              }
            }
          }
        }
      }
    }
  }
}
"""

_SET_QUANTITIES_MUTATION = """
mutation inventorySetQuantities($input: InventorySetQuantitiesInput!) {
  inventorySetQuantities(input: $input) {
    inventoryAdjustmentGroup { reason }
    userErrors { field message }
  }
}
"""


class ShopifyInventoryClient:
    """Shopify GraphQL Admin API client for inventory levels.

    Args:
        token_provider: Returns the Admin API access token for a store.
        api_version: Admin API version segment, e.g. ``"2025-01"``.
        timeout: Per-request timeout in seconds.
        http: Optional pre-built ``httpx.Client`` (tests pass one with a
            ``MockTransport``).
    """

    def __init__(
        self,
        token_provider: Callable[[Store], str],
        *,
        api_version: str = "2025-01",
        timeout: float = 30.0,
        http: httpx.Client | None = None,
    ) -> None:
        self._token_provider = token_provider
        self._api_version = api_version
        self._http = http or httpx.Client(timeout=timeout)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        token_provider: Callable[[Store], str],
        *,
        http: httpx.Client | None = None,
    ) -> ShopifyInventoryClient:
        return cls(
            token_provider, api_version=settings.shopify_api_version, timeout=settings.http_timeout, http=http,
        )

    def close(self) -> None:
        self._http.close()

    def _graphql(self, store: Store, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        endpoint = f"https://{store.domain}/admin/api/{self._api_version}/graphql.json"
        try:
            response = self._http.post(
                endpoint,
                json={"query": query, "variables": variables},
                headers={
                    "X-Shopify-Access-Token": self._token_provider(store),
                    "Content-Type": "application/json",
                },
            )
        except httpx.TransportError as exc:
            raise TransientInfrastructureError(f"{store.domain}: {type(exc).__name__}: {exc}") from exc

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientInfrastructureError(f"{store.domain}: HTTP {status}")
        if status >= 400:
            raise PermanentApplyError(f"{store.domain}: HTTP {status}")

        try:
            body = response.json()
        except ValueError as exc:
            raise PermanentApplyError(f"{store.domain}: response is not JSON") from exc
        if not isinstance(body, dict):
            raise PermanentApplyError(f"{store.domain}: unexpected response body")
        if body.get("errors"):
            messages = "; ".join(str(e.get("message", e)) for e in body["errors"])
            if "THROTTLED" in messages.upper():
                raise TransientInfrastructureError(f"{store.domain}: {messages}")
            raise PermanentApplyError(f"{store.domain}: {messages}")
        return body.get("data") or {}

    def _locate(self, store: Store, sku: str) -> tuple[str, str, int]:
        """Resolve *sku* to (inventory item id, location id, available)."""
        data = self._graphql(store, _VARIANT_QUERY, {"query": f"sku:{sku}"})
        edges = (data.get("productVariants") or {}).get("edges") or []
        if not edges:
            raise PermanentApplyError(f"{store.domain}: no variant with SKU {sku}")
        try:
            item = edges[0]["node"]["inventoryItem"]
            levels = [edge["node"] for edge in item["inventoryLevels"]["edges"]]
            if store.location_id is not None:
                levels = [lvl for lvl in levels if lvl["location"]["id"] == store.location_id]
            if not levels:
                raise PermanentApplyError(f"{store.domain}: SKU {sku} is not stocked at {store.location_id}")
            level = levels[0]
            available = next(
                (q["quantity"] for q in level["quantities"] if q["name"] == "available"), 0,
            )
            return item["id"], level["location"]["id"], int(available)
        except (KeyError, TypeError, ValueError) as exc:
            raise PermanentApplyError(f"{store.domain}: malformed variant data for SKU {sku}") from exc

    def get_inventory_level(self, store: Store, sku: str) -> int:
        _, _, available = self._locate(store, sku)
        return available

    def set_inventory_level(self, store: Store, sku: str, quantity: int) -> None:
        item_id, location_id, _ = self._locate(store, sku)
        data = self._graphql(store, _SET_QUANTITIES_MUTATION, {
            "input": {
                "name": "available",
                "reason": "correction",
                "ignoreCompareQuantity": True,
                "quantities": [
                    {"inventoryItemId": item_id, "locationId": location_id, "quantity": quantity},
                ],
            },
        })
        user_errors = (data.get("inventorySetQuantities") or {}).get("userErrors") or []
        if user_errors:
            raise PermanentApplyError(
                f"{store.domain}: " + "; ".join(e.get("message", "") for e in user_errors)
            )
        logger.debug("Set %s on %s to %d", sku, store.domain, quantity)
