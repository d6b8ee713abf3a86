"""Persistence boundary for stores, products, inventory and store mappings.

The relational schema lives outside this package; the engine talks to it
through ``SyncRepository``.  The one hard requirement on an implementation
is ``transition_mapping``: an atomic compare-and-set on the mapping's status,
which is what keeps two workers from both moving a mapping to IN_PROGRESS.

``InMemorySyncRepository`` is the reference implementation used by tests and
single-process setups.  It hands out frozen records, so nothing outside the
repository can mutate stored state.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Collection
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from storesync.models import (
    Conflict,
    InventoryRecord,
    Product,
    Store,
    StoreMapping,
    SyncStatus,
)
from storesync.resolver import ConflictResolutionStrategy

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@runtime_checkable
class SyncRepository(Protocol):
    def get_store(self, store_id: str) -> Store | None: ...

    def get_store_by_domain(self, domain: str) -> Store | None: ...

    def deactivate_store(self, store_id: str) -> Store | None: ...

    def set_sync_enabled(self, store_id: str, enabled: bool) -> Store | None: ...

    def list_stores(self, *, active_only: bool = False) -> list[Store]: ...

    def get_product(self, product_id: str) -> Product | None: ...

    def get_product_by_sku(self, sku: str) -> Product | None: ...

    def list_products(self) -> list[Product]: ...

    def get_inventory(self, product_id: str) -> InventoryRecord | None: ...

    def set_inventory(self, product_id: str, quantity: int, *, adjusted_by: str) -> InventoryRecord: ...

    def adjust_inventory(
        self, product_id: str, delta: int, *, idempotency_key: str, adjusted_by: str
    ) -> InventoryRecord | None:
        """Add *delta* (floored at zero) once per *idempotency_key*.

        Returns the new record, or ``None`` if the key was already applied.
        """
        ...

    def get_mapping(self, product_id: str, store_id: str) -> StoreMapping | None: ...

    def find_mapping_by_inventory_item(self, store_id: str, inventory_item_id: str) -> StoreMapping | None: ...

    def list_mappings(self, *, product_id: str | None = None, store_id: str | None = None) -> list[StoreMapping]: ...

    def create_mapping(self, product_id: str, store_id: str, *, inventory_item_id: str | None = None) -> StoreMapping:
        """Create a PENDING mapping, or return the existing one."""
        ...

    def transition_mapping(
        self,
        product_id: str,
        store_id: str,
        *,
        expected: Collection[SyncStatus],
        status: SyncStatus,
        **changes: Any,
    ) -> StoreMapping | None:
        """Atomically move the mapping to *status* if it is in *expected*.

        Returns the updated mapping, or ``None`` when the mapping is missing
        or in another state.
        """
        ...

    def record_conflict(
        self,
        product_id: str,
        store_id: str,
        *,
        central_quantity: int,
        store_quantity: int,
        strategy: ConflictResolutionStrategy,
    ) -> Conflict: ...

    def list_conflicts(self, *, unresolved_only: bool = True) -> list[Conflict]: ...

    def get_conflict(self, conflict_id: str) -> Conflict | None: ...

    def mark_conflict_resolved(self, conflict_id: str) -> Conflict | None: ...


class InMemorySyncRepository:
    """Thread-safe in-memory repository."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._stores: dict[str, Store] = {}
        self._products: dict[str, Product] = {}
        self._inventory: dict[str, InventoryRecord] = {}
        self._mappings: dict[tuple[str, str], StoreMapping] = {}
        self._conflicts: dict[str, Conflict] = {}
        self._applied_keys: set[str] = set()

    # -- stores -------------------------------------------------------------

    def add_store(self, store: Store) -> Store:
        with self._lock:
            if any(s.domain == store.domain and s.id != store.id for s in self._stores.values()):
                raise ValueError(f"store domain already registered: {store.domain}")
            self._stores[store.id] = store
            return store

    def deactivate_store(self, store_id: str) -> Store | None:
        """Soft-deactivate; stores are never deleted while mappings reference them."""
        with self._lock:
            store = self._stores.get(store_id)
            if store is None:
                return None
            store = replace(store, is_active=False)
            self._stores[store_id] = store
            return store

    def set_sync_enabled(self, store_id: str, enabled: bool) -> Store | None:
        with self._lock:
            store = self._stores.get(store_id)
            if store is None:
                return None
            store = replace(store, sync_enabled=enabled)
            self._stores[store_id] = store
            return store

    def get_store(self, store_id: str) -> Store | None:
        with self._lock:
            return self._stores.get(store_id)

    def get_store_by_domain(self, domain: str) -> Store | None:
        with self._lock:
            return next((s for s in self._stores.values() if s.domain == domain), None)

    def list_stores(self, *, active_only: bool = False) -> list[Store]:
        with self._lock:
            stores = list(self._stores.values())
        return [s for s in stores if s.is_active] if active_only else stores

    # -- products & inventory -----------------------------------------------

    def add_product(self, product: Product, *, quantity: int | None = None) -> Product:
        with self._lock:
            if any(p.sku == product.sku and p.id != product.id for p in self._products.values()):
                raise ValueError(f"duplicate SKU: {product.sku}")
            self._products[product.id] = product
            if quantity is not None:
                self._inventory[product.id] = InventoryRecord(product.id, quantity, utcnow(), "seed")
            return product

    def get_product(self, product_id: str) -> Product | None:
        with self._lock:
            return self._products.get(product_id)

    def get_product_by_sku(self, sku: str) -> Product | None:
        with self._lock:
            return next((p for p in self._products.values() if p.sku == sku), None)

    def list_products(self) -> list[Product]:
        with self._lock:
            return list(self._products.values())

    def get_inventory(self, product_id: str) -> InventoryRecord | None:
        with self._lock:
            return self._inventory.get(product_id)

    def set_inventory(self, product_id: str, quantity: int, *, adjusted_by: str) -> InventoryRecord:
        with self._lock:
            record = InventoryRecord(product_id, max(0, quantity), utcnow(), adjusted_by)
            self._inventory[product_id] = record
            return record

    def adjust_inventory(
        self, product_id: str, delta: int, *, idempotency_key: str, adjusted_by: str
    ) -> InventoryRecord | None:
        with self._lock:
            if idempotency_key in self._applied_keys:
                return None
            current = self._inventory.get(product_id)
            previous = current.quantity if current is not None else 0
            record = InventoryRecord(product_id, max(0, previous + delta), utcnow(), adjusted_by)
            self._inventory[product_id] = record
            self._applied_keys.add(idempotency_key)
            return record

    # -- mappings -----------------------------------------------------------

    def get_mapping(self, product_id: str, store_id: str) -> StoreMapping | None:
        with self._lock:
            return self._mappings.get((product_id, store_id))

    def find_mapping_by_inventory_item(self, store_id: str, inventory_item_id: str) -> StoreMapping | None:
        with self._lock:
            return next(
                (
                    m for m in self._mappings.values()
                    if m.store_id == store_id and m.inventory_item_id == str(inventory_item_id)
                ),
                None,
            )

    def list_mappings(self, *, product_id: str | None = None, store_id: str | None = None) -> list[StoreMapping]:
        with self._lock:
            mappings = list(self._mappings.values())
        return [
            m for m in mappings
            if (product_id is None or m.product_id == product_id)
            and (store_id is None or m.store_id == store_id)
        ]

    def create_mapping(self, product_id: str, store_id: str, *, inventory_item_id: str | None = None) -> StoreMapping:
        with self._lock:
            existing = self._mappings.get((product_id, store_id))
            if existing is not None:
                return existing
            if product_id not in self._products:
                raise ValueError(f"unknown product: {product_id}")
            if store_id not in self._stores:
                raise ValueError(f"unknown store: {store_id}")
            mapping = StoreMapping(product_id, store_id, inventory_item_id=inventory_item_id)
            self._mappings[(product_id, store_id)] = mapping
            return mapping

    def transition_mapping(
        self,
        product_id: str,
        store_id: str,
        *,
        expected: Collection[SyncStatus],
        status: SyncStatus,
        **changes: Any,
    ) -> StoreMapping | None:
        with self._lock:
            mapping = self._mappings.get((product_id, store_id))
            if mapping is None or mapping.sync_status not in expected:
                return None
            mapping = replace(mapping, sync_status=status, **changes)
            self._mappings[(product_id, store_id)] = mapping
            return mapping

    # -- conflicts ----------------------------------------------------------

    def record_conflict(
        self,
        product_id: str,
        store_id: str,
        *,
        central_quantity: int,
        store_quantity: int,
        strategy: ConflictResolutionStrategy,
    ) -> Conflict:
        conflict = Conflict(
            id=uuid.uuid4().hex,
            product_id=product_id,
            store_id=store_id,
            central_quantity=central_quantity,
            store_quantity=store_quantity,
            strategy=strategy,
            created_at=utcnow(),
        )
        with self._lock:
            self._conflicts[conflict.id] = conflict
        return conflict

    def list_conflicts(self, *, unresolved_only: bool = True) -> list[Conflict]:
        with self._lock:
            conflicts = list(self._conflicts.values())
        return [c for c in conflicts if not c.resolved] if unresolved_only else conflicts

    def get_conflict(self, conflict_id: str) -> Conflict | None:
        with self._lock:
            return self._conflicts.get(conflict_id)

    def mark_conflict_resolved(self, conflict_id: str) -> Conflict | None:
        with self._lock:
            conflict = self._conflicts.get(conflict_id)
            if conflict is None:
                return None
            conflict = replace(conflict, resolved=True)
            self._conflicts[conflict_id] = conflict
            return conflict
