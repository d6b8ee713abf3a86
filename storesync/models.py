"""Domain records shared by the repository, orchestrator and processors."""

from __future__ import annotations

import enum
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from storesync.resolver import ConflictResolutionStrategy


class SyncStatus(str, enum.Enum):
    """Per-mapping state machine.

    PENDING -> IN_PROGRESS -> COMPLETED | FAILED; FAILED -> IN_PROGRESS on retry.
    """

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ProductSyncState(str, enum.Enum):
    SYNCED = "synced"
    OUT_OF_SYNC = "out-of-sync"
    ERROR = "error"


@dataclass(frozen=True)
class Store:
    id: str
    name: str
    domain: str
    is_active: bool = True
    sync_enabled: bool = True
    location_id: str | None = None
    conflict_strategy: ConflictResolutionStrategy | None = None

    @property
    def accepts_sync(self) -> bool:
        return self.is_active and self.sync_enabled


@dataclass(frozen=True)
class Product:
    id: str
    sku: str
    title: str = ""


@dataclass(frozen=True)
class InventoryRecord:
    product_id: str
    quantity: int
    last_adjusted_at: datetime
    last_adjusted_by: str = ""


@dataclass(frozen=True)
class StoreMapping:
    product_id: str
    store_id: str
    sync_status: SyncStatus = SyncStatus.PENDING
    last_synced_at: datetime | None = None
    synced_quantity: int | None = None
    inventory_item_id: str | None = None
    last_error: str | None = None
    conflict_id: str | None = None
    # set when the mapping is claimed IN_PROGRESS
    sync_started_at: datetime | None = None

    @property
    def key(self) -> str:
        return f"{self.product_id}:{self.store_id}"


@dataclass(frozen=True)
class Conflict:
    id: str
    product_id: str
    store_id: str
    central_quantity: int
    store_quantity: int
    strategy: ConflictResolutionStrategy
    created_at: datetime
    resolved: bool = False


def aggregate_sync_status(mappings: Iterable[StoreMapping]) -> ProductSyncState:
    """Outward status of a product across all of its store mappings.

    ``error`` wins over everything; ``synced`` needs every mapping COMPLETED.
    A product with no mappings is not considered synced.
    """
    statuses = [m.sync_status for m in mappings]
    if any(s is SyncStatus.FAILED for s in statuses):
        return ProductSyncState.ERROR
    if statuses and all(s is SyncStatus.COMPLETED for s in statuses):
        return ProductSyncState.SYNCED
    return ProductSyncState.OUT_OF_SYNC
