"""Sync engine: orchestrator, batch coordinator, job processors and their ports.

Public API:
    - SyncOrchestrator / SyncOutcome / OutcomeStatus: one mapping per cycle
    - BatchCoordinator / BatchResult: bulk fan-out
    - WebhookJobProcessor / BatchJobProcessor / InventorySyncJobProcessor: queue handlers
    - SyncRepository / InMemorySyncRepository: persistence port
    - StorefrontClient / ShopifyInventoryClient / InMemoryStorefrontClient: store API port
    - LockProvider / InMemoryLockProvider / RedisLockProvider: per-mapping locks
"""

from __future__ import annotations

from storesync.sync.batch import BatchCoordinator, BatchResult, UnitResult
from storesync.sync.locks import InMemoryLockProvider, LockProvider, RedisLockProvider
from storesync.sync.orchestrator import OutcomeStatus, SyncOrchestrator, SyncOutcome
from storesync.sync.processor import BatchJobProcessor, InventorySyncJobProcessor, WebhookJobProcessor
from storesync.sync.repository import InMemorySyncRepository, SyncRepository
from storesync.sync.storefront import InMemoryStorefrontClient, ShopifyInventoryClient, StorefrontClient

__all__ = [
    "BatchCoordinator",
    "BatchJobProcessor",
    "BatchResult",
    "InMemoryLockProvider",
    "InMemoryStorefrontClient",
    "InMemorySyncRepository",
    "InventorySyncJobProcessor",
    "LockProvider",
    "OutcomeStatus",
    "RedisLockProvider",
    "ShopifyInventoryClient",
    "StorefrontClient",
    "SyncOrchestrator",
    "SyncOutcome",
    "SyncRepository",
    "UnitResult",
    "WebhookJobProcessor",
]
