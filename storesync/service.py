"""Wires every component into one ``SyncService``.

``create_service()`` builds a single-process service on in-memory backends
(tests, local runs).  ``build_redis_service()`` puts jobs, locks and the
processed-event log on Redis so several worker processes can share them;
the repository and storefront client are supplied by the caller.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import redis

from storesync.config import Settings, get_settings
from storesync.exceptions import DuplicateEventError
from storesync.models import ProductSyncState, Store, aggregate_sync_status
from storesync.queue.jobs import TOPIC_APP_UNINSTALLED, enqueue_batch_sync, enqueue_inventory_sync
from storesync.queue.options import DEFAULT_JOB_OPTIONS
from storesync.queue.payloads import BatchOperationType
from storesync.queue.registry import QueueName, QueueRegistry
from storesync.queue.store import InMemoryJobStore, Job, JobStore, RedisJobStore
from storesync.queue.worker import QueueWorker
from storesync.sync.batch import BatchCoordinator
from storesync.sync.locks import InMemoryLockProvider, LockProvider, RedisLockProvider
from storesync.sync.orchestrator import SyncOrchestrator
from storesync.sync.processor import BatchJobProcessor, InventorySyncJobProcessor, WebhookJobProcessor
from storesync.sync.repository import InMemorySyncRepository, SyncRepository
from storesync.sync.storefront import InMemoryStorefrontClient, StorefrontClient
from storesync.webhooks.idempotency import (
    InMemoryProcessedEventLog,
    ProcessedEventLog,
    RedisProcessedEventLog,
)
from storesync.webhooks.translator import InboundWebhook, enqueue_webhook_event

logger = logging.getLogger(__name__)


@dataclass
class SyncService:
    settings: Settings
    repository: SyncRepository
    registry: QueueRegistry
    processed: ProcessedEventLog
    orchestrator: SyncOrchestrator
    coordinator: BatchCoordinator
    workers: list[QueueWorker] = field(default_factory=list)

    # -- producers ----------------------------------------------------------

    def accept_webhook(self, event: InboundWebhook) -> Job | None:
        if event.topic == TOPIC_APP_UNINSTALLED:
            self.disconnect_store(event.shop_domain)
            self.processed.mark_processed(event.event_id, event.topic, event.shop_domain)
            return None
        return enqueue_webhook_event(self.registry, event, self.processed)

    def receive_webhook(self, event: InboundWebhook) -> Job | None:
        """Enqueue a fresh delivery; raise ``DuplicateEventError`` for a redelivery."""
        if (
            self.registry[QueueName.WEBHOOK_PROCESSING].get(event.event_id) is not None
            or self.processed.is_processed(event.event_id)
        ):
            raise DuplicateEventError(event.event_id)
        return self.accept_webhook(event)

    def disconnect_store(self, shop_domain: str) -> Store | None:
        """Soft-deactivate a store whose app was uninstalled; its records stay."""
        store = self.repository.get_store_by_domain(shop_domain)
        if store is None:
            logger.warning("Uninstall from unknown shop %s", shop_domain)
            return None
        self.repository.deactivate_store(store.id)
        store = self.repository.set_sync_enabled(store.id, False)
        logger.info("WEBHOOK_AUDIT topic=%s shop=%s status=store_deactivated", TOPIC_APP_UNINSTALLED, shop_domain)
        return store

    def schedule_batch(
        self,
        operation_type: BatchOperationType | str,
        *,
        store_id: str | None = None,
        product_ids: list[str] | None = None,
        triggered_by: str = "system",
    ) -> Job:
        return enqueue_batch_sync(
            self.registry, operation_type, store_id=store_id, product_ids=product_ids, triggered_by=triggered_by,
        )

    def schedule_inventory_sync(self, product_id: str, *, store_ids: list[str] | None = None) -> Job:
        return enqueue_inventory_sync(self.registry, product_id, store_ids=store_ids)

    # -- read side ----------------------------------------------------------

    def product_status(self, product_id: str) -> ProductSyncState:
        return aggregate_sync_status(self.repository.list_mappings(product_id=product_id))

    # -- workers ------------------------------------------------------------

    def start(self) -> None:
        for worker in self.workers:
            worker.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        for worker in self.workers:
            worker.stop(timeout)

    def drain(self) -> int:
        """Run every queue until no job is ready. Returns jobs processed."""
        total = 0
        while True:
            processed = sum(worker.drain() for worker in self.workers)
            if processed == 0:
                return total
            total += processed


def _assemble(
    settings: Settings,
    store: JobStore,
    repository: SyncRepository,
    client: StorefrontClient,
    locks: LockProvider,
    processed: ProcessedEventLog,
    clock: Callable[[], float],
    sleep: Callable[[float], None] | None,
) -> SyncService:
    registry = QueueRegistry.create(store, DEFAULT_JOB_OPTIONS, clock)
    orchestrator = SyncOrchestrator(repository, client, locks, settings, sleep=sleep)
    coordinator = BatchCoordinator(orchestrator)
    poll = settings.worker_poll_interval
    workers = [
        QueueWorker(registry[QueueName.WEBHOOK_PROCESSING], WebhookJobProcessor(orchestrator, processed),
                    poll_interval=poll),
        QueueWorker(registry[QueueName.BATCH_OPERATIONS], BatchJobProcessor(coordinator), poll_interval=poll),
        QueueWorker(registry[QueueName.INVENTORY_SYNC], InventorySyncJobProcessor(orchestrator),
                    poll_interval=poll),
    ]
    return SyncService(settings, repository, registry, processed, orchestrator, coordinator, workers)


def create_service(
    settings: Settings | None = None,
    *,
    repository: SyncRepository | None = None,
    client: StorefrontClient | None = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] | None = None,
) -> SyncService:
    """Single-process service on in-memory backends."""
    settings = settings or get_settings()
    return _assemble(
        settings,
        InMemoryJobStore(),
        repository or InMemorySyncRepository(),
        client or InMemoryStorefrontClient(),
        InMemoryLockProvider(),
        InMemoryProcessedEventLog(settings.processed_event_ttl),
        clock,
        sleep,
    )


def build_redis_service(
    repository: SyncRepository,
    client: StorefrontClient,
    settings: Settings | None = None,
) -> SyncService:
    """Multi-process service: jobs, locks and processed events on Redis."""
    settings = settings or get_settings()
    connection = redis.from_url(settings.redis_url, decode_responses=True)
    prefix = settings.key_prefix
    logger.info("Using Redis backends (prefix %s)", prefix)
    return _assemble(
        settings,
        RedisJobStore(connection, prefix),
        repository,
        client,
        RedisLockProvider(connection, prefix),
        RedisProcessedEventLog(connection, prefix, settings.processed_event_ttl),
        time.time,
        None,
    )
