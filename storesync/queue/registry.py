"""Explicit queue registry: queue name -> ``JobQueue``."""

from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable, Iterator, Mapping

from storesync.queue.options import DEFAULT_JOB_OPTIONS, JobOptions
from storesync.queue.payloads import (
    BatchOperationJob,
    InventorySyncJob,
    ProductSyncJob,
    WebhookProcessingJob,
)
from storesync.queue.queue import JobQueue
from storesync.queue.store import Job, JobStore

logger = logging.getLogger(__name__)


class QueueName(str, enum.Enum):
    WEBHOOK_PROCESSING = "webhook-processing"
    BATCH_OPERATIONS = "batch-operations"
    INVENTORY_SYNC = "inventory-sync"
    PRODUCT_SYNC = "product-sync"


# Order used by find_job() when no queue name is given
LOOKUP_ORDER: tuple[QueueName, ...] = (
    QueueName.WEBHOOK_PROCESSING,
    QueueName.BATCH_OPERATIONS,
    QueueName.INVENTORY_SYNC,
    QueueName.PRODUCT_SYNC,
)


class QueueRegistry:
    """Holds the four queues and resolves them by name."""

    def __init__(self, queues: Mapping[str, JobQueue]) -> None:
        self._queues = {QueueName(name).value: queue for name, queue in queues.items()}

    @classmethod
    def create(
        cls,
        store: JobStore,
        defaults: JobOptions = DEFAULT_JOB_OPTIONS,
        clock: Callable[[], float] = time.time,
    ) -> QueueRegistry:
        """Build the standard queue set on one store.

        Batch operations run at the lowest priority with more attempts; they
        are not latency sensitive.
        """
        return cls({
            QueueName.WEBHOOK_PROCESSING: JobQueue(
                QueueName.WEBHOOK_PROCESSING.value, store, WebhookProcessingJob, defaults, clock,
            ),
            QueueName.BATCH_OPERATIONS: JobQueue(
                QueueName.BATCH_OPERATIONS.value, store, BatchOperationJob,
                defaults.merge(priority=5, attempts=5), clock,
            ),
            QueueName.INVENTORY_SYNC: JobQueue(
                QueueName.INVENTORY_SYNC.value, store, InventorySyncJob, defaults, clock,
            ),
            QueueName.PRODUCT_SYNC: JobQueue(
                QueueName.PRODUCT_SYNC.value, store, ProductSyncJob, defaults, clock,
            ),
        })

    def get(self, name: str | QueueName) -> JobQueue | None:
        try:
            return self._queues[QueueName(name).value]
        except ValueError:
            logger.warning("Unknown queue name: %s", name)
            return None

    def __getitem__(self, name: str | QueueName) -> JobQueue:
        return self._queues[QueueName(name).value]

    def __iter__(self) -> Iterator[JobQueue]:
        return iter(self._queues.values())

    def find_job(self, job_id: str) -> Job | None:
        """Search every queue in ``LOOKUP_ORDER`` and return the first match."""
        for name in LOOKUP_ORDER:
            job = self._queues[name.value].get(job_id)
            if job is not None:
                return job
        return None
