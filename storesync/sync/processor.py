"""Job handlers: the consumer side of each queue.

Handlers have the ``QueueWorker`` signature ``handler(job, payload)`` and
return a small JSON-able summary stored as the job result.  Raising fails
the attempt; the queue schedules the next one with backoff.

Webhook jobs are safe to re-run: every per-SKU delta is applied under the
key ``"{event_id}:{sku}"`` and only once, so a retry only re-attempts the
store propagation that failed.  The selling store is never written to; its
mapping only follows the sale it already made.
"""

from __future__ import annotations

import logging
from typing import Any

from storesync.exceptions import NotFoundError, PropagationError
from storesync.models import Store
from storesync.queue.payloads import (
    BatchOperationJob,
    InventorySyncJob,
    InventoryUpdateJob,
    WebhookProcessingJob,
)
from storesync.queue.store import Job
from storesync.sync.batch import BatchCoordinator
from storesync.sync.orchestrator import SyncOrchestrator, SyncOutcome
from storesync.webhooks.idempotency import ProcessedEventLog
from storesync.webhooks.translator import inventory_deltas

logger = logging.getLogger(__name__)


def _failures(outcomes: list[SyncOutcome]) -> dict[str, str]:
    return {f"{o.product_id}:{o.store_id}": o.error or "failed" for o in outcomes if o.failed}


class WebhookJobProcessor:
    """Applies a webhook's inventory effect centrally, then propagates it."""

    def __init__(self, orchestrator: SyncOrchestrator, processed: ProcessedEventLog | None = None) -> None:
        self.orchestrator = orchestrator
        self.repository = orchestrator.repository
        self.processed = processed

    def __call__(self, job: Job, payload: WebhookProcessingJob) -> dict[str, Any]:
        event_id = payload.webhook_event_id
        retrying = job.attempts_made > 0
        source = self.repository.get_store_by_domain(payload.shop_domain)
        if source is None:
            logger.warning("Webhook %s from unknown shop %s", event_id, payload.shop_domain)

        if isinstance(payload.payload, InventoryUpdateJob):
            touched = self._apply_inventory_update(payload.payload, source, event_id, retrying)
        else:
            touched = self._apply_deltas(payload, source, event_id)

        outcomes: list[SyncOutcome] = []
        for product_id in touched:
            outcomes.extend(self.orchestrator.propagate(
                product_id,
                exclude_store_id=source.id if source is not None else None,
                event_id=event_id,
                retry=retrying,
            ))

        failures = _failures(outcomes)
        if failures:
            raise PropagationError(event_id, failures)

        if self.processed is not None:
            self.processed.mark_processed(event_id, payload.topic, payload.shop_domain)
        logger.info(
            "WEBHOOK_AUDIT event=%s topic=%s shop=%s status=processed products=%d syncs=%d",
            event_id, payload.topic, payload.shop_domain, len(touched), len(outcomes),
        )
        return {
            "event_id": event_id,
            "products": touched,
            "outcomes": [o.to_dict() for o in outcomes],
        }

    def _apply_deltas(self, payload: WebhookProcessingJob, source: Store | None, event_id: str) -> list[str]:
        touched: list[str] = []
        for sku, delta in inventory_deltas(payload.payload).items():
            product = self.repository.get_product_by_sku(sku)
            if product is None:
                logger.warning("Webhook %s references unknown SKU %s, skipping", event_id, sku)
                continue
            if delta == 0:
                continue
            record = self.orchestrator.apply_store_delta(
                product.id, delta,
                idempotency_key=f"{event_id}:{sku}",
                source_store_id=source.id if source is not None else None,
                event_id=event_id,
            )
            if record is None:
                logger.info("Delta for %s from %s already applied", sku, event_id)
            else:
                logger.info("Central %s adjusted by %+d to %d (event %s)", sku, delta, record.quantity, event_id)
            touched.append(product.id)
        return touched

    def _apply_inventory_update(
        self, data: InventoryUpdateJob, source: Store | None, event_id: str, retrying: bool,
    ) -> list[str]:
        if source is None:
            return []
        level = data.inventory_level
        mapping = self.repository.find_mapping_by_inventory_item(source.id, str(level.inventory_item_id))
        if mapping is None:
            logger.info(
                "No mapping for inventory item %s on %s, skipping", level.inventory_item_id, source.domain,
            )
            return []
        if mapping.synced_quantity == level.available:
            if not retrying:
                # our own write coming back
                logger.debug("Echo of synced quantity %d for %s, skipping", level.available, mapping.key)
                return []
        else:
            self.orchestrator.accept_store_quantity(
                mapping.product_id, source.id, level.available, event_id=event_id,
            )
        return [mapping.product_id]


class BatchJobProcessor:
    def __init__(self, coordinator: BatchCoordinator) -> None:
        self.coordinator = coordinator

    def __call__(self, job: Job, payload: BatchOperationJob) -> dict[str, Any]:
        return self.coordinator.run(payload).to_dict()


class InventorySyncJobProcessor:
    """Pushes one product's central quantity to selected (or all) stores."""

    def __init__(self, orchestrator: SyncOrchestrator) -> None:
        self.orchestrator = orchestrator
        self.repository = orchestrator.repository

    def __call__(self, job: Job, payload: InventorySyncJob) -> dict[str, Any]:
        if self.repository.get_product(payload.product_id) is None:
            raise NotFoundError(f"product not found: {payload.product_id}")
        store_ids = payload.store_ids
        if store_ids is None:
            store_ids = [m.store_id for m in self.repository.list_mappings(product_id=payload.product_id)]

        outcomes = [
            self.orchestrator.sync_mapping(payload.product_id, store_id, retry=True)
            for store_id in store_ids
        ]
        failures = _failures(outcomes)
        if failures:
            raise PropagationError(job.id, failures)
        return {"product_id": payload.product_id, "outcomes": [o.to_dict() for o in outcomes]}
