"""Enqueue helpers per job kind, plus job lookup / cancel / retry.

Webhook jobs use the webhook event id as the job id, so a redelivered
event resolves to the job already on the queue.  Priorities: order
create/cancel 1, refund and inventory updates 2, batch operations 5.

Lookup, cancel and retry never raise for a missing job: they return
``None`` / ``False``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from storesync.queue.payloads import (
    BatchOperationJob,
    BatchOperationType,
    InventorySyncJob,
    InventoryUpdateJob,
    OrderCancelledJob,
    OrderCreatedJob,
    RefundCreatedJob,
    WebhookProcessingJob,
)
from storesync.queue.registry import QueueName, QueueRegistry
from storesync.queue.store import Job

logger = logging.getLogger(__name__)

TOPIC_ORDERS_CREATE = "orders/create"
TOPIC_ORDERS_CANCELLED = "orders/cancelled"
TOPIC_REFUNDS_CREATE = "refunds/create"
TOPIC_INVENTORY_LEVELS_UPDATE = "inventory_levels/update"
# handled at ingress, never queued
TOPIC_APP_UNINSTALLED = "app/uninstalled"

_WEBHOOK_PRIORITY_HIGH = 1
_WEBHOOK_PRIORITY_MEDIUM = 2
_BATCH_PRIORITY = 5
_BATCH_ATTEMPTS = 5

Options = Mapping[str, Any] | None


def _enqueue_webhook(
    registry: QueueRegistry,
    job_name: str,
    topic: str,
    data: OrderCreatedJob | OrderCancelledJob | RefundCreatedJob | InventoryUpdateJob,
    priority: int,
    options: Options,
) -> Job:
    job_data = WebhookProcessingJob(
        webhook_event_id=data.event_id,
        topic=topic,
        shop_domain=data.shop_domain,
        payload=data,
    )
    overrides = {**dict(options or {}), "priority": priority, "job_id": data.event_id}
    try:
        return registry[QueueName.WEBHOOK_PROCESSING].enqueue(job_name, job_data, overrides)
    except Exception:
        logger.exception(
            "Failed to enqueue %s job: event=%s shop=%s", job_name, data.event_id, data.shop_domain,
        )
        raise


def enqueue_order_created(registry: QueueRegistry, data: OrderCreatedJob, options: Options = None) -> Job:
    """Queue an order: the consumer decreases inventory per line item."""
    return _enqueue_webhook(
        registry, "process-order-created", TOPIC_ORDERS_CREATE, data, _WEBHOOK_PRIORITY_HIGH, options,
    )


def enqueue_order_cancelled(registry: QueueRegistry, data: OrderCancelledJob, options: Options = None) -> Job:
    """Queue a cancellation: the consumer restores inventory per line item."""
    return _enqueue_webhook(
        registry, "process-order-cancelled", TOPIC_ORDERS_CANCELLED, data, _WEBHOOK_PRIORITY_HIGH, options,
    )


def enqueue_refund_created(registry: QueueRegistry, data: RefundCreatedJob, options: Options = None) -> Job:
    """Queue a refund: only restocked line items restore inventory."""
    return _enqueue_webhook(
        registry, "process-refund-created", TOPIC_REFUNDS_CREATE, data, _WEBHOOK_PRIORITY_MEDIUM, options,
    )


def enqueue_inventory_update(registry: QueueRegistry, data: InventoryUpdateJob, options: Options = None) -> Job:
    """Queue an admin-originated inventory level change."""
    return _enqueue_webhook(
        registry, "process-inventory-update", TOPIC_INVENTORY_LEVELS_UPDATE, data, _WEBHOOK_PRIORITY_MEDIUM,
        options,
    )


def enqueue_batch_sync(
    registry: QueueRegistry,
    operation_type: BatchOperationType | str,
    *,
    store_id: str | None = None,
    product_ids: list[str] | None = None,
    triggered_by: str = "system",
    metadata: Mapping[str, Any] | None = None,
    options: Options = None,
) -> Job:
    """Queue a bulk fan-out (lowest priority, five attempts)."""
    job_data = BatchOperationJob(
        operation_type=BatchOperationType(operation_type),
        store_id=store_id,
        product_ids=product_ids,
        metadata={"triggered_by": triggered_by, **dict(metadata or {})},
    )
    overrides = {**dict(options or {}), "priority": _BATCH_PRIORITY, "attempts": _BATCH_ATTEMPTS}
    try:
        return registry[QueueName.BATCH_OPERATIONS].enqueue("batch-sync", job_data, overrides)
    except Exception:
        logger.exception("Failed to enqueue batch job: type=%s store=%s", operation_type, store_id)
        raise


def enqueue_inventory_sync(
    registry: QueueRegistry,
    product_id: str,
    *,
    store_ids: list[str] | None = None,
    triggered_by: str = "system",
    options: Options = None,
) -> Job:
    """Queue a push of one product's central quantity to its stores."""
    job_data = InventorySyncJob(product_id=product_id, store_ids=store_ids, triggered_by=triggered_by)
    return registry[QueueName.INVENTORY_SYNC].enqueue("sync-inventory", job_data, options)


# ---------------------------------------------------------------------------
# Lookup / cancel / retry
# ---------------------------------------------------------------------------


def get_job_by_id(registry: QueueRegistry, job_id: str, queue_name: str | None = None) -> Job | None:
    """Find a job in *queue_name*, or search every queue when it is omitted."""
    try:
        if queue_name is not None:
            queue = registry.get(queue_name)
            return queue.get(job_id) if queue is not None else None
        return registry.find_job(job_id)
    except Exception:
        logger.warning("Failed to get job %s (queue=%s)", job_id, queue_name, exc_info=True)
        return None


def cancel_job(registry: QueueRegistry, job_id: str, queue_name: str | None = None) -> bool:
    """Cancel a job. ``False`` when it does not exist."""
    job = get_job_by_id(registry, job_id, queue_name)
    if job is None:
        logger.warning("Job not found for cancellation: %s (queue=%s)", job_id, queue_name)
        return False
    try:
        return registry[job.queue].cancel(job_id)
    except Exception:
        logger.warning("Failed to cancel job %s", job_id, exc_info=True)
        return False


def retry_job(registry: QueueRegistry, job_id: str, queue_name: str | None = None) -> bool:
    """Re-run a failed job immediately. ``False`` when not found or not failed."""
    job = get_job_by_id(registry, job_id, queue_name)
    if job is None:
        logger.warning("Job not found for retry: %s (queue=%s)", job_id, queue_name)
        return False
    try:
        return registry[job.queue].retry(job_id)
    except Exception:
        logger.warning("Failed to retry job %s", job_id, exc_info=True)
        return False
