"""Webhook-to-job translation.

One pure mapping per commerce topic turns an inbound Shopify event into a
typed job payload.  Every webhook job carries the event id as its job id,
which is what makes a redelivered event a no-op at enqueue time.

``inventory_deltas`` is the single place that decides how much a webhook
moves central inventory:

- ``orders/create``        minus each line item quantity
- ``orders/cancelled``     plus each line item quantity
- ``refunds/create``       plus quantity, only for ``return`` / ``cancel``
                           restocks; ``no_restock`` lines never count
- ``inventory_levels/update`` no delta, carries an absolute quantity
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from storesync.queue import jobs
from storesync.queue.payloads import (
    InventoryLevel,
    InventoryUpdateJob,
    LineItem,
    Order,
    OrderCancelledJob,
    OrderCreatedJob,
    Refund,
    RefundCreatedJob,
    RestockType,
    WebhookJobPayload,
)
from storesync.queue.registry import QueueName, QueueRegistry
from storesync.queue.store import Job, JobState
from storesync.webhooks.idempotency import ProcessedEventLog

logger = logging.getLogger(__name__)

RESTOCKING_TYPES = frozenset({RestockType.RETURN, RestockType.CANCEL})


@dataclass
class InboundWebhook:
    """A verified webhook delivery, as handed over by the ingress layer."""

    event_id: str
    topic: str
    shop_domain: str
    payload: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Topic -> payload
# ---------------------------------------------------------------------------


def _order_created(event: InboundWebhook) -> OrderCreatedJob:
    return OrderCreatedJob(
        event_id=event.event_id, shop_domain=event.shop_domain, order=Order.model_validate(event.payload),
    )


def _order_cancelled(event: InboundWebhook) -> OrderCancelledJob:
    return OrderCancelledJob(
        event_id=event.event_id, shop_domain=event.shop_domain, order=Order.model_validate(event.payload),
    )


def _refund_created(event: InboundWebhook) -> RefundCreatedJob:
    return RefundCreatedJob(
        event_id=event.event_id, shop_domain=event.shop_domain, refund=Refund.model_validate(event.payload),
    )


def _inventory_update(event: InboundWebhook) -> InventoryUpdateJob:
    return InventoryUpdateJob(
        event_id=event.event_id,
        shop_domain=event.shop_domain,
        inventory_level=InventoryLevel.model_validate(event.payload),
    )


_TRANSLATORS: dict[str, Callable[[InboundWebhook], Any]] = {
    jobs.TOPIC_ORDERS_CREATE: _order_created,
    jobs.TOPIC_ORDERS_CANCELLED: _order_cancelled,
    jobs.TOPIC_REFUNDS_CREATE: _refund_created,
    jobs.TOPIC_INVENTORY_LEVELS_UPDATE: _inventory_update,
}

_ENQUEUERS: dict[str, Callable[..., Job]] = {
    jobs.TOPIC_ORDERS_CREATE: jobs.enqueue_order_created,
    jobs.TOPIC_ORDERS_CANCELLED: jobs.enqueue_order_cancelled,
    jobs.TOPIC_REFUNDS_CREATE: jobs.enqueue_refund_created,
    jobs.TOPIC_INVENTORY_LEVELS_UPDATE: jobs.enqueue_inventory_update,
}


def translate(event: InboundWebhook) -> WebhookJobPayload | None:
    """Build the typed job payload for *event*, or ``None`` for other topics.

    Raises:
        pydantic.ValidationError: the body does not match the topic's shape.
    """
    translator = _TRANSLATORS.get(event.topic)
    if translator is None:
        logger.info("Unrecognized webhook topic: %s (event %s), skipping", event.topic, event.event_id)
        return None
    return translator(event)


# ---------------------------------------------------------------------------
# Payload -> per-SKU deltas
# ---------------------------------------------------------------------------


def _sum_by_sku(items: list[tuple[LineItem, int]]) -> dict[str, int]:
    deltas: dict[str, int] = defaultdict(int)
    for item, quantity in items:
        if not item.sku:
            logger.debug("Skipping line item %s without SKU", item.id)
            continue
        deltas[item.sku] += quantity
    return dict(deltas)


def inventory_deltas(payload: WebhookJobPayload) -> dict[str, int]:
    """Per-SKU change to central inventory implied by a webhook payload.

    Line items sharing a SKU are summed.  Inventory level updates carry an
    absolute quantity instead and yield no delta.
    """
    if isinstance(payload, OrderCreatedJob):
        return _sum_by_sku([(li, -li.quantity) for li in payload.order.line_items])
    if isinstance(payload, OrderCancelledJob):
        return _sum_by_sku([(li, li.quantity) for li in payload.order.line_items])
    if isinstance(payload, RefundCreatedJob):
        restocked = [
            (rli.line_item, rli.quantity)
            for rli in payload.refund.refund_line_items
            if rli.restock_type in RESTOCKING_TYPES
        ]
        return _sum_by_sku(restocked)
    return {}


# ---------------------------------------------------------------------------
# Translate + enqueue
# ---------------------------------------------------------------------------


def enqueue_webhook_event(
    registry: QueueRegistry,
    event: InboundWebhook,
    processed: ProcessedEventLog | None = None,
) -> Job | None:
    """Translate *event* and put it on the webhook queue.

    Returns the queued job (the existing one for a duplicate delivery), a
    detached COMPLETED handle when the event was processed so long ago that
    its job record is gone, or ``None`` for unsupported topics and
    malformed bodies.
    """
    existing = registry[QueueName.WEBHOOK_PROCESSING].get(event.event_id)
    if existing is not None:
        logger.info(
            "WEBHOOK_AUDIT event=%s topic=%s shop=%s status=duplicate state=%s",
            event.event_id, event.topic, event.shop_domain, existing.state.value,
        )
        return existing

    if processed is not None and processed.is_processed(event.event_id):
        logger.info(
            "WEBHOOK_AUDIT event=%s topic=%s shop=%s status=already_processed",
            event.event_id, event.topic, event.shop_domain,
        )
        return Job(
            id=event.event_id,
            queue=QueueName.WEBHOOK_PROCESSING.value,
            name="already-processed",
            data={},
            options=registry[QueueName.WEBHOOK_PROCESSING].defaults,
            state=JobState.COMPLETED,
        )

    try:
        payload = translate(event)
    except ValidationError as exc:
        logger.error(
            "WEBHOOK_AUDIT event=%s topic=%s shop=%s status=invalid_payload errors=%d",
            event.event_id, event.topic, event.shop_domain, exc.error_count(),
        )
        return None
    if payload is None:
        return None

    job = _ENQUEUERS[event.topic](registry, payload)
    logger.info(
        "WEBHOOK_AUDIT event=%s topic=%s shop=%s status=enqueued job=%s",
        event.event_id, event.topic, event.shop_domain, job.id,
    )
    return job
