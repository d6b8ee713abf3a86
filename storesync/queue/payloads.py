"""Typed job payloads, one model per job kind.

Webhook payloads form a discriminated union on ``type`` so a job is decoded
exactly once, at the queue boundary, into the concrete model its handler
expects.  Raw Shopify objects keep only the fields the engine reads.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class _ShopifyObject(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# Shopify webhook bodies
# ---------------------------------------------------------------------------


class LineItem(_ShopifyObject):
    id: int | str | None = None
    sku: str | None = None
    quantity: int = 0
    variant_id: int | str | None = None


class Order(_ShopifyObject):
    id: int | str
    line_items: list[LineItem] = Field(default_factory=list)


class RestockType(str, enum.Enum):
    RETURN = "return"
    CANCEL = "cancel"
    NO_RESTOCK = "no_restock"
    LEGACY_RESTOCK = "legacy_restock"


class RefundLineItem(_ShopifyObject):
    id: int | str | None = None
    line_item_id: int | str | None = None
    quantity: int = 0
    restock_type: RestockType = RestockType.NO_RESTOCK
    line_item: LineItem = Field(default_factory=LineItem)


class Refund(_ShopifyObject):
    id: int | str
    order_id: int | str | None = None
    refund_line_items: list[RefundLineItem] = Field(default_factory=list)


class InventoryLevel(_ShopifyObject):
    inventory_item_id: int | str
    location_id: int | str | None = None
    available: int


# ---------------------------------------------------------------------------
# Webhook job payloads
# ---------------------------------------------------------------------------


class WebhookJobType(str, enum.Enum):
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    REFUND_CREATED = "REFUND_CREATED"
    INVENTORY_UPDATE = "INVENTORY_UPDATE"


class _WebhookJobData(BaseModel):
    event_id: str
    shop_domain: str
    timestamp: datetime = Field(default_factory=_now)


class OrderCreatedJob(_WebhookJobData):
    type: Literal["ORDER_CREATED"] = "ORDER_CREATED"
    order: Order


class OrderCancelledJob(_WebhookJobData):
    type: Literal["ORDER_CANCELLED"] = "ORDER_CANCELLED"
    order: Order


class RefundCreatedJob(_WebhookJobData):
    type: Literal["REFUND_CREATED"] = "REFUND_CREATED"
    refund: Refund


class InventoryUpdateJob(_WebhookJobData):
    type: Literal["INVENTORY_UPDATE"] = "INVENTORY_UPDATE"
    inventory_level: InventoryLevel


WebhookJobPayload = Annotated[
    Union[OrderCreatedJob, OrderCancelledJob, RefundCreatedJob, InventoryUpdateJob],
    Field(discriminator="type"),
]


class WebhookProcessingJob(BaseModel):
    webhook_event_id: str
    topic: str
    shop_domain: str
    payload: WebhookJobPayload


# ---------------------------------------------------------------------------
# Batch and sync jobs
# ---------------------------------------------------------------------------


class BatchOperationType(str, enum.Enum):
    BULK_INVENTORY_UPDATE = "bulk_inventory_update"
    BULK_PRODUCT_SYNC = "bulk_product_sync"
    INITIAL_SYNC = "initial_sync"


class BatchOperationJob(BaseModel):
    operation_type: BatchOperationType
    store_id: str | None = None
    product_ids: list[str] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class InventorySyncJob(BaseModel):
    product_id: str
    store_ids: list[str] | None = None
    triggered_by: str = "system"


class ProductSyncJob(BaseModel):
    product_id: str
    store_id: str
    operation: Literal["create", "update", "delete"]
    data: dict[str, Any] | None = None
