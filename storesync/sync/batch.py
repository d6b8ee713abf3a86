"""Batch coordinator: fans one batch operation out into per-mapping syncs.

Scope is ``store_id`` (or every active store) crossed with ``product_ids``
(or every product).  ``initial_sync`` and ``bulk_product_sync`` create the
missing mappings first; ``bulk_inventory_update`` only touches mappings that
already exist.  Each unit is independent: a unit that raises is recorded as
failed and the rest still run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from storesync.exceptions import NotFoundError
from storesync.models import Product, Store
from storesync.queue.payloads import BatchOperationJob, BatchOperationType
from storesync.sync.orchestrator import OutcomeStatus, SyncOrchestrator

logger = logging.getLogger(__name__)

_CREATES_MAPPINGS = frozenset({BatchOperationType.INITIAL_SYNC, BatchOperationType.BULK_PRODUCT_SYNC})
_SUCCESS = frozenset({OutcomeStatus.APPLIED, OutcomeStatus.UNCHANGED, OutcomeStatus.COALESCED})


@dataclass(frozen=True)
class UnitResult:
    product_id: str
    store_id: str
    status: OutcomeStatus
    error: str | None = None


@dataclass
class BatchResult:
    operation_type: BatchOperationType
    units: list[UnitResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.units)

    def _count(self, statuses: frozenset[OutcomeStatus] | set[OutcomeStatus]) -> int:
        return sum(1 for unit in self.units if unit.status in statuses)

    @property
    def succeeded(self) -> int:
        return self._count(_SUCCESS)

    @property
    def failed(self) -> int:
        return self._count({OutcomeStatus.FAILED})

    @property
    def needs_review(self) -> int:
        return self._count({OutcomeStatus.NEEDS_REVIEW})

    @property
    def skipped(self) -> int:
        return self._count({OutcomeStatus.SKIPPED})

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_type": self.operation_type.value,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "needs_review": self.needs_review,
            "skipped": self.skipped,
            "failures": [
                {"product_id": u.product_id, "store_id": u.store_id, "error": u.error}
                for u in self.units
                if u.status is OutcomeStatus.FAILED
            ],
        }


class BatchCoordinator:
    def __init__(self, orchestrator: SyncOrchestrator) -> None:
        self.orchestrator = orchestrator
        self.repository = orchestrator.repository

    def _stores(self, job: BatchOperationJob) -> list[Store]:
        if job.store_id is None:
            return [s for s in self.repository.list_stores(active_only=True) if s.sync_enabled]
        store = self.repository.get_store(job.store_id)
        if store is None:
            raise NotFoundError(f"store not found: {job.store_id}")
        return [store]

    def _products(self, job: BatchOperationJob, result: BatchResult, stores: list[Store]) -> list[Product]:
        if job.product_ids is None:
            return self.repository.list_products()
        products = []
        for product_id in job.product_ids:
            product = self.repository.get_product(product_id)
            if product is None:
                for store in stores:
                    result.units.append(
                        UnitResult(product_id, store.id, OutcomeStatus.FAILED, "product not found")
                    )
                continue
            products.append(product)
        return products

    def run(self, job: BatchOperationJob) -> BatchResult:
        result = BatchResult(job.operation_type)
        stores = self._stores(job)
        products = self._products(job, result, stores)
        creates = job.operation_type in _CREATES_MAPPINGS

        for store in stores:
            for product in products:
                if creates:
                    self.repository.create_mapping(product.id, store.id)
                elif self.repository.get_mapping(product.id, store.id) is None:
                    continue
                result.units.append(self._run_unit(product, store))

        logger.info(
            "Batch %s finished: total=%d succeeded=%d failed=%d needs_review=%d skipped=%d",
            job.operation_type.value, result.total, result.succeeded, result.failed,
            result.needs_review, result.skipped,
        )
        return result

    def _run_unit(self, product: Product, store: Store) -> UnitResult:
        try:
            outcome = self.orchestrator.sync_mapping(product.id, store.id, retry=True)
        except Exception as exc:
            logger.exception("Batch unit %s:%s raised", product.id, store.id)
            return UnitResult(product.id, store.id, OutcomeStatus.FAILED, f"{type(exc).__name__}: {exc}")
        return UnitResult(product.id, store.id, outcome.status, outcome.error)
