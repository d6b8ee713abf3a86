"""Sync orchestrator: reconciles one (product, store) mapping per call.

One sync cycle, all under the mapping's ``productId:storeId`` lock:

1. take the lock; a caller that had to wait is coalesced into the attempt
   it waited on when that attempt already pushed the current central value
2. compare-and-set the mapping to IN_PROGRESS
3. read the store quantity and resolve any conflict
4. push the resolved quantity to the store, then adopt it centrally
5. record COMPLETED (or FAILED with the error)

Storefront calls go through ``storesync.retry``; only
``TransientInfrastructureError`` is retried there.  A permanent error, or a
transient one that outlived its attempts, leaves the mapping FAILED and is
reported as a FAILED outcome.  Unexpected errors also mark the mapping
FAILED, then propagate.
"""

from __future__ import annotations

import enum
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TypeVar

from storesync.config import Settings
from storesync.exceptions import (
    MappingBusyError,
    NotFoundError,
    PermanentApplyError,
    SyncFailedError,
    TransientInfrastructureError,
)
from storesync.models import Conflict, InventoryRecord, Product, Store, StoreMapping, SyncStatus
from storesync.resolver import ConflictResolutionStrategy, resolve
from storesync.retry import retry
from storesync.sync.locks import LockProvider
from storesync.sync.repository import SyncRepository, utcnow
from storesync.sync.storefront import StorefrontClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SYNCABLE = frozenset({SyncStatus.PENDING, SyncStatus.COMPLETED})
_RETRYABLE = _SYNCABLE | {SyncStatus.FAILED}


class OutcomeStatus(str, enum.Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    COALESCED = "coalesced"
    NEEDS_REVIEW = "needs_review"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class SyncOutcome:
    product_id: str
    store_id: str
    status: OutcomeStatus
    quantity: int | None = None
    store_quantity: int | None = None
    conflict: bool = False
    conflict_id: str | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.status is OutcomeStatus.FAILED

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "store_id": self.store_id,
            "status": self.status.value,
            "quantity": self.quantity,
            "store_quantity": self.store_quantity,
            "conflict": self.conflict,
            "conflict_id": self.conflict_id,
            "error": self.error,
        }


class SyncOrchestrator:
    """Drives mappings through PENDING -> IN_PROGRESS -> COMPLETED | FAILED."""

    def __init__(
        self,
        repository: SyncRepository,
        client: StorefrontClient,
        locks: LockProvider,
        settings: Settings | None = None,
        *,
        now: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.repository = repository
        self.client = client
        self.locks = locks
        self.settings = settings or Settings()
        self._now = now
        self._sleep = sleep

    # -- public entry points ------------------------------------------------

    def sync_mapping(
        self,
        product_id: str,
        store_id: str,
        *,
        retry: bool = False,
        strategy: ConflictResolutionStrategy | None = None,
        event_id: str | None = None,
    ) -> SyncOutcome:
        """Run one sync cycle for the mapping.

        Args:
            retry: Also accept a FAILED mapping (job retries, batch runs and
                manual triggers).  First-attempt propagation skips FAILED
                mappings so one broken store does not get hammered per order.
            strategy: Overrides the store's and the global strategy.
            event_id: Webhook event that caused this sync, for the audit log.

        Raises:
            MappingBusyError: the lock stayed busy for ``lock_wait`` seconds.
        """
        key = f"{product_id}:{store_id}"
        started = self._now()
        token = self.locks.acquire(key, ttl=self.settings.mapping_lock_ttl)
        waited = token is None
        if waited:
            logger.debug("Mapping %s busy, waiting up to %.1fs", key, self.settings.lock_wait)
            token = self.locks.acquire(key, ttl=self.settings.mapping_lock_ttl, wait=self.settings.lock_wait)
            if token is None:
                raise MappingBusyError(product_id, store_id)
        try:
            if waited:
                coalesced = self._coalesced(product_id, store_id, started)
                if coalesced is not None:
                    self._audit(coalesced, event_id)
                    return coalesced
            outcome = self._sync_locked(product_id, store_id, retry=retry, strategy=strategy, event_id=event_id)
            self._audit(outcome, event_id)
            return outcome
        finally:
            self.locks.release(key, token)

    def sync_product_to_store(
        self, sku: str, store_domain: str, *, strategy: ConflictResolutionStrategy | None = None,
    ) -> SyncOutcome:
        """Manual trigger by SKU and store domain.

        Raises:
            NotFoundError: unknown SKU, store, or no mapping between them.
            SyncFailedError: the cycle ended FAILED.
        """
        product = self.repository.get_product_by_sku(sku)
        if product is None:
            raise NotFoundError(f"product not found: {sku}")
        store = self.repository.get_store_by_domain(store_domain)
        if store is None:
            raise NotFoundError(f"store not found: {store_domain}")
        if self.repository.get_mapping(product.id, store.id) is None:
            raise NotFoundError(f"product {sku} is not mapped to {store_domain}")

        outcome = self.sync_mapping(product.id, store.id, retry=True, strategy=strategy)
        if outcome.failed:
            raise SyncFailedError(sku, store_domain, outcome.error or "unknown error")
        return outcome

    def retry_mapping(self, product_id: str, store_id: str) -> SyncOutcome:
        """Re-run a mapping regardless of its FAILED status."""
        if self.repository.get_mapping(product_id, store_id) is None:
            raise NotFoundError(f"no mapping {product_id}:{store_id}")
        return self.sync_mapping(product_id, store_id, retry=True)

    def propagate(
        self,
        product_id: str,
        *,
        exclude_store_id: str | None = None,
        event_id: str | None = None,
        retry: bool = False,
    ) -> list[SyncOutcome]:
        """Push the central quantity of *product_id* to all of its stores.

        A busy mapping is reported as a FAILED outcome rather than raised, so
        the remaining stores still get their update.
        """
        outcomes: list[SyncOutcome] = []
        for mapping in self.repository.list_mappings(product_id=product_id):
            if mapping.store_id == exclude_store_id:
                continue
            try:
                outcome = self.sync_mapping(product_id, mapping.store_id, retry=retry, event_id=event_id)
            except MappingBusyError as exc:
                logger.warning("Propagation of %s to %s deferred: %s", product_id, mapping.store_id, exc)
                outcome = SyncOutcome(product_id, mapping.store_id, OutcomeStatus.FAILED, error=str(exc))
            outcomes.append(outcome)
        return outcomes

    def accept_store_quantity(
        self, product_id: str, store_id: str, quantity: int, *, event_id: str | None = None,
    ) -> bool:
        """Adopt a quantity set directly in a store as the central quantity.

        The source mapping is marked COMPLETED at that quantity, since the
        store already holds it.  Returns ``False`` when the mapping is gone.
        """
        key = f"{product_id}:{store_id}"
        token = self.locks.acquire(key, ttl=self.settings.mapping_lock_ttl, wait=self.settings.lock_wait)
        if token is None:
            raise MappingBusyError(product_id, store_id)
        try:
            if self.repository.get_mapping(product_id, store_id) is None:
                return False
            self.repository.set_inventory(product_id, quantity, adjusted_by=f"store:{store_id}")
            self.repository.transition_mapping(
                product_id, store_id,
                expected=self._claimable(product_id, store_id, _RETRYABLE),
                status=SyncStatus.COMPLETED,
                last_synced_at=self._now(),
                synced_quantity=quantity,
                last_error=None,
            )
        finally:
            self.locks.release(key, token)
        logger.info(
            "SYNC_AUDIT event=%s product=%s store=%s status=store_quantity_adopted quantity=%d",
            event_id, product_id, store_id, quantity,
        )
        return True

    def apply_store_delta(
        self,
        product_id: str,
        delta: int,
        *,
        idempotency_key: str,
        source_store_id: str | None = None,
        event_id: str | None = None,
    ) -> InventoryRecord | None:
        """Apply a sale or restock to central inventory, once per *idempotency_key*.

        The source store has already moved its own level by *delta*, so its
        mapping's synced quantity moves with it; otherwise the next sync of
        that store would read the sale as drift.  Both happen under the
        source mapping's lock.  Returns ``None`` when the key was applied
        before.
        """
        adjusted_by = f"webhook:{event_id}" if event_id else "webhook"
        if source_store_id is None or self.repository.get_mapping(product_id, source_store_id) is None:
            return self.repository.adjust_inventory(
                product_id, delta, idempotency_key=idempotency_key, adjusted_by=adjusted_by,
            )

        key = f"{product_id}:{source_store_id}"
        token = self.locks.acquire(key, ttl=self.settings.mapping_lock_ttl, wait=self.settings.lock_wait)
        if token is None:
            raise MappingBusyError(product_id, source_store_id)
        try:
            record = self.repository.adjust_inventory(
                product_id, delta, idempotency_key=idempotency_key, adjusted_by=adjusted_by,
            )
            mapping = self.repository.get_mapping(product_id, source_store_id)
            if record is not None and mapping is not None and mapping.synced_quantity is not None:
                self.repository.transition_mapping(
                    product_id, source_store_id,
                    expected={mapping.sync_status},
                    status=mapping.sync_status,
                    synced_quantity=max(0, mapping.synced_quantity + delta),
                )
        finally:
            self.locks.release(key, token)
        return record

    def resolve_manual_conflict(self, conflict_id: str, quantity: int) -> SyncOutcome:
        """Settle a MANUAL conflict with a human-chosen quantity and push it."""
        conflict = self.repository.get_conflict(conflict_id)
        if conflict is None:
            raise NotFoundError(f"conflict not found: {conflict_id}")
        if quantity < 0:
            raise ValueError(f"quantity must be >= 0, got {quantity}")
        self.repository.set_inventory(conflict.product_id, quantity, adjusted_by=f"manual:{conflict_id}")
        self.repository.mark_conflict_resolved(conflict_id)
        logger.info(
            "SYNC_AUDIT conflict=%s product=%s store=%s status=resolved quantity=%d",
            conflict_id, conflict.product_id, conflict.store_id, quantity,
        )
        return self.sync_mapping(
            conflict.product_id, conflict.store_id,
            retry=True, strategy=ConflictResolutionStrategy.USE_DATABASE,
        )

    # -- internals ----------------------------------------------------------

    def _coalesced(self, product_id: str, store_id: str, started: datetime) -> SyncOutcome | None:
        mapping = self.repository.get_mapping(product_id, store_id)
        if mapping is None or mapping.sync_status is not SyncStatus.COMPLETED:
            return None
        if mapping.last_synced_at is None or mapping.last_synced_at < started:
            return None
        central = self._central(product_id)
        if mapping.synced_quantity != central:
            return None
        return SyncOutcome(product_id, store_id, OutcomeStatus.COALESCED, quantity=central)

    def _central(self, product_id: str) -> int:
        record = self.repository.get_inventory(product_id)
        return record.quantity if record is not None else 0

    def _strategy_for(
        self, store: Store, explicit: ConflictResolutionStrategy | None,
    ) -> ConflictResolutionStrategy:
        return explicit or store.conflict_strategy or self.settings.default_strategy

    def _call(self, operation: Callable[[], T]) -> T:
        kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        return retry(
            operation,
            max_attempts=self.settings.retry_max_attempts,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
            retry_on=(TransientInfrastructureError,),
            **kwargs,
        )

    def _sync_locked(
        self,
        product_id: str,
        store_id: str,
        *,
        retry: bool,
        strategy: ConflictResolutionStrategy | None,
        event_id: str | None,
    ) -> SyncOutcome:
        store = self.repository.get_store(store_id)
        product = self.repository.get_product(product_id)
        if store is None or product is None:
            return SyncOutcome(product_id, store_id, OutcomeStatus.SKIPPED, error="product or store not found")
        if not store.accepts_sync:
            return SyncOutcome(product_id, store_id, OutcomeStatus.SKIPPED, error="store inactive or sync disabled")

        mapping = self.repository.transition_mapping(
            product_id, store_id,
            expected=self._claimable(product_id, store_id, _RETRYABLE) if retry else _SYNCABLE,
            status=SyncStatus.IN_PROGRESS,
            last_error=None,
            sync_started_at=self._now(),
        )
        if mapping is None:
            current = self.repository.get_mapping(product_id, store_id)
            reason = "no mapping" if current is None else f"mapping is {current.sync_status.value}"
            return SyncOutcome(product_id, store_id, OutcomeStatus.SKIPPED, error=reason)

        try:
            return self._reconcile(product, store, mapping, strategy)
        except (TransientInfrastructureError, PermanentApplyError) as exc:
            self._mark_failed(product_id, store_id, exc)
            logger.error(
                "Sync failed: event=%s sku=%s store=%s error=%s: %s",
                event_id, product.sku, store.domain, type(exc).__name__, exc,
            )
            return SyncOutcome(product_id, store_id, OutcomeStatus.FAILED, error=str(exc))
        except Exception as exc:
            self._mark_failed(product_id, store_id, exc)
            logger.exception("Unexpected sync error: event=%s sku=%s store=%s", event_id, product.sku, store.domain)
            raise

    def _reconcile(
        self,
        product: Product,
        store: Store,
        mapping: StoreMapping,
        explicit: ConflictResolutionStrategy | None,
    ) -> SyncOutcome:
        central = self._central(product.id)
        store_quantity = self._call(lambda: self.client.get_inventory_level(store, product.sku))

        # drift: the store moved away from what we last pushed, independently of central
        conflict = store_quantity != central and store_quantity != mapping.synced_quantity
        target = central
        if conflict:
            strategy = self._strategy_for(store, explicit)
            resolution = resolve(central, store_quantity, strategy)
            if resolution.needs_review:
                record = self._open_conflict(mapping)
                if record is None:
                    record = self.repository.record_conflict(
                        product.id, store.id,
                        central_quantity=central, store_quantity=store_quantity, strategy=strategy,
                    )
                else:
                    logger.info("Conflict %s on %s/%s still awaits review", record.id, product.sku, store.domain)
                self.repository.transition_mapping(
                    product.id, store.id,
                    expected={SyncStatus.IN_PROGRESS}, status=SyncStatus.PENDING, conflict_id=record.id,
                )
                return SyncOutcome(
                    product.id, store.id, OutcomeStatus.NEEDS_REVIEW,
                    quantity=central, store_quantity=store_quantity, conflict=True, conflict_id=record.id,
                )
            target = resolution.quantity
            logger.info(
                "Conflict on %s/%s: central=%d store=%d last_synced=%s strategy=%s -> %d",
                product.sku, store.domain, central, store_quantity, mapping.synced_quantity,
                strategy.value, target,
            )

        if store_quantity == target:
            status = OutcomeStatus.UNCHANGED
        else:
            self._call(lambda: self.client.set_inventory_level(store, product.sku, target))
            status = OutcomeStatus.APPLIED

        # central adopts a resolved quantity only once the store holds it; applied
        # as a delta so sales recorded meanwhile are kept
        if target != central:
            self.repository.adjust_inventory(
                product.id, target - central,
                idempotency_key=f"conflict:{mapping.key}:{uuid.uuid4().hex}",
                adjusted_by=f"conflict:{store.id}",
            )

        self.repository.transition_mapping(
            product.id, store.id,
            expected={SyncStatus.IN_PROGRESS},
            status=SyncStatus.COMPLETED,
            last_synced_at=self._now(),
            synced_quantity=target,
            conflict_id=None,
        )
        return SyncOutcome(
            product.id, store.id, status, quantity=target, store_quantity=store_quantity, conflict=conflict,
        )

    def _claimable(self, product_id: str, store_id: str, expected: frozenset[SyncStatus]) -> frozenset[SyncStatus]:
        """*expected*, plus IN_PROGRESS when that claim has outlived the lock TTL.

        A younger IN_PROGRESS claim may belong to an attempt still talking to
        the store, so it is left alone.
        """
        current = self.repository.get_mapping(product_id, store_id)
        if current is None or current.sync_status is not SyncStatus.IN_PROGRESS:
            return expected
        started = current.sync_started_at
        ttl = timedelta(seconds=self.settings.mapping_lock_ttl)
        if started is not None and self._now() - started < ttl:
            return expected
        logger.warning("Reclaiming abandoned IN_PROGRESS mapping %s (started %s)", current.key, started)
        return expected | {SyncStatus.IN_PROGRESS}

    def _open_conflict(self, mapping: StoreMapping) -> Conflict | None:
        if mapping.conflict_id is None:
            return None
        conflict = self.repository.get_conflict(mapping.conflict_id)
        if conflict is None or conflict.resolved:
            return None
        return conflict

    def _mark_failed(self, product_id: str, store_id: str, error: BaseException) -> None:
        self.repository.transition_mapping(
            product_id, store_id,
            expected={SyncStatus.IN_PROGRESS},
            status=SyncStatus.FAILED,
            last_error=f"{type(error).__name__}: {error}",
        )

    def _audit(self, outcome: SyncOutcome, event_id: str | None) -> None:
        log = logger.warning if outcome.failed else logger.info
        log(
            "SYNC_AUDIT event=%s product=%s store=%s status=%s quantity=%s store_quantity=%s conflict=%s",
            event_id, outcome.product_id, outcome.store_id, outcome.status.value,
            outcome.quantity, outcome.store_quantity, outcome.conflict,
        )
