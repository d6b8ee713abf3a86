"""Exception taxonomy for the inventory synchronization engine.

Transient errors are absorbed by ``storesync.retry`` until attempts run out.
Permanent errors are never retried; the mapping is marked ``FAILED``.
Lookup misses on the job API return ``None`` / ``False`` instead of raising;
``NotFoundError`` is reserved for the manual sync entry point.
"""

from __future__ import annotations


class StoreSyncError(Exception):
    """Base class for every error raised by storesync."""


class TransientInfrastructureError(StoreSyncError):
    """Network failure, rate limit or 5xx from a storefront. Retryable."""


class MappingBusyError(TransientInfrastructureError):
    """The (product, store) lock could not be acquired in time."""

    def __init__(self, product_id: str, store_id: str) -> None:
        super().__init__(f"mapping {product_id}:{store_id} is locked by another sync")
        self.product_id = product_id
        self.store_id = store_id


class PermanentApplyError(StoreSyncError):
    """The storefront rejected the update. Not retried."""


class DuplicateEventError(StoreSyncError):
    """A webhook event id was already accepted.

    Raised by ``SyncService.receive_webhook``.  The enqueue functions never
    raise it: a duplicate resolves to the existing job.
    """

    def __init__(self, event_id: str) -> None:
        super().__init__(f"webhook event already accepted: {event_id}")
        self.event_id = event_id


class NotFoundError(StoreSyncError):
    """A product, store, mapping or job does not exist."""


class ManualReviewRequired(StoreSyncError):
    """Conflict strategy is MANUAL; a human has to pick the quantity."""

    def __init__(self, central: int, store: int) -> None:
        super().__init__(f"manual review required (central={central}, store={store})")
        self.central = central
        self.store = store


class SyncFailedError(StoreSyncError):
    """A manually triggered sync cycle ended in the FAILED state."""

    def __init__(self, sku: str, store_domain: str, detail: str) -> None:
        super().__init__(f"sync of {sku} to {store_domain} failed: {detail}")
        self.sku = sku
        self.store_domain = store_domain
        self.detail = detail


class PropagationError(StoreSyncError):
    """One or more stores could not be updated after a central change."""

    def __init__(self, event_id: str, failures: dict[str, str]) -> None:
        stores = ", ".join(sorted(failures))
        super().__init__(f"event {event_id}: propagation failed for {stores}")
        self.event_id = event_id
        self.failures = failures


class WebhookVerificationError(StoreSyncError):
    """Inbound webhook signature did not verify."""
