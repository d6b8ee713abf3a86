"""End-to-end tests: webhook -> queue -> worker -> central store -> storefronts."""

from __future__ import annotations

import pytest

from storesync.exceptions import DuplicateEventError, PermanentApplyError
from storesync.models import Product, ProductSyncState, SyncStatus
from storesync.queue import JobState, QueueName
from storesync.queue.payloads import BatchOperationType
from storesync.service import create_service
from storesync.webhooks.translator import InboundWebhook

MAIN = "main.myshopify.com"
OUTLET = "outlet.myshopify.com"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _order(event_id: str = "evt-1", quantity: int = 2) -> InboundWebhook:
    return InboundWebhook(
        event_id, "orders/create", MAIN,
        {"id": 1001, "line_items": [{"id": 1, "sku": "SKU-1", "quantity": quantity}]},
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def service(settings, repository, storefront, clock):
    repository.create_mapping("P1", "S1")
    repository.create_mapping("P1", "S2")
    storefront.levels.update({(MAIN, "SKU-1"): 100, (OUTLET, "SKU-1"): 100})
    return create_service(settings, repository=repository, client=storefront, clock=clock, sleep=lambda _: None)


class TestWebhookFlow:
    def test_order_propagates_to_other_stores(self, service, repository, storefront):
        job = service.accept_webhook(_order())
        assert job.id == "evt-1"
        # the selling store took the units off itself
        storefront.levels[(MAIN, "SKU-1")] = 98

        assert service.drain() == 1
        assert repository.get_inventory("P1").quantity == 98
        assert storefront.levels[(OUTLET, "SKU-1")] == 98
        assert storefront.levels[(MAIN, "SKU-1")] == 98
        assert service.registry[QueueName.WEBHOOK_PROCESSING].get("evt-1").state is JobState.COMPLETED
        assert service.processed.is_processed("evt-1")

    def test_redelivery_after_completion_is_not_reapplied(self, service, repository):
        service.accept_webhook(_order())
        service.drain()
        again = service.accept_webhook(_order())
        assert again.state is JobState.COMPLETED
        assert service.drain() == 0
        assert repository.get_inventory("P1").quantity == 98

    def test_failed_propagation_retries_with_backoff(self, service, repository, storefront, clock):
        storefront.set_errors = [PermanentApplyError("rejected")]
        service.accept_webhook(_order())

        service.drain()
        job = service.registry[QueueName.WEBHOOK_PROCESSING].get("evt-1")
        assert job.state is JobState.DELAYED
        assert job.attempts_made == 1
        assert repository.get_mapping("P1", "S2").sync_status is SyncStatus.FAILED
        assert service.product_status("P1") is ProductSyncState.ERROR
        assert not service.processed.is_processed("evt-1")

        # not ready before the first backoff delay elapses
        clock.advance(4)
        assert service.drain() == 0

        clock.advance(1)
        assert service.drain() == 1
        job = service.registry[QueueName.WEBHOOK_PROCESSING].get("evt-1")
        assert job.state is JobState.COMPLETED
        # the delta was applied exactly once across both attempts
        assert repository.get_inventory("P1").quantity == 98
        assert storefront.levels[(OUTLET, "SKU-1")] == 98
        assert service.processed.is_processed("evt-1")

    def test_attempts_exhausted_marks_job_failed(self, service, storefront, clock):
        storefront.reject_skus.add("SKU-1")
        service.accept_webhook(_order())
        for _ in range(3):
            service.drain()
            clock.advance(60)

        job = service.registry[QueueName.WEBHOOK_PROCESSING].get("evt-1")
        assert job.state is JobState.FAILED
        assert job.attempts_made == 3
        assert "PropagationError" in job.failed_reason


class TestScheduledJobs:
    def test_batch_job_runs_through_worker(self, service, repository, storefront):
        repository.add_product(Product("P2", "SKU-2"), quantity=5)
        job = service.schedule_batch(BatchOperationType.INITIAL_SYNC, store_id="S2")
        service.drain()

        done = service.registry[QueueName.BATCH_OPERATIONS].get(job.id)
        assert done.state is JobState.COMPLETED
        assert done.result["total"] == 2
        assert storefront.levels[(OUTLET, "SKU-2")] == 5

    def test_inventory_sync_job(self, service, repository, storefront):
        repository.set_inventory("P1", 60, adjusted_by="admin")
        job = service.schedule_inventory_sync("P1")
        service.drain()

        assert service.registry[QueueName.INVENTORY_SYNC].get(job.id).state is JobState.COMPLETED
        assert storefront.levels[(MAIN, "SKU-1")] == 60
        assert storefront.levels[(OUTLET, "SKU-1")] == 60
        assert service.product_status("P1") is ProductSyncState.SYNCED

    def test_background_workers_start_and_stop(self, service):
        service.start()
        assert all(worker.running for worker in service.workers)
        service.stop(timeout=2)
        assert not any(worker.running for worker in service.workers)


class TestReceiveWebhook:
    def test_redelivery_raises_duplicate(self, service):
        service.receive_webhook(_order())
        with pytest.raises(DuplicateEventError) as exc_info:
            service.receive_webhook(_order())
        assert exc_info.value.event_id == "evt-1"

    def test_processed_event_is_duplicate_after_job_pruned(self, service):
        service.processed.mark_processed("evt-9")
        with pytest.raises(DuplicateEventError):
            service.receive_webhook(_order("evt-9"))

    def test_unsupported_topic_returns_none(self, service):
        assert service.receive_webhook(InboundWebhook("evt-2", "customers/create", MAIN, {})) is None


class TestAppUninstalled:
    def _uninstall(self, event_id: str = "evt-u", shop: str = MAIN) -> InboundWebhook:
        return InboundWebhook(event_id, "app/uninstalled", shop, {"id": 1, "domain": shop})

    def test_store_is_deactivated_and_sync_disabled(self, service, repository):
        assert service.receive_webhook(self._uninstall()) is None
        store = repository.get_store("S1")
        assert (store.is_active, store.sync_enabled) == (False, False)
        # soft delete: the mapping survives
        assert repository.get_mapping("P1", "S1") is not None
        assert service.processed.is_processed("evt-u")

    def test_redelivery_is_duplicate(self, service):
        service.receive_webhook(self._uninstall())
        with pytest.raises(DuplicateEventError):
            service.receive_webhook(self._uninstall())

    def test_disconnected_store_receives_no_writes(self, service, repository, storefront):
        service.receive_webhook(self._uninstall())
        service.accept_webhook(InboundWebhook(
            "evt-2", "orders/create", OUTLET,
            {"id": 7, "line_items": [{"id": 1, "sku": "SKU-1", "quantity": 4}]},
        ))
        service.drain()

        assert repository.get_inventory("P1").quantity == 96
        assert storefront.levels[(MAIN, "SKU-1")] == 100
        assert (MAIN, "SKU-1", 96) not in storefront.writes

    def test_unknown_shop_is_ignored(self, service, repository):
        assert service.disconnect_store("gone.myshopify.com") is None
        assert all(store.accepts_sync for store in repository.list_stores())
