"""Tests for storesync.queue: options, queue lifecycle, registry, job API, worker."""

from __future__ import annotations

import threading
import time

import pytest
from freezegun import freeze_time

from storesync.queue import (
    DEFAULT_JOB_OPTIONS,
    Backoff,
    InMemoryJobStore,
    Job,
    JobOptions,
    JobQueue,
    JobState,
    QueueName,
    QueueRegistry,
    QueueWorker,
    Retention,
    cancel_job,
    enqueue_batch_sync,
    enqueue_inventory_sync,
    enqueue_order_created,
    enqueue_refund_created,
    get_job_by_id,
    retry_job,
)
from storesync.queue.payloads import (
    InventorySyncJob,
    LineItem,
    Order,
    OrderCreatedJob,
    Refund,
    RefundCreatedJob,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _order_job(event_id: str = "evt-1") -> OrderCreatedJob:
    return OrderCreatedJob(
        event_id=event_id,
        shop_domain="main.myshopify.com",
        order=Order(id=1001, line_items=[LineItem(id=1, sku="SKU-1", quantity=2)]),
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def registry(clock) -> QueueRegistry:
    return QueueRegistry.create(InMemoryJobStore(), clock=clock)


@pytest.fixture()
def sync_queue(registry) -> JobQueue:
    return registry[QueueName.INVENTORY_SYNC]


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


class TestJobOptions:
    def test_defaults(self):
        opts = DEFAULT_JOB_OPTIONS
        assert opts.attempts == 3
        assert opts.backoff == Backoff("exponential", 5.0)
        assert opts.remove_on_complete == Retention(age=86400, count=1000)
        assert opts.remove_on_fail == Retention(age=604800, count=5000)

    def test_merge_ignores_none(self):
        merged = DEFAULT_JOB_OPTIONS.merge(priority=2, job_id=None)
        assert merged.priority == 2
        assert merged.job_id is None
        assert DEFAULT_JOB_OPTIONS.priority == 0

    def test_merge_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            DEFAULT_JOB_OPTIONS.merge(attempts=0)

    def test_exponential_backoff(self):
        backoff = Backoff()
        assert [backoff.delay_for(n) for n in (1, 2, 3)] == [5.0, 10.0, 20.0]

    def test_fixed_backoff(self):
        assert Backoff("fixed", 2.0).delay_for(4) == 2.0

    def test_dict_round_trip(self):
        opts = JobOptions(attempts=5, priority=5, job_id="abc", delay=1.5)
        assert JobOptions.from_dict(opts.to_dict()) == opts


# ---------------------------------------------------------------------------
# Enqueue
# ---------------------------------------------------------------------------


class TestEnqueue:
    def test_same_event_id_yields_one_job(self, registry):
        first = enqueue_order_created(registry, _order_job("evt-42"))
        second = enqueue_order_created(registry, _order_job("evt-42"))
        assert first.id == second.id == "evt-42"
        assert registry[QueueName.WEBHOOK_PROCESSING].counts()["waiting"] == 1

    def test_duplicate_returns_current_state(self, registry):
        enqueue_order_created(registry, _order_job("evt-42"))
        registry[QueueName.WEBHOOK_PROCESSING].reserve()
        again = enqueue_order_created(registry, _order_job("evt-42"))
        assert again.state is JobState.ACTIVE

    def test_payload_type_is_checked(self, sync_queue):
        with pytest.raises(TypeError):
            sync_queue.enqueue("sync-inventory", _order_job())

    def test_generated_ids_are_unique(self, sync_queue):
        a = sync_queue.enqueue("sync-inventory", InventorySyncJob(product_id="P1"))
        b = sync_queue.enqueue("sync-inventory", InventorySyncJob(product_id="P1"))
        assert a.id != b.id

    def test_delay_option_starts_delayed(self, sync_queue, clock):
        job = sync_queue.enqueue("sync-inventory", InventorySyncJob(product_id="P1"), {"delay": 10})
        assert job.state is JobState.DELAYED
        assert sync_queue.reserve() is None
        clock.advance(10)
        assert sync_queue.reserve().id == job.id

    def test_lower_priority_number_runs_first(self, sync_queue, clock):
        low = sync_queue.enqueue("sync-inventory", InventorySyncJob(product_id="P1"), {"priority": 5})
        clock.advance(1)
        high = sync_queue.enqueue("sync-inventory", InventorySyncJob(product_id="P2"), {"priority": 1})
        assert sync_queue.reserve().id == high.id
        assert sync_queue.reserve().id == low.id

    def test_fifo_within_priority(self, sync_queue, clock):
        first = sync_queue.enqueue("sync-inventory", InventorySyncJob(product_id="P1"))
        clock.advance(1)
        sync_queue.enqueue("sync-inventory", InventorySyncJob(product_id="P2"))
        assert sync_queue.reserve().id == first.id


class TestEnqueueHelpers:
    def test_order_created_priority_and_id(self, registry):
        job = enqueue_order_created(registry, _order_job("evt-7"), {"priority": 9, "job_id": "other"})
        assert job.options.priority == 1
        assert job.id == "evt-7"
        assert job.name == "process-order-created"
        assert job.data["topic"] == "orders/create"
        assert job.data["payload"]["type"] == "ORDER_CREATED"

    def test_refund_priority(self, registry):
        data = RefundCreatedJob(event_id="evt-r", shop_domain="s", refund=Refund(id=5))
        assert enqueue_refund_created(registry, data).options.priority == 2

    def test_batch_priority_and_attempts(self, registry):
        job = enqueue_batch_sync(registry, "initial_sync", store_id="S1", options={"attempts": 2})
        assert job.queue == QueueName.BATCH_OPERATIONS.value
        assert job.options.priority == 5
        assert job.options.attempts == 5
        assert job.data["metadata"]["triggered_by"] == "system"

    def test_batch_rejects_unknown_operation(self, registry):
        with pytest.raises(ValueError):
            enqueue_batch_sync(registry, "delete_everything")

    def test_inventory_sync(self, registry):
        job = enqueue_inventory_sync(registry, "P1", store_ids=["S1"], triggered_by="admin")
        assert job.queue == QueueName.INVENTORY_SYNC.value
        assert job.data == {"product_id": "P1", "store_ids": ["S1"], "triggered_by": "admin"}


# ---------------------------------------------------------------------------
# Lookup / cancel / retry
# ---------------------------------------------------------------------------


class TestJobApi:
    def test_get_job_searches_all_queues(self, registry):
        job = enqueue_inventory_sync(registry, "P1")
        assert get_job_by_id(registry, job.id).queue == QueueName.INVENTORY_SYNC.value

    def test_lookup_order_prefers_webhook_queue(self, registry):
        enqueue_order_created(registry, _order_job("shared-id"))
        enqueue_inventory_sync(registry, "P1", options={"job_id": "shared-id"})
        assert get_job_by_id(registry, "shared-id").queue == QueueName.WEBHOOK_PROCESSING.value
        assert get_job_by_id(registry, "shared-id", "inventory-sync").queue == QueueName.INVENTORY_SYNC.value

    def test_missing_job(self, registry):
        assert get_job_by_id(registry, "nope") is None
        assert get_job_by_id(registry, "nope", "inventory-sync") is None
        assert cancel_job(registry, "nope") is False
        assert retry_job(registry, "nope") is False

    def test_unknown_queue_name(self, registry):
        assert get_job_by_id(registry, "x", "no-such-queue") is None

    def test_cancel_waiting_job_removes_it(self, registry):
        job = enqueue_inventory_sync(registry, "P1")
        assert cancel_job(registry, job.id) is True
        assert get_job_by_id(registry, job.id) is None

    def test_cancel_active_job_drops_it_on_completion(self, registry, sync_queue):
        job = enqueue_inventory_sync(registry, "P1")
        active = sync_queue.reserve()
        assert cancel_job(registry, job.id) is True
        assert get_job_by_id(registry, job.id).cancel_requested is True
        sync_queue.complete(active, {"ok": True})
        assert get_job_by_id(registry, job.id) is None

    def test_retry_only_failed_jobs(self, registry, sync_queue):
        job = enqueue_inventory_sync(registry, "P1", options={"attempts": 1})
        assert retry_job(registry, job.id) is False
        sync_queue.fail(sync_queue.reserve(), RuntimeError("boom"))
        assert get_job_by_id(registry, job.id).state is JobState.FAILED
        assert retry_job(registry, job.id) is True
        retried = get_job_by_id(registry, job.id)
        assert retried.state is JobState.WAITING
        assert retried.attempts_made == 0
        assert retried.failed_reason is None


# ---------------------------------------------------------------------------
# Attempts and backoff
# ---------------------------------------------------------------------------


class TestJobRetries:
    def test_failed_attempt_is_delayed_by_backoff(self, sync_queue, clock):
        sync_queue.enqueue("sync-inventory", InventorySyncJob(product_id="P1"))
        state = sync_queue.fail(sync_queue.reserve(), RuntimeError("boom"))
        assert state is JobState.DELAYED
        assert sync_queue.reserve() is None
        clock.advance(4)
        assert sync_queue.reserve() is None
        clock.advance(1)
        job = sync_queue.reserve()
        assert job is not None
        assert job.attempts_made == 1

    def test_exhausted_attempts_fail_terminally(self, sync_queue, clock):
        job = sync_queue.enqueue("sync-inventory", InventorySyncJob(product_id="P1"))
        for _ in range(3):
            clock.advance(60)
            sync_queue.fail(sync_queue.reserve(), RuntimeError("boom"))
        failed = sync_queue.get(job.id)
        assert failed.state is JobState.FAILED
        assert failed.attempts_made == 3
        assert failed.failed_reason == "RuntimeError: boom"
        assert len(failed.history) == 3

    def test_permanent_failure_skips_remaining_attempts(self, sync_queue):
        job = sync_queue.enqueue("sync-inventory", InventorySyncJob(product_id="P1"))
        assert sync_queue.fail(sync_queue.reserve(), ValueError("bad"), permanent=True) is JobState.FAILED
        assert sync_queue.get(job.id).attempts_made == 1


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------


class TestRetention:
    def test_count_retention_keeps_newest(self, clock):
        queue = JobQueue(
            "inventory-sync", InMemoryJobStore(), InventorySyncJob,
            DEFAULT_JOB_OPTIONS.merge(remove_on_complete=Retention(age=86400, count=2)), clock,
        )
        ids = []
        for n in range(3):
            ids.append(queue.enqueue("sync-inventory", InventorySyncJob(product_id=f"P{n}")).id)
            clock.advance(1)
            queue.complete(queue.reserve())
        assert queue.get(ids[0]) is None
        assert queue.get(ids[1]) is not None
        assert queue.get(ids[2]) is not None

    def test_completed_jobs_expire_after_a_day(self):
        with freeze_time("2026-03-01 12:00:00") as frozen:
            queue = JobQueue(
                "inventory-sync", InMemoryJobStore(), InventorySyncJob, DEFAULT_JOB_OPTIONS, lambda: time.time(),
            )
            old = queue.enqueue("sync-inventory", InventorySyncJob(product_id="P1"))
            queue.complete(queue.reserve())

            frozen.tick(86400 + 1)
            new = queue.enqueue("sync-inventory", InventorySyncJob(product_id="P2"))
            queue.complete(queue.reserve())

            assert queue.get(old.id) is None
            assert queue.get(new.id).state is JobState.COMPLETED

    def test_failed_jobs_kept_for_a_week(self):
        with freeze_time("2026-03-01 12:00:00") as frozen:
            queue = JobQueue(
                "inventory-sync", InMemoryJobStore(), InventorySyncJob,
                DEFAULT_JOB_OPTIONS.merge(attempts=1), lambda: time.time(),
            )
            old = queue.enqueue("sync-inventory", InventorySyncJob(product_id="P1"))
            queue.fail(queue.reserve(), RuntimeError("boom"))

            frozen.tick(6 * 86400)
            queue.enqueue("sync-inventory", InventorySyncJob(product_id="P2"))
            queue.fail(queue.reserve(), RuntimeError("boom"))
            assert queue.get(old.id) is not None

            frozen.tick(2 * 86400)
            queue.enqueue("sync-inventory", InventorySyncJob(product_id="P3"))
            queue.fail(queue.reserve(), RuntimeError("boom"))
            assert queue.get(old.id) is None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_standard_queues(self, registry):
        assert {q.name for q in registry} == {name.value for name in QueueName}

    def test_batch_queue_defaults(self, registry):
        defaults = registry[QueueName.BATCH_OPERATIONS].defaults
        assert (defaults.priority, defaults.attempts) == (5, 5)

    def test_unknown_queue(self, registry):
        assert registry.get("nope") is None
        with pytest.raises(ValueError):
            registry["nope"]


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


class TestQueueWorker:
    def test_success_completes_with_result(self, registry, sync_queue):
        job = enqueue_inventory_sync(registry, "P1")
        seen = []

        def handler(job, payload):
            seen.append(payload)
            return {"synced": payload.product_id}

        worker = QueueWorker(sync_queue, handler)
        assert worker.run_once() is True
        assert isinstance(seen[0], InventorySyncJob)
        done = sync_queue.get(job.id)
        assert done.state is JobState.COMPLETED
        assert done.result == {"synced": "P1"}

    def test_handler_error_schedules_retry(self, registry, sync_queue):
        job = enqueue_inventory_sync(registry, "P1")

        def handler(job, payload):
            raise RuntimeError("store down")

        QueueWorker(sync_queue, handler).run_once()
        assert sync_queue.get(job.id).state is JobState.DELAYED

    def test_invalid_payload_fails_permanently(self, clock):
        store = InMemoryJobStore()
        registry = QueueRegistry.create(store, clock=clock)
        store.add(Job(
            id="bad", queue="inventory-sync", name="sync-inventory", data={"unexpected": True},
            options=DEFAULT_JOB_OPTIONS, created_at=clock(), ready_at=clock(),
        ))
        queue = registry[QueueName.INVENTORY_SYNC]
        QueueWorker(queue, lambda job, payload: None).run_once()
        failed = queue.get("bad")
        assert failed.state is JobState.FAILED
        assert failed.attempts_made == 1

    def test_empty_queue(self, sync_queue):
        assert QueueWorker(sync_queue, lambda job, payload: None).run_once() is False

    def test_drain(self, registry, sync_queue):
        for n in range(3):
            enqueue_inventory_sync(registry, f"P{n}")
        worker = QueueWorker(sync_queue, lambda job, payload: None)
        assert worker.drain() == 3
        assert worker.jobs_processed == 3
        assert sync_queue.counts()["completed"] == 3

    def test_background_thread(self, registry):
        queue = registry[QueueName.INVENTORY_SYNC]
        handled = threading.Event()

        def handler(job, payload):
            handled.set()
            return None

        worker = QueueWorker(queue, handler, poll_interval=0.01)
        worker.start()
        try:
            enqueue_inventory_sync(registry, "P1")
            assert handled.wait(timeout=5)
        finally:
            worker.stop(timeout=5)
        assert worker.running is False
