"""Job envelope and queue set.

Public API:
    - JobQueue / QueueRegistry / QueueName: named queues over a JobStore
    - JobStore / InMemoryJobStore / RedisJobStore: job storage backends
    - Job / JobState: job record and its lifecycle states
    - JobOptions / Backoff / Retention: immutable per-job options
    - QueueWorker: background consumer for one queue
    - enqueue_* / get_job_by_id / cancel_job / retry_job: see storesync.queue.jobs
"""

from __future__ import annotations

from storesync.queue.jobs import (
    cancel_job,
    enqueue_batch_sync,
    enqueue_inventory_sync,
    enqueue_inventory_update,
    enqueue_order_cancelled,
    enqueue_order_created,
    enqueue_refund_created,
    get_job_by_id,
    retry_job,
)
from storesync.queue.options import DEFAULT_JOB_OPTIONS, Backoff, JobOptions, Retention
from storesync.queue.queue import JobQueue
from storesync.queue.registry import LOOKUP_ORDER, QueueName, QueueRegistry
from storesync.queue.store import InMemoryJobStore, Job, JobState, JobStore, RedisJobStore
from storesync.queue.worker import QueueWorker

__all__ = [
    "DEFAULT_JOB_OPTIONS",
    "LOOKUP_ORDER",
    "Backoff",
    "InMemoryJobStore",
    "Job",
    "JobOptions",
    "JobQueue",
    "JobState",
    "JobStore",
    "QueueName",
    "QueueRegistry",
    "QueueWorker",
    "RedisJobStore",
    "Retention",
    "cancel_job",
    "enqueue_batch_sync",
    "enqueue_inventory_sync",
    "enqueue_inventory_update",
    "enqueue_order_cancelled",
    "enqueue_order_created",
    "enqueue_refund_created",
    "get_job_by_id",
    "retry_job",
]
