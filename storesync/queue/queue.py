"""A named job queue over a ``JobStore``.

Lifecycle of a job::

    enqueue -> WAITING (or DELAYED when options.delay > 0)
    reserve -> ACTIVE
    complete -> COMPLETED                      (pruned by remove_on_complete)
    fail     -> DELAYED while attempts remain, else FAILED (pruned by remove_on_fail)
    retry    -> FAILED back to WAITING, attempts reset

Enqueueing an id that already exists returns the stored job unchanged.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from storesync.queue.options import DEFAULT_JOB_OPTIONS, JobOptions
from storesync.queue.store import Job, JobState, JobStore

logger = logging.getLogger(__name__)

P = TypeVar("P", bound=BaseModel)


class JobQueue(Generic[P]):
    """One logical queue: a name, a payload type and default options."""

    def __init__(
        self,
        name: str,
        store: JobStore,
        payload_model: type[P],
        defaults: JobOptions = DEFAULT_JOB_OPTIONS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.payload_model = payload_model
        self.defaults = defaults
        self._store = store
        self._clock = clock

    def __repr__(self) -> str:
        return f"JobQueue({self.name!r})"

    # -- producer side ------------------------------------------------------

    def enqueue(
        self,
        job_name: str,
        payload: P,
        options: Mapping[str, Any] | None = None,
    ) -> Job:
        """Add a job, or return the existing one if its id is already taken.

        Args:
            job_name: Descriptive name (e.g. ``"process-order-created"``).
            payload: Instance of this queue's payload model.
            options: Overrides merged over the queue defaults
                (``attempts``, ``backoff``, ``priority``, ``job_id``, ...).
        """
        if not isinstance(payload, self.payload_model):
            raise TypeError(
                f"{self.name} expects {self.payload_model.__name__}, got {type(payload).__name__}"
            )
        opts = self.defaults.merge(**dict(options or {}))
        now = self._clock()
        job = Job(
            id=opts.job_id or uuid.uuid4().hex,
            queue=self.name,
            name=job_name,
            data=payload.model_dump(mode="json"),
            options=opts,
            state=JobState.DELAYED if opts.delay > 0 else JobState.WAITING,
            created_at=now,
            ready_at=now + opts.delay,
        )

        if self._store.add(job):
            logger.info(
                "JOB_AUDIT queue=%s job=%s name=%s status=enqueued priority=%d attempts=%d",
                self.name, job.id, job_name, opts.priority, opts.attempts,
            )
            return job

        existing = self._store.get(self.name, job.id)
        if existing is None:
            # removed between the failed add and the lookup; claim it again
            return self.enqueue(job_name, payload, options)
        logger.info(
            "JOB_AUDIT queue=%s job=%s name=%s status=duplicate state=%s",
            self.name, job.id, job_name, existing.state.value,
        )
        return existing

    def decode(self, job: Job) -> P:
        """Validate the stored job data back into the payload model."""
        return self.payload_model.model_validate(job.data)

    # -- lookup / admin -----------------------------------------------------

    def get(self, job_id: str) -> Job | None:
        return self._store.get(self.name, job_id)

    def cancel(self, job_id: str) -> bool:
        """Remove a job that has not started, or stop an active one from retrying.

        Returns ``False`` if the job does not exist.
        """
        job = self.get(job_id)
        if job is None:
            return False
        if job.state is JobState.ACTIVE:
            job.cancel_requested = True
            self._store.save(job)
            logger.info("JOB_AUDIT queue=%s job=%s status=cancel_requested", self.name, job_id)
            return True
        self._store.delete(self.name, job_id)
        logger.info("JOB_AUDIT queue=%s job=%s status=cancelled", self.name, job_id)
        return True

    def retry(self, job_id: str) -> bool:
        """Make a FAILED job immediately runnable again with fresh attempts."""
        job = self.get(job_id)
        if job is None:
            return False
        if job.state is not JobState.FAILED:
            logger.warning(
                "Cannot retry job %s in %s: state is %s, not failed",
                job_id, self.name, job.state.value,
            )
            return False
        now = self._clock()
        job.state = JobState.WAITING
        job.attempts_made = 0
        job.ready_at = now
        job.finished_at = None
        job.failed_reason = None
        self._store.save(job)
        logger.info("JOB_AUDIT queue=%s job=%s status=retried", self.name, job_id)
        return True

    def counts(self) -> dict[str, int]:
        return {state.value: len(self._store.ids(self.name, state)) for state in JobState}

    # -- consumer side ------------------------------------------------------

    def reserve(self) -> Job | None:
        """Claim the next ready job (highest priority, then oldest)."""
        return self._store.pop_ready(self.name, self._clock())

    def complete(self, job: Job, result: dict[str, Any] | None = None) -> None:
        current = self.get(job.id)
        if current is None:
            return
        if current.cancel_requested:
            self._store.delete(self.name, job.id)
            logger.info("JOB_AUDIT queue=%s job=%s status=dropped_after_cancel", self.name, job.id)
            return
        current.state = JobState.COMPLETED
        current.finished_at = self._clock()
        current.result = result
        self._store.save(current)
        logger.info("JOB_AUDIT queue=%s job=%s status=completed", self.name, job.id)
        self._prune(JobState.COMPLETED, current.options)

    def fail(self, job: Job, error: BaseException, *, permanent: bool = False) -> JobState | None:
        """Record a failed attempt; schedule the next one or mark the job FAILED.

        Returns the job's new state, or ``None`` if it no longer exists.
        """
        current = self.get(job.id)
        if current is None:
            return None
        current.attempts_made += 1
        reason = f"{type(error).__name__}: {error}"
        current.history.append(reason)

        if current.cancel_requested:
            self._store.delete(self.name, job.id)
            logger.info("JOB_AUDIT queue=%s job=%s status=dropped_after_cancel", self.name, job.id)
            return None

        now = self._clock()
        if not permanent and current.attempts_made < current.options.attempts:
            delay = current.options.backoff.delay_for(current.attempts_made)
            current.state = JobState.DELAYED
            current.ready_at = now + delay
            self._store.save(current)
            logger.warning(
                "JOB_AUDIT queue=%s job=%s status=retry_scheduled attempt=%d/%d delay=%.1fs reason=%s",
                self.name, job.id, current.attempts_made, current.options.attempts, delay, reason,
            )
            return current.state

        current.state = JobState.FAILED
        current.finished_at = now
        current.failed_reason = reason
        self._store.save(current)
        logger.error(
            "JOB_AUDIT queue=%s job=%s status=failed attempts=%d reason=%s",
            self.name, job.id, current.attempts_made, reason,
        )
        self._prune(JobState.FAILED, current.options)
        return current.state

    def _prune(self, state: JobState, options: JobOptions) -> None:
        retention = options.remove_on_complete if state is JobState.COMPLETED else options.remove_on_fail
        cutoff = self._clock() - retention.age
        kept: list[str] = []
        for job_id in self._store.ids(self.name, state):
            job = self.get(job_id)
            if job is not None and (job.finished_at or 0.0) < cutoff:
                self._store.delete(self.name, job_id)
            else:
                kept.append(job_id)
        excess = len(kept) - retention.count
        for job_id in kept[:max(excess, 0)]:
            self._store.delete(self.name, job_id)
