"""Queue consumer: reserves jobs from one queue and runs a handler on them.

The worker runs in a background thread.  Each iteration claims one ready
job, decodes its payload once, calls the handler and records the outcome
on the queue (complete, retry later, or fail).
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from storesync.queue.queue import JobQueue
from storesync.queue.store import Job

logger = logging.getLogger(__name__)

Handler = Callable[[Job, Any], "dict[str, Any] | None"]

MAX_CONSECUTIVE_ERRORS = 5


class QueueWorker:
    """Pulls jobs from *queue* and hands them to *handler*."""

    def __init__(self, queue: JobQueue, handler: Handler, *, poll_interval: float = 1.0) -> None:
        self.queue = queue
        self._handler = handler
        self._poll_interval = poll_interval
        self._running = False
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._consecutive_errors = 0
        self.jobs_processed = 0

    @property
    def running(self) -> bool:
        return self._running

    def run_once(self) -> bool:
        """Process at most one job. Returns ``True`` if a job was claimed."""
        job = self.queue.reserve()
        if job is None:
            return False

        logger.info(
            "JOB_AUDIT queue=%s job=%s name=%s status=processing attempt=%d",
            self.queue.name, job.id, job.name, job.attempts_made + 1,
        )
        try:
            payload = self.queue.decode(job)
        except ValidationError as exc:
            logger.error("Job %s in %s has an invalid payload: %s", job.id, self.queue.name, exc)
            self.queue.fail(job, exc, permanent=True)
            return True

        try:
            result = self._handler(job, payload)
        except Exception as exc:
            logger.exception("Job %s in %s failed", job.id, self.queue.name)
            self.queue.fail(job, exc)
        else:
            self.queue.complete(job, result)
        self.jobs_processed += 1
        return True

    def drain(self, max_jobs: int | None = None) -> int:
        """Process ready jobs until the queue is empty (or *max_jobs* reached)."""
        count = 0
        while max_jobs is None or count < max_jobs:
            if not self.run_once():
                break
            count += 1
        return count

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run_loop, daemon=True, name=f"storesync-{self.queue.name}",
        )
        self._thread.start()
        logger.info("Worker for %s STARTED (poll=%ss)", self.queue.name, self._poll_interval)

    def stop(self, timeout: float | None = None) -> None:
        self._running = False
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        logger.info("Worker for %s STOPPED (%d jobs processed)", self.queue.name, self.jobs_processed)

    def _run_loop(self) -> None:
        while self._running:
            try:
                if self.run_once():
                    self._consecutive_errors = 0
                    continue
                self._stop.wait(self._poll_interval)
            except Exception as e:
                # store unavailable or similar; back off and keep the loop alive
                self._consecutive_errors += 1
                logger.error(
                    "Worker loop error on %s (%d/%d): %s",
                    self.queue.name, self._consecutive_errors, MAX_CONSECUTIVE_ERRORS, e,
                    exc_info=True,
                )
                if self._consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                    logger.critical("Worker for %s hit max consecutive errors, backing off 60s", self.queue.name)
                    self._consecutive_errors = 0
                    self._stop.wait(60.0)
                else:
                    self._stop.wait(min(5.0 * self._consecutive_errors, 30.0))
