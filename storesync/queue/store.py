"""Job records and the storage backends that hold them.

``JobStore`` is backend-agnostic: ``InMemoryJobStore`` serves tests and
single-process deployments; ``RedisJobStore`` keeps one JSON document per job
plus one sorted set per state, so any number of worker processes can share a
queue.

Redis layout (``{p}`` = key prefix, ``{q}`` = queue name)::

    {p}:queue:{q}:job:{id}      JSON job record
    {p}:queue:{q}:waiting       zset, score = priority * 1e13 + ready_at_ms
    {p}:queue:{q}:delayed       zset, score = ready_at
    {p}:queue:{q}:active        zset, score = processed_at
    {p}:queue:{q}:completed     zset, score = finished_at
    {p}:queue:{q}:failed        zset, score = finished_at
"""

from __future__ import annotations

import enum
import json
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Protocol, runtime_checkable

import redis

from storesync.queue.options import JobOptions

logger = logging.getLogger(__name__)

_PRIORITY_WEIGHT = 10**13


class JobState(str, enum.Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    """A job record; also the handle returned from enqueue."""

    id: str
    queue: str
    name: str
    data: dict[str, Any]
    options: JobOptions
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    created_at: float = 0.0
    ready_at: float = 0.0
    processed_at: float | None = None
    finished_at: float | None = None
    failed_reason: str | None = None
    result: dict[str, Any] | None = None
    cancel_requested: bool = False
    history: list[str] = field(default_factory=list)

    @property
    def score(self) -> float:
        if self.state is JobState.WAITING:
            return self.options.priority * _PRIORITY_WEIGHT + self.ready_at * 1000
        if self.state is JobState.DELAYED:
            return self.ready_at
        if self.state is JobState.ACTIVE:
            return self.processed_at or 0.0
        return self.finished_at or 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue,
            "name": self.name,
            "data": self.data,
            "options": self.options.to_dict(),
            "state": self.state.value,
            "attempts_made": self.attempts_made,
            "created_at": self.created_at,
            "ready_at": self.ready_at,
            "processed_at": self.processed_at,
            "finished_at": self.finished_at,
            "failed_reason": self.failed_reason,
            "result": self.result,
            "cancel_requested": self.cancel_requested,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        return cls(
            id=data["id"],
            queue=data["queue"],
            name=data["name"],
            data=data["data"],
            options=JobOptions.from_dict(data["options"]),
            state=JobState(data["state"]),
            attempts_made=data.get("attempts_made", 0),
            created_at=data.get("created_at", 0.0),
            ready_at=data.get("ready_at", 0.0),
            processed_at=data.get("processed_at"),
            finished_at=data.get("finished_at"),
            failed_reason=data.get("failed_reason"),
            result=data.get("result"),
            cancel_requested=data.get("cancel_requested", False),
            history=list(data.get("history", [])),
        )


# ---------------------------------------------------------------------------
# JobStore protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class JobStore(Protocol):
    """Storage for job records, indexed by queue and state."""

    def add(self, job: Job) -> bool:
        """Insert *job* unless its id already exists in its queue.

        Returns ``True`` if inserted, ``False`` if the id was taken.
        """
        ...

    def get(self, queue: str, job_id: str) -> Job | None: ...

    def save(self, job: Job) -> None:
        """Persist *job* and re-index it under its current state."""
        ...

    def delete(self, queue: str, job_id: str) -> bool: ...

    def pop_ready(self, queue: str, now: float) -> Job | None:
        """Promote due delayed jobs, then atomically claim the best waiting job.

        The claimed job is returned in the ACTIVE state with ``processed_at=now``.
        """
        ...

    def ids(self, queue: str, state: JobState) -> list[str]:
        """Job ids in *state*, ordered by score (oldest / highest priority first)."""
        ...


# ---------------------------------------------------------------------------
# InMemoryJobStore
# ---------------------------------------------------------------------------


class InMemoryJobStore:
    """Thread-safe in-memory job store.

    Records are copied in and out so callers never share mutable state with
    the store, mirroring a networked backend.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[tuple[str, str], dict[str, Any]] = {}

    def add(self, job: Job) -> bool:
        with self._lock:
            key = (job.queue, job.id)
            if key in self._jobs:
                return False
            self._jobs[key] = job.to_dict()
            return True

    def get(self, queue: str, job_id: str) -> Job | None:
        with self._lock:
            raw = self._jobs.get((queue, job_id))
        return Job.from_dict(raw) if raw is not None else None

    def save(self, job: Job) -> None:
        with self._lock:
            self._jobs[(job.queue, job.id)] = job.to_dict()

    def delete(self, queue: str, job_id: str) -> bool:
        with self._lock:
            return self._jobs.pop((queue, job_id), None) is not None

    def pop_ready(self, queue: str, now: float) -> Job | None:
        with self._lock:
            candidates: list[Job] = []
            for (q, _), raw in self._jobs.items():
                if q != queue:
                    continue
                job = Job.from_dict(raw)
                if job.state is JobState.DELAYED and job.ready_at <= now:
                    job.state = JobState.WAITING
                    self._jobs[(q, job.id)] = job.to_dict()
                if job.state is JobState.WAITING:
                    candidates.append(job)
            if not candidates:
                return None
            job = min(candidates, key=lambda j: j.score)
            job.state = JobState.ACTIVE
            job.processed_at = now
            self._jobs[(queue, job.id)] = job.to_dict()
            return job

    def ids(self, queue: str, state: JobState) -> list[str]:
        with self._lock:
            jobs = [Job.from_dict(raw) for (q, _), raw in self._jobs.items() if q == queue]
        return [j.id for j in sorted((j for j in jobs if j.state is state), key=lambda j: j.score)]


# ---------------------------------------------------------------------------
# RedisJobStore
# ---------------------------------------------------------------------------


class RedisJobStore:
    """Redis-backed job store shared by every worker process."""

    def __init__(self, client: redis.Redis, prefix: str = "storesync") -> None:
        self._redis = client
        self._prefix = prefix

    def _job_key(self, queue: str, job_id: str) -> str:
        return f"{self._prefix}:queue:{queue}:job:{job_id}"

    def _state_key(self, queue: str, state: JobState) -> str:
        return f"{self._prefix}:queue:{queue}:{state.value}"

    def add(self, job: Job) -> bool:
        # SET NX makes the id claim atomic across processes
        created = self._redis.set(self._job_key(job.queue, job.id), json.dumps(job.to_dict()), nx=True)
        if not created:
            return False
        self._redis.zadd(self._state_key(job.queue, job.state), {job.id: job.score})
        return True

    def get(self, queue: str, job_id: str) -> Job | None:
        raw = self._redis.get(self._job_key(queue, job_id))
        if raw is None:
            return None
        return Job.from_dict(json.loads(raw))

    def save(self, job: Job) -> None:
        pipe = self._redis.pipeline(transaction=True)
        pipe.set(self._job_key(job.queue, job.id), json.dumps(job.to_dict()))
        for state in JobState:
            if state is not job.state:
                pipe.zrem(self._state_key(job.queue, state), job.id)
        pipe.zadd(self._state_key(job.queue, job.state), {job.id: job.score})
        pipe.execute()

    def delete(self, queue: str, job_id: str) -> bool:
        pipe = self._redis.pipeline(transaction=True)
        pipe.delete(self._job_key(queue, job_id))
        for state in JobState:
            pipe.zrem(self._state_key(queue, state), job_id)
        results = pipe.execute()
        return bool(results[0])

    def pop_ready(self, queue: str, now: float) -> Job | None:
        delayed = self._state_key(queue, JobState.DELAYED)
        for job_id in self._redis.zrangebyscore(delayed, 0, now):
            # only the worker whose ZREM succeeds owns the promotion
            if not self._redis.zrem(delayed, job_id):
                continue
            job = self.get(queue, job_id)
            if job is None or job.state is not JobState.DELAYED:
                continue
            self.save(replace(job, state=JobState.WAITING))

        while True:
            popped = self._redis.zpopmin(self._state_key(queue, JobState.WAITING))
            if not popped:
                return None
            job_id, _ = popped[0]
            job = self.get(queue, job_id)
            if job is None:
                logger.warning("Dropping dangling job id %s from %s", job_id, queue)
                continue
            job.state = JobState.ACTIVE
            job.processed_at = now
            self.save(job)
            return job

    def ids(self, queue: str, state: JobState) -> list[str]:
        return list(self._redis.zrange(self._state_key(queue, state), 0, -1))
