"""Processed webhook event log.

The webhook queue already deduplicates on ``job_id = event_id`` while the job
record is retained (24h for completed jobs).  This log remembers processed
event ids for longer, so a redelivery that arrives after the job record was
pruned is still recognised.

Contract:
- Key pattern: ``{prefix}:webhook:processed:{event_id}``, TTL 7 days by default
- ``mark_processed`` is called by the worker after a job succeeds
- If Redis is down, ``is_processed`` fails open (returns ``False``); the
  per-SKU adjustment keys still prevent double-applying a delta
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Protocol, runtime_checkable

import redis

logger = logging.getLogger(__name__)

_DEFAULT_TTL_SECONDS = 604800  # 7 days


@runtime_checkable
class ProcessedEventLog(Protocol):
    def is_processed(self, event_id: str) -> bool: ...

    def mark_processed(self, event_id: str, topic: str = "", shop_domain: str = "") -> None: ...


class InMemoryProcessedEventLog:
    """Single-process processed-event log with TTL expiry."""

    def __init__(self, ttl: int = _DEFAULT_TTL_SECONDS) -> None:
        self._ttl = ttl
        self._lock = threading.Lock()
        self._seen: dict[str, float] = {}

    def is_processed(self, event_id: str) -> bool:
        if not event_id:
            return False
        with self._lock:
            expires = self._seen.get(event_id)
            if expires is None:
                return False
            if expires <= time.time():
                del self._seen[event_id]
                return False
            return True

    def mark_processed(self, event_id: str, topic: str = "", shop_domain: str = "") -> None:
        if not event_id:
            return
        with self._lock:
            self._seen[event_id] = time.time() + self._ttl
        logger.debug("Webhook event marked processed: %s (%s from %s)", event_id, topic, shop_domain)


class RedisProcessedEventLog:
    """Redis-backed processed-event log shared by all workers."""

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "storesync",
        ttl: int = _DEFAULT_TTL_SECONDS,
    ) -> None:
        self._redis = client
        self._prefix = prefix
        self._ttl = ttl

    def _key(self, event_id: str) -> str:
        return f"{self._prefix}:webhook:processed:{event_id}"

    def is_processed(self, event_id: str) -> bool:
        if not event_id:
            return False
        try:
            return bool(self._redis.exists(self._key(event_id)))
        except redis.RedisError:
            logger.warning(
                "Redis unavailable for processed-event check, allowing %s",
                event_id,
                exc_info=True,
            )
            return False

    def mark_processed(self, event_id: str, topic: str = "", shop_domain: str = "") -> None:
        if not event_id:
            return
        try:
            self._redis.set(self._key(event_id), f"{topic}|{shop_domain}", ex=self._ttl)
        except redis.RedisError:
            logger.warning("Failed to mark webhook event processed: %s", event_id, exc_info=True)
