"""Per-mapping mutual exclusion keyed by ``productId:storeId``.

Webhook jobs, batch jobs and manual triggers can all target the same
(product, store) pair at once, so queue ordering is not enough.  Every sync
attempt holds the pair's lock for its whole read-resolve-apply cycle.

``InMemoryLockProvider`` uses one ``threading.Lock`` per key (tests and
single-process deployments).  ``RedisLockProvider`` uses ``SET NX PX`` with
a random token and releases through a compare-and-delete script, so a lock
that expired and was re-acquired elsewhere is never released by mistake.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Protocol, runtime_checkable

import redis

logger = logging.getLogger(__name__)


@runtime_checkable
class LockProvider(Protocol):
    def acquire(self, key: str, *, ttl: float, wait: float = 0.0) -> str | None:
        """Try to take *key*, waiting up to *wait* seconds.

        Returns an opaque token on success, ``None`` if the lock stayed busy.
        """
        ...

    def release(self, key: str, token: str) -> bool:
        """Release *key* if *token* still owns it."""
        ...


class InMemoryLockProvider:
    """Process-local locks, one per key. *ttl* is not enforced."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._owners: dict[str, str] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    def acquire(self, key: str, *, ttl: float, wait: float = 0.0) -> str | None:
        lock = self._lock_for(key)
        acquired = lock.acquire(timeout=wait) if wait > 0 else lock.acquire(blocking=False)
        if not acquired:
            return None
        token = uuid.uuid4().hex
        with self._guard:
            self._owners[key] = token
        return token

    def release(self, key: str, token: str) -> bool:
        with self._guard:
            if self._owners.get(key) != token:
                return False
            del self._owners[key]
            lock = self._locks[key]
        lock.release()
        return True

    def is_locked(self, key: str) -> bool:
        return self._lock_for(key).locked()


_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisLockProvider:
    """Distributed locks shared by every worker process."""

    def __init__(self, client: redis.Redis, prefix: str = "storesync", poll_interval: float = 0.05) -> None:
        self._redis = client
        self._prefix = prefix
        self._poll_interval = poll_interval
        self._release = client.register_script(_RELEASE_SCRIPT)

    def _key(self, key: str) -> str:
        return f"{self._prefix}:lock:{key}"

    def acquire(self, key: str, *, ttl: float, wait: float = 0.0) -> str | None:
        token = uuid.uuid4().hex
        deadline = time.monotonic() + wait
        while True:
            if self._redis.set(self._key(key), token, nx=True, px=int(ttl * 1000)):
                return token
            if time.monotonic() >= deadline:
                return None
            time.sleep(self._poll_interval)

    def release(self, key: str, token: str) -> bool:
        released = bool(self._release(keys=[self._key(key)], args=[token]))
        if not released:
            logger.warning("Lock %s expired before release (token mismatch)", key)
        return released
