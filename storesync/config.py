"""Runtime settings, read once from the environment.

All knobs live on an immutable ``Settings`` instance that is passed
explicitly into the components that need it.  ``get_settings()`` caches the
process-wide instance; tests build their own with ``Settings(...)``.

Environment variables use the ``STORESYNC_`` prefix (``STORESYNC_LOCK_WAIT``
and so on), except ``REDIS_URL`` and the ``SHOPIFY_*`` variables, which
keep the names the other services on the host already export.
"""

from __future__ import annotations

import functools

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings

from storesync.resolver import ConflictResolutionStrategy
from storesync.retry import compute_delay

# Requests per sync cycle: one read, then a locate and a mutation for the write
_REQUESTS_PER_CYCLE = 3
_LOCK_TTL_MARGIN = 30.0


class Settings(BaseSettings):
    """Immutable engine configuration."""

    redis_url: str = Field(
        "redis://localhost:6379/0", validation_alias=AliasChoices("REDIS_URL", "STORESYNC_REDIS_URL"),
    )
    key_prefix: str = "storesync"

    # Storefront call retries (storesync.retry)
    retry_max_attempts: int = Field(3, ge=1)
    retry_base_delay: float = Field(1.0, ge=0)
    retry_max_delay: float = Field(30.0, ge=0)

    # Per-mapping coordination; lock_ttl defaults to the worst-case cycle
    lock_ttl: float | None = Field(None, gt=0)
    lock_wait: float = 10.0

    default_strategy: ConflictResolutionStrategy = Field(
        ConflictResolutionStrategy.USE_DATABASE,
        validation_alias=AliasChoices("STORESYNC_CONFLICT_STRATEGY", "STORESYNC_DEFAULT_STRATEGY"),
    )

    # Processed webhook ids outlive job retention (7 days)
    processed_event_ttl: int = 604800

    worker_poll_interval: float = 1.0

    shopify_api_version: str = Field("2025-01", validation_alias="SHOPIFY_API_VERSION")
    shopify_webhook_secret: str = Field("", validation_alias="SHOPIFY_WEBHOOK_SECRET")
    http_timeout: float = Field(30.0, gt=0)

    model_config = {
        "env_prefix": "STORESYNC_",
        "env_file": ".env",
        "extra": "ignore",
        "frozen": True,
        "populate_by_name": True,
    }

    @field_validator("default_strategy", mode="before")
    @classmethod
    def _parse_strategy(cls, value: object) -> object:
        if isinstance(value, str):
            return ConflictResolutionStrategy.parse(value)
        return value

    @property
    def sync_cycle_budget(self) -> float:
        """Worst-case seconds one sync cycle can spend on storefront calls."""
        backoff = sum(
            compute_delay(attempt, self.retry_base_delay, self.retry_max_delay)
            for attempt in range(1, self.retry_max_attempts)
        )
        # the read and the write are retried separately
        return self.retry_max_attempts * _REQUESTS_PER_CYCLE * self.http_timeout + 2 * backoff

    @property
    def mapping_lock_ttl(self) -> float:
        """Seconds a mapping lock (and an IN_PROGRESS claim) stays valid."""
        if self.lock_ttl is not None:
            return self.lock_ttl
        return self.sync_cycle_budget + _LOCK_TTL_MARGIN


@functools.lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings built from the environment."""
    return Settings()
