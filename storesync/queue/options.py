"""Job options: attempts, backoff and retention.

Options are immutable.  A queue is constructed with its defaults and each
enqueue call merges overrides into a new ``JobOptions`` instance.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any


@dataclass(frozen=True)
class Backoff:
    type: str = "exponential"
    delay: float = 5.0  # seconds

    def delay_for(self, attempts_made: int) -> float:
        """Wait before the next attempt after *attempts_made* failures."""
        if self.type == "fixed":
            return self.delay
        return self.delay * (2 ** max(attempts_made - 1, 0))


@dataclass(frozen=True)
class Retention:
    """Keep finished jobs at most *age* seconds and at most *count* of them."""

    age: float
    count: int


@dataclass(frozen=True)
class JobOptions:
    attempts: int = 3
    backoff: Backoff = field(default_factory=Backoff)
    remove_on_complete: Retention = field(default_factory=lambda: Retention(age=86400, count=1000))
    remove_on_fail: Retention = field(default_factory=lambda: Retention(age=604800, count=5000))
    priority: int = 0
    job_id: str | None = None
    delay: float = 0.0

    def merge(self, **overrides: Any) -> JobOptions:
        """Return a copy with every non-``None`` override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        if "attempts" in changes and changes["attempts"] < 1:
            raise ValueError(f"attempts must be >= 1, got {changes['attempts']}")
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempts": self.attempts,
            "backoff": {"type": self.backoff.type, "delay": self.backoff.delay},
            "remove_on_complete": {"age": self.remove_on_complete.age, "count": self.remove_on_complete.count},
            "remove_on_fail": {"age": self.remove_on_fail.age, "count": self.remove_on_fail.count},
            "priority": self.priority,
            "job_id": self.job_id,
            "delay": self.delay,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobOptions:
        return cls(
            attempts=data["attempts"],
            backoff=Backoff(**data["backoff"]),
            remove_on_complete=Retention(**data["remove_on_complete"]),
            remove_on_fail=Retention(**data["remove_on_fail"]),
            priority=data.get("priority", 0),
            job_id=data.get("job_id"),
            delay=data.get("delay", 0.0),
        )


DEFAULT_JOB_OPTIONS = JobOptions()
