from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta


@dataclass(frozen=True)
class QueueLifecycle:
    queue: str
    source_state: str = "queued"
    in_progress_state: str = "in_progress"
    success_state: str = "completed"
    failed_state: str = "failed"
    dead_letter_state: str = "dead_letter"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base_ms: int = 1000
    backoff_max_ms: int = 60000

    def backoff_delay(self, attempts: int) -> timedelta:
        """Delay before the next delivery after `attempts` failed deliveries."""
        exponent = max(attempts - 1, 0)
        delay_ms = min(self.backoff_base_ms * (2**exponent), self.backoff_max_ms)
        return timedelta(milliseconds=delay_ms)


WEBHOOKS_QUEUE = "webhooks"

QUEUE_LIFECYCLES: dict[str, QueueLifecycle] = {
    WEBHOOKS_QUEUE: QueueLifecycle(queue=WEBHOOKS_QUEUE),
}


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "queued": {"in_progress"},
    "in_progress": {"completed", "queued", "failed", "dead_letter"},
    "completed": set(),
    "failed": set(),
    "dead_letter": set(),
}
