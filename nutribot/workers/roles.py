from __future__ import annotations

from nutribot.domain.lifecycle import WEBHOOKS_QUEUE

# Roles that run a worker pool, and the queue each one consumes.
ROLE_TO_QUEUE: dict[str, str] = {
    "worker-webhooks": WEBHOOKS_QUEUE,
    "standalone": WEBHOOKS_QUEUE,
}
