from __future__ import annotations

from nutribot.domain.models import JobClaim, ProcessResult
from nutribot.workers.handlers import webhook
from nutribot.workers.handlers.deps import WorkerDeps
from nutribot.workers.loop import ProcessHandler


def build_process_handler(role: str, deps: WorkerDeps) -> ProcessHandler:
    async def _webhook(claim: JobClaim) -> ProcessResult:
        return await webhook.process_claim(deps, claim=claim)

    handlers: dict[str, ProcessHandler] = {
        "worker-webhooks": _webhook,
        "standalone": _webhook,
    }
    handler = handlers.get(role)
    if handler is None:
        raise ValueError(f"No worker handler for role '{role}'")
    return handler
