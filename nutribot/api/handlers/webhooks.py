from __future__ import annotations

from nutribot.api.handlers.deps import ApiDeps
from nutribot.api.schemas import WebhookAcceptedResponse
from nutribot.domain.lifecycle import WEBHOOKS_QUEUE

COMPONENT_ID = "api.receive_webhook"


async def receive_webhook_handler(deps: ApiDeps, *, body: dict[str, object]) -> WebhookAcceptedResponse:
    """Wrap the inbound event verbatim into one webhooks job; no parsing here."""
    job = await deps.queue.enqueue(queue=WEBHOOKS_QUEUE, payload={"body": body})
    return WebhookAcceptedResponse(message="Webhook received", job_id=job.job_id)
