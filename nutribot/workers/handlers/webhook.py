from __future__ import annotations

import asyncio
import logging

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from nutribot.domain.errors import DeliveryError, DomainError, DomainInvariantError, UserNotFoundError
from nutribot.domain.error_taxonomy import ErrorCode, classify_error, resolve_queue_error
from nutribot.domain.events import EventPayloadError, event_body_from_job_payload, parse_inbound_event, render_reply
from nutribot.domain.models import DeliveryReceipt, JobClaim, ProcessOutcome, ProcessResult
from nutribot.workers.handlers.deps import WorkerDeps

COMPONENT_ID = "worker.webhook.process_claim"

logger = logging.getLogger(__name__)


async def process_claim(deps: WorkerDeps, *, claim: JobClaim) -> ProcessResult:
    """Turn one inbound chat event into an agent reply sent back to the sender.

    Non-actionable events (other event kinds, missing sender, unknown user,
    media-only messages) succeed without side effects. User resolution and
    agent failures fail the job so the queue retries it. A delivery failure
    after the agent answered is logged and the job still succeeds, so the
    agent is never re-invoked for a notification outage.
    """
    context: dict[str, object] = {
        "job_id": claim.job_id,
        "queue": claim.queue,
        "attempt": claim.attempt,
    }

    try:
        body = event_body_from_job_payload(claim.payload)
    except EventPayloadError as exc:
        return _failure(context, code="event_payload_invalid", operation="parse_event", exc=exc)

    event = parse_inbound_event(body)
    context["event"] = event.kind

    if not event.is_inbound_message:
        return _skip(context, ProcessOutcome.IGNORED_EVENT, f"skipped event: {event.kind}")

    channel_id = event.channel_id
    if not channel_id:
        logger.warning("no remoteJid found in webhook data", extra=context)
        return _skip(context, ProcessOutcome.MISSING_CHANNEL, "remoteJid is missing")
    context["channel_id"] = channel_id

    try:
        user = await deps.users.get_user_by_phone(phone=channel_id)
    except UserNotFoundError:
        # Surface unregistered senders loudly: this may be a misconfigured directory.
        logger.warning("message from unregistered sender dropped", extra=context)
        return _skip(context, ProcessOutcome.UNKNOWN_USER, f"no user registered for {channel_id}")
    except Exception as exc:
        return _failure(context, code="user_resolution_failed", operation="get_user_by_phone", exc=exc)
    context["user_id"] = user.user_id

    text = event.text
    if text is None or not text.strip():
        return _skip(context, ProcessOutcome.MISSING_TEXT, "no conversation text in message")

    try:
        async with asyncio.timeout(deps.agent_timeout_seconds):
            reply = await deps.agent.reply(user_id=user.user_id, message=text)
    except TimeoutError:
        timeout = TimeoutError(f"agent did not answer within {deps.agent_timeout_seconds}s")
        return _failure(context, code="agent_invocation_failed", operation="agent.reply", exc=timeout)
    except Exception as exc:
        return _failure(context, code="agent_invocation_failed", operation="agent.reply", exc=exc)

    answer = render_reply(reply)
    try:
        await _deliver(deps, channel_id=channel_id, text=answer)
    except DomainError as exc:
        logger.error(
            "failed to deliver reply",
            extra={**context, **exc.context, "operation": "send_text", "error": str(exc)},
        )
        return ProcessResult(
            success=True,
            detail=f"reply not delivered: {exc}",
            outcome=ProcessOutcome.REPLY_UNDELIVERED,
        )
    except Exception:
        logger.exception("failed to deliver reply", extra={**context, "operation": "send_text"})
        return ProcessResult(
            success=True,
            detail="reply not delivered: unexpected delivery error",
            outcome=ProcessOutcome.REPLY_UNDELIVERED,
        )

    logger.info("reply delivered", extra={**context, "outcome": str(ProcessOutcome.REPLIED)})
    return ProcessResult(success=True, detail="reply delivered", outcome=ProcessOutcome.REPLIED)


async def _deliver(deps: WorkerDeps, *, channel_id: str, text: str) -> DeliveryReceipt:
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max(deps.delivery_max_attempts, 1)),
        wait=wait_exponential(multiplier=deps.delivery_retry_wait_seconds, max=10),
        retry=retry_if_exception(_is_retryable_delivery_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    ):
        with attempt:
            return await deps.delivery.send_text(channel_id=channel_id, text=text)
    raise DomainInvariantError("delivery retry loop ended without a result")


def _is_retryable_delivery_error(exc: BaseException) -> bool:
    return isinstance(exc, DeliveryError) and exc.retryable


def _skip(context: dict[str, object], outcome: ProcessOutcome, detail: str) -> ProcessResult:
    logger.info("webhook job skipped", extra={**context, "outcome": str(outcome), "detail": detail})
    return ProcessResult(success=True, detail=detail, outcome=outcome)


def _failure(
    context: dict[str, object],
    *,
    code: ErrorCode,
    operation: str,
    exc: Exception,
) -> ProcessResult:
    error_code = resolve_queue_error(queue=str(context["queue"]), code=code)
    extra: dict[str, object] = {**context, "operation": operation, "error_code": error_code, "error": str(exc)}
    if isinstance(exc, DomainError):
        extra = {**exc.context, **extra}
    logger.error("webhook job failed", extra=extra, exc_info=exc)
    return ProcessResult(
        success=False,
        detail=f"{operation} failed: {exc}",
        outcome=ProcessOutcome.FAILED,
        error_code=error_code,
        retry_classification=classify_error(error_code),
    )
