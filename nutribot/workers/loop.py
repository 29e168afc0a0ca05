from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
import logging
import uuid

from nutribot.domain.contracts import JobQueue
from nutribot.domain.error_taxonomy import classify_error, resolve_queue_error
from nutribot.domain.errors import DomainInvariantError
from nutribot.domain.lifecycle import QUEUE_LIFECYCLES
from nutribot.domain.models import JobClaim, ProcessOutcome, ProcessResult

ProcessHandler = Callable[[JobClaim], Awaitable[ProcessResult]]
logger = logging.getLogger("runtime")


@dataclass
class WorkerLoop:
    role: str
    queue: str
    repository: JobQueue
    process: ProcessHandler
    claim_lease_seconds: int = 30
    heartbeat_interval_ms: int = 10000
    # Unique per process so replicas of one role never share a worker id.
    instance_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def worker_id(self, slot: int = 0) -> str:
        return f"{self.role}:{self.instance_id}:{slot}"

    async def run_once(self, *, slot: int = 0) -> bool:
        if self.queue not in QUEUE_LIFECYCLES:
            raise DomainInvariantError(f"unknown queue: {self.queue}")
        worker_id = self.worker_id(slot)
        claim = await self.repository.claim_next(
            queue=self.queue,
            worker_id=worker_id,
            lease_seconds=self.claim_lease_seconds,
        )
        if claim is None:
            return False

        lease_lost = False
        stop_heartbeat = asyncio.Event()

        async def _heartbeat_loop() -> None:
            nonlocal lease_lost
            interval_seconds = max(self.heartbeat_interval_ms, 1) / 1000
            while not stop_heartbeat.is_set():
                try:
                    await asyncio.wait_for(stop_heartbeat.wait(), timeout=interval_seconds)
                    break
                except TimeoutError:
                    pass

                try:
                    heartbeat_ok = await self.repository.heartbeat_claim(
                        job_id=claim.job_id,
                        worker_id=worker_id,
                        lease_seconds=self.claim_lease_seconds,
                    )
                except Exception:
                    # Retried on the next interval; finalize still checks ownership.
                    logger.warning(
                        "worker heartbeat failed",
                        extra={"job_id": claim.job_id, "queue": self.queue, "worker_id": worker_id},
                        exc_info=True,
                    )
                    continue
                if not heartbeat_ok:
                    lease_lost = True
                    stop_heartbeat.set()
                    break

        heartbeat_task = asyncio.create_task(_heartbeat_loop())
        try:
            result = await self.process(claim)
        except Exception as exc:
            # The handler maps expected failures itself; anything escaping is retried.
            logger.exception(
                "worker handler raised",
                extra={"job_id": claim.job_id, "queue": self.queue, "worker_id": worker_id},
            )
            result = ProcessResult(
                success=False,
                detail=f"unhandled error: {exc}",
                outcome=ProcessOutcome.FAILED,
                error_code="internal_error",
            )
        finally:
            stop_heartbeat.set()
            await heartbeat_task

        if lease_lost:
            raise DomainInvariantError("claim ownership is stale", context={"job_id": claim.job_id})

        error_code = None
        retry_classification = None
        if not result.success:
            error_code = resolve_queue_error(
                queue=self.queue,
                code=result.error_code or "internal_error",
            )
            retry_classification = result.retry_classification or classify_error(error_code)
            logger.warning(
                "worker job failed",
                extra={
                    "job_id": claim.job_id,
                    "queue": self.queue,
                    "worker_id": worker_id,
                    "attempt": claim.attempt,
                    "error_code": error_code,
                    "retry_classification": retry_classification,
                },
            )
        else:
            logger.info(
                "worker job completed",
                extra={
                    "job_id": claim.job_id,
                    "queue": self.queue,
                    "worker_id": worker_id,
                    "attempt": claim.attempt,
                    "outcome": str(result.outcome) if result.outcome else None,
                },
            )

        await self.repository.finalize(
            job_id=claim.job_id,
            worker_id=worker_id,
            success=result.success,
            detail=result.detail,
            error_code=error_code,
        )
        return True
