from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from nutribot.settings import env_int
from nutribot.workers.loop import WorkerLoop


@dataclass(frozen=True)
class WorkerRuntimeSettings:
    poll_interval_ms: int = 200
    idle_backoff_ms: int = 1000
    error_backoff_ms: int = 2000
    claim_lease_seconds: int = 30
    heartbeat_interval_ms: int = 10000
    concurrency: int = 4


@dataclass
class WorkerRuntimeState:
    started: bool = False
    stopped: bool = False
    concurrency: int = 0
    ticks_total: int = 0
    claims_total: int = 0
    idle_ticks_total: int = 0
    errors_total: int = 0


def worker_runtime_settings_from_env() -> WorkerRuntimeSettings:
    return WorkerRuntimeSettings(
        poll_interval_ms=env_int("WORKER_POLL_INTERVAL_MS", 200),
        idle_backoff_ms=env_int("WORKER_IDLE_BACKOFF_MS", 1000),
        error_backoff_ms=env_int("WORKER_ERROR_BACKOFF_MS", 2000),
        claim_lease_seconds=env_int("WORKER_CLAIM_LEASE_SECONDS", 30),
        heartbeat_interval_ms=env_int("WORKER_HEARTBEAT_INTERVAL_MS", 10000),
        concurrency=env_int("WORKER_CONCURRENCY", 4),
    )


async def run_worker_until_stopped(
    *,
    worker_loop: WorkerLoop,
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: WorkerRuntimeSettings,
    logger: logging.Logger,
    state: WorkerRuntimeState | None = None,
    slot: int = 0,
) -> None:
    """Poll the queue from one slot until `stop_event` is set.

    A job in flight when the event fires runs to completion; the slot only
    checks the event between ticks.
    """
    worker_loop.claim_lease_seconds = settings.claim_lease_seconds
    worker_loop.heartbeat_interval_ms = settings.heartbeat_interval_ms
    log_context = {
        "role": role,
        "service": role,
        "run_id": run_id,
        "queue": worker_loop.queue,
        "slot": slot,
        "worker_id": worker_loop.worker_id(slot),
    }

    if state is not None:
        state.started = True

    logger.info("worker loop started", extra=log_context)

    while not stop_event.is_set():
        delay_ms = settings.idle_backoff_ms
        try:
            await worker_loop.repository.reclaim_expired_claims(queue=worker_loop.queue)
            did_work = await worker_loop.run_once(slot=slot)
            if state is not None:
                state.ticks_total += 1
                if did_work:
                    state.claims_total += 1
                else:
                    state.idle_ticks_total += 1
            delay_ms = settings.poll_interval_ms if did_work else settings.idle_backoff_ms
            logger.debug(
                "worker tick",
                extra={**log_context, "did_work": str(did_work).lower()},
            )
        except Exception:
            if state is not None:
                state.ticks_total += 1
                state.errors_total += 1
            delay_ms = settings.error_backoff_ms
            logger.exception("worker tick error", extra=log_context)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay_ms / 1000)
        except TimeoutError:
            continue

    logger.info("worker loop stopped", extra=log_context)


async def run_worker_pool_until_stopped(
    *,
    worker_loop: WorkerLoop,
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: WorkerRuntimeSettings,
    logger: logging.Logger,
    state: WorkerRuntimeState | None = None,
) -> None:
    """Run `settings.concurrency` slots against one queue and drain them on stop."""
    concurrency = max(settings.concurrency, 1)
    if state is not None:
        state.concurrency = concurrency

    logger.info(
        "worker pool started",
        extra={"role": role, "service": role, "run_id": run_id, "queue": worker_loop.queue, "concurrency": concurrency},
    )
    await asyncio.gather(
        *(
            run_worker_until_stopped(
                worker_loop=worker_loop,
                role=role,
                run_id=run_id,
                stop_event=stop_event,
                settings=settings,
                logger=logger,
                state=state,
                slot=slot,
            )
            for slot in range(concurrency)
        )
    )
    if state is not None:
        state.stopped = True
    logger.info(
        "worker pool drained",
        extra={"role": role, "service": role, "run_id": run_id, "queue": worker_loop.queue},
    )
