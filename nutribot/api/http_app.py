from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
from collections.abc import Awaitable, Callable
import logging

from fastapi import Body, FastAPI, HTTPException, Query

from nutribot.api.handlers.deps import ApiDeps
from nutribot.api.handlers.jobs import get_job_handler, list_jobs_handler
from nutribot.api.handlers.users import create_user_handler
from nutribot.api.handlers.webhooks import receive_webhook_handler
from nutribot.api.schemas import (
    CreateUserRequest,
    ErrorResponse,
    HealthResponse,
    JobResponse,
    ListJobsResponse,
    ReadyResponse,
    UserResponse,
    WebhookAcceptedResponse,
    WorkerMetrics,
)
from nutribot.domain.errors import DuplicateUserError, UserDirectoryError
from nutribot.domain.models import JobStatus

from nutribot.workers.loop import WorkerLoop
from nutribot.workers.runner import (
    WorkerRuntimeSettings,
    WorkerRuntimeState,
    run_worker_pool_until_stopped,
    worker_runtime_settings_from_env,
)


def build_app(
    role: str,
    run_id: str,
    worker_loop: WorkerLoop | None = None,
    worker_runtime_settings: WorkerRuntimeSettings | None = None,
    api_deps: ApiDeps | None = None,
    mode: str = "memory",
    on_startup: Callable[[], Awaitable[None]] | None = None,
    on_shutdown: Callable[[], Awaitable[None]] | None = None,
) -> FastAPI:
    logger = logging.getLogger("runtime")
    worker_state: WorkerRuntimeState | None = None
    worker_task: asyncio.Task[None] | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal worker_task, worker_state
        del app
        stop_event: asyncio.Event | None = None

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        if on_startup is not None:
            await on_startup()

        if worker_loop is not None:
            settings = worker_runtime_settings or worker_runtime_settings_from_env()
            worker_state = WorkerRuntimeState()
            stop_event = asyncio.Event()
            worker_task = asyncio.create_task(
                run_worker_pool_until_stopped(
                    worker_loop=worker_loop,
                    role=role,
                    run_id=run_id,
                    stop_event=stop_event,
                    settings=settings,
                    logger=logger,
                    state=worker_state,
                )
            )

        yield

        if stop_event is not None and worker_task is not None:
            # In-flight jobs finish before the backend is closed.
            stop_event.set()
            await worker_task

        if on_shutdown is not None:
            await on_shutdown()

        logger.info(
            "role stopped",
            extra={"role": role, "service": role, "run_id": run_id},
        )

    app = FastAPI(title="nutribot", version="0.1.0", lifespan=lifespan)

    def _require_deps() -> ApiDeps:
        if api_deps is None:
            raise HTTPException(status_code=503, detail="api dependencies are not available")
        return api_deps

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", role=role, mode=mode)

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        worker_loop_enabled = worker_loop is not None
        worker_loop_ready = True
        metrics = WorkerMetrics(
            started=False,
            stopped=False,
            concurrency=0,
            ticks_total=0,
            claims_total=0,
            idle_ticks_total=0,
            errors_total=0,
        )
        if worker_loop_enabled:
            worker_loop_ready = (
                worker_state is not None
                and worker_state.started
                and worker_task is not None
                and not worker_task.done()
            )
            if worker_state is not None:
                metrics = WorkerMetrics(
                    started=worker_state.started,
                    stopped=worker_state.stopped,
                    concurrency=worker_state.concurrency,
                    ticks_total=worker_state.ticks_total,
                    claims_total=worker_state.claims_total,
                    idle_ticks_total=worker_state.idle_ticks_total,
                    errors_total=worker_state.errors_total,
                )

        return ReadyResponse(
            status="ready",
            role=role,
            mode=mode,
            worker_loop_enabled=worker_loop_enabled,
            worker_loop_ready=worker_loop_ready,
            worker_metrics=metrics,
        )

    @app.post(
        "/webhooks",
        response_model=WebhookAcceptedResponse,
        responses={422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
        tags=["Webhooks"],
    )
    async def receive_webhook(body: dict[str, object] = Body(...)) -> WebhookAcceptedResponse:  # noqa: B008
        deps = _require_deps()
        try:
            return await receive_webhook_handler(deps, body=body)
        except Exception as exc:
            logger.exception(
                "failed to enqueue webhook",
                extra={"role": role, "run_id": run_id, "operation": "enqueue", "error": str(exc)},
            )
            raise HTTPException(status_code=503, detail="failed to enqueue webhook") from exc

    @app.get(
        "/jobs/{job_id}",
        response_model=JobResponse,
        responses={404: {"model": ErrorResponse}},
        tags=["Jobs"],
    )
    async def get_job(job_id: str) -> JobResponse:
        job = await get_job_handler(_require_deps(), job_id=job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="job not found")
        return job

    @app.get("/jobs", response_model=ListJobsResponse, tags=["Jobs"])
    async def list_jobs(
        status: list[JobStatus] | None = Query(default=None),  # noqa: B008
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> ListJobsResponse:
        return await list_jobs_handler(_require_deps(), statuses=status, limit=limit)

    @app.post(
        "/users",
        response_model=UserResponse,
        responses={409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
        tags=["Users"],
    )
    async def create_user(request: CreateUserRequest) -> UserResponse:
        deps = _require_deps()
        try:
            return await create_user_handler(
                name=request.name,
                phone=request.phone,
                target=request.target,
                weight=request.weight,
                api_deps=deps,
            )
        except DuplicateUserError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except UserDirectoryError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    return app
