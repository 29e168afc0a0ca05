from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from nutribot.api.handlers.deps import ApiDeps
from nutribot.clients.evolution import EvolutionApiClient
from nutribot.clients.stub import StubAgent
from nutribot.domain.contracts import Agent, DeliveryClient, JobQueue, UserDirectory
from nutribot.domain.errors import DomainConfigurationError
from nutribot.repositories.postgres import AsyncpgPoolManager, PostgresJobQueue, PostgresUserDirectory
from nutribot.repositories.stub import InMemoryJobQueue, InMemoryUserDirectory
from nutribot.roles import RuntimeRole
from nutribot.settings import AppSettings, settings_from_env
from nutribot.workers.handlers.deps import WorkerDeps
from nutribot.workers.handlers.factory import build_process_handler
from nutribot.workers.loop import WorkerLoop
from nutribot.workers.roles import ROLE_TO_QUEUE


@dataclass
class RuntimeContainer:
    queue: JobQueue
    users: UserDirectory
    agent: Agent
    delivery: DeliveryClient
    api_deps: ApiDeps
    worker_loop: WorkerLoop | None
    mode: str
    on_startup: Callable[[], Awaitable[None]] | None
    on_shutdown: Callable[[], Awaitable[None]] | None


def build_runtime_container(
    role: RuntimeRole,
    *,
    settings: AppSettings | None = None,
    agent: Agent | None = None,
    delivery: DeliveryClient | None = None,
) -> RuntimeContainer:
    settings = settings or settings_from_env()
    on_startup: Callable[[], Awaitable[None]] | None = None
    on_shutdown: Callable[[], Awaitable[None]] | None = None
    queue: JobQueue
    users: UserDirectory
    if settings.database_url:
        pool_manager = AsyncpgPoolManager(dsn=settings.database_url)
        queue = PostgresJobQueue(pool_manager=pool_manager, policy=settings.retry_policy)
        users = PostgresUserDirectory(pool_manager=pool_manager)
        on_startup = pool_manager.startup
        on_shutdown = pool_manager.shutdown
        mode = "postgres"
    elif role.name not in ROLE_TO_QUEUE:
        # Nothing in this process would ever consume what the ingress enqueues.
        raise DomainConfigurationError(
            f"role '{role.name}' requires DATABASE_URL so workers in other processes can consume its queue; "
            "set DATABASE_URL or run the standalone role for a single in-memory process",
            context={"role": role.name, "config_key": "DATABASE_URL"},
        )
    else:
        queue = InMemoryJobQueue(policy=settings.retry_policy)
        users = InMemoryUserDirectory()
        mode = "memory"
    agent = agent or StubAgent()
    delivery = delivery or EvolutionApiClient(settings=settings.delivery)
    api_deps = ApiDeps(queue=queue, users=users)

    worker_loop: WorkerLoop | None = None
    if role.name in ROLE_TO_QUEUE:
        worker_deps = WorkerDeps(
            users=users,
            agent=agent,
            delivery=delivery,
            agent_timeout_seconds=settings.agent_timeout_seconds,
            delivery_max_attempts=settings.delivery.max_attempts,
        )
        worker_loop = WorkerLoop(
            role=role.name,
            queue=ROLE_TO_QUEUE[role.name],
            repository=queue,
            process=build_process_handler(role.name, worker_deps),
        )

    return RuntimeContainer(
        queue=queue,
        users=users,
        agent=agent,
        delivery=delivery,
        api_deps=api_deps,
        worker_loop=worker_loop,
        mode=mode,
        on_startup=on_startup,
        on_shutdown=on_shutdown,
    )
