from __future__ import annotations

from dataclasses import dataclass, field
import importlib
import json
import logging
from typing import Any

from nutribot.domain.errors import (
    DomainInvariantError,
    DuplicateUserError,
    UserDirectoryError,
    UserNotFoundError,
)
from nutribot.domain.error_taxonomy import classify_error, resolve_queue_error
from nutribot.domain.ids import new_job_public_id
from nutribot.domain.lifecycle import QUEUE_LIFECYCLES, QueueLifecycle, RetryPolicy
from nutribot.domain.models import JobClaim, JobListQuery, JobSnapshot, JobStatus, ResolvedUser
from nutribot.repositories.sql_loader import load_sql

try:
    asyncpg_module = importlib.import_module("asyncpg")
except ModuleNotFoundError:  # pragma: no cover
    asyncpg_module = None  # type: ignore[assignment]


SQL_ENQUEUE_JOB = load_sql("enqueue_job.sql")
SQL_CLAIM_NEXT = load_sql("claim_next.sql")
SQL_HEARTBEAT_CLAIM = load_sql("heartbeat_claim.sql")
SQL_FINALIZE_SUCCESS = load_sql("finalize_success.sql")
SQL_FINALIZE_FAILURE_RETRY = load_sql("finalize_failure_retry.sql")
SQL_FINALIZE_FAILURE_DEAD = load_sql("finalize_failure_dead_letter.sql")
SQL_FINALIZE_FAILURE_TERMINAL = load_sql("finalize_failure_terminal.sql")
SQL_RECLAIM_RETRY = load_sql("reclaim_retry.sql")
SQL_RECLAIM_DEAD = load_sql("reclaim_dead_letter.sql")
SQL_GET_JOB = load_sql("get_job.sql")
SQL_LIST_JOBS = load_sql("list_jobs.sql")
SQL_FIND_USER_BY_PHONE = load_sql("find_user_by_phone.sql")
SQL_GET_USER = load_sql("get_user.sql")
SQL_CREATE_USER = load_sql("create_user.sql")

logger = logging.getLogger(__name__)


def _is_unique_violation(exc: Exception) -> bool:
    return getattr(exc, "sqlstate", None) == "23505"


@dataclass
class AsyncpgPoolManager:
    dsn: str
    min_size: int = 1
    max_size: int = 10
    pool: Any | None = None

    async def startup(self) -> None:
        if asyncpg_module is None:  # pragma: no cover
            raise RuntimeError("asyncpg is required for postgres repository mode")

        async def _init_connection(conn: Any) -> None:
            await conn.set_type_codec(
                "json",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )
            await conn.set_type_codec(
                "jsonb",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )

        self.pool = await asyncpg_module.create_pool(
            dsn=self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            init=_init_connection,
        )

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None

    def acquire_pool(self) -> Any:
        if self.pool is None:
            raise RuntimeError("postgres pool is not initialized")
        return self.pool


@dataclass
class PostgresJobQueue:
    pool_manager: AsyncpgPoolManager
    policy: RetryPolicy = field(default_factory=RetryPolicy)

    async def enqueue(self, *, queue: str, payload: dict[str, object]) -> JobSnapshot:
        _lifecycle(queue)
        pool = self.pool_manager.acquire_pool()
        async with pool.acquire() as conn:
            for _ in range(5):
                try:
                    row = await conn.fetchrow(
                        SQL_ENQUEUE_JOB,
                        new_job_public_id(),
                        queue,
                        payload,
                        self.policy.max_attempts,
                    )
                except Exception as exc:
                    if _is_unique_violation(exc):
                        continue
                    raise
                if row is None:
                    raise DomainInvariantError("failed to enqueue job", context={"queue": queue})
                return _job_snapshot(row)
        raise DomainInvariantError("failed to allocate unique job public id", context={"queue": queue})

    async def claim_next(self, *, queue: str, worker_id: str, lease_seconds: int = 30) -> JobClaim | None:
        lifecycle = _lifecycle(queue)
        pool = self.pool_manager.acquire_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    SQL_CLAIM_NEXT,
                    queue,
                    lifecycle.source_state,
                    lifecycle.in_progress_state,
                    worker_id,
                    lease_seconds,
                )
        if row is None:
            return None
        return JobClaim(
            job_id=row["public_id"],
            queue=row["queue"],
            attempt=row["attempts"] + 1,
            payload=_json_object(row["payload"]),
            lease_expires_at=row["lease_expires_at"],
        )

    async def heartbeat_claim(self, *, job_id: str, worker_id: str, lease_seconds: int = 30) -> bool:
        pool = self.pool_manager.acquire_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                SQL_HEARTBEAT_CLAIM,
                job_id,
                JobStatus.IN_PROGRESS.value,
                worker_id,
                lease_seconds,
            )
        return row is not None

    async def reclaim_expired_claims(self, *, queue: str) -> int:
        lifecycle = _lifecycle(queue)
        pool = self.pool_manager.acquire_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                retry_rows = await conn.fetch(
                    SQL_RECLAIM_RETRY,
                    queue,
                    lifecycle.in_progress_state,
                    lifecycle.source_state,
                    "lease_expired",
                    "claim lease expired and was reclaimed",
                )
                dead_rows = await conn.fetch(
                    SQL_RECLAIM_DEAD,
                    queue,
                    lifecycle.in_progress_state,
                    lifecycle.dead_letter_state,
                    "lease_expired",
                    "claim lease expired and attempts are exhausted",
                )
        reclaimed = len(retry_rows) + len(dead_rows)
        if reclaimed:
            logger.warning(
                "expired claims reclaimed",
                extra={"queue": queue, "reclaimed": reclaimed, "dead_lettered": len(dead_rows)},
            )
        return reclaimed

    async def finalize(
        self,
        *,
        job_id: str,
        worker_id: str,
        success: bool,
        detail: str,
        error_code: str | None = None,
    ) -> None:
        pool = self.pool_manager.acquire_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                snapshot_row = await conn.fetchrow(SQL_GET_JOB, job_id)
                if snapshot_row is None:
                    raise DomainInvariantError(f"job not found: {job_id}", context={"job_id": job_id})
                queue = snapshot_row["queue"]
                lifecycle = _lifecycle(queue)
                if success:
                    row = await conn.fetchrow(
                        SQL_FINALIZE_SUCCESS,
                        job_id,
                        lifecycle.in_progress_state,
                        worker_id,
                        lifecycle.success_state,
                    )
                    if row is None:
                        raise DomainInvariantError(
                            "finalize rejected by ownership guard",
                            context={"job_id": job_id},
                        )
                    return

                resolved_error_code = resolve_queue_error(queue=queue, code=error_code or "internal_error")
                # Terminal errors go straight to failed, recoverable errors
                # follow the retry/dead-letter policy.
                if classify_error(resolved_error_code) == "terminal":
                    terminal_row = await conn.fetchrow(
                        SQL_FINALIZE_FAILURE_TERMINAL,
                        job_id,
                        lifecycle.in_progress_state,
                        worker_id,
                        lifecycle.failed_state,
                        resolved_error_code,
                        detail,
                    )
                    if terminal_row is None:
                        raise DomainInvariantError(
                            "finalize rejected by ownership guard",
                            context={"job_id": job_id},
                        )
                    return

                row = await conn.fetchrow(
                    SQL_FINALIZE_FAILURE_RETRY,
                    job_id,
                    lifecycle.in_progress_state,
                    worker_id,
                    lifecycle.source_state,
                    resolved_error_code,
                    detail,
                    float(self.policy.backoff_base_ms),
                    float(self.policy.backoff_max_ms),
                )
                if row is not None:
                    return

                dead_row = await conn.fetchrow(
                    SQL_FINALIZE_FAILURE_DEAD,
                    job_id,
                    lifecycle.in_progress_state,
                    worker_id,
                    lifecycle.dead_letter_state,
                    resolved_error_code,
                    detail,
                )
                if dead_row is None:
                    raise DomainInvariantError(
                        "finalize rejected by ownership guard",
                        context={"job_id": job_id},
                    )

    async def get_job(self, *, job_id: str) -> JobSnapshot | None:
        pool = self.pool_manager.acquire_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_JOB, job_id)
        if row is None:
            return None
        return _job_snapshot(row)

    async def list_jobs(self, *, query: JobListQuery) -> list[JobSnapshot]:
        statuses = [str(status) for status in query.statuses] if query.statuses else None
        pool = self.pool_manager.acquire_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_JOBS, query.queue, statuses, query.limit)
        return [_job_snapshot(row) for row in rows]


@dataclass
class PostgresUserDirectory:
    pool_manager: AsyncpgPoolManager

    async def get_user_by_phone(self, *, phone: str) -> ResolvedUser:
        row = await self._fetch_user(SQL_FIND_USER_BY_PHONE, phone, operation="get_user_by_phone")
        if row is None:
            raise UserNotFoundError(phone)
        return _resolved_user(row)

    async def get_user(self, *, user_id: int) -> ResolvedUser:
        row = await self._fetch_user(SQL_GET_USER, user_id, operation="get_user")
        if row is None:
            raise UserNotFoundError(user_id)
        return _resolved_user(row)

    async def create_user(
        self,
        *,
        name: str,
        phone: str,
        target: float | None = None,
        weight: float | None = None,
    ) -> ResolvedUser:
        pool = self.pool_manager.acquire_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(SQL_CREATE_USER, name, phone, target, weight)
        except Exception as exc:
            if _is_unique_violation(exc):
                raise DuplicateUserError(
                    f"user with phone {phone} already exists",
                    context={"phone": phone},
                ) from exc
            raise UserDirectoryError(
                f"failed to create user with phone {phone}",
                context={"phone": phone, "operation": "create_user"},
            ) from exc
        if row is None:
            raise DomainInvariantError("failed to create user", context={"phone": phone})
        return _resolved_user(row)

    async def _fetch_user(self, query: str, identifier: object, *, operation: str) -> Any:
        try:
            pool = self.pool_manager.acquire_pool()
            async with pool.acquire() as conn:
                return await conn.fetchrow(query, identifier)
        except Exception as exc:
            logger.error(
                "user directory query failed",
                extra={"operation": operation, "error": str(exc)},
            )
            raise UserDirectoryError(
                f"user lookup failed for {identifier}",
                context={"identifier": identifier, "operation": operation},
            ) from exc


def _lifecycle(queue: str) -> QueueLifecycle:
    lifecycle = QUEUE_LIFECYCLES.get(queue)
    if lifecycle is None:
        raise DomainInvariantError(f"unknown queue: {queue}")
    return lifecycle


def _job_snapshot(row: Any) -> JobSnapshot:
    return JobSnapshot(
        job_id=row["public_id"],
        queue=row["queue"],
        status=row["status"],
        payload=_json_object(row["payload"]),
        attempts=row["attempts"],
        max_attempts=row["max_attempts"],
        claimed_by=row["claimed_by"],
        lease_expires_at=row["lease_expires_at"],
        available_at=row["available_at"],
        last_error_code=row["last_error_code"],
        last_error_message=row["last_error_message"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _resolved_user(row: Any) -> ResolvedUser:
    return ResolvedUser(
        user_id=row["id"],
        name=row["name"],
        phone=row["phone"],
        target=row["target"],
        weight=row["weight"],
    )


def _json_object(value: object) -> dict[str, object]:
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        parsed = json.loads(value)
        if isinstance(parsed, dict):
            return parsed
    return {}
