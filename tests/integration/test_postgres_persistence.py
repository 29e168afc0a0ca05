from __future__ import annotations

import asyncio

import pytest

from nutribot.domain.errors import DomainInvariantError, DuplicateUserError, UserNotFoundError
from nutribot.domain.lifecycle import RetryPolicy
from nutribot.domain.models import JobListQuery, JobStatus
from nutribot.repositories.postgres import AsyncpgPoolManager, PostgresJobQueue, PostgresUserDirectory
from tests.integration.postgres_test_utils import (
    apply_down,
    apply_up,
    expire_job_lease,
    make_job_available,
    require_postgres,
    reset_public_schema,
)


async def _fresh_manager(dsn: str) -> AsyncpgPoolManager:
    await reset_public_schema(dsn=dsn)
    await apply_up(dsn=dsn)
    manager = AsyncpgPoolManager(dsn=dsn)
    await manager.startup()
    return manager


@pytest.mark.integration
def test_migration_up_down_up_contract() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        manager = await _fresh_manager(dsn)
        try:
            repo = PostgresJobQueue(pool_manager=manager)
            assert await repo.get_job(job_id="job_missing") is None
        finally:
            await manager.shutdown()

        await apply_down(dsn=dsn)
        await apply_up(dsn=dsn)

    asyncio.run(_run())


@pytest.mark.integration
def test_concurrent_claim_exclusivity_skip_locked() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        manager = await _fresh_manager(dsn)
        repo = PostgresJobQueue(pool_manager=manager)
        try:
            created = [
                await repo.enqueue(queue="webhooks", payload={"body": {"n": idx}})
                for idx in range(3)
            ]

            claims = await asyncio.gather(
                repo.claim_next(queue="webhooks", worker_id="w-1"),
                repo.claim_next(queue="webhooks", worker_id="w-2"),
                repo.claim_next(queue="webhooks", worker_id="w-3"),
                repo.claim_next(queue="webhooks", worker_id="w-4"),
            )
            claimed_ids = [claim.job_id for claim in claims if claim is not None]
            assert sorted(claimed_ids) == sorted(job.job_id for job in created)
            assert len(set(claimed_ids)) == 3
            assert all(claim.attempt == 1 for claim in claims if claim is not None)
        finally:
            await manager.shutdown()

    asyncio.run(_run())


@pytest.mark.integration
def test_payload_round_trips_as_json_object() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        manager = await _fresh_manager(dsn)
        repo = PostgresJobQueue(pool_manager=manager)
        payload = {"body": {"event": "messages.upsert", "data": {"message": {"conversation": "Comi ovos"}}}}
        try:
            job = await repo.enqueue(queue="webhooks", payload=payload)
            claim = await repo.claim_next(queue="webhooks", worker_id="w-1")
            assert claim is not None
            assert claim.job_id == job.job_id
            assert claim.payload == payload
        finally:
            await manager.shutdown()

    asyncio.run(_run())


@pytest.mark.integration
def test_finalize_retry_dead_letter_and_terminal_paths() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        manager = await _fresh_manager(dsn)
        repo = PostgresJobQueue(pool_manager=manager, policy=RetryPolicy(max_attempts=2))
        try:
            retried = await repo.enqueue(queue="webhooks", payload={"body": {}})
            for expected_status in (JobStatus.QUEUED, JobStatus.DEAD_LETTER):
                await make_job_available(dsn=dsn, job_id=retried.job_id)
                claim = await repo.claim_next(queue="webhooks", worker_id="w-1")
                assert claim is not None
                await repo.finalize(
                    job_id=claim.job_id,
                    worker_id="w-1",
                    success=False,
                    detail="agent down",
                    error_code="agent_invocation_failed",
                )
                snapshot = await repo.get_job(job_id=retried.job_id)
                assert snapshot is not None
                assert snapshot.status == expected_status
                assert snapshot.last_error_code == "agent_invocation_failed"

            terminal = await repo.enqueue(queue="webhooks", payload={"body": "oops"})
            claim = await repo.claim_next(queue="webhooks", worker_id="w-1")
            assert claim is not None and claim.job_id == terminal.job_id
            await repo.finalize(
                job_id=claim.job_id,
                worker_id="w-1",
                success=False,
                detail="bad payload",
                error_code="event_payload_invalid",
            )
            snapshot = await repo.get_job(job_id=terminal.job_id)
            assert snapshot is not None
            assert snapshot.status == JobStatus.FAILED

            failed = await repo.list_jobs(
                query=JobListQuery(queue="webhooks", statuses=(JobStatus.FAILED, JobStatus.DEAD_LETTER))
            )
            assert {item.job_id for item in failed} == {retried.job_id, terminal.job_id}
        finally:
            await manager.shutdown()

    asyncio.run(_run())


@pytest.mark.integration
def test_stale_finalize_and_expired_lease_reclaim() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        manager = await _fresh_manager(dsn)
        repo = PostgresJobQueue(pool_manager=manager)
        try:
            job = await repo.enqueue(queue="webhooks", payload={"body": {}})
            claim = await repo.claim_next(queue="webhooks", worker_id="w-1")
            assert claim is not None

            with pytest.raises(DomainInvariantError):
                await repo.finalize(job_id=claim.job_id, worker_id="w-2", success=True, detail="ok")
            assert await repo.heartbeat_claim(job_id=claim.job_id, worker_id="w-1") is True

            await expire_job_lease(dsn=dsn, job_id=job.job_id)
            assert await repo.reclaim_expired_claims(queue="webhooks") == 1

            redelivered = await repo.claim_next(queue="webhooks", worker_id="w-2")
            assert redelivered is not None
            assert redelivered.job_id == job.job_id
            assert redelivered.attempt == 2
            await repo.finalize(job_id=job.job_id, worker_id="w-2", success=True, detail="ok")
            snapshot = await repo.get_job(job_id=job.job_id)
            assert snapshot is not None
            assert snapshot.status == JobStatus.COMPLETED
        finally:
            await manager.shutdown()

    asyncio.run(_run())


@pytest.mark.integration
def test_user_directory_lookup_and_duplicate_phone() -> None:
    dsn = require_postgres()

    async def _run() -> None:
        manager = await _fresh_manager(dsn)
        users = PostgresUserDirectory(pool_manager=manager)
        try:
            created = await users.create_user(name="Ana", phone="5511999999999", target=120.0, weight=70.0)
            resolved = await users.get_user_by_phone(phone="5511999999999")
            assert resolved == created
            assert (await users.get_user(user_id=created.user_id)).name == "Ana"

            with pytest.raises(DuplicateUserError):
                await users.create_user(name="Other", phone="5511999999999")
            with pytest.raises(UserNotFoundError):
                await users.get_user_by_phone(phone="5500000000000")
        finally:
            await manager.shutdown()

    asyncio.run(_run())
