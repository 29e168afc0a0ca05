from __future__ import annotations

from typing import Protocol, runtime_checkable

from nutribot.domain.models import DeliveryReceipt, JobClaim, JobListQuery, JobSnapshot, ResolvedUser

CLAIM_SQL_CONTRACT = "SELECT ... FOR UPDATE SKIP LOCKED"


@runtime_checkable
class JobQueue(Protocol):
    """Durable at-least-once job store for the claim/process/finalize flow.

    Claim semantics must remain compatible with Postgres row claims using
    SELECT ... FOR UPDATE SKIP LOCKED: a job is handed to one claimant at a
    time and comes back only after a failed finalize or an expired lease.
    """

    async def enqueue(self, *, queue: str, payload: dict[str, object]) -> JobSnapshot: ...

    async def claim_next(self, *, queue: str, worker_id: str, lease_seconds: int = 30) -> JobClaim | None: ...

    async def heartbeat_claim(self, *, job_id: str, worker_id: str, lease_seconds: int = 30) -> bool: ...

    async def reclaim_expired_claims(self, *, queue: str) -> int: ...

    async def finalize(
        self,
        *,
        job_id: str,
        worker_id: str,
        success: bool,
        detail: str,
        error_code: str | None = None,
    ) -> None: ...

    async def get_job(self, *, job_id: str) -> JobSnapshot | None: ...

    async def list_jobs(self, *, query: JobListQuery) -> list[JobSnapshot]: ...


@runtime_checkable
class UserDirectory(Protocol):
    """Maps external identifiers to internal users.

    Lookups raise UserNotFoundError for unknown users and UserDirectoryError
    when the backing store fails.
    """

    async def get_user_by_phone(self, *, phone: str) -> ResolvedUser: ...

    async def get_user(self, *, user_id: int) -> ResolvedUser: ...

    async def create_user(
        self,
        *,
        name: str,
        phone: str,
        target: float | None = None,
        weight: float | None = None,
    ) -> ResolvedUser: ...


@runtime_checkable
class Agent(Protocol):
    # Reply may be plain text or a structured value (content blocks).
    async def reply(self, *, user_id: int, message: str) -> object: ...


@runtime_checkable
class DeliveryClient(Protocol):
    async def send_text(self, *, channel_id: str, text: str) -> DeliveryReceipt: ...
