from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from nutribot.domain.errors import DomainInvariantError, DuplicateUserError, UserNotFoundError
from nutribot.domain.error_taxonomy import classify_error, resolve_queue_error
from nutribot.domain.ids import new_job_public_id
from nutribot.domain.lifecycle import ALLOWED_TRANSITIONS, QUEUE_LIFECYCLES, QueueLifecycle, RetryPolicy
from nutribot.domain.models import JobClaim, JobListQuery, JobSnapshot, ResolvedUser

# Bookkeeping kept for inspection; bounded because standalone runs use this queue.
QUEUE_HISTORY_LIMIT = 1000


@dataclass
class _JobRow:
    id: int
    job_id: str
    queue: str
    payload: dict[str, object]
    status: str = "queued"
    attempts: int = 0
    max_attempts: int = 3
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    lease_expires_at: datetime | None = None
    available_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    last_error_code: str | None = None
    last_error_message: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


@dataclass
class InMemoryJobQueue:
    """Non-network job queue with the same claim/finalize semantics as Postgres.

    Methods never await internally, so concurrent worker slots on one event
    loop cannot interleave inside a claim or finalize.
    """

    policy: RetryPolicy = field(default_factory=RetryPolicy)
    jobs: dict[str, _JobRow] = field(default_factory=dict)
    transitions: deque[tuple[str, str, str]] = field(default_factory=lambda: deque(maxlen=QUEUE_HISTORY_LIMIT))
    finalizations: deque[tuple[str, bool, str]] = field(default_factory=lambda: deque(maxlen=QUEUE_HISTORY_LIMIT))
    next_job_id: int = 1

    async def enqueue(self, *, queue: str, payload: dict[str, object]) -> JobSnapshot:
        _lifecycle(queue)
        row = _JobRow(
            id=self.next_job_id,
            job_id=new_job_public_id(),
            queue=queue,
            payload=dict(payload),
            max_attempts=self.policy.max_attempts,
        )
        self.next_job_id += 1
        self.jobs[row.job_id] = row
        return _snapshot(row)

    async def claim_next(self, *, queue: str, worker_id: str, lease_seconds: int = 30) -> JobClaim | None:
        lifecycle = _lifecycle(queue)
        now = datetime.now(tz=UTC)
        candidates = [
            row
            for row in self.jobs.values()
            if row.queue == queue and row.status == lifecycle.source_state and row.available_at <= now
        ]
        if not candidates:
            return None
        row = min(candidates, key=lambda item: item.id)
        self._transition(row, lifecycle.in_progress_state)
        row.claimed_by = worker_id
        row.claimed_at = now
        row.lease_expires_at = now + timedelta(seconds=lease_seconds)
        row.updated_at = now
        return JobClaim(
            job_id=row.job_id,
            queue=row.queue,
            attempt=row.attempts + 1,
            payload=dict(row.payload),
            lease_expires_at=row.lease_expires_at,
        )

    async def heartbeat_claim(self, *, job_id: str, worker_id: str, lease_seconds: int = 30) -> bool:
        row = self.jobs.get(job_id)
        if row is None:
            return False
        lifecycle = _lifecycle(row.queue)
        now = datetime.now(tz=UTC)
        if not _owns_claim(row, lifecycle=lifecycle, worker_id=worker_id, now=now):
            return False
        row.lease_expires_at = now + timedelta(seconds=lease_seconds)
        return True

    async def reclaim_expired_claims(self, *, queue: str) -> int:
        lifecycle = _lifecycle(queue)
        reclaimed = 0
        now = datetime.now(tz=UTC)
        for row in self.jobs.values():
            if (
                row.queue == queue
                and row.status == lifecycle.in_progress_state
                and row.lease_expires_at is not None
                and row.lease_expires_at <= now
            ):
                row.attempts += 1
                row.last_error_code = "lease_expired"
                row.last_error_message = "claim lease expired and was reclaimed"
                _release(row)
                if row.attempts < row.max_attempts:
                    self._transition(row, lifecycle.source_state)
                    row.available_at = now
                else:
                    self._transition(row, lifecycle.dead_letter_state)
                row.updated_at = now
                reclaimed += 1
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
        row = self.jobs.get(job_id)
        if row is None:
            raise DomainInvariantError(f"job not found: {job_id}", context={"job_id": job_id})
        lifecycle = _lifecycle(row.queue)
        now = datetime.now(tz=UTC)
        if not _owns_claim(row, lifecycle=lifecycle, worker_id=worker_id, now=now):
            raise DomainInvariantError("claim ownership is stale", context={"job_id": job_id})

        if success:
            self._transition(row, lifecycle.success_state)
            row.last_error_code = None
            row.last_error_message = None
        else:
            row.attempts += 1
            resolved_error_code = resolve_queue_error(queue=row.queue, code=error_code or "internal_error")
            row.last_error_code = resolved_error_code
            row.last_error_message = detail
            # Mirror Postgres behavior: terminal -> failed, recoverable -> retry/dead_letter.
            if classify_error(resolved_error_code) == "terminal":
                self._transition(row, lifecycle.failed_state)
            elif row.attempts >= row.max_attempts:
                self._transition(row, lifecycle.dead_letter_state)
            else:
                self._transition(row, lifecycle.source_state)
                row.available_at = now + self.policy.backoff_delay(row.attempts)

        row.updated_at = now
        _release(row)
        self.finalizations.append((job_id, success, detail))

    async def get_job(self, *, job_id: str) -> JobSnapshot | None:
        row = self.jobs.get(job_id)
        if row is None:
            return None
        return _snapshot(row)

    async def list_jobs(self, *, query: JobListQuery) -> list[JobSnapshot]:
        statuses = {str(status) for status in query.statuses} if query.statuses else None
        rows = [
            row
            for row in self.jobs.values()
            if row.queue == query.queue and (statuses is None or row.status in statuses)
        ]
        rows.sort(key=lambda item: item.id)
        return [_snapshot(row) for row in rows[: query.limit]]

    def _transition(self, row: _JobRow, to_state: str) -> None:
        if to_state not in ALLOWED_TRANSITIONS.get(row.status, set()):
            raise DomainInvariantError(
                f"invalid transition: {row.status} -> {to_state}",
                context={"job_id": row.job_id},
            )
        self.transitions.append((row.job_id, row.status, to_state))
        row.status = to_state


@dataclass
class InMemoryUserDirectory:
    users: dict[int, ResolvedUser] = field(default_factory=dict)
    next_user_id: int = 1

    async def get_user_by_phone(self, *, phone: str) -> ResolvedUser:
        for user in self.users.values():
            if user.phone == phone:
                return user
        raise UserNotFoundError(phone)

    async def get_user(self, *, user_id: int) -> ResolvedUser:
        user = self.users.get(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def create_user(
        self,
        *,
        name: str,
        phone: str,
        target: float | None = None,
        weight: float | None = None,
    ) -> ResolvedUser:
        if any(user.phone == phone for user in self.users.values()):
            raise DuplicateUserError(f"user with phone {phone} already exists", context={"phone": phone})
        user = ResolvedUser(user_id=self.next_user_id, name=name, phone=phone, target=target, weight=weight)
        self.users[user.user_id] = user
        self.next_user_id += 1
        return user


def _lifecycle(queue: str) -> QueueLifecycle:
    lifecycle = QUEUE_LIFECYCLES.get(queue)
    if lifecycle is None:
        raise DomainInvariantError(f"unknown queue: {queue}")
    return lifecycle


def _owns_claim(row: _JobRow, *, lifecycle: QueueLifecycle, worker_id: str, now: datetime) -> bool:
    return (
        row.status == lifecycle.in_progress_state
        and row.claimed_by == worker_id
        and row.lease_expires_at is not None
        and row.lease_expires_at > now
    )


def _release(row: _JobRow) -> None:
    row.claimed_by = None
    row.claimed_at = None
    row.lease_expires_at = None


def _snapshot(row: _JobRow) -> JobSnapshot:
    return JobSnapshot(
        job_id=row.job_id,
        queue=row.queue,
        status=row.status,
        payload=dict(row.payload),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        claimed_by=row.claimed_by,
        lease_expires_at=row.lease_expires_at,
        available_at=row.available_at,
        last_error_code=row.last_error_code,
        last_error_message=row.last_error_message,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
