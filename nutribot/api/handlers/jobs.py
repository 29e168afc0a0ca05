from __future__ import annotations

from nutribot.api.handlers.deps import ApiDeps
from nutribot.api.schemas import JobResponse, ListJobsResponse
from nutribot.domain.lifecycle import WEBHOOKS_QUEUE
from nutribot.domain.models import JobListQuery, JobSnapshot, JobStatus

COMPONENT_ID = "api.jobs"


async def get_job_handler(deps: ApiDeps, *, job_id: str) -> JobResponse | None:
    snapshot = await deps.queue.get_job(job_id=job_id)
    if snapshot is None:
        return None
    return _to_response(snapshot)


async def list_jobs_handler(
    deps: ApiDeps,
    *,
    statuses: list[JobStatus] | None,
    limit: int,
) -> ListJobsResponse:
    snapshots = await deps.queue.list_jobs(
        query=JobListQuery(
            queue=WEBHOOKS_QUEUE,
            statuses=tuple(statuses) if statuses else None,
            limit=limit,
        )
    )
    return ListJobsResponse(items=[_to_response(snapshot) for snapshot in snapshots])


def _to_response(snapshot: JobSnapshot) -> JobResponse:
    return JobResponse(
        job_id=snapshot.job_id,
        queue=snapshot.queue,
        status=JobStatus(snapshot.status),
        attempts=snapshot.attempts,
        max_attempts=snapshot.max_attempts,
        claimed_by=snapshot.claimed_by,
        lease_expires_at=snapshot.lease_expires_at,
        available_at=snapshot.available_at,
        last_error_code=snapshot.last_error_code,
        last_error_message=snapshot.last_error_message,
        created_at=snapshot.created_at,
        updated_at=snapshot.updated_at,
        payload=snapshot.payload,
    )
