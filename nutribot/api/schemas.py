from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from nutribot.domain.models import JobStatus


JOB_ID_PATTERN = r"^job_[0-9A-HJKMNP-TV-Z]{26}$"
PHONE_PATTERN = r"^\d+$"


class ErrorResponse(BaseModel):
    detail: str


class WorkerMetrics(BaseModel):
    started: bool
    stopped: bool
    concurrency: int
    ticks_total: int
    claims_total: int
    idle_ticks_total: int
    errors_total: int


class HealthResponse(BaseModel):
    status: str
    role: str
    mode: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    mode: str
    worker_loop_enabled: bool
    worker_loop_ready: bool
    worker_metrics: WorkerMetrics


class WebhookAcceptedResponse(BaseModel):
    message: str
    job_id: str = Field(pattern=JOB_ID_PATTERN)


class JobResponse(BaseModel):
    job_id: str = Field(pattern=JOB_ID_PATTERN)
    queue: str
    status: JobStatus
    attempts: int = Field(ge=0)
    max_attempts: int = Field(ge=1)
    claimed_by: str | None = None
    lease_expires_at: datetime | None = None
    available_at: datetime | None = None
    last_error_code: str | None = None
    last_error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    payload: dict[str, object]


class ListJobsResponse(BaseModel):
    items: list[JobResponse]


class CreateUserRequest(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    phone: str = Field(pattern=PHONE_PATTERN, max_length=32)
    target: float | None = Field(default=None, gt=0)
    weight: float | None = Field(default=None, gt=0)


class UserResponse(BaseModel):
    user_id: int
    name: str
    phone: str | None = None
    target: float | None = None
    weight: float | None = None
