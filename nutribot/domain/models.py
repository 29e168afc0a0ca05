from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from nutribot.domain.error_taxonomy import ErrorCode, RetryClassification


# Canonical job lifecycle states.
#
# IMPORTANT:
# - Keep this enum synchronized with nutribot/domain/lifecycle.py
#   (QUEUE_LIFECYCLES and ALLOWED_TRANSITIONS).
# - Keep this enum synchronized with the DB status CHECK constraint in
#   db/migrations/000001_bootstrap.up.sql.
class JobStatus(StrEnum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class ProcessOutcome(StrEnum):
    IGNORED_EVENT = "ignored_event"
    MISSING_CHANNEL = "missing_channel"
    UNKNOWN_USER = "unknown_user"
    MISSING_TEXT = "missing_text"
    REPLIED = "replied"
    REPLY_UNDELIVERED = "reply_undelivered"
    FAILED = "failed"


@dataclass(frozen=True)
class JobClaim:
    job_id: str
    queue: str
    attempt: int
    payload: dict[str, object]
    lease_expires_at: datetime | None = None


@dataclass(frozen=True)
class ProcessResult:
    success: bool
    detail: str = ""
    outcome: ProcessOutcome | None = None
    error_code: ErrorCode | None = None
    retry_classification: RetryClassification | None = None


@dataclass(frozen=True)
class JobSnapshot:
    job_id: str
    queue: str
    status: str
    payload: dict[str, object]
    attempts: int
    max_attempts: int
    claimed_by: str | None
    lease_expires_at: datetime | None
    available_at: datetime | None
    last_error_code: str | None
    last_error_message: str | None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class JobListQuery:
    queue: str
    statuses: tuple[JobStatus, ...] | None = None
    limit: int = 100


@dataclass(frozen=True)
class ResolvedUser:
    user_id: int
    name: str
    phone: str | None = None
    target: float | None = None
    weight: float | None = None


@dataclass(frozen=True)
class DeliveryReceipt:
    channel_id: str
    url: str
    status_code: int
    response_json: object | None = None
