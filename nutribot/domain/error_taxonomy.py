from __future__ import annotations

from collections.abc import Mapping
from typing import Literal

# Canonical error vocabulary for all queues.
ErrorCode = Literal[
    "event_payload_invalid",
    "user_resolution_failed",
    "agent_invocation_failed",
    "lease_expired",
    "internal_error",
]

RetryClassification = Literal["recoverable", "terminal"]

# Allowed persisted values for last_error_code. Delivery failures are absent:
# they are logged and never fail a job.
CANONICAL_ERROR_CODES: tuple[ErrorCode, ...] = (
    "event_payload_invalid",
    "user_resolution_failed",
    "agent_invocation_failed",
    "lease_expired",
    "internal_error",
)

# Errors that can be retried within the queue attempt policy.
RECOVERABLE_ERROR_CODES: frozenset[ErrorCode] = frozenset(
    {
        "user_resolution_failed",
        "agent_invocation_failed",
        "lease_expired",
        "internal_error",
    }
)

# Queue-specific allowlist of handler-emitted codes. If a handler emits a code
# outside this map, it is normalized to internal_error by resolve_queue_error().
# lease_expired is written by reclaim only.
QUEUE_ERROR_MAP: Mapping[str, frozenset[ErrorCode]] = {
    "webhooks": frozenset(
        {
            "event_payload_invalid",
            "user_resolution_failed",
            "agent_invocation_failed",
            "internal_error",
        }
    ),
}


def is_canonical_error_code(code: str) -> bool:
    return code in CANONICAL_ERROR_CODES


def classify_error(code: ErrorCode) -> RetryClassification:
    if code in RECOVERABLE_ERROR_CODES:
        return "recoverable"
    return "terminal"


def resolve_queue_error(*, queue: str, code: str) -> ErrorCode:
    allowed = QUEUE_ERROR_MAP.get(queue, frozenset({"internal_error"}))
    if code in allowed and is_canonical_error_code(code):
        return code
    # Keep persistence stable even if upstream emitted unsupported code.
    return "internal_error"
