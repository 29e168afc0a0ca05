from __future__ import annotations

from dataclasses import dataclass
import os

from nutribot.domain.lifecycle import RetryPolicy

DEFAULT_EVOLUTION_API_BASE_URL = "http://evolution-api:8080"
DEFAULT_EVOLUTION_API_INSTANCE_NAME = "protein"


@dataclass(frozen=True)
class DeliverySettings:
    base_url: str = DEFAULT_EVOLUTION_API_BASE_URL
    api_key: str | None = None
    instance_name: str = DEFAULT_EVOLUTION_API_INSTANCE_NAME
    timeout_seconds: int = 30
    max_attempts: int = 2


@dataclass(frozen=True)
class AppSettings:
    database_url: str | None = None
    agent_timeout_seconds: int = 60
    delivery: DeliverySettings = DeliverySettings()
    retry_policy: RetryPolicy = RetryPolicy()


def settings_from_env() -> AppSettings:
    return AppSettings(
        database_url=env_str("DATABASE_URL"),
        agent_timeout_seconds=env_int("AGENT_TIMEOUT_SECONDS", 60),
        delivery=delivery_settings_from_env(),
        retry_policy=retry_policy_from_env(),
    )


def delivery_settings_from_env() -> DeliverySettings:
    base_url = env_str("EVOLUTION_API_BASE_URL") or DEFAULT_EVOLUTION_API_BASE_URL
    return DeliverySettings(
        base_url=base_url.rstrip("/"),
        api_key=env_str("AUTHENTICATION_API_KEY"),
        instance_name=env_str("EVOLUTION_API_INSTANCE_NAME") or DEFAULT_EVOLUTION_API_INSTANCE_NAME,
        timeout_seconds=env_int("DELIVERY_TIMEOUT_SECONDS", 30),
        max_attempts=env_int("DELIVERY_MAX_ATTEMPTS", 2),
    )


def retry_policy_from_env() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=env_int("JOB_MAX_ATTEMPTS", 3),
        backoff_base_ms=env_int("JOB_BACKOFF_BASE_MS", 1000),
        backoff_max_ms=env_int("JOB_BACKOFF_MAX_MS", 60000),
    )


def env_str(name: str) -> str | None:
    # Empty strings count as unset.
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default
