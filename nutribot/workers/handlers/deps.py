from __future__ import annotations

from dataclasses import dataclass

from nutribot.domain.contracts import Agent, DeliveryClient, UserDirectory


@dataclass(frozen=True)
class WorkerDeps:
    users: UserDirectory
    agent: Agent
    delivery: DeliveryClient
    agent_timeout_seconds: float = 60.0
    delivery_max_attempts: int = 1
    delivery_retry_wait_seconds: float = 0.5
