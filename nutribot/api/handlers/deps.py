from __future__ import annotations

from dataclasses import dataclass

from nutribot.domain.contracts import JobQueue, UserDirectory


@dataclass(frozen=True)
class ApiDeps:
    queue: JobQueue
    users: UserDirectory
