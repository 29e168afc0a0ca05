from __future__ import annotations

from nutribot.api.handlers.deps import ApiDeps
from nutribot.api.schemas import UserResponse

COMPONENT_ID = "api.create_user"


async def create_user_handler(
    *,
    name: str,
    phone: str,
    target: float | None,
    weight: float | None,
    api_deps: ApiDeps,
) -> UserResponse:
    user = await api_deps.users.create_user(name=name, phone=phone, target=target, weight=weight)
    return UserResponse(
        user_id=user.user_id,
        name=user.name,
        phone=user.phone,
        target=user.target,
        weight=user.weight,
    )
