from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field

from nutribot.domain.models import DeliveryReceipt

# Stubs double as the standalone defaults, so their call logs only keep recent entries.
STUB_HISTORY_LIMIT = 1000


@dataclass
class StubAgent:
    """Deterministic agent used when no language model is wired in."""

    calls: deque[tuple[int, str]] = field(default_factory=lambda: deque(maxlen=STUB_HISTORY_LIMIT))
    replies: dict[str, object] = field(default_factory=dict)

    async def reply(self, *, user_id: int, message: str) -> object:
        self.calls.append((user_id, message))
        canned = self.replies.get(message)
        if canned is not None:
            return canned
        return f"Recebido: {message}"


@dataclass
class StubDeliveryClient:
    sent: deque[tuple[str, str]] = field(default_factory=lambda: deque(maxlen=STUB_HISTORY_LIMIT))

    async def send_text(self, *, channel_id: str, text: str) -> DeliveryReceipt:
        self.sent.append((channel_id, text))
        return DeliveryReceipt(
            channel_id=channel_id,
            url=f"stub://message/sendText/{channel_id}",
            status_code=201,
        )
