from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import json

from nutribot.domain.errors import DomainValidationError

MESSAGES_UPSERT = "messages.upsert"
CHANNEL_QUALIFIER_SEPARATOR = "@"


class EventPayloadError(DomainValidationError):
    pass


@dataclass(frozen=True)
class InboundEvent:
    """Canonical inbound webhook envelope.

    `remote_jid` keeps the raw channel id (for example
    `5511999999999@s.whatsapp.net`); use `channel_id` for the canonical form.
    """

    kind: str | None
    remote_jid: str | None = None
    text: str | None = None
    instance: str | None = None

    @property
    def is_inbound_message(self) -> bool:
        return self.kind == MESSAGES_UPSERT

    @property
    def channel_id(self) -> str | None:
        if self.remote_jid is None:
            return None
        return normalize_channel_id(self.remote_jid)


def event_body_from_job_payload(payload: Mapping[str, object]) -> Mapping[str, object]:
    body = payload.get("body")
    if not isinstance(body, Mapping):
        raise EventPayloadError("job payload.body must be a JSON object")
    return body


def unwrap_envelope(body: Mapping[str, object]) -> Mapping[str, object]:
    """Return the relayed envelope when the body wraps it in `jobData.body`."""
    job_data = body.get("jobData")
    if isinstance(job_data, Mapping):
        nested = job_data.get("body")
        if isinstance(nested, Mapping) and nested:
            return nested
    return body


def parse_inbound_event(body: Mapping[str, object]) -> InboundEvent:
    envelope = unwrap_envelope(body)
    data = _mapping(envelope.get("data"))
    key = _mapping(data.get("key"))
    message = _mapping(data.get("message"))
    return InboundEvent(
        kind=_text(envelope.get("event")),
        remote_jid=_text(key.get("remoteJid")),
        text=_text(message.get("conversation")),
        instance=_text(envelope.get("instance")),
    )


def normalize_channel_id(remote_jid: str) -> str:
    """Strip the domain qualifier: `5511999999999@s.whatsapp.net` -> `5511999999999`."""
    if CHANNEL_QUALIFIER_SEPARATOR in remote_jid:
        return remote_jid.split(CHANNEL_QUALIFIER_SEPARATOR, maxsplit=1)[0]
    return remote_jid.strip()


def render_reply(reply: object) -> str:
    if isinstance(reply, str):
        return reply
    if reply is None:
        return ""
    return json.dumps(reply, ensure_ascii=False, default=str)


def _mapping(value: object) -> Mapping[str, object]:
    if isinstance(value, Mapping):
        return value
    return {}


def _text(value: object) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None
