import pytest

from nutribot.domain.events import (
    EventPayloadError,
    event_body_from_job_payload,
    normalize_channel_id,
    parse_inbound_event,
    render_reply,
    unwrap_envelope,
)


@pytest.mark.unit
def test_parse_reads_top_level_envelope() -> None:
    event = parse_inbound_event(
        {
            "event": "messages.upsert",
            "instance": "protein",
            "data": {
                "key": {"remoteJid": "5511999999999@s.whatsapp.net"},
                "message": {"conversation": "Comi 30g de proteína"},
            },
        }
    )

    assert event.is_inbound_message is True
    assert event.remote_jid == "5511999999999@s.whatsapp.net"
    assert event.channel_id == "5511999999999"
    assert event.text == "Comi 30g de proteína"
    assert event.instance == "protein"


@pytest.mark.unit
def test_parse_prefers_relayed_job_data_body() -> None:
    body = {
        "event": "relay",
        "jobData": {
            "body": {
                "event": "messages.upsert",
                "data": {"key": {"remoteJid": "5511888888888"}, "message": {"conversation": "oi"}},
            }
        },
    }

    event = parse_inbound_event(body)

    assert event.is_inbound_message is True
    assert event.channel_id == "5511888888888"
    assert event.text == "oi"


@pytest.mark.unit
@pytest.mark.parametrize("job_data", [None, "text", {}, {"body": {}}, {"body": "text"}])
def test_unwrap_falls_back_to_top_level_body(job_data: object) -> None:
    body = {"event": "status.update", "jobData": job_data}
    assert unwrap_envelope(body) is body


@pytest.mark.unit
def test_parse_tolerates_missing_and_malformed_sections() -> None:
    event = parse_inbound_event({"event": "messages.upsert", "data": {"key": "oops", "message": None}})

    assert event.is_inbound_message is True
    assert event.remote_jid is None
    assert event.channel_id is None
    assert event.text is None


@pytest.mark.unit
def test_non_message_kinds_are_not_inbound_messages() -> None:
    assert parse_inbound_event({"event": "status.update"}).is_inbound_message is False
    assert parse_inbound_event({}).is_inbound_message is False


@pytest.mark.unit
@pytest.mark.parametrize(
    ("remote_jid", "expected"),
    [
        ("5511999999999@s.whatsapp.net", "5511999999999"),
        ("5511999999999@g.us@extra", "5511999999999"),
        ("5511999999999", "5511999999999"),
        ("@s.whatsapp.net", ""),
    ],
)
def test_normalize_channel_id_keeps_text_before_first_qualifier(remote_jid: str, expected: str) -> None:
    assert normalize_channel_id(remote_jid) == expected


@pytest.mark.unit
def test_job_payload_body_must_be_an_object() -> None:
    assert event_body_from_job_payload({"body": {"event": "x"}}) == {"event": "x"}
    with pytest.raises(EventPayloadError):
        event_body_from_job_payload({"body": "x"})
    with pytest.raises(EventPayloadError):
        event_body_from_job_payload({})


@pytest.mark.unit
def test_render_reply_handles_text_and_structured_values() -> None:
    assert render_reply("Anotado!") == "Anotado!"
    assert render_reply(None) == ""
    assert render_reply([{"type": "text", "text": "ok"}]) == '[{"type": "text", "text": "ok"}]'
    assert render_reply({"proteína": 30}) == '{"proteína": 30}'
