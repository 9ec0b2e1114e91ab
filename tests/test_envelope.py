from __future__ import annotations

import pytest

from slack_signal.clients.slack.envelope import (
    envelope_id_of,
    format_event_box,
    parse_envelope,
    unwrap_event,
)
from slack_signal.events.models import EventKind, MessageReceived, ReadMarked

MESSAGE = {"type": "message", "user": "U123", "text": "hello", "channel": "C456", "ts": "1234.5678"}


def test_message_fields_are_copied_verbatim() -> None:
    event = parse_envelope({"event": dict(MESSAGE)})
    assert event == MessageReceived(
        sender_id="U123", text="hello", conversation_id="C456", timestamp="1234.5678"
    )
    assert event.kind is EventKind.DM_RECEIVED
    assert event.sender_display_name is None


@pytest.mark.parametrize(
    "envelope",
    [
        {"envelope_id": "E1", "payload": {"event": dict(MESSAGE)}},
        {"envelope_id": "E1", "event": dict(MESSAGE)},
        {"envelope_id": "E1", **MESSAGE},
    ],
)
def test_wrapping_layers_do_not_change_result(envelope: dict) -> None:
    event = parse_envelope(envelope)
    assert isinstance(event, MessageReceived)
    assert event.text == "hello"
    assert event.envelope_id == "E1"


def test_subtyped_message_is_not_actionable() -> None:
    assert parse_envelope({"event": {"type": "message", "subtype": "channel_join", "user": "U123"}}) is None
    assert parse_envelope({"event": {**MESSAGE, "subtype": "message_changed"}}) is None


def test_unknown_event_type_is_not_actionable() -> None:
    assert parse_envelope({"event": {"type": "reaction_added", "user": "U123"}}) is None
    assert parse_envelope({"event": {"user": "U123"}}) is None
    assert parse_envelope({"event": {"type": 7}}) is None


@pytest.mark.parametrize("raw", [None, "message", 42, ["event"], {}])
def test_non_object_input_is_not_actionable(raw) -> None:
    assert parse_envelope(raw) is None


@pytest.mark.parametrize("read_type", ["im_marked", "channel_marked", "group_marked", "mpim_marked"])
def test_read_cursor_events(read_type: str) -> None:
    event = parse_envelope(
        {"payload": {"event_id": "Ev9", "event": {"type": read_type, "channel": "D1", "ts": "99.1"}}}
    )
    assert event == ReadMarked(conversation_id="D1", timestamp="99.1", envelope_id="Ev9")
    assert event.to_payload() == {"type": "dm_read", "messageId": "99.1", "channel": "D1", "ts": "99.1"}


def test_missing_fields_become_absent_values() -> None:
    event = parse_envelope({"event": {"type": "message"}})
    assert event == MessageReceived(sender_id=None)
    assert event.to_payload() == {"type": "dm_received"}


def test_envelope_id_lookup_order() -> None:
    assert envelope_id_of({"envelope_id": "A", "event_id": "B"}) == "A"
    assert envelope_id_of({"event_id": "B", "payload": {"envelope_id": "C"}}) == "B"
    assert envelope_id_of({"payload": {"event_id": "C"}}) == "C"
    assert envelope_id_of({"envelope_id": ""}) is None
    assert envelope_id_of("nope") is None


def test_unwrap_event_prefers_innermost_layer() -> None:
    assert unwrap_event({"payload": {"event": {"type": "x"}}}) == {"type": "x"}
    assert unwrap_event({"payload": "junk", "type": "y"}) == {"payload": "junk", "type": "y"}


def test_format_event_box() -> None:
    box = format_event_box(
        {"envelope_id": "E1", "payload": {"event": {"type": "message", "user": "U1", "text": "hi\nthere"}}}
    )
    lines = box.strip().splitlines()
    assert lines[0].startswith("┌") and lines[-1].startswith("└")
    assert "Envelope: E1" in box
    assert "User: U1" in box
    assert "hi there" in box
    assert len({len(line) for line in lines}) == 1


def test_format_event_box_reads_the_same_layers_as_the_parser() -> None:
    envelope = {"payload": {"event_id": "Ev3", "event": {"type": "im_marked", "channel": "D1"}}}
    box = format_event_box(envelope)
    assert "Envelope: Ev3" in box
    assert "Type: im_marked" in box
    assert "Envelope: " in format_event_box("not an envelope")
