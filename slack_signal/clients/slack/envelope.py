"""Normalization of Slack Events API envelopes.

An envelope arrives in one of three shapes: the Socket Mode wrapper
``{"envelope_id": ..., "payload": {"event": {...}}}``, the flattened
``{"event": {...}}``, or the bare event object. Each layer is unwrapped only
if present, and anything that does not match a known event shape yields
``None`` ("not actionable") instead of an error.
"""

from collections.abc import Callable
from typing import Any

from ...events.models import MessageReceived, NormalizedEvent, ReadMarked
from ...shared.constants import READ_EVENT_TYPES

__all__ = ("envelope_id_of", "format_event_box", "parse_envelope", "unwrap_event")


def _as_dict(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def _str_field(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    return value if isinstance(value, str) and value else None


def _outer_layer(envelope: dict[str, Any]) -> dict[str, Any]:
    return _as_dict(envelope.get("payload")) or envelope


def unwrap_event(envelope: Any) -> dict[str, Any] | None:
    body = _as_dict(envelope)
    if body is None:
        return None
    inner = _outer_layer(body)
    return _as_dict(inner.get("event")) or inner


def envelope_id_of(envelope: Any) -> str | None:
    body = _as_dict(envelope)
    if body is None:
        return None
    for layer in (body, _outer_layer(body)):
        for key in ("envelope_id", "event_id"):
            if value := _str_field(layer, key):
                return value
    return None


def _build_message(event: dict[str, Any], envelope_id: str | None) -> MessageReceived | None:
    if event.get("subtype"):
        return None
    return MessageReceived(
        sender_id=event.get("user"),
        text=event.get("text"),
        conversation_id=event.get("channel"),
        timestamp=event.get("ts"),
        envelope_id=envelope_id,
    )


def _build_read(event: dict[str, Any], envelope_id: str | None) -> ReadMarked:
    return ReadMarked(
        conversation_id=event.get("channel"),
        timestamp=event.get("ts"),
        envelope_id=envelope_id,
    )


_BUILDERS: dict[str, Callable[[dict[str, Any], str | None], NormalizedEvent | None]] = {
    "message": _build_message,
    **{read_type: _build_read for read_type in READ_EVENT_TYPES},
}


def parse_envelope(envelope: Any) -> NormalizedEvent | None:
    event = unwrap_event(envelope)
    if event is None:
        return None
    event_type = event.get("type")
    if not isinstance(event_type, str):
        return None
    builder = _BUILDERS.get(event_type)
    if builder is None:
        return None
    return builder(event, envelope_id_of(envelope))


def format_event_box(envelope: Any) -> str:
    """Render an inbound envelope as a boxed multi-line summary for logs."""
    event = unwrap_event(envelope) or {}
    text = " ".join(str(event.get("text") or "").split())
    lines = [
        f"Envelope: {envelope_id_of(envelope) or ''}",
        f"Type: {event.get('type') or ''}",
        f"User: {event.get('user') or ''}",
        "Message:",
        text,
    ]
    width = max(len(line) for line in lines)
    top = "┌" + "─" * (width + 2) + "┐"
    bottom = "└" + "─" * (width + 2) + "┘"
    middle = "\n".join(f"│ {line.ljust(width)} │" for line in lines)
    return f"\n{top}\n{middle}\n{bottom}"
