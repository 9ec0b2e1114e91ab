from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

__all__ = ("EventKind", "MessageReceived", "NormalizedEvent", "ReadMarked")


class EventKind(str, Enum):
    DM_RECEIVED = "dm_received"
    DM_READ = "dm_read"


@dataclass(frozen=True, slots=True)
class MessageReceived:
    sender_id: str | None
    sender_display_name: str | None = None
    text: str | None = None
    conversation_id: str | None = None
    timestamp: str | None = None
    envelope_id: str | None = None

    @property
    def kind(self) -> EventKind:
        return EventKind.DM_RECEIVED

    @property
    def message_id(self) -> str | None:
        return self.timestamp

    def with_sender_name(self, name: str | None) -> "MessageReceived":
        return replace(self, sender_display_name=name)

    def to_payload(self) -> dict[str, Any]:
        payload = {
            "type": self.kind.value,
            "messageId": self.message_id,
            "fromUserId": self.sender_id,
            "fromUserName": self.sender_display_name,
            "text": self.text,
            "channel": self.conversation_id,
            "ts": self.timestamp,
        }
        return {k: v for k, v in payload.items() if v is not None}


@dataclass(frozen=True, slots=True)
class ReadMarked:
    conversation_id: str | None = None
    timestamp: str | None = None
    envelope_id: str | None = None

    @property
    def kind(self) -> EventKind:
        return EventKind.DM_READ

    @property
    def message_id(self) -> str | None:
        return self.timestamp

    def to_payload(self) -> dict[str, Any]:
        payload = {
            "type": self.kind.value,
            "messageId": self.message_id,
            "channel": self.conversation_id,
            "ts": self.timestamp,
        }
        return {k: v for k, v in payload.items() if v is not None}


NormalizedEvent = MessageReceived | ReadMarked
