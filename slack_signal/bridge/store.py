import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from cachetools import TTLCache
from loguru import logger

from ..events.models import MessageReceived
from ..shared.constants import STORE_MAX_MESSAGES, STORE_RETENTION

__all__ = ("MessageStore", "StoredMessage")


@dataclass(slots=True)
class StoredMessage:
    text: str | None = None
    from_user_id: str | None = None
    from_user_name: str | None = None
    channel: str | None = None
    ts: str | None = None
    read: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data


class MessageStore:
    def __init__(
        self,
        *,
        retention: float = STORE_RETENTION,
        maxsize: int = STORE_MAX_MESSAGES,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.retention = retention
        self._messages: TTLCache[str, StoredMessage] = TTLCache(
            maxsize=maxsize, ttl=retention, timer=timer
        )

    def __len__(self) -> int:
        return self._messages.currsize

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._messages

    def add(self, event: MessageReceived) -> str:
        message_id = event.message_id or str(int(time.time() * 1000))
        self._messages[message_id] = StoredMessage(
            text=event.text,
            from_user_id=event.sender_id,
            from_user_name=event.sender_display_name,
            channel=event.conversation_id,
            ts=event.timestamp,
        )
        return message_id

    def get(self, message_id: str) -> StoredMessage | None:
        return self._messages.get(message_id)

    def mark_read(self, message_id: str | None) -> StoredMessage | None:
        """Flag a stored message as read; returns it, or ``None`` if unknown."""
        if not message_id:
            return None
        message = self._messages.get(message_id)
        if message is None:
            return None
        message.read = True
        return message

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {message_id: message.to_dict() for message_id, message in self._messages.items()}

    def prune(self) -> int:
        removed = len(self._messages.expire())
        if removed:
            logger.debug(f"Message store pruned: {removed} expired")
        return removed
