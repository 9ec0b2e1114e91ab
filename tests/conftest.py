from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from slack_signal.events.bus import EventBus
from slack_signal.shared.config import _ENV_TO_KEY, Config


class FakeSocket:
    """Stand-in for a device connection: records frames, optionally fails."""

    def __init__(self, *, closed: bool = False, fail: bool = False) -> None:
        self.closed = closed
        self.fail = fail
        self.sent: list[str] = []
        self.close_code: int | None = None

    async def send_str(self, data: str) -> None:
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.sent.append(data)

    async def close(self, *, code: int = 1000, message: bytes = b"") -> None:
        self.closed = True
        self.close_code = code


class StalledSocket(FakeSocket):
    """A device whose socket never drains: every send waits forever."""

    def __init__(self) -> None:
        super().__init__()
        self.pending = 0

    async def send_str(self, data: str) -> None:
        self.pending += 1
        await asyncio.Event().wait()


class BrokenCloseSocket(FakeSocket):
    async def close(self, *, code: int = 1000, message: bytes = b"") -> None:
        raise ConnectionResetError("already gone")


class FakeWebClient:
    def __init__(self, *, user: dict[str, Any] | None = None) -> None:
        self.user = user
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.errors: dict[str, BaseException] = {}
        self.responses: dict[str, dict[str, Any]] = {}

    async def _call(self, method: str, default: dict[str, Any], **kwargs: Any) -> dict[str, Any]:
        self.calls.append((method, kwargs))
        if method in self.errors:
            raise self.errors[method]
        return self.responses.get(method, default)

    async def auth_test(self) -> dict[str, Any]:
        return await self._call(
            "auth_test", {"ok": True, "user_id": "UBOT", "user": "signal", "team": "acme"}
        )

    async def users_info(self, *, user: str) -> dict[str, Any]:
        return await self._call("users_info", {"ok": True, "user": self.user}, user=user)

    async def conversations_mark(self, *, channel: str, ts: str) -> dict[str, Any]:
        return await self._call("conversations_mark", {"ok": True}, channel=channel, ts=ts)

    async def conversations_open(self, *, users: str) -> dict[str, Any]:
        return await self._call(
            "conversations_open", {"ok": True, "channel": {"id": f"D-{users}"}}, users=users
        )

    async def chat_postMessage(self, *, channel: str, text: str) -> dict[str, Any]:
        return await self._call(
            "chat_postMessage",
            {"ok": True, "channel": channel, "ts": "1700000000.000100"},
            channel=channel,
            text=text,
        )

    def called(self, method: str) -> list[dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]


class FakeSocketModeClient:
    def __init__(self, log: list[str] | None = None, *, fail_ack: bool = False) -> None:
        self.log = log if log is not None else []
        self.fail_ack = fail_ack
        self.socket_mode_request_listeners: list[Any] = []
        self.on_error_listeners: list[Any] = []
        self.on_close_listeners: list[Any] = []
        self.on_message_listeners: list[Any] = []
        self.connected = False

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def close(self) -> None:
        self.log.append("close")

    async def send_socket_mode_response(self, response: Any) -> None:
        if self.fail_ack:
            raise ConnectionError("socket closed")
        self.log.append(f"ack:{response.envelope_id}")


async def wait_for(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def web_client() -> FakeWebClient:
    return FakeWebClient(
        user={"id": "U123", "name": "alice", "real_name": "Alice A", "profile": {"display_name": "ali"}}
    )


@pytest.fixture
def config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Config:
    for env_name in _ENV_TO_KEY:
        monkeypatch.delenv(env_name, raising=False)
    monkeypatch.setenv("LOG_PATH", str(tmp_path / "logs" / "slack-signal.log"))
    monkeypatch.setenv("HTTP_ENABLED", "false")
    cfg = Config(str(tmp_path / "config.yaml"))
    cfg.load()
    return cfg
