from __future__ import annotations

import os
from pathlib import Path

import pytest
from aiohttp import test_utils
from click.testing import CliRunner

from conftest import FakeWebClient
from slack_signal.app import cli
from slack_signal.bridge.core import SignalBridge
from slack_signal.clients.device.broadcaster import DeviceBroadcaster
from slack_signal.clients.slack.listener import SlackListener
from slack_signal.events.bus import EventBus
from slack_signal.interfaces.http import create_app
from slack_signal.shared.config import Config


@pytest.fixture(autouse=True)
def _workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CONFIG_PATH", str(tmp_path / "config.yaml"))
    monkeypatch.setenv("LOG_PATH", str(tmp_path / "logs" / "slack-signal.log"))
    return tmp_path


def _claim_pid_file(workdir: Path, content: str) -> Path:
    pid_file = workdir / "data" / "slack-signal.pid"
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(content, encoding="utf-8")
    return pid_file


def test_status_when_stopped() -> None:
    result = CliRunner().invoke(cli.app, ["status"])
    assert result.exit_code == 2
    assert "stopped" in result.output


def test_status_clears_stale_pid_file(_workdir: Path) -> None:
    pid_file = _claim_pid_file(_workdir, "not-a-pid")
    result = CliRunner().invoke(cli.app, ["status"])
    assert result.exit_code == 2
    assert not pid_file.exists()


def test_status_without_admin_http(_workdir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HTTP_ENABLED", "false")
    _claim_pid_file(_workdir, str(os.getpid()))
    result = CliRunner().invoke(cli.app, ["status"])
    assert result.exit_code == 0
    assert f"running pid={os.getpid()}" in result.output
    assert "admin HTTP is disabled" in result.output


def test_status_with_unreachable_admin_http(_workdir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HTTP_HOST", "127.0.0.1")
    monkeypatch.setenv("PORT", "1")
    _claim_pid_file(_workdir, str(os.getpid()))
    result = CliRunner().invoke(cli.app, ["status"])
    assert result.exit_code == 0
    assert "unreachable at http://127.0.0.1:1" in result.output


def test_down_when_not_running() -> None:
    result = CliRunner().invoke(cli.app, ["down"])
    assert result.exit_code == 2
    assert "not running" in result.output


def test_up_refuses_a_second_instance(_workdir: Path) -> None:
    _claim_pid_file(_workdir, str(os.getpid()))
    result = CliRunner().invoke(cli.app, ["up"])
    assert result.exit_code == 2
    assert "already running" in result.output


def test_send_needs_admin_http(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HTTP_ENABLED", "false")
    result = CliRunner().invoke(cli.app, ["send", "hi"])
    assert result.exit_code == 1
    assert "admin HTTP is disabled" in result.output


@pytest.mark.parametrize(
    ("host", "expected"),
    [
        ("0.0.0.0", "http://127.0.0.1:3000"),
        ("localhost", "http://localhost:3000"),
        ("::1", "http://[::1]:3000"),
    ],
)
def test_admin_base_url(config: Config, host: str, expected: str) -> None:
    config.data["http"] = {"enabled": True, "host": host, "port": 3000}
    assert cli._admin_base_url(config) == expected


async def test_admin_call_talks_to_a_running_bridge(
    config: Config, bus: EventBus, web_client: FakeWebClient
) -> None:
    bridge = SignalBridge(
        config,
        bus=bus,
        listener=SlackListener(bus, web_client=web_client),
        broadcaster=DeviceBroadcaster(bus, host="127.0.0.1", port=0),
    )
    async with test_utils.TestServer(create_app(bridge)) as server:
        base_url = f"http://{server.host}:{server.port}"
        status, health = await cli._admin_call(base_url, "GET", "/health")
        assert status == 200
        assert health["messages"] == 0

        status, body = await cli._admin_call(base_url, "POST", "/send", {"text": "yo", "userId": "U9"})
        assert status == 200
        assert body["ts"] == "1700000000.000100"

        status, body = await cli._admin_call(base_url, "POST", "/mark-read", {"messageId": "0.0"})
        assert status == 404
        assert body == {"ok": False, "reason": "unknown messageId"}


def test_main_returns_command_exit_code(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("sys.argv", ["slack-signal", "status"])
    assert cli.main() == 2


def test_ws_test_reports_connection_error() -> None:
    result = CliRunner().invoke(cli.app, ["ws-test", "--url", "ws://127.0.0.1:1/"])
    assert result.exit_code == 1
