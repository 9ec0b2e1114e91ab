"""Admin HTTP endpoints for local development and manual triggers."""

from typing import TYPE_CHECKING, Any

from aiohttp import web
from loguru import logger

from ..shared.constants import (
    DEFAULT_HTTP_HOST,
    DEFAULT_HTTP_PORT,
    HTTP_BAD_GATEWAY,
    HTTP_BAD_REQUEST,
    HTTP_NOT_FOUND,
)
from ..shared.exceptions import SendMessageError

if TYPE_CHECKING:
    from ..bridge.core import SignalBridge

__all__ = ("AdminServer", "create_app")

BRIDGE_KEY: web.AppKey["SignalBridge"] = web.AppKey("bridge")


async def _read_json(request: web.Request) -> dict[str, Any] | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


async def index(request: web.Request) -> web.Response:
    return web.Response(text="Slack Signal")


async def health(request: web.Request) -> web.Response:
    return web.json_response(request.app[BRIDGE_KEY].health())


async def mock_event(request: web.Request) -> web.Response:
    body = await _read_json(request)
    event = await request.app[BRIDGE_KEY].inject_envelope(body) if body else None
    if event is None:
        return web.json_response(
            {"ok": False, "reason": "not a message event"}, status=HTTP_BAD_REQUEST
        )
    return web.json_response({"ok": True, "type": event.kind.value})


async def mark_read(request: web.Request) -> web.Response:
    body = await _read_json(request) or {}
    message_id = body.get("messageId")
    if not isinstance(message_id, str) or not message_id:
        return web.json_response({"ok": False, "reason": "missing messageId"}, status=HTTP_BAD_REQUEST)
    if not await request.app[BRIDGE_KEY].mark_message_read(message_id):
        return web.json_response({"ok": False, "reason": "unknown messageId"}, status=HTTP_NOT_FOUND)
    return web.json_response({"ok": True})


async def send(request: web.Request) -> web.Response:
    body = await _read_json(request) or {}
    text = body.get("text")
    user_id = body.get("userId")
    if not isinstance(text, str) or not text.strip():
        return web.json_response({"ok": False, "reason": "missing text"}, status=HTTP_BAD_REQUEST)
    try:
        result = await request.app[BRIDGE_KEY].send_message(
            text, user_id if isinstance(user_id, str) and user_id else None
        )
    except SendMessageError as e:
        logger.warning(f"Send failed: {e}")
        return web.json_response({"ok": False, "reason": str(e)}, status=HTTP_BAD_GATEWAY)
    return web.json_response({"ok": True, "channel": result.get("channel"), "ts": result.get("ts")})


async def messages(request: web.Request) -> web.Response:
    return web.json_response(request.app[BRIDGE_KEY].store.snapshot())


def create_app(bridge: "SignalBridge") -> web.Application:
    app = web.Application()
    app[BRIDGE_KEY] = bridge
    app.router.add_get("/", index)
    app.router.add_get("/health", health)
    app.router.add_post("/mock-event", mock_event)
    app.router.add_post("/mark-read", mark_read)
    app.router.add_post("/send", send)
    app.router.add_get("/messages", messages)
    return app


class AdminServer:
    def __init__(
        self,
        bridge: "SignalBridge",
        *,
        host: str = DEFAULT_HTTP_HOST,
        port: int = DEFAULT_HTTP_PORT,
    ):
        self.bridge = bridge
        self.host = host
        self.port = port
        self._runner: web.AppRunner | None = None

    async def start(self) -> bool:
        if self._runner is not None:
            return True
        runner = web.AppRunner(create_app(self.bridge), handle_signals=False)
        try:
            await runner.setup()
            await web.TCPSite(runner, self.host, self.port).start()
        except (OSError, RuntimeError) as e:
            logger.error(f"Failed to start admin HTTP server: {e}")
            await runner.cleanup()
            return False
        self._runner = runner
        logger.info(f"Admin HTTP server running at http://{self.host}:{self.port}")
        return True

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        logger.debug("Admin HTTP server stopped")
