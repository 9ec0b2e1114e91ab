import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp
from aiohttp import web
from loguru import logger

from ...events.bus import EventBus
from ...events.models import NormalizedEvent
from ...shared.constants import (
    DEFAULT_DEVICE_HOST,
    DEFAULT_DEVICE_PORT,
    DEVICE_CLOSE_TIMEOUT,
    DEVICE_QUEUE_MAX,
    WS_HEARTBEAT,
)

__all__ = ("DeviceBroadcaster", "DeviceChannel")

DeviceReadCallback = Callable[[str], Awaitable[Any]]


class DeviceChannel:
    """One device connection with its own bounded outbound queue.

    A writer task drains the queue into the socket, so a slow peer only ever
    backs up its own queue. Frames offered to a full queue are dropped.
    """

    def __init__(self, ws: Any, peer: str = "unknown", *, maxsize: int = DEVICE_QUEUE_MAX):
        self.ws = ws
        self.peer = peer
        self.dropped = 0
        self.outbound: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self._writer = asyncio.create_task(self._write_loop(), name=f"device-writer:{peer}")

    @property
    def closed(self) -> bool:
        return self.ws.closed or self._writer.done()

    def offer(self, data: str) -> bool:
        if self.closed:
            return False
        try:
            self.outbound.put_nowait(data)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Device {self.peer} is not keeping up; frame dropped ({self.dropped} total)")
            return False
        return True

    async def _write_loop(self) -> None:
        while True:
            data = await self.outbound.get()
            if self.ws.closed:
                return
            try:
                await self.ws.send_str(data)
            except Exception as e:
                logger.warning(f"Device send failed ({self.peer}): {e}")
                return

    async def close(self, *, code: int = aiohttp.WSCloseCode.GOING_AWAY, message: bytes = b"") -> None:
        self._writer.cancel()
        await asyncio.gather(self._writer, return_exceptions=True)
        if self.ws.closed:
            return
        try:
            await asyncio.wait_for(self.ws.close(code=code, message=message), DEVICE_CLOSE_TIMEOUT)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Error closing device connection ({self.peer}): {e}")


class DeviceBroadcaster:
    """WebSocket server that fans normalized events out to connected devices.

    ``broadcast`` only enqueues: each connection has its own writer, and a
    failed or stalled send never holds up the caller or the other devices.
    It is a no-op until ``start`` has bound the listening socket.
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        host: str = DEFAULT_DEVICE_HOST,
        port: int = DEFAULT_DEVICE_PORT,
        path: str = "/",
        queue_size: int = DEVICE_QUEUE_MAX,
        on_device_read: DeviceReadCallback | None = None,
    ):
        self.host = host
        self.port = port
        self.path = path
        self.queue_size = queue_size
        self.on_device_read = on_device_read
        self.connections: set[DeviceChannel] = set()
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        bus.on_dm_received(self._on_event)
        bus.on_dm_read(self._on_event)

    @property
    def started(self) -> bool:
        return self._site is not None

    @property
    def bound_port(self) -> int | None:
        if self._runner is None:
            return None
        for address in self._runner.addresses:
            if isinstance(address, tuple) and len(address) >= 2:
                return int(address[1])
        return None

    @property
    def open_connections(self) -> int:
        return sum(1 for channel in self.connections if not channel.closed)

    def attach(self, ws: Any, peer: str = "unknown") -> DeviceChannel:
        channel = DeviceChannel(ws, peer, maxsize=self.queue_size)
        self.connections.add(channel)
        return channel

    async def detach(self, channel: DeviceChannel) -> None:
        self.connections.discard(channel)
        await channel.close(message=b"server shutdown")

    async def start(self) -> bool:
        if self.started:
            return True
        logger.info(f"Starting device WebSocket server on port {self.port}")
        app = web.Application()
        app.router.add_get(self.path, self._handle_ws)
        runner = web.AppRunner(app, handle_signals=False)
        try:
            await runner.setup()
            site = web.TCPSite(runner, self.host, self.port)
            await site.start()
        except (OSError, RuntimeError) as e:
            logger.error(f"Failed to start device WebSocket server: {e}")
            await runner.cleanup()
            return False
        self._runner = runner
        self._site = site
        logger.info(f"Device WebSocket server listening on ws://{self.host}:{self.bound_port}{self.path}")
        return True

    async def stop(self) -> None:
        site, runner = self._site, self._runner
        self._site = None
        if site is not None:
            await site.stop()
        for channel in list(self.connections):
            await self.detach(channel)
        if runner is not None:
            await runner.cleanup()
        self._runner = None
        logger.debug("Device WebSocket server stopped")

    async def _on_event(self, event: NormalizedEvent) -> None:
        self.broadcast(event.to_payload())

    def broadcast(self, payload: dict[str, Any]) -> int:
        """Queue ``payload`` as JSON for every open device connection.

        Returns the number of connections the frame was queued for.
        """
        if not self.started:
            logger.debug("Device broadcast skipped - server not started yet")
            return 0
        targets = [channel for channel in list(self.connections) if not channel.closed]
        if not targets:
            logger.debug(f"No device connections; {payload.get('type')} not sent")
            return 0
        data = json.dumps(payload, ensure_ascii=False)
        queued = sum(1 for channel in targets if channel.offer(data))
        logger.debug(f"Device broadcast {payload.get('type')}: queued for {queued}/{len(targets)}")
        return queued

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=WS_HEARTBEAT)
        await ws.prepare(request)
        peer = request.remote or "unknown"
        channel = self.attach(ws, peer)
        logger.info(f"Device connected: {peer} ({len(self.connections)} open)")
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_device_frame(msg.data, peer)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning(f"Device connection error ({peer}): {ws.exception()}")
        finally:
            self.connections.discard(channel)
            await channel.close()
            logger.info(f"Device disconnected: {peer}")
        return ws

    async def _handle_device_frame(self, raw: str, peer: str) -> None:
        logger.debug(f"Device message ({peer}): {raw}")
        try:
            frame = json.loads(raw)
        except json.JSONDecodeError:
            return
        if not isinstance(frame, dict) or frame.get("type") != "mark_read":
            return
        message_id = frame.get("messageId")
        if not isinstance(message_id, str) or not message_id or self.on_device_read is None:
            return
        try:
            await self.on_device_read(message_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Device read callback failed: {e}")
