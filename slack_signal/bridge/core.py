import asyncio
from datetime import UTC, datetime
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from ..clients.device.broadcaster import DeviceBroadcaster
from ..clients.slack.dedup import Deduplicator
from ..clients.slack.listener import SlackListener
from ..events.bus import EventBus
from ..events.models import MessageReceived, NormalizedEvent, ReadMarked
from ..interfaces.http import AdminServer
from ..shared.config import Config
from ..shared.config_keys import ConfigKeys
from ..shared.constants import DEDUP_TTL, STORE_SWEEP_INTERVAL
from ..shared.utils import get_memory_usage, short_text
from .store import MessageStore

__all__ = ("SignalBridge",)


class SignalBridge:
    def __init__(
        self,
        config: Config,
        *,
        bus: EventBus | None = None,
        listener: SlackListener | None = None,
        broadcaster: DeviceBroadcaster | None = None,
    ):
        self.config = config
        self.bus = bus or EventBus()
        self.redact_text = bool(config.get(ConfigKeys.LOG_REDACT_TEXT)) and not bool(
            config.get(ConfigKeys.LOG_FULL_TEXT)
        )
        self.store = MessageStore(
            retention=config.get(ConfigKeys.STORE_RETENTION),
            maxsize=config.get(ConfigKeys.STORE_MAX_MESSAGES),
        )
        self.listener = listener or SlackListener(
            self.bus,
            app_token=config.get(ConfigKeys.SLACK_APP_TOKEN),
            bot_token=config.get(ConfigKeys.SLACK_BOT_TOKEN),
            default_user_id=config.get(ConfigKeys.SLACK_DEFAULT_USER_ID),
            resolve_names=bool(config.get(ConfigKeys.SLACK_RESOLVE_NAMES, True)),
            deduplicator=Deduplicator(ttl=DEDUP_TTL),
            redact_text=self.redact_text,
            log_dump_events=bool(config.get(ConfigKeys.LOG_DUMP_EVENTS)),
        )
        self.broadcaster = broadcaster or DeviceBroadcaster(
            self.bus,
            host=config.get(ConfigKeys.DEVICE_HOST),
            port=config.get(ConfigKeys.DEVICE_PORT),
            on_device_read=self.mark_message_read,
        )
        if self.broadcaster.on_device_read is None:
            self.broadcaster.on_device_read = self.mark_message_read
        self.admin: AdminServer | None = None
        if config.get(ConfigKeys.HTTP_ENABLED, True):
            self.admin = AdminServer(
                self,
                host=config.get(ConfigKeys.HTTP_HOST),
                port=config.get(ConfigKeys.HTTP_PORT),
            )
        self.scheduler = AsyncIOScheduler()
        self.running = False
        self.startup_time: datetime | None = None
        self.bus.on_dm_received(self._on_dm_received)
        self.bus.on_dm_read(self._on_dm_read)
        logger.info("Bridge initialized")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
        return False

    @property
    def uptime(self) -> float:
        if self.startup_time is None:
            return 0.0
        return (datetime.now(UTC) - self.startup_time).total_seconds()

    async def _on_dm_received(self, event: MessageReceived) -> None:
        message_id = self.store.add(event)
        logger.debug(
            f"DM stored id={message_id} from={event.sender_display_name or event.sender_id}: "
            f"{short_text(event.text, redact=self.redact_text)}"
        )

    async def _on_dm_read(self, event: ReadMarked) -> None:
        message = self.store.mark_read(event.message_id)
        if message is None:
            logger.debug(f"Read event for unknown message: {event.message_id}")
            return
        logger.info(f"DM marked read: {event.message_id}")
        if event.envelope_id:
            # Came from Slack itself; the cursor is already there.
            return
        if message.channel and message.ts:
            ok = await self.listener.mark_read(message.channel, message.ts)
            logger.info(f"Slack mark_read result: {ok}")

    async def mark_message_read(self, message_id: str) -> bool:
        message = self.store.get(message_id)
        if message is None:
            logger.debug(f"mark_message_read: unknown message {message_id}")
            return False
        await self.bus.publish(
            ReadMarked(conversation_id=message.channel, timestamp=message.ts or message_id)
        )
        return True

    async def inject_envelope(self, envelope: Any) -> NormalizedEvent | None:
        return await self.listener.process_envelope(envelope)

    async def send_message(self, text: str, target_user_id: str | None = None) -> dict[str, Any]:
        return await self.listener.send_message(text, target_user_id)

    def health(self) -> dict[str, Any]:
        return {
            "ok": True,
            "slack": self.listener.state,
            "devices": self.broadcaster.open_connections,
            "messages": len(self.store),
            "uptime": round(self.uptime, 1),
        }

    async def start(self) -> None:
        if self.running:
            logger.warning("Bridge is already running")
            return
        await self.listener.verify_credentials()
        logger.info("Starting services...")
        self.running = True
        self.startup_time = datetime.now(UTC)
        await self.broadcaster.start()
        if self.admin is not None:
            await self.admin.start()
        self._setup_scheduler()
        await self.listener.start()
        logger.info("Services ready; awaiting DMs...")
        memory_usage = get_memory_usage()
        logger.debug(f"Memory usage: {memory_usage['rss_mb']} MB")

    def _setup_scheduler(self) -> None:
        self.scheduler.add_job(
            self._sweep_dedup_window,
            "interval",
            seconds=self.listener.deduplicator.ttl,
            id="dedup_sweep",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self._prune_store,
            "interval",
            seconds=STORE_SWEEP_INTERVAL,
            id="store_prune",
            replace_existing=True,
        )
        self.scheduler.start()

    async def _sweep_dedup_window(self) -> None:
        self.listener.deduplicator.sweep()

    async def _prune_store(self) -> None:
        self.store.prune()

    async def stop(self) -> None:
        if not self.running:
            logger.warning("Bridge is already stopped")
            return
        logger.info("Stopping services...")
        self.running = False
        try:
            if self.scheduler.running:
                self.scheduler.shutdown(wait=False)
            await self.listener.stop()
            if self.admin is not None:
                await self.admin.stop()
            await self.broadcaster.stop()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Error stopping bridge: {e}")
        finally:
            logger.info("Services stopped")
