import asyncio
from typing import Any

import aiohttp
from cachetools import TTLCache
from loguru import logger
from slack_sdk.errors import SlackApiError
from slack_sdk.socket_mode.aiohttp import SocketModeClient
from slack_sdk.socket_mode.request import SocketModeRequest
from slack_sdk.socket_mode.response import SocketModeResponse
from slack_sdk.web.async_client import AsyncWebClient

from ...events.bus import EventBus
from ...events.models import MessageReceived, NormalizedEvent
from ...shared.constants import (
    API_MAX_RETRIES,
    DM_CHANNEL_CACHE_MAX,
    NAME_CACHE_MAX,
    NAME_CACHE_TTL,
)
from ...shared.exceptions import APIConnectionError, AuthenticationError, SendMessageError
from ...shared.utils import (
    maybe_log_event_dump,
    redact_slack_token,
    retry_async,
    short_text,
)
from .dedup import Deduplicator
from .envelope import envelope_id_of, format_event_box, parse_envelope

__all__ = ("SlackListener",)

_TRANSIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


def _response_data(response: Any) -> dict[str, Any]:
    data = getattr(response, "data", response)
    return data if isinstance(data, dict) else {}


def _slack_error_code(e: SlackApiError) -> str:
    response = getattr(e, "response", None)
    if response is not None:
        try:
            if code := response.get("error"):
                return str(code)
        except AttributeError:
            pass
    return redact_slack_token(str(e))


class SlackListener:
    """Receives Slack DM events over Socket Mode and publishes them on the bus.

    Reconnects and backoff are handled by ``slack_sdk``'s ``SocketModeClient``;
    this class only logs its lifecycle. Web API calls (name lookup, read
    cursor, outbound messages) go through ``AsyncWebClient`` and need a bot
    token.
    """

    def __init__(
        self,
        bus: EventBus,
        *,
        app_token: str | None = None,
        bot_token: str | None = None,
        default_user_id: str | None = None,
        resolve_names: bool = True,
        deduplicator: Deduplicator | None = None,
        redact_text: bool = False,
        log_dump_events: bool = False,
        web_client: AsyncWebClient | None = None,
        socket_client: SocketModeClient | None = None,
    ):
        self.bus = bus
        self.deduplicator = deduplicator or Deduplicator()
        self.default_user_id = default_user_id
        self.resolve_names = resolve_names
        self.redact_text = redact_text
        self.log_dump_events = log_dump_events
        self.web: AsyncWebClient | None = web_client
        if self.web is None and bot_token:
            self.web = AsyncWebClient(token=bot_token)
        self.socket_client: SocketModeClient | None = socket_client
        if self.socket_client is None and app_token:
            self.socket_client = SocketModeClient(
                app_token=app_token,
                web_client=self.web,
                auto_reconnect_enabled=True,
            )
        self.state = "initializing"
        self.bot_user_id: str | None = None
        self.last_sender_id: str | None = None
        self._names: TTLCache[str, str] = TTLCache(maxsize=NAME_CACHE_MAX, ttl=NAME_CACHE_TTL)
        self._dm_channels: TTLCache[str, str] = TTLCache(
            maxsize=DM_CHANNEL_CACHE_MAX, ttl=NAME_CACHE_TTL
        )
        self._listeners_installed = False
        self._stopping = False

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
        return False

    @property
    def enabled(self) -> bool:
        return self.socket_client is not None

    def _set_state(self, state: str) -> None:
        if state != self.state:
            logger.debug(f"Socket Mode state: {self.state} -> {state}")
        self.state = state

    def _install_listeners(self) -> None:
        if self._listeners_installed or self.socket_client is None:
            return
        self.socket_client.socket_mode_request_listeners.append(self._on_request)
        self.socket_client.on_message_listeners.append(self._on_socket_message)
        self.socket_client.on_error_listeners.append(self._on_socket_error)
        self.socket_client.on_close_listeners.append(self._on_socket_close)
        self._listeners_installed = True

    async def start(self) -> None:
        if self.socket_client is None:
            logger.info("No SLACK_APP_TOKEN; socket mode disabled")
            self._set_state("disabled")
            return
        self._stopping = False
        self._install_listeners()
        self._set_state("connecting")
        try:
            await self.socket_client.connect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._set_state("error")
            logger.error(f"Socket Mode connection failed: {redact_slack_token(str(e))}")
            return
        self._set_state("connected")
        logger.info("Socket Mode client started")

    async def stop(self) -> None:
        if self.socket_client is None:
            return
        self._stopping = True
        self._set_state("disconnecting")
        try:
            await self.socket_client.disconnect()
            await self.socket_client.close()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Error closing Socket Mode client: {redact_slack_token(str(e))}")
        finally:
            self._set_state("disconnected")
            logger.debug("Socket Mode client closed")

    async def verify_credentials(self) -> dict[str, Any]:
        """Check the bot token with ``auth.test``; raises on bad credentials."""
        if self.web is None:
            logger.warning("No SLACK_BOT_TOKEN; names, read marks and sending are disabled")
            return {}
        try:
            data = _response_data(await self._auth_test())
        except SlackApiError as e:
            raise AuthenticationError(f"auth.test failed: {_slack_error_code(e)}") from e
        except _TRANSIENT_ERRORS as e:
            raise APIConnectionError(f"auth.test failed: {e}") from e
        self.bot_user_id = data.get("user_id")
        logger.info(f"Connected to Slack workspace: team={data.get('team')}, bot=@{data.get('user')}")
        return data

    async def _on_socket_error(self, message: Any) -> None:
        self._set_state("error")
        logger.error(f"Socket Mode error: {getattr(message, 'data', message)}")

    async def _on_socket_message(self, message: Any) -> None:
        # Any frame, including the hello sent after a reconnect, means the link is up.
        self._mark_connected()

    def _mark_connected(self) -> None:
        if not self._stopping and self.state in ("disconnected", "error", "connecting"):
            self._set_state("connected")

    async def _on_socket_close(self, message: Any) -> None:
        self._set_state("disconnected")
        logger.info("Socket Mode connection closed; reconnect is handled by the client")

    async def _on_request(self, client: Any, req: SocketModeRequest) -> None:
        self._mark_connected()
        await self._acknowledge(client, req.envelope_id)
        if req.type != "events_api":
            logger.debug(f"Ignoring Socket Mode request type: {req.type}")
            return
        try:
            await self.process_envelope({"envelope_id": req.envelope_id, "payload": req.payload})
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"events_api handler error: {e}")

    @staticmethod
    async def _acknowledge(client: Any, envelope_id: str | None) -> None:
        if not envelope_id:
            return
        try:
            await client.send_socket_mode_response(SocketModeResponse(envelope_id=envelope_id))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Failed to acknowledge envelope {envelope_id}: {e}")

    async def process_envelope(self, envelope: Any) -> NormalizedEvent | None:
        """Dedupe, parse, enrich and publish one envelope.

        Returns the published event, or ``None`` when the envelope was a
        duplicate or not actionable.
        """
        envelope_id = envelope_id_of(envelope)
        if self.deduplicator.is_duplicate(envelope_id):
            return None
        maybe_log_event_dump(self.log_dump_events, kind="Envelope", payload=envelope)
        event = parse_envelope(envelope)
        if event is None:
            logger.debug(f"Envelope not actionable; dropped (envelope_id={envelope_id})")
            return None
        if isinstance(event, MessageReceived):
            if self.bot_user_id and event.sender_id == self.bot_user_id:
                logger.debug("Ignoring message sent by the bot itself")
                return None
            event = await self._enrich_message(event)
            if not self.redact_text:
                logger.debug(format_event_box(envelope))
            logger.info(
                f"DM received from {event.sender_display_name or event.sender_id}: "
                f"{short_text(event.text, redact=self.redact_text)}"
            )
        else:
            logger.info(f"Read cursor moved: channel={event.conversation_id}, ts={event.timestamp}")
        await self.bus.publish(event)
        return event

    async def _enrich_message(self, event: MessageReceived) -> MessageReceived:
        if event.sender_id:
            self.last_sender_id = event.sender_id
        if not self.resolve_names or not event.sender_id:
            return event
        name = await self.resolve_display_name(event.sender_id)
        return event.with_sender_name(name) if name else event

    async def resolve_display_name(self, user_id: str) -> str | None:
        if cached := self._names.get(user_id):
            return cached
        if self.web is None:
            return None
        try:
            info = _response_data(await self.web.users_info(user=user_id))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"users.info failed for {user_id}: {e}")
            return None
        user = info.get("user")
        if not info.get("ok") or not isinstance(user, dict):
            return None
        profile = user.get("profile") if isinstance(user.get("profile"), dict) else {}
        name = profile.get("display_name") or user.get("real_name") or user.get("name")
        if isinstance(name, str) and name:
            self._names[user_id] = name
            return name
        return None

    async def mark_read(self, conversation_id: str | None, timestamp: str | None) -> bool:
        if self.web is None:
            logger.warning("No bot token, cannot mark message read")
            return False
        if not conversation_id or not timestamp:
            logger.warning("mark_read missing channel or ts")
            return False
        try:
            response = await self.web.conversations_mark(channel=conversation_id, ts=timestamp)
        except asyncio.CancelledError:
            raise
        except SlackApiError as e:
            logger.error(f"conversations.mark failed: {_slack_error_code(e)}")
            return False
        except Exception as e:
            logger.error(f"conversations.mark failed: {redact_slack_token(str(e))}")
            return False
        return _response_data(response).get("ok") is True

    async def send_message(self, text: str, target_user_id: str | None = None) -> dict[str, Any]:
        """Post ``text`` as a DM to ``target_user_id``.

        Without an explicit target, the configured default user is used, then
        the most recent sender. Raises ``SendMessageError`` if the target
        cannot be resolved or if opening the conversation or posting fails.
        """
        if self.web is None:
            raise SendMessageError("No bot token configured; cannot send messages")
        if not text or not text.strip():
            raise SendMessageError("Message text must not be empty")
        user_id = target_user_id or self.default_user_id or self.last_sender_id
        if not user_id:
            raise SendMessageError("Could not resolve a target user for the message")
        channel = await self._open_dm_channel(user_id)
        try:
            response = await self.web.chat_postMessage(channel=channel, text=text)
        except SlackApiError as e:
            raise SendMessageError(f"chat.postMessage failed: {_slack_error_code(e)}") from e
        except _TRANSIENT_ERRORS as e:
            raise SendMessageError(f"chat.postMessage failed: {e}") from e
        data = _response_data(response)
        if not data.get("ok"):
            raise SendMessageError(f"chat.postMessage failed: {data.get('error', 'unknown error')}")
        logger.info(f"Message sent to {user_id}: {short_text(text, redact=self.redact_text)}")
        return data

    async def _open_dm_channel(self, user_id: str) -> str:
        if cached := self._dm_channels.get(user_id):
            return cached
        try:
            response = await self._conversations_open(user_id)
        except SlackApiError as e:
            raise SendMessageError(f"conversations.open failed: {_slack_error_code(e)}") from e
        except _TRANSIENT_ERRORS as e:
            raise SendMessageError(f"conversations.open failed: {e}") from e
        channel = _response_data(response).get("channel")
        channel_id = channel.get("id") if isinstance(channel, dict) else None
        if not isinstance(channel_id, str) or not channel_id:
            raise SendMessageError(f"conversations.open returned no channel for {user_id}")
        self._dm_channels[user_id] = channel_id
        return channel_id

    @retry_async(max_retries=API_MAX_RETRIES, retryable_exceptions=_TRANSIENT_ERRORS)
    async def _auth_test(self) -> Any:
        return await self.web.auth_test()

    @retry_async(max_retries=API_MAX_RETRIES, retryable_exceptions=_TRANSIENT_ERRORS)
    async def _conversations_open(self, user_id: str) -> Any:
        return await self.web.conversations_open(users=user_id)
