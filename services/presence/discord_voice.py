"""discord.py wiring for the presence agent."""

from __future__ import annotations

import asyncio
import itertools
import signal
from contextlib import suppress
from typing import Any

import discord
from discord.http import Route

from services.common.structured_logging import get_logger

from .arbiter import PresenceArbiter, VoiceStateChange
from .commands import CommandDispatcher, IncomingMessage
from .config import AgentConfig
from .connection import ConnectionManager
from .notifications import NotificationService
from .state import ConnectionStatus, SessionState, TargetLocation
from .voice import ChannelSnapshot, TargetNotFoundError, VoiceHandle, VoicePlatform

DEFAULT_INTENTS = ("guilds", "voice_states", "guild_messages", "message_content")

# discord.py's internal connection flow states, grouped by the status they map to.
_SIGNALLING_FLOW = frozenset(
    {
        "set_guild_voice_state",
        "got_voice_state_update",
        "got_voice_server_update",
        "got_both_voice_updates",
    }
)
_CONNECTING_FLOW = frozenset(
    {"websocket_connected", "got_websocket_ready", "got_ip_discovery"}
)

_handle_ids = itertools.count(1)


def status_of(voice_client: discord.VoiceClient) -> ConnectionStatus:
    """Map a voice client's connection progress onto a ConnectionStatus."""
    if voice_client.is_connected():
        return ConnectionStatus.READY
    flow_state = getattr(getattr(voice_client, "_connection", None), "state", None)
    name = getattr(flow_state, "name", None)
    if name in _SIGNALLING_FLOW:
        return ConnectionStatus.SIGNALLING
    if name in _CONNECTING_FLOW:
        return ConnectionStatus.CONNECTING
    return ConnectionStatus.DISCONNECTED


class DiscordVoiceHandle(VoiceHandle):
    """A voice connection opened through ``VocalGuildChannel.connect``.

    The connect call runs in the background; a monitor task samples the voice
    client and publishes status changes. discord.py's own reconnect logic
    shows up as Disconnected followed by Signalling/Connecting.
    """

    def __init__(
        self,
        channel: discord.VoiceChannel | discord.StageChannel,
        *,
        self_mute: bool,
        self_deaf: bool,
        connect_timeout: float,
        poll_interval: float,
    ) -> None:
        super().__init__(label=f"voice-{next(_handle_ids)}")
        self._channel = channel
        self._self_mute = self_mute
        self._self_deaf = self_deaf
        self._connect_timeout = connect_timeout
        self._poll_interval = poll_interval
        self._voice_client: discord.VoiceClient | None = None
        self._connect_task: asyncio.Task[None] | None = None
        self._monitor_task: asyncio.Task[None] | None = None
        self._connect_settled = False

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._connect_task = loop.create_task(self._connect())
        self._monitor_task = loop.create_task(self._monitor())

    async def _connect(self) -> None:
        try:
            self._voice_client = await self._channel.connect(
                timeout=self._connect_timeout,
                reconnect=True,
                self_mute=self._self_mute,
                self_deaf=self._self_deaf,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.warning(
                "voice.connect_failed",
                handle=self.label,
                channel_id=self._channel.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            self._connect_settled = True
            self._set_status(ConnectionStatus.DISCONNECTED)
            return
        self._connect_settled = True
        self._set_status(status_of(self._voice_client))

    def _sampled_client(self) -> discord.VoiceClient | None:
        if self._voice_client is not None:
            return self._voice_client
        if self._connect_settled:
            return None
        voice_client = self._channel.guild.voice_client
        return voice_client if isinstance(voice_client, discord.VoiceClient) else None

    async def _monitor(self) -> None:
        while self.status is not ConnectionStatus.DESTROYED:
            await asyncio.sleep(self._poll_interval)
            voice_client = self._sampled_client()
            if voice_client is None:
                continue
            status = status_of(voice_client)
            # Before connect() returns the client starts out "disconnected";
            # only the connect result may report that during the handshake.
            if status is ConnectionStatus.DISCONNECTED and not self._connect_settled:
                continue
            self._set_status(status)

    async def destroy(self) -> None:
        if self.status is ConnectionStatus.DESTROYED:
            return
        voice_client = self._sampled_client()
        for task in (self._connect_task, self._monitor_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        if voice_client is not None:
            try:
                await voice_client.disconnect(force=True)
            except Exception as exc:
                self._logger.warning(
                    "voice.disconnect_failed", handle=self.label, error=str(exc)
                )
        self._set_status(ConnectionStatus.DESTROYED)


class DiscordVoicePlatform(VoicePlatform):
    """VoicePlatform backed by a logged-in discord.py client.

    ``owner_id`` is the human account whose voice state the fresh fetch reads.
    """

    def __init__(
        self,
        client: discord.Client,
        *,
        owner_id: int,
        connect_timeout: float = 10.0,
        poll_interval: float = 0.25,
    ) -> None:
        self._client = client
        self._owner_id = owner_id
        self._connect_timeout = connect_timeout
        self._poll_interval = poll_interval
        self._logger = get_logger(__name__, service_name="presence")

    @property
    def user_id(self) -> int:
        if self._client.user is None:
            raise RuntimeError("client is not logged in")
        return self._client.user.id

    async def _resolve_guild(self, guild_id: int) -> discord.Guild:
        guild = self._client.get_guild(guild_id)
        if guild is not None:
            return guild
        try:
            return await self._client.fetch_guild(guild_id)
        except (discord.NotFound, discord.Forbidden) as exc:
            raise TargetNotFoundError("guild", guild_id) from exc

    async def _resolve_channel(
        self, target: TargetLocation
    ) -> discord.VoiceChannel | discord.StageChannel:
        guild = await self._resolve_guild(target.guild_id)
        try:
            channel = await guild.fetch_channel(target.channel_id)
        except (discord.NotFound, discord.Forbidden, discord.InvalidData) as exc:
            raise TargetNotFoundError("channel", target.channel_id) from exc
        if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)):
            raise TargetNotFoundError("voice channel", target.channel_id)
        return channel

    async def fetch_channel(self, target: TargetLocation) -> ChannelSnapshot:
        channel = await self._resolve_channel(target)
        # The REST API lists no voice members; members come from the gateway
        # voice-state cache, which the voice_states intent keeps current.
        return ChannelSnapshot(
            channel_id=channel.id,
            name=channel.name,
            user_limit=channel.user_limit or 0,
            member_ids=frozenset(member.id for member in channel.members),
        )

    async def fetch_voice_channel_id(self, guild_id: int) -> int | None:
        route = Route(
            "GET",
            "/guilds/{guild_id}/voice-states/{user_id}",
            guild_id=guild_id,
            user_id=self._owner_id,
        )
        try:
            data: dict[str, Any] = await self._client.http.request(route)
        except discord.NotFound:
            return None
        channel_id = data.get("channel_id")
        return int(channel_id) if channel_id else None

    async def connect(
        self, target: TargetLocation, *, self_mute: bool, self_deaf: bool
    ) -> VoiceHandle:
        guild = await self._resolve_guild(target.guild_id)
        channel = guild.get_channel(target.channel_id)
        if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)):
            channel = await self._resolve_channel(target)
        if guild.voice_client is not None:
            self._logger.info("voice.orphan_replaced", guild_id=guild.id)
            await self.disconnect_orphan(guild.id)
        handle = DiscordVoiceHandle(
            channel,
            self_mute=self_mute,
            self_deaf=self_deaf,
            connect_timeout=self._connect_timeout,
            poll_interval=self._poll_interval,
        )
        handle.start()
        return handle

    async def disconnect_orphan(self, guild_id: int) -> bool:
        guild = self._client.get_guild(guild_id)
        voice_client = guild.voice_client if guild is not None else None
        if voice_client is None:
            return False
        await voice_client.disconnect(force=True)
        return True


class PresenceBot(discord.Client):
    """Bot client that holds the target channel while the owner is out of voice."""

    def __init__(self, config: AgentConfig) -> None:
        presence = config.presence
        super().__init__(intents=self._build_intents(DEFAULT_INTENTS))
        self.config = config
        self.state = SessionState()
        self.notifier = NotificationService(
            presence.webhook_url,
            mention=presence.webhook_mention,
            cooldown_seconds=presence.capacity_notify_cooldown_seconds,
        )
        self.platform = DiscordVoicePlatform(
            self,
            owner_id=presence.owner_id,
            connect_timeout=presence.join_timeout_seconds,
            poll_interval=presence.status_poll_interval_seconds,
        )
        self.manager = ConnectionManager(
            self.state,
            self.platform,
            presence.target,
            self.notifier,
            join_timeout_seconds=presence.join_timeout_seconds,
            squeeze_grace_seconds=presence.squeeze_grace_seconds,
            squeeze_fetch_attempts=presence.squeeze_fetch_attempts,
            reconnect_delay_seconds=presence.reconnect_delay_seconds,
            retry_interval_seconds=presence.retry_interval_seconds,
        )
        self.arbiter: PresenceArbiter | None = None
        self.commands: CommandDispatcher | None = None
        self._shutting_down = False
        self._shutdown_task: asyncio.Task[None] | None = None
        self._logger = get_logger(__name__, service_name="presence")

    async def on_ready(self) -> None:
        target = self.manager.target
        self._logger.info(
            "discord.ready",
            user=str(self.user),
            guild_id=target.guild_id,
            channel_id=target.channel_id,
        )
        if self.arbiter is not None or self.user is None:
            return
        owner_id = self.config.presence.owner_id
        self.arbiter = PresenceArbiter(self.manager, owner_id, agent_id=self.user.id)
        self.commands = CommandDispatcher(self.manager, self.arbiter, owner_id)

        try:
            owner_channel_id = await self.platform.fetch_voice_channel_id(
                target.guild_id
            )
        except discord.HTTPException as exc:
            self._logger.warning("discord.startup_voice_state_failed", error=str(exc))
            owner_channel_id = None
        await self.arbiter.startup(owner_channel_id)

    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        if self.arbiter is None or self._shutting_down:
            return
        change = VoiceStateChange(
            user_id=member.id,
            guild_id=member.guild.id,
            before_channel_id=before.channel.id if before.channel else None,
            after_channel_id=after.channel.id if after.channel else None,
        )
        try:
            await self.arbiter.handle_voice_state(change)
        except Exception as exc:
            self._logger.exception(
                "discord.voice_state_handler_failed", error=str(exc)
            )

    async def on_message(self, message: discord.Message) -> None:
        if self.commands is None or self._shutting_down:
            return
        incoming = IncomingMessage(
            author_id=message.author.id,
            content=message.content or "",
            delete=message.delete,
        )
        try:
            await self.commands.dispatch(incoming)
        except Exception as exc:
            self._logger.exception("discord.command_failed", error=str(exc))

    def request_shutdown(self, reason: str) -> asyncio.Task[None]:
        """Start ``shutdown`` in the background; repeated calls share one task."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.get_running_loop().create_task(
                self.shutdown(reason)
            )
        return self._shutdown_task

    async def shutdown(self, reason: str = "shutdown") -> None:
        """Leave voice, flush notifications and close the session. Idempotent."""
        if self._shutting_down:
            return
        self._shutting_down = True
        self._logger.info("discord.shutdown", reason=reason)
        await self.manager.close()
        try:
            await self.manager.leave()
        except Exception as exc:
            self._logger.warning("discord.shutdown_leave_failed", error=str(exc))
        await self.notifier.aclose()
        await self.close()

    @staticmethod
    def _build_intents(names: tuple[str, ...]) -> discord.Intents:
        intents = discord.Intents.none()
        for name in names:
            if hasattr(intents, name):
                setattr(intents, name, True)
        return intents


async def run_bot(config: AgentConfig) -> None:
    """Start the bot and run until closed or signalled."""
    logger = get_logger(__name__, service_name="presence")
    bot = PresenceBot(config)
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda s=sig: bot.request_shutdown(s.name))
        except NotImplementedError:
            # add_signal_handler is unavailable on some platforms (Windows).
            pass

    try:
        await bot.start(config.presence.token)
    except discord.LoginFailure as exc:
        logger.error("discord.login_failed", error=str(exc))
        raise
    finally:
        await bot.request_shutdown("exit")


__all__ = [
    "DiscordVoiceHandle",
    "DiscordVoicePlatform",
    "PresenceBot",
    "run_bot",
    "status_of",
]
