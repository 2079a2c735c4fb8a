"""Unit tests for the discord.py adapter layer."""

import asyncio
from unittest.mock import AsyncMock, Mock, PropertyMock, patch

import discord
import pytest

from services.common.config import LoggingConfig
from services.presence.arbiter import VoiceStateChange
from services.presence.commands import IncomingMessage
from services.presence.config import AgentConfig, PresenceConfig
from services.presence.discord_voice import (
    DiscordVoiceHandle,
    DiscordVoicePlatform,
    PresenceBot,
    status_of,
)
from services.presence.state import ConnectionStatus, JoinResult, TargetLocation
from services.presence.voice import TargetNotFoundError
from services.tests.mocks.voice_platform import (
    GUILD_ID,
    OTHER_CHANNEL_ID,
    OWNER_ID,
    TARGET_CHANNEL_ID,
    USER_ID,
)

TARGET = TargetLocation(guild_id=GUILD_ID, channel_id=TARGET_CHANNEL_ID)


def http_error(cls, text: str, status: int = 404):
    response = Mock(status=status, reason=text)
    return cls(response, text)


def voice_client(connected: bool = True, flow_state: str = "connected") -> Mock:
    client = Mock()
    client.is_connected.return_value = connected
    client._connection.state.name = flow_state
    client.disconnect = AsyncMock()
    return client


@pytest.mark.parametrize(
    ("connected", "flow_state", "expected"),
    [
        (True, "connected", ConnectionStatus.READY),
        (False, "set_guild_voice_state", ConnectionStatus.SIGNALLING),
        (False, "got_voice_server_update", ConnectionStatus.SIGNALLING),
        (False, "websocket_connected", ConnectionStatus.CONNECTING),
        (False, "got_ip_discovery", ConnectionStatus.CONNECTING),
        (False, "disconnected", ConnectionStatus.DISCONNECTED),
    ],
)
def test_status_of(connected, flow_state, expected):
    assert status_of(voice_client(connected, flow_state)) is expected


def voice_channel(members=(), user_limit=0) -> Mock:
    channel = Mock(spec=discord.VoiceChannel)
    channel.id = TARGET_CHANNEL_ID
    channel.name = "parking"
    channel.user_limit = user_limit
    channel.members = [Mock(id=member_id) for member_id in members]
    channel.guild = Mock(voice_client=None)
    return channel


@pytest.mark.asyncio
class TestDiscordVoiceHandle:
    async def test_connect_reaches_ready(self):
        channel = voice_channel()
        client = voice_client()
        channel.connect = AsyncMock(return_value=client)
        handle = DiscordVoiceHandle(
            channel,
            self_mute=True,
            self_deaf=False,
            connect_timeout=1.0,
            poll_interval=0.01,
        )

        handle.start()
        status = await handle.wait_for({ConnectionStatus.READY}, 1.0)

        assert status is ConnectionStatus.READY
        channel.connect.assert_awaited_once_with(
            timeout=1.0, reconnect=True, self_mute=True, self_deaf=False
        )
        await handle.destroy()
        client.disconnect.assert_awaited_once_with(force=True)
        assert handle.status is ConnectionStatus.DESTROYED

    async def test_connect_failure_reports_disconnected(self):
        channel = voice_channel()
        channel.connect = AsyncMock(side_effect=asyncio.TimeoutError())
        handle = DiscordVoiceHandle(
            channel,
            self_mute=True,
            self_deaf=False,
            connect_timeout=1.0,
            poll_interval=0.01,
        )

        handle.start()
        status = await handle.wait_for(
            {ConnectionStatus.READY, ConnectionStatus.DISCONNECTED}, 1.0
        )

        assert status is ConnectionStatus.DISCONNECTED
        await handle.destroy()
        assert handle.status is ConnectionStatus.DESTROYED

    async def test_monitor_reports_drop(self):
        channel = voice_channel()
        client = voice_client()
        channel.connect = AsyncMock(return_value=client)
        handle = DiscordVoiceHandle(
            channel,
            self_mute=True,
            self_deaf=False,
            connect_timeout=1.0,
            poll_interval=0.01,
        )
        handle.start()
        await handle.wait_for({ConnectionStatus.READY}, 1.0)

        client.is_connected.return_value = False
        client._connection.state.name = "disconnected"
        status = await handle.wait_for({ConnectionStatus.DISCONNECTED}, 1.0)

        assert status is ConnectionStatus.DISCONNECTED
        await handle.destroy()


@pytest.mark.asyncio
class TestDiscordVoicePlatform:
    """Fresh fetches through the REST API."""

    @pytest.fixture
    def guild(self):
        guild = Mock(spec=discord.Guild)
        guild.id = GUILD_ID
        guild.voice_client = None
        return guild

    @pytest.fixture
    def client(self, guild):
        client = Mock(spec=discord.Client)
        client.user = Mock(id=USER_ID)
        client.get_guild = Mock(return_value=guild)
        client.http = Mock()
        client.http.request = AsyncMock()
        return client

    @pytest.fixture
    def platform(self, client):
        return DiscordVoicePlatform(
            client, owner_id=OWNER_ID, connect_timeout=1.0, poll_interval=0.01
        )

    async def test_fetch_channel_snapshot(self, platform, guild):
        guild.fetch_channel = AsyncMock(
            return_value=voice_channel(members=(USER_ID, 7), user_limit=2)
        )

        snapshot = await platform.fetch_channel(TARGET)

        guild.fetch_channel.assert_awaited_once_with(TARGET_CHANNEL_ID)
        assert snapshot.user_limit == 2
        assert snapshot.member_ids == frozenset({USER_ID, 7})
        assert not snapshot.is_full(excluding=USER_ID)

    async def test_fetch_channel_not_found(self, platform, guild):
        guild.fetch_channel = AsyncMock(
            side_effect=http_error(discord.NotFound, "Unknown Channel")
        )

        with pytest.raises(TargetNotFoundError):
            await platform.fetch_channel(TARGET)

    async def test_fetch_channel_rejects_text_channel(self, platform, guild):
        guild.fetch_channel = AsyncMock(return_value=Mock(spec=discord.TextChannel))

        with pytest.raises(TargetNotFoundError):
            await platform.fetch_channel(TARGET)

    async def test_unknown_guild(self, platform, client):
        client.get_guild.return_value = None
        client.fetch_guild = AsyncMock(
            side_effect=http_error(discord.Forbidden, "Missing Access", status=403)
        )

        with pytest.raises(TargetNotFoundError):
            await platform.fetch_channel(TARGET)

    async def test_fetch_owner_voice_channel(self, platform, client):
        client.http.request.return_value = {"channel_id": str(TARGET_CHANNEL_ID)}

        assert await platform.fetch_voice_channel_id(GUILD_ID) == TARGET_CHANNEL_ID
        route = client.http.request.await_args.args[0]
        assert route.method == "GET"
        assert route.url.endswith(f"/guilds/{GUILD_ID}/voice-states/{OWNER_ID}")

    @pytest.mark.parametrize(
        "response",
        [{"channel_id": None}, http_error(discord.NotFound, "Unknown Voice State")],
    )
    async def test_not_in_voice(self, platform, client, response):
        if isinstance(response, Exception):
            client.http.request.side_effect = response
        else:
            client.http.request.return_value = response

        assert await platform.fetch_voice_channel_id(GUILD_ID) is None

    async def test_disconnect_orphan(self, platform, guild):
        orphan = voice_client()
        guild.voice_client = orphan

        assert await platform.disconnect_orphan(GUILD_ID) is True
        orphan.disconnect.assert_awaited_once_with(force=True)

    async def test_no_orphan(self, platform):
        assert await platform.disconnect_orphan(GUILD_ID) is False


def test_build_intents():
    intents = PresenceBot._build_intents(
        ("guilds", "voice_states", "message_content", "not_an_intent")
    )

    assert intents.guilds
    assert intents.voice_states
    assert intents.message_content
    assert not intents.members


@pytest.mark.asyncio
class TestPresenceBot:
    """Gateway events translated into presence operations."""

    @pytest.fixture
    def bot(self):
        config = AgentConfig(
            presence=PresenceConfig(
                token="token-value",
                guild_id=GUILD_ID,
                channel_id=TARGET_CHANNEL_ID,
                owner_id=OWNER_ID,
                webhook_url="",
            ),
            logging=LoggingConfig(),
        )
        return PresenceBot(config)

    async def test_on_ready_pauses_when_owner_in_target(self, bot):
        bot.platform.fetch_voice_channel_id = AsyncMock(return_value=TARGET_CHANNEL_ID)

        with patch.object(
            type(bot), "user", new_callable=PropertyMock, return_value=Mock(id=USER_ID)
        ):
            await bot.on_ready()
            arbiter = bot.arbiter
            await bot.on_ready()

        assert bot.state.paused
        assert bot.state.pause_reason == "owner_in_target"
        assert bot.commands is not None
        assert bot.arbiter is arbiter

    async def test_on_ready_joins_when_voice_state_unavailable(self, bot):
        bot.platform.fetch_voice_channel_id = AsyncMock(
            side_effect=http_error(
                discord.HTTPException, "Service Unavailable", status=503
            )
        )
        bot.manager.join = AsyncMock(return_value=JoinResult.success())

        with patch.object(
            type(bot), "user", new_callable=PropertyMock, return_value=Mock(id=USER_ID)
        ):
            await bot.on_ready()

        bot.manager.join.assert_awaited_once()

    async def test_voice_state_update_forwarded(self, bot):
        bot.arbiter = Mock()
        bot.arbiter.handle_voice_state = AsyncMock()
        member = Mock(id=OWNER_ID, guild=Mock(id=GUILD_ID))
        before = Mock(channel=None)
        after = Mock(channel=Mock(id=OTHER_CHANNEL_ID))

        await bot.on_voice_state_update(member, before, after)

        bot.arbiter.handle_voice_state.assert_awaited_once_with(
            VoiceStateChange(
                user_id=OWNER_ID,
                guild_id=GUILD_ID,
                before_channel_id=None,
                after_channel_id=OTHER_CHANNEL_ID,
            )
        )

    async def test_on_message_dispatches_command(self, bot):
        bot.commands = Mock()
        bot.commands.dispatch = AsyncMock()
        message = Mock()
        message.author.id = OWNER_ID
        message.content = "!vc status"
        message.delete = AsyncMock()

        await bot.on_message(message)

        bot.commands.dispatch.assert_awaited_once_with(
            IncomingMessage(
                author_id=OWNER_ID, content="!vc status", delete=message.delete
            )
        )

    async def test_events_ignored_before_ready(self, bot):
        message = Mock()
        message.delete = AsyncMock()

        await bot.on_message(message)
        await bot.on_voice_state_update(Mock(), Mock(), Mock())

        message.delete.assert_not_awaited()

    async def test_shutdown_is_idempotent(self, bot):
        bot.manager.leave = AsyncMock(return_value=True)
        bot.close = AsyncMock()

        await bot.shutdown("SIGTERM")
        await bot.shutdown("exit")

        bot.manager.leave.assert_awaited_once()
        bot.close.assert_awaited_once()

    async def test_request_shutdown_shares_one_task(self, bot):
        bot.manager.leave = AsyncMock(return_value=True)
        bot.close = AsyncMock()

        task = bot.request_shutdown("SIGINT")
        assert bot.request_shutdown("SIGTERM") is task
        await task

        bot.close.assert_awaited_once()
        assert task.done()

    async def test_owner_commands_after_ready(self, bot):
        bot.platform.fetch_voice_channel_id = AsyncMock(return_value=OTHER_CHANNEL_ID)

        with patch.object(
            type(bot), "user", new_callable=PropertyMock, return_value=Mock(id=USER_ID)
        ):
            await bot.on_ready()

        delete = AsyncMock()
        assert (
            await bot.commands.dispatch(
                IncomingMessage(author_id=OWNER_ID, content="!vc status", delete=delete)
            )
            == "paused"
        )
        delete.assert_awaited_once()
