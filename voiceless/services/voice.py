# voiceless/services/voice.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import discord

from voiceless.core.errors import VoiceConnectError
from voiceless.core.state import GuildRegistry, GuildVoiceLink

log = logging.getLogger(__name__)


class VoiceTransport(Protocol):
    """What the connection manager and the pipeline need from the voice gateway."""

    async def join_voice(self, guild_id: int, channel_id: int) -> Any: ...

    async def close_voice(self, handle: Any) -> None: ...

    async def send_voice_state_leave(self, guild_id: int) -> None: ...

    def create_output_sink(self, handle: Any) -> Any: ...


class VoiceClientSink:
    """
    Raw Opus packet sink over a discord.py VoiceClient.
    Paces writes at one 20ms frame per packet, the same way discord's AudioPlayer does.
    """

    DELAY = 0.02

    def __init__(self, voice_client: discord.VoiceClient):
        self.voice_client = voice_client
        self._start: float | None = None
        self._loops = 0

    async def write(self, packet: bytes) -> None:
        loop = asyncio.get_running_loop()
        if self._start is None:
            self._start = loop.time()

        self._loops += 1
        self.voice_client.send_audio_packet(packet, encode=False)

        next_time = self._start + self.DELAY * self._loops
        await asyncio.sleep(max(0.0, next_time - loop.time()))


class DiscordVoiceTransport:
    def __init__(self, bot: discord.Client, connect_timeout: float = 30.0):
        self.bot = bot
        self.connect_timeout = connect_timeout

    async def _resolve_channel(self, channel_id: int):
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            channel = await self.bot.fetch_channel(channel_id)
        return channel

    async def join_voice(self, guild_id: int, channel_id: int) -> discord.VoiceClient:
        channel = await self._resolve_channel(channel_id)
        if not isinstance(channel, (discord.VoiceChannel, discord.StageChannel)):
            raise VoiceConnectError(guild_id, channel_id, "not a voice channel")

        # a voice client we don't track (e.g. left over from a gateway resume) blocks connect()
        stale = channel.guild.voice_client
        if stale is not None:
            await stale.disconnect(force=True)

        vc = await channel.connect(timeout=self.connect_timeout, reconnect=True)
        try:
            await vc.ws.speak(discord.SpeakingState.voice)
        except Exception:
            await vc.disconnect(force=True)
            raise
        return vc

    async def close_voice(self, handle: discord.VoiceClient) -> None:
        await handle.disconnect(force=True)

    async def send_voice_state_leave(self, guild_id: int) -> None:
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            return
        await guild.change_voice_state(channel=None)

    def create_output_sink(self, handle: discord.VoiceClient) -> VoiceClientSink:
        return VoiceClientSink(handle)


class VoiceConnectionManager:
    """
    One outbound voice connection per guild.

    Every join / switch / leave runs under that guild's lock, so two presence
    events racing each other can't double-join. Reads of the current channel
    don't take the lock and may be briefly stale.
    """

    def __init__(self, registry: GuildRegistry, transport: VoiceTransport):
        self.registry = registry
        self.transport = transport

    def current_channel(self, guild_id: int) -> int | None:
        return self.registry.current_channel(guild_id)

    def handle(self, guild_id: int) -> Any | None:
        state = self.registry.get(guild_id)
        if state is None or state.link is None:
            return None
        return state.link.handle

    async def _teardown(self, guild_id: int, link: GuildVoiceLink) -> None:
        try:
            await self.transport.close_voice(link.handle)
        except Exception as e:
            log.warning("voice close failed guild=%s channel=%s: %s", guild_id, link.channel_id, e)

    async def connect(self, guild_id: int, channel_id: int) -> None:
        state = self.registry.get(guild_id)
        if state is None:
            raise VoiceConnectError(guild_id, channel_id, "guild is not configured")

        async with state.lock:
            if state.link is not None and state.link.channel_id == channel_id:
                return

            if state.link is not None:
                old, state.link = state.link, None
                await self._teardown(guild_id, old)

            try:
                handle = await self.transport.join_voice(guild_id, channel_id)
            except VoiceConnectError:
                raise
            except Exception as e:
                raise VoiceConnectError(guild_id, channel_id, f"{type(e).__name__}: {e}") from e

            state.link = GuildVoiceLink(channel_id=channel_id, handle=handle)
            log.info("voice connected guild=%s channel=%s", guild_id, channel_id)

    async def disconnect(self, guild_id: int) -> None:
        state = self.registry.get(guild_id)
        if state is None:
            return

        async with state.lock:
            link, state.link = state.link, None
            if link is None:
                return

            await self._teardown(guild_id, link)

            # some servers keep showing the bot in the channel until it says so explicitly
            try:
                await self.transport.send_voice_state_leave(guild_id)
            except Exception as e:
                log.warning("voice leave signal failed guild=%s: %s", guild_id, e)

            log.info("voice disconnected guild=%s channel=%s", guild_id, link.channel_id)

    async def follow(self, guild_id: int) -> int | None:
        """
        Move the guild's connection to wherever the monitored users are.
        Returns the target channel (None = left voice).
        """
        target = self.registry.target_channel(guild_id)

        if target is None:
            await self.disconnect(guild_id)
            return None

        if self.current_channel(guild_id) == target:
            return target

        await self.connect(guild_id, target)
        return target
