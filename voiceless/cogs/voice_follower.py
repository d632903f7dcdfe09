# voiceless/cogs/voice_follower.py
from __future__ import annotations

import logging

import discord
from discord.ext import commands

from voiceless.core.errors import VoiceConnectError
from voiceless.core.state import GuildRegistry, VoicePresence
from voiceless.services.voice import VoiceConnectionManager
from voiceless.ui.formatting import presenter_nickname

log = logging.getLogger(__name__)


class VoiceFollowerCog(commands.Cog):
    """
    Follows the monitored users around voice:
    - Bootstraps presence on ready by scanning voice channels
    - Every monitored voice-state event replaces that user's tracked presence
    - Re-targets the guild's voice connection (join / switch / leave)
    - Keeps the bot's nickname in sync ("<name>'s Mic", "Multi-User Mic", idle)
    """

    def __init__(self, bot: commands.Bot, settings, registry: GuildRegistry, connections: VoiceConnectionManager):
        self.bot = bot
        self.settings = settings
        self.registry = registry
        self.connections = connections

    # ---------------- nickname helpers ----------------

    def _display_names(self, guild: discord.Guild) -> dict[int, str]:
        names: dict[int, str] = {}
        for uid in self.registry.monitored_users(guild.id):
            member = guild.get_member(uid)
            if member is not None:
                names[uid] = member.display_name
        return names

    async def sync_nickname(self, guild: discord.Guild) -> None:
        nick = presenter_nickname(
            self.registry.target_channel(guild.id),
            self.registry.monitored_presence(guild.id),
            self._display_names(guild),
            idle=self.settings.idle_nickname,
        )

        me = guild.me
        # Avoid spamming edits
        if me is None or me.nick == nick:
            return

        try:
            await me.edit(nick=nick, reason="Voiceless: following monitored users")
        except (discord.Forbidden, discord.HTTPException):
            # Missing Change Nickname permission; never blocks the voice side
            return

    # ---------------- following ----------------

    async def _follow(self, guild_id: int) -> None:
        try:
            await self.connections.follow(guild_id)
        except VoiceConnectError as e:
            # next presence event retries
            log.warning("could not join voice: %s", e)

    # ---------------- bootstrap ----------------

    @staticmethod
    def voice_snapshot(guild: discord.Guild) -> list[VoicePresence]:
        snapshot: list[VoicePresence] = []
        for ch in list(guild.voice_channels) + list(guild.stage_channels):
            for uid, vs in ch.voice_states.items():
                snapshot.append(VoicePresence(uid, ch.id, bool(vs.self_deaf), bool(vs.deaf)))
        return snapshot

    async def bootstrap_voice_state(self) -> None:
        """
        Seed presence for every configured guild from the cached voice channels,
        then set the nickname and join wherever the monitored users are.
        """
        total_guilds = 0
        total_tracked = 0

        for gid in self.registry.guild_ids():
            guild = self.bot.get_guild(gid)
            if guild is None:
                print(f"[Voiceless] ⚠️ configured guild {gid} not visible to the bot, skipping")
                continue

            total_guilds += 1
            total_tracked += self.registry.presence.seed(
                gid, self.voice_snapshot(guild), self.registry.monitored_users(gid)
            )

            await self.sync_nickname(guild)
            await self._follow(gid)

        print(f"[Voiceless] voice bootstrap ✅ guilds={total_guilds} tracked={total_tracked}")

    @commands.Cog.listener()
    async def on_ready(self):
        await self.bootstrap_voice_state()

    # ---------------- gateway events ----------------

    @commands.Cog.listener()
    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ):
        guild_id = member.guild.id
        if not self.registry.is_monitored(guild_id, member.id):
            return

        self.registry.presence.update(
            guild_id,
            member.id,
            after.channel.id if after.channel is not None else None,
            bool(after.self_deaf),
            bool(after.deaf),
        )

        await self.sync_nickname(member.guild)
        await self._follow(guild_id)

    @commands.Cog.listener()
    async def on_member_update(self, before: discord.Member, after: discord.Member):
        if not self.registry.is_monitored(after.guild.id, after.id):
            return
        await self.sync_nickname(after.guild)
