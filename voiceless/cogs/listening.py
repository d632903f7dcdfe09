# voiceless/cogs/listening.py
from __future__ import annotations

from discord.ext import commands

from voiceless.core.state import GuildRegistry
from voiceless.ui.formatting import listening_reply


class ListeningCog(commands.Cog):
    def __init__(self, bot: commands.Bot, registry: GuildRegistry):
        self.bot = bot
        self.registry = registry

    @commands.command(name="listening")
    @commands.guild_only()
    async def listening(self, ctx: commands.Context):
        """
        Which text channels am I reading for you here?
        Usage:
          .listening
        """
        gid = ctx.guild.id
        uid = ctx.author.id

        # silent for anyone who isn't monitored in this guild
        if not self.registry.is_monitored(gid, uid):
            return

        await ctx.send(listening_reply(sorted(self.registry.listened_channels(gid, uid))))
