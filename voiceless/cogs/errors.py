# voiceless/cogs/errors.py
import logging

import discord
from discord.ext import commands

log = logging.getLogger(__name__)


class ErrorHandlerCog(commands.Cog):
    def __init__(self, bot: commands.Bot):
        self.bot = bot

    @commands.Cog.listener()
    async def on_command_error(self, ctx: commands.Context, error: Exception):
        # the "." prefix catches plenty of ordinary chat ("...", ".5 seconds")
        if isinstance(error, (commands.CommandNotFound, commands.NoPrivateMessage)):
            return

        if isinstance(error, commands.CommandInvokeError) and isinstance(error.original, discord.Forbidden):
            log.warning("missing permissions for %s in channel=%s", ctx.command, ctx.channel.id)
            return

        log.error("command %s failed", ctx.command, exc_info=error)
        try:
            await ctx.reply(f"Command error: `{type(error).__name__}`")
        except discord.HTTPException:
            pass
