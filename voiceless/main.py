# voiceless/main.py
import asyncio
import logging

import discord
import openai
from discord.ext import commands

from voiceless.config import load_settings
from voiceless.core.state import GuildRegistry
from voiceless.loader import load_all
from voiceless.services.playback import DeliveryQueue
from voiceless.services.synth import build_synthesizer
from voiceless.services.transcode import Transcoder
from voiceless.services.voice import DiscordVoiceTransport, VoiceConnectionManager

logging.basicConfig(level=logging.INFO)


async def run():
    settings = load_settings()
    print(f"[Voiceless] PREFIX='{settings.command_prefix}' (env={settings.env})")

    intents = discord.Intents.default()
    intents.message_content = True
    intents.voice_states = True
    intents.members = True

    bot = commands.Bot(
        command_prefix=settings.command_prefix,
        intents=intents,
        case_insensitive=True,
        help_command=None,
    )

    registry = GuildRegistry(settings.targets)
    print(f"[Voiceless] monitoring users={len(settings.targets)} guilds={len(registry.guild_ids())}")

    openai_client = openai.AsyncOpenAI(api_key=settings.openai_token)
    synth = await build_synthesizer(settings, openai_client)

    transport = DiscordVoiceTransport(bot)
    connections = VoiceConnectionManager(registry, transport)
    transcoder = Transcoder(
        transport,
        ffmpeg_path=settings.ffmpeg_path,
        encoder_timeout=settings.encoder_timeout_seconds,
        decoder_timeout=settings.decoder_timeout_seconds,
    )
    queue = DeliveryQueue(registry, connections, transcoder.play)

    @bot.event
    async def setup_hook():
        await load_all(
            bot,
            settings,
            registry,
            connections=connections,
            queue=queue,
            synth=synth,
            openai_client=openai_client,
        )
        print("[Voiceless] setup_hook: cogs loaded ✅")

    @bot.event
    async def on_ready():
        print(f"[Voiceless] ✅ ONLINE as {bot.user} | guilds={len(bot.guilds)} | env={settings.env}")

    @bot.event
    async def on_message(message: discord.Message):
        if message.author.bot:
            return
        await bot.process_commands(message)

    try:
        await bot.start(settings.token)
    finally:
        await queue.close()
        await synth.close()
        await openai_client.close()
        if not bot.is_closed():
            await bot.close()


def main():
    asyncio.run(run())


if __name__ == "__main__":
    main()
