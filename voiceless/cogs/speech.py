# voiceless/cogs/speech.py
from __future__ import annotations

import logging

import discord
import openai
from discord.ext import commands

from voiceless.core.state import GuildRegistry, QueuedClip
from voiceless.core.text import clean_message, extract_instructions
from voiceless.services.playback import DeliveryQueue
from voiceless.services.prompts import apply_flavor_prompt, attachment_placeholder, describe_attachments
from voiceless.services.synth import VoiceSynthesizer

log = logging.getLogger(__name__)


def _is_image(attachment: discord.Attachment) -> bool:
    return bool(attachment.content_type) and "image" in attachment.content_type


class SpeechCog(commands.Cog):
    """
    Turns messages from monitored users into queued voice clips.
    Only speaks when the bot is in voice in that guild and the author is in
    voice and not deafened.
    """

    def __init__(
        self,
        bot: commands.Bot,
        settings,
        registry: GuildRegistry,
        connections,
        queue: DeliveryQueue,
        synth: VoiceSynthesizer,
        openai_client: openai.AsyncOpenAI,
    ):
        self.bot = bot
        self.settings = settings
        self.registry = registry
        self.connections = connections
        self.queue = queue
        self.synth = synth
        self.openai_client = openai_client

    # ---------------- text preparation ----------------

    async def _attachment_sentence(self, images: list[discord.Attachment]) -> str:
        if not self.settings.describe_attachments:
            return attachment_placeholder(len(images))
        return await describe_attachments(
            self.openai_client,
            self.settings.openai_chat_model,
            self.settings.attachment_prompt,
            [a.url for a in images],
            detail=self.settings.attachment_detail,
            max_tokens=self.settings.max_attachment_tokens,
        )

    async def prepare_text(self, message: discord.Message) -> tuple[str, str | None]:
        """Returns (speakable text, voice instructions). Empty text means nothing to say."""
        text = clean_message(
            message.content,
            users={u.id: u.display_name for u in message.mentions},
            channels={c.id: c.name for c in message.channel_mentions},
            roles={r.id: r.name for r in message.role_mentions},
        )
        text, instructions = extract_instructions(text)

        images = [a for a in message.attachments if _is_image(a)]
        if images:
            sentence = await self._attachment_sentence(images)
            text = f"{text}. {sentence}" if text.strip() else sentence

        if not text.strip():
            return "", instructions

        if self.settings.flavor_prompt:
            text = await apply_flavor_prompt(
                self.openai_client, self.settings.openai_chat_model, self.settings.flavor_prompt, text
            )

        return text, instructions

    # ---------------- gating ----------------

    def _should_speak(self, message: discord.Message) -> bool:
        gid = message.guild.id
        uid = message.author.id

        if message.channel.id not in self.registry.listened_channels(gid, uid):
            return False

        silencer = self.settings.silencer
        if silencer and (message.content or "").startswith(silencer):
            return False

        if self.connections.handle(gid) is None:
            return False

        presence = self.registry.presence.get(gid, uid)
        return presence is not None and presence.reachable

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message):
        if message.guild is None or message.author.bot:
            return
        if not self.registry.is_monitored(message.guild.id, message.author.id):
            return

        # .listening and friends are handled by the command layer
        ctx = await self.bot.get_context(message)
        if ctx.valid:
            return

        if not self._should_speak(message):
            return

        try:
            text, instructions = await self.prepare_text(message)
            if not text:
                return
        except openai.OpenAIError as e:
            log.warning("text preparation failed for message=%s: %s", message.id, e)
            return

        audio = await self.synth.synthesize(text, self.registry.voice_for(message.author.id), instructions)
        if audio is None:
            return

        self.queue.submit(QueuedClip(audio, message.guild.id, self.synth.audio_format))
