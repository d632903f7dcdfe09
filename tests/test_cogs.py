import asyncio
import dataclasses
import io
from types import SimpleNamespace
from unittest.mock import AsyncMock

import discord
import openai
import pytest
from discord.ext import commands

from voiceless.cogs.errors import ErrorHandlerCog
from voiceless.cogs.listening import ListeningCog
from voiceless.cogs.speech import SpeechCog
from voiceless.cogs.voice_follower import VoiceFollowerCog
from voiceless.config import Settings
from voiceless.services.playback import DeliveryQueue
from voiceless.services.voice import VoiceConnectionManager

from conftest import GUILD_A, GUILD_B, FakeTransport

SETTINGS = Settings(token="t", openai_token="k")


# ---------------- fakes ----------------

class FakeMe:
    def __init__(self, forbidden: bool = False):
        self.nick = None
        self.edits: list[str] = []
        self.forbidden = forbidden

    async def edit(self, *, nick, reason=None):
        if self.forbidden:
            raise discord.Forbidden(SimpleNamespace(status=403, reason="Forbidden"), "Missing Permissions")
        self.edits.append(nick)
        self.nick = nick


class FakeGuild:
    def __init__(self, guild_id, names=None, voice=None, me=None):
        self.id = guild_id
        self.names = names or {}
        self.me = me or FakeMe()
        # {channel_id: {user_id: (self_deaf, deaf)}}
        self.voice_channels = [
            SimpleNamespace(
                id=cid,
                voice_states={uid: SimpleNamespace(self_deaf=sd, deaf=d) for uid, (sd, d) in states.items()},
            )
            for cid, states in (voice or {}).items()
        ]
        self.stage_channels = []

    def get_member(self, user_id):
        name = self.names.get(user_id)
        return SimpleNamespace(id=user_id, display_name=name) if name else None


class FakeSynth:
    audio_format = "ogg"

    def __init__(self):
        self.calls = []

    async def synthesize(self, text, voice=None, instructions=None):
        self.calls.append((text, voice, instructions))
        return io.BytesIO(text.encode())


class FakeQueue:
    def __init__(self):
        self.clips = []

    def submit(self, clip):
        self.clips.append(clip)


def make_bot(guilds=(), command=False):
    by_id = {g.id: g for g in guilds}
    return SimpleNamespace(
        get_guild=by_id.get,
        get_context=AsyncMock(return_value=SimpleNamespace(valid=command)),
    )


def make_message(content="hello", *, author=1, channel=10, guild=GUILD_A, bot=False, attachments=(), mentions=()):
    return SimpleNamespace(
        id=555,
        content=content,
        guild=SimpleNamespace(id=guild) if guild is not None else None,
        author=SimpleNamespace(id=author, bot=bot),
        channel=SimpleNamespace(id=channel),
        mentions=list(mentions),
        channel_mentions=[],
        role_mentions=[],
        attachments=list(attachments),
    )


def voice_state(channel_id, self_deaf=False, deaf=False):
    channel = SimpleNamespace(id=channel_id) if channel_id is not None else None
    return SimpleNamespace(channel=channel, self_deaf=self_deaf, deaf=deaf)


def chat_client(content):
    create = AsyncMock(return_value=SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))]))
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


async def wait_drained(queue, guild_id):
    async def _poll():
        while queue.pending(guild_id):
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), 5)


# ---------------- speech ----------------

@pytest.fixture
def speech(registry, connections):
    def build(settings=SETTINGS, *, command=False, openai_client=None):
        synth, queue = FakeSynth(), FakeQueue()
        cog = SpeechCog(make_bot(command=command), settings, registry, connections, queue, synth, openai_client)
        return cog, synth, queue

    return build


async def in_voice(registry, connections, user=1, channel=30, self_deaf=False):
    registry.presence.update(GUILD_A, user, channel, self_deaf, False)
    await connections.connect(GUILD_A, channel)


@pytest.mark.asyncio
async def test_message_from_present_user_is_spoken(speech, registry, connections):
    await in_voice(registry, connections)
    cog, synth, queue = speech()

    await cog.on_message(make_message("%softly% good morning"))

    assert synth.calls == [("good morning", "alloy", "softly")]
    assert len(queue.clips) == 1
    assert queue.clips[0].guild_id == GUILD_A
    assert queue.clips[0].audio_format == "ogg"


@pytest.mark.asyncio
async def test_each_user_speaks_with_their_voice(speech, registry, connections):
    await in_voice(registry, connections, user=2)
    cog, synth, _ = speech()

    await cog.on_message(make_message("hi", author=2))

    assert synth.calls[0][1] == "echo"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "message",
    [
        make_message("hi", channel=99),
        make_message("hi", author=42),
        make_message("hi", bot=True),
        make_message("hi", guild=None),
        make_message("hi", author=3),
    ],
)
async def test_messages_outside_the_listened_scope_are_ignored(speech, registry, connections, message):
    await in_voice(registry, connections)
    cog, synth, queue = speech()

    await cog.on_message(message)

    assert synth.calls == []
    assert queue.clips == []


@pytest.mark.asyncio
async def test_silencer_prefix_mutes_a_message(speech, registry, connections):
    await in_voice(registry, connections)
    cog, synth, _ = speech(dataclasses.replace(SETTINGS, silencer="!"))

    await cog.on_message(make_message("!not this one"))
    await cog.on_message(make_message("but this one"))

    assert [c[0] for c in synth.calls] == ["but this one"]


@pytest.mark.asyncio
async def test_deafened_author_is_not_spoken(speech, registry, connections):
    await in_voice(registry, connections, self_deaf=True)
    cog, synth, _ = speech()

    await cog.on_message(make_message("hi"))

    assert synth.calls == []


@pytest.mark.asyncio
async def test_nothing_is_spoken_while_bot_is_not_in_voice(speech, registry):
    registry.presence.update(GUILD_A, 1, 30, False, False)
    cog, synth, _ = speech()

    await cog.on_message(make_message("hi"))

    assert synth.calls == []


@pytest.mark.asyncio
async def test_commands_are_not_spoken(speech, registry, connections):
    await in_voice(registry, connections)
    cog, synth, _ = speech(command=True)

    await cog.on_message(make_message(".listening"))

    assert synth.calls == []


@pytest.mark.asyncio
async def test_empty_text_is_not_spoken(speech, registry, connections):
    await in_voice(registry, connections)
    cog, synth, _ = speech()

    await cog.on_message(make_message("https://example.com"))

    assert synth.calls == []


@pytest.mark.asyncio
async def test_mentions_and_image_attachments_become_words(speech, registry, connections):
    await in_voice(registry, connections)
    cog, synth, _ = speech()
    image = SimpleNamespace(content_type="image/png", url="https://cdn/x.png")
    other = SimpleNamespace(content_type="application/pdf", url="https://cdn/x.pdf")

    await cog.on_message(make_message(
        "look <@2>",
        mentions=[SimpleNamespace(id=2, display_name="Tea")],
        attachments=[image, other],
    ))
    await cog.on_message(make_message("", attachments=[image, image]))

    assert synth.calls[0][0] == "look  at Tea. I've attached 1 images to my post."
    assert synth.calls[1][0] == "I've attached 2 images to my post."


@pytest.mark.asyncio
async def test_flavor_prompt_rewrites_before_speaking(speech, registry, connections):
    await in_voice(registry, connections)
    client = chat_client("Ahoy!")
    cog, synth, _ = speech(dataclasses.replace(SETTINGS, flavor_prompt="pirate"), openai_client=client)

    await cog.on_message(make_message("hello"))

    assert synth.calls[0][0] == "Ahoy!"


@pytest.mark.asyncio
async def test_failed_text_preparation_skips_the_message(speech, registry, connections):
    await in_voice(registry, connections)
    client = SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(
        create=AsyncMock(side_effect=openai.OpenAIError("down"))
    )))
    cog, synth, queue = speech(dataclasses.replace(SETTINGS, flavor_prompt="pirate"), openai_client=client)

    await cog.on_message(make_message("hello"))

    assert synth.calls == []
    assert queue.clips == []


# ---------------- voice follower ----------------

def follower(registry, connections, *guilds):
    return VoiceFollowerCog(make_bot(guilds), SETTINGS, registry, connections)


@pytest.mark.asyncio
async def test_bootstrap_seeds_presence_and_joins(registry, connections, transport):
    guild = FakeGuild(GUILD_A, names={1: "Milk"}, voice={30: {1: (False, False), 77: (False, False)}, 31: {}})
    cog = follower(registry, connections, guild)

    await cog.bootstrap_voice_state()

    assert [p.user_id for p in registry.presence.present_in(GUILD_A)] == [1]
    assert transport.calls == [("join", GUILD_A, 30)]
    assert guild.me.nick == "Milk's Mic"
    # GUILD_B is configured but not visible to the bot
    assert connections.current_channel(GUILD_B) is None


@pytest.mark.asyncio
async def test_second_ready_forgets_users_who_left_during_the_outage(registry, connections, transport):
    guild = FakeGuild(GUILD_A, names={1: "Milk"})
    cog = follower(registry, connections, guild)

    await cog.on_voice_state_update(SimpleNamespace(id=1, guild=guild), voice_state(None), voice_state(10))
    assert connections.current_channel(GUILD_A) == 10

    # reconnect: the cache no longer shows anyone in voice
    await cog.bootstrap_voice_state()

    assert registry.presence.get(GUILD_A, 1) is None
    assert connections.current_channel(GUILD_A) is None
    assert transport.calls[-1] == ("leave", GUILD_A)
    assert guild.me.nick == "Voiceless"


@pytest.mark.asyncio
async def test_voice_state_updates_drive_the_connection(registry, connections, transport):
    guild = FakeGuild(GUILD_A, names={1: "Milk", 2: "Tea"})
    cog = follower(registry, connections, guild)
    milk = SimpleNamespace(id=1, guild=guild)
    tea = SimpleNamespace(id=2, guild=guild)

    await cog.on_voice_state_update(milk, voice_state(None), voice_state(30))
    assert connections.current_channel(GUILD_A) == 30
    assert guild.me.nick == "Milk's Mic"

    await cog.on_voice_state_update(tea, voice_state(None), voice_state(30))
    assert guild.me.nick == "Multi-User Mic"

    await cog.on_voice_state_update(milk, voice_state(30), voice_state(30, self_deaf=True))
    assert guild.me.nick == "Tea's Mic"

    await cog.on_voice_state_update(tea, voice_state(30), voice_state(None))
    assert connections.current_channel(GUILD_A) is None
    assert guild.me.nick == "Voiceless"
    assert transport.calls[-1] == ("leave", GUILD_A)


@pytest.mark.asyncio
async def test_unmonitored_voice_updates_are_ignored(registry, connections, transport):
    guild = FakeGuild(GUILD_A)
    cog = follower(registry, connections, guild)

    await cog.on_voice_state_update(SimpleNamespace(id=42, guild=guild), voice_state(None), voice_state(30))

    assert registry.presence.present_in(GUILD_A) == []
    assert transport.calls == []
    assert guild.me.edits == []


@pytest.mark.asyncio
async def test_join_failure_is_retried_on_next_event(registry):
    transport = FakeTransport(fail_join=True)
    connections = VoiceConnectionManager(registry, transport)
    guild = FakeGuild(GUILD_A, names={1: "Milk"})
    cog = follower(registry, connections, guild)
    milk = SimpleNamespace(id=1, guild=guild)

    await cog.on_voice_state_update(milk, voice_state(None), voice_state(30))
    assert connections.current_channel(GUILD_A) is None

    transport.fail_join = False
    await cog.on_voice_state_update(milk, voice_state(30), voice_state(30))
    assert connections.current_channel(GUILD_A) == 30


@pytest.mark.asyncio
async def test_missing_nickname_permission_does_not_block_voice(registry, connections):
    guild = FakeGuild(GUILD_A, names={1: "Milk"}, me=FakeMe(forbidden=True))
    cog = follower(registry, connections, guild)

    await cog.on_voice_state_update(SimpleNamespace(id=1, guild=guild), voice_state(None), voice_state(30))

    assert connections.current_channel(GUILD_A) == 30


@pytest.mark.asyncio
async def test_member_rename_updates_the_nickname(registry, connections):
    guild = FakeGuild(GUILD_A, names={1: "Milk"})
    cog = follower(registry, connections, guild)
    milk = SimpleNamespace(id=1, guild=guild)
    await cog.on_voice_state_update(milk, voice_state(None), voice_state(30))

    guild.names[1] = "Oat Milk"
    await cog.on_member_update(milk, milk)

    assert guild.me.nick == "Oat Milk's Mic"
    assert guild.me.edits == ["Milk's Mic", "Oat Milk's Mic"]


# ---------------- listening ----------------

@pytest.mark.asyncio
async def test_listening_lists_channels_for_monitored_user(registry):
    cog = ListeningCog(make_bot(), registry)
    ctx = SimpleNamespace(guild=SimpleNamespace(id=GUILD_A), author=SimpleNamespace(id=1), send=AsyncMock())

    await cog.listening.callback(cog, ctx)

    ctx.send.assert_awaited_once_with("I'm currently listening to the following channels: <#10>,<#11>")


@pytest.mark.asyncio
async def test_listening_is_silent_for_others(registry):
    cog = ListeningCog(make_bot(), registry)
    ctx = SimpleNamespace(guild=SimpleNamespace(id=GUILD_B), author=SimpleNamespace(id=1), send=AsyncMock())

    await cog.listening.callback(cog, ctx)

    ctx.send.assert_not_awaited()


# ---------------- end to end ----------------

@pytest.mark.asyncio
async def test_user_joins_talks_deafens_and_leaves(registry, connections, transport):
    played = []

    async def player(clip, handle):
        played.append((handle.channel_id, clip.stream.read()))

    guild = FakeGuild(GUILD_A, names={1: "Milk"})
    queue = DeliveryQueue(registry, connections, player)
    voice = follower(registry, connections, guild)
    synth = FakeSynth()
    speech = SpeechCog(make_bot([guild]), SETTINGS, registry, connections, queue, synth, None)
    milk = SimpleNamespace(id=1, guild=guild)

    # talking before anyone is in voice does nothing
    await speech.on_message(make_message("too early"))
    assert synth.calls == []

    await voice.on_voice_state_update(milk, voice_state(None), voice_state(30))
    await speech.on_message(make_message("first"))
    await speech.on_message(make_message("second", channel=11))
    await wait_drained(queue, GUILD_A)
    assert played == [(30, b"first"), (30, b"second")]

    await voice.on_voice_state_update(milk, voice_state(30), voice_state(30, self_deaf=True))
    await speech.on_message(make_message("nobody hears this"))
    assert len(played) == 2
    assert connections.current_channel(GUILD_A) is None

    await voice.on_voice_state_update(milk, voice_state(30), voice_state(None))
    assert transport.calls == [("join", GUILD_A, 30), ("close", 30), ("leave", GUILD_A)]
    assert guild.me.nick == "Voiceless"


# ---------------- command errors ----------------

@pytest.mark.asyncio
async def test_unknown_commands_are_ignored():
    cog = ErrorHandlerCog(make_bot())
    ctx = SimpleNamespace(command=None, channel=SimpleNamespace(id=10), reply=AsyncMock())

    await cog.on_command_error(ctx, commands.CommandNotFound('Command "..." is not found'))

    ctx.reply.assert_not_awaited()


@pytest.mark.asyncio
async def test_other_command_errors_get_a_short_reply():
    cog = ErrorHandlerCog(make_bot())
    ctx = SimpleNamespace(command="listening", channel=SimpleNamespace(id=10), reply=AsyncMock())

    await cog.on_command_error(ctx, commands.CheckFailure("nope"))

    ctx.reply.assert_awaited_once_with("Command error: `CheckFailure`")
