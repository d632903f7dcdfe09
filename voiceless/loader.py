# voiceless/loader.py
from __future__ import annotations

import traceback

from voiceless.cogs.errors import ErrorHandlerCog
from voiceless.cogs.listening import ListeningCog
from voiceless.cogs.speech import SpeechCog
from voiceless.cogs.voice_follower import VoiceFollowerCog


async def load_all(bot, settings, registry, *, connections, queue, synth, openai_client):
    print("[Voiceless] Starting loader...")

    # attach shared deps (so any cog can grab them if needed)
    bot.settings = settings
    bot.registry = registry
    bot.connections = connections
    bot.delivery_queue = queue

    # ---------------- VOICE FOLLOWER ----------------
    # Without it nothing ever joins voice, so a failure here is fatal.
    await bot.add_cog(VoiceFollowerCog(bot, settings, registry, connections))
    print("[Voiceless] ✅ VoiceFollowerCog loaded")

    # ---------------- SPEECH ----------------
    try:
        await bot.add_cog(SpeechCog(bot, settings, registry, connections, queue, synth, openai_client))
        print("[Voiceless] ✅ SpeechCog loaded")
    except Exception:
        print("[Voiceless] ❌ SpeechCog FAILED")
        traceback.print_exc()

    # ---------------- LISTENING ----------------
    try:
        await bot.add_cog(ListeningCog(bot, registry))
        print("[Voiceless] ✅ ListeningCog loaded")
    except Exception:
        print("[Voiceless] ❌ ListeningCog FAILED")
        traceback.print_exc()

    # ---------------- ERROR HANDLER ----------------
    try:
        await bot.add_cog(ErrorHandlerCog(bot))
        print("[Voiceless] ✅ ErrorHandlerCog loaded")
    except Exception:
        print("[Voiceless] ❌ ErrorHandlerCog FAILED")
        traceback.print_exc()

    print("[Voiceless] Loaded cogs:", ", ".join(bot.cogs.keys()))
