# voiceless/core/errors.py


class VoicelessError(Exception):
    """Base class for runtime errors raised by the bot's own code."""


class VoiceConnectError(VoicelessError):
    """Joining, starting or entering speaking state failed for a guild."""

    def __init__(self, guild_id: int, channel_id: int, reason: str):
        super().__init__(f"guild={guild_id} channel={channel_id}: {reason}")
        self.guild_id = guild_id
        self.channel_id = channel_id


class TranscodeError(VoicelessError):
    """A single clip could not be decoded, encoded or transmitted."""


class SynthesisError(VoicelessError):
    """The TTS provider returned an error or no audio."""
