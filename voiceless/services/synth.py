# voiceless/services/synth.py
from __future__ import annotations

import asyncio
import io
import logging
from typing import BinaryIO

import aiohttp
import openai

from voiceless.core.errors import SynthesisError

log = logging.getLogger(__name__)

ELEVENLABS_API = "https://api.elevenlabs.io/v1"


class VoiceSynthesizer:
    """
    Text -> audio clip. ``audio_format`` is the container tag handed to the
    decoder unchanged ("ogg" or "mp3").
    """

    audio_format: str = ""

    async def _synthesize(self, text: str, voice: str | None, instructions: str | None) -> bytes:
        raise NotImplementedError

    async def synthesize(self, text: str, voice: str | None = None, instructions: str | None = None) -> BinaryIO | None:
        try:
            data = await self._synthesize(text, voice, instructions)
        except SynthesisError as e:
            log.warning("%s synthesis failed: %s", type(self).__name__, e)
            return None

        if not data:
            log.warning("%s returned no audio", type(self).__name__)
            return None
        return io.BytesIO(data)

    async def close(self) -> None:
        pass


class OpenAIVoiceSynthesizer(VoiceSynthesizer):
    audio_format = "ogg"

    def __init__(self, client: openai.AsyncOpenAI, model: str, default_voice: str):
        self.client = client
        self.model = model
        self.default_voice = default_voice

    async def _synthesize(self, text: str, voice: str | None, instructions: str | None) -> bytes:
        kwargs = {}
        if instructions:
            kwargs["instructions"] = instructions

        try:
            response = await self.client.audio.speech.create(
                model=self.model,
                voice=voice or self.default_voice,
                input=text,
                response_format="opus",
                speed=1.0,
                **kwargs,
            )
        except openai.OpenAIError as e:
            raise SynthesisError(f"{type(e).__name__}: {e}") from e

        return response.content


class ElevenLabsVoiceSynthesizer(VoiceSynthesizer):
    audio_format = "mp3"

    def __init__(
        self,
        token: str,
        *,
        voice_id: str = "",
        model: str = "eleven_turbo_v2_5",
        stability: float = 0.5,
        similarity: float = 0.75,
        session: aiohttp.ClientSession | None = None,
    ):
        self.token = token
        self.voice_id = voice_id
        self.model = model
        self.stability = stability
        self.similarity = similarity
        self._session = session

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=30),
                headers={"xi-api-key": self.token},
            )
        return self._session

    async def configure(self) -> None:
        """Fail fast at startup if the configured voice or model doesn't exist."""
        session = self._get_session()

        if self.voice_id:
            async with session.get(f"{ELEVENLABS_API}/voices/{self.voice_id}") as resp:
                if resp.status != 200:
                    raise RuntimeError(f"Failed to get ElevenLabs voice with configured id ('{self.voice_id}'): HTTP {resp.status}")

        async with session.get(f"{ELEVENLABS_API}/models") as resp:
            resp.raise_for_status()
            models = await resp.json()

        if not any(m.get("model_id") == self.model for m in models):
            raise RuntimeError(f"Failed to get ElevenLabs model with preferred id ('{self.model}')")

    async def _synthesize(self, text: str, voice: str | None, instructions: str | None) -> bytes:
        # the configured voice wins; per-user names are only used as ids when none is set
        voice_id = self.voice_id or voice
        if not voice_id:
            raise SynthesisError("no ElevenLabs voice id configured")

        payload = {
            "text": text,
            "model_id": self.model,
            "voice_settings": {
                "stability": self.stability,
                "similarity_boost": self.similarity,
            },
        }

        try:
            async with self._get_session().post(
                f"{ELEVENLABS_API}/text-to-speech/{voice_id}",
                params={"output_format": "mp3_44100_128"},
                json=payload,
            ) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise SynthesisError(f"HTTP {resp.status}: {body[:200]}")
                return await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SynthesisError(f"{type(e).__name__}: {e}") from e

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()


async def build_synthesizer(settings, openai_client: openai.AsyncOpenAI) -> VoiceSynthesizer:
    """ElevenLabs when a key is configured, OpenAI otherwise."""
    if settings.elevenlabs_token:
        synth = ElevenLabsVoiceSynthesizer(
            settings.elevenlabs_token,
            voice_id=settings.elevenlabs_voice_id,
            model=settings.elevenlabs_model,
            stability=settings.elevenlabs_stability,
            similarity=settings.elevenlabs_similarity,
        )
        try:
            await synth.configure()
        except BaseException:
            await synth.close()
            raise
        print(f"[Voiceless] TTS: ElevenLabs (model={settings.elevenlabs_model})")
        return synth

    print(f"[Voiceless] TTS: OpenAI (model={settings.openai_tts_model})")
    return OpenAIVoiceSynthesizer(openai_client, settings.openai_tts_model, settings.openai_tts_voice)
