# voiceless/services/transcode.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, BinaryIO, Callable

import discord

from voiceless.core.errors import TranscodeError
from voiceless.core.state import QueuedClip

log = logging.getLogger(__name__)

# Discord voice: 48kHz, stereo, s16le, 20ms frames
PCM_RATE = 48000
PCM_CHANNELS = 2
FRAME_SAMPLES = 960
FRAME_BYTES = FRAME_SAMPLES * PCM_CHANNELS * 2  # 3840

READ_CHUNK = 64 * 1024
OPUS_SILENCE = b"\xf8\xff\xfe"


class OpusEncodeStream:
    """
    Takes raw PCM in any chunk size, cuts it into 20ms frames, encodes each
    frame to Opus and writes the packet to the sink.
    """

    def __init__(self, sink: Any, encoder: Any):
        self.sink = sink
        self.encoder = encoder
        self._buf = bytearray()

    async def write(self, pcm: bytes) -> None:
        if self.encoder is None:
            raise TranscodeError("write to a closed encoder stream")

        self._buf += pcm
        while len(self._buf) >= FRAME_BYTES:
            frame = bytes(self._buf[:FRAME_BYTES])
            del self._buf[:FRAME_BYTES]
            await self.sink.write(self.encoder.encode(frame, FRAME_SAMPLES))

    async def flush(self) -> None:
        """Send the partial last frame (zero padded) and a short silence tail."""
        if self.encoder is None:
            return

        if self._buf:
            frame = bytes(self._buf).ljust(FRAME_BYTES, b"\x00")
            self._buf.clear()
            await self.sink.write(self.encoder.encode(frame, FRAME_SAMPLES))

        # five silent frames stop the receiving side from interpolating the tail
        for _ in range(5):
            await self.sink.write(OPUS_SILENCE)

    def close(self) -> None:
        self._buf.clear()
        self.encoder = None


def _default_encoder() -> Any:
    # loads libopus on first use
    return discord.opus.Encoder()


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass


class Transcoder:
    """
    Plays one queued clip into one voice connection:

      clip bytes -> ffmpeg stdin
      ffmpeg stdout (s16le 48k stereo) -> Opus encoder -> voice sink

    Both pipe directions run as separate tasks; feeding stdin while nobody
    reads stdout fills the pipe buffer and stalls both sides.
    """

    def __init__(
        self,
        transport: Any,
        *,
        ffmpeg_path: str = "ffmpeg",
        encoder_timeout: float = 10.0,
        decoder_timeout: float = 30.0,
        encoder_factory: Callable[[], Any] = _default_encoder,
    ):
        self.transport = transport
        self.ffmpeg_path = ffmpeg_path
        self.encoder_timeout = encoder_timeout
        self.decoder_timeout = decoder_timeout
        self.encoder_factory = encoder_factory

    def decoder_args(self, audio_format: str) -> list[str]:
        return [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", "error",
            "-f", audio_format,
            "-i", "pipe:0",
            "-ac", str(PCM_CHANNELS),
            "-f", "s16le",
            "-ar", str(PCM_RATE),
            "pipe:1",
        ]

    async def _spawn(self, args: list[str]) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise TranscodeError(f"could not start decoder {args[0]!r}: {e}") from e

    async def _open_encoder(self, sink: Any) -> OpusEncodeStream:
        encoder = await asyncio.to_thread(self.encoder_factory)
        return OpusEncodeStream(sink, encoder)

    async def _feed(self, source: BinaryIO, stdin: asyncio.StreamWriter) -> None:
        try:
            if source.seekable():
                source.seek(0)
            while True:
                chunk = source.read(READ_CHUNK)
                if not chunk:
                    break
                stdin.write(chunk)
                await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            log.debug("decoder closed its input early")
        finally:
            if not stdin.is_closing():
                stdin.close()

    async def _pump(self, stdout: asyncio.StreamReader, stream: OpusEncodeStream) -> None:
        while True:
            try:
                chunk = await asyncio.wait_for(stdout.read(READ_CHUNK), self.decoder_timeout)
            except asyncio.TimeoutError:
                raise TranscodeError(f"decoder produced no output for {self.decoder_timeout}s") from None
            if not chunk:
                return
            await stream.write(chunk)

    async def play(self, clip: QueuedClip, handle: Any) -> None:
        process = await self._spawn(self.decoder_args(clip.audio_format))

        tasks: list[asyncio.Task] = []
        stream: OpusEncodeStream | None = None
        try:
            feed = asyncio.create_task(self._feed(clip.stream, process.stdin))
            tasks.append(feed)

            sink = self.transport.create_output_sink(handle)
            try:
                stream = await asyncio.wait_for(self._open_encoder(sink), self.encoder_timeout)
            except asyncio.TimeoutError:
                raise TranscodeError(f"opus encoder not ready after {self.encoder_timeout}s") from None

            pump = asyncio.create_task(self._pump(process.stdout, stream))
            tasks.append(pump)

            await asyncio.gather(feed, pump)

            try:
                code = await asyncio.wait_for(process.wait(), self.decoder_timeout)
            except asyncio.TimeoutError:
                raise TranscodeError(f"decoder still running {self.decoder_timeout}s after its output ended") from None

            await stream.flush()

            if code != 0:
                raise TranscodeError(f"decoder exited with code {code} (format={clip.audio_format})")
        except BaseException:
            for t in tasks:
                if not t.done():
                    t.cancel()
            _kill(process)
            await asyncio.gather(*tasks, return_exceptions=True)
            try:
                await asyncio.shield(process.wait())
            except asyncio.CancelledError:
                log.debug("cancelled again while reaping the decoder")
            raise
        finally:
            if stream is not None:
                stream.close()
