# voiceless/services/playback.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from voiceless.core.state import GuildRegistry, QueuedClip

log = logging.getLogger(__name__)

Player = Callable[[QueuedClip, Any], Awaitable[None]]


class DeliveryQueue:
    """
    Per-guild FIFO of synthesized clips.

    - Only the empty -> non-empty transition starts a drain, so each guild has
      at most one drain loop.
    - The head stays in the queue while it plays; it is removed only after the
      player returns (or fails).
    - No voice connection at play time: the clip is dropped, not kept.
    - Guilds drain independently of each other.
    """

    def __init__(self, registry: GuildRegistry, connections: Any, player: Player):
        self.registry = registry
        self.connections = connections
        self.player = player
        self._tasks: set[asyncio.Task] = set()

    def pending(self, guild_id: int) -> int:
        state = self.registry.get(guild_id)
        return len(state.queue) if state else 0

    def enqueue(self, clip: QueuedClip) -> bool:
        """Append a clip. Returns True when the caller has to start drain()."""
        state = self.registry.get(clip.guild_id)
        if state is None:
            log.warning("no queue for guild=%s, dropping clip", clip.guild_id)
            clip.close()
            return False

        was_empty = not state.queue
        state.queue.append(clip)
        return was_empty

    def submit(self, clip: QueuedClip) -> asyncio.Task | None:
        """Enqueue and, when needed, start the guild's drain loop in the background."""
        if not self.enqueue(clip):
            return None

        task = asyncio.create_task(self.drain(clip.guild_id), name=f"voiceless-drain-{clip.guild_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self, guild_id: int) -> None:
        state = self.registry.get(guild_id)
        if state is None:
            return

        while state.queue:
            clip = state.queue[0]
            try:
                handle = self.connections.handle(guild_id)
                if handle is None:
                    log.info("no voice connection in guild=%s, dropping clip", guild_id)
                else:
                    await self.player(clip, handle)
            except Exception:
                log.exception("clip failed in guild=%s (format=%s)", guild_id, clip.audio_format)
            finally:
                clip.close()
                state.queue.popleft()

    async def close(self) -> None:
        for t in list(self._tasks):
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
