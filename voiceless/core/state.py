# voiceless/core/state.py
from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Iterable, Sequence

from voiceless.core.targeting import select_target


@dataclass(frozen=True)
class VoicePresence:
    user_id: int
    channel_id: int | None
    self_deaf: bool = False
    deaf: bool = False

    @property
    def reachable(self) -> bool:
        return self.channel_id is not None and not self.self_deaf and not self.deaf


@dataclass
class GuildVoiceLink:
    channel_id: int
    handle: Any


@dataclass
class QueuedClip:
    stream: BinaryIO
    guild_id: int
    audio_format: str

    def close(self) -> None:
        try:
            self.stream.close()
        except Exception:
            pass


class PresenceTracker:
    """
    Runtime-only voice presence, keyed by (guild_id, user_id).

    - seed(): rebuilds one guild from the gateway snapshot (on every ready)
    - update(): every live voice-state event replaces the entry outright
    - an entry with no channel is never stored
    """

    def __init__(self):
        # (guild_id, user_id) -> presence
        self._entries: dict[tuple[int, int], VoicePresence] = {}

    def seed(self, guild_id: int, snapshot: Iterable[VoicePresence], monitored: Iterable[int]) -> int:
        """
        Replace everything tracked for the guild with the snapshot. Returns how many entries were kept.

        The snapshot has to be read from the gateway cache with no await before
        this call, so it already includes every live event dispatched so far.
        """
        wanted = set(monitored)
        for key in [k for k in self._entries if k[0] == guild_id]:
            del self._entries[key]

        kept = 0
        for p in snapshot:
            if p.user_id not in wanted or p.channel_id is None:
                continue
            self._entries[(guild_id, p.user_id)] = p
            kept += 1

        return kept

    def update(
        self,
        guild_id: int,
        user_id: int,
        channel_id: int | None,
        self_deaf: bool,
        deaf: bool,
    ) -> None:
        key = (guild_id, user_id)

        if channel_id is None:
            self._entries.pop(key, None)
            return

        self._entries[key] = VoicePresence(user_id, channel_id, bool(self_deaf), bool(deaf))

    def get(self, guild_id: int, user_id: int) -> VoicePresence | None:
        return self._entries.get((guild_id, user_id))

    def present_in(self, guild_id: int) -> list[VoicePresence]:
        return [p for (g_id, _), p in self._entries.items() if g_id == guild_id]


@dataclass
class GuildState:
    guild_id: int

    # user_id -> listened text channel ids in this guild
    monitored: dict[int, frozenset[int]] = field(default_factory=dict)

    link: GuildVoiceLink | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    queue: deque[QueuedClip] = field(default_factory=deque)


class GuildRegistry:
    """
    Owns all per-guild runtime state: monitored users, tracked presence,
    the voice link and the delivery queue. Built once from the target config.
    """

    def __init__(self, targets: Sequence[Any]):
        self.presence = PresenceTracker()
        self._guilds: dict[int, GuildState] = {}
        self._voices: dict[int, str] = {}

        for target in targets:
            self._voices[target.user] = target.voice
            for server in target.servers:
                state = self._guilds.setdefault(server.server, GuildState(server.server))
                state.monitored[target.user] = frozenset(server.channels)

    # ---------------- lookups ----------------

    def get(self, guild_id: int) -> GuildState | None:
        return self._guilds.get(guild_id)

    def guild_ids(self) -> list[int]:
        return list(self._guilds.keys())

    def monitored_users(self, guild_id: int) -> set[int]:
        state = self._guilds.get(guild_id)
        return set(state.monitored) if state else set()

    def is_monitored(self, guild_id: int, user_id: int) -> bool:
        state = self._guilds.get(guild_id)
        return state is not None and user_id in state.monitored

    def listened_channels(self, guild_id: int, user_id: int) -> frozenset[int]:
        state = self._guilds.get(guild_id)
        if state is None:
            return frozenset()
        return state.monitored.get(user_id, frozenset())

    def voice_for(self, user_id: int) -> str | None:
        return self._voices.get(user_id)

    def current_channel(self, guild_id: int) -> int | None:
        state = self._guilds.get(guild_id)
        if state is None or state.link is None:
            return None
        return state.link.channel_id

    # ---------------- derived ----------------

    def monitored_presence(self, guild_id: int) -> list[VoicePresence]:
        users = self.monitored_users(guild_id)
        return [p for p in self.presence.present_in(guild_id) if p.user_id in users]

    def target_channel(self, guild_id: int) -> int | None:
        return select_target(
            self.presence.present_in(guild_id),
            self.monitored_users(guild_id),
            self.current_channel(guild_id),
        )
