# voiceless/ui/formatting.py
from __future__ import annotations

from typing import Iterable, Mapping

from voiceless.core.state import VoicePresence

MULTI_USER_NICKNAME = "Multi-User Mic"
MAX_NAME_IN_NICK = 26  # 32-char nickname limit minus "'s Mic"


def mic_nickname(display_name: str | None) -> str:
    name = display_name or "Unknown"
    return f"{name[:MAX_NAME_IN_NICK]}'s Mic"


def presenter_nickname(
    target_channel_id: int | None,
    presences: Iterable[VoicePresence],
    display_names: Mapping[int, str],
    idle: str = "Voiceless",
) -> str:
    """
    Bot nickname for a guild:
      nobody speaking in the target channel -> idle name
      one monitored user                    -> "<name>'s Mic"
      several                               -> "Multi-User Mic"
    """
    if target_channel_id is None:
        return idle

    speakers = [p.user_id for p in presences if p.channel_id == target_channel_id and p.reachable]
    if not speakers:
        return idle
    if len(speakers) == 1:
        return mic_nickname(display_names.get(speakers[0]))
    return MULTI_USER_NICKNAME


def listening_reply(channel_ids: Iterable[int]) -> str:
    mentions = ",".join(f"<#{c}>" for c in channel_ids)
    return f"I'm currently listening to the following channels: {mentions}"
