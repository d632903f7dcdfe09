# voiceless/core/targeting.py
from __future__ import annotations

from typing import Any, Iterable


def channel_scores(presences: Iterable[Any], monitored: Iterable[int]) -> dict[int, int]:
    """
    channel_id -> number of monitored users in it that are not deafened.
    Channels where every monitored user is deafened score 0.
    """
    wanted = set(monitored)
    scores: dict[int, int] = {}

    for p in presences:
        if p.user_id not in wanted or p.channel_id is None:
            continue
        scores.setdefault(p.channel_id, 0)
        if not p.self_deaf and not p.deaf:
            scores[p.channel_id] += 1

    return scores


def select_target(presences: Iterable[Any], monitored: Iterable[int], current_channel_id: int | None) -> int | None:
    """
    Pick the voice channel the bot should sit in, or None to leave.

    Highest score wins. On a tie the current channel is kept, otherwise the
    lowest channel id is taken so the answer is stable for the same input.
    """
    scores = {ch: s for ch, s in channel_scores(presences, monitored).items() if s > 0}
    if not scores:
        return None

    top = max(scores.values())
    tied = sorted(ch for ch, s in scores.items() if s == top)

    if current_channel_id in tied:
        return current_channel_id
    return tied[0]
