# voiceless/core/text.py
from __future__ import annotations

import re
from typing import Mapping

USER_MENTION_RE = re.compile(r"<@!?(\d+)>")
CHANNEL_MENTION_RE = re.compile(r"<#(\d+)>")
ROLE_MENTION_RE = re.compile(r"<@&(\d+)>")
CUSTOM_EMOJI_RE = re.compile(r"<a?:\w+:\d+>")
URL_RE = re.compile(r"\b(?:https?://)?(?:www\.)?[a-zA-Z0-9-]+(?:\.[a-zA-Z]{2,})+(?:/\S*)?\b")

# %whisper%, %with great fervor% ... must start with a non-space and contain a letter
INSTRUCTIONS_RE = re.compile(r"%(?P<instructions>(?=[^%]*[A-Za-z])[^\s%][^%]*)%")


def _replace_ids(pattern: re.Pattern, text: str, names: Mapping[int, str]) -> str:
    def repl(m: re.Match) -> str:
        name = names.get(int(m.group(1)))
        return f" at {name}" if name else m.group(0)

    return pattern.sub(repl, text)


def clean_message(
    text: str,
    users: Mapping[int, str] | None = None,
    channels: Mapping[int, str] | None = None,
    roles: Mapping[int, str] | None = None,
) -> str:
    """
    Make a Discord message speakable:
      <@123>  -> " at Name"     (users)
      <#123>  -> " at general"  (channels)
      <@&123> -> " at Mods"     (roles)
    Custom emoji and URLs are dropped.
    """
    s = text or ""
    s = _replace_ids(ROLE_MENTION_RE, s, roles or {})
    s = _replace_ids(USER_MENTION_RE, s, users or {})
    s = _replace_ids(CHANNEL_MENTION_RE, s, channels or {})
    s = CUSTOM_EMOJI_RE.sub("", s)
    s = URL_RE.sub("", s)
    return s.strip()


def extract_instructions(message: str) -> tuple[str, str | None]:
    """
    Pull the first %style% instruction out of a message.

    Returns (remaining text, instruction). With no instruction the message is
    returned untouched and the instruction is None.
    """
    m = INSTRUCTIONS_RE.search(message)
    if not m:
        return message, None

    before = message[: m.start()].rstrip()
    after = message[m.end():].lstrip()
    return f"{before} {after}".strip(), m.group("instructions")
