# voiceless/services/prompts.py
from __future__ import annotations

from typing import Sequence

import openai

FLAVOR_FALLBACK = "Flavor prompt application returned a null response"
ATTACHMENT_FALLBACK = "Attachment analysis API returned a null response"


def attachment_placeholder(count: int) -> str:
    return f"I've attached {count} images to my post."


def _first_text(response) -> str | None:
    if not response.choices:
        return None
    return response.choices[0].message.content


async def apply_flavor_prompt(client: openai.AsyncOpenAI, model: str, prompt: str, text: str) -> str:
    """Rewrite ``text`` using ``prompt`` as the system message."""
    response = await client.chat.completions.create(
        model=model,
        messages=[
            {"role": "system", "content": prompt},
            {"role": "user", "content": text},
        ],
    )
    return _first_text(response) or FLAVOR_FALLBACK


async def describe_attachments(
    client: openai.AsyncOpenAI,
    model: str,
    prompt: str,
    urls: Sequence[str],
    *,
    detail: str = "low",
    max_tokens: int = 300,
) -> str:
    response = await client.chat.completions.create(
        model=model,
        messages=[
            {"role": "system", "content": prompt},
            {
                "role": "user",
                "content": [{"type": "image_url", "image_url": {"url": u, "detail": detail}} for u in urls],
            },
        ],
        max_completion_tokens=max_tokens,
    )
    return _first_text(response) or ATTACHMENT_FALLBACK
