"""Conversation titles.

A model-written title is attempted when a native provider is available;
every failure path falls back to a title cut from the first user message.
"""

import logging
import re
from typing import Optional

from bubble_constants import NEW_CHAT_NAME, TITLE_MODEL

logger = logging.getLogger(__name__)

_MARKUP_RE = re.compile(r"<[^>]*>")
_QUOTES_RE = re.compile(r"^[\"']|[\"']$")
_PREFIX_RE = re.compile(r"^(Topic:|Title:)\s*", re.IGNORECASE)

TITLE_PROMPT = """
    Generate a very short title (max 4 words) for this conversation.
    USER: "{user_text}"

    CRITICAL RULES:
    1. Output strictly ONE line.
    2. No quotes.
    3. No prefixes like "Title:".
    4. Max 4 words.
    5. Be specific to the topic.
    """


def create_local_title(text: str) -> str:
    """First four words of the message, markup stripped."""
    clean = _MARKUP_RE.sub("", text or "").strip()
    if not clean:
        return NEW_CHAT_NAME
    title = " ".join(clean.split()[:4])
    return title[:25] + "..." if len(title) > 25 else title


def clean_model_title(raw: str) -> str:
    title = _QUOTES_RE.sub("", raw.strip())
    title = _PREFIX_RE.sub("", title)
    title = title.split("\n")[0].strip()
    if len(title) > 40:
        title = title[:40] + "..."
    return title


async def generate_chat_title(first_message: str, provider=None) -> str:
    """Title for a new conversation.

    Args:
        first_message: The first user message.
        provider: Anything with GeminiProvider.generate_text(); None skips the model.
    """
    fallback = create_local_title(first_message)
    if provider is None:
        return fallback
    try:
        raw = await provider.generate_text(
            TITLE_PROMPT.format(user_text=first_message[:300]),
            model=TITLE_MODEL, max_output_tokens=20, temperature=0.5,
        )
    except Exception as e:
        logger.warning("Title generation failed, using fallback: %s", e)
        return fallback
    if not raw:
        return fallback
    title = clean_model_title(raw)
    return title if len(title) >= 2 else fallback


def needs_title(chat_name: Optional[str]) -> bool:
    return chat_name == NEW_CHAT_NAME
