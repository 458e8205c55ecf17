"""System instruction assembly with caching.

The base instruction (identity, thinking directive, style and emotion
blocks) is fixed for the life of one request, so build() caches it. The
per-iteration system prompt appends the memory block and the current time
on top of the cached base.

Caching contract:
    - build() returns the cached base on subsequent calls
    - invalidate() clears the cache
    - system_prompt() always reflects the memory and time it is given
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from agent.chat_types import EmotionData, UserPreferences
from agent.collaborators import MEMORY_TOPICS, MemoryProvider
from agent.prompt_builder import (
    CUSTOM_INSTRUCTIONS_HEADER,
    DEFAULT_AGENT_IDENTITY,
    FRIENDLY_MODE_TEMPLATE,
    LENGTH_RULES,
    MODEL_IDENTITY_PLACEHOLDER,
    SERIOUS_MODE_BLOCK,
    TONE_RULES,
    build_model_identity_block,
    format_timestamp,
)

logger = logging.getLogger(__name__)


async def load_memory_context(memory_provider: Optional[MemoryProvider]) -> Dict[str, Any]:
    """Fetch long-term memory. Any failure degrades to an empty mapping."""
    if memory_provider is None:
        return {}
    try:
        context = await memory_provider.get_context(set(MEMORY_TOPICS))
    except Exception as e:
        logger.warning("Memory fetch failed, continuing without memory: %s", e)
        return {}
    if not isinstance(context, dict):
        logger.warning("Memory provider returned %s, expected a mapping", type(context).__name__)
        return {}
    return context


class PromptAssembler:
    """Assembles the system instruction from layered components.

    Args:
        model: Resolved model id; its display name is substituted into the identity.
        thinking_budget: Positive values add the mandatory <THINK> directive.
        profile: User style preferences.
        emotion: Detected user emotion (label, mapping or EmotionData).
    """

    def __init__(self, *, model: str, thinking_budget: int = 0,
                 profile: Optional[UserPreferences] = None, emotion=None):
        self._model = model
        self._thinking_budget = thinking_budget
        self._profile = profile or UserPreferences()
        self._emotion = EmotionData.coerce(emotion)
        self._cached_prompt: Optional[str] = None

    @property
    def emotion(self) -> EmotionData:
        return self._emotion

    def build(self) -> str:
        """Assemble the base instruction.

        CACHING CONTRACT: Returns cached value on subsequent calls.
        """
        if self._cached_prompt is not None:
            return self._cached_prompt

        identity = build_model_identity_block(self._model, self._thinking_budget)
        prompt_parts = [DEFAULT_AGENT_IDENTITY.replace(MODEL_IDENTITY_PLACEHOLDER, identity)]

        style_lines = [
            "=== USER STYLE PREFERENCES ===",
            TONE_RULES.get(self._profile.tone, TONE_RULES["default"]),
            LENGTH_RULES.get(self._profile.length, LENGTH_RULES["default"]),
        ]
        prompt_parts.append("\n".join(style_lines))

        custom = (self._profile.custom_instructions or "").strip()
        if custom:
            prompt_parts.append(f"{CUSTOM_INSTRUCTIONS_HEADER}\n{custom}")

        if self._emotion.is_serious:
            prompt_parts.append(SERIOUS_MODE_BLOCK)
        else:
            prompt_parts.append(FRIENDLY_MODE_TEMPLATE.format(dominant=self._emotion.dominant))

        result = "\n\n".join(prompt_parts)
        self._cached_prompt = result
        return result

    def system_prompt(self, *, memory: Optional[Dict[str, Any]] = None,
                      external_web_search: str = "", now: Optional[datetime] = None) -> str:
        """Base instruction plus [MEMORY] and [CURRENT DATE & TIME] blocks."""
        enriched = dict(memory or {})
        enriched["external_web_search"] = external_web_search
        memory_json = json.dumps(enriched, ensure_ascii=False, default=str)
        return (
            f"{self.build()}\n\n[MEMORY]\n{memory_json}\n\n"
            f"[CURRENT DATE & TIME]\n{format_timestamp(now)}\n"
        )

    @property
    def cached(self):
        """Return the cached base, or None if not yet built/invalidated."""
        return self._cached_prompt

    def invalidate(self):
        self._cached_prompt = None
