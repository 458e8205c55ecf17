"""Tests for PromptAssembler and load_memory_context.

Covers:
    - Layer ordering (identity first, emotion block last)
    - Model identity and thinking directive
    - Style preferences and custom instructions
    - Serious vs friendly emotion blocks
    - Caching contract (same object, invalidate clears)
    - [MEMORY] block always carries external_web_search
    - Memory fetch failures degrade to an empty mapping
"""

import json
from datetime import datetime, timezone
from unittest import mock

import pytest

from agent.chat_types import EmotionData, UserPreferences
from agent.collaborators import MEMORY_TOPICS
from agent.prompt_assembler import PromptAssembler, load_memory_context
from agent.prompt_builder import (
    LENGTH_RULES,
    SERIOUS_MODE_BLOCK,
    TONE_RULES,
    friendly_model_name,
)


def _memory_json(prompt: str) -> dict:
    block = prompt.split("[MEMORY]\n", 1)[1].split("\n\n[CURRENT DATE & TIME]", 1)[0]
    return json.loads(block)


# ---------------------------------------------------------------------------
# Base instruction
# ---------------------------------------------------------------------------

class TestPromptAssembler:
    def test_identity_first_and_model_named(self):
        prompt = PromptAssembler(model="gemini-2.5-flash").build()
        assert prompt.startswith("--- CORE IDENTITY ---")
        assert "**Gemini 2.5 Flash**" in prompt
        assert "[MODEL_IDENTITY_BLOCK]" not in prompt

    def test_thinking_directive_only_with_budget(self):
        plain = PromptAssembler(model="gemini-2.5-flash").build()
        thinking = PromptAssembler(model="gemini-2.5-flash", thinking_budget=2048).build()
        assert "[THINKING ENABLED]" not in plain
        assert "Budget: 2048 tokens" in thinking

    def test_style_rules_follow_profile(self):
        profile = UserPreferences(tone="serious", length="compact")
        prompt = PromptAssembler(model="x", profile=profile).build()
        assert TONE_RULES["serious"] in prompt
        assert LENGTH_RULES["compact"] in prompt

    def test_unknown_style_falls_back_to_default(self):
        profile = UserPreferences(tone="sarcastic", length="epic")
        prompt = PromptAssembler(model="x", profile=profile).build()
        assert TONE_RULES["default"] in prompt
        assert LENGTH_RULES["default"] in prompt

    def test_custom_instructions_included_when_present(self):
        with_custom = PromptAssembler(
            model="x", profile=UserPreferences(custom_instructions="  Answer in French.  ")
        ).build()
        without = PromptAssembler(model="x", profile=UserPreferences(custom_instructions="   ")).build()
        assert "=== USER CUSTOM INSTRUCTIONS ===" in with_custom
        assert "Answer in French." in with_custom
        assert "=== USER CUSTOM INSTRUCTIONS ===" not in without

    def test_serious_emotion_switches_block(self):
        serious = PromptAssembler(model="x", emotion=EmotionData("Serious", {"Serious": 80})).build()
        assert serious.endswith(SERIOUS_MODE_BLOCK)

    def test_friendly_block_names_dominant_emotion(self):
        prompt = PromptAssembler(model="x", emotion={"dominant": "Curiosity", "scores": {"Curiosity": 60}}).build()
        assert "The user is detected as Curiosity." in prompt

    def test_no_emotion_is_neutral(self):
        assembler = PromptAssembler(model="x")
        assert assembler.emotion.dominant == "Neutral"

    # -- caching ---------------------------------------------------------

    def test_build_is_cached(self):
        assembler = PromptAssembler(model="x")
        assert assembler.cached is None
        first = assembler.build()
        assert assembler.build() is first
        assert assembler.cached is first

    def test_invalidate_clears_cache(self):
        assembler = PromptAssembler(model="x")
        assembler.build()
        assembler.invalidate()
        assert assembler.cached is None


# ---------------------------------------------------------------------------
# Per-iteration system prompt
# ---------------------------------------------------------------------------

class TestSystemPrompt:
    def test_memory_block_always_has_search_key(self):
        prompt = PromptAssembler(model="x").system_prompt()
        assert _memory_json(prompt) == {"external_web_search": ""}

    def test_memory_and_search_context_merged(self):
        prompt = PromptAssembler(model="x").system_prompt(
            memory={"interests": ["chess"]}, external_web_search="=== RESULTS ===",
        )
        assert _memory_json(prompt) == {"interests": ["chess"], "external_web_search": "=== RESULTS ==="}

    def test_caller_memory_not_mutated(self):
        memory = {"personal": ["likes tea"]}
        PromptAssembler(model="x").system_prompt(memory=memory, external_web_search="ctx")
        assert memory == {"personal": ["likes tea"]}

    def test_time_block_uses_given_clock(self):
        now = datetime(2025, 3, 14, 15, 9, 26, tzinfo=timezone.utc)
        prompt = PromptAssembler(model="x").system_prompt(now=now)
        assert "[CURRENT DATE & TIME]\n" in prompt
        assert "2025" in prompt.split("[CURRENT DATE & TIME]\n", 1)[1]

    def test_system_prompt_starts_with_cached_base(self):
        assembler = PromptAssembler(model="x")
        assert assembler.system_prompt().startswith(assembler.build())


class TestFriendlyModelName:
    @pytest.mark.parametrize("model,expected", [
        ("gemini-2.5-flash", "Gemini 2.5 Flash"),
        ("anthropic/claude-3.5-sonnet", "Claude 3.5 Sonnet"),
        ("openai/gpt-4o", "Gpt 4o"),
    ])
    def test_names(self, model, expected):
        assert friendly_model_name(model) == expected


# ---------------------------------------------------------------------------
# Memory loading
# ---------------------------------------------------------------------------

class TestLoadMemoryContext:
    @pytest.mark.asyncio
    async def test_no_provider_is_empty(self):
        assert await load_memory_context(None) == {}

    @pytest.mark.asyncio
    async def test_requests_all_topics(self):
        provider = mock.MagicMock()
        provider.get_context = mock.AsyncMock(return_value={"interests": ["go"]})

        assert await load_memory_context(provider) == {"interests": ["go"]}
        provider.get_context.assert_awaited_once_with(set(MEMORY_TOPICS))

    @pytest.mark.asyncio
    async def test_failure_degrades_to_empty(self):
        provider = mock.MagicMock()
        provider.get_context = mock.AsyncMock(side_effect=RuntimeError("db down"))
        assert await load_memory_context(provider) == {}

    @pytest.mark.asyncio
    async def test_non_mapping_is_ignored(self):
        provider = mock.MagicMock()
        provider.get_context = mock.AsyncMock(return_value=["not", "a", "dict"])
        assert await load_memory_context(provider) == {}
