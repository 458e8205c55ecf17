"""Model selection and provider dispatch.

select() resolves the request's model, thinking budget and backend once
per request; stream() runs one generation call through the chosen
strategy. Adding a backend means a registry entry plus a
GenerationProvider subclass; the loop controller never changes.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional

import httpx

from agent.chat_types import AgentRequest, StreamEvent, ThinkingMode
from agent.config import AgentSettings
from agent.providers.base import GenerationCall, GenerationProvider
from agent.providers.compatible import OpenRouterProvider
from agent.providers.instant import InstantProvider
from agent.providers.native import GeminiProvider
from agent.providers.registry import (
    COMPATIBLE,
    NATIVE,
    PROVIDERS,
    model_supports_search,
    model_supports_thinking,
    provider_for_model,
    resolve_provider_base_url,
)
from bubble_constants import DEFAULT_MODEL

logger = logging.getLogger(__name__)

DEEP_THINKING_BUDGET = 8192
THINK_THINKING_BUDGET = 2048

MISSING_KEY_NOTICE = "\n*(OpenRouter key missing, falling back to Gemini...)*\n"
THINKING_SWITCH_NOTICE = "\n*(Switched to Gemini 2.5 Flash for Thinking mode compatibility)*\n"


@dataclass
class ModelSelection:
    model: str
    provider: GenerationProvider
    thinking_budget: int = 0
    notices: List[str] = field(default_factory=list)

    @property
    def is_native(self) -> bool:
        return self.provider.provider_id == NATIVE

    @property
    def supports_search(self) -> bool:
        return model_supports_search(self.model, self.provider.provider_id)


class ProviderDispatcher:
    """Chooses the backend for a request and streams through it.

    Args:
        settings: Agent settings (keys, default models, retry budget).
        native: Gemini strategy; built from settings when omitted.
        instant: Key-less strategy for instant mode.
        http_client: Shared client handed to HTTP-based strategies.
    """

    def __init__(self, settings: Optional[AgentSettings] = None, *,
                 native: Optional[GenerationProvider] = None,
                 instant: Optional[GenerationProvider] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        self._settings = settings or AgentSettings()
        self._http_client = http_client
        self._native = native or GeminiProvider(
            self._settings.gemini_api_key,
            fallback_model=DEFAULT_MODEL,
            quota_retries=self._settings.quota_retries,
        )
        self._instant = instant or InstantProvider(http_client=http_client)

    @property
    def native(self) -> GenerationProvider:
        return self._native

    @property
    def instant(self) -> GenerationProvider:
        return self._instant

    def _openrouter_key(self, request: AgentRequest) -> Optional[str]:
        return request.profile.openrouter_api_key or self._settings.openrouter_api_key or None

    def _compatible(self, api_key: str) -> GenerationProvider:
        base_url = resolve_provider_base_url(COMPATIBLE, env_get=os.getenv)
        return OpenRouterProvider(
            api_key,
            base_url=base_url,
            referer=self._settings.openrouter_referer,
            title=self._settings.openrouter_title,
            temperature=self._settings.temperature,
            http_client=self._http_client,
        )

    def select(self, request: AgentRequest) -> ModelSelection:
        """Resolve model, thinking budget and backend for one request."""
        notices: List[str] = []
        model = (request.model or "").strip() or self._settings.default_model
        openrouter_key = self._openrouter_key(request)

        thinking_budget = 0
        if request.thinking_mode == ThinkingMode.DEEP:
            model = request.profile.preferred_deep_model or self._settings.deep_model
            thinking_budget = DEEP_THINKING_BUDGET
        elif request.thinking_mode == ThinkingMode.THINK:
            model = DEFAULT_MODEL
            thinking_budget = THINK_THINKING_BUDGET

        provider_id = provider_for_model(model)
        if PROVIDERS[provider_id].requires_user_key and not openrouter_key:
            logger.info("No %s key for %s, downgrading to %s", PROVIDERS[provider_id].label, model, DEFAULT_MODEL)
            notices.append(MISSING_KEY_NOTICE)
            model = DEFAULT_MODEL
            provider_id = NATIVE
        is_native = provider_id == NATIVE

        if thinking_budget > 0 and is_native and not model_supports_thinking(model):
            notices.append(THINKING_SWITCH_NOTICE)
            model = DEFAULT_MODEL

        provider = self._native if is_native else self._compatible(openrouter_key)
        logger.debug("Selected %s via %s (thinking budget %d)", model, provider.provider_id, thinking_budget)
        return ModelSelection(model=model, provider=provider, thinking_budget=thinking_budget, notices=notices)

    async def stream(self, selection: ModelSelection, call: GenerationCall) -> AsyncIterator[StreamEvent]:
        """Run one generation call through the selected backend."""
        logger.debug("Generation call: model=%s turns=%d attachments=%d",
                     call.model, len(call.turns), len(call.attachments))
        try:
            async for event in selection.provider.stream(call):
                yield event
        finally:
            if call.model != selection.model:
                # The native ladder swapped models; later iterations start from the fallback
                selection.model = call.model

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
