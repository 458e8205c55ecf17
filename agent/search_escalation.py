"""Search escalation around the generation loop.

Pre-emptive: before the first iteration, a keyword heuristic on the raw
user prompt decides whether to search. Results become the
``external_web_search`` memory field and user-facing grounding metadata.

Reactive: after an iteration that emitted <SEARCH> tags, the first query
is searched and the results are flattened into a synthesis prompt for the
next iteration. Reactive results are internal context, never grounding.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from agent.cancellation import CancellationToken
from tools.web_search import (
    DEFAULT_SEARCH_LIMIT,
    DEFAULT_SEARCH_TIMEOUT,
    WebSearchResult,
    run_web_search,
)
from bubble_constants import BUBBLE_SEARCH_URL

logger = logging.getLogger(__name__)

SEARCH_KEYWORDS = (
    "search online",
    "search the web",
    "look this up",
    "browse",
    "check internet",
    "latest",
    "today",
    "news",
    "price",
    "who is",
    "what is",
    "when did",
)

SearchFn = Callable[..., Awaitable[List[WebSearchResult]]]


def should_use_external_search(message: str, model_supports_search: bool, has_search_tag: bool) -> bool:
    """Whether to run our own web search for ``message``.

    A model with built-in search handles it itself unless a tag forces our hand.
    """
    if model_supports_search and not has_search_tag:
        return False
    lower = message.lower()
    keyword_hit = any(kw in lower for kw in SEARCH_KEYWORDS)
    return keyword_hit or has_search_tag


def format_search_context(query: str, results: List[WebSearchResult]) -> str:
    if not results:
        return (
            f'[System: Search executed for "{query}" but returned no results. '
            "Rely on internal knowledge.]"
        )
    blocks = [
        f"\n--- RESULT {i} ---\nTitle: {r.title}\nURL: {r.url}\n"
        f"Content: {r.content or r.snippet or '(No content available)'}\n"
        for i, r in enumerate(results, start=1)
    ]
    return (
        f'\n=== EXTERNAL WEB SEARCH RESULTS ===\nQuery: "{query}"\n'
        + "\n".join(blocks)
        + "\n===================================\n"
    )


def admin_debug_block(query: str, results: List[WebSearchResult]) -> str:
    data = json.dumps([asdict(r) for r in results], indent=2, ensure_ascii=False)
    return (
        f'\n\n```json\n[ADMIN DEBUG: SEARCH]\nQuery: "{query}"\n'
        f"Results: {len(results)}\nData: {data}\n```\n\n"
    )


def synthesis_prompt(original_prompt: str, query: str, search_context: str) -> str:
    return (
        f"USER ORIGINALLY ASKED: {original_prompt}\n\n"
        f"I have performed the following searches based on my previous thought process:\n- {query}\n\n"
        f"SEARCH CONTEXT:\n{search_context}\n\n"
        "INSTRUCTIONS: Synthesize a comprehensive answer to the user's original query "
        "using this search data. Cite sources using [1], [2] format. "
        "Do NOT repeat the <SEARCH> tags."
    )


def no_results_synthesis_prompt(original_prompt: str, query: str) -> str:
    return (
        f"USER ORIGINALLY ASKED: {original_prompt}\n\n"
        f'I attempted to search for: "{query}" but found no results.\n\n'
        "INSTRUCTIONS: Continue answering the user's request using your internal "
        "knowledge. Do NOT repeat the <SEARCH> tags."
    )


@dataclass
class PreemptiveResult:
    echo: str                   # streamed to the user and kept in the final text
    context: str                # becomes memory["external_web_search"]
    grounding: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ReactiveResult:
    prompt: str                 # next iteration's prompt
    fallback_context: str       # returned if the model then produces nothing


class SearchEscalation:
    """Runs searches for the loop controller.

    Args:
        search_fn: Coroutine with run_web_search's signature (tests swap it).
        limit: Maximum results requested from the primary provider.
        url/timeout: Primary provider endpoint and timeout in seconds.
        http_client: Shared ``httpx.AsyncClient`` for both providers.
    """

    def __init__(self, search_fn: Optional[SearchFn] = None, *, limit: int = DEFAULT_SEARCH_LIMIT,
                 url: str = BUBBLE_SEARCH_URL, timeout: float = DEFAULT_SEARCH_TIMEOUT,
                 http_client: Optional[httpx.AsyncClient] = None):
        self._search_fn = search_fn or run_web_search
        self._limit = limit
        self._url = url
        self._timeout = timeout
        self._http_client = http_client

    async def search(self, query: str, cancellation: CancellationToken) -> List[WebSearchResult]:
        if cancellation.cancelled:
            return []
        logger.info("Running web search: %r", query)
        return await self._search_fn(
            query, self._limit, http_client=self._http_client, url=self._url,
            timeout=self._timeout, cancellation=cancellation,
        )

    async def preemptive(self, prompt: str, *, supports_search: bool, is_admin: bool,
                         cancellation: CancellationToken) -> Optional[PreemptiveResult]:
        """Search before generation if the prompt calls for it, else None."""
        if not should_use_external_search(prompt, supports_search, False):
            return None
        echo = f"<SEARCH>{prompt}</SEARCH>"
        results = await self.search(prompt, cancellation)
        if is_admin:
            echo += admin_debug_block(prompt, results)
        return PreemptiveResult(
            echo=echo,
            context=format_search_context(prompt, results),
            grounding=[r.as_grounding() for r in results],
        )

    async def reactive(self, query: str, original_prompt: str, *, supports_search: bool,
                       cancellation: CancellationToken) -> Optional[ReactiveResult]:
        """Service a model-emitted search tag. None if the heuristic declines."""
        if not should_use_external_search(query, supports_search, True):
            return None
        results = await self.search(query, cancellation)
        if results:
            context = "".join(f"{r.title}: {r.snippet}\n" for r in results)
            return ReactiveResult(prompt=synthesis_prompt(original_prompt, query, context),
                                  fallback_context=context)
        return ReactiveResult(
            prompt=no_results_synthesis_prompt(original_prompt, query),
            fallback_context=(
                f'[System: Search executed for "{query}" but returned no results. '
                "Continue with internal knowledge.]"
            ),
        )
