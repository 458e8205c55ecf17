"""
Web search provider chain.

Primary: the Bubble search API (POST {query, limit}, explicit timeout).
Fallback: the DuckDuckGo Instant Answer API, key-less, returning the
abstract plus a handful of related topics.

Any primary failure (timeout, non-2xx, malformed payload) switches to the
fallback. The fallback never raises; on total failure the chain returns
an empty list.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from agent.cancellation import CancellationToken
from agent.errors import SearchProviderFailure
from bubble_constants import BUBBLE_SEARCH_URL, DUCKDUCKGO_API_URL

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 15
DEFAULT_SEARCH_TIMEOUT = 8.0
RELATED_TOPICS_LIMIT = 5


@dataclass(frozen=True)
class WebSearchResult:
    title: str
    url: str
    snippet: str = ""
    content: str = ""

    def as_grounding(self) -> Dict[str, Any]:
        return {"web": {"uri": self.url, "title": self.title}}


async def run_bubble_search(client: httpx.AsyncClient, query: str, limit: int = DEFAULT_SEARCH_LIMIT, *,
                            url: str = BUBBLE_SEARCH_URL,
                            timeout: float = DEFAULT_SEARCH_TIMEOUT) -> List[WebSearchResult]:
    """Query the primary provider. Raises SearchProviderFailure on any failure."""
    try:
        resp = await client.post(url, json={"query": query, "limit": limit}, timeout=timeout)
    except httpx.TimeoutException as e:
        raise SearchProviderFailure(f"Bubble Search timed out after {timeout}s") from e
    except httpx.HTTPError as e:
        raise SearchProviderFailure(f"Bubble Search request failed: {e}") from e

    if not resp.is_success:
        raise SearchProviderFailure(f"Bubble Search API Error: {resp.status_code}")
    try:
        data = resp.json()
    except ValueError as e:
        raise SearchProviderFailure("Bubble Search returned invalid JSON") from e
    if not isinstance(data, dict):
        raise SearchProviderFailure("Bubble Search returned an unexpected payload")

    results = data.get("results")
    if not data.get("success"):
        return []
    if not isinstance(results, list):
        raise SearchProviderFailure("Bubble Search payload has no results list")

    mapped = []
    for r in results:
        if not isinstance(r, dict) or not r.get("url"):
            continue
        snippet = r.get("snippet") or "No description available."
        mapped.append(WebSearchResult(
            title=r.get("title") or "Untitled Page",
            url=r["url"],
            snippet=snippet,
            content=r.get("snippet") or "",
        ))
    return mapped


async def run_duckduckgo_fallback(client: httpx.AsyncClient, query: str) -> List[WebSearchResult]:
    """Key-less fallback. Never raises."""
    try:
        resp = await client.get(DUCKDUCKGO_API_URL, params={
            "q": query, "format": "json", "no_redirect": "1", "skip_disambig": "1",
        })
        if not resp.is_success:
            return []
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("Fallback search failed: %s", e)
        return []
    if not isinstance(data, dict):
        return []

    results: List[WebSearchResult] = []
    if data.get("AbstractURL") and data.get("Heading"):
        results.append(WebSearchResult(
            title=data["Heading"],
            url=data["AbstractURL"],
            snippet=data.get("Abstract") or "Result from DuckDuckGo",
            content=data.get("Abstract") or "",
        ))

    related = data.get("RelatedTopics")
    if isinstance(related, list):
        for topic in related[:RELATED_TOPICS_LIMIT]:
            if not isinstance(topic, dict):
                continue
            text, first_url = topic.get("Text"), topic.get("FirstURL")
            if not (text and first_url):
                continue
            results.append(WebSearchResult(
                title=text.split(" - ")[0] or "Related Result",
                url=first_url,
                snippet=text,
                content=text,
            ))
    return results


async def run_web_search(query: str, limit: int = DEFAULT_SEARCH_LIMIT, *,
                         http_client: Optional[httpx.AsyncClient] = None,
                         url: str = BUBBLE_SEARCH_URL,
                         timeout: float = DEFAULT_SEARCH_TIMEOUT,
                         cancellation: Optional[CancellationToken] = None) -> List[WebSearchResult]:
    """Primary provider with unconditional fallback. Returns [] on total failure."""
    if cancellation is not None and cancellation.cancelled:
        return []
    client = http_client or httpx.AsyncClient(timeout=timeout)
    try:
        try:
            return await run_bubble_search(client, query, limit, url=url, timeout=timeout)
        except SearchProviderFailure as e:
            logger.warning("Primary search provider failed: %s", e)
        if cancellation is not None and cancellation.cancelled:
            return []
        logger.info("Switching to DuckDuckGo fallback for %r", query)
        return await run_duckduckgo_fallback(client, query)
    finally:
        if http_client is None:
            await client.aclose()
