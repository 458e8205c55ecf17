"""
Tools Package

External capabilities the agent core calls out to:

- web_search: Web search provider chain (Bubble Search API with a
  DuckDuckGo Instant Answer fallback)
"""

from .web_search import WebSearchResult, run_web_search

__all__ = ["WebSearchResult", "run_web_search"]
