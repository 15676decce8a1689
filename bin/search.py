"""Web search augmentation: Google Custom Search or DuckDuckGo, with a single-link fallback."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List
from urllib.parse import quote_plus

import requests
from ddgs import DDGS

logger = logging.getLogger("deepchat.search")

GOOGLE_CSE_URL = "https://www.googleapis.com/customsearch/v1"


@dataclass(frozen=True)
class WebSearchResult:
    title: str
    url: str
    snippet: str

    def to_dict(self) -> dict:
        return {"title": self.title, "url": self.url, "snippet": self.snippet}

    @classmethod
    def from_dict(cls, data: dict) -> "WebSearchResult":
        return cls(title=str(data.get("title", "")), url=str(data.get("url", "")),
                   snippet=str(data.get("snippet", "")))


def fallback_result(query: str) -> WebSearchResult:
    """The single link-out result returned whenever a real search fails."""
    return WebSearchResult(
        title=f"Search results for: {query}",
        url=f"https://www.google.com/search?q={quote_plus(query)}",
        snippet="Click to view search results on Google",
    )


class WebSearcher:
    """Run a query against the configured engine; ``search`` never raises."""

    def __init__(self, api_key: str = "", engine_id: str = "", *, engine: str = "google",
                 http: Any = requests, timeout_s: float = 30.0):
        self.api_key = api_key
        self.engine_id = engine_id
        self.engine = engine
        self.http = http
        self.timeout_s = timeout_s

    def search(self, query: str, num_results: int = 10) -> List[WebSearchResult]:
        num = max(1, min(10, int(num_results)))
        try:
            if self.engine == "duckduckgo":
                results = self._search_duckduckgo(query, num)
            else:
                results = self._search_google(query, num)
        except Exception as exc:
            logger.error("Web search failed for %r: %s", query, exc)
            return [fallback_result(query)]
        logger.info("Web search for %r returned %d results", query, len(results))
        return results

    def _search_google(self, query: str, num: int) -> List[WebSearchResult]:
        if not self.api_key or not self.engine_id:
            raise ValueError("Google Custom Search is not configured")
        params = {"key": self.api_key, "cx": self.engine_id, "q": query, "num": num}
        resp = self.http.get(GOOGLE_CSE_URL, params=params, timeout=self.timeout_s)
        if not 200 <= resp.status_code < 300:
            raise ValueError(f"Google Custom Search HTTP {resp.status_code}: {resp.text[:200]}")
        data = resp.json()
        return [
            WebSearchResult(title=item["title"], url=item["link"], snippet=item.get("snippet", ""))
            for item in data.get("items", [])
        ]

    def _search_duckduckgo(self, query: str, num: int) -> List[WebSearchResult]:
        results = []
        with DDGS() as ddgs:
            for r in ddgs.text(query, max_results=num):
                results.append(WebSearchResult(title=r.get("title", ""), url=r.get("href", ""),
                                               snippet=r.get("body", "")))
        return results
