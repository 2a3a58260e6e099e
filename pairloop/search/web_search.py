"""
Web search for grounding reviewer findings and consensus proposals.

Tries Tavily first, then Brave. API keys come from TAVILY_API_KEY and
BRAVE_SEARCH_API_KEY unless passed explicitly. Successful responses are
cached for 15 minutes, keyed on the normalized query plus search options.

search() never raises for provider problems; a failed search comes back as
a WebSearchResponse with `error` set. With a RateLimiter attached, each
provider call runs under its backoff and circuit breaker, and a provider
that stays rate limited is marked degraded until it answers again.
"""

import json
import logging
import os
import time
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Optional

import httpx

from pairloop.lib.rate_limiter import RateLimiter, RateLimitError
from pairloop.workflow.events import EventBus, EventType

logger = logging.getLogger(__name__)

TAVILY_URL = "https://api.tavily.com/search"
BRAVE_URL = "https://api.search.brave.com/res/v1/web/search"

CACHE_TTL_SECONDS = 15 * 60
DEFAULT_MAX_RESULTS = 5
DEFAULT_SEARCH_DEPTH = "basic"     # basic | advanced (Tavily only)
DEFAULT_TIMEOUT_MS = 30000

NO_PROVIDER_ERROR = "No search provider configured (set TAVILY_API_KEY or BRAVE_SEARCH_API_KEY)"


class ProviderUnavailable(Exception):
    """The rate limiter gave up on a provider call."""


@dataclass
class WebSearchResult:
    title: str
    url: str
    snippet: str
    score: Optional[float] = None
    published_date: Optional[str] = None


@dataclass
class WebSearchResponse:
    query: str
    results: list[WebSearchResult] = field(default_factory=list)
    provider: str = "none"          # tavily, brave, none
    cached: bool = False
    duration_ms: float = 0.0
    error: Optional[str] = None


class SearchQueries:
    """Query templates for common grounding searches."""

    @staticmethod
    def best_practices(technology: str, context: str) -> str:
        return f"{technology} best practices {context} 2025"

    @staticmethod
    def known_issues(technology: str, version: Optional[str] = None) -> str:
        if version:
            return f"{technology} {version} known issues bugs problems"
        return f"{technology} known issues bugs problems 2025"

    @staticmethod
    def alternatives(approach: str, goal: str) -> str:
        return f"alternatives to {approach} for {goal} comparison"

    @staticmethod
    def security(technology: str, operation: str) -> str:
        return f"{technology} {operation} security vulnerabilities OWASP"

    @staticmethod
    def performance(technology: str, operation: str) -> str:
        return f"{technology} {operation} performance optimization benchmarks"


class WebSearchService:
    """Tavily/Brave search with a TTL cache and lifecycle events."""

    def __init__(
        self,
        events: Optional[EventBus] = None,
        tavily_api_key: Optional[str] = None,
        brave_api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.events = events if events is not None else EventBus()
        self.rate_limiter = rate_limiter
        self.tavily_api_key = tavily_api_key if tavily_api_key is not None else os.environ.get("TAVILY_API_KEY") or None
        self.brave_api_key = brave_api_key if brave_api_key is not None else os.environ.get("BRAVE_SEARCH_API_KEY") or None
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._cache: dict[str, tuple[float, WebSearchResponse]] = {}

    def is_available(self) -> bool:
        return bool(self.tavily_api_key or self.brave_api_key)

    def get_available_providers(self) -> list[str]:
        providers = []
        if self.tavily_api_key:
            providers.append("tavily")
        if self.brave_api_key:
            providers.append("brave")
        return providers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(headers={"Accept": "application/json"})
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def search(
        self,
        query: str,
        step_id: str,
        max_results: int = DEFAULT_MAX_RESULTS,
        search_depth: str = DEFAULT_SEARCH_DEPTH,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        include_domains: tuple[str, ...] = (),
        exclude_domains: tuple[str, ...] = (),
    ) -> WebSearchResponse:
        start = self._clock()
        key = self._cache_key(query, max_results, search_depth, include_domains, exclude_domains)

        cached = self._get_cached(key)
        if cached is not None:
            return replace(cached, cached=True, duration_ms=(self._clock() - start) * 1000)

        self.events.emit(EventType.WEB_SEARCH_STARTED, step_id=step_id, query=query)

        if self.tavily_api_key:
            response = await self._search_tavily(
                query, max_results, search_depth, timeout_ms, include_domains, exclude_domains
            )
            if not response.error:
                return self._succeed(key, response, step_id)
            logger.warning(f"[search] {response.error}")

        if self.brave_api_key:
            response = await self._search_brave(query, max_results, timeout_ms)
            if not response.error:
                return self._succeed(key, response, step_id)
            logger.warning(f"[search] {response.error}")

        error = "All search providers failed" if self.is_available() else NO_PROVIDER_ERROR
        self.events.emit(EventType.WEB_SEARCH_FAILED, step_id=step_id, error=error)
        return WebSearchResponse(
            query=query,
            duration_ms=(self._clock() - start) * 1000,
            error=error,
        )

    async def _send(self, provider: str, request: Callable[[], Awaitable[httpx.Response]]) -> httpx.Response:
        """Issue one provider request, through the rate limiter when there is one.

        Raises:
            httpx.HTTPError: Transport failure (no rate limiter)
            ProviderUnavailable: The rate limiter gave up on the call
        """
        if self.rate_limiter is None:
            return await request()

        async def attempt() -> httpx.Response:
            response = await request()
            if response.status_code == 429:
                raise RateLimitError(
                    f"{provider} returned 429", retry_after=response.headers.get("Retry-After")
                )
            return response

        outcome = await self.rate_limiter.execute(provider, attempt)
        if outcome.success:
            self.rate_limiter.clear_degraded(provider)
            return outcome.data
        if outcome.hit_rate_limit or outcome.circuit_open:
            self.rate_limiter.mark_degraded(provider, outcome.error)
        raise ProviderUnavailable(outcome.error)

    def _succeed(self, key: str, response: WebSearchResponse, step_id: str) -> WebSearchResponse:
        self._cache[key] = (self._clock() + CACHE_TTL_SECONDS, response)
        self.events.emit(EventType.WEB_SEARCH_COMPLETED, step_id=step_id, result_count=len(response.results))
        return response

    async def _search_tavily(
        self,
        query: str,
        max_results: int,
        search_depth: str,
        timeout_ms: int,
        include_domains: tuple[str, ...],
        exclude_domains: tuple[str, ...],
    ) -> WebSearchResponse:
        start = self._clock()
        body = {
            "api_key": self.tavily_api_key,
            "query": query,
            "search_depth": search_depth,
            "max_results": max_results,
        }
        if include_domains:
            body["include_domains"] = list(include_domains)
        if exclude_domains:
            body["exclude_domains"] = list(exclude_domains)

        try:
            response = await self._send(
                "tavily",
                lambda: self._get_client().post(TAVILY_URL, json=body, timeout=timeout_ms / 1000),
            )
        except httpx.TimeoutException:
            return self._failed(query, "tavily", start, "Tavily search failed: Request timed out")
        except (httpx.HTTPError, ProviderUnavailable) as e:
            return self._failed(query, "tavily", start, f"Tavily search failed: {e}")

        if not response.is_success:
            return self._failed(query, "tavily", start, f"Tavily API error ({response.status_code}): {response.text}")

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            return self._failed(query, "tavily", start, f"Tavily search failed: {e}")

        results = [
            WebSearchResult(
                title=r.get("title", ""),
                url=r.get("url", ""),
                snippet=r.get("content", ""),
                score=r.get("score"),
                published_date=r.get("published_date"),
            )
            for r in data.get("results", [])
        ]
        return WebSearchResponse(
            query=query,
            results=results,
            provider="tavily",
            duration_ms=(self._clock() - start) * 1000,
        )

    async def _search_brave(self, query: str, max_results: int, timeout_ms: int) -> WebSearchResponse:
        start = self._clock()
        try:
            response = await self._send("brave", lambda: self._get_client().get(
                BRAVE_URL,
                params={"q": query, "count": str(max_results)},
                headers={"Accept": "application/json", "X-Subscription-Token": self.brave_api_key},
                timeout=timeout_ms / 1000,
            ))
        except httpx.TimeoutException:
            return self._failed(query, "brave", start, "Brave search failed: Request timed out")
        except (httpx.HTTPError, ProviderUnavailable) as e:
            return self._failed(query, "brave", start, f"Brave search failed: {e}")

        if not response.is_success:
            return self._failed(query, "brave", start, f"Brave API error ({response.status_code}): {response.text}")

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            return self._failed(query, "brave", start, f"Brave search failed: {e}")

        results = [
            WebSearchResult(
                title=r.get("title", ""),
                url=r.get("url", ""),
                snippet=r.get("description", ""),
                published_date=r.get("page_age"),
            )
            for r in (data.get("web") or {}).get("results", [])
        ]
        return WebSearchResponse(
            query=query,
            results=results,
            provider="brave",
            duration_ms=(self._clock() - start) * 1000,
        )

    def _failed(self, query: str, provider: str, start: float, error: str) -> WebSearchResponse:
        return WebSearchResponse(
            query=query,
            provider=provider,
            duration_ms=(self._clock() - start) * 1000,
            error=error,
        )

    # --- cache ---------------------------------------------------------------

    @staticmethod
    def _cache_key(query, max_results, search_depth, include_domains, exclude_domains) -> str:
        options = json.dumps({
            "max_results": max_results,
            "search_depth": search_depth,
            "include_domains": sorted(include_domains),
            "exclude_domains": sorted(exclude_domains),
        }, sort_keys=True)
        return f"{query.lower().strip()}::{options}"

    def _get_cached(self, key: str) -> Optional[WebSearchResponse]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        expires_at, response = entry
        if self._clock() > expires_at:
            del self._cache[key]
            return None
        return response

    def clear_expired_cache(self) -> int:
        now = self._clock()
        expired = [k for k, (expires_at, _) in self._cache.items() if now > expires_at]
        for key in expired:
            del self._cache[key]
        return len(expired)

    def clear_cache(self) -> None:
        self._cache.clear()

    @property
    def cache_size(self) -> int:
        return len(self._cache)
