"""Web search grounding for reviewer and consensus rounds."""

from pairloop.search.web_search import (
    WebSearchResult,
    WebSearchResponse,
    WebSearchService,
    SearchQueries,
)

__all__ = [
    "WebSearchResult",
    "WebSearchResponse",
    "WebSearchService",
    "SearchQueries",
]
