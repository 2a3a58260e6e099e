"""
Reviewer runner: validates upcoming steps ahead of the executor.

A review grounds itself with up to three web searches derived from the step
text (technologies mentioned, security and performance keywords), then asks
an injected analyzer for findings. Without an analyzer, findings are pulled
heuristically from search snippets that mention bugs, deprecations and the
like. Each review is bounded by review_timeout_ms; a timed-out review
reports no findings and emits reviewer-timeout.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Protocol, Sequence

from pairloop.lib.config import PairConfig
from pairloop.search.web_search import SearchQueries, WebSearchResponse, WebSearchService
from pairloop.workflow.events import EventBus, EventType

logger = logging.getLogger(__name__)

MAX_REVIEW_QUERIES = 3
REVIEW_SEARCH_TIMEOUT_MS = 30000
MAX_HEURISTIC_FINDINGS = 5

TECH_PATTERNS = [
    re.compile(r"\b(react|vue|angular|svelte|next\.?js|nuxt|astro)\b", re.IGNORECASE),
    re.compile(r"\b(typescript|javascript|node\.?js|deno|bun|python|django|flask|fastapi)\b", re.IGNORECASE),
    re.compile(r"\b(tailwind|css|sass|styled-components)\b", re.IGNORECASE),
    re.compile(r"\b(postgresql|mysql|mongodb|redis|sqlite)\b", re.IGNORECASE),
    re.compile(r"\b(aws|gcp|azure|vercel|netlify|cloudflare)\b", re.IGNORECASE),
    re.compile(r"\b(docker|kubernetes|terraform)\b", re.IGNORECASE),
    re.compile(r"\b(jest|vitest|playwright|cypress|pytest)\b", re.IGNORECASE),
    re.compile(r"\b(graphql|rest|grpc|websocket)\b", re.IGNORECASE),
]
SECURITY_KEYWORDS = ("auth", "login", "password", "token", "jwt", "oauth", "security", "encrypt")
PERFORMANCE_KEYWORDS = ("performance", "optimize", "fast", "speed", "cache", "lazy")
FINDING_KEYWORDS = ("issue", "bug", "problem", "error", "warning", "deprecated", "vulnerability", "breaking")


class ReviewerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass
class ReviewAnalysis:
    findings: list[str]
    reasoning: str = ""


class ReviewAnalyzer(Protocol):
    """Model-backed step analysis for the reviewer."""

    async def analyze_step(
        self,
        step,
        search_results: Sequence[WebSearchResponse],
        model: str,
        timeout_ms: int,
    ) -> ReviewAnalysis:
        ...


@dataclass
class StepReviewResult:
    step_id: str
    success: bool = False
    findings: list[str] = field(default_factory=list)
    search_results: list[WebSearchResponse] = field(default_factory=list)
    duration_ms: float = 0.0
    timed_out: bool = False
    skipped: bool = False
    error: Optional[str] = None


def build_review_queries(step) -> list[str]:
    """Search queries for a step, at most three."""
    title = step.title
    combined = f"{title} {step.description or ''}".lower()

    technologies: list[str] = []
    for pattern in TECH_PATTERNS:
        for match in pattern.findall(combined):
            tech = match.lower()
            if tech not in technologies:
                technologies.append(tech)

    queries = []
    for tech in technologies:
        queries.append(SearchQueries.best_practices(tech, title))
        queries.append(SearchQueries.known_issues(tech))

    if any(k in combined for k in SECURITY_KEYWORDS):
        queries.append(SearchQueries.security("web application", title))

    if any(k in combined for k in PERFORMANCE_KEYWORDS):
        queries.append(SearchQueries.performance(technologies[0] if technologies else "application", title))

    if not queries:
        queries.append(f"best practices {title} implementation 2025")

    return queries[:MAX_REVIEW_QUERIES]


def extract_findings(search_results: Sequence[WebSearchResponse]) -> list[str]:
    """Turn snippets that mention trouble into findings, capped at five."""
    findings: list[str] = []
    for response in search_results:
        for result in response.results:
            snippet = result.snippet.lower()
            keyword = next((k for k in FINDING_KEYWORDS if k in snippet), None)
            if keyword is None:
                continue
            finding = f"Potential {keyword} found: {result.snippet[:200]}... (Source: {result.url})"
            if finding not in findings:
                findings.append(finding)
    return findings[:MAX_HEURISTIC_FINDINGS]


class ReviewerRunner:
    """Reviews steps one at a time and remembers the outcome per step id."""

    def __init__(
        self,
        config: Optional[PairConfig] = None,
        events: Optional[EventBus] = None,
        analyzer: Optional[ReviewAnalyzer] = None,
        web_search: Optional[WebSearchService] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or PairConfig()
        self.events = events if events is not None else EventBus()
        self.analyzer = analyzer
        self.web_search = web_search or WebSearchService(events=self.events)
        self._clock = clock

        self.state = ReviewerState.IDLE
        self.current_step_id: Optional[str] = None
        self.results: dict[str, StepReviewResult] = {}

    def is_reviewed(self, step_id: str) -> bool:
        return step_id in self.results

    def get_findings(self, step_id: str) -> list[str]:
        result = self.results.get(step_id)
        return list(result.findings) if result else []

    @property
    def reviewed_count(self) -> int:
        return len(self.results)

    async def review_step(self, step) -> StepReviewResult:
        """Review one step within review_timeout_ms. Never raises for review failures."""
        start = self._clock()
        self.current_step_id = step.id
        result = StepReviewResult(step_id=step.id)

        logger.info(f"[reviewer] {step.id}: reviewing")
        self.events.emit(EventType.REVIEWER_STARTED, step_id=step.id)

        timeout_s = self.config.review_timeout_ms / 1000
        try:
            findings, search_results = await asyncio.wait_for(self._perform_review(step), timeout=timeout_s)
            result.findings = findings
            result.search_results = search_results
            result.success = True
        except asyncio.TimeoutError:
            result.timed_out = True
            result.error = f"Review timed out after {timeout_s:g}s"
            logger.warning(f"[reviewer] {step.id}: {result.error}")
            self.events.emit(EventType.REVIEWER_TIMEOUT, step_id=step.id)
        except Exception as e:
            result.error = str(e)
            logger.warning(f"[reviewer] {step.id}: review failed: {e}")

        result.duration_ms = (self._clock() - start) * 1000
        self.current_step_id = None
        self.results[step.id] = result

        self.events.emit(
            EventType.REVIEWER_COMPLETED,
            step_id=step.id,
            has_findings=bool(result.findings),
        )
        return result

    async def _perform_review(self, step) -> tuple[list[str], list[WebSearchResponse]]:
        search_results: list[WebSearchResponse] = []

        if self.config.web_search_enabled and self.web_search.is_available():
            queries = build_review_queries(step)
            outcomes = await asyncio.gather(
                *(
                    self.web_search.search(q, step.id, timeout_ms=REVIEW_SEARCH_TIMEOUT_MS)
                    for q in queries
                ),
                return_exceptions=True,
            )
            search_results = [
                r for r in outcomes
                if isinstance(r, WebSearchResponse) and not r.error
            ]

        if self.analyzer is not None:
            analysis = await self.analyzer.analyze_step(
                step, search_results, self.config.reviewer_model, self.config.review_timeout_ms
            )
            return list(analysis.findings), search_results

        return extract_findings(search_results), search_results

    def skip_step(self, step_id: str) -> None:
        """Mark a step reviewed without looking at it."""
        self.results[step_id] = StepReviewResult(step_id=step_id, success=True, skipped=True)

    def pause(self, reason: str = "") -> None:
        if self.state is ReviewerState.RUNNING:
            self.state = ReviewerState.PAUSED
            logger.info(f"[reviewer] paused{': ' + reason if reason else ''}")

    def resume(self) -> None:
        if self.state is ReviewerState.PAUSED:
            self.state = ReviewerState.RUNNING
            logger.info("[reviewer] resumed")

    def start(self) -> None:
        self.state = ReviewerState.RUNNING

    def stop(self) -> None:
        self.state = ReviewerState.STOPPED

    def reset(self) -> None:
        self.state = ReviewerState.IDLE
        self.current_step_id = None
        self.results.clear()
