"""Tests for pairloop.workflow.reviewer module."""

import asyncio
import pytest

from pairloop.lib.config import PairConfig
from pairloop.prd.models import UserStory
from pairloop.search.web_search import WebSearchResponse, WebSearchResult
from pairloop.workflow.events import EventBus, EventRecorder, EventType
from pairloop.workflow.reviewer import (
    ReviewAnalysis,
    ReviewerRunner,
    ReviewerState,
    build_review_queries,
    extract_findings,
)


def story(title, description=None, story_id="US-001"):
    return UserStory(id=story_id, title=title, priority=1, description=description)


def response(*snippets, url="https://example.com/a"):
    return WebSearchResponse(
        query="q",
        results=[WebSearchResult(title="hit", url=url, snippet=s) for s in snippets],
        provider="tavily",
    )


class FakeSearch:
    """Search service stand-in that always returns the same snippets."""

    def __init__(self, *snippets, available=True):
        self.snippets = snippets
        self.available = available
        self.queries = []

    def is_available(self):
        return self.available

    async def search(self, query, step_id, timeout_ms=30000, **kwargs):
        self.queries.append(query)
        return response(*self.snippets)


class StaticAnalyzer:
    def __init__(self, findings):
        self.findings = findings
        self.calls = []

    async def analyze_step(self, step, search_results, model, timeout_ms):
        self.calls.append((step.id, model, len(search_results)))
        return ReviewAnalysis(findings=list(self.findings), reasoning="checked")


class HangingAnalyzer:
    async def analyze_step(self, step, search_results, model, timeout_ms):
        await asyncio.sleep(3600)


class BrokenAnalyzer:
    async def analyze_step(self, step, search_results, model, timeout_ms):
        raise RuntimeError("model unavailable")


def make_reviewer(analyzer=None, search=None, **config):
    bus = EventBus()
    recorder = EventRecorder(bus)
    reviewer = ReviewerRunner(
        config=PairConfig(**config),
        events=bus,
        analyzer=analyzer,
        web_search=search or FakeSearch(available=False),
    )
    return reviewer, recorder


class TestBuildReviewQueries:
    """Tests for build_review_queries."""

    def test_technology_and_security(self):
        queries = build_review_queries(story("Add React login form"))
        assert queries == [
            "react best practices Add React login form 2025",
            "react known issues bugs problems 2025",
            "web application Add React login form security vulnerabilities OWASP",
        ]

    def test_capped_at_three(self):
        step = story("Cache sessions", description="Use Redis and PostgreSQL behind FastAPI for fast login")
        assert len(build_review_queries(step)) == 3

    def test_default_query(self):
        assert build_review_queries(story("Write changelog")) == [
            "best practices Write changelog implementation 2025"
        ]


class TestExtractFindings:
    """Tests for heuristic finding extraction."""

    def test_keyword_snippets_become_findings(self):
        findings = extract_findings([
            response("This API is deprecated since v5", "Nothing to see here"),
        ])
        assert findings == [
            "Potential deprecated found: This API is deprecated since v5... (Source: https://example.com/a)"
        ]

    def test_duplicates_dropped(self):
        same = response("Known bug with token refresh")
        assert len(extract_findings([same, same])) == 1

    def test_capped_at_five(self):
        responses = [response(f"bug number {n}", url=f"https://example.com/{n}") for n in range(8)]
        assert len(extract_findings(responses)) == 5

    def test_long_snippet_truncated(self):
        findings = extract_findings([response("issue " + "x" * 400)])
        assert len(findings[0]) < 300


class TestReviewStep:
    """Tests for ReviewerRunner.review_step."""

    def test_analyzer_findings(self):
        analyzer = StaticAnalyzer(["Password hashing uses md5"])
        reviewer, recorder = make_reviewer(analyzer=analyzer)
        result = asyncio.run(reviewer.review_step(story("Add login")))

        assert result.success
        assert result.findings == ["Password hashing uses md5"]
        assert reviewer.is_reviewed("US-001")
        assert reviewer.get_findings("US-001") == ["Password hashing uses md5"]
        assert reviewer.reviewed_count == 1
        assert analyzer.calls == [("US-001", "gpt-4.1", 0)]
        assert recorder.types() == [EventType.REVIEWER_STARTED, EventType.REVIEWER_COMPLETED]
        assert recorder.events[-1]["has_findings"] is True

    def test_heuristic_findings_from_search(self):
        search = FakeSearch("Known bug when tokens expire")
        reviewer, _ = make_reviewer(search=search)
        result = asyncio.run(reviewer.review_step(story("Add JWT login")))

        assert search.queries
        assert len(result.search_results) == len(search.queries)
        assert result.findings == [
            "Potential bug found: Known bug when tokens expire... (Source: https://example.com/a)"
        ]

    def test_search_disabled(self):
        search = FakeSearch("Known bug")
        reviewer, _ = make_reviewer(search=search, web_search_enabled=False)
        result = asyncio.run(reviewer.review_step(story("Add JWT login")))
        assert search.queries == []
        assert result.findings == []
        assert result.success

    def test_no_findings(self):
        reviewer, recorder = make_reviewer()
        result = asyncio.run(reviewer.review_step(story("Write changelog")))
        assert result.success
        assert result.findings == []
        assert recorder.events[-1]["has_findings"] is False

    def test_timeout(self, caplog):
        reviewer, recorder = make_reviewer(analyzer=HangingAnalyzer(), review_timeout_ms=50)
        result = asyncio.run(reviewer.review_step(story("Add login")))

        assert result.timed_out
        assert not result.success
        assert result.findings == []
        assert reviewer.is_reviewed("US-001")
        assert recorder.types() == [
            EventType.REVIEWER_STARTED,
            EventType.REVIEWER_TIMEOUT,
            EventType.REVIEWER_COMPLETED,
        ]
        assert "Review timed out" in caplog.text

    def test_analyzer_error_does_not_raise(self):
        reviewer, _ = make_reviewer(analyzer=BrokenAnalyzer())
        result = asyncio.run(reviewer.review_step(story("Add login")))
        assert not result.success
        assert result.error == "model unavailable"
        assert reviewer.get_findings("US-001") == []


class TestReviewerControls:
    """Tests for skip, pause/resume and reset."""

    def test_skip_step(self):
        reviewer, recorder = make_reviewer()
        reviewer.skip_step("US-004")
        assert reviewer.is_reviewed("US-004")
        assert reviewer.results["US-004"].skipped
        assert reviewer.get_findings("US-004") == []
        assert recorder.events == []

    def test_pause_only_when_running(self):
        reviewer, _ = make_reviewer()
        reviewer.pause("nothing to pause")
        assert reviewer.state is ReviewerState.IDLE

        reviewer.start()
        reviewer.pause("consensus")
        assert reviewer.state is ReviewerState.PAUSED
        reviewer.resume()
        assert reviewer.state is ReviewerState.RUNNING

    def test_resume_after_stop_stays_stopped(self):
        reviewer, _ = make_reviewer()
        reviewer.start()
        reviewer.stop()
        reviewer.resume()
        assert reviewer.state is ReviewerState.STOPPED

    def test_reset(self):
        reviewer, _ = make_reviewer()
        reviewer.start()
        reviewer.skip_step("US-001")
        reviewer.reset()
        assert reviewer.state is ReviewerState.IDLE
        assert reviewer.reviewed_count == 0
