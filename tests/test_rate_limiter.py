"""Tests for pairloop.lib.rate_limiter module."""

import asyncio
import random
import pytest

from pairloop.lib.rate_limiter import (
    BackoffConfig,
    CircuitBreakerConfig,
    CircuitState,
    RateLimitError,
    RateLimiter,
    is_rate_limit_error,
)
from pairloop.workflow.events import EventBus, EventRecorder, EventType


class FakeClock:
    """Monotonic clock in seconds that only moves when told to."""

    def __init__(self):
        self.now = 1000.0
        self.slept: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recorder():
    return EventRecorder()


def make_limiter(clock, recorder, **circuit):
    bus = EventBus()
    bus.subscribe(recorder)
    return RateLimiter(
        backoff=BackoffConfig(base_delay_ms=100, max_delay_ms=1000, max_attempts=3, use_jitter=False),
        circuit=CircuitBreakerConfig(**circuit) if circuit else None,
        events=bus,
        clock=clock,
        sleep=clock.sleep,
    )


class TestRateLimitDetection:
    """Tests for is_rate_limit_error."""

    def test_own_error(self):
        assert is_rate_limit_error(RateLimitError())

    def test_message_patterns(self):
        assert is_rate_limit_error(RuntimeError("HTTP 429"))
        assert is_rate_limit_error(RuntimeError("Rate limit exceeded"))
        assert not is_rate_limit_error(RuntimeError("connection reset"))


class TestBackoff:
    """Tests for delay calculation and Retry-After parsing."""

    def test_exponential_without_jitter(self, clock, recorder):
        limiter = make_limiter(clock, recorder)
        assert limiter.calculate_backoff_delay(0) == 100
        assert limiter.calculate_backoff_delay(2) == 400
        assert limiter.calculate_backoff_delay(10) == 1000

    def test_full_jitter_within_cap(self):
        limiter = RateLimiter(rng=random.Random(7))
        for attempt in range(5):
            delay = limiter.calculate_backoff_delay(attempt)
            assert 0 <= delay <= min(60000, 1000 * 2 ** attempt)

    def test_retry_after_wins(self, clock, recorder):
        limiter = make_limiter(clock, recorder)
        assert limiter.calculate_backoff_delay(0, retry_after_ms=2500) == 2500

    def test_parse_retry_after_seconds(self):
        assert RateLimiter.parse_retry_after("3") == 3000

    def test_parse_retry_after_past_date(self):
        assert RateLimiter.parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0

    def test_parse_retry_after_garbage(self):
        assert RateLimiter.parse_retry_after("soon") is None
        assert RateLimiter.parse_retry_after(None) is None


class TestCircuitBreaker:
    """Tests for the closed -> open -> half-open -> closed cycle."""

    def test_opens_after_threshold_429s(self, clock, recorder):
        limiter = make_limiter(clock, recorder)
        for _ in range(4):
            limiter.record_failure("openai", rate_limited=True)
        assert limiter.get_circuit_state("openai") is CircuitState.CLOSED
        limiter.record_failure("openai", rate_limited=True)
        assert limiter.get_circuit_state("openai") is CircuitState.OPEN
        assert recorder.of_type(EventType.CIRCUIT_OPEN)[0]["provider"] == "openai"

    def test_plain_failures_do_not_open(self, clock, recorder):
        limiter = make_limiter(clock, recorder)
        for _ in range(10):
            limiter.record_failure("openai", rate_limited=False)
        assert limiter.get_circuit_state("openai") is CircuitState.CLOSED

    def test_failures_outside_window_expire(self, clock, recorder):
        limiter = make_limiter(clock, recorder)
        for _ in range(4):
            limiter.record_failure("openai", rate_limited=True)
        clock.now += 61
        limiter.record_failure("openai", rate_limited=True)
        assert limiter.get_circuit_state("openai") is CircuitState.CLOSED

    def test_half_open_then_closed(self, clock, recorder):
        limiter = make_limiter(clock, recorder, failure_threshold=1)
        limiter.record_failure("anthropic", rate_limited=True)
        assert limiter.get_circuit_state("anthropic") is CircuitState.OPEN

        clock.now += 120
        assert limiter.get_circuit_state("anthropic") is CircuitState.HALF_OPEN
        limiter.record_success("anthropic")
        assert limiter.get_circuit_state("anthropic") is CircuitState.CLOSED
        assert recorder.types() == [
            EventType.CIRCUIT_OPEN,
            EventType.CIRCUIT_HALF_OPEN,
            EventType.CIRCUIT_CLOSED,
        ]

    def test_half_open_failure_reopens(self, clock, recorder):
        limiter = make_limiter(clock, recorder, failure_threshold=1)
        limiter.record_failure("anthropic", rate_limited=True)
        clock.now += 120
        assert limiter.get_circuit_state("anthropic") is CircuitState.HALF_OPEN
        limiter.record_failure("anthropic", rate_limited=False)
        assert limiter.get_circuit_state("anthropic") is CircuitState.OPEN


class TestTokenBucket:
    """Tests for should_wait pacing."""

    def test_bucket_drains_then_waits(self, clock, recorder):
        limiter = make_limiter(clock, recorder)
        for _ in range(50):
            assert limiter.should_wait("anthropic") == 0
        wait = limiter.should_wait("anthropic")
        assert wait == pytest.approx(1200, rel=0.01)

    def test_bucket_refills(self, clock, recorder):
        limiter = make_limiter(clock, recorder)
        for _ in range(50):
            limiter.should_wait("anthropic")
        clock.now += 60
        assert limiter.should_wait("anthropic") == 0


class TestExecute:
    """Tests for RateLimiter.execute."""

    def test_success_first_try(self, clock, recorder):
        limiter = make_limiter(clock, recorder)

        async def call():
            return "ok"

        result = asyncio.run(limiter.execute("openai", call))
        assert result.success
        assert result.data == "ok"
        assert result.attempts == 1
        assert not result.hit_rate_limit

    def test_retries_after_429(self, clock, recorder):
        limiter = make_limiter(clock, recorder)
        calls = []

        async def call():
            calls.append(1)
            if len(calls) < 3:
                raise RateLimitError()
            return "ok"

        result = asyncio.run(limiter.execute("openai", call))
        assert result.success
        assert result.attempts == 3
        assert result.hit_rate_limit
        assert clock.slept == [0.1, 0.2]
        assert len(recorder.of_type(EventType.RATE_LIMIT_HIT)) == 2

    def test_honors_retry_after(self, clock, recorder):
        limiter = make_limiter(clock, recorder)
        calls = []

        async def call():
            calls.append(1)
            if len(calls) == 1:
                raise RateLimitError(retry_after="2")
            return "ok"

        result = asyncio.run(limiter.execute("openai", call))
        assert result.success
        assert clock.slept == [2.0]

    def test_non_rate_limit_error_not_retried(self, clock, recorder):
        limiter = make_limiter(clock, recorder)

        async def call():
            raise ValueError("bad request")

        result = asyncio.run(limiter.execute("openai", call))
        assert not result.success
        assert result.attempts == 1
        assert result.error == "bad request"

    def test_exhausts_retries(self, clock, recorder):
        limiter = make_limiter(clock, recorder)

        async def call():
            raise RateLimitError()

        result = asyncio.run(limiter.execute("openai", call))
        assert not result.success
        assert result.attempts == 3
        assert "Exhausted 3 retries" in result.error

    def test_open_circuit_fails_fast(self, clock, recorder):
        limiter = make_limiter(clock, recorder, failure_threshold=1)
        limiter.record_failure("openai", rate_limited=True)
        called = []

        async def call():
            called.append(1)

        result = asyncio.run(limiter.execute("openai", call))
        assert result.circuit_open
        assert not result.success
        assert called == []


class TestDegradedMode:
    """Tests for degraded-mode bookkeeping."""

    def test_mark_and_clear(self, clock, recorder):
        limiter = make_limiter(clock, recorder)
        limiter.mark_degraded("openai", "circuit stuck open")
        assert limiter.is_degraded("openai")
        assert limiter.get_available_providers() == ["anthropic"]

        limiter.clear_degraded("openai")
        assert not limiter.is_degraded("openai")
        assert EventType.DEGRADED_MODE in recorder.types()
        assert EventType.RATE_LIMIT_RECOVERED in recorder.types()

    def test_reset(self, clock, recorder):
        limiter = make_limiter(clock, recorder, failure_threshold=1)
        limiter.record_failure("openai", rate_limited=True)
        limiter.mark_degraded("anthropic", "x")
        limiter.reset()
        assert limiter.get_available_providers() == ["anthropic", "openai"]
