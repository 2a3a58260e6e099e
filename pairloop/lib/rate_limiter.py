"""
Rate limiting for model provider calls.

Three mechanisms layered per provider:
- Token bucket: proactive spacing based on the provider's requests-per-minute.
- Retry with full-jitter exponential backoff on rate-limit (429) errors,
  honoring Retry-After when the provider sends one.
- Circuit breaker: repeated 429s inside a sliding window open the circuit and
  fail calls fast until a reset timeout passes. After that a half-open
  trial request either closes the circuit (success) or re-opens it (failure).

State changes are reported on the EventBus as rate-limit-hit,
circuit-open/half-open/closed, degraded-mode and rate-limit-recovered.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from pairloop.workflow.events import EventBus, EventType

logger = logging.getLogger(__name__)

# Requests per minute when nothing better is known
PROVIDER_RPM = {
    "anthropic": 50,
    "openai": 500,
}
DEFAULT_RPM = 500


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass
class BackoffConfig:
    base_delay_ms: int = 1000
    max_delay_ms: int = 60000
    max_attempts: int = 6
    use_jitter: bool = True


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5       # 429s within the window that open the circuit
    failure_window_ms: int = 60000
    reset_timeout_ms: int = 120000   # Open duration before a half-open trial
    half_open_requests: int = 1      # Successful trials needed to close


class RateLimitError(Exception):
    """Provider rejected a call for rate reasons (HTTP 429)."""

    def __init__(self, message: str = "429 Too Many Requests", retry_after: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(message)


@dataclass
class RateLimitResult:
    """Outcome of RateLimiter.execute()."""
    success: bool = False
    attempts: int = 0
    total_delay_ms: float = 0.0
    hit_rate_limit: bool = False
    circuit_open: bool = False
    data: Any = None
    error: Optional[str] = None


@dataclass
class _Circuit:
    state: CircuitState = CircuitState.CLOSED
    failures: list[float] = field(default_factory=list)
    last_state_change: float = 0.0
    half_open_successes: int = 0


@dataclass
class _TokenBucket:
    capacity: float
    tokens: float
    refill_rate: float  # tokens per second
    last_refill: float


def is_rate_limit_error(error: BaseException) -> bool:
    """Default 429 detection: our own RateLimitError or a telltale message."""
    if isinstance(error, RateLimitError):
        return True
    message = str(error).lower()
    return "429" in message or "rate limit" in message or "too many requests" in message


class RateLimiter:
    """Per-provider backoff, token bucket and circuit breaker."""

    def __init__(
        self,
        backoff: Optional[BackoffConfig] = None,
        circuit: Optional[CircuitBreakerConfig] = None,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.backoff = backoff or BackoffConfig()
        self.circuit_config = circuit or CircuitBreakerConfig()
        self.events = events if events is not None else EventBus()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._circuits: dict[str, _Circuit] = {}
        self._buckets: dict[str, _TokenBucket] = {}
        self._degraded: set[str] = set()

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _init_provider(self, provider: str) -> None:
        now = self._now_ms()
        self._circuits.setdefault(provider, _Circuit(last_state_change=now))
        if provider not in self._buckets:
            rpm = PROVIDER_RPM.get(provider, DEFAULT_RPM)
            self._buckets[provider] = _TokenBucket(
                capacity=rpm,
                tokens=rpm,
                refill_rate=rpm / 60,
                last_refill=now,
            )

    def _set_state(self, provider: str, circuit: _Circuit, state: CircuitState) -> None:
        circuit.state = state
        circuit.last_state_change = self._now_ms()
        logger.info(f"[rate-limit] {provider}: circuit {state.value}")
        event = {
            CircuitState.OPEN: EventType.CIRCUIT_OPEN,
            CircuitState.HALF_OPEN: EventType.CIRCUIT_HALF_OPEN,
            CircuitState.CLOSED: EventType.CIRCUIT_CLOSED,
        }[state]
        self.events.emit(event, provider=provider)

    # --- circuit breaker ---------------------------------------------------

    def get_circuit_state(self, provider: str) -> CircuitState:
        """Current circuit state, promoting open -> half-open once the reset timeout passes."""
        if provider not in self._circuits:
            self._init_provider(provider)
            return CircuitState.CLOSED

        circuit = self._circuits[provider]
        if circuit.state is CircuitState.OPEN:
            if self._now_ms() - circuit.last_state_change >= self.circuit_config.reset_timeout_ms:
                circuit.half_open_successes = 0
                self._set_state(provider, circuit, CircuitState.HALF_OPEN)
        return circuit.state

    def record_failure(self, provider: str, rate_limited: bool = False) -> None:
        """Record a failed call. Only rate-limit failures can open a closed circuit."""
        self._init_provider(provider)
        circuit = self._circuits[provider]
        now = self._now_ms()

        circuit.failures.append(now)
        window = self.circuit_config.failure_window_ms
        circuit.failures = [t for t in circuit.failures if now - t < window]

        if circuit.state is CircuitState.HALF_OPEN:
            self._set_state(provider, circuit, CircuitState.OPEN)
            return

        if (
            rate_limited
            and circuit.state is CircuitState.CLOSED
            and len(circuit.failures) >= self.circuit_config.failure_threshold
        ):
            self._set_state(provider, circuit, CircuitState.OPEN)

    def record_success(self, provider: str) -> None:
        circuit = self._circuits.get(provider)
        if circuit is None or circuit.state is not CircuitState.HALF_OPEN:
            return

        circuit.half_open_successes += 1
        if circuit.half_open_successes >= self.circuit_config.half_open_requests:
            circuit.failures = []
            self._set_state(provider, circuit, CircuitState.CLOSED)

    # --- pacing --------------------------------------------------------------

    def should_wait(self, provider: str) -> float:
        """Take a token from the provider's bucket. Returns ms to wait if it is empty."""
        self._init_provider(provider)
        bucket = self._buckets[provider]

        now = self._now_ms()
        elapsed = (now - bucket.last_refill) / 1000
        bucket.tokens = min(bucket.capacity, bucket.tokens + elapsed * bucket.refill_rate)
        bucket.last_refill = now

        if bucket.tokens >= 1:
            bucket.tokens -= 1
            return 0.0
        return (1 - bucket.tokens) / bucket.refill_rate * 1000

    def calculate_backoff_delay(self, attempt: int, retry_after_ms: Optional[float] = None) -> float:
        """Delay before retry number `attempt` (0-based), in ms.

        Retry-After wins when present; otherwise full jitter over
        min(max_delay, base * 2^attempt).
        """
        if retry_after_ms and retry_after_ms > 0:
            return retry_after_ms

        capped = min(self.backoff.max_delay_ms, self.backoff.base_delay_ms * (2 ** attempt))
        if self.backoff.use_jitter:
            return self._rng.uniform(0, capped)
        return capped

    @staticmethod
    def parse_retry_after(value: Optional[str]) -> Optional[float]:
        """Parse a Retry-After header (seconds or HTTP date) into ms."""
        if not value:
            return None
        try:
            return float(value) * 1000
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return max(0.0, (when - datetime.now(timezone.utc)).total_seconds() * 1000)

    # --- execution -----------------------------------------------------------

    async def execute(
        self,
        provider: str,
        fn: Callable[[], Awaitable[Any]],
        is_rate_limited: Callable[[BaseException], bool] = is_rate_limit_error,
        get_retry_after: Optional[Callable[[BaseException], Optional[str]]] = None,
    ) -> RateLimitResult:
        """Run fn() under the provider's circuit, bucket and retry policy.

        Never raises for provider errors; the outcome is in the result.
        """
        result = RateLimitResult()

        if self.get_circuit_state(provider) is CircuitState.OPEN:
            result.circuit_open = True
            result.error = f"Circuit breaker open for {provider}"
            return result

        wait_ms = self.should_wait(provider)
        if wait_ms > 0:
            await self._sleep(wait_ms / 1000)
            result.total_delay_ms += wait_ms

        for attempt in range(self.backoff.max_attempts):
            result.attempts = attempt + 1
            try:
                result.data = await fn()
            except Exception as e:
                if not is_rate_limited(e):
                    self.record_failure(provider, rate_limited=False)
                    result.error = str(e)
                    return result

                result.hit_rate_limit = True
                self.record_failure(provider, rate_limited=True)

                retry_after = get_retry_after(e) if get_retry_after else getattr(e, "retry_after", None)
                retry_after_ms = self.parse_retry_after(retry_after)
                delay = self.calculate_backoff_delay(attempt, retry_after_ms)
                self.events.emit(EventType.RATE_LIMIT_HIT, provider=provider, retry_after_ms=delay)
                logger.warning(f"[rate-limit] {provider}: 429 on attempt {attempt + 1}, retrying in {delay:.0f}ms")

                if self.get_circuit_state(provider) is CircuitState.OPEN:
                    result.circuit_open = True
                    result.error = f"Circuit breaker opened for {provider} after repeated 429s"
                    return result

                await self._sleep(delay / 1000)
                result.total_delay_ms += delay
                continue

            self.record_success(provider)
            result.success = True
            return result

        result.error = f"Exhausted {self.backoff.max_attempts} retries for {provider}"
        return result

    # --- degraded mode -------------------------------------------------------

    def is_degraded(self, provider: str) -> bool:
        return provider in self._degraded

    def mark_degraded(self, provider: str, reason: str) -> None:
        self._degraded.add(provider)
        logger.warning(f"[rate-limit] {provider}: degraded ({reason})")
        self.events.emit(EventType.DEGRADED_MODE, reason=f"{provider}: {reason}")

    def clear_degraded(self, provider: str) -> None:
        if provider in self._degraded:
            self._degraded.discard(provider)
            self.events.emit(EventType.RATE_LIMIT_RECOVERED, provider=provider)

    def get_available_providers(self, providers: tuple[str, ...] = ("anthropic", "openai")) -> list[str]:
        return [
            p for p in providers
            if not self.is_degraded(p) and self.get_circuit_state(p) is not CircuitState.OPEN
        ]

    def reset(self) -> None:
        self._circuits.clear()
        self._buckets.clear()
        self._degraded.clear()
