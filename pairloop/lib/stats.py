"""
Run metrics, cost tracking and the sycophancy heuristic for pair-mode runs.

Per-step timings and consensus outcomes are collected in PairMetrics during a
run. A one-line JSON summary can be appended to a metrics.jsonl file.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Agreement faster than this in round 1 is suspicious
FAST_CONSENSUS_MS = 30000
# Proposals this similar suggest one side just echoed the other
SUSPICIOUS_SIMILARITY = 0.95

COST_CATEGORIES = ("executor", "reviewer", "consensus", "web_search")
# Flat per-query price of a provider search, in USD
WEB_SEARCH_COST_PER_QUERY = 0.008


@dataclass
class SycophancyCheck:
    risky: bool
    reasons: list[str] = field(default_factory=list)


def check_sycophancy_risk(result) -> SycophancyCheck:
    """Flag agreement that looks too fast or too similar to be independent.

    Works on anything shaped like a ConsensusResult (aligned, rounds,
    duration_ms, similarity). Non-fatal: callers only log the outcome.
    """
    reasons = []

    if result.aligned and result.rounds == 1 and result.duration_ms < FAST_CONSENSUS_MS:
        reasons.append("Consensus reached in < 30 seconds (round 1)")

    if result.similarity is not None and result.similarity > SUSPICIOUS_SIMILARITY:
        reasons.append(f"Very high proposal similarity ({result.similarity * 100:.1f}%)")

    return SycophancyCheck(risky=bool(reasons), reasons=reasons)


@dataclass
class CostBreakdown:
    """Spend by category, in `currency`."""
    executor: float = 0.0
    reviewer: float = 0.0
    consensus: float = 0.0
    web_search: float = 0.0
    currency: str = "USD"

    @property
    def total(self) -> float:
        return self.executor + self.reviewer + self.consensus + self.web_search

    def add(self, category: str, amount: float) -> None:
        if category not in COST_CATEGORIES:
            raise ValueError(f"Unknown cost category: {category}")
        setattr(self, category, getattr(self, category) + amount)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["total"] = self.total
        return data


@dataclass
class StepMetrics:
    """Timings and outcome for one step."""
    step_id: str
    outcome: str = "pending"                     # completed, failed, skipped
    had_findings: bool = False
    review_timed_out: bool = False
    review_duration_ms: Optional[float] = None
    execute_duration_ms: Optional[float] = None
    consensus_duration_ms: Optional[float] = None
    consensus_rounds: int = 0


@dataclass
class PairMetrics:
    """Aggregate metrics for one pair-mode run."""
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None
    steps: dict[str, StepMetrics] = field(default_factory=dict)
    consensus_sessions: int = 0
    consensus_rounds: int = 0
    consensus_aligned: int = 0
    executor_tiebreaks: int = 0
    consensus_timeouts: int = 0
    consensus_cancelled: int = 0
    review_timeouts: int = 0
    web_searches: int = 0
    sycophancy_flags: int = 0
    cost: CostBreakdown = field(default_factory=CostBreakdown)

    def step(self, step_id: str) -> StepMetrics:
        """Get or create the metrics entry for a step."""
        if step_id not in self.steps:
            self.steps[step_id] = StepMetrics(step_id=step_id)
        return self.steps[step_id]

    def record_consensus(self, result, timed_out: bool = False) -> None:
        """Fold a finished ConsensusResult into the totals."""
        self.consensus_sessions += 1
        self.consensus_rounds += result.rounds
        if result.web_search_used:
            self.web_searches += 1
        if result.decided_by == "consensus":
            self.consensus_aligned += 1
        elif result.decided_by == "user":
            self.consensus_cancelled += 1
        elif timed_out:
            self.consensus_timeouts += 1
        else:
            self.executor_tiebreaks += 1

        step = self.step(result.step_id)
        step.had_findings = True
        step.consensus_rounds = result.rounds
        step.consensus_duration_ms = result.duration_ms

    def count_outcomes(self) -> dict[str, int]:
        counts = {"completed": 0, "failed": 0, "skipped": 0}
        for step in self.steps.values():
            if step.outcome in counts:
                counts[step.outcome] += 1
        return counts

    def summary(self) -> dict:
        duration = (self.finished_at or time.time()) - self.started_at
        return {
            "duration_seconds": round(duration, 2),
            "steps": self.count_outcomes(),
            "consensus_sessions": self.consensus_sessions,
            "consensus_rounds": self.consensus_rounds,
            "consensus_aligned": self.consensus_aligned,
            "executor_tiebreaks": self.executor_tiebreaks,
            "consensus_timeouts": self.consensus_timeouts,
            "consensus_cancelled": self.consensus_cancelled,
            "review_timeouts": self.review_timeouts,
            "web_searches": self.web_searches,
            "sycophancy_flags": self.sycophancy_flags,
            "cost": self.cost.to_dict(),
        }


def record_run_metrics(metrics_file: Path, metrics: PairMetrics, run_id: str) -> None:
    """Append a run summary to a metrics.jsonl file."""
    entry = {"run_id": run_id, "timestamp": time.time(), **metrics.summary()}
    metrics_file.parent.mkdir(parents=True, exist_ok=True)
    with open(metrics_file, "a") as f:
        f.write(json.dumps(entry) + "\n")
        f.flush()


def load_run_metrics(metrics_file: Path) -> list[dict]:
    """Load run summaries. Skips corrupted lines."""
    if not metrics_file.exists():
        return []

    entries = []
    for line_num, line in enumerate(metrics_file.read_text().splitlines(), 1):
        if not line.strip():
            continue
        try:
            entries.append(json.loads(line))
        except json.JSONDecodeError as e:
            logger.warning(f"Skipping corrupted metrics line {line_num} in {metrics_file}: {e}")
    return entries
