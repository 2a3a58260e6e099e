"""Tests for the stats module."""

import json
import pytest

from pairloop.consensus.types import ConsensusResult
from pairloop.lib.stats import (
    CostBreakdown,
    PairMetrics,
    check_sycophancy_risk,
    load_run_metrics,
    record_run_metrics,
)


def consensus_result(**overrides):
    values = dict(
        step_id="US-001",
        aligned=True,
        final_decision="Use bcrypt",
        decided_by="consensus",
        rounds=1,
        duration_ms=5000,
        similarity=0.8,
    )
    values.update(overrides)
    return ConsensusResult(**values)


class TestSycophancyCheck:
    """Tests for check_sycophancy_risk."""

    def test_fast_first_round_agreement_flagged(self):
        check = check_sycophancy_risk(consensus_result())
        assert check.risky
        assert "Consensus reached in < 30 seconds (round 1)" in check.reasons

    def test_slow_agreement_not_flagged(self):
        check = check_sycophancy_risk(consensus_result(duration_ms=45000))
        assert not check.risky
        assert check.reasons == []

    def test_later_round_not_flagged_for_speed(self):
        check = check_sycophancy_risk(consensus_result(rounds=2))
        assert not check.risky

    def test_high_similarity_flagged(self):
        check = check_sycophancy_risk(consensus_result(rounds=2, similarity=0.97))
        assert check.risky
        assert check.reasons == ["Very high proposal similarity (97.0%)"]

    def test_no_similarity(self):
        check = check_sycophancy_risk(consensus_result(aligned=False, similarity=None, decided_by="executor"))
        assert not check.risky


class TestCostBreakdown:
    """Tests for CostBreakdown."""

    def test_total(self):
        cost = CostBreakdown()
        cost.add("executor", 0.5)
        cost.add("web_search", 0.01)
        assert cost.total == pytest.approx(0.51)
        assert cost.to_dict()["total"] == pytest.approx(0.51)
        assert cost.to_dict()["currency"] == "USD"

    def test_unknown_category(self):
        with pytest.raises(ValueError):
            CostBreakdown().add("training", 1.0)


class TestPairMetrics:
    """Tests for PairMetrics aggregation."""

    def test_step_created_once(self):
        metrics = PairMetrics()
        assert metrics.step("US-001") is metrics.step("US-001")

    def test_record_consensus_outcomes(self):
        metrics = PairMetrics()
        metrics.record_consensus(consensus_result(step_id="US-001"))
        metrics.record_consensus(consensus_result(step_id="US-002", aligned=False, decided_by="executor", rounds=3))
        metrics.record_consensus(consensus_result(step_id="US-003", aligned=False, decided_by="user", rounds=1))
        metrics.record_consensus(
            consensus_result(step_id="US-004", aligned=False, decided_by="executor", rounds=2),
            timed_out=True,
        )
        assert metrics.consensus_sessions == 4
        assert metrics.consensus_rounds == 7
        assert metrics.consensus_aligned == 1
        assert metrics.executor_tiebreaks == 1
        assert metrics.consensus_cancelled == 1
        assert metrics.consensus_timeouts == 1
        assert metrics.step("US-002").consensus_rounds == 3

    def test_count_outcomes(self):
        metrics = PairMetrics()
        metrics.step("a").outcome = "completed"
        metrics.step("b").outcome = "completed"
        metrics.step("c").outcome = "skipped"
        metrics.step("d")
        assert metrics.count_outcomes() == {"completed": 2, "failed": 0, "skipped": 1}


class TestRecordAndLoadMetrics:
    """Tests for record_run_metrics and load_run_metrics."""

    def test_record_creates_file(self, tmp_path):
        metrics_file = tmp_path / "logs" / "metrics.jsonl"
        record_run_metrics(metrics_file, PairMetrics(), "auth")
        assert metrics_file.exists()

    def test_record_appends(self, tmp_path):
        metrics_file = tmp_path / "metrics.jsonl"
        record_run_metrics(metrics_file, PairMetrics(), "run-1")
        record_run_metrics(metrics_file, PairMetrics(), "run-2")
        entries = load_run_metrics(metrics_file)
        assert [e["run_id"] for e in entries] == ["run-1", "run-2"]
        assert "consensus_sessions" in entries[0]

    def test_load_missing_file(self, tmp_path):
        assert load_run_metrics(tmp_path / "missing.jsonl") == []

    def test_load_skips_corrupted_lines(self, tmp_path, caplog):
        metrics_file = tmp_path / "metrics.jsonl"
        metrics_file.write_text(
            json.dumps({"run_id": "good"}) + "\n"
            "{not json\n"
            "\n"
            + json.dumps({"run_id": "also-good"}) + "\n"
        )
        entries = load_run_metrics(metrics_file)
        assert [e["run_id"] for e in entries] == ["good", "also-good"]
        assert "Skipping corrupted metrics line 2" in caplog.text
