"""Pair engine: executor and reviewer working one task list together.

The reviewer runs ahead of the executor, at most max_look_ahead steps, and
attaches findings to each step it reviews. The executor takes steps in
order. For each one it waits for the review, negotiates with the reviewer
when there are findings, runs the step, then marks it complete. Waiting for
a review is bounded by review_timeout_ms. After that the executor proceeds
unreviewed, and the configured unreviewed policy decides what gets recorded.

Progress is persisted through the TaskStore; phases and events live only in
memory for the duration of run().
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional

from pairloop.consensus.runner import ConsensusRunner, has_consensus_record, needs_consensus
from pairloop.consensus.types import ConsensusConfig, ConsensusResult
from pairloop.lib.config import PairConfig
from pairloop.lib.rate_limiter import RateLimiter
from pairloop.lib.stats import (
    WEB_SEARCH_COST_PER_QUERY,
    PairMetrics,
    check_sycophancy_risk,
    record_run_metrics,
)
from pairloop.prd.models import Task, TaskKind
from pairloop.prd.store import PrdNotLoadedError, TaskStore, generate_prd_slug
from pairloop.search.web_search import WebSearchService
from pairloop.workflow.events import EventBus, EventType, PairEvent
from pairloop.workflow.fsm import PhaseFSM
from pairloop.workflow.reviewer import ReviewerRunner, ReviewerState

logger = logging.getLogger(__name__)

UNREVIEWED_NOTE = "no-consensus: review did not finish in time, proceeded unreviewed"
MANUAL_FINDING = "User-triggered consensus: {reason}"

_SKIPPABLE_STATUSES = ("failed", "blocked")


class EngineStateError(Exception):
    """Engine asked to do something its current state does not allow."""


@dataclass
class ExecuteStepResult:
    success: bool
    duration_ms: float = 0.0
    error: Optional[str] = None
    cost_usd: float = 0.0               # Model spend for the step, if the caller knows it


ExecuteStep = Callable[[Task], Awaitable[ExecuteStepResult]]


@dataclass
class PairRunResult:
    stop_reason: str                    # completed, aborted, error
    prd_complete: bool = False
    metrics: PairMetrics = field(default_factory=PairMetrics)
    steps_completed: int = 0
    steps_failed: int = 0
    steps_skipped: int = 0
    consensus_rounds: int = 0
    review_timeouts: int = 0
    error: Optional[str] = None


class PairEngine:
    """Drives one run of the executor/reviewer pair over a loaded TaskStore."""

    def __init__(
        self,
        config: Optional[PairConfig] = None,
        events: Optional[EventBus] = None,
        consensus: Optional[ConsensusRunner] = None,
        reviewer: Optional[ReviewerRunner] = None,
        web_search: Optional[WebSearchService] = None,
        execute_step: Optional[ExecuteStep] = None,
        metrics_file: Optional[Path] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            config: Pair-mode settings; defaults when omitted
            events: Bus every component reports on
            consensus: Negotiation runner; built from config when omitted
            reviewer: Reviewer runner; built from config when omitted
            web_search: Shared search service for the default runners. The
                default one paces provider calls through a RateLimiter.
            execute_step: async callback(task) -> ExecuteStepResult. Without one
                every step succeeds immediately.
            metrics_file: Optional metrics.jsonl that receives a run summary
        """
        self.config = config or PairConfig()
        self.events = events if events is not None else EventBus()
        web_search = web_search or WebSearchService(events=self.events, rate_limiter=RateLimiter(events=self.events))
        self.consensus = consensus or ConsensusRunner(
            ConsensusConfig.from_pair_config(self.config),
            events=self.events,
            web_search=web_search,
        )
        self.reviewer = reviewer or ReviewerRunner(self.config, events=self.events, web_search=web_search)
        self.execute_step = execute_step
        self.metrics_file = metrics_file
        self._clock = clock

        self.state = "idle"                 # idle, running, stopping, stopped
        self.store: Optional[TaskStore] = None
        self.fsm: Optional[PhaseFSM] = None
        self.metrics = PairMetrics()
        self.current_step_id: Optional[str] = None
        self.executor_index = -1
        self.reviewer_ahead_by = 0
        self.paused = False
        self._stop_requested = False
        self._in_consensus = False
        self._manual_findings: dict[str, list[str]] = {}

        # Wake-ups between the two loops; each has a single waiter
        self._executor_moved = asyncio.Event()
        self._review_landed = asyncio.Event()
        self._resumed = asyncio.Event()

    @property
    def phase(self) -> str:
        return self.fsm.phase if self.fsm else "initializing"

    @property
    def is_running(self) -> bool:
        return self.state == "running"

    def _on_phase_change(self, from_phase: str, to_phase: str, trigger: str) -> None:
        self.events.emit(EventType.PHASE_CHANGE, phase=to_phase, previous_phase=from_phase)

    def _wake_all(self) -> None:
        self._executor_moved.set()
        self._review_landed.set()
        self._resumed.set()

    # --- run -----------------------------------------------------------------

    async def run(self, store: TaskStore) -> PairRunResult:
        """Run every incomplete task in the store through review, negotiation and execution.

        Raises:
            EngineStateError: The engine has already been run
            PrdNotLoadedError: The store has no PRD loaded
        """
        if self.state != "idle":
            raise EngineStateError(f"Cannot start engine in state: {self.state}")
        if store.prd is None:
            raise PrdNotLoadedError()

        self.store = store
        store.debounce_ms = self.config.autosave_debounce_ms
        self.state = "running"
        self.metrics = PairMetrics()
        self.fsm = PhaseFSM(run_id=store.prd.name, on_transition=self._on_phase_change)
        self._resumed.set()
        result = PairRunResult(stop_reason="completed", metrics=self.metrics)

        steps = sorted((t for t in store.get_all_tasks() if not t.is_complete), key=lambda t: t.sort_key)
        logger.info(f"[engine] {store.prd.name}: {len(steps)} step(s) to run")

        if store.prd.status == "planning":
            store.update_status("in_progress")

        self.reviewer.reset()
        self.reviewer.start()
        self.fsm.advance("begin_review")
        reviewer_task = asyncio.ensure_future(self._reviewer_loop(steps))
        unsubscribe = self.events.subscribe(self._track_search_cost)

        try:
            result.stop_reason = await self._executor_loop(steps, result)
        except Exception as e:
            logger.error(f"[engine] {store.prd.name}: run failed: {e}")
            result.stop_reason = "error"
            result.error = str(e)
            if self.fsm.can("fail"):
                self.fsm.advance("fail")
            self.events.emit(EventType.ERROR, error=str(e))
        finally:
            unsubscribe()
            self.reviewer.stop()
            self._wake_all()
            reviewer_task.cancel()
            await asyncio.gather(reviewer_task, return_exceptions=True)

            self.state = "stopped"
            self.current_step_id = None
            self.metrics.finished_at = time.time()
            store.flush()

        result.prd_complete = store.is_complete()
        result.review_timeouts = self.metrics.review_timeouts
        if self.metrics_file:
            record_run_metrics(self.metrics_file, self.metrics, generate_prd_slug(store.prd.name))

        logger.info(
            f"[engine] {store.prd.name}: {result.stop_reason} "
            f"({result.steps_completed} completed, {result.steps_failed} failed, "
            f"{result.steps_skipped} skipped)"
        )
        return result

    # --- reviewer side ---------------------------------------------------------

    def _reviewer_may_take(self, index: int) -> bool:
        return (
            self.reviewer.state is ReviewerState.RUNNING
            and index <= self.executor_index + self.config.max_look_ahead
        )

    async def _reviewer_loop(self, steps: list[Task]) -> None:
        for index, step in enumerate(steps):
            while not self._stop_requested and not self._reviewer_may_take(index):
                self._executor_moved.clear()
                await self._executor_moved.wait()
            if self._stop_requested or self.reviewer.state is ReviewerState.STOPPED:
                return

            if self.reviewer.is_reviewed(step.id):
                continue
            if has_consensus_record(step):
                # Negotiated in an earlier run
                self.reviewer.skip_step(step.id)
            else:
                review = await self.reviewer.review_step(step)
                step_metrics = self.metrics.step(step.id)
                step_metrics.review_duration_ms = review.duration_ms
                step_metrics.had_findings = bool(review.findings)

            self._update_reviewer_ahead()
            self._review_landed.set()

    def _update_reviewer_ahead(self) -> None:
        self.reviewer_ahead_by = max(0, self.reviewer.reviewed_count - (self.executor_index + 1))

    async def _wait_for_review(self, step_id: str) -> bool:
        """Wait for the reviewer to finish a step. False on timeout or stop."""
        async def reviewed() -> None:
            while not self.reviewer.is_reviewed(step_id) and not self._stop_requested:
                self._review_landed.clear()
                await self._review_landed.wait()

        try:
            await asyncio.wait_for(reviewed(), timeout=self.config.review_timeout_ms / 1000)
        except asyncio.TimeoutError:
            return False
        return self.reviewer.is_reviewed(step_id)

    # --- executor side -------------------------------------------------------

    async def _wait_if_paused(self) -> None:
        while self.paused and not self._stop_requested:
            await self._resumed.wait()

    def _skip_reason(self, step: Task) -> Optional[str]:
        if step.kind is TaskKind.IMPLEMENTATION and step.status in _SKIPPABLE_STATUSES:
            return f"status is {step.status}"
        done = {t.id for t in self.store.get_all_tasks() if t.is_complete}
        unmet = [dep for dep in step.depends_on or [] if dep not in done]
        if unmet:
            return f"waiting on {', '.join(unmet)}"
        return None

    async def _executor_loop(self, steps: list[Task], result: PairRunResult) -> str:
        for index, step in enumerate(steps):
            await self._wait_if_paused()
            if self._stop_requested:
                return "aborted"

            self.executor_index = index
            self.current_step_id = step.id
            self._update_reviewer_ahead()
            self._executor_moved.set()
            step_metrics = self.metrics.step(step.id)

            skip_reason = self._skip_reason(step)
            if skip_reason:
                logger.info(f"[engine] {step.id}: skipped ({skip_reason})")
                step_metrics.outcome = "skipped"
                result.steps_skipped += 1
                continue

            reviewed = await self._wait_for_review(step.id)
            if self._stop_requested:
                return "aborted"
            if not reviewed:
                self.events.emit(EventType.REVIEWER_TIMEOUT, step_id=step.id)
            if not reviewed or self.reviewer.results[step.id].timed_out:
                self._proceed_unreviewed(step)

            findings = self.reviewer.get_findings(step.id) + self._manual_findings.pop(step.id, [])
            if needs_consensus(findings) and not has_consensus_record(step):
                await self._wait_if_paused()
                consensus_result = await self._negotiate(step, findings)
                result.consensus_rounds += consensus_result.rounds
                if self._stop_requested:
                    return "aborted"

            await self._wait_if_paused()
            if self._stop_requested:
                return "aborted"
            succeeded = await self._execute(step)
            if succeeded:
                step_metrics.outcome = "completed"
                result.steps_completed += 1
            else:
                step_metrics.outcome = "failed"
                result.steps_failed += 1

            progress = self.store.get_progress()
            logger.info(f"[engine] progress {progress['completed']}/{progress['total']}")

            if self._stop_requested:
                return "aborted"

        await self._wait_if_paused()
        if self._stop_requested:
            return "aborted"

        self.fsm.move_to("completed")
        if self.store.is_complete():
            self.store.update_status("completed")
        return "completed"

    def _proceed_unreviewed(self, step: Task) -> None:
        logger.warning(f"[engine] {step.id}: proceeding without review")
        self.metrics.review_timeouts += 1
        self.metrics.step(step.id).review_timed_out = True
        if self.config.unreviewed_policy == "record_note":
            self.store.update_note(step.id, UNREVIEWED_NOTE)

    async def _negotiate(self, step: Task, findings: list[str]) -> ConsensusResult:
        self.fsm.move_to("consensus")
        self._in_consensus = True
        self.reviewer.pause("Consensus in progress")
        try:
            self.consensus.reset()
            consensus_result = await self.consensus.resolve(step, findings)
        finally:
            self._in_consensus = False
            if not self.paused:
                self.reviewer.resume()
                self._executor_moved.set()

        self.store.attach_consensus(step.id, self.consensus.to_consensus_record(consensus_result))
        self.metrics.record_consensus(consensus_result, timed_out=consensus_result.timed_out)
        if check_sycophancy_risk(consensus_result).risky:
            self.metrics.sycophancy_flags += 1
        return consensus_result

    def _track_search_cost(self, event: PairEvent) -> None:
        # Cached searches never emit completed, so only billed queries count
        if event.type is EventType.WEB_SEARCH_COMPLETED:
            self._add_cost("web_search", WEB_SEARCH_COST_PER_QUERY, event.data.get("step_id"))

    def _add_cost(self, category: str, amount: float, step_id: Optional[str]) -> None:
        cost = self.metrics.cost
        cost.add(category, amount)
        if self.config.show_cost_warnings:
            logger.warning(f"[engine] {step_id}: +${amount:.4f} {category}, run total ${cost.total:.4f}")
        self.events.emit(EventType.COST_UPDATE, step_id=step_id, total_cost=cost.total, breakdown=cost.to_dict())

    async def _execute(self, step: Task) -> bool:
        self.fsm.move_to("execute")
        self.store.start_task(step.id)
        self.events.emit(EventType.EXECUTOR_STARTED, step_id=step.id)

        start = self._clock()
        if self.execute_step:
            outcome = await self.execute_step(step)
        else:
            outcome = ExecuteStepResult(success=True)
        self.metrics.step(step.id).execute_duration_ms = (self._clock() - start) * 1000
        if outcome.cost_usd:
            self._add_cost("executor", outcome.cost_usd, step.id)

        if outcome.success:
            self.store.mark_complete(step.id)
        else:
            logger.warning(f"[engine] {step.id}: execution failed: {outcome.error or 'unknown error'}")
            if outcome.error:
                self.store.update_note(step.id, f"Execution failed: {outcome.error}")

        self.events.emit(EventType.EXECUTOR_COMPLETED, step_id=step.id, success=outcome.success)
        return outcome.success

    # --- controls ------------------------------------------------------------

    def pause(self) -> None:
        if self.state != "running" or self.paused:
            return
        self.paused = True
        self._resumed.clear()
        self.reviewer.pause("Engine paused")
        if self.fsm.can("pause"):
            self.fsm.advance("pause")
        self.events.emit(EventType.PAUSED, reason="User requested pause")

    def resume(self) -> None:
        if self.state != "running" or not self.paused:
            return
        self.paused = False
        if not self._in_consensus:
            self.reviewer.resume()
        if self.fsm.phase == "paused":
            self.fsm.advance("resume")
        self.events.emit(EventType.RESUMED)
        self._wake_all()

    def stop(self, reason: str = "User requested stop") -> None:
        """Ask the run to end after the current step. Cancels an active negotiation."""
        if self.state != "running":
            return
        self.state = "stopping"
        self._stop_requested = True
        self.reviewer.stop()
        self.consensus.cancel()
        self.events.emit(EventType.STOPPED, reason=reason)
        self._wake_all()

    def trigger_consensus(self, reason: str) -> None:
        """Force a negotiation on the executor's current step.

        Raises:
            EngineStateError: The executor has no current step
        """
        if self.current_step_id is None:
            raise EngineStateError("No current step to trigger consensus for")
        finding = MANUAL_FINDING.format(reason=reason)
        self._manual_findings.setdefault(self.current_step_id, []).append(finding)
        logger.info(f"[engine] {self.current_step_id}: {finding}")
