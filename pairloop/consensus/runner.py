"""
Consensus runner: bounded negotiation between executor and reviewer.

One session per resolve() call:

    idle -> collecting_proposals -> checking_alignment -> (ultrathink) ->
        resolved | timeout | cancelled | error

Each round both sides propose concurrently. Labels A/B are assigned by coin
flip per round so the alignment check can't tell who wrote what. From round
2 on the runner escalates to ultrathink and grounds proposals in web search.
If the sides still disagree after max_rounds, the executor's proposal wins.

A wall-clock timer bounds the whole session. Timeout and cancel() both abort
the in-flight round and synthesize a result from whatever proposals exist,
so a caller always gets a ConsensusResult back. The result is returned as
soon as the abort fires, even if a client is slow to honor cancellation.
"""

import asyncio
import logging
import random
import re
import time
from typing import Callable, Optional, Sequence

from pairloop.consensus.clients import (
    AlignmentChecker,
    ConsensusClient,
    Proposer,
    make_alignment_checker,
    make_proposer,
)
from pairloop.consensus.types import (
    TERMINAL_STATES,
    ConsensusConfig,
    ConsensusError,
    ConsensusBusyError,
    ConsensusProposal,
    ConsensusResult,
    ConsensusSession,
    ConsensusState,
)
from pairloop.lib.stats import check_sycophancy_risk
from pairloop.prd.models import ConsensusRecord, now_iso
from pairloop.search.web_search import SearchQueries, WebSearchResponse, WebSearchService
from pairloop.workflow.events import EventBus, EventType

logger = logging.getLogger(__name__)

MAX_GROUNDING_SEARCHES = 2
GROUNDING_SEARCH_TIMEOUT_MS = 20000
SECURITY_TERMS = ("auth", "login", "password", "token", "security")

CANCELLED_PLACEHOLDER = "Consensus was cancelled"
TIMEOUT_PLACEHOLDER = "Consensus timed out - proceeding with executor approach"
NO_PROPOSAL = "No proposal recorded"


def needs_consensus(findings: Sequence[str]) -> bool:
    """Any reviewer finding is enough to require negotiation."""
    return len(findings) > 0


def has_consensus_record(task) -> bool:
    return getattr(task, "consensus", None) is not None


def build_search_queries(step, findings: Sequence[str]) -> list[str]:
    """Grounding queries from the step title and the first finding's salient terms."""
    queries = [SearchQueries.best_practices("software development", step.title)]

    if findings and findings[0]:
        key_terms = [t for t in re.split(r"\W+", findings[0].lower()) if len(t) > 4][:3]
        if key_terms:
            queries.append(f"{' '.join(key_terms)} best practices solutions 2025")

    if any(term in step.title.lower() for term in SECURITY_TERMS):
        queries.append(SearchQueries.security("web application", step.title))

    return queries


def _check_abort(abort: asyncio.Event) -> None:
    # Once aborted, a late return from a client must not touch runner state
    if abort.is_set():
        raise asyncio.CancelledError()


def _discard_outcome(task: asyncio.Task) -> None:
    if not task.cancelled():
        task.exception()


def _detach(task: asyncio.Task) -> None:
    """Stop waiting on an aborted rounds task. It finishes unobserved."""
    task.cancel()
    task.add_done_callback(_discard_outcome)


class ConsensusRunner:
    """Runs one negotiation session at a time."""

    def __init__(
        self,
        config: Optional[ConsensusConfig] = None,
        events: Optional[EventBus] = None,
        executor_client: Optional[ConsensusClient] = None,
        reviewer_client: Optional[ConsensusClient] = None,
        web_search: Optional[WebSearchService] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or ConsensusConfig()
        self.events = events if events is not None else EventBus()
        self.web_search = web_search or WebSearchService(events=self.events)
        self.executor: Proposer = make_proposer("executor", executor_client, self.config.executor_model)
        self.reviewer: Proposer = make_proposer("reviewer", reviewer_client, self.config.reviewer_model)
        # Alignment is judged on the executor's model
        self.alignment: AlignmentChecker = make_alignment_checker(executor_client, self.config.executor_model)
        self._rng = rng or random.Random()
        self._clock = clock

        self.state = ConsensusState.IDLE
        self.session: Optional[ConsensusSession] = None
        self.abort_signal: Optional[asyncio.Event] = None
        self._rounds_task: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    def _elapsed_ms(self, start: float) -> float:
        return (self._clock() - start) * 1000

    async def resolve(self, step, findings: Sequence[str]) -> ConsensusResult:
        """Negotiate a decision for `step` given the reviewer's findings.

        Raises:
            ConsensusBusyError: A session is already running
            ConsensusError: Every round failed to produce proposals
        """
        if self.state is not ConsensusState.IDLE:
            raise ConsensusBusyError(self.state)

        findings = list(findings)
        start = self._clock()
        timeout_ms = self.config.consensus_timeout_ms

        self.session = ConsensusSession(step_id=step.id, timeout_remaining_ms=timeout_ms)
        self.state = ConsensusState.COLLECTING_PROPOSALS
        self.abort_signal = asyncio.Event()

        loop = asyncio.get_running_loop()
        self._rounds_task = asyncio.ensure_future(self._run_rounds(step, findings, start))
        self._timer = loop.call_later(timeout_ms / 1000, self._on_timeout, step.id)

        logger.info(f"[consensus] {step.id}: started with {len(findings)} finding(s)")
        self.events.emit(EventType.CONSENSUS_STARTED, step_id=step.id, findings=findings)

        try:
            rounds = self._rounds_task
            aborted = asyncio.ensure_future(self.abort_signal.wait())
            try:
                await asyncio.wait({rounds, aborted}, return_when=asyncio.FIRST_COMPLETED)
            except asyncio.CancelledError:
                _detach(rounds)
                raise
            finally:
                aborted.cancel()

            # An abort answers at once; the rounds task unwinds on its own
            if self.state in (ConsensusState.CANCELLED, ConsensusState.TIMEOUT):
                _detach(rounds)
                return self._aborted_result(step, start, cancelled=self.state is ConsensusState.CANCELLED)

            try:
                return rounds.result()
            except Exception as e:
                self.state = ConsensusState.ERROR
                logger.error(f"[consensus] {step.id}: {e}")
                self.events.emit(EventType.ERROR, step_id=step.id, error=str(e))
                raise
        finally:
            self.cleanup()

    async def _run_rounds(self, step, findings: list[str], start: float) -> ConsensusResult:
        session = self.session
        abort = self.abort_signal
        max_rounds = self.config.max_rounds
        search_results: list[WebSearchResponse] = []

        for round_no in range(1, max_rounds + 2):
            _check_abort(abort)
            session.current_round = round_no
            session.timeout_remaining_ms = self.config.consensus_timeout_ms - self._elapsed_ms(start)
            self.events.emit(EventType.CONSENSUS_ROUND, step_id=step.id, round=round_no)

            use_ultrathink = round_no > 1
            if use_ultrathink and not session.ultrathink_triggered:
                session.ultrathink_triggered = True
                self.state = ConsensusState.ULTRATHINK
                logger.info(f"[consensus] {step.id}: escalating to ultrathink (round {round_no})")
                self.events.emit(EventType.CONSENSUS_ULTRATHINK, step_id=step.id, round=round_no)

                if self.config.web_search_enabled:
                    search_results = await self._grounding_search(step, findings)
                    _check_abort(abort)
                    session.web_search_used = True

            self.state = ConsensusState.COLLECTING_PROPOSALS
            pair = await self._collect_proposals(session, step, findings, search_results, round_no, use_ultrathink)
            _check_abort(abort)
            if pair is None:
                continue
            executor_proposal, reviewer_proposal = pair

            self.state = ConsensusState.CHECKING_ALIGNMENT
            # Compare by anonymized label order only
            first, second = sorted(pair, key=lambda p: p.label)
            try:
                alignment = await self.alignment.check(
                    first.content, second.content, self.config.alignment_timeout_ms
                )
            except Exception as e:
                logger.warning(f"[consensus] {step.id}: alignment check failed in round {round_no}: {e}")
                continue
            _check_abort(abort)
            logger.info(
                f"[consensus] {step.id}: round {round_no} "
                f"{'aligned' if alignment.aligned else 'not aligned'} "
                f"(similarity {alignment.similarity:.2f})"
            )

            if alignment.aligned:
                return self._finish(step, start, executor_proposal, alignment, round_no, decided_by="consensus")

            if round_no > max_rounds:
                return self._finish(step, start, executor_proposal, alignment, round_no, decided_by="executor")

        raise ConsensusError("Consensus loop exited unexpectedly")

    async def _collect_proposals(
        self,
        session: ConsensusSession,
        step,
        findings: list[str],
        search_results: list[WebSearchResponse],
        round_no: int,
        use_ultrathink: bool,
    ) -> Optional[tuple[ConsensusProposal, ConsensusProposal]]:
        """Ask both sides concurrently. Returns None if either side failed."""
        timeout_ms = self.config.proposal_timeout_ms
        executor_is_a = self._rng.random() < 0.5

        executor_out, reviewer_out = await asyncio.gather(
            self.executor.propose(step, findings, search_results, use_ultrathink, timeout_ms),
            self.reviewer.propose(step, findings, search_results, use_ultrathink, timeout_ms),
            return_exceptions=True,
        )

        failed = False
        for role, outcome in (("executor", executor_out), ("reviewer", reviewer_out)):
            if isinstance(outcome, BaseException):
                reason = "timed out" if isinstance(outcome, asyncio.TimeoutError) else str(outcome)
                logger.warning(f"[consensus] {step.id}: {role} failed to propose in round {round_no}: {reason}")
                failed = True
        if failed:
            return None

        now = now_iso()
        executor_proposal = ConsensusProposal(
            round=round_no,
            label="A" if executor_is_a else "B",
            content=executor_out.proposal,
            reasoning=executor_out.reasoning,
            source="executor",
            used_ultrathink=use_ultrathink,
            submitted_at=now,
        )
        reviewer_proposal = ConsensusProposal(
            round=round_no,
            label="B" if executor_is_a else "A",
            content=reviewer_out.proposal,
            reasoning=reviewer_out.reasoning,
            source="reviewer",
            used_ultrathink=use_ultrathink,
            submitted_at=now,
        )
        session.proposals.extend([executor_proposal, reviewer_proposal])
        return executor_proposal, reviewer_proposal

    async def _grounding_search(self, step, findings: list[str]) -> list[WebSearchResponse]:
        """Run up to two searches concurrently; failures are dropped."""
        queries = build_search_queries(step, findings)[:MAX_GROUNDING_SEARCHES]
        outcomes = await asyncio.gather(
            *(
                self.web_search.search(query, step.id, timeout_ms=GROUNDING_SEARCH_TIMEOUT_MS)
                for query in queries
            ),
            return_exceptions=True,
        )
        return [
            r for r in outcomes
            if isinstance(r, WebSearchResponse) and not r.error
        ]

    def _finish(self, step, start, executor_proposal, alignment, round_no, decided_by) -> ConsensusResult:
        session = self.session
        result = ConsensusResult(
            step_id=step.id,
            aligned=decided_by == "consensus",
            final_decision=executor_proposal.content,
            decided_by=decided_by,
            rounds=round_no,
            proposals=list(session.proposals),
            duration_ms=self._elapsed_ms(start),
            similarity=alignment.similarity,
            reasoning=alignment.reasoning,
            ultrathink_used=session.ultrathink_triggered,
            web_search_used=session.web_search_used,
        )

        check = check_sycophancy_risk(result)
        if check.risky:
            logger.warning(
                f"[consensus] {step.id}: possible sycophancy: {'; '.join(check.reasons)}"
            )

        self.state = ConsensusState.RESOLVED
        logger.info(f"[consensus] {step.id}: resolved by {decided_by} after {round_no} round(s)")
        self.events.emit(EventType.CONSENSUS_COMPLETED, step_id=step.id, result=result)
        return result

    def _aborted_result(self, step, start: float, cancelled: bool) -> ConsensusResult:
        """Best-effort result after cancel() or timeout, from partial proposals."""
        session = self.session
        last = session.last_proposal("executor")
        if last is not None:
            decision = last.content
        else:
            decision = CANCELLED_PLACEHOLDER if cancelled else TIMEOUT_PLACEHOLDER

        result = ConsensusResult(
            step_id=step.id,
            aligned=False,
            final_decision=decision,
            decided_by="user" if cancelled else "executor",
            rounds=session.current_round,
            proposals=list(session.proposals),
            duration_ms=self._elapsed_ms(start),
            ultrathink_used=session.ultrathink_triggered,
            web_search_used=session.web_search_used,
            timed_out=not cancelled,
        )

        if cancelled:
            logger.info(f"[consensus] {step.id}: cancelled in round {session.current_round}")
            self.events.emit(EventType.CONSENSUS_COMPLETED, step_id=step.id, result=result)
        else:
            logger.warning(f"[consensus] {step.id}: timed out in round {session.current_round}")
            self.events.emit(EventType.CONSENSUS_TIMEOUT, step_id=step.id, result=result)
        return result

    def _abort(self, state: ConsensusState) -> None:
        self.state = state
        if self.abort_signal is not None:
            self.abort_signal.set()
        if self._rounds_task is not None and not self._rounds_task.done():
            self._rounds_task.cancel()

    def _on_timeout(self, step_id: str) -> None:
        self._timer = None
        if self.state in TERMINAL_STATES or self.state is ConsensusState.IDLE:
            return
        logger.debug(f"[consensus] {step_id}: session timer fired")
        self._abort(ConsensusState.TIMEOUT)

    def cancel(self) -> bool:
        """Abort the running session. Returns False if nothing was running."""
        if self.state is ConsensusState.IDLE or self.state in TERMINAL_STATES:
            return False
        self._abort(ConsensusState.CANCELLED)
        return True

    def cleanup(self) -> None:
        """Drop the timer and session references. Always runs when resolve() exits."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._rounds_task is not None and not self._rounds_task.done():
            self._rounds_task.cancel()
        self._rounds_task = None
        self.session = None
        self.abort_signal = None

    def reset(self) -> None:
        """Return to idle so the runner can take another session."""
        self.cleanup()
        self.state = ConsensusState.IDLE

    def to_consensus_record(self, result: ConsensusResult) -> ConsensusRecord:
        """Project a result into the shape persisted on the task."""
        last_round = max((p.round for p in result.proposals), default=0)
        in_last_round = [p for p in result.proposals if p.round == last_round]
        executor = next((p for p in in_last_round if p.source == "executor"), None)
        reviewer = next((p for p in in_last_round if p.source == "reviewer"), None)

        if result.decided_by == "user":
            status = "cancelled"
        elif result.timed_out or result.duration_ms >= self.config.consensus_timeout_ms:
            status = "timeout"
        else:
            status = "completed"

        return ConsensusRecord(
            executor_proposal=executor.content if executor else NO_PROPOSAL,
            reviewer_proposal=reviewer.content if reviewer else NO_PROPOSAL,
            final_decision=result.final_decision,
            decided_by=result.decided_by,
            aligned=result.aligned,
            rounds=result.rounds,
            timestamp=now_iso(),
            status=status,
            notes="Ultrathink mode was used" if result.ultrathink_used else None,
        )
