"""
Types for the executor/reviewer negotiation protocol.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from pairloop.lib.config import PairConfig
from pairloop.prd.models import now_iso


DEFAULT_CONSENSUS_TIMEOUT_MS = 300000
DEFAULT_MAX_ROUNDS = 2


class ConsensusState(str, Enum):
    IDLE = "idle"
    COLLECTING_PROPOSALS = "collecting_proposals"
    CHECKING_ALIGNMENT = "checking_alignment"
    ULTRATHINK = "ultrathink"
    RESOLVED = "resolved"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    ERROR = "error"


TERMINAL_STATES = (
    ConsensusState.RESOLVED,
    ConsensusState.TIMEOUT,
    ConsensusState.CANCELLED,
    ConsensusState.ERROR,
)


class ConsensusError(Exception):
    """Negotiation failed in a way that cannot produce a result."""


class ConsensusBusyError(ConsensusError):
    """resolve() called while a session is already running."""

    def __init__(self, state: ConsensusState):
        self.state = state
        super().__init__(f"ConsensusRunner is not idle (current state: {state.value})")


@dataclass
class ConsensusConfig:
    consensus_timeout_ms: int = DEFAULT_CONSENSUS_TIMEOUT_MS
    max_rounds: int = DEFAULT_MAX_ROUNDS
    web_search_enabled: bool = True
    executor_model: str = "claude-sonnet-4"
    reviewer_model: str = "gpt-4.1"

    @classmethod
    def from_pair_config(cls, config: PairConfig) -> "ConsensusConfig":
        return cls(
            consensus_timeout_ms=config.consensus_timeout_ms,
            max_rounds=config.max_consensus_rounds,
            web_search_enabled=config.web_search_enabled,
            executor_model=config.executor_model,
            reviewer_model=config.reviewer_model,
        )

    @property
    def proposal_timeout_ms(self) -> int:
        return self.consensus_timeout_ms // 3

    @property
    def alignment_timeout_ms(self) -> int:
        return self.consensus_timeout_ms // 6


@dataclass
class ConsensusProposal:
    """One side's proposal in a round.

    `label` is the anonymized A/B name shown to the alignment check;
    `source` is kept for bookkeeping only.
    """
    round: int
    label: str                      # A or B
    content: str
    reasoning: str
    source: str                     # executor or reviewer
    used_ultrathink: bool = False
    submitted_at: str = field(default_factory=now_iso)


@dataclass
class ConsensusSession:
    """Live state of one resolve() call. Never persisted."""
    step_id: str
    current_round: int = 0
    proposals: list[ConsensusProposal] = field(default_factory=list)
    ultrathink_triggered: bool = False
    web_search_used: bool = False
    started_at: str = field(default_factory=now_iso)
    timeout_remaining_ms: float = 0

    def last_proposal(self, source: str) -> Optional[ConsensusProposal]:
        for proposal in reversed(self.proposals):
            if proposal.source == source:
                return proposal
        return None


@dataclass
class ConsensusResult:
    step_id: str
    aligned: bool
    final_decision: str
    decided_by: str                 # consensus, executor, reviewer, user
    rounds: int
    proposals: list[ConsensusProposal] = field(default_factory=list)
    duration_ms: float = 0.0
    similarity: Optional[float] = None
    reasoning: Optional[str] = None
    ultrathink_used: bool = False
    web_search_used: bool = False
    timed_out: bool = False
    timestamp: str = field(default_factory=now_iso)
