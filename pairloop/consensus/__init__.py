"""
Executor/reviewer negotiation: anonymized proposal rounds with escalation
and an executor tie-break.
"""

from pairloop.consensus.clients import (
    AlignmentResponse,
    ConsensusClient,
    ProposalResponse,
    jaccard_similarity,
)
from pairloop.consensus.runner import (
    ConsensusRunner,
    has_consensus_record,
    needs_consensus,
)
from pairloop.consensus.types import (
    ConsensusBusyError,
    ConsensusConfig,
    ConsensusError,
    ConsensusProposal,
    ConsensusResult,
    ConsensusSession,
    ConsensusState,
)

__all__ = [
    "AlignmentResponse",
    "ConsensusClient",
    "ProposalResponse",
    "jaccard_similarity",
    "ConsensusRunner",
    "has_consensus_record",
    "needs_consensus",
    "ConsensusBusyError",
    "ConsensusConfig",
    "ConsensusError",
    "ConsensusProposal",
    "ConsensusResult",
    "ConsensusSession",
    "ConsensusState",
]
