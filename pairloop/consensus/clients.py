"""
Proposal and alignment strategies for the negotiation protocol.

Each side of a negotiation gets a Proposer and the runner gets one
AlignmentChecker. When a ConsensusClient is injected for a side, the
client-backed strategy is used; otherwise a deterministic heuristic stands
in (template proposals, Jaccard token overlap).
"""

import re
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from pairloop.search.web_search import WebSearchResponse

ALIGNMENT_THRESHOLD = 0.7

_TOKEN_SPLIT = re.compile(r"\W+")


@dataclass
class ProposalResponse:
    proposal: str
    reasoning: str


@dataclass
class AlignmentResponse:
    aligned: bool
    similarity: float
    reasoning: str


class ConsensusClient(Protocol):
    """What a model provider must offer to take part in a negotiation."""

    async def generate_proposal(
        self,
        step,
        findings: Sequence[str],
        search_results: Sequence[WebSearchResponse],
        model: str,
        use_ultrathink: bool,
        timeout_ms: int,
    ) -> ProposalResponse:
        ...

    async def check_alignment(
        self,
        proposal_a: str,
        proposal_b: str,
        model: str,
        timeout_ms: int,
    ) -> AlignmentResponse:
        ...


class Proposer(Protocol):
    async def propose(
        self,
        step,
        findings: Sequence[str],
        search_results: Sequence[WebSearchResponse],
        use_ultrathink: bool,
        timeout_ms: int,
    ) -> ProposalResponse:
        ...


class AlignmentChecker(Protocol):
    async def check(self, proposal_a: str, proposal_b: str, timeout_ms: int) -> AlignmentResponse:
        ...


class ClientProposer:
    """Proposals from a model client.

    The per-proposal timeout is handed to the client, which is expected to
    honor it. The session timer in ConsensusRunner is the hard bound.
    """

    def __init__(self, client: ConsensusClient, model: str):
        self.client = client
        self.model = model

    async def propose(self, step, findings, search_results, use_ultrathink, timeout_ms) -> ProposalResponse:
        return await self.client.generate_proposal(
            step, findings, search_results, self.model, use_ultrathink, timeout_ms
        )


class FallbackProposer:
    """Template proposals used when no client is configured for a side."""

    def __init__(self, role: str):
        if role not in ("executor", "reviewer"):
            raise ValueError(f"Unknown role: {role}")
        self.role = role

    async def propose(self, step, findings, search_results, use_ultrathink, timeout_ms) -> ProposalResponse:
        summary = "; ".join(findings[:3])
        if self.role == "executor":
            return ProposalResponse(
                proposal=(
                    f'Proceed with implementation of "{step.title}" while addressing the identified '
                    f"concerns: {summary}. Apply standard best practices and include appropriate "
                    f"error handling."
                ),
                reasoning=(
                    f"As the Executor, I propose to move forward with implementation while being "
                    f'mindful of the findings. The step "{step.title}" appears to be a reasonable '
                    f"approach, and I will incorporate feedback during implementation."
                ),
            )
        return ProposalResponse(
            proposal=(
                f'Review suggests modifications to "{step.title}": {summary}. Consider alternative '
                f"approaches or additional safeguards before proceeding."
            ),
            reasoning=(
                "As the Reviewer, I've identified potential concerns that should be addressed. "
                "The findings suggest careful consideration is needed before implementation."
            ),
        )


def tokenize(text: str) -> set[str]:
    """Lowercased word tokens longer than two characters."""
    return {t for t in _TOKEN_SPLIT.split(text.lower()) if len(t) > 2}


def jaccard_similarity(a: str, b: str) -> float:
    tokens_a = tokenize(a)
    tokens_b = tokenize(b)
    union = tokens_a | tokens_b
    if not union:
        return 0.0
    return len(tokens_a & tokens_b) / len(union)


class ClientAlignmentChecker:
    """Alignment judged by a model client (the executor's model)."""

    def __init__(self, client: ConsensusClient, model: str):
        self.client = client
        self.model = model

    async def check(self, proposal_a: str, proposal_b: str, timeout_ms: int) -> AlignmentResponse:
        return await self.client.check_alignment(proposal_a, proposal_b, self.model, timeout_ms)


class JaccardAlignmentChecker:
    """Token-overlap alignment: aligned when similarity exceeds the threshold."""

    def __init__(self, threshold: float = ALIGNMENT_THRESHOLD):
        self.threshold = threshold

    async def check(self, proposal_a: str, proposal_b: str, timeout_ms: int = 0) -> AlignmentResponse:
        similarity = jaccard_similarity(proposal_a, proposal_b)
        aligned = similarity > self.threshold
        verdict = "Proposals are substantially similar." if aligned else "Proposals differ significantly."
        return AlignmentResponse(
            aligned=aligned,
            similarity=similarity,
            reasoning=f"Token overlap similarity: {similarity * 100:.1f}%. {verdict}",
        )


def make_proposer(role: str, client: Optional[ConsensusClient], model: str) -> Proposer:
    if client is not None:
        return ClientProposer(client, model)
    return FallbackProposer(role)


def make_alignment_checker(client: Optional[ConsensusClient], model: str) -> AlignmentChecker:
    if client is not None:
        return ClientAlignmentChecker(client, model)
    return JaccardAlignmentChecker()
