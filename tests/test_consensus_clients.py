"""Tests for pairloop.consensus.clients module."""

import asyncio
import pytest

from pairloop.consensus.clients import (
    AlignmentResponse,
    ClientAlignmentChecker,
    ClientProposer,
    FallbackProposer,
    JaccardAlignmentChecker,
    ProposalResponse,
    jaccard_similarity,
    make_alignment_checker,
    make_proposer,
    tokenize,
)
from pairloop.prd.models import UserStory


STEP = UserStory(id="US-001", title="Add login form", priority=1)


class RecordingClient:
    """ConsensusClient that remembers its calls."""

    def __init__(self):
        self.calls = []

    async def generate_proposal(self, step, findings, search_results, model, use_ultrathink, timeout_ms):
        self.calls.append(("propose", model, use_ultrathink, timeout_ms))
        return ProposalResponse(proposal=f"proposal for {step.id}", reasoning="because")

    async def check_alignment(self, proposal_a, proposal_b, model, timeout_ms):
        self.calls.append(("align", model, timeout_ms))
        return AlignmentResponse(aligned=True, similarity=0.9, reasoning="same idea")


class TestTokenize:
    """Tests for tokenize and jaccard_similarity."""

    def test_drops_short_tokens_and_case(self):
        assert tokenize("Use a JWT, or an OAuth token!") == {"use", "jwt", "oauth", "token"}

    def test_identical_text(self):
        assert jaccard_similarity("validate the email input", "Validate the EMAIL input") == 1.0

    def test_disjoint_text(self):
        assert jaccard_similarity("cache results locally", "rewrite parser module") == 0.0

    def test_empty_text(self):
        assert jaccard_similarity("", "a b") == 0.0


class TestJaccardAlignmentChecker:
    """Fallback alignment is deterministic around the 70% threshold."""

    def test_high_overlap_aligned(self):
        a = "add input validation to the login form with clear error messages"
        b = "add input validation to the login form with clear error text"
        check = asyncio.run(JaccardAlignmentChecker().check(a, b))
        assert check.similarity >= 0.7
        assert check.aligned
        assert "Proposals are substantially similar." in check.reasoning

    def test_low_overlap_not_aligned(self):
        a = "add input validation to the login form"
        b = "replace the login form with single sign on"
        check = asyncio.run(JaccardAlignmentChecker().check(a, b))
        assert check.similarity < 0.7
        assert not check.aligned
        assert check.reasoning.startswith("Token overlap similarity: ")
        assert "Proposals differ significantly." in check.reasoning

    def test_fallback_templates_never_align(self):
        """The two template proposals are written to disagree."""
        async def both():
            executor = await FallbackProposer("executor").propose(STEP, ["weak hashing"], [], False, 1000)
            reviewer = await FallbackProposer("reviewer").propose(STEP, ["weak hashing"], [], False, 1000)
            return await JaccardAlignmentChecker().check(executor.proposal, reviewer.proposal)

        assert not asyncio.run(both()).aligned


class TestFallbackProposer:
    """Tests for template proposals."""

    def test_executor_template(self):
        out = asyncio.run(FallbackProposer("executor").propose(STEP, ["a", "b", "c", "d"], [], False, 1000))
        assert 'Proceed with implementation of "Add login form"' in out.proposal
        assert "a; b; c" in out.proposal
        assert "d" not in out.proposal.split("concerns:")[1].split(".")[0]

    def test_reviewer_template(self):
        out = asyncio.run(FallbackProposer("reviewer").propose(STEP, ["weak hashing"], [], True, 1000))
        assert out.proposal.startswith('Review suggests modifications to "Add login form"')
        assert "As the Reviewer" in out.reasoning

    def test_unknown_role(self):
        with pytest.raises(ValueError):
            FallbackProposer("observer")


class TestStrategySelection:
    """Client-backed strategies are used only when a client is injected."""

    def test_without_client(self):
        assert isinstance(make_proposer("executor", None, "m"), FallbackProposer)
        assert isinstance(make_alignment_checker(None, "m"), JaccardAlignmentChecker)

    def test_with_client(self):
        client = RecordingClient()
        proposer = make_proposer("reviewer", client, "gpt-4.1")
        checker = make_alignment_checker(client, "claude-sonnet-4")
        assert isinstance(proposer, ClientProposer)
        assert isinstance(checker, ClientAlignmentChecker)

        async def calls():
            await proposer.propose(STEP, ["f"], [], True, 5000)
            await checker.check("a", "b", 2500)

        asyncio.run(calls())
        assert client.calls == [
            ("propose", "gpt-4.1", True, 5000),
            ("align", "claude-sonnet-4", 2500),
        ]
