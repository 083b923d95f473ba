"""Tests for the voting engine."""

from __future__ import annotations

import pytest

from llm_consensus.engine.voting import VotingOptions, member_weights, normalize_position, tally
from llm_consensus.protocol.types import Vote, VotingMethod


def _vote(
    member_id: str,
    position: str,
    confidence: float = 0.8,
    rank: list[str] | None = None,
    veto: bool = False,
) -> Vote:
    return Vote(
        member_id=member_id,
        member_name=member_id,
        position=position,
        confidence=confidence,
        rank=rank,
        veto=veto,
    )


class TestMajority:
    """Tests for simple majority voting."""

    def test_strict_majority_wins(self):
        """A position with more than half of the votes wins."""
        votes = [_vote("a", "A"), _vote("b", "A"), _vote("c", "B")]
        result = tally(votes, VotingMethod.MAJORITY)

        assert result.winner == "A"
        assert result.consensus_reached is True
        assert result.breakdown == {"A": 2, "B": 1}

    def test_split_vote_has_no_winner(self):
        """A 1-1-1 split produces no majority."""
        votes = [_vote("a", "A"), _vote("b", "B"), _vote("c", "C")]
        result = tally(votes, "majority")

        assert result.winner is None
        assert result.consensus_reached is False

    def test_positions_are_case_insensitive(self):
        """Positions differing only in case and whitespace are merged."""
        votes = [_vote("a", "Use Postgres"), _vote("b", "use  postgres"), _vote("c", "MySQL")]
        result = tally(votes, VotingMethod.MAJORITY)

        assert result.winner == "Use Postgres"
        assert result.breakdown["Use Postgres"] == 2

    def test_empty_votes(self):
        """No votes means no winner and zero confidence."""
        result = tally([], VotingMethod.MAJORITY)

        assert result.winner is None
        assert result.confidence_avg == 0.0
        assert result.consensus_reached is False


class TestSuperMajority:
    """Tests for super-majority voting."""

    def test_two_thirds_reached(self):
        votes = [_vote("a", "A"), _vote("b", "A"), _vote("c", "B")]
        result = tally(votes, VotingMethod.SUPER_MAJORITY)

        assert result.winner == "A"
        assert result.consensus_reached is True

    def test_two_thirds_missed(self):
        votes = [_vote("a", "A"), _vote("b", "A"), _vote("c", "B"), _vote("d", "B")]
        result = tally(votes, VotingMethod.SUPER_MAJORITY)

        assert result.winner is None
        assert result.metadata["threshold"] == pytest.approx(2 / 3)

    def test_custom_threshold(self):
        """A 0.75 threshold rejects a 2/3 share."""
        votes = [_vote("a", "A"), _vote("b", "A"), _vote("c", "B")]
        options = VotingOptions(super_majority_threshold=0.75)
        result = tally(votes, VotingMethod.SUPER_MAJORITY, options=options)

        assert result.winner is None


class TestUnanimous:
    """Tests for unanimous voting."""

    def test_all_agree(self):
        votes = [_vote("a", "A"), _vote("b", "a"), _vote("c", "A")]
        result = tally(votes, VotingMethod.UNANIMOUS)

        assert result.winner == "A"
        assert result.consensus_reached is True

    def test_one_dissent(self):
        votes = [_vote("a", "A"), _vote("b", "A"), _vote("c", "B")]
        result = tally(votes, VotingMethod.UNANIMOUS)

        assert result.winner is None

    def test_missing_eligible_voter(self):
        """An eligible member that did not vote blocks unanimity."""
        votes = [_vote("a", "A"), _vote("b", "A")]
        options = VotingOptions(eligible_voters=frozenset({"a", "b", "c"}))
        result = tally(votes, VotingMethod.UNANIMOUS, options=options)

        assert result.winner is None
        assert result.metadata["missing_voters"] == ["c"]


class TestRankedChoice:
    """Tests for instant-runoff voting."""

    def test_elimination_transfers_votes(self):
        """[A,B,C]x2, [B,A,C]x2, [C,A,B]x1: C is eliminated and A wins."""
        votes = [
            _vote("v1", "A", rank=["A", "B", "C"]),
            _vote("v2", "A", rank=["A", "B", "C"]),
            _vote("v3", "B", rank=["B", "A", "C"]),
            _vote("v4", "B", rank=["B", "A", "C"]),
            _vote("v5", "C", rank=["C", "A", "B"]),
        ]
        result = tally(votes, VotingMethod.RANKED_CHOICE)

        assert result.winner == "A"
        assert result.consensus_reached is True
        assert result.metadata["eliminated"] == ["C"]
        assert result.rounds_needed == 1
        assert result.rounds_needed <= len(votes) - 1

    def test_first_round_majority(self):
        votes = [
            _vote("v1", "A", rank=["A", "B"]),
            _vote("v2", "A", rank=["A", "B"]),
            _vote("v3", "B", rank=["B", "A"]),
        ]
        result = tally(votes, VotingMethod.RANKED_CHOICE)

        assert result.winner == "A"
        assert result.rounds_needed == 1
        assert result.metadata["eliminated"] == []

    def test_elimination_tie_goes_to_lowest_confidence(self):
        """A and B tie on first choices; B carries less confidence and goes first."""
        votes = [
            _vote("v1", "A", 0.9, rank=["A", "C"]),
            _vote("v2", "B", 0.3, rank=["B", "A"]),
            _vote("v3", "C", 0.8, rank=["C", "A"]),
            _vote("v4", "C", 0.8, rank=["C", "B"]),
        ]
        result = tally(votes, VotingMethod.RANKED_CHOICE)

        assert result.metadata["eliminated"] == ["B", "A"]
        assert result.metadata["round_counts"][1] == {"A": 2, "C": 2}
        assert result.winner == "C"
        assert result.rounds_needed == 2

    @pytest.mark.parametrize(
        ("priorities", "eliminated"),
        [
            ({}, "B"),
            ({"v1": 3, "v2": 0, "v3": 1, "v4": 2}, "A"),
        ],
    )
    def test_elimination_tie_goes_to_last_invoked(self, priorities, eliminated):
        votes = [
            _vote("v1", "A", rank=["A", "C"]),
            _vote("v2", "B", rank=["B", "C"]),
            _vote("v3", "C"),
            _vote("v4", "C"),
        ]
        result = tally(
            votes, VotingMethod.RANKED_CHOICE, options=VotingOptions(priorities=priorities)
        )

        assert result.metadata["eliminated"] == [eliminated]
        assert result.winner == "C"

    def test_position_used_without_ranking(self):
        """Votes without a ranking count as a one-item ballot."""
        votes = [_vote("v1", "A"), _vote("v2", "A"), _vote("v3", "B")]
        result = tally(votes, VotingMethod.RANKED_CHOICE)

        assert result.winner == "A"


class TestWeighted:
    """Tests for weighted voting."""

    def test_weights_decide(self):
        """A heavy member outweighs two light ones."""
        votes = [_vote("heavy", "B"), _vote("l1", "A"), _vote("l2", "A")]
        weights = {"heavy": 2.0, "l1": 0.5, "l2": 0.5}
        result = tally(votes, VotingMethod.WEIGHTED, weights)

        assert result.winner == "B"
        assert result.consensus_reached is True
        assert result.metadata["weighted_totals"] == {"B": 2.0, "A": 1.0}

    def test_missing_weight_defaults_to_one(self):
        votes = [_vote("a", "A"), _vote("b", "A"), _vote("c", "B")]
        result = tally(votes, VotingMethod.WEIGHTED, {"c": 1.5})

        assert result.winner == "A"

    def test_member_weights(self, council_members):
        weights = member_weights(council_members)
        assert set(weights) == {m.id for m in council_members}
        assert all(w == 1.0 for w in weights.values())


class TestConfidence:
    """Tests for confidence-weighted voting."""

    def test_highest_confidence_mass_wins(self):
        """A leads on confidence mass without any shared position."""
        votes = [_vote("a", "A", 0.9), _vote("b", "B", 0.4), _vote("c", "C", 0.3)]
        result = tally(votes, VotingMethod.CONFIDENCE)

        assert result.winner == "A"
        assert result.confidence_avg == pytest.approx(0.5333, abs=1e-3)
        assert result.consensus_reached is True

    def test_no_absolute_majority(self):
        votes = [_vote("a", "A", 0.5), _vote("b", "B", 0.4), _vote("c", "C", 0.3)]
        result = tally(votes, VotingMethod.CONFIDENCE)

        assert result.winner == "A"
        assert result.consensus_reached is False

    def test_tie_broken_by_static_weight(self):
        votes = [_vote("a", "A", 0.6), _vote("b", "B", 0.6)]

        unweighted = tally(votes, VotingMethod.CONFIDENCE)
        weighted = tally(votes, VotingMethod.CONFIDENCE, {"a": 1.0, "b": 1.5})

        assert unweighted.winner == "A"
        assert weighted.winner == "B"
        assert weighted.consensus_reached is False


class TestConsensus:
    """Tests for consensus voting."""

    def test_agreement_above_threshold(self):
        votes = [_vote(str(i), "A") for i in range(4)] + [_vote("x", "B")]
        result = tally(votes, VotingMethod.CONSENSUS)

        assert result.winner == "A"
        assert result.consensus_reached is True
        assert result.metadata["agreement"] == pytest.approx(0.8)

    def test_agreement_below_threshold(self):
        """The leader is reported but consensus is not reached."""
        votes = [_vote(str(i), "A") for i in range(3)] + [_vote("d", "B"), _vote("e", "C")]
        result = tally(votes, VotingMethod.CONSENSUS)

        assert result.winner == "A"
        assert result.consensus_reached is False
        assert result.metadata["needs_another_round"] is True


class TestVeto:
    """Tests for veto voting."""

    def test_single_veto_blocks(self):
        votes = [_vote("a", "A"), _vote("b", "A"), _vote("c", "A", veto=True)]
        result = tally(votes, VotingMethod.VETO)

        assert result.winner is None
        assert result.consensus_reached is False
        assert result.metadata["vetoed_by"] == ["c"]

    def test_no_veto_falls_back_to_majority(self):
        votes = [_vote("a", "A"), _vote("b", "A"), _vote("c", "B")]
        result = tally(votes, VotingMethod.VETO)

        assert result.winner == "A"


class TestTally:
    """Cross-method behaviour of tally()."""

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            tally([_vote("a", "A")], "plurality")

    @pytest.mark.parametrize("method", list(VotingMethod))
    def test_votes_not_mutated(self, method):
        """Tallying never alters the input votes."""
        votes = [
            _vote("a", "A", 0.9, rank=["A", "B"]),
            _vote("b", "B", 0.6, rank=["B", "A"]),
            _vote("c", "A", 0.7),
        ]
        before = [v.model_dump() for v in votes]
        result = tally(votes, method)

        assert [v.model_dump() for v in votes] == before
        assert result.method == method
        assert result.confidence_avg == pytest.approx(0.7333, abs=1e-3)

    def test_normalize_position(self):
        assert normalize_position("  Use   Postgres ") == "use postgres"
