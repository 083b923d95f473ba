"""
Voting engine for llm-consensus.

Reduces a stage's votes to a single VotingResult using one of eight
social-choice methods. Everything here is pure: no I/O, no shared state,
and the input votes are never mutated, so tallies are safe to run from
concurrent sessions.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from llm_consensus.protocol.types import (
    CouncilMember,
    SessionConfig,
    Vote,
    VotingMethod,
    VotingResult,
)

logger = logging.getLogger(__name__)

DEFAULT_SUPER_MAJORITY_THRESHOLD = 2 / 3
DEFAULT_CONSENSUS_THRESHOLD = 0.8

_EPSILON = 1e-9


@dataclass(frozen=True)
class VotingOptions:
    """Tunables that are not part of the votes themselves.

    Attributes:
        super_majority_threshold: Share of cast votes the winner needs under
            ``super-majority``.
        consensus_threshold: Agreement ratio below which ``consensus`` reports
            ``consensus_reached=False``.
        priorities: Member id -> invocation priority, used for tie-breaks.
            Members missing here rank by their vote's position in the list.
        eligible_voters: Ids of active non-backup members. ``unanimous``
            requires every one of them to agree; ``None`` means "whoever voted".
    """

    super_majority_threshold: float = DEFAULT_SUPER_MAJORITY_THRESHOLD
    consensus_threshold: float = DEFAULT_CONSENSUS_THRESHOLD
    priorities: Mapping[str, int] = field(default_factory=dict)
    eligible_voters: frozenset[str] | None = None

    @classmethod
    def for_session(
        cls, config: SessionConfig, members: Iterable[CouncilMember]
    ) -> VotingOptions:
        """Build options from a session config and its current roster."""
        members = list(members)
        threshold = config.voting_threshold
        return cls(
            super_majority_threshold=threshold or DEFAULT_SUPER_MAJORITY_THRESHOLD,
            consensus_threshold=threshold or DEFAULT_CONSENSUS_THRESHOLD,
            priorities={m.id: m.priority for m in members},
            eligible_voters=frozenset(m.id for m in members if m.is_active and not m.is_backup),
        )


def member_weights(members: Iterable[CouncilMember]) -> dict[str, float]:
    """Map member id to voting weight."""
    return {m.id: m.weight for m in members}


def normalize_position(position: str) -> str:
    """Case- and whitespace-insensitive key for a declared position."""
    return " ".join(position.split()).casefold()


@dataclass
class _Outcome:
    winner: str | None
    consensus: bool
    rounds: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class _Ballots:
    """Normalized view over a vote list shared by every method."""

    votes: Sequence[Vote]
    labels: dict[str, str]
    order: dict[str, int]

    @classmethod
    def of(cls, votes: Sequence[Vote]) -> _Ballots:
        labels: dict[str, str] = {}
        for vote in votes:
            for raw in (vote.position, *(vote.rank or ())):
                key = normalize_position(raw)
                if key and key not in labels:
                    labels[key] = raw.strip()
        return cls(votes=votes, labels=labels, order={k: i for i, k in enumerate(labels)})

    @property
    def cast(self) -> list[Vote]:
        """Votes that count towards a tally (vetoes abstain)."""
        return [v for v in self.votes if not v.veto]

    def scores(
        self, votes: Iterable[Vote], value: Callable[[Vote], float] = lambda _v: 1.0
    ) -> dict[str, float]:
        totals: dict[str, float] = {}
        for vote in votes:
            key = normalize_position(vote.position)
            if key:
                totals[key] = totals.get(key, 0.0) + value(vote)
        return totals

    def leader(self, primary: Mapping[str, float], secondary: Mapping[str, float]) -> str:
        """Highest primary score; ties by secondary score, then first seen."""
        return max(
            primary,
            key=lambda k: (
                round(primary[k], 9),
                round(secondary.get(k, 0.0), 9),
                -self.order.get(k, 0),
            ),
        )

    def label(self, key: str | None) -> str | None:
        return None if key is None else self.labels.get(key, key)

    def labelled(self, scores: Mapping[str, float]) -> dict[str, float]:
        return {self.labels.get(k, k): round(v, 6) for k, v in scores.items()}


def _confidence(vote: Vote) -> float:
    return vote.confidence


def _majority(ballots: _Ballots, weights: Mapping[str, float], options: VotingOptions) -> _Outcome:
    cast = ballots.cast
    counts = ballots.scores(cast)
    if not counts:
        return _Outcome(None, False, metadata={"cast": 0})
    leader = ballots.leader(counts, ballots.scores(cast, _confidence))
    share = counts[leader] / len(cast)
    if counts[leader] * 2 > len(cast):
        return _Outcome(leader, True, metadata={"cast": len(cast), "share": round(share, 6)})
    return _Outcome(None, False, metadata={"cast": len(cast), "share": round(share, 6)})


def _super_majority(
    ballots: _Ballots, weights: Mapping[str, float], options: VotingOptions
) -> _Outcome:
    cast = ballots.cast
    threshold = options.super_majority_threshold
    counts = ballots.scores(cast)
    if not counts:
        return _Outcome(None, False, metadata={"cast": 0, "threshold": threshold})
    leader = ballots.leader(counts, ballots.scores(cast, _confidence))
    share = counts[leader] / len(cast)
    metadata = {"cast": len(cast), "share": round(share, 6), "threshold": threshold}
    if counts[leader] >= threshold * len(cast) - _EPSILON:
        return _Outcome(leader, True, metadata=metadata)
    return _Outcome(None, False, metadata=metadata)


def _unanimous(ballots: _Ballots, weights: Mapping[str, float], options: VotingOptions) -> _Outcome:
    eligible = options.eligible_voters
    if eligible is None:
        considered = list(ballots.votes)
        missing: list[str] = []
    else:
        considered = [v for v in ballots.votes if v.member_id in eligible]
        missing = sorted(eligible - {v.member_id for v in considered})

    positions = {normalize_position(v.position) for v in considered}
    metadata: dict[str, Any] = {"missing_voters": missing, "positions": len(positions)}
    if not considered or missing or any(v.veto for v in considered) or len(positions) != 1:
        return _Outcome(None, False, metadata=metadata)
    return _Outcome(positions.pop(), True, metadata=metadata)


def _ranked_choice(
    ballots: _Ballots, weights: Mapping[str, float], options: VotingOptions
) -> _Outcome:
    """Instant runoff.

    Every counting round credits each live ballot to its first non-eliminated
    preference. A candidate holding more than half of the live ballots wins;
    otherwise the weakest candidate is eliminated. Elimination ties go to the
    lowest cumulative confidence, then to the candidate whose earliest
    supporter was invoked last, then to the later-seen label.
    """
    prepared: list[tuple[Vote, list[str], int]] = []
    for index, vote in enumerate(ballots.votes):
        if vote.veto:
            continue
        prefs: list[str] = []
        for raw in vote.rank or [vote.position]:
            key = normalize_position(raw)
            if key and key not in prefs:
                prefs.append(key)
        priority = options.priorities.get(vote.member_id, index)
        prepared.append((vote, prefs, priority))

    eliminated: list[str] = []
    round_counts: list[dict[str, int]] = []
    winner: str | None = None

    while True:
        counts: dict[str, float] = {}
        confidence: dict[str, float] = {}
        best_priority: dict[str, int] = {}
        live = 0
        for vote, prefs, priority in prepared:
            choice = next((k for k in prefs if k not in eliminated), None)
            if choice is None:
                continue
            live += 1
            counts[choice] = counts.get(choice, 0.0) + 1
            confidence[choice] = confidence.get(choice, 0.0) + vote.confidence
            best_priority[choice] = min(best_priority.get(choice, priority), priority)

        if not counts:
            break
        round_counts.append({ballots.labels.get(k, k): int(c) for k, c in counts.items()})

        leader = ballots.leader(counts, confidence)
        if counts[leader] * 2 > live:
            winner = leader
            break

        loser = min(
            counts,
            key=lambda k: (
                counts[k],
                round(confidence[k], 9),
                -best_priority[k],
                -ballots.order.get(k, 0),
            ),
        )
        eliminated.append(loser)
        logger.debug("Ranked-choice round %d eliminated %s", len(round_counts), loser)

    return _Outcome(
        winner,
        winner is not None,
        rounds=max(1, len(eliminated)),
        metadata={
            "eliminated": [ballots.labels.get(k, k) for k in eliminated],
            "round_counts": round_counts,
        },
    )


def _weighted(ballots: _Ballots, weights: Mapping[str, float], options: VotingOptions) -> _Outcome:
    cast = ballots.cast
    sums = ballots.scores(cast, lambda v: weights.get(v.member_id, 1.0))
    total = sum(sums.values())
    metadata: dict[str, Any] = {"weighted_totals": ballots.labelled(sums), "total_weight": total}
    if total <= 0:
        return _Outcome(None, False, metadata=metadata)
    leader = ballots.leader(sums, ballots.scores(cast))
    return _Outcome(leader, sums[leader] * 2 > total + _EPSILON, metadata=metadata)


def _confidence_weighted(
    ballots: _Ballots, weights: Mapping[str, float], options: VotingOptions
) -> _Outcome:
    cast = ballots.cast
    sums = ballots.scores(cast, _confidence)
    total = sum(sums.values())
    metadata: dict[str, Any] = {
        "confidence_totals": ballots.labelled(sums),
        "total_confidence": total,
    }
    if total <= 0:
        return _Outcome(None, False, metadata=metadata)
    leader = ballots.leader(sums, ballots.scores(cast, lambda v: weights.get(v.member_id, 1.0)))
    return _Outcome(leader, sums[leader] * 2 > total + _EPSILON, metadata=metadata)


def _consensus(ballots: _Ballots, weights: Mapping[str, float], options: VotingOptions) -> _Outcome:
    cast = ballots.cast
    threshold = options.consensus_threshold
    counts = ballots.scores(cast)
    if not counts:
        return _Outcome(None, False, metadata={"agreement": 0.0, "threshold": threshold})
    leader = ballots.leader(counts, ballots.scores(cast, _confidence))
    agreement = counts[leader] / len(cast)
    reached = agreement >= threshold - _EPSILON
    return _Outcome(
        leader,
        reached,
        metadata={
            "agreement": round(agreement, 6),
            "threshold": threshold,
            "needs_another_round": not reached,
        },
    )


def _veto(ballots: _Ballots, weights: Mapping[str, float], options: VotingOptions) -> _Outcome:
    vetoed_by = [v.member_id for v in ballots.votes if v.veto]
    if vetoed_by:
        return _Outcome(None, False, metadata={"vetoed_by": vetoed_by})
    return _majority(ballots, weights, options)


_METHODS: dict[VotingMethod, Callable[[_Ballots, Mapping[str, float], VotingOptions], _Outcome]] = {
    VotingMethod.MAJORITY: _majority,
    VotingMethod.SUPER_MAJORITY: _super_majority,
    VotingMethod.UNANIMOUS: _unanimous,
    VotingMethod.RANKED_CHOICE: _ranked_choice,
    VotingMethod.WEIGHTED: _weighted,
    VotingMethod.CONFIDENCE: _confidence_weighted,
    VotingMethod.CONSENSUS: _consensus,
    VotingMethod.VETO: _veto,
}


def tally(
    votes: Iterable[Vote],
    method: VotingMethod | str,
    weights: Mapping[str, float] | None = None,
    *,
    options: VotingOptions | None = None,
) -> VotingResult:
    """Tally votes with the given method.

    Args:
        votes: Votes cast in one voting stage. Order matters only for
            deterministic tie-breaks.
        method: Voting method (enum or its string value).
        weights: Member id -> static weight; members missing here weigh 1.
        options: Thresholds, priorities and eligible voters.

    Returns:
        VotingResult. ``confidence_avg`` is the plain mean of every vote's
        confidence and ``breakdown`` the raw count per position regardless
        of method.

    Raises:
        ValueError: If ``method`` is not a known voting method.
    """
    method = VotingMethod(method)
    vote_list = list(votes)
    ballots = _Ballots.of(vote_list)

    breakdown: dict[str, int] = {}
    for vote in vote_list:
        label = ballots.label(normalize_position(vote.position))
        if label:
            breakdown[label] = breakdown.get(label, 0) + 1

    confidence_avg = (
        sum(v.confidence for v in vote_list) / len(vote_list) if vote_list else 0.0
    )

    outcome = _METHODS[method](ballots, weights or {}, options or VotingOptions())

    return VotingResult(
        method=method,
        winner=ballots.label(outcome.winner),
        votes=vote_list,
        breakdown=breakdown,
        confidence_avg=confidence_avg,
        consensus_reached=outcome.consensus and outcome.winner is not None,
        rounds_needed=outcome.rounds,
        metadata=outcome.metadata,
    )


__all__ = [
    "DEFAULT_CONSENSUS_THRESHOLD",
    "DEFAULT_SUPER_MAJORITY_THRESHOLD",
    "VotingOptions",
    "member_weights",
    "normalize_position",
    "tally",
]
