"""
Prompt templates and the role table.

Every role maps to the stages it takes part in and a default persona prompt.
Stage prompt builders live here too so the pipeline only deals with messages.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from llm_consensus.protocol.types import (
    CouncilMember,
    CouncilRole,
    IterationContext,
    IterationStrategy,
    MemberResponse,
    PipelineStage,
    VotingResult,
)

_OPINIONS = PipelineStage.OPINIONS
_REVIEW = PipelineStage.REVIEW
_VOTING = PipelineStage.VOTING
_SYNTHESIS = PipelineStage.SYNTHESIS
_CORRECTION = PipelineStage.CORRECTION


@dataclass(frozen=True)
class RoleProfile:
    """Stage eligibility and default persona for one role."""

    role: CouncilRole
    stages: frozenset[PipelineStage]
    prompt: str


def _profile(role: CouncilRole, stages: Iterable[PipelineStage], prompt: str) -> RoleProfile:
    return RoleProfile(role=role, stages=frozenset(stages), prompt=prompt.strip())


ROLE_TABLE: dict[CouncilRole, RoleProfile] = {
    CouncilRole.OPINION_GIVER: _profile(
        CouncilRole.OPINION_GIVER,
        (_OPINIONS, _VOTING),
        """
You are a council member giving your expert opinion.
Analyze the question, state a clear position, support it with evidence and
reasoning, and consider the strongest counterarguments.
Begin with your main position, then elaborate.
End with: "Confidence: [0.0-1.0]".
""",
    ),
    CouncilRole.REVIEWER: _profile(
        CouncilRole.REVIEWER,
        (_REVIEW, _VOTING),
        """
You are a critical reviewer on the council.
For each opinion give a one-line summary, its strengths, its weaknesses or
unsupported assumptions, a quality rating from 1 to 10 and concrete
suggestions. Judge the arguments, not their authors.
""",
    ),
    CouncilRole.SYNTHESIZER: _profile(
        CouncilRole.SYNTHESIZER,
        (_SYNTHESIS,),
        """
You are the synthesizer of this council.
Combine every perspective into one coherent final answer: the council's
consensus, the key supporting arguments, significant minority views and a
clear recommendation. Stay balanced and do not favor any single member.
""",
    ),
    CouncilRole.BACKUP: _profile(
        CouncilRole.BACKUP,
        (_OPINIONS, _CORRECTION, _VOTING),
        """
You are a backup council member, activated because the council's confidence
is low. Give a fresh, independent analysis, cover gaps in the existing
answers and propose an alternative if the current ones are weak.
Do not repeat what others already said.
End with: "Confidence: [0.0-1.0]".
""",
    ),
    CouncilRole.ARBITER: _profile(
        CouncilRole.ARBITER,
        (_VOTING,),
        """
You are the arbiter of this council. When positions conflict, compare the
competing views impartially and choose the most defensible one, explaining
your reasoning.
""",
    ),
    CouncilRole.DEVIL_ADVOCATE: _profile(
        CouncilRole.DEVIL_ADVOCATE,
        (_OPINIONS, _VOTING),
        """
You are the devil's advocate. Challenge the emerging consensus with the
strongest opposing arguments, expose hidden risks and name the questions the
council must answer. Be adversarial but constructive.
End with: "Confidence: [0.0-1.0]".
""",
    ),
    CouncilRole.FACT_CHECKER: _profile(
        CouncilRole.FACT_CHECKER,
        (_REVIEW, _VOTING),
        """
You are the fact-checker. Go through the factual claims made by council
members and mark each as VERIFIED, QUESTIONABLE, INCORRECT, OPINION or
NEEDS VERIFICATION, with a short justification or correction.
""",
    ),
    CouncilRole.DOMAIN_EXPERT: _profile(
        CouncilRole.DOMAIN_EXPERT,
        (_OPINIONS, _VOTING),
        """
You are a domain expert on this council. Provide specialized depth, correct
misconceptions and point out nuances non-experts miss, explaining jargon
where needed.
End with: "Confidence: [0.0-1.0]".
""",
    ),
    CouncilRole.SKEPTIC: _profile(
        CouncilRole.SKEPTIC,
        (_OPINIONS, _VOTING),
        """
You are the skeptic. Identify hidden assumptions, demand evidence, flag
overconfident claims and name what the council does not know.
End with: "Confidence: [0.0-1.0]".
""",
    ),
    CouncilRole.CREATIVE: _profile(
        CouncilRole.CREATIVE,
        (_OPINIONS, _VOTING),
        """
You are the creative thinker. Offer unconventional angles and novel
approaches others have not considered, balancing originality with
practicality.
End with: "Confidence: [0.0-1.0]".
""",
    ),
    CouncilRole.CRITIC: _profile(
        CouncilRole.CRITIC,
        (_REVIEW, _VOTING),
        """
You are the constructive critic. Identify the main weaknesses in the
reasoning presented, assess their impact and propose specific fixes.
""",
    ),
    CouncilRole.MODERATOR: _profile(
        CouncilRole.MODERATOR,
        (_REVIEW,),
        """
You are the moderator. Summarize the state of the discussion: points of
agreement, open questions and what the council should focus on next.
Stay neutral and do not inject your own opinion.
""",
    ),
}


def eligible(member: CouncilMember, stage: PipelineStage) -> bool:
    """True when an active member takes part in ``stage``."""
    return member.is_active and stage in ROLE_TABLE[member.role].stages


def build_system_prompt(
    role: CouncilRole, persona: str | None = None, custom_prompt: str | None = None
) -> str:
    """System prompt for a member: custom override, else role prompt plus persona."""
    if custom_prompt:
        return custom_prompt
    base = ROLE_TABLE[role].prompt
    if persona:
        return (
            f"{base}\n\n---\nYOUR PERSONA: {persona}\n"
            "Bring this persona into your answers while fulfilling your role."
        )
    return base


# ---------------------------------------------------------------------------
# Stage prompts
# ---------------------------------------------------------------------------

VOTE_FORMAT = """Reply using exactly these lines:
POSITION: <a short label for the answer you support, at most a few words>
CONFIDENCE: <a number between 0.0 and 1.0>
RANKING: <optional, comma-separated labels from most to least preferred>
VETO: <yes only if the leading answer is unacceptable, otherwise no>
REASONING: <one or two sentences>"""


def _with_context(body: str, context: str) -> str:
    return f"{context.strip()}\n\n{body}" if context.strip() else body


def _format_responses(responses: Sequence[MemberResponse], limit: int = 2000) -> str:
    if not responses:
        return "(none)"
    return "\n\n".join(
        f"### {r.member_name or r.member_id}\n{r.content[:limit]}" for r in responses
    )


def opinion_prompt(question: str, context: str = "") -> str:
    return _with_context(f"Question:\n{question}\n\nGive your opinion.", context)


def correction_prompt(
    question: str, opinions: Sequence[MemberResponse], voting: VotingResult | None
) -> str:
    """Prompt for backups joining a low-confidence round."""
    summary = "No vote has been taken yet."
    if voting is not None:
        summary = (
            f"Leading position: {voting.winner or 'none'}; "
            f"average confidence {voting.confidence_avg:.2f}; "
            f"consensus reached: {'yes' if voting.consensus_reached else 'no'}."
        )
    return (
        f"Question:\n{question}\n\n"
        f"The council is not confident yet. {summary}\n\n"
        f"Existing opinions:\n{_format_responses(opinions)}\n\n"
        "Give your own independent opinion."
    )


def review_prompt(question: str, opinions: Sequence[MemberResponse], context: str = "") -> str:
    return _with_context(
        f"Question:\n{question}\n\nOpinions to review:\n{_format_responses(opinions)}",
        context,
    )


def vote_prompt(
    question: str,
    opinions: Sequence[MemberResponse],
    reviews: Sequence[MemberResponse],
    context: str = "",
) -> str:
    body = (
        f"Question:\n{question}\n\n"
        f"Opinions:\n{_format_responses(opinions)}\n\n"
        f"Reviews:\n{_format_responses(reviews)}\n\n"
        f"Vote for the answer you find best supported.\n{VOTE_FORMAT}"
    )
    return _with_context(body, context)


def synthesis_prompt(
    question: str,
    responses: Sequence[MemberResponse],
    voting: VotingResult | None,
    context: str = "",
) -> str:
    if voting is None:
        outcome = "No vote was taken."
    else:
        tally = ", ".join(f"{label}: {count}" for label, count in voting.breakdown.items())
        outcome = (
            f"Method: {voting.method.value}. Winner: {voting.winner or 'no winner'}. "
            f"Breakdown: {tally or 'no votes'}. "
            f"Average confidence: {voting.confidence_avg:.2f}. "
            f"Consensus reached: {'yes' if voting.consensus_reached else 'no'}."
        )
    body = (
        f"Question:\n{question}\n\n"
        f"Council responses:\n{_format_responses(responses)}\n\n"
        f"Voting outcome:\n{outcome}\n\n"
        "Write the council's final answer."
    )
    return _with_context(body, context)


# ---------------------------------------------------------------------------
# Iteration context
# ---------------------------------------------------------------------------

STRATEGY_HINTS: dict[IterationStrategy, str] = {
    IterationStrategy.REFINE: "Refine the previous answer: keep what held up and fix what did not.",
    IterationStrategy.ESCALATE: "New members have joined; re-examine the question with fresh eyes.",
    IterationStrategy.SPECIALIZE: "Answer strictly from your role's specialty and go deeper there.",
    IterationStrategy.DEBATE: "Directly rebut the strongest position you disagree with.",
}


def iteration_context_prompt(context: IterationContext) -> str:
    """Render an IterationContext for injection into member prompts."""
    trend = context.confidence_trend
    trend_display = " -> ".join(f"{c:.2f}" for c in trend) if trend else "N/A"
    if len(trend) > 1:
        trend_display += " (rising)" if trend[-1] > trend[-2] else " (not rising)"
    decisions = "\n".join(f"{i}. {d}" for i, d in enumerate(context.key_decisions, 1))
    issues = "\n".join(f"- {issue}" for issue in context.open_issues) or "- None identified"
    return (
        f"## Iteration {context.iteration} Context\n\n"
        f"### Previous Work Summary\n{context.previous_summary}\n\n"
        f"### Key Decisions Made\n{decisions or 'None yet'}\n\n"
        f"### Open Issues to Address\n{issues}\n\n"
        f"### Confidence Trend\n{trend_display}\n\n"
        f"### Focus for This Iteration\n{context.instructions}\n\n"
        "Build on the previous work, address the open issues and improve confidence."
    )


# ---------------------------------------------------------------------------
# Planner and memory prompts
# ---------------------------------------------------------------------------

PLANNER_SYSTEM_PROMPT = """You are a council planning assistant. Analyze the question and
choose the council that will answer it best.

- complexity: simple | moderate | complex | expert
- domain: general | technical | creative | ethical | factual | analytical | strategic
- council_size: 3 to 9 members; roles must list exactly council_size entries
- roles: opinion-giver, reviewer, synthesizer, devil-advocate, fact-checker,
  domain-expert, skeptic, creative, critic, moderator (include one synthesizer)
- models: {models}
- voting_method: majority | super-majority | unanimous | ranked-choice |
  weighted | confidence | consensus | veto
- allow_iterations: true when several refinement passes would help
- iteration_strategy: refine | escalate | specialize | debate

Reply with a single JSON object matching the schema and nothing else."""

PLANNER_USER_TEMPLATE = """Recommend the council configuration for this question:

{question}"""

MEMORY_COMPRESSION_PROMPT = """Summarize the following council deliberation concisely.
Cover the main consensus points, key disagreements, open questions and the
most important insights. Keep it under {max_tokens} tokens.

---

DELIBERATION TO SUMMARIZE:
{deliberation}"""


__all__ = [
    "MEMORY_COMPRESSION_PROMPT",
    "PLANNER_SYSTEM_PROMPT",
    "PLANNER_USER_TEMPLATE",
    "ROLE_TABLE",
    "RoleProfile",
    "STRATEGY_HINTS",
    "VOTE_FORMAT",
    "build_system_prompt",
    "correction_prompt",
    "eligible",
    "iteration_context_prompt",
    "opinion_prompt",
    "review_prompt",
    "synthesis_prompt",
    "vote_prompt",
]
