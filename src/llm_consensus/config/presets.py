"""
Named council presets.

A preset is a roster of member specs plus session overrides. Presets are used
directly by ``Council(preset=...)`` and as building blocks by the static
composition planner.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from llm_consensus.config.models import members_from_specs
from llm_consensus.protocol.types import (
    CouncilMember,
    CouncilRole,
    MemberSpec,
    SessionConfig,
    VotingMethod,
    build_session_config,
)

_R = CouncilRole


@dataclass(frozen=True)
class CouncilPreset:
    """A reusable council composition."""

    name: str
    description: str
    members: tuple[MemberSpec, ...]
    voting_method: VotingMethod
    session: dict[str, Any] = field(default_factory=dict)

    @property
    def size(self) -> int:
        """Number of members that deliberate from the start (backups excluded)."""
        return sum(1 for m in self.members if m.role != CouncilRole.BACKUP)

    def session_overrides(self) -> dict[str, Any]:
        return {
            "council_size": self.size,
            "voting_method": self.voting_method,
            "backup_members_count": sum(1 for m in self.members if m.role == CouncilRole.BACKUP),
            **self.session,
        }


def _spec(model: str, role: CouncilRole, name: str, weight: float = 1.0) -> MemberSpec:
    return MemberSpec(model=model, role=role, name=name, weight=weight)


COUNCIL_PRESETS: dict[str, CouncilPreset] = {
    "small": CouncilPreset(
        name="small",
        description="3 members for quick answers to simple questions",
        members=(
            _spec("gpt-5-mini", _R.OPINION_GIVER, "GPT-5 Mini Analyst"),
            _spec("gpt-5-mini", _R.REVIEWER, "GPT-5 Mini Critic"),
            _spec("gpt-5", _R.SYNTHESIZER, "GPT-5 Synthesizer"),
        ),
        voting_method=VotingMethod.MAJORITY,
        session={"self_correction_enabled": False},
    ),
    "standard": CouncilPreset(
        name="standard",
        description="5 members with a devil's advocate and one reasoning backup",
        members=(
            _spec("gpt-5", _R.OPINION_GIVER, "GPT-5 Primary"),
            _spec("gpt-5-mini", _R.OPINION_GIVER, "GPT-5 Mini Fast"),
            _spec("gpt-4.1", _R.REVIEWER, "GPT-4.1 Reviewer"),
            _spec("gpt-5", _R.DEVIL_ADVOCATE, "GPT-5 Devil's Advocate"),
            _spec("gpt-5", _R.SYNTHESIZER, "GPT-5 Synthesizer"),
            _spec("o4-mini", _R.BACKUP, "o4-mini Backup"),
        ),
        voting_method=VotingMethod.CONFIDENCE,
        session={"self_correction_threshold": 0.65, "max_correction_rounds": 1},
    ),
    "reasoning": CouncilPreset(
        name="reasoning",
        description="o-series heavy council for logic, math and code",
        members=(
            _spec("o3", _R.OPINION_GIVER, "o3 Thinker", weight=1.3),
            _spec("o4-mini", _R.OPINION_GIVER, "o4-mini Reasoner", weight=1.2),
            _spec("gpt-5", _R.REVIEWER, "GPT-5 Reviewer"),
            _spec("gpt-5-mini", _R.FACT_CHECKER, "GPT-5 Mini Fact-Checker"),
            _spec("o3", _R.SYNTHESIZER, "o3 Synthesizer", weight=1.3),
            _spec("o3-mini", _R.BACKUP, "o3-mini Backup"),
        ),
        voting_method=VotingMethod.WEIGHTED,
        session={"self_correction_threshold": 0.7, "max_correction_rounds": 2},
    ),
    "diverse": CouncilPreset(
        name="diverse",
        description="7 members with debate roles for contested or open-ended questions",
        members=(
            _spec("gpt-5", _R.OPINION_GIVER, "GPT-5"),
            _spec("o3", _R.OPINION_GIVER, "o3", weight=1.2),
            _spec("gpt-5", _R.DEVIL_ADVOCATE, "GPT-5 Devil's Advocate"),
            _spec("gpt-5-mini", _R.SKEPTIC, "GPT-5 Mini Skeptic"),
            _spec("gpt-4.1", _R.REVIEWER, "GPT-4.1 Reviewer"),
            _spec("gpt-5", _R.CREATIVE, "GPT-5 Creative"),
            _spec("gpt-5", _R.SYNTHESIZER, "GPT-5 Synthesizer"),
            _spec("gpt-4.1", _R.BACKUP, "GPT-4.1 Backup"),
        ),
        voting_method=VotingMethod.RANKED_CHOICE,
        session={"self_correction_threshold": 0.6, "max_correction_rounds": 2},
    ),
}

DEFAULT_PRESET = "standard"


def get_preset(name: str) -> CouncilPreset:
    """Look up a preset by name.

    Raises:
        ValueError: If no preset has that name.
    """
    try:
        return COUNCIL_PRESETS[name]
    except KeyError:
        raise ValueError(
            f"Unknown preset '{name}'. Available: {', '.join(COUNCIL_PRESETS)}"
        ) from None


def list_presets() -> list[str]:
    return list(COUNCIL_PRESETS)


def build_preset(
    name: str, **session_overrides: Any
) -> tuple[list[CouncilMember], SessionConfig]:
    """Materialize a preset into fresh members and a validated SessionConfig.

    Raises:
        ValueError: Unknown preset.
        ConfigurationError: If the overrides produce an invalid config.
    """
    preset = get_preset(name)
    members = members_from_specs(preset.members)
    result = build_session_config(preset.session_overrides(), **session_overrides)
    return members, result.unwrap()


__all__ = [
    "COUNCIL_PRESETS",
    "CouncilPreset",
    "DEFAULT_PRESET",
    "build_preset",
    "get_preset",
    "list_presets",
]
