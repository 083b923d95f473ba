"""
Composition planner (meta-council).

Decides, per question, which council should answer it:

- ``static``: ordered regex rules plus question length select a preset
- ``llm``: a planner model returns a JSON plan, validated against
  ``schemas/council_plan.json`` and the CouncilPlan model
- ``hybrid``: static first, escalating to the planner model for complex or
  unrecognized questions

Every LLM failure falls back to the static plan; ``meta.planning_mode``
always records the mode that actually produced the result.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from llm_consensus.config.models import ModelConfig
from llm_consensus.config.presets import DEFAULT_PRESET, get_preset
from llm_consensus.engine.parsing import extract_json
from llm_consensus.exceptions import PlanValidationError
from llm_consensus.prompts import PLANNER_SYSTEM_PROMPT, PLANNER_USER_TEMPLATE
from llm_consensus.protocol.types import (
    ComplexityLevel,
    CouncilPlan,
    CouncilSpec,
    DomainType,
    DynamicCouncilConfig,
    IterationConfig,
    IterationStrategy,
    MemberSpec,
    MemoryConfig,
    PlanMeta,
    PlanningMode,
    VotingSpec,
    format_validation_errors,
)
from llm_consensus.providers.base import (
    GenerateRequest,
    Message,
    ProviderAdapter,
    StructuredOutputConfig,
)
from llm_consensus.schemas import load_schema, validator_for

logger = logging.getLogger(__name__)

_C = ComplexityLevel
_D = DomainType


@dataclass(frozen=True)
class StaticRule:
    """Regex rule mapping a question to a preset."""

    name: str
    pattern: re.Pattern[str]
    preset: str
    complexity: ComplexityLevel
    allow_iterations: bool
    domain: DomainType


def _rule(
    name: str,
    pattern: str,
    preset: str,
    complexity: ComplexityLevel,
    allow_iterations: bool,
    domain: DomainType,
) -> StaticRule:
    return StaticRule(
        name=name,
        pattern=re.compile(pattern, re.IGNORECASE),
        preset=preset,
        complexity=complexity,
        allow_iterations=allow_iterations,
        domain=domain,
    )


# First match wins
STATIC_RULES: tuple[StaticRule, ...] = (
    _rule(
        "programming",
        r"\b(code|program\w*|function|algorithm|debug\w*|implement\w*|refactor\w*)\b",
        "reasoning",
        _C.COMPLEX,
        True,
        _D.TECHNICAL,
    ),
    _rule(
        "systems",
        r"\b(api|database|server|deploy\w*|architecture)\b",
        "reasoning",
        _C.MODERATE,
        True,
        _D.TECHNICAL,
    ),
    _rule(
        "math",
        r"\b(math\w*|calculate|solve|equation|proof|derive)\b",
        "reasoning",
        _C.COMPLEX,
        True,
        _D.ANALYTICAL,
    ),
    _rule(
        "logic",
        r"\b(logic\w*|reason\w*|deduce|infer)\b",
        "reasoning",
        _C.COMPLEX,
        True,
        _D.ANALYTICAL,
    ),
    _rule(
        "definition",
        r"\b(what is|define|explain simply|basic|quick)\b",
        "small",
        _C.SIMPLE,
        False,
        _D.FACTUAL,
    ),
    _rule(
        "enumeration",
        r"\b(list|enumerate|name|how many)\b",
        "small",
        _C.SIMPLE,
        False,
        _D.FACTUAL,
    ),
    _rule(
        "comparison",
        r"\b(compare|contrast|vs|versus|difference|better)\b",
        "diverse",
        _C.MODERATE,
        True,
        _D.STRATEGIC,
    ),
    _rule(
        "evaluation",
        r"\b(analy[sz]e|evaluate|assess|review)\b",
        "diverse",
        _C.MODERATE,
        True,
        _D.ANALYTICAL,
    ),
    _rule(
        "debate",
        r"\b(debate|argue|pros.?cons|should|opinion|controversial)\b",
        "diverse",
        _C.COMPLEX,
        True,
        _D.ETHICAL,
    ),
    _rule(
        "ethics",
        r"\b(ethic\w*|moral\w*|right.?wrong|fair\w*)\b",
        "diverse",
        _C.COMPLEX,
        True,
        _D.ETHICAL,
    ),
    _rule(
        "creative",
        r"\b(creative|write|story|poem|imagine|invent)\b",
        "diverse",
        _C.MODERATE,
        False,
        _D.CREATIVE,
    ),
    _rule(
        "ideation",
        r"\b(design|brainstorm|ideate|novel)\b",
        "diverse",
        _C.MODERATE,
        True,
        _D.CREATIVE,
    ),
)


class PlannerConfig(BaseModel):
    """Settings of the composition planner."""

    model_config = ConfigDict(frozen=True)

    mode: PlanningMode = PlanningMode.HYBRID
    planner_model: str | None = Field(
        default=None, description="Catalogue key of the planner model; env default when unset."
    )
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2000, gt=0)
    short_length: int = Field(default=100, gt=0)
    medium_length: int = Field(default=500, gt=0)
    long_length: int = Field(default=1000, gt=0)

    @model_validator(mode="after")
    def _validate_thresholds(self) -> PlannerConfig:
        if not self.short_length <= self.medium_length <= self.long_length:
            raise ValueError("length thresholds must satisfy short <= medium <= long")
        return self


class QuestionAnalysis(BaseModel):
    """Static reading of a question."""

    model_config = ConfigDict(frozen=True)

    complexity: ComplexityLevel
    domain: DomainType
    preset: str
    allow_iterations: bool
    matched_rule: str | None = None


class CompositionPlanner:
    """Produces a DynamicCouncilConfig for a question.

    Args:
        config: Planner settings.
        adapter: Adapter used to reach the planner model. Without one, LLM
            planning always falls back to the static plan.
    """

    def __init__(
        self,
        config: PlannerConfig | None = None,
        adapter: ProviderAdapter | None = None,
        rules: tuple[StaticRule, ...] = STATIC_RULES,
    ) -> None:
        self._config = config or PlannerConfig()
        self._adapter = adapter
        self._rules = rules
        self._validator = validator_for("council_plan")

    @property
    def config(self) -> PlannerConfig:
        return self._config

    @property
    def adapter(self) -> ProviderAdapter | None:
        return self._adapter

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def _length_bucket(self, question: str) -> tuple[str, ComplexityLevel, bool]:
        length = len(question)
        if length < self._config.short_length:
            return "small", _C.SIMPLE, False
        if length < self._config.medium_length:
            return DEFAULT_PRESET, _C.MODERATE, False
        if length < self._config.long_length:
            return DEFAULT_PRESET, _C.MODERATE, True
        return "diverse", _C.COMPLEX, True

    def analyze(self, question: str) -> QuestionAnalysis:
        """Infer complexity, domain and preset without planning."""
        preset, length_complexity, allow_iterations = self._length_bucket(question)
        for rule in self._rules:
            if rule.pattern.search(question):
                complexity = max(rule.complexity, length_complexity, key=lambda c: c.rank)
                return QuestionAnalysis(
                    complexity=complexity,
                    domain=rule.domain,
                    preset=rule.preset,
                    allow_iterations=rule.allow_iterations,
                    matched_rule=rule.name,
                )
        return QuestionAnalysis(
            complexity=length_complexity,
            domain=_D.GENERAL,
            preset=preset,
            allow_iterations=allow_iterations,
        )

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def plan(self, question: str) -> DynamicCouncilConfig:
        """Plan a council for ``question``. Never raises for model failures."""
        analysis = self.analyze(question)
        mode = self._config.mode

        if mode == PlanningMode.STATIC:
            return self.static_plan(question, analysis)

        if mode == PlanningMode.HYBRID:
            escalate = analysis.matched_rule is None or analysis.complexity.rank >= _C.COMPLEX.rank
            if not escalate or self._adapter is None:
                return self.static_plan(question, analysis)

        try:
            return await self.llm_plan(question, analysis)
        except PlanValidationError as e:
            reason = f"{e}: {'; '.join(e.errors)}" if e.errors else str(e)
            logger.warning("LLM planning failed, using static plan: %s", reason)
        except Exception as e:
            reason = f"Planner call failed: {e}"
            logger.warning("LLM planning failed, using static plan: %s", e)
        return self.static_plan(question, analysis, fallback_reason=reason)

    def static_plan(
        self,
        question: str,
        analysis: QuestionAnalysis | None = None,
        fallback_reason: str | None = None,
    ) -> DynamicCouncilConfig:
        """Rule- and length-based plan."""
        analysis = analysis or self.analyze(question)
        preset = get_preset(analysis.preset)
        how = f"rule '{analysis.matched_rule}'" if analysis.matched_rule else "question length"
        allow = analysis.allow_iterations
        return DynamicCouncilConfig(
            meta=PlanMeta(
                planning_mode=PlanningMode.STATIC,
                complexity=analysis.complexity,
                domain=analysis.domain,
                reasoning=f"Matched preset '{preset.name}' by {how}",
                preset=preset.name,
                matched_rule=analysis.matched_rule,
                fallback_reason=fallback_reason,
            ),
            council=CouncilSpec(
                size=preset.size,
                members=list(preset.members),
                voting=VotingSpec(method=preset.voting_method),
            ),
            iteration=IterationConfig(enabled=allow, max_iterations=3 if allow else 1),
            memory=MemoryConfig(enabled=allow),
        )

    async def llm_plan(
        self, question: str, analysis: QuestionAnalysis | None = None
    ) -> DynamicCouncilConfig:
        """Ask the planner model for a plan.

        Raises:
            PlanValidationError: No adapter, unparseable reply or invalid plan.
        """
        if self._adapter is None:
            raise PlanValidationError("No planner adapter configured")

        models = ModelConfig.get_instance()
        planner_key = self._config.planner_model or models.planner_model
        backend = models.get_backend(planner_key)
        schema = load_schema("council_plan")
        structured = None
        if await self._adapter.supports("structured_output"):
            structured = StructuredOutputConfig(json_schema=schema, name="council_plan")

        request = GenerateRequest(
            model=backend.model,
            messages=[
                Message(
                    role="system",
                    content=PLANNER_SYSTEM_PROMPT.format(models=", ".join(models.known_models())),
                ),
                Message(role="user", content=PLANNER_USER_TEMPLATE.format(question=question)),
            ],
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
            structured_output=structured,
        )
        response = await self._adapter.generate(request)
        plan = self.validate_plan(extract_json(response.text or ""))
        return self._config_from_plan(plan, planner_key, analysis or self.analyze(question))

    def validate_plan(self, data: dict[str, Any] | None) -> CouncilPlan:
        """Validate a raw plan against the JSON schema, the model and the catalogue.

        Raises:
            PlanValidationError: With one message per problem.
        """
        if data is None:
            raise PlanValidationError("Planner reply is not a JSON object")

        schema_errors = [
            f"{'.'.join(str(p) for p in err.path) or 'plan'}: {err.message}"
            for err in self._validator.iter_errors(data)
        ]
        if schema_errors:
            raise PlanValidationError("Plan does not match the council_plan schema", schema_errors)

        try:
            plan = CouncilPlan.model_validate(data)
        except ValidationError as e:
            raise PlanValidationError("Invalid council plan", format_validation_errors(e)) from e

        models = ModelConfig.get_instance()
        unknown = sorted({r.model for r in plan.roles if not models.is_known(r.model)})
        if unknown:
            raise PlanValidationError(
                "Plan uses unknown models", [f"roles.model: unknown model '{m}'" for m in unknown]
            )
        return plan

    @staticmethod
    def _config_from_plan(
        plan: CouncilPlan, planner_model: str, analysis: QuestionAnalysis
    ) -> DynamicCouncilConfig:
        allow = plan.allow_iterations
        return DynamicCouncilConfig(
            meta=PlanMeta(
                planning_mode=PlanningMode.LLM,
                planner_model=planner_model,
                complexity=plan.complexity,
                domain=plan.domain,
                reasoning=plan.reasoning,
                matched_rule=analysis.matched_rule,
            ),
            council=CouncilSpec(
                size=plan.council_size,
                members=[
                    MemberSpec(
                        model=r.model,
                        role=r.role,
                        persona=r.persona,
                        weight=r.weight if r.weight is not None else 1.0,
                    )
                    for r in plan.roles
                ],
                voting=VotingSpec(method=plan.voting_method),
            ),
            iteration=IterationConfig(
                enabled=allow,
                max_iterations=(plan.max_iterations or 3) if allow else 1,
                strategy=plan.iteration_strategy or IterationStrategy.REFINE,
            ),
            memory=MemoryConfig(enabled=allow),
        )


__all__ = [
    "CompositionPlanner",
    "PlannerConfig",
    "QuestionAnalysis",
    "STATIC_RULES",
    "StaticRule",
]
