"""Tests for the composition planner."""

from __future__ import annotations

import json
import logging

import pytest
from conftest import MockProvider

from llm_consensus.engine.planner import CompositionPlanner, PlannerConfig
from llm_consensus.exceptions import PlanValidationError
from llm_consensus.protocol.types import (
    ComplexityLevel,
    CouncilRole,
    DomainType,
    IterationStrategy,
    PlanningMode,
    VotingMethod,
)

DEBATE_QUESTION = "Should we adopt a four-day work week?"


def _plan(**overrides) -> dict:
    plan = {
        "complexity": "complex",
        "domain": "ethical",
        "reasoning": "Contested question; needs a skeptic.",
        "council_size": 3,
        "roles": [
            {"role": "opinion-giver", "model": "gpt-5"},
            {"role": "skeptic", "model": "gpt-5-mini", "persona": "Labour economist"},
            {"role": "synthesizer", "model": "o3", "weight": 1.5},
        ],
        "voting_method": "confidence",
        "allow_iterations": True,
        "max_iterations": 4,
        "iteration_strategy": "debate",
    }
    plan.update(overrides)
    return plan


class TestAnalyze:
    """Tests for static question analysis."""

    def test_programming_rule(self):
        analysis = CompositionPlanner().analyze("Write a function to reverse a linked list")

        assert analysis.matched_rule == "programming"
        assert analysis.preset == "reasoning"
        assert analysis.domain == DomainType.TECHNICAL
        assert analysis.complexity == ComplexityLevel.COMPLEX

    def test_definition_rule(self):
        analysis = CompositionPlanner().analyze("What is the capital of France?")

        assert analysis.matched_rule == "definition"
        assert analysis.preset == "small"
        assert analysis.allow_iterations is False

    def test_first_match_wins(self):
        """'debug' (programming) is listed before 'compare' (comparison)."""
        analysis = CompositionPlanner().analyze("Compare two ways to debug a memory leak")
        assert analysis.matched_rule == "programming"

    def test_short_unmatched_question(self):
        analysis = CompositionPlanner().analyze("Hello there")

        assert analysis.matched_rule is None
        assert analysis.preset == "small"
        assert analysis.complexity == ComplexityLevel.SIMPLE
        assert analysis.domain == DomainType.GENERAL

    def test_long_unmatched_question(self):
        analysis = CompositionPlanner().analyze("lorem ipsum " * 100)

        assert analysis.preset == "diverse"
        assert analysis.complexity == ComplexityLevel.COMPLEX
        assert analysis.allow_iterations is True

    def test_length_raises_rule_complexity(self):
        question = "What is " + "a very long qualifier " * 60
        analysis = CompositionPlanner().analyze(question)

        assert analysis.matched_rule == "definition"
        assert analysis.complexity == ComplexityLevel.COMPLEX

    def test_invalid_thresholds(self):
        with pytest.raises(ValueError):
            PlannerConfig(short_length=600, medium_length=500)


class TestStaticPlan:
    """Tests for static planning."""

    @pytest.mark.asyncio
    async def test_static_mode(self):
        planner = CompositionPlanner(PlannerConfig(mode=PlanningMode.STATIC))
        config = await planner.plan("What is the capital of France?")

        assert config.meta.planning_mode == PlanningMode.STATIC
        assert config.meta.preset == "small"
        assert config.meta.reasoning == "Matched preset 'small' by rule 'definition'"
        assert config.council.size == 3
        assert config.council.voting.method == VotingMethod.MAJORITY
        assert config.iteration.enabled is False
        assert config.iteration.max_iterations == 1
        assert config.memory.enabled is False

    def test_length_reasoning(self):
        config = CompositionPlanner().static_plan("Hello there")
        assert config.meta.reasoning == "Matched preset 'small' by question length"

    @pytest.mark.asyncio
    async def test_hybrid_without_adapter_is_static(self):
        config = await CompositionPlanner().plan(DEBATE_QUESTION)

        assert config.meta.planning_mode == PlanningMode.STATIC
        assert config.meta.fallback_reason is None
        assert config.iteration.enabled is True
        assert config.iteration.max_iterations == 3

    @pytest.mark.asyncio
    async def test_hybrid_keeps_simple_questions_static(self):
        provider = MockProvider(response_text=json.dumps(_plan()))
        planner = CompositionPlanner(adapter=provider)

        config = await planner.plan("What is the capital of France?")

        assert config.meta.planning_mode == PlanningMode.STATIC
        assert provider.call_count == 0


class TestLLMPlan:
    """Tests for LLM planning and its fallbacks."""

    @pytest.mark.asyncio
    async def test_hybrid_escalates_complex_question(self):
        provider = MockProvider(response_text=f"```json\n{json.dumps(_plan())}\n```")
        planner = CompositionPlanner(adapter=provider)

        config = await planner.plan(DEBATE_QUESTION)

        assert config.meta.planning_mode == PlanningMode.LLM
        assert config.meta.planner_model == "gpt-5-mini"
        assert config.meta.matched_rule == "debate"
        assert config.council.size == 3
        assert [m.role for m in config.council.members] == [
            CouncilRole.OPINION_GIVER,
            CouncilRole.SKEPTIC,
            CouncilRole.SYNTHESIZER,
        ]
        assert config.council.members[1].persona == "Labour economist"
        assert config.council.members[0].weight == 1.0
        assert config.council.members[2].weight == 1.5
        assert config.council.voting.method == VotingMethod.CONFIDENCE
        assert config.iteration.max_iterations == 4
        assert config.iteration.strategy == IterationStrategy.DEBATE

    @pytest.mark.asyncio
    async def test_llm_request(self):
        provider = MockProvider(response_text=json.dumps(_plan()))
        planner = CompositionPlanner(PlannerConfig(mode=PlanningMode.LLM), adapter=provider)

        await planner.plan("Hello there")

        request = provider.requests[0]
        assert request.model == "gpt-5-mini"
        assert request.temperature == pytest.approx(0.3)
        assert request.max_tokens == 2000
        assert request.structured_output is not None
        assert request.structured_output.name == "council_plan"
        assert "gpt-5" in request.messages[0].content
        assert "Hello there" in request.messages[1].content

    @pytest.mark.asyncio
    async def test_planner_model_override(self, monkeypatch):
        monkeypatch.setenv("CONSENSUS_PLANNER_MODEL", "gpt-4.1")
        monkeypatch.setenv("CONSENSUS_MODEL_GPT_4_1", "my-gpt41")
        provider = MockProvider(response_text=json.dumps(_plan()))
        planner = CompositionPlanner(PlannerConfig(mode=PlanningMode.LLM), adapter=provider)

        config = await planner.plan("Hello there")

        assert provider.requests[0].model == "my-gpt41"
        assert config.meta.planner_model == "gpt-4.1"

    @pytest.mark.asyncio
    async def test_disallowed_iterations(self):
        provider = MockProvider(response_text=json.dumps(_plan(allow_iterations=False)))
        planner = CompositionPlanner(PlannerConfig(mode=PlanningMode.LLM), adapter=provider)

        config = await planner.plan(DEBATE_QUESTION)

        assert config.iteration.enabled is False
        assert config.iteration.max_iterations == 1
        assert config.memory.enabled is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("reply", "reason"),
        [
            ("I would use three members.", "not a JSON object"),
            (json.dumps(_plan(council_size=12)), "council_plan schema"),
            (json.dumps(_plan(council_size=4)), "Invalid council plan"),
            (
                json.dumps(_plan(roles=[{"role": "opinion-giver", "model": "claude-9"}] * 3)),
                "unknown model 'claude-9'",
            ),
        ],
    )
    async def test_invalid_plan_falls_back(self, reply, reason, caplog):
        planner = CompositionPlanner(adapter=MockProvider(response_text=reply))

        with caplog.at_level(logging.WARNING, logger="llm_consensus.engine.planner"):
            config = await planner.plan(DEBATE_QUESTION)

        assert config.meta.planning_mode == PlanningMode.STATIC
        assert config.meta.preset == "diverse"
        assert reason in config.meta.fallback_reason
        assert "using static plan" in caplog.text

    @pytest.mark.asyncio
    async def test_provider_failure_falls_back(self):
        planner = CompositionPlanner(adapter=MockProvider(should_fail=True))

        config = await planner.plan(DEBATE_QUESTION)

        assert config.meta.planning_mode == PlanningMode.STATIC
        assert config.meta.fallback_reason == "Planner call failed: Mock provider failure"

    @pytest.mark.asyncio
    async def test_llm_plan_without_adapter_raises(self):
        with pytest.raises(PlanValidationError):
            await CompositionPlanner().llm_plan(DEBATE_QUESTION)


class TestValidatePlan:
    """Tests for validate_plan()."""

    def test_valid(self):
        plan = CompositionPlanner().validate_plan(_plan())

        assert plan.council_size == 3
        assert plan.iteration_strategy == IterationStrategy.DEBATE

    def test_none(self):
        with pytest.raises(PlanValidationError, match="not a JSON object"):
            CompositionPlanner().validate_plan(None)

    def test_schema_errors_are_listed(self):
        data = _plan(voting_method="plurality", extra_field=True)

        with pytest.raises(PlanValidationError) as exc_info:
            CompositionPlanner().validate_plan(data)

        errors = exc_info.value.errors
        assert len(errors) == 2
        assert any(e.startswith("voting_method:") for e in errors)
        assert any("extra_field" in e for e in errors)

    def test_size_mismatch(self):
        with pytest.raises(PlanValidationError, match="Invalid council plan") as exc_info:
            CompositionPlanner().validate_plan(_plan(council_size=5))

        assert any("does not match" in e for e in exc_info.value.errors)
