"""Dynamic orchestrator: plan a council, then deliberate under iteration control.

One :meth:`DynamicOrchestrator.run` call:

1) plans the council for the question (or takes a ready DynamicCouncilConfig)
2) builds members and a validated SessionConfig
3) runs rounds through the :class:`StagePipeline` inside one session scope,
   asking the :class:`IterationController` after each round whether to go on
4) carries memory between rounds, compressing it when it grows too large

Iteration state and memory are created per run and never shared.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from llm_consensus.config.models import (
    ModelConfig,
    create_member,
    get_planner_model,
    members_from_specs,
)
from llm_consensus.config.presets import get_preset
from llm_consensus.engine.events import EventBus
from llm_consensus.engine.iteration import IterationController
from llm_consensus.engine.memory import MemoryManager
from llm_consensus.engine.pipeline import RoundResult, StagePipeline
from llm_consensus.engine.planner import CompositionPlanner
from llm_consensus.engine.voting import normalize_position
from llm_consensus.prompts import STRATEGY_HINTS
from llm_consensus.protocol.types import (
    CouncilMember,
    CouncilRole,
    DynamicCouncilConfig,
    EscalationConfig,
    IterationAction,
    IterationDecision,
    IterationStrategy,
    Session,
    SessionConfig,
    TraceEventType,
    build_dynamic_config,
    build_session_config,
)
from llm_consensus.providers.base import ProviderAdapter
from llm_consensus.providers.registry import AdapterFactory
from llm_consensus.storage.base import SessionRepository

logger = logging.getLogger(__name__)

INSIGHT_CHARS = 300


class DynamicOrchestrator:
    """Plans a council per question and runs it for one or more rounds.

    Args:
        planner: Composition planner. A static-only planner is used when omitted.
        pipeline: Stage pipeline. Built from ``events``, ``repository`` and
            ``adapter_factory`` when omitted.
        events: Event bus for a pipeline built here.
        repository: Session repository for a pipeline built here.
        adapter_factory: Member-to-adapter mapping for a pipeline built here.
        summarizer: Adapter used for LLM-backed memory compression. Template
            summaries are used without one.

    Example:
        ```python
        orchestrator = DynamicOrchestrator(planner=CompositionPlanner(adapter=adapter))
        session = await orchestrator.run("Should we shard the orders table?")
        print(session.final_answer, session.rounds)
        ```
    """

    def __init__(
        self,
        planner: CompositionPlanner | None = None,
        pipeline: StagePipeline | None = None,
        events: EventBus | None = None,
        repository: SessionRepository | None = None,
        adapter_factory: AdapterFactory | None = None,
        summarizer: ProviderAdapter | None = None,
    ) -> None:
        self._planner = planner or CompositionPlanner()
        self._pipeline = pipeline or StagePipeline(
            events=events, adapter_factory=adapter_factory, repository=repository
        )
        self._summarizer = summarizer

    @property
    def planner(self) -> CompositionPlanner:
        return self._planner

    @property
    def pipeline(self) -> StagePipeline:
        return self._pipeline

    @property
    def events(self) -> EventBus:
        return self._pipeline.events

    def cancel(self, session_id: str) -> bool:
        return self._pipeline.cancel(session_id)

    async def aclose(self) -> None:
        await self._pipeline.aclose()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(
        self,
        question: str,
        *,
        config: DynamicCouncilConfig | Mapping[str, Any] | None = None,
        session_config: SessionConfig | Mapping[str, Any] | None = None,
    ) -> Session:
        """Plan (unless ``config`` is given) and deliberate on ``question``.

        Raises:
            ConfigurationError: Invalid council or session configuration,
                raised before the session starts.
        """
        if config is None:
            plan = await self._planner.plan(question)
        else:
            plan = build_dynamic_config(config).unwrap()
        logger.info(
            "Council planned (%s): %d members, %s voting, iterations %s",
            plan.meta.planning_mode.value,
            plan.council.size,
            plan.council.voting.method.value,
            "on" if plan.iteration.enabled else "off",
        )

        members = members_from_specs(plan.council.members)
        settings = self.build_session_config(plan, session_config)
        session = self._pipeline.create_session(question, members, settings)
        session.dynamic_config = plan

        controller = IterationController(plan.iteration)
        controller.set_question(question)
        memory = MemoryManager(
            plan.memory,
            question,
            adapter=self._summarizer,
            model=ModelConfig.get_instance().get_backend(get_planner_model()).model,
        )

        async with self._pipeline.session_scope(session):
            await self._deliberate(session, plan, controller, memory)
        return session

    @staticmethod
    def build_session_config(
        plan: DynamicCouncilConfig,
        overrides: SessionConfig | Mapping[str, Any] | None = None,
    ) -> SessionConfig:
        """Derive the SessionConfig of a planned council.

        Preset session settings apply first, then the planned council, then
        ``overrides``.

        Raises:
            ConfigurationError: If the result is invalid.
        """
        spec = plan.council
        data: dict[str, Any] = {}
        if plan.meta.preset:
            data.update(get_preset(plan.meta.preset).session)
        data.update(
            council_size=spec.size,
            voting_method=spec.voting.method,
            backup_members_count=sum(1 for m in spec.members if m.role == CouncilRole.BACKUP),
        )
        if spec.voting.threshold is not None:
            data["voting_threshold"] = spec.voting.threshold
        if isinstance(overrides, SessionConfig):
            data.update(overrides.model_dump(exclude_unset=True))
        elif overrides:
            data.update(overrides)
        return build_session_config(data).unwrap()

    async def _deliberate(
        self,
        session: Session,
        plan: DynamicCouncilConfig,
        controller: IterationController,
        memory: MemoryManager,
    ) -> None:
        context_prompt = ""
        while True:
            result = await self._pipeline.run_round(session, context_prompt)
            confidence = controller.record_iteration(result.voting, result.total_tokens)
            logger.info(
                "Session %s round %d finished (confidence %.2f)",
                session.id,
                result.round,
                confidence,
            )

            if plan.memory.enabled:
                memory.update_from_stage_result(result.voting, result.round)
            self._absorb(result, controller, memory if plan.memory.enabled else None)
            if plan.memory.enabled and plan.memory.compression_enabled and memory.is_over_limit():
                await self._compress(session, memory)

            if not plan.iteration.enabled:
                return

            decision = controller.should_continue()
            session.iteration_decisions.append(decision)
            self._pipeline.emit(
                session,
                TraceEventType.ITERATION_DECISION,
                data={
                    "iteration": decision.iteration,
                    "action": decision.action.value,
                    "reason": decision.reason,
                    "confidence": decision.confidence,
                },
            )
            if not decision.should_continue:
                logger.info(
                    "Session %s: stopping after round %d (%s)",
                    session.id,
                    result.round,
                    decision.reason,
                )
                return

            if decision.action == IterationAction.ESCALATE:
                self._escalate(session, plan.iteration.escalation)
            context_prompt = self._next_context(plan, controller, memory, decision)

    # ------------------------------------------------------------------
    # Between rounds
    # ------------------------------------------------------------------

    @staticmethod
    def _absorb(
        result: RoundResult, controller: IterationController, memory: MemoryManager | None
    ) -> None:
        """Turn a round's voting result into insights, disagreements and open questions."""
        voting = result.voting_result
        if voting is None:
            return

        if voting.winner:
            winner_key = normalize_position(voting.winner)
            for vote in voting.votes:
                if vote.reasoning and normalize_position(vote.position) == winner_key:
                    insight = f"{voting.winner}: {vote.reasoning}"[:INSIGHT_CHARS]
                    controller.add_insight(insight)
                    if memory is not None:
                        memory.add_insight(insight)
                    break

        for position, count in voting.breakdown.items():
            if voting.winner and normalize_position(position) == normalize_position(voting.winner):
                continue
            disagreement = f"{position} ({count} vote{'s' if count != 1 else ''})"
            controller.add_disagreement(disagreement)
            if memory is not None:
                memory.add_disagreement(disagreement)

        if not voting.consensus_reached:
            question = (
                f"Round {result.round} ended without consensus "
                f"(confidence {voting.confidence_avg:.2f}); which position holds up?"
            )
            controller.add_open_question(question)
            if memory is not None:
                memory.add_open_question(question)

    async def _compress(self, session: Session, memory: MemoryManager) -> None:
        before = memory.estimate_tokens()
        await memory.compress()
        after = memory.estimate_tokens()
        logger.debug("Session %s: memory compressed %d -> %d tokens", session.id, before, after)
        self._pipeline.emit(
            session,
            TraceEventType.MEMORY_COMPRESSED,
            data={"tokens_before": before, "tokens_after": after},
        )

    def _escalate(self, session: Session, escalation: EscalationConfig) -> list[CouncilMember]:
        """Grow the council with catalogue models, reasoning models first."""
        current = sum(1 for m in session.members if m.is_active and not m.is_backup)
        room = min(escalation.add_members_per_iteration, escalation.max_total_members - current)
        if room <= 0:
            logger.info("Session %s: council already at %d members", session.id, current)
            return []

        models = ModelConfig.get_instance()
        candidates = models.known_models()
        if escalation.prefer_reasoning:
            reasoning = models.reasoning_models()
            candidates = reasoning + [k for k in candidates if k not in reasoning]
        in_use = {m.backend.model for m in session.members}
        # unused models first, then repeats
        candidates.sort(key=lambda k: models.get_backend(k).model in in_use)

        added = [
            create_member(
                key,
                CouncilRole.OPINION_GIVER,
                name=f"{models.get_backend(key).name} (escalation {session.rounds})",
            )
            for key in candidates[:room]
        ]
        self._pipeline.add_members(session, added)
        self._pipeline.emit(
            session,
            TraceEventType.MEMBERS_ESCALATED,
            data={
                "member_ids": [m.id for m in added],
                "models": [m.backend.model for m in added],
                "council_size": current + len(added),
            },
        )
        logger.info("Session %s: escalated with %d members", session.id, len(added))
        return added

    @staticmethod
    def _next_context(
        plan: DynamicCouncilConfig,
        controller: IterationController,
        memory: MemoryManager,
        decision: IterationDecision,
    ) -> str:
        strategy = plan.iteration.strategy
        if decision.action == IterationAction.ESCALATE:
            strategy = IterationStrategy.ESCALATE
        parts = [controller.get_context_prompt()]
        if plan.memory.enabled:
            parts.append(memory.get_context_string())
        parts.append(f"### Strategy\n{STRATEGY_HINTS[strategy]}")
        return "\n\n".join(parts)


__all__ = ["DynamicOrchestrator"]
