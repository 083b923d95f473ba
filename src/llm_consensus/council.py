"""
Council - Main facade class for llm-consensus.

Provides a simple interface for running a council of models on a question,
either with a named preset or with a council planned per question.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from llm_consensus.config.models import ModelConfig
from llm_consensus.config.presets import DEFAULT_PRESET, build_preset, get_preset
from llm_consensus.engine.events import EventBus, EventSubscription
from llm_consensus.engine.orchestrator import DynamicOrchestrator
from llm_consensus.engine.pipeline import StagePipeline
from llm_consensus.engine.planner import CompositionPlanner, PlannerConfig
from llm_consensus.protocol.types import (
    CouncilMember,
    DynamicCouncilConfig,
    PlanningMode,
    Session,
    SessionConfig,
    build_session_config,
)
from llm_consensus.providers.base import DoctorResult, ProviderAdapter
from llm_consensus.providers.registry import AdapterFactory, get_registry
from llm_consensus.storage.base import SessionRepository

logger = logging.getLogger(__name__)


class Council:
    """Council of models deliberating on a question.

    With ``preset`` (or explicit ``members``) every question goes to the same
    roster for a single round. Without either, the council is planned per
    question and may run several rounds.

    Example:
        ```python
        async with Council(preset="standard") as council:
            session = await council.run("Is Rust a good fit for our CLI?")
            print(session.final_answer, session.final_confidence)
        ```
    """

    def __init__(
        self,
        preset: str | None = None,
        *,
        members: Sequence[CouncilMember] | None = None,
        session_config: SessionConfig | Mapping[str, Any] | None = None,
        planner_config: PlannerConfig | None = None,
        planner_adapter: ProviderAdapter | None = None,
        adapter_factory: AdapterFactory | None = None,
        repository: SessionRepository | None = None,
        events: EventBus | None = None,
    ) -> None:
        """Initialize the Council.

        Args:
            preset: Preset name (small, standard, reasoning, diverse).
            members: Explicit roster; takes precedence over ``preset``.
            session_config: Session settings, applied over preset defaults.
            planner_config: Planner settings for dynamic councils.
            planner_adapter: Adapter for LLM planning and memory compression.
                Resolved from the provider registry when the planner mode
                needs one.
            adapter_factory: Member-to-adapter mapping; defaults to the registry.
            repository: Optional session repository.
            events: Event bus; a private one is created when omitted.

        Raises:
            ValueError: Unknown preset.
        """
        if preset is not None:
            get_preset(preset)
        self._preset = preset
        self._members = list(members) if members is not None else None
        self._session_config = session_config
        self._pipeline = StagePipeline(
            events=events, adapter_factory=adapter_factory, repository=repository
        )

        planner_config = planner_config or PlannerConfig()
        if planner_adapter is None and planner_config.mode != PlanningMode.STATIC:
            planner_adapter = self._resolve_planner_adapter()
        self._planner_adapter = planner_adapter
        self._planner = CompositionPlanner(planner_config, adapter=planner_adapter)
        self._orchestrator = DynamicOrchestrator(
            planner=self._planner, pipeline=self._pipeline, summarizer=planner_adapter
        )

    @staticmethod
    def _resolve_planner_adapter() -> ProviderAdapter | None:
        provider = ModelConfig.get_instance().provider
        try:
            return get_registry().get_provider(provider)
        except KeyError:
            logger.warning("Provider '%s' is not registered; planning statically", provider)
            return None

    async def __aenter__(self) -> Council:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close adapters opened by this council."""
        await self._pipeline.aclose()
        if self._planner_adapter is not None:
            await self._planner_adapter.aclose()

    @property
    def is_dynamic(self) -> bool:
        return self._preset is None and self._members is None

    @property
    def events(self) -> EventBus:
        return self._pipeline.events

    @property
    def planner(self) -> CompositionPlanner:
        return self._planner

    def subscribe(self, session_id: str | None = None) -> EventSubscription:
        """Subscribe to trace events (of one session, or of all sessions)."""
        return self._pipeline.events.subscribe(session_id)

    def cancel(self, session_id: str) -> bool:
        return self._pipeline.cancel(session_id)

    async def plan(self, question: str) -> DynamicCouncilConfig:
        """Plan a council for ``question`` without running it."""
        return await self._planner.plan(question)

    async def run(
        self,
        question: str,
        *,
        config: DynamicCouncilConfig | Mapping[str, Any] | None = None,
    ) -> Session:
        """Deliberate on ``question`` and return the finished session.

        Args:
            question: The question to answer.
            config: Ready-made dynamic configuration; skips planning.

        Raises:
            ConfigurationError: Invalid configuration (before any model call).
        """
        if config is not None or self.is_dynamic:
            return await self._orchestrator.run(
                question, config=config, session_config=self._session_config
            )
        members, settings = self._static_roster()
        return await self._pipeline.run(question, members, settings)

    def _static_roster(self) -> tuple[list[CouncilMember], SessionConfig]:
        overrides = self._session_config
        if isinstance(overrides, SessionConfig):
            overrides = overrides.model_dump(exclude_unset=True)
        if self._members is not None:
            seated = sum(1 for m in self._members if m.is_active and not m.is_backup)
            data = {"council_size": seated, **dict(overrides or {})}
            return list(self._members), build_session_config(data).unwrap()
        return build_preset(self._preset or DEFAULT_PRESET, **dict(overrides or {}))

    async def doctor(self) -> dict[str, DoctorResult]:
        """Check availability of the configured provider.

        Returns:
            Dict mapping provider names to their health status.
        """
        provider = ModelConfig.get_instance().provider
        results: dict[str, DoctorResult] = {}
        try:
            adapter = get_registry().get_provider(provider)
        except KeyError as e:
            results[provider] = DoctorResult(ok=False, message=str(e))
            return results
        try:
            results[provider] = await adapter.doctor()
        finally:
            await adapter.aclose()
        return results
