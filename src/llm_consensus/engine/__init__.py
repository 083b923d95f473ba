"""
Consensus Engine - deliberation logic for llm-consensus.

The engine coordinates:
1. Staged deliberation rounds (opinions, review, voting, correction, synthesis)
2. Social-choice voting over member positions
3. Multi-round refinement under iteration budgets, with compressed memory
4. Per-question council composition (meta-council)
5. Graceful degradation when members fail
"""

from llm_consensus.engine.degradation import (
    DegradationAction,
    DegradationDecision,
    DegradationPolicy,
    DegradationReport,
    FailureEvent,
)
from llm_consensus.engine.events import EventBus, EventSubscription
from llm_consensus.engine.iteration import IterationController
from llm_consensus.engine.memory import MemoryManager
from llm_consensus.engine.orchestrator import DynamicOrchestrator
from llm_consensus.engine.pipeline import RoundResult, StagePipeline
from llm_consensus.engine.planner import CompositionPlanner, PlannerConfig, QuestionAnalysis
from llm_consensus.engine.voting import VotingOptions, tally

__all__ = [
    # Pipeline and orchestration
    "DynamicOrchestrator",
    "RoundResult",
    "StagePipeline",
    # Planning
    "CompositionPlanner",
    "PlannerConfig",
    "QuestionAnalysis",
    # Iteration and memory
    "IterationController",
    "MemoryManager",
    # Voting
    "VotingOptions",
    "tally",
    # Events
    "EventBus",
    "EventSubscription",
    # Degradation
    "DegradationAction",
    "DegradationDecision",
    "DegradationPolicy",
    "DegradationReport",
    "FailureEvent",
]
