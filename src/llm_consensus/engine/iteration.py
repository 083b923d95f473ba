"""
Iteration controller for multi-round refinement.

Decides after each round whether the council should run another one,
under hard budgets (rounds, tokens, wall time) and soft signals
(convergence, stagnation). It also builds the context handed to the next
round's prompts.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from llm_consensus.prompts import iteration_context_prompt
from llm_consensus.protocol.types import (
    CouncilMemory,
    IterationAction,
    IterationConfig,
    IterationContext,
    IterationDecision,
    IterationState,
    IterationStrategy,
    Refinement,
    StageResult,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.5
STAGNATION_DELTA = 0.02
RESPONSE_MEMORY_CHARS = 1000


class IterationController:
    """Continue/stop/escalate decisions for one orchestrator run.

    The first round always runs; :meth:`should_continue` only gates the
    rounds after it. Each continue verdict schedules one more round, so
    with ``max_iterations=3`` the third call stops even if no round was
    recorded in between.

    Args:
        config: Budgets and thresholds.
        clock: Monotonic clock in seconds, injectable for tests.
    """

    def __init__(
        self,
        config: IterationConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or IterationConfig()
        self._clock = clock
        self._state = self._new_state()
        self._memory = CouncilMemory()

    def _new_state(self) -> IterationState:
        return IterationState(start_time=self._clock())

    @property
    def config(self) -> IterationConfig:
        return self._config

    @property
    def state(self) -> IterationState:
        return self._state

    @property
    def memory(self) -> CouncilMemory:
        return self._memory

    def set_question(self, question: str) -> None:
        self._memory.short_term.question = question

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def should_continue(self) -> IterationDecision:
        """Decide whether another round may follow those already run or scheduled."""
        state = self._state
        config = self._config
        state.elapsed_ms = (self._clock() - state.start_time) * 1000
        scheduled = max(state.current_iteration, state.total_iterations, 1)
        last_confidence = state.confidence_history[-1] if state.confidence_history else 0.0

        if scheduled >= config.max_iterations:
            return self._decide(
                IterationAction.STOP, f"Max iterations reached ({config.max_iterations})"
            )
        if state.tokens_used >= config.max_total_tokens:
            return self._decide(
                IterationAction.STOP, f"Token limit reached ({config.max_total_tokens})"
            )
        if state.elapsed_ms >= config.max_duration_ms:
            return self._decide(
                IterationAction.STOP, f"Time limit reached ({config.max_duration_ms}ms)"
            )
        if state.confidence_history and last_confidence >= config.convergence_threshold:
            return self._decide(
                IterationAction.STOP,
                f"Convergence reached (confidence: {last_confidence:.2f} "
                f">= {config.convergence_threshold})",
            )

        if state.improvement_history and state.current_iteration > 1:
            last_improvement = state.improvement_history[-1]
            if last_improvement < config.improvement_threshold:
                if config.strategy == IterationStrategy.ESCALATE and not self._just_escalated():
                    return self._schedule(
                        scheduled,
                        IterationAction.ESCALATE,
                        f"Escalate: improvement stalled ({last_improvement:.3f} "
                        f"< {config.improvement_threshold})",
                    )
                return self._decide(
                    IterationAction.STOP,
                    f"Insufficient improvement ({last_improvement:.3f} "
                    f"< {config.improvement_threshold})",
                )

        action = self._determine_action()
        return self._schedule(scheduled, action, f"Continue: {action.value}")

    def _determine_action(self) -> IterationAction:
        if self._config.strategy != IterationStrategy.ESCALATE:
            return IterationAction.CONTINUE
        recent = self._state.confidence_history[-2:]
        if len(recent) == 2 and abs(recent[1] - recent[0]) < STAGNATION_DELTA:
            return IterationAction.ESCALATE
        return IterationAction.CONTINUE

    def _just_escalated(self) -> bool:
        decisions = self._state.decisions
        return bool(decisions) and decisions[-1].action == IterationAction.ESCALATE

    def _schedule(self, scheduled: int, action: IterationAction, reason: str) -> IterationDecision:
        self._state.total_iterations = scheduled + 1
        return self._decide(action, reason)

    def _decide(self, action: IterationAction, reason: str) -> IterationDecision:
        state = self._state
        decision = IterationDecision(
            iteration=state.current_iteration,
            action=action,
            reason=reason,
            confidence=state.confidence_history[-1] if state.confidence_history else 0.0,
            tokens_used=state.tokens_used,
            duration_ms=state.elapsed_ms,
        )
        state.decisions.append(decision)
        logger.debug("Iteration decision: %s (%s)", action.value, reason)
        return decision

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_iteration(self, result: StageResult, tokens_used: int) -> float:
        """Record a finished round and return the confidence it reached."""
        state = self._state
        if result.voting_result is not None:
            confidence = result.voting_result.confidence_avg
        else:
            confidences = [r.confidence for r in result.responses if r.confidence is not None]
            confidence = sum(confidences) / len(confidences) if confidences else DEFAULT_CONFIDENCE

        previous = state.confidence_history[-1] if state.confidence_history else 0.0
        state.current_iteration += 1
        state.total_iterations = max(state.total_iterations, state.current_iteration)
        state.tokens_used += tokens_used
        state.elapsed_ms = (self._clock() - state.start_time) * 1000
        state.confidence_history.append(confidence)
        state.improvement_history.append(confidence - previous)

        short_term = self._memory.short_term
        working = self._memory.working
        short_term.iteration = state.current_iteration
        short_term.current_confidence = confidence

        winner = result.voting_result.winner if result.voting_result else None
        if winner:
            working.consensus_points.append(winner)
        for response in result.responses:
            short_term.previous_responses.append(response.content[:RESPONSE_MEMORY_CHARS])
        working.refinements.append(
            Refinement(
                iteration=state.current_iteration,
                what=winner or "No consensus",
                why=f"Confidence: {confidence:.2f}",
            )
        )
        return confidence

    def add_open_question(self, question: str) -> None:
        if question not in self._memory.working.open_questions:
            self._memory.working.open_questions.append(question)

    def add_insight(self, insight: str) -> None:
        if insight not in self._memory.short_term.key_insights:
            self._memory.short_term.key_insights.append(insight)

    def add_disagreement(self, disagreement: str) -> None:
        if disagreement not in self._memory.working.disagreements:
            self._memory.working.disagreements.append(disagreement)

    # ------------------------------------------------------------------
    # Context for the next round
    # ------------------------------------------------------------------

    def get_context(self) -> IterationContext:
        working = self._memory.working
        return IterationContext(
            iteration=self._state.current_iteration + 1,
            previous_summary=self._previous_summary(),
            key_decisions=working.consensus_points[-5:],
            open_issues=working.open_questions[-5:],
            confidence_trend=list(self._state.confidence_history),
            instructions=self._instructions(),
        )

    def get_context_prompt(self) -> str:
        return iteration_context_prompt(self.get_context())

    def _previous_summary(self) -> str:
        if self._state.current_iteration == 0:
            return "This is the first iteration. No previous work."

        parts = []
        consensus = self._memory.working.consensus_points
        if consensus:
            parts.append(f"Previous consensus: {'; '.join(consensus[-3:])}")
        history = self._state.confidence_history
        if history:
            parts.append("Confidence trend: " + " -> ".join(f"{c:.2f}" for c in history[-3:]))
        insights = self._memory.short_term.key_insights
        if insights:
            parts.append(f"Key insights: {'; '.join(insights[-3:])}")
        return "\n\n".join(parts)

    def _instructions(self) -> str:
        state = self._state
        last_confidence = state.confidence_history[-1] if state.confidence_history else 0.0
        last_improvement = state.improvement_history[-1] if state.improvement_history else 0.0

        if last_confidence < 0.5:
            lines = ["Focus on building stronger arguments and gathering more evidence."]
        elif last_confidence < 0.7:
            lines = ["Confidence is moderate. Look for additional supporting points."]
        else:
            lines = ["Confidence is good. Focus on refining and strengthening the answer."]

        if last_improvement < STAGNATION_DELTA and state.current_iteration > 1:
            lines.append("Progress has slowed. Consider alternative approaches or perspectives.")

        working = self._memory.working
        if working.open_questions:
            lines.append(
                f"Address these open questions: {', '.join(working.open_questions[-2:])}"
            )
        if working.disagreements:
            lines.append(
                "Resolve or acknowledge these disagreements: "
                f"{', '.join(working.disagreements[-2:])}"
            )
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Budgets
    # ------------------------------------------------------------------

    @property
    def decisions(self) -> list[IterationDecision]:
        return list(self._state.decisions)

    def has_iterated(self) -> bool:
        return self._state.current_iteration > 0

    def remaining_iterations(self) -> int:
        return max(0, self._config.max_iterations - self._state.current_iteration)

    def remaining_tokens(self) -> int:
        return max(0, self._config.max_total_tokens - self._state.tokens_used)

    def remaining_time_ms(self) -> float:
        elapsed = (self._clock() - self._state.start_time) * 1000
        return max(0.0, self._config.max_duration_ms - elapsed)

    def reset(self) -> None:
        """Forget all rounds and restart the clock."""
        question = self._memory.short_term.question
        self._state = self._new_state()
        self._memory = CouncilMemory.for_question(question)


__all__ = ["IterationController"]
