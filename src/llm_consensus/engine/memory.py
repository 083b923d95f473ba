"""
Cross-round memory for one deliberation session.

The manager keeps short-term (latest round) and working (cumulative) memory,
and can fold both into a compressed summary, via the model when an adapter
is available and with a deterministic template otherwise. The summary is
what later rounds see as "## Previous Context".
"""

from __future__ import annotations

import logging
import math
from typing import Any

from llm_consensus.prompts import MEMORY_COMPRESSION_PROMPT
from llm_consensus.protocol.types import (
    CompressedMemory,
    CouncilMemory,
    MemoryConfig,
    Refinement,
    StageResult,
)
from llm_consensus.providers.base import GenerateRequest, Message, ProviderAdapter

logger = logging.getLogger(__name__)

RESPONSE_SNIPPET_CHARS = 500
# length of the responses kept by compress()
COMPRESSED_SNIPPET_CHARS = 200
KEEP_RESPONSES = 5
KEEP_CONSENSUS_POINTS = 5
KEEP_REFINEMENTS = 3
COMPRESSION_TEMPERATURE = 0.3


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def estimate_text_tokens(text: str) -> int:
    """Rough token estimate: about four characters per token."""
    return math.ceil(len(text) / 4)


class MemoryManager:
    """Owns the CouncilMemory of one orchestrator run.

    Args:
        config: Memory policy.
        question: The question under deliberation.
        adapter: Optional adapter used for LLM-backed compression.
        model: Model or deployment name passed to the adapter.
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        question: str = "",
        adapter: ProviderAdapter | None = None,
        model: str | None = None,
    ) -> None:
        self._config = config or MemoryConfig()
        self._adapter = adapter
        self._model = model
        self._memory = CouncilMemory.for_question(question)

    @property
    def config(self) -> MemoryConfig:
        return self._config

    @property
    def memory(self) -> CouncilMemory:
        return self._memory

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def update_from_stage_result(self, result: StageResult, iteration: int) -> None:
        """Fold one round's final stage result into memory."""
        short_term = self._memory.short_term
        working = self._memory.working
        short_term.iteration = iteration

        voting = result.voting_result
        if voting is not None:
            short_term.current_confidence = voting.confidence_avg
            if self._config.persist_consensus and voting.winner:
                working.consensus_points.append(voting.winner)

        short_term.previous_responses.extend(
            _truncate(response.content, RESPONSE_SNIPPET_CHARS) for response in result.responses
        )

        confidence = f"{voting.confidence_avg:.2f}" if voting else "N/A"
        working.refinements.append(
            Refinement(
                iteration=iteration,
                what=voting.winner if voting and voting.winner else "No consensus reached",
                why=f"Stage: {result.stage.value}, Confidence: {confidence}",
            )
        )

    def add_insight(self, insight: str) -> None:
        insights = self._memory.short_term.key_insights
        if self._config.persist_key_insights and insight and insight not in insights:
            insights.append(insight)

    def add_open_question(self, question: str) -> None:
        questions = self._memory.working.open_questions
        if question and question not in questions:
            questions.append(question)

    def resolve_question(self, question: str) -> None:
        questions = self._memory.working.open_questions
        if question in questions:
            questions.remove(question)

    def add_disagreement(self, disagreement: str) -> None:
        disagreements = self._memory.working.disagreements
        if not self._config.persist_disagreements or not disagreement:
            return
        if disagreement not in disagreements:
            disagreements.append(disagreement)

    # ------------------------------------------------------------------
    # Compression
    # ------------------------------------------------------------------

    async def compress(self) -> str:
        """Replace detailed memory with a summary and return the summary.

        Never raises: model failures fall back to the template summary. The
        serialized memory is never larger afterwards than it was before.
        """
        size_before = len(self._memory.model_dump_json())

        summary = ""
        if self._config.compression_enabled and self._adapter is not None:
            summary = await self._summarize_with_model(self._adapter)
        if not summary:
            summary = self._template_summary()

        self._prune()
        self._memory.compressed = CompressedMemory(
            summary=summary, token_count=estimate_text_tokens(summary)
        )
        self._fit_summary(size_before)

        logger.debug(
            "Memory compressed: %d -> %d chars", size_before, len(self._memory.model_dump_json())
        )
        return self._memory.compressed.summary if self._memory.compressed else ""

    async def _summarize_with_model(self, adapter: ProviderAdapter) -> str:
        max_tokens = self._config.max_context_tokens // 2
        prompt = MEMORY_COMPRESSION_PROMPT.format(
            max_tokens=max_tokens, deliberation=self._deliberation_text()
        )
        request = GenerateRequest(
            model=self._model,
            messages=[Message(role="user", content=prompt)],
            max_tokens=max_tokens,
            temperature=COMPRESSION_TEMPERATURE,
        )
        try:
            response = await adapter.generate(request)
        except Exception as e:
            logger.warning("LLM memory compression failed, using template summary: %s", e)
            return ""
        text = (response.text or "").strip()
        if not text:
            logger.warning("LLM memory compression returned no text, using template summary")
        return text

    def _fit_summary(self, size_limit: int) -> None:
        compressed = self._memory.compressed
        while compressed is not None:
            excess = len(self._memory.model_dump_json()) - size_limit
            if excess <= 0:
                return
            summary = compressed.summary[: max(0, len(compressed.summary) - excess)].rstrip()
            if not summary:
                self._memory.compressed = None
                return
            compressed = CompressedMemory(
                summary=summary,
                token_count=estimate_text_tokens(summary),
                last_updated=compressed.last_updated,
            )
            self._memory.compressed = compressed

    def _prune(self) -> None:
        short_term = self._memory.short_term
        working = self._memory.working
        short_term.previous_responses = [
            _truncate(r, COMPRESSED_SNIPPET_CHARS)
            for r in short_term.previous_responses[-KEEP_RESPONSES:]
        ]
        working.consensus_points = working.consensus_points[-KEEP_CONSENSUS_POINTS:]
        working.refinements = working.refinements[-KEEP_REFINEMENTS:]

    def _deliberation_text(self) -> str:
        short_term = self._memory.short_term
        working = self._memory.working
        parts = [
            f"Question: {short_term.question}",
            f"Current Iteration: {short_term.iteration}",
            f"Confidence: {short_term.current_confidence:.2f}",
        ]
        if working.consensus_points:
            points = "\n".join(f"{i}. {p}" for i, p in enumerate(working.consensus_points, 1))
            parts.append(f"Consensus Points:\n{points}")
        if working.disagreements:
            parts.append("Disagreements:\n" + "\n".join(f"- {d}" for d in working.disagreements))
        if short_term.key_insights:
            parts.append("Key Insights:\n" + "\n".join(f"- {i}" for i in short_term.key_insights))
        if working.refinements:
            parts.append(
                "Refinements:\n"
                + "\n".join(f"- Iteration {r.iteration}: {r.what}" for r in working.refinements)
            )
        return "\n\n".join(parts)

    def _template_summary(self) -> str:
        short_term = self._memory.short_term
        working = self._memory.working
        parts = []
        if working.consensus_points:
            parts.append(f"Latest consensus: {_truncate(working.consensus_points[-1], 200)}")
        if short_term.key_insights:
            parts.append(f"Key insights: {'; '.join(short_term.key_insights[-3:])}")
        if working.open_questions:
            parts.append(f"Open questions: {'; '.join(working.open_questions[-2:])}")
        parts.append(f"Current confidence: {short_term.current_confidence:.2f}")
        return "\n\n".join(parts)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_context_string(self) -> str:
        """Context block injected into the next round's prompts. Never empty."""
        compressed = self._memory.compressed
        if compressed is not None and compressed.summary:
            return f"## Previous Context\n\n{compressed.summary}"
        return self._template_summary()

    def estimate_tokens(self) -> int:
        return estimate_text_tokens(self._memory.model_dump_json())

    def is_over_limit(self) -> bool:
        return self.estimate_tokens() > self._config.max_context_tokens

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_responses": len(self._memory.short_term.previous_responses),
            "consensus_points": len(self._memory.working.consensus_points),
            "insights": len(self._memory.short_term.key_insights),
            "open_questions": len(self._memory.working.open_questions),
            "estimated_tokens": self.estimate_tokens(),
            "is_compressed": self._memory.compressed is not None,
        }

    def reset(self, question: str | None = None) -> None:
        """Start over with empty memory (keeping the question unless given)."""
        if question is None:
            question = self._memory.short_term.question
        self._memory = CouncilMemory.for_question(question)


__all__ = ["MemoryManager", "estimate_text_tokens"]
