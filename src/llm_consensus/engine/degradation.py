"""
Member failure handling for llm-consensus.

A failed member call never aborts a round on its own: the member simply
contributes nothing to that stage. The only unrecoverable case is an
opinions stage in which every invoked member failed.

Failures are classified with providers.base.classify_error so the session
report can tell timeouts from quota or auth problems.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from llm_consensus.protocol.types import PipelineStage
from llm_consensus.providers.base import ErrorType, classify_error

logger = logging.getLogger(__name__)


class DegradationAction(str, Enum):
    """What the pipeline does after a member failure."""

    CONTINUE = "continue"  # Proceed without this member
    ABORT = "abort"  # Fail the session


@dataclass
class FailureEvent:
    """Record of one failed member call."""

    member_id: str
    member_name: str
    stage: PipelineStage
    error_type: ErrorType
    error_message: str
    action_taken: DegradationAction
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "member_id": self.member_id,
            "member_name": self.member_name,
            "stage": self.stage.value,
            "error_type": self.error_type.value,
            "error_message": self.error_message[:200],
            "action_taken": self.action_taken.value,
            "timestamp": self.timestamp,
        }


@dataclass
class DegradationDecision:
    """Decision made by the degradation policy."""

    action: DegradationAction
    reason: str


@dataclass
class DegradationReport:
    """Summary of member failures during one session."""

    failures: list[FailureEvent] = field(default_factory=list)
    members_failed: list[str] = field(default_factory=list)
    aborted: bool = False

    def add_failure(self, event: FailureEvent) -> None:
        """Record a failure event."""
        self.failures.append(event)
        if event.member_name not in self.members_failed:
            self.members_failed.append(event.member_name)
        if event.action_taken == DegradationAction.ABORT:
            self.aborted = True

    def count_by_type(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for failure in self.failures:
            counts[failure.error_type.value] = counts.get(failure.error_type.value, 0) + 1
        return counts

    def to_summary(self) -> str:
        """Generate human-readable summary."""
        if not self.failures:
            return "No member failures"

        lines = [f"Degradation: {len(self.failures)} failure(s)"]
        lines.append(f"  Members: {', '.join(self.members_failed)}")
        kinds = ", ".join(f"{k}={v}" for k, v in sorted(self.count_by_type().items()))
        lines.append(f"  Types: {kinds}")
        if self.aborted:
            lines.append("  Status: ABORTED")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "failures": [f.to_dict() for f in self.failures],
            "members_failed": self.members_failed,
            "aborted": self.aborted,
        }


def describe_error(error: BaseException) -> tuple[ErrorType, str]:
    """Classify an exception raised by a member call."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorType.TIMEOUT, str(error) or "Member call timed out"
    if isinstance(error, asyncio.CancelledError):
        return ErrorType.CANCELLED, "Member call cancelled"
    text = str(error) or type(error).__name__
    return classify_error(text), text


class DegradationPolicy:
    """Policy engine for member failures within one session.

    Members are never retried; self-correction adds new members instead.
    """

    def __init__(self) -> None:
        self._report = DegradationReport()

    def reset(self) -> None:
        """Reset state for a new session."""
        self._report = DegradationReport()

    @property
    def report(self) -> DegradationReport:
        return self._report

    def record(
        self,
        member_id: str,
        member_name: str,
        stage: PipelineStage,
        error: BaseException,
    ) -> FailureEvent:
        """Record one failed call; the member is skipped for this stage."""
        error_type, message = describe_error(error)
        event = FailureEvent(
            member_id=member_id,
            member_name=member_name,
            stage=stage,
            error_type=error_type,
            error_message=message,
            action_taken=DegradationAction.CONTINUE,
        )
        self._report.add_failure(event)
        logger.warning(
            "Member %s failed in %s: %s (%s)",
            member_name,
            stage.value,
            error_type.value,
            message[:200],
        )
        return event

    def decide(self, stage: PipelineStage, invoked: int, succeeded: int) -> DegradationDecision:
        """Decide whether a stage's outcome still allows the session to go on.

        Only a total failure of the opinions stage aborts; every other stage
        continues with whoever responded.

        Args:
            stage: Stage that just settled.
            invoked: Members invoked in the stage.
            succeeded: Members that returned a response.
        """
        if stage == PipelineStage.OPINIONS and invoked > 0 and succeeded == 0:
            self._report.aborted = True
            return DegradationDecision(
                action=DegradationAction.ABORT,
                reason=f"All {invoked} member(s) failed in {stage.value}",
            )
        if stage == PipelineStage.CORRECTION and invoked > 0 and succeeded == 0:
            return DegradationDecision(
                action=DegradationAction.CONTINUE,
                reason="All backup members failed; keeping the original opinions",
            )
        if succeeded < invoked:
            return DegradationDecision(
                action=DegradationAction.CONTINUE,
                reason=f"Continuing with {succeeded}/{invoked} member(s) in {stage.value}",
            )
        return DegradationDecision(
            action=DegradationAction.CONTINUE, reason="All members responded"
        )


__all__ = [
    "DegradationAction",
    "DegradationDecision",
    "DegradationPolicy",
    "DegradationReport",
    "FailureEvent",
    "describe_error",
]
