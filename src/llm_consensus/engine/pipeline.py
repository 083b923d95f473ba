"""
Stage pipeline for llm-consensus.

Runs one deliberation round over a council:

1) Opinions from every opinion-stage member (parallel via :func:`asyncio.gather`)
2) Review of those opinions by reviewer-type members
3) Voting, reduced by the configured social-choice method
4) Self-correction: backups join and the council re-votes while confidence is low
5) Synthesis of the final answer

The session lifecycle (start/end events, status, totals, persistence and
cancellation) is owned by :meth:`StagePipeline.session_scope`, so a caller
can run several rounds inside one session.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import AsyncIterator, Callable, Coroutine, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from llm_consensus.engine.degradation import DegradationAction, DegradationPolicy
from llm_consensus.engine.events import EventBus
from llm_consensus.engine.parsing import extract_confidence, parse_vote
from llm_consensus.engine.voting import VotingOptions, member_weights, tally
from llm_consensus.exceptions import (
    ConfigurationError,
    CouncilError,
    CouncilUnavailableError,
    SessionCancelledError,
)
from llm_consensus.prompts import (
    build_system_prompt,
    correction_prompt,
    eligible,
    opinion_prompt,
    review_prompt,
    synthesis_prompt,
    vote_prompt,
)
from llm_consensus.protocol.types import (
    CouncilMember,
    CouncilRole,
    MemberResponse,
    PipelineStage,
    Session,
    SessionConfig,
    SessionStatus,
    StageResult,
    TokenUsage,
    TraceEvent,
    TraceEventType,
    Vote,
    VotingResult,
    build_session_config,
    utcnow,
)
from llm_consensus.providers.base import GenerateRequest, Message, ReasoningConfig
from llm_consensus.providers.registry import AdapterCache, AdapterFactory, ProviderRegistry
from llm_consensus.storage.base import SessionRepository

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200


@dataclass
class _RunContext:
    """Per-session state kept only while the session scope is open."""

    session: Session
    policy: DegradationPolicy = field(default_factory=DegradationPolicy)
    root_id: str | None = None
    stage_id: str | None = None
    cancelled: bool = False
    tasks: set[asyncio.Task[Any]] = field(default_factory=set)
    started: float = field(default_factory=time.monotonic)


@dataclass
class RoundResult:
    """Stages produced by one round, in execution order."""

    round: int
    opinions: list[MemberResponse]
    reviews: list[MemberResponse]
    voting: StageResult
    synthesis: StageResult | None = None
    stages: list[StageResult] = field(default_factory=list)

    @property
    def voting_result(self) -> VotingResult | None:
        return self.voting.voting_result

    @property
    def total_tokens(self) -> int:
        return sum(stage.total_tokens for stage in self.stages)


class StagePipeline:
    """Runs deliberation rounds and owns the session lifecycle.

    Args:
        events: Bus that receives every trace event. A private bus is
            created when omitted.
        adapter_factory: Callable mapping a member to its adapter. Defaults
            to a per-provider cache over the provider registry.
        repository: Optional session repository; ``create`` is called once
            per session and ``update`` when it ends.
        registry: Registry used by the default adapter factory.
    """

    def __init__(
        self,
        events: EventBus | None = None,
        adapter_factory: AdapterFactory | None = None,
        repository: SessionRepository | None = None,
        registry: ProviderRegistry | None = None,
    ) -> None:
        self.events = events or EventBus()
        self._adapter_cache: AdapterCache | None = None
        if adapter_factory is None:
            self._adapter_cache = AdapterCache(registry)
            adapter_factory = self._adapter_cache
        self._adapter_factory: AdapterFactory = adapter_factory
        self._repository = repository
        self._contexts: dict[str, _RunContext] = {}

    @property
    def repository(self) -> SessionRepository | None:
        return self._repository

    async def aclose(self) -> None:
        """Close adapters created by the default factory."""
        if self._adapter_cache is not None:
            await self._adapter_cache.aclose()

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def create_session(
        self,
        question: str,
        members: Sequence[CouncilMember],
        config: SessionConfig | Mapping[str, Any] | None = None,
    ) -> Session:
        """Build a pending session.

        The roster must seat at least ``config.council_size`` active
        non-backup members. Extra seated members beyond that size are kept
        on the session but deactivated, highest priority number first.

        Raises:
            ConfigurationError: Empty question, no active members, an
                invalid config mapping or a roster smaller than the council.
        """
        if not question or not question.strip():
            raise ConfigurationError("Invalid session", ["question: must not be empty"])
        if not any(m.is_active for m in members):
            raise ConfigurationError("Invalid session", ["members: no active member"])
        if config is None:
            session_config = SessionConfig()
        elif isinstance(config, SessionConfig):
            session_config = config
        else:
            session_config = build_session_config(config).unwrap()
        roster = self._seat(list(members), session_config.council_size)
        return Session(question=question, config=session_config, members=roster)

    @staticmethod
    def _seat(members: list[CouncilMember], council_size: int) -> list[CouncilMember]:
        seated = sorted(
            (m for m in members if m.is_active and not m.is_backup), key=lambda m: m.priority
        )
        if len(seated) < council_size:
            raise ConfigurationError(
                "Invalid session",
                [f"members: {len(seated)} active members for council_size {council_size}"],
            )
        unseated = {m.id for m in seated[council_size:]}
        if not unseated:
            return members
        logger.warning(
            "Roster has %d active members; seating %d by priority",
            len(seated),
            council_size,
        )
        return [
            m.model_copy(update={"is_active": False}) if m.id in unseated else m for m in members
        ]

    @asynccontextmanager
    async def session_scope(self, session: Session) -> AsyncIterator[Session]:
        """Open a session, run the body, and finalize the session exactly once.

        Failures inside the body end the session as ``failed`` and are
        logged rather than raised. ``cancel()`` ends it as ``cancelled``.
        An outer task cancellation also marks it cancelled, then propagates.
        """
        if session.status != SessionStatus.PENDING:
            raise CouncilError(f"Session {session.id} was already started")

        ctx = _RunContext(session=session)
        self._contexts[session.id] = ctx
        session.status = SessionStatus.RUNNING
        session.touch()
        ctx.root_id = self._trace(
            ctx,
            TraceEventType.SESSION_START,
            data={"member_count": len(session.members), "question": session.question},
            parent=False,
        ).id
        logger.info("Session %s started with %d members", session.id, len(session.members))

        try:
            if self._repository is not None:
                await self._repository.create(session)
            yield session
            self._checkpoint(ctx)
            session.status = SessionStatus.COMPLETED
        except SessionCancelledError as e:
            session.status = SessionStatus.CANCELLED
            session.error = str(e)
            logger.info("Session %s cancelled", session.id)
        except asyncio.CancelledError:
            session.status = SessionStatus.CANCELLED
            session.error = "Session task cancelled"
            raise
        except Exception as e:
            session.status = SessionStatus.FAILED
            session.error = str(e) or type(e).__name__
            self._trace(ctx, TraceEventType.ERROR, data={"error": session.error})
            logger.exception("Session %s failed", session.id)
        finally:
            await self._finalize(ctx)

    async def _finalize(self, ctx: _RunContext) -> None:
        session = ctx.session
        session.total_tokens = sum(stage.total_tokens for stage in session.stages)
        session.total_cost = self._estimate_cost(session)
        session.total_duration_ms = (time.monotonic() - ctx.started) * 1000
        if session.completed_at is None:
            session.completed_at = utcnow()
        session.metadata["degradation"] = ctx.policy.report.to_dict()
        session.touch()
        self._trace(
            ctx,
            TraceEventType.SESSION_END,
            data={
                "status": session.status.value,
                "final_answer": session.final_answer,
                "final_confidence": session.final_confidence,
            },
            duration_ms=session.total_duration_ms,
        )
        logger.info(
            "Session %s %s (rounds=%d, corrections=%d, tokens=%d)",
            session.id,
            session.status.value,
            session.rounds,
            session.correction_rounds,
            session.total_tokens,
        )
        try:
            if self._repository is not None:
                await self._repository.update(session)
        except Exception:
            logger.warning("Failed to persist session %s", session.id, exc_info=True)
        finally:
            self._contexts.pop(session.id, None)
            self.events.close_session(session.id)

    def cancel(self, session_id: str) -> bool:
        """Request cancellation of a running session.

        In-flight member calls are cancelled; the session stops at its next
        checkpoint. Returns False when the session is not running here.
        """
        ctx = self._contexts.get(session_id)
        if ctx is None:
            return False
        ctx.cancelled = True
        for task in list(ctx.tasks):
            task.cancel()
        logger.info("Cancellation requested for session %s", session_id)
        return True

    def is_running(self, session_id: str) -> bool:
        return session_id in self._contexts

    def emit(
        self,
        session: Session,
        event_type: TraceEventType,
        data: dict[str, Any] | None = None,
        member: CouncilMember | None = None,
    ) -> TraceEvent:
        """Record a session-level event from outside the pipeline.

        Raises:
            CouncilError: If the session is not open.
        """
        ctx = self._contexts.get(session.id)
        if ctx is None:
            raise CouncilError(f"Session {session.id} is not open; use session_scope()")
        return self._trace(ctx, event_type, member=member, data=data, parent=False)

    def add_members(self, session: Session, members: Sequence[CouncilMember]) -> None:
        """Append members to an open session, keeping priorities unique."""
        next_priority = max((m.priority for m in session.members), default=-1) + 1
        for offset, member in enumerate(members):
            session.members.append(member.model_copy(update={"priority": next_priority + offset}))
        session.touch()

    async def run(
        self,
        question: str,
        members: Sequence[CouncilMember],
        config: SessionConfig | Mapping[str, Any] | None = None,
    ) -> Session:
        """Run a complete single-round session and return it."""
        session = self.create_session(question, members, config)
        async with self.session_scope(session):
            await self.run_round(session)
        return session

    # ------------------------------------------------------------------
    # Round
    # ------------------------------------------------------------------

    async def run_round(self, session: Session, context_prompt: str = "") -> RoundResult:
        """Run opinions, review, voting, optional correction and synthesis.

        Must be called inside :meth:`session_scope`.
        """
        ctx = self._contexts.get(session.id)
        if ctx is None:
            raise CouncilError(f"Session {session.id} is not open; use session_scope()")
        self._checkpoint(ctx)
        session.rounds += 1
        round_no = session.rounds
        stages: list[StageResult] = []
        question = session.question

        # Stage 1: opinions
        opinions_stage = await self._run_stage(
            ctx,
            PipelineStage.OPINIONS,
            self._eligible(session, PipelineStage.OPINIONS),
            lambda _m: opinion_prompt(question, context_prompt),
        )
        stages.append(opinions_stage)
        opinions = list(opinions_stage.responses)

        # Stage 2: review
        reviews: list[MemberResponse] = []
        reviewers = self._eligible(session, PipelineStage.REVIEW)
        if reviewers:
            review_stage = await self._run_stage(
                ctx,
                PipelineStage.REVIEW,
                reviewers,
                lambda _m: review_prompt(question, opinions, context_prompt),
            )
            stages.append(review_stage)
            reviews = list(review_stage.responses)
        else:
            logger.debug("Session %s: no reviewers, skipping review stage", session.id)

        # Stage 3: voting
        voting_stage = await self._run_voting(ctx, opinions, reviews, context_prompt)
        stages.append(voting_stage)

        # Stage 4: self-correction
        while self._needs_correction(session, voting_stage.voting_result):
            correction_stage, voting_stage = await self._run_correction(
                ctx, opinions, reviews, voting_stage.voting_result, context_prompt
            )
            stages.extend((correction_stage, voting_stage))
            opinions.extend(correction_stage.responses)

        # Stage 5: synthesis
        synthesis_stage = await self._run_synthesis(
            ctx, opinions + reviews, voting_stage.voting_result, context_prompt
        )
        if synthesis_stage is not None:
            stages.append(synthesis_stage)

        return RoundResult(
            round=round_no,
            opinions=opinions,
            reviews=reviews,
            voting=voting_stage,
            synthesis=synthesis_stage,
            stages=stages,
        )

    def _eligible(self, session: Session, stage: PipelineStage) -> list[CouncilMember]:
        return [m for m in session.active_members() if eligible(m, stage)]

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _run_stage(
        self,
        ctx: _RunContext,
        stage: PipelineStage,
        members: Sequence[CouncilMember],
        prompt_for: Callable[[CouncilMember], str],
    ) -> StageResult:
        start_time, t0 = self._open_stage(ctx, stage)
        responses = await self._call_members(ctx, stage, members, prompt_for)
        return self._close_stage(ctx, stage, responses, None, start_time, t0)

    async def _run_voting(
        self,
        ctx: _RunContext,
        opinions: Sequence[MemberResponse],
        reviews: Sequence[MemberResponse],
        context_prompt: str,
    ) -> StageResult:
        session = ctx.session
        stage = PipelineStage.VOTING
        start_time, t0 = self._open_stage(ctx, stage)
        voters = self._eligible(session, stage)
        prompt = vote_prompt(session.question, opinions, reviews, context_prompt)
        responses = await self._call_members(ctx, stage, voters, lambda _m: prompt)

        by_id = {m.id: m for m in session.members}
        votes: list[Vote] = []
        malformed = 0
        for response in responses:
            member = by_id[response.member_id]
            vote = parse_vote(response.content, member, fallback_confidence=response.confidence)
            if vote is None:
                malformed += 1
                logger.warning("Vote from %s has no POSITION line; ignoring it", member.name)
                self._trace(
                    ctx,
                    TraceEventType.MEMBER_ERROR,
                    stage=stage,
                    member=member,
                    data={
                        "member_id": member.id,
                        "error_type": "malformed_response",
                        "error": "Vote has no POSITION line",
                    },
                )
                continue
            votes.append(vote)
            self._trace(
                ctx,
                TraceEventType.VOTE_CAST,
                stage=stage,
                member=member,
                data={
                    "member_id": member.id,
                    "confidence": vote.confidence,
                    "position_preview": vote.position[:PREVIEW_CHARS],
                },
            )

        result = tally(
            votes,
            session.config.voting_method,
            member_weights(session.members),
            options=VotingOptions.for_session(session.config, session.members),
        )
        quorum = math.ceil(len(voters) / 2)
        metadata = {**result.metadata, "quorum": quorum, "malformed_votes": malformed}
        if len(votes) < quorum:
            logger.warning(
                "Session %s: quorum not met (%d of %d voters, need %d)",
                session.id,
                len(votes),
                len(voters),
                quorum,
            )
            result = result.model_copy(
                update={"consensus_reached": False, "metadata": {**metadata, "quorum_met": False}}
            )
        else:
            result = result.model_copy(update={"metadata": {**metadata, "quorum_met": True}})

        self._trace(
            ctx,
            TraceEventType.VOTING_COMPLETE,
            stage=stage,
            data={
                "winner": result.winner,
                "confidence_avg": result.confidence_avg,
                "consensus_reached": result.consensus_reached,
                "breakdown": dict(result.breakdown),
            },
        )
        return self._close_stage(ctx, stage, responses, result, start_time, t0)

    def _needs_correction(self, session: Session, voting: VotingResult | None) -> bool:
        config = session.config
        if not config.self_correction_enabled or config.backup_members_count == 0:
            return False
        if session.correction_rounds >= config.max_correction_rounds:
            return False
        if voting is not None and voting.consensus_reached and (
            voting.confidence_avg >= config.self_correction_threshold
        ):
            return False
        return any(m.is_backup and not m.is_active for m in session.members)

    async def _run_correction(
        self,
        ctx: _RunContext,
        opinions: Sequence[MemberResponse],
        reviews: Sequence[MemberResponse],
        voting: VotingResult | None,
        context_prompt: str,
    ) -> tuple[StageResult, StageResult]:
        session = ctx.session
        config = session.config
        round_no = session.correction_rounds + 1
        if voting is None:
            reason = "No voting result"
        elif not voting.consensus_reached:
            reason = f"No consensus (confidence {voting.confidence_avg:.2f})"
        else:
            reason = (
                f"Confidence {voting.confidence_avg:.2f} below "
                f"threshold {config.self_correction_threshold}"
            )
        self._trace(
            ctx, TraceEventType.CORRECTION_TRIGGERED, data={"round": round_no, "reason": reason}
        )
        logger.info("Session %s: self-correction round %d (%s)", session.id, round_no, reason)

        backups = self._activate_backups(ctx)
        prompt = correction_prompt(session.question, opinions, voting)
        start_time, t0 = self._open_stage(ctx, PipelineStage.CORRECTION)
        responses = await self._call_members(
            ctx, PipelineStage.CORRECTION, backups, lambda _m: prompt
        )
        correction_stage = self._close_stage(
            ctx, PipelineStage.CORRECTION, responses, None, start_time, t0
        )

        voting_stage = await self._run_voting(
            ctx, [*opinions, *responses], reviews, context_prompt
        )
        session.correction_rounds += 1
        return correction_stage, voting_stage

    def _activate_backups(self, ctx: _RunContext) -> list[CouncilMember]:
        session = ctx.session
        inactive = sorted(
            (m for m in session.members if m.is_backup and not m.is_active),
            key=lambda m: m.priority,
        )
        activated: list[CouncilMember] = []
        for member in inactive[: session.config.backup_members_count]:
            active = member.activated()
            session.members[session.members.index(member)] = active
            activated.append(active)
            self._trace(
                ctx,
                TraceEventType.BACKUP_ACTIVATED,
                member=active,
                data={"member_id": active.id, "model": active.backend.model},
            )
        session.touch()
        return activated

    async def _run_synthesis(
        self,
        ctx: _RunContext,
        responses: Sequence[MemberResponse],
        voting: VotingResult | None,
        context_prompt: str,
    ) -> StageResult | None:
        session = ctx.session
        synthesizer = self._select_synthesizer(session)
        if synthesizer is None:
            logger.warning("Session %s: no member available for synthesis", session.id)
            self._apply_fallback_answer(session, responses, voting)
            return None

        stage = PipelineStage.SYNTHESIS
        start_time, t0 = self._open_stage(ctx, stage)
        prompt = synthesis_prompt(session.question, responses, voting, context_prompt)
        replies = await self._call_members(ctx, stage, [synthesizer], lambda _m: prompt)
        result = self._close_stage(ctx, stage, replies, None, start_time, t0)

        if replies:
            session.final_answer = replies[0].content
            session.final_confidence = voting.confidence_avg if voting else replies[0].confidence
        else:
            logger.warning("Session %s: synthesis failed, using the leading position", session.id)
            self._apply_fallback_answer(session, responses, voting)
        session.touch()
        return result

    @staticmethod
    def _select_synthesizer(session: Session) -> CouncilMember | None:
        active = session.active_members()
        for member in active:
            if member.role == CouncilRole.SYNTHESIZER:
                return member
        return active[0] if active else None

    @staticmethod
    def _apply_fallback_answer(
        session: Session, responses: Sequence[MemberResponse], voting: VotingResult | None
    ) -> None:
        if voting is not None and voting.winner:
            session.final_answer = voting.winner
        elif responses:
            best = max(responses, key=lambda r: r.confidence if r.confidence is not None else 0.0)
            session.final_answer = best.content
        session.final_confidence = voting.confidence_avg if voting else None

    # ------------------------------------------------------------------
    # Member calls
    # ------------------------------------------------------------------

    async def _call_members(
        self,
        ctx: _RunContext,
        stage: PipelineStage,
        members: Sequence[CouncilMember],
        prompt_for: Callable[[CouncilMember], str],
    ) -> list[MemberResponse]:
        session = ctx.session
        coros = [self._call_member(ctx, stage, member, prompt_for(member)) for member in members]
        if session.config.parallel_execution:
            results = await asyncio.gather(
                *(self._spawn(ctx, coro) for coro in coros), return_exceptions=True
            )
        else:
            results = []
            for index, coro in enumerate(coros):
                if ctx.cancelled:
                    for pending in coros[index:]:
                        pending.close()
                    break
                (result,) = await asyncio.gather(self._spawn(ctx, coro), return_exceptions=True)
                results.append(result)
        self._checkpoint(ctx)

        responses: list[MemberResponse] = []
        for member, result in zip(members, results):
            if isinstance(result, BaseException):
                failure = ctx.policy.record(member.id, member.name, stage, result)
                self._trace(
                    ctx,
                    TraceEventType.MEMBER_ERROR,
                    stage=stage,
                    member=member,
                    data={
                        "member_id": member.id,
                        "error_type": failure.error_type.value,
                        "error": failure.error_message[:PREVIEW_CHARS],
                    },
                )
            else:
                responses.append(result)

        decision = ctx.policy.decide(stage, len(members), len(responses))
        if decision.action == DegradationAction.ABORT:
            raise CouncilUnavailableError(decision.reason)
        return responses

    def _spawn(
        self, ctx: _RunContext, coro: Coroutine[Any, Any, MemberResponse]
    ) -> asyncio.Task[MemberResponse]:
        task = asyncio.ensure_future(coro)
        ctx.tasks.add(task)
        task.add_done_callback(ctx.tasks.discard)
        return task

    async def _call_member(
        self, ctx: _RunContext, stage: PipelineStage, member: CouncilMember, prompt: str
    ) -> MemberResponse:
        session = ctx.session
        backend = member.backend
        request = GenerateRequest(
            model=backend.model,
            messages=[
                Message(
                    role="system",
                    content=build_system_prompt(member.role, member.persona, member.system_prompt),
                ),
                Message(role="user", content=prompt),
            ],
            max_tokens=backend.max_tokens,
            temperature=(
                member.temperature if member.temperature is not None else backend.temperature
            ),
            reasoning=(
                ReasoningConfig(enabled=True, effort=backend.reasoning_effort)
                if backend.reasoning_effort in ("low", "medium", "high")
                else None
            ),
            metadata={"session_id": session.id, "member_id": member.id, "stage": stage.value},
        )
        self._trace(
            ctx,
            TraceEventType.MEMBER_REQUEST,
            stage=stage,
            member=member,
            data={"member_id": member.id, "model": backend.model},
        )

        start = time.monotonic()
        adapter = self._adapter_factory(member)
        reply = await asyncio.wait_for(
            adapter.generate(request), timeout=session.config.timeout_ms / 1000
        )
        latency_ms = (time.monotonic() - start) * 1000
        text = reply.text or ""
        if not text.strip():
            raise ValueError(f"Empty response from {member.name}")

        confidence = reply.confidence if reply.confidence is not None else extract_confidence(text)
        response = MemberResponse(
            member_id=member.id,
            member_name=member.name,
            model_id=reply.model or backend.model,
            content=text,
            confidence=confidence,
            token_usage=TokenUsage.from_mapping(reply.usage),
            latency_ms=latency_ms,
            metadata={"stage": stage.value, "finish_reason": reply.finish_reason},
        )
        self._trace(
            ctx,
            TraceEventType.MEMBER_RESPONSE,
            stage=stage,
            member=member,
            data={
                "member_id": member.id,
                "latency_ms": latency_ms,
                "content_preview": text[:PREVIEW_CHARS],
            },
            duration_ms=latency_ms,
        )
        return response

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _open_stage(self, ctx: _RunContext, stage: PipelineStage) -> tuple[datetime, float]:
        self._checkpoint(ctx)
        ctx.stage_id = self._trace(
            ctx, TraceEventType.STAGE_START, stage=stage, data={"stage": stage.value}, parent=False
        ).id
        return utcnow(), time.monotonic()

    def _close_stage(
        self,
        ctx: _RunContext,
        stage: PipelineStage,
        responses: Sequence[MemberResponse],
        voting_result: VotingResult | None,
        start_time: datetime,
        t0: float,
    ) -> StageResult:
        session = ctx.session
        duration_ms = (time.monotonic() - t0) * 1000
        result = StageResult(
            stage=stage,
            responses=list(responses),
            voting_result=voting_result,
            start_time=start_time,
            end_time=utcnow(),
            duration_ms=duration_ms,
            round=max(session.rounds, 1),
        )
        session.stages.append(result)
        session.touch()
        self._trace(
            ctx,
            TraceEventType.STAGE_END,
            stage=stage,
            data={
                "stage": stage.value,
                "duration_ms": duration_ms,
                "response_count": len(responses),
            },
            duration_ms=duration_ms,
            parent=False,
        )
        ctx.stage_id = None
        return result

    def _checkpoint(self, ctx: _RunContext) -> None:
        if ctx.cancelled:
            raise SessionCancelledError(f"Session {ctx.session.id} was cancelled")

    def _trace(
        self,
        ctx: _RunContext,
        event_type: TraceEventType,
        *,
        stage: PipelineStage | None = None,
        member: CouncilMember | None = None,
        data: dict[str, Any] | None = None,
        duration_ms: float | None = None,
        parent: bool = True,
    ) -> TraceEvent:
        """Append an event to the session's audit log and publish it.

        Member-level events point at the open stage; everything else points
        at ``session_start``.
        """
        parent_id = ctx.root_id
        if parent and member is not None and ctx.stage_id is not None:
            parent_id = ctx.stage_id
        elif parent and event_type == TraceEventType.VOTING_COMPLETE and ctx.stage_id:
            parent_id = ctx.stage_id
        event = TraceEvent(
            session_id=ctx.session.id,
            type=event_type,
            stage=stage,
            member_id=member.id if member else None,
            member_name=member.name if member else None,
            data=data or {},
            duration_ms=duration_ms,
            parent_id=None if event_type == TraceEventType.SESSION_START else parent_id,
        )
        ctx.session.traces.append(event)
        if ctx.session.config.debug_mode:
            logger.debug("[%s] %s %s", ctx.session.id, event_type.value, event.data)
        self.events.publish(event)
        return event

    @staticmethod
    def _estimate_cost(session: Session) -> float:
        backends = {m.id: m.backend for m in session.members}
        cost = 0.0
        for stage in session.stages:
            for response in stage.responses:
                backend = backends.get(response.member_id)
                usage = response.token_usage
                if backend is None or usage is None:
                    continue
                cost += usage.prompt_tokens / 1000 * backend.cost_per_1k_prompt
                cost += usage.completion_tokens / 1000 * backend.cost_per_1k_completion
        return round(cost, 6)


__all__ = ["RoundResult", "StagePipeline"]
