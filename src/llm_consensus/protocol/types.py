"""
Protocol types for llm-consensus.

Defines the Pydantic models shared by every engine component: council members,
votes, stage results, sessions, trace events, iteration/memory state and the
dynamic council configuration produced by the composition planner.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from llm_consensus.exceptions import ConfigurationError


def utcnow() -> datetime:
    """Timezone-aware current time used for every timestamp in the engine."""
    return datetime.now(timezone.utc)


def new_id(prefix: str = "") -> str:
    """Return a random hex identifier, optionally prefixed."""
    value = uuid.uuid4().hex
    return f"{prefix}-{value}" if prefix else value


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class CouncilRole(str, Enum):
    """Roles a council member can play."""

    OPINION_GIVER = "opinion-giver"
    REVIEWER = "reviewer"
    SYNTHESIZER = "synthesizer"
    BACKUP = "backup"
    ARBITER = "arbiter"
    DEVIL_ADVOCATE = "devil-advocate"
    FACT_CHECKER = "fact-checker"
    DOMAIN_EXPERT = "domain-expert"
    SKEPTIC = "skeptic"
    CREATIVE = "creative"
    CRITIC = "critic"
    MODERATOR = "moderator"


class VotingMethod(str, Enum):
    """Social-choice algorithms supported by the voting engine."""

    MAJORITY = "majority"
    SUPER_MAJORITY = "super-majority"
    UNANIMOUS = "unanimous"
    RANKED_CHOICE = "ranked-choice"
    WEIGHTED = "weighted"
    CONFIDENCE = "confidence"
    CONSENSUS = "consensus"
    VETO = "veto"


class PipelineStage(str, Enum):
    """Phases of a deliberation round."""

    OPINIONS = "opinions"
    REVIEW = "review"
    VOTING = "voting"
    SYNTHESIS = "synthesis"
    CORRECTION = "correction"


class SessionStatus(str, Enum):
    """Lifecycle status of a session."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED)


class ModelCapability(str, Enum):
    """Capability flags advertised by a model backend."""

    CHAT = "chat"
    REASONING = "reasoning"
    CODE = "code"
    VISION = "vision"
    FUNCTION_CALLING = "function-calling"
    AGENTS = "agents"
    LONG_CONTEXT = "long-context"


class TraceEventType(str, Enum):
    """Milestones published on the event stream and kept in the audit log."""

    SESSION_START = "session_start"
    SESSION_END = "session_end"
    STAGE_START = "stage_start"
    STAGE_END = "stage_end"
    MEMBER_REQUEST = "member_request"
    MEMBER_RESPONSE = "member_response"
    MEMBER_ERROR = "member_error"
    VOTE_CAST = "vote_cast"
    VOTING_COMPLETE = "voting_complete"
    CORRECTION_TRIGGERED = "correction_triggered"
    BACKUP_ACTIVATED = "backup_activated"
    ITERATION_DECISION = "iteration_decision"
    MEMBERS_ESCALATED = "members_escalated"
    MEMORY_COMPRESSED = "memory_compressed"
    ERROR = "error"


class IterationStrategy(str, Enum):
    """How successive rounds differ from each other."""

    REFINE = "refine"
    ESCALATE = "escalate"
    SPECIALIZE = "specialize"
    DEBATE = "debate"


class IterationAction(str, Enum):
    """Decision emitted by the iteration controller."""

    CONTINUE = "continue"
    STOP = "stop"
    ESCALATE = "escalate"


class ComplexityLevel(str, Enum):
    """Inferred question complexity, ordered from cheapest to most demanding."""

    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    EXPERT = "expert"

    @property
    def rank(self) -> int:
        return _COMPLEXITY_ORDER.index(self)


_COMPLEXITY_ORDER = (
    ComplexityLevel.SIMPLE,
    ComplexityLevel.MODERATE,
    ComplexityLevel.COMPLEX,
    ComplexityLevel.EXPERT,
)


class DomainType(str, Enum):
    """Inferred question domain."""

    GENERAL = "general"
    TECHNICAL = "technical"
    CREATIVE = "creative"
    ETHICAL = "ethical"
    FACTUAL = "factual"
    ANALYTICAL = "analytical"
    STRATEGIC = "strategic"


class PlanningMode(str, Enum):
    """Composition planner modes."""

    STATIC = "static"
    LLM = "llm"
    HYBRID = "hybrid"


# ---------------------------------------------------------------------------
# Members and backends
# ---------------------------------------------------------------------------


class ModelBackend(BaseModel):
    """Reference to the model a member is bound to."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Catalogue identifier (e.g. 'azure-gpt-5').")
    name: str = Field(..., description="Human-readable model name.")
    provider: str = Field(..., description="Provider adapter name used to resolve the backend.")
    model: str = Field(..., description="Provider model or deployment identifier.")
    capabilities: tuple[ModelCapability, ...] = Field(default=(ModelCapability.CHAT,))
    max_tokens: int = Field(default=4096, gt=0)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    reasoning_effort: str | None = Field(
        default=None, description="Reasoning effort forwarded to reasoning-capable backends."
    )
    cost_per_1k_prompt: float = Field(default=0.0, ge=0.0)
    cost_per_1k_completion: float = Field(default=0.0, ge=0.0)

    def has(self, capability: ModelCapability) -> bool:
        return capability in self.capabilities


class CouncilMember(BaseModel):
    """One agent instance bound to a backend and a role.

    Members are frozen for the life of a session; activation of a backup is
    done by replacing the roster entry with ``activated()``.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("member"))
    name: str
    backend: ModelBackend
    role: CouncilRole = CouncilRole.OPINION_GIVER
    weight: float = Field(default=1.0, ge=0.0, le=2.0, description="Voting weight.")
    priority: int = Field(default=0, description="Invocation order; lower runs first.")
    is_active: bool = True
    persona: str | None = None
    system_prompt: str | None = Field(default=None, description="Overrides the role prompt.")
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)

    @property
    def is_backup(self) -> bool:
        return self.role == CouncilRole.BACKUP

    def activated(self) -> CouncilMember:
        return self.model_copy(update={"is_active": True})


# ---------------------------------------------------------------------------
# Votes and stage results
# ---------------------------------------------------------------------------


class Vote(BaseModel):
    """A single member's vote in one voting stage."""

    model_config = ConfigDict(frozen=True)

    member_id: str
    member_name: str = ""
    position: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str = ""
    rank: list[str] | None = Field(default=None, description="Ordered preferences.")
    veto: bool = False
    timestamp: datetime = Field(default_factory=utcnow)


class VotingResult(BaseModel):
    """Outcome of tallying one stage's votes."""

    model_config = ConfigDict(frozen=True)

    method: VotingMethod
    winner: str | None = None
    votes: list[Vote] = Field(default_factory=list)
    breakdown: dict[str, int] = Field(default_factory=dict)
    confidence_avg: float = 0.0
    consensus_reached: bool = False
    rounds_needed: int = Field(default=1, ge=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TokenUsage(BaseModel):
    """Token accounting for one member call."""

    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def from_mapping(cls, usage: Mapping[str, int] | None) -> TokenUsage | None:
        if not usage:
            return None
        prompt = int(usage.get("prompt_tokens", 0) or 0)
        completion = int(usage.get("completion_tokens", 0) or 0)
        total = int(usage.get("total_tokens", 0) or 0) or prompt + completion
        return cls(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


class MemberResponse(BaseModel):
    """A successful member reply within a stage."""

    model_config = ConfigDict(frozen=True)

    member_id: str
    member_name: str = ""
    model_id: str = ""
    content: str
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    token_usage: TokenUsage | None = None
    latency_ms: float = 0.0
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class StageResult(BaseModel):
    """Everything one stage of one round produced."""

    model_config = ConfigDict(frozen=True)

    stage: PipelineStage
    responses: list[MemberResponse] = Field(default_factory=list)
    voting_result: VotingResult | None = None
    start_time: datetime
    end_time: datetime
    duration_ms: float = 0.0
    round: int = Field(default=1, ge=1, description="Deliberation round the stage belongs to.")

    @property
    def total_tokens(self) -> int:
        return sum(r.token_usage.total_tokens for r in self.responses if r.token_usage)


# ---------------------------------------------------------------------------
# Session configuration and state
# ---------------------------------------------------------------------------


class SessionConfig(BaseModel):
    """Validated, immutable configuration of one session."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    council_size: int = Field(default=5, ge=3, le=15)
    voting_method: VotingMethod = VotingMethod.MAJORITY
    voting_threshold: float | None = Field(
        default=None,
        gt=0.0,
        le=1.0,
        description="Agreement bar for super-majority and consensus methods.",
    )
    self_correction_enabled: bool = True
    self_correction_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    max_correction_rounds: int = Field(default=2, ge=0, le=5)
    backup_members_count: int = Field(default=2, ge=0, le=5)
    parallel_execution: bool = True
    timeout_ms: int = Field(default=60_000, gt=0, description="Per member call timeout.")
    debug_mode: bool = False


class TraceEvent(BaseModel):
    """Immutable audit record; also the payload of the live event stream."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    session_id: str
    type: TraceEventType
    stage: PipelineStage | None = None
    member_id: str | None = None
    member_name: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    duration_ms: float | None = None
    parent_id: str | None = None


# ---------------------------------------------------------------------------
# Iteration control
# ---------------------------------------------------------------------------


class EscalationConfig(BaseModel):
    """How the council grows when the controller signals escalation."""

    model_config = ConfigDict(frozen=True)

    add_members_per_iteration: int = Field(default=1, ge=1, le=5)
    max_total_members: int = Field(default=9, ge=3, le=15)
    prefer_reasoning: bool = True


class IterationConfig(BaseModel):
    """Budgets and thresholds for multi-round refinement."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    max_iterations: int = Field(default=3, ge=1, le=10)
    max_total_tokens: int = Field(default=100_000, gt=0)
    max_duration_ms: int = Field(default=120_000, gt=0)
    max_depth: int = Field(default=2, ge=1, le=5)
    convergence_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    improvement_threshold: float = Field(default=0.05, ge=0.0, le=1.0)
    strategy: IterationStrategy = IterationStrategy.REFINE
    escalation: EscalationConfig = Field(default_factory=EscalationConfig)


class IterationDecision(BaseModel):
    """One continue/stop/escalate verdict."""

    model_config = ConfigDict(frozen=True)

    iteration: int
    action: IterationAction
    reason: str
    confidence: float = 0.0
    tokens_used: int = 0
    duration_ms: float = 0.0

    @property
    def should_continue(self) -> bool:
        return self.action != IterationAction.STOP


class IterationState(BaseModel):
    """Mutable counters owned by one iteration controller."""

    current_iteration: int = 0
    total_iterations: int = 0
    tokens_used: int = 0
    start_time: float = 0.0
    elapsed_ms: float = 0.0
    confidence_history: list[float] = Field(default_factory=list)
    improvement_history: list[float] = Field(default_factory=list)
    decisions: list[IterationDecision] = Field(default_factory=list)


class IterationContext(BaseModel):
    """Context injected into member prompts for the next round."""

    model_config = ConfigDict(frozen=True)

    iteration: int
    previous_summary: str
    key_decisions: list[str] = Field(default_factory=list)
    open_issues: list[str] = Field(default_factory=list)
    confidence_trend: list[float] = Field(default_factory=list)
    instructions: str = ""


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


class MemoryConfig(BaseModel):
    """Cross-round memory policy."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    compression_enabled: bool = True
    max_context_tokens: int = Field(default=8000, ge=256)
    persist_consensus: bool = True
    persist_disagreements: bool = True
    persist_key_insights: bool = True


class Refinement(BaseModel):
    iteration: int
    what: str
    why: str


class ShortTermMemory(BaseModel):
    question: str = ""
    iteration: int = 0
    previous_responses: list[str] = Field(default_factory=list)
    current_confidence: float = 0.0
    key_insights: list[str] = Field(default_factory=list)


class WorkingMemory(BaseModel):
    consensus_points: list[str] = Field(default_factory=list)
    disagreements: list[str] = Field(default_factory=list)
    open_questions: list[str] = Field(default_factory=list)
    refinements: list[Refinement] = Field(default_factory=list)


class CompressedMemory(BaseModel):
    summary: str
    token_count: int = 0
    last_updated: datetime = Field(default_factory=utcnow)


class CouncilMemory(BaseModel):
    """Deliberation memory carried across rounds of one session."""

    short_term: ShortTermMemory = Field(default_factory=ShortTermMemory)
    working: WorkingMemory = Field(default_factory=WorkingMemory)
    compressed: CompressedMemory | None = None

    @classmethod
    def for_question(cls, question: str) -> CouncilMemory:
        return cls(short_term=ShortTermMemory(question=question))


# ---------------------------------------------------------------------------
# Dynamic council configuration
# ---------------------------------------------------------------------------


class MemberSpec(BaseModel):
    """Member template produced by a preset or the planner."""

    model_config = ConfigDict(frozen=True)

    model: str = Field(..., description="Model catalogue key (e.g. 'gpt-5').")
    role: CouncilRole
    name: str | None = None
    persona: str | None = None
    system_prompt: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    weight: float = Field(default=1.0, ge=0.0, le=2.0)


class VotingSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    method: VotingMethod = VotingMethod.MAJORITY
    threshold: float | None = Field(default=None, gt=0.0, le=1.0)


class CouncilSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    size: int = Field(..., ge=3, le=15, description="Seated members; backups excluded.")
    members: list[MemberSpec] = Field(..., min_length=1)
    voting: VotingSpec = Field(default_factory=VotingSpec)

    @model_validator(mode="after")
    def _validate_size(self) -> CouncilSpec:
        seated = sum(1 for m in self.members if m.role != CouncilRole.BACKUP)
        if seated != self.size:
            raise ValueError(f"size {self.size} does not match {seated} non-backup members")
        return self


class PlanMeta(BaseModel):
    """Explains why a council looks the way it does."""

    model_config = ConfigDict(frozen=True)

    planning_mode: PlanningMode = PlanningMode.STATIC
    planner_model: str | None = None
    complexity: ComplexityLevel = ComplexityLevel.MODERATE
    domain: DomainType = DomainType.GENERAL
    reasoning: str = ""
    preset: str | None = None
    matched_rule: str | None = None
    fallback_reason: str | None = Field(
        default=None, description="Why LLM planning was abandoned for the static plan."
    )


class DynamicCouncilConfig(BaseModel):
    """Full per-question configuration consumed read-only by the orchestrator."""

    model_config = ConfigDict(frozen=True)

    meta: PlanMeta = Field(default_factory=PlanMeta)
    council: CouncilSpec
    iteration: IterationConfig = Field(default_factory=IterationConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)


class PlanRole(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    role: CouncilRole
    model: str
    persona: str | None = None
    weight: float | None = Field(default=None, ge=0.0, le=2.0)


class CouncilPlan(BaseModel):
    """Structured plan returned by an LLM planner."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    complexity: ComplexityLevel
    domain: DomainType
    reasoning: str
    council_size: int = Field(..., ge=3, le=9)
    roles: list[PlanRole] = Field(..., min_length=3, max_length=9)
    voting_method: VotingMethod
    allow_iterations: bool
    max_iterations: int | None = Field(default=None, ge=1, le=10)
    iteration_strategy: IterationStrategy | None = None

    @model_validator(mode="after")
    def _validate_roster(self) -> CouncilPlan:
        if len(self.roles) != self.council_size:
            raise ValueError(
                f"council_size {self.council_size} does not match {len(self.roles)} roles"
            )
        return self


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class Session(BaseModel):
    """One deliberation over one question.

    Mutated in place as stages complete; finalized exactly once.
    """

    id: str = Field(default_factory=lambda: new_id("session"))
    question: str
    config: SessionConfig
    members: list[CouncilMember]
    stages: list[StageResult] = Field(default_factory=list)
    final_answer: str | None = None
    final_confidence: float | None = None
    status: SessionStatus = SessionStatus.PENDING
    correction_rounds: int = 0
    rounds: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    total_duration_ms: float = 0.0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    error: str | None = None
    dynamic_config: DynamicCouncilConfig | None = None
    iteration_decisions: list[IterationDecision] = Field(default_factory=list)
    traces: list[TraceEvent] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def touch(self) -> None:
        self.updated_at = utcnow()

    def active_members(self) -> list[CouncilMember]:
        return sorted((m for m in self.members if m.is_active), key=lambda m: m.priority)

    def latest_voting_result(self) -> VotingResult | None:
        for stage in reversed(self.stages):
            if stage.voting_result is not None:
                return stage.voting_result
        return None


# ---------------------------------------------------------------------------
# Configuration builders
# ---------------------------------------------------------------------------


class ConfigResult(BaseModel):
    """Outcome of validating a configuration: the config or the error list."""

    model_config = ConfigDict(frozen=True)

    ok: bool
    config: SessionConfig | DynamicCouncilConfig | None = None
    errors: list[str] = Field(default_factory=list)

    def unwrap(self) -> Any:
        """Return the config or raise ConfigurationError."""
        if not self.ok or self.config is None:
            raise ConfigurationError("Invalid configuration", self.errors)
        return self.config


def format_validation_errors(exc: ValidationError) -> list[str]:
    """Flatten a pydantic ValidationError into "loc: message" strings."""
    errors = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "config"
        errors.append(f"{loc}: {err.get('msg', 'invalid value')}")
    return errors


def build_session_config(
    overrides: Mapping[str, Any] | None = None, **kwargs: Any
) -> ConfigResult:
    """Validate session settings without clamping anything.

    Example:
        >>> build_session_config(council_size=2).errors
        ['council_size: Input should be greater than or equal to 3']
    """
    data = {**(overrides or {}), **kwargs}
    try:
        return ConfigResult(ok=True, config=SessionConfig.model_validate(data))
    except ValidationError as e:
        return ConfigResult(ok=False, errors=format_validation_errors(e))


def build_dynamic_config(data: Mapping[str, Any] | DynamicCouncilConfig) -> ConfigResult:
    """Validate a dynamic council configuration (dict or model)."""
    if isinstance(data, DynamicCouncilConfig):
        return ConfigResult(ok=True, config=data)
    try:
        return ConfigResult(ok=True, config=DynamicCouncilConfig.model_validate(dict(data)))
    except ValidationError as e:
        return ConfigResult(ok=False, errors=format_validation_errors(e))


__all__ = [
    "ComplexityLevel",
    "CompressedMemory",
    "ConfigResult",
    "CouncilMember",
    "CouncilMemory",
    "CouncilPlan",
    "CouncilRole",
    "CouncilSpec",
    "DomainType",
    "DynamicCouncilConfig",
    "EscalationConfig",
    "IterationAction",
    "IterationConfig",
    "IterationContext",
    "IterationDecision",
    "IterationState",
    "IterationStrategy",
    "MemberResponse",
    "MemberSpec",
    "MemoryConfig",
    "ModelBackend",
    "ModelCapability",
    "PipelineStage",
    "PlanMeta",
    "PlanRole",
    "PlanningMode",
    "Refinement",
    "Session",
    "SessionConfig",
    "SessionStatus",
    "ShortTermMemory",
    "StageResult",
    "TokenUsage",
    "TraceEvent",
    "TraceEventType",
    "Vote",
    "VotingMethod",
    "VotingResult",
    "VotingSpec",
    "WorkingMemory",
    "build_dynamic_config",
    "build_session_config",
    "format_validation_errors",
    "new_id",
    "utcnow",
]
