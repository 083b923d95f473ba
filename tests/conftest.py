"""Pytest configuration and shared fixtures for llm-consensus tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterator, Mapping, Sequence
from typing import Any, ClassVar

import pytest

from llm_consensus.config.models import ModelConfig, create_member
from llm_consensus.protocol.types import CouncilMember, CouncilRole
from llm_consensus.providers.base import (
    DoctorResult,
    GenerateRequest,
    GenerateResponse,
    Message,
    ProviderAdapter,
    ProviderCapabilities,
)
from llm_consensus.providers.registry import ProviderRegistry

Script = Callable[[GenerateRequest], str]


def vote_text(
    position: str,
    confidence: float,
    reasoning: str = "It is the best supported answer.",
    ranking: Sequence[str] | None = None,
    veto: bool = False,
) -> str:
    """Render a vote reply in the format the pipeline parses."""
    lines = [f"POSITION: {position}", f"CONFIDENCE: {confidence}"]
    if ranking:
        lines.append(f"RANKING: {', '.join(ranking)}")
    lines.append(f"VETO: {'yes' if veto else 'no'}")
    lines.append(f"REASONING: {reasoning}")
    return "\n".join(lines)


class StageScript:
    """Replies keyed by pipeline stage and member id.

    ``votes`` maps a member id to a reply, or to a list of replies consumed
    one per voting stage (the last one repeats).
    """

    def __init__(
        self,
        votes: Mapping[str, str | list[str]] | None = None,
        default_vote: str = vote_text("A", 0.8),
        opinion: str = "A is the answer.\nConfidence: 0.8",
        synthesis: str = "Final answer: A.",
        other: str = "Summary of the deliberation so far.",
    ) -> None:
        self._votes = {k: list(v) if isinstance(v, list) else [v] for k, v in (votes or {}).items()}
        self._default_vote = default_vote
        self._opinion = opinion
        self._synthesis = synthesis
        self._other = other

    def __call__(self, request: GenerateRequest) -> str:
        metadata = dict(request.metadata or {})
        stage = metadata.get("stage")
        if stage == "voting":
            replies = self._votes.get(metadata.get("member_id", ""))
            if not replies:
                return self._default_vote
            return replies.pop(0) if len(replies) > 1 else replies[0]
        if stage == "synthesis":
            return self._synthesis
        if stage in ("opinions", "review", "correction"):
            return self._opinion
        return self._other


class MockProvider(ProviderAdapter):
    """Mock provider for testing."""

    name: ClassVar[str] = "mock"
    capabilities: ClassVar[ProviderCapabilities] = ProviderCapabilities(
        structured_output=True,
        reasoning=False,
        confidence=False,
        max_tokens=4096,
    )

    def __init__(
        self,
        response_text: str = vote_text("A", 0.8),
        should_fail: bool = False,
        latency_ms: float = 0.0,
        script: Script | None = None,
        fail_members: Sequence[str] = (),
        hang_members: Sequence[str] = (),
    ) -> None:
        self._response_text = response_text
        self._should_fail = should_fail
        self._latency_ms = latency_ms
        self._script = script
        self._fail_members = set(fail_members)
        self._hang_members = set(hang_members)
        self._call_count = 0
        self.requests: list[GenerateRequest] = []
        self.closed = False

    async def generate(self, request: GenerateRequest) -> GenerateResponse:
        """Generate a mock response."""
        self._call_count += 1
        self.requests.append(request)
        member_id = dict(request.metadata or {}).get("member_id")
        if member_id in self._hang_members:
            await asyncio.sleep(3600)
        if self._latency_ms:
            await asyncio.sleep(self._latency_ms / 1000)
        if self._should_fail or member_id in self._fail_members:
            raise RuntimeError("Mock provider failure")

        text = self._script(request) if self._script else self._response_text
        return GenerateResponse(
            text=text,
            usage={"prompt_tokens": 100, "completion_tokens": 50},
            model=request.model,
            finish_reason="stop",
        )

    async def supports(self, capability: str) -> bool:
        """Check if capability is supported."""
        return self.declares(capability)

    async def doctor(self) -> DoctorResult:
        """Return mock health check."""
        return DoctorResult(
            ok=not self._should_fail,
            message="Mock provider OK" if not self._should_fail else "Mock failure",
            latency_ms=self._latency_ms,
        )

    async def aclose(self) -> None:
        self.closed = True

    @property
    def call_count(self) -> int:
        """Get number of generate calls."""
        return self._call_count

    def calls_for(self, stage: str) -> list[GenerateRequest]:
        return [r for r in self.requests if dict(r.metadata or {}).get("stage") == stage]


def make_member(
    member_id: str,
    role: CouncilRole = CouncilRole.OPINION_GIVER,
    model: str = "gpt-5",
    **overrides: Any,
) -> CouncilMember:
    """Catalogue-backed member with a fixed id."""
    overrides.setdefault("name", member_id)
    return create_member(model, role, id=member_id, **overrides)


@pytest.fixture(autouse=True)
def _clean_model_config(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Isolate tests from CONSENSUS_* variables and the ModelConfig singleton."""
    for var in ("CONSENSUS_PROVIDER", "CONSENSUS_PLANNER_MODEL"):
        monkeypatch.delenv(var, raising=False)
    ModelConfig.reset()
    yield
    ModelConfig.reset()


@pytest.fixture
def mock_provider() -> MockProvider:
    """Create a basic mock provider."""
    return MockProvider()


@pytest.fixture
def failing_provider() -> MockProvider:
    """Create a mock provider that fails."""
    return MockProvider(should_fail=True)


@pytest.fixture
def mock_registry() -> ProviderRegistry:
    """Create a fresh registry with mock provider registered."""
    ProviderRegistry._instance = None
    registry = ProviderRegistry()
    registry.register_provider("mock", MockProvider)
    return registry


@pytest.fixture
def council_members() -> list[CouncilMember]:
    """Three opinion-givers, a reviewer, a synthesizer and one inactive backup."""
    return [
        make_member("m1", priority=0),
        make_member("m2", model="gpt-5-mini", priority=1),
        make_member("m3", model="gpt-4.1", priority=2),
        make_member("r1", CouncilRole.REVIEWER, model="gpt-4.1", priority=3),
        make_member("s1", CouncilRole.SYNTHESIZER, priority=4),
        make_member("b1", CouncilRole.BACKUP, model="o4-mini", priority=5),
    ]


@pytest.fixture
def sample_request() -> GenerateRequest:
    """Create a sample generate request."""
    return GenerateRequest(
        model="test-model",
        messages=[
            Message(role="system", content="You are a helpful assistant."),
            Message(role="user", content="Hello, world!"),
        ],
        max_tokens=100,
        temperature=0.7,
    )
