"""Base provider adapter definitions for llm-consensus.

The engine talks to every model backend through :class:`ProviderAdapter`:
one chat completion in, one text reply (plus optional usage and confidence)
out. Any exception raised by an adapter is treated as "this member produced
no response this round".
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field


class ErrorType(str, Enum):
    """Classification of member call failures, used for logging and reports."""

    NONE = "none"
    TIMEOUT = "timeout"
    QUOTA = "quota"  # Credits exhausted, payment required
    RATE_LIMIT = "rate_limit"  # Too many requests (429)
    AUTH = "auth"  # API key invalid or missing
    MODEL_UNAVAILABLE = "model_unavailable"
    NETWORK = "network"
    MALFORMED_RESPONSE = "malformed_response"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


_QUOTA_PATTERNS = (
    "insufficient_quota",
    "quota",
    "billing",
    "credit",
    "payment required",
)

_RATE_LIMIT_PATTERNS = (
    "rate_limit",
    "rate limit",
    "too many requests",
    "429",
    "throttl",
)

_AUTH_PATTERNS = (
    "invalid_api_key",
    "invalid api key",
    "unauthorized",
    "authentication",
    "api key not configured",
    "access denied",
    "401",
    "403",
)

_MODEL_UNAVAILABLE_PATTERNS = (
    "model not found",
    "deploymentnotfound",
    "deployment not found",
    "does not exist",
    "overloaded",
    "capacity",
    "404",
)

_MALFORMED_PATTERNS = (
    "malformed",
    "empty response",
    "no position",
    "json",
)

_NETWORK_PATTERNS = (
    "connection",
    "network",
    "dns",
    "socket",
    "econnrefused",
    "econnreset",
)


def classify_error(error_text: str) -> ErrorType:
    """Classify an adapter failure from its message.

    Args:
        error_text: Exception message or HTTP error body.

    Returns:
        ErrorType classification for the error.
    """
    if not error_text:
        return ErrorType.UNKNOWN

    error_lower = error_text.lower()
    if "timeout" in error_lower or "timed out" in error_lower:
        return ErrorType.TIMEOUT

    for error_type, patterns in (
        (ErrorType.QUOTA, _QUOTA_PATTERNS),
        (ErrorType.RATE_LIMIT, _RATE_LIMIT_PATTERNS),
        (ErrorType.AUTH, _AUTH_PATTERNS),
        (ErrorType.MODEL_UNAVAILABLE, _MODEL_UNAVAILABLE_PATTERNS),
        (ErrorType.MALFORMED_RESPONSE, _MALFORMED_PATTERNS),
        (ErrorType.NETWORK, _NETWORK_PATTERNS),
    ):
        if any(pattern in error_lower for pattern in patterns):
            return error_type

    return ErrorType.UNKNOWN


class ProviderCapabilities(BaseModel):
    """What a backend can do beyond plain chat completion."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    structured_output: bool = Field(
        default=False, description="Supports JSON-schema constrained responses."
    )
    reasoning: bool = Field(default=False, description="Accepts a reasoning effort hint.")
    confidence: bool = Field(
        default=False, description="Reports a confidence score alongside the text."
    )
    max_tokens: int | None = Field(
        default=None, description="Per-reply token ceiling, when the backend has one."
    )


ProviderCapabilityName = Literal["structured_output", "reasoning", "confidence", "max_tokens"]


class Message(BaseModel):
    """Canonical chat message."""

    model_config = ConfigDict(extra="allow", frozen=True)

    role: Literal["system", "user", "assistant"] = Field(..., description="Message role.")
    content: str = Field(..., description="Message text.")
    name: str | None = None


class StructuredOutputConfig(BaseModel):
    """Provider-agnostic JSON schema constraint for a request."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    json_schema: Mapping[str, Any] = Field(..., description="Draft 7 schema the reply must match.")
    name: str = Field(default="council_plan", description="Schema name sent to the provider.")
    strict: bool = Field(default=True, description="Enforce strict schema adherence.")


class ReasoningConfig(BaseModel):
    """Reasoning hint forwarded to reasoning-capable models."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = Field(default=False)
    effort: Literal["low", "medium", "high"] | None = Field(default=None)


class GenerateRequest(BaseModel):
    """One chat completion request issued on behalf of a member."""

    model_config = ConfigDict(extra="allow")

    model: str | None = Field(default=None, description="Provider model or deployment identifier.")
    messages: Sequence[Message] = Field(..., min_length=1, description="Ordered chat messages.")
    max_tokens: int | None = Field(default=None, gt=0, description="Maximum tokens to generate.")
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    stop: Sequence[str] | None = None
    structured_output: StructuredOutputConfig | None = Field(default=None)
    reasoning: ReasoningConfig | None = Field(default=None)
    metadata: Mapping[str, Any] | None = Field(
        default=None, description="Routing data, e.g. member_id and stage."
    )


class GenerateResponse(BaseModel):
    """Provider-agnostic reply to a GenerateRequest."""

    model_config = ConfigDict(extra="allow")

    text: str | None = Field(default=None, description="Reply content.")
    usage: Mapping[str, int] | None = Field(
        default=None, description="Token usage (prompt_tokens/completion_tokens/total_tokens)."
    )
    confidence: float | None = Field(
        default=None, ge=0.0, le=1.0, description="Adapter-reported confidence, if any."
    )
    model: str | None = Field(default=None, description="Model or deployment that answered.")
    finish_reason: str | None = Field(default=None, description="Why generation ended.")
    raw: Any | None = Field(default=None, description="Unparsed backend payload.")


class DoctorResult(BaseModel):
    """Outcome of :meth:`ProviderAdapter.doctor`."""

    model_config = ConfigDict(extra="allow", frozen=True)

    ok: bool = Field(..., description="True when the backend is usable.")
    message: str | None = Field(default=None, description="Human-readable status.")
    latency_ms: float | None = Field(default=None, description="Health check latency.")
    details: Mapping[str, Any] | None = Field(default=None, description="Diagnostic details.")


class ProviderAdapter(ABC):
    """One model backend, as seen by the council.

    Subclasses set :attr:`name` (the provider key members resolve through,
    e.g. "azure-openai") and :attr:`capabilities`.

    ``generate`` should raise on transport, quota or malformed-response errors
    rather than returning an empty reply.
    """

    name: ClassVar[str]
    capabilities: ClassVar[ProviderCapabilities]

    @abstractmethod
    async def generate(self, request: GenerateRequest) -> GenerateResponse:
        """Complete one chat request."""

    @abstractmethod
    async def supports(self, capability: ProviderCapabilityName | str) -> bool:
        """Whether this backend handles ``capability`` for the configured deployment."""

    @abstractmethod
    async def doctor(self) -> DoctorResult:
        """Check credentials and reachability without generating anything."""

    async def aclose(self) -> None:  # noqa: B027
        """Release network resources. Adapters without any may ignore this."""

    @classmethod
    def declares(cls, capability: ProviderCapabilityName | str) -> bool:
        """True if :attr:`capabilities` enables ``capability``.

        ``max_tokens`` counts as declared when a limit is set.
        """
        if capability not in ProviderCapabilities.model_fields:
            return False
        value = getattr(cls.capabilities, capability)
        return value is not None and value is not False


__all__ = [
    "DoctorResult",
    "ErrorType",
    "GenerateRequest",
    "GenerateResponse",
    "Message",
    "ProviderAdapter",
    "ProviderCapabilities",
    "ProviderCapabilityName",
    "ReasoningConfig",
    "StructuredOutputConfig",
    "classify_error",
]
