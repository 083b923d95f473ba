"""llm-consensus package."""

from .council import Council
from .engine.orchestrator import DynamicOrchestrator
from .engine.pipeline import StagePipeline
from .engine.planner import CompositionPlanner, PlannerConfig
from .exceptions import (
    ConfigurationError,
    CouncilError,
    CouncilUnavailableError,
    PlanValidationError,
    SessionCancelledError,
    SessionNotFoundError,
)
from .protocol.types import (
    CouncilMember,
    DynamicCouncilConfig,
    Session,
    SessionConfig,
    TraceEvent,
    VotingMethod,
    VotingResult,
)
from .providers.base import (
    DoctorResult,
    GenerateRequest,
    GenerateResponse,
    Message,
    ProviderAdapter,
    ProviderCapabilities,
)
from .providers.registry import ProviderRegistry, get_registry

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "CompositionPlanner",
    "ConfigurationError",
    "Council",
    "CouncilError",
    "CouncilMember",
    "CouncilUnavailableError",
    "DoctorResult",
    "DynamicCouncilConfig",
    "DynamicOrchestrator",
    "GenerateRequest",
    "GenerateResponse",
    "Message",
    "PlanValidationError",
    "PlannerConfig",
    "ProviderAdapter",
    "ProviderCapabilities",
    "ProviderRegistry",
    "Session",
    "SessionCancelledError",
    "SessionConfig",
    "SessionNotFoundError",
    "StagePipeline",
    "TraceEvent",
    "VotingMethod",
    "VotingResult",
    "get_registry",
]
