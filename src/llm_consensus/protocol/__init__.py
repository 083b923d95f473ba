"""
Protocol definitions for llm-consensus.

Pydantic models for members, votes, sessions, trace events and configuration.
"""

from llm_consensus.protocol.types import (
    ConfigResult,
    CouncilMember,
    DynamicCouncilConfig,
    Session,
    SessionConfig,
    TraceEvent,
    Vote,
    VotingMethod,
    VotingResult,
    build_dynamic_config,
    build_session_config,
)

__all__ = [
    "ConfigResult",
    "CouncilMember",
    "DynamicCouncilConfig",
    "Session",
    "SessionConfig",
    "TraceEvent",
    "Vote",
    "VotingMethod",
    "VotingResult",
    "build_dynamic_config",
    "build_session_config",
]
