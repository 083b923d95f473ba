"""Configuration module for llm-consensus: model catalogue and council presets."""

from llm_consensus.config.models import (
    MODEL_CATALOGUE,
    ModelConfig,
    create_member,
    get_backend,
    members_from_specs,
)
from llm_consensus.config.presets import (
    COUNCIL_PRESETS,
    CouncilPreset,
    build_preset,
    get_preset,
    list_presets,
)

__all__ = [
    "COUNCIL_PRESETS",
    "CouncilPreset",
    "MODEL_CATALOGUE",
    "ModelConfig",
    "build_preset",
    "create_member",
    "get_backend",
    "get_preset",
    "list_presets",
    "members_from_specs",
]
