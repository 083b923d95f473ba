"""
Model catalogue for council members.

Every council member is bound to one entry of the catalogue below. The
catalogue keys ("gpt-5", "o3", ...) are what presets and the planner refer
to; the provider and deployment behind each key can be overridden through
environment variables.

Environment Variables:
    CONSENSUS_PROVIDER: Provider adapter name for all catalogue models
        (default: azure-openai).
    CONSENSUS_PLANNER_MODEL: Catalogue key used by the LLM planner
        (default: gpt-5-mini).
    CONSENSUS_MODEL_<KEY>: Deployment override for one catalogue key, with the
        key upper-cased and non-alphanumerics replaced by "_"
        (e.g. CONSENSUS_MODEL_GPT_4_1=my-gpt41-deployment).
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable
from typing import Any, ClassVar

from llm_consensus.protocol.types import (
    CouncilMember,
    CouncilRole,
    MemberSpec,
    ModelBackend,
    ModelCapability,
    new_id,
)

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "azure-openai"
DEFAULT_PLANNER_MODEL = "gpt-5-mini"

ENV_PROVIDER = "CONSENSUS_PROVIDER"
ENV_PLANNER_MODEL = "CONSENSUS_PLANNER_MODEL"
ENV_MODEL_PREFIX = "CONSENSUS_MODEL_"

_C = ModelCapability

# key -> (display name, capabilities, max tokens, reasoning effort)
MODEL_CATALOGUE: dict[str, tuple[str, tuple[ModelCapability, ...], int, str | None]] = {
    "gpt-5": (
        "GPT-5",
        (_C.CHAT, _C.REASONING, _C.CODE, _C.FUNCTION_CALLING, _C.AGENTS),
        100_000,
        "medium",
    ),
    "gpt-5-mini": ("GPT-5 Mini", (_C.CHAT, _C.CODE, _C.AGENTS), 100_000, None),
    "gpt-4.1": (
        "GPT-4.1",
        (_C.CHAT, _C.CODE, _C.FUNCTION_CALLING, _C.LONG_CONTEXT),
        32_768,
        None,
    ),
    "o4-mini": ("o4-mini (Reasoning)", (_C.CHAT, _C.REASONING, _C.AGENTS), 100_000, "medium"),
    "o3-mini": ("o3-mini (Reasoning)", (_C.CHAT, _C.REASONING), 65_536, "medium"),
    "o3": ("o3 (Deep Reasoning)", (_C.CHAT, _C.REASONING), 100_000, "high"),
}


def _env_key(model_key: str) -> str:
    return ENV_MODEL_PREFIX + re.sub(r"[^A-Za-z0-9]", "_", model_key).upper()


class ModelConfig:
    """Resolved catalogue: catalogue entries plus environment overrides."""

    _instance: ClassVar[ModelConfig | None] = None

    def __init__(self) -> None:
        self._provider = DEFAULT_PROVIDER
        self._planner_model = DEFAULT_PLANNER_MODEL
        self._deployments: dict[str, str] = {}
        self._load_from_env()

    @classmethod
    def get_instance(cls) -> ModelConfig:
        """Get or create the singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset the singleton instance (for testing)."""
        cls._instance = None

    def _load_from_env(self) -> None:
        provider = os.environ.get(ENV_PROVIDER)
        if provider and provider.strip():
            self._provider = provider.strip()

        planner = os.environ.get(ENV_PLANNER_MODEL)
        if planner and planner.strip():
            if planner.strip() in MODEL_CATALOGUE:
                self._planner_model = planner.strip()
            else:
                logger.warning(
                    "Ignoring %s=%s: not a catalogue model", ENV_PLANNER_MODEL, planner
                )

        for key in MODEL_CATALOGUE:
            value = os.environ.get(_env_key(key))
            if value and value.strip():
                self._deployments[key] = value.strip()

    @property
    def provider(self) -> str:
        return self._provider

    @property
    def planner_model(self) -> str:
        return self._planner_model

    def known_models(self) -> list[str]:
        return list(MODEL_CATALOGUE)

    def is_known(self, model_key: str) -> bool:
        return model_key in MODEL_CATALOGUE

    def get_backend(self, model_key: str) -> ModelBackend:
        """Return the backend for a catalogue key.

        Raises:
            ValueError: If the key is not in the catalogue.
        """
        if model_key not in MODEL_CATALOGUE:
            raise ValueError(
                f"Unknown model '{model_key}'. Known models: {', '.join(MODEL_CATALOGUE)}"
            )
        name, capabilities, max_tokens, effort = MODEL_CATALOGUE[model_key]
        return ModelBackend(
            id=f"{self._provider}-{model_key}",
            name=name,
            provider=self._provider,
            model=self._deployments.get(model_key, model_key),
            capabilities=capabilities,
            max_tokens=max_tokens,
            temperature=1.0,
            reasoning_effort=effort,
        )

    def reasoning_models(self) -> list[str]:
        return [k for k, entry in MODEL_CATALOGUE.items() if _C.REASONING in entry[1]]


def get_backend(model_key: str) -> ModelBackend:
    """Convenience wrapper around the singleton ModelConfig."""
    return ModelConfig.get_instance().get_backend(model_key)


def get_planner_model() -> str:
    return ModelConfig.get_instance().planner_model


def create_member(
    model_key: str,
    role: CouncilRole = CouncilRole.OPINION_GIVER,
    **overrides: Any,
) -> CouncilMember:
    """Create a council member bound to a catalogue model.

    Args:
        model_key: Catalogue key (e.g. "gpt-5").
        role: Member role.
        **overrides: Any other CouncilMember field (name, weight, priority, ...).
    """
    backend = get_backend(model_key)
    fields: dict[str, Any] = {
        "id": new_id(f"member-{model_key}"),
        "name": backend.name,
        "backend": backend,
        "role": role,
        # backups sit out until self-correction activates them
        "is_active": role != CouncilRole.BACKUP,
    }
    fields.update({k: v for k, v in overrides.items() if v is not None})
    return CouncilMember(**fields)


def members_from_specs(specs: Iterable[MemberSpec]) -> list[CouncilMember]:
    """Turn member specs into members, skipping unknown catalogue models.

    Priorities follow the order of ``specs``.
    """
    config = ModelConfig.get_instance()
    members: list[CouncilMember] = []
    for spec in specs:
        if not config.is_known(spec.model):
            logger.warning("Skipping member with unknown model '%s'", spec.model)
            continue
        members.append(
            create_member(
                spec.model,
                spec.role,
                name=spec.name,
                weight=spec.weight,
                priority=len(members),
                persona=spec.persona,
                system_prompt=spec.system_prompt,
                temperature=spec.temperature,
            )
        )
    return members


__all__ = [
    "DEFAULT_PLANNER_MODEL",
    "DEFAULT_PROVIDER",
    "MODEL_CATALOGUE",
    "ModelConfig",
    "create_member",
    "get_backend",
    "get_planner_model",
    "members_from_specs",
]
