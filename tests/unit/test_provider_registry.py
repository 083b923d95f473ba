from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import pytest

from llm_consensus.protocol.types import CouncilRole
from llm_consensus.providers.base import (
    DoctorResult,
    GenerateRequest,
    GenerateResponse,
    ProviderAdapter,
    ProviderCapabilities,
)
from llm_consensus.providers.registry import AdapterCache, ProviderRegistry


class EchoProvider(ProviderAdapter):
    name = "echo"
    capabilities = ProviderCapabilities()

    def __init__(self) -> None:
        self.closed = False

    async def generate(self, request: GenerateRequest) -> GenerateResponse:
        return GenerateResponse(text=request.messages[-1].content)

    async def supports(self, capability: str) -> bool:
        return False

    async def doctor(self) -> DoctorResult:
        return DoctorResult(ok=True)

    async def aclose(self) -> None:
        self.closed = True


class OtherEchoProvider(EchoProvider):
    name = "echo2"


def _reset_registry_singleton() -> None:
    ProviderRegistry._instance = None


def test_registry_is_singleton() -> None:
    _reset_registry_singleton()
    assert ProviderRegistry() is ProviderRegistry()


def test_register_and_get_provider_instance() -> None:
    _reset_registry_singleton()
    registry = ProviderRegistry()

    registry.register_provider("Echo", EchoProvider)

    assert registry.is_registered("echo")
    assert isinstance(registry.get_provider("echo"), EchoProvider)


def test_register_duplicate_name_rejected() -> None:
    _reset_registry_singleton()
    registry = ProviderRegistry()

    registry.register_provider("echo", EchoProvider)
    registry.register_provider("echo", EchoProvider)
    with pytest.raises(ValueError):
        registry.register_provider("echo", OtherEchoProvider)


def test_register_rejects_non_adapters() -> None:
    _reset_registry_singleton()
    registry = ProviderRegistry()

    with pytest.raises(TypeError):
        registry.register_provider("bad", dict)  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        registry.register_provider("  ", EchoProvider)


def test_unknown_provider_lists_available() -> None:
    _reset_registry_singleton()
    registry = ProviderRegistry()
    registry.register_provider("echo", EchoProvider)

    with pytest.raises(KeyError, match="echo"):
        registry.get_provider("nope")

    registry.unregister_provider("echo")
    assert not registry.is_registered("echo")


@dataclass(frozen=True)
class _FakeEntryPoint:
    name: str
    value: Any

    def load(self) -> Any:
        return self.value


def test_entry_point_auto_discovery(monkeypatch: pytest.MonkeyPatch) -> None:
    _reset_registry_singleton()

    from llm_consensus.providers import registry as registry_module

    def fake_entry_points(*, group: str) -> list[_FakeEntryPoint]:
        assert group == "llm_consensus.providers"
        return [
            _FakeEntryPoint(name="echo", value=EchoProvider),
            _FakeEntryPoint(name="broken", value=object),
        ]

    monkeypatch.setattr(registry_module.metadata, "entry_points", fake_entry_points)

    registry = ProviderRegistry()
    assert "echo" in registry.list_providers()
    assert "broken" not in registry.list_providers()


@pytest.mark.asyncio
async def test_adapter_cache_shares_one_adapter_per_provider(monkeypatch) -> None:
    from llm_consensus.config.models import ModelConfig, create_member

    _reset_registry_singleton()
    registry = ProviderRegistry()
    registry.register_provider("echo", EchoProvider)
    monkeypatch.setenv("CONSENSUS_PROVIDER", "echo")
    ModelConfig.reset()
    cache = AdapterCache(registry)

    first = cache(create_member("gpt-5", CouncilRole.OPINION_GIVER))
    second = cache(create_member("o3", CouncilRole.REVIEWER))
    assert first is second

    await cache.aclose()
    assert first.closed
    assert cache(create_member("gpt-5", CouncilRole.OPINION_GIVER)) is not first
