"""Registry of provider adapters and member-to-adapter resolution."""

from __future__ import annotations

import logging
from collections.abc import Callable
from importlib import metadata
from threading import RLock
from typing import Any, ClassVar

from llm_consensus.protocol.types import CouncilMember

from .base import ProviderAdapter

ENTRY_POINT_GROUP = "llm_consensus.providers"

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[CouncilMember], ProviderAdapter]


class ProviderRegistry:
    """Process-wide table of adapter classes keyed by provider name.

    ``ProviderRegistry()`` always returns the same instance. The first call
    loads adapters advertised under the ``llm_consensus.providers`` entry
    point group; more can be added with :meth:`register_provider`.
    """

    _instance: ClassVar[ProviderRegistry | None] = None
    _guard: ClassVar[RLock] = RLock()

    _classes: dict[str, type[ProviderAdapter]]
    _lock: RLock

    def __new__(cls) -> ProviderRegistry:
        with cls._guard:
            if cls._instance is None:
                registry = super().__new__(cls)
                registry._classes = {}
                registry._lock = RLock()
                # published before loading: adapter modules register themselves on import
                cls._instance = registry
                registry._load_entry_points()
            return cls._instance

    @staticmethod
    def _key(name: str) -> str:
        key = name.strip().lower()
        if not key:
            raise ValueError("Provider name is empty")
        return key

    def register_provider(self, name: str, adapter_class: type[ProviderAdapter]) -> None:
        """Bind ``name`` to an adapter class.

        Registering the same class twice is a no-op.

        Raises:
            ValueError: Empty name, or the name is bound to another class.
            TypeError: ``adapter_class`` is not a ProviderAdapter subclass.
        """
        key = self._key(name)
        if not (isinstance(adapter_class, type) and issubclass(adapter_class, ProviderAdapter)):
            raise TypeError(f"{adapter_class!r} is not a ProviderAdapter subclass")
        with self._lock:
            bound = self._classes.setdefault(key, adapter_class)
        if bound is not adapter_class:
            raise ValueError(f"Provider '{key}' is already bound to {bound.__qualname__}")

    def unregister_provider(self, name: str) -> None:
        with self._lock:
            self._classes.pop(self._key(name), None)

    def is_registered(self, name: str) -> bool:
        return self._key(name) in self._classes

    def get_provider(self, name: str, **kwargs: Any) -> ProviderAdapter:
        """Return a new adapter instance for ``name``.

        Raises:
            KeyError: Nothing is registered under that name.
        """
        key = self._key(name)
        try:
            adapter_class = self._classes[key]
        except KeyError:
            known = ", ".join(self.list_providers()) or "none"
            raise KeyError(f"Provider '{key}' is not registered (known: {known})") from None
        return adapter_class(**kwargs)

    def list_providers(self) -> list[str]:
        with self._lock:
            return sorted(self._classes)

    def _load_entry_points(self) -> None:
        try:
            found = metadata.entry_points(group=ENTRY_POINT_GROUP)
        except Exception:  # pragma: no cover
            logger.debug("Could not read %s entry points", ENTRY_POINT_GROUP, exc_info=True)
            return
        for entry_point in found:
            try:
                self.register_provider(entry_point.name, entry_point.load())
            except Exception as e:
                logger.warning("Ignoring provider entry point '%s': %s", entry_point.name, e)


def get_registry() -> ProviderRegistry:
    """Return the process-wide provider registry."""
    return ProviderRegistry()


class AdapterCache:
    """Adapter factory that shares one adapter instance per provider name.

    Used as the default ``adapter_factory`` of the pipeline so that members
    on the same provider reuse one HTTP client.
    """

    def __init__(self, registry: ProviderRegistry | None = None) -> None:
        self._registry = registry or get_registry()
        self._adapters: dict[str, ProviderAdapter] = {}

    def __call__(self, member: CouncilMember) -> ProviderAdapter:
        provider = member.backend.provider
        if provider not in self._adapters:
            self._adapters[provider] = self._registry.get_provider(provider)
        return self._adapters[provider]

    async def aclose(self) -> None:
        adapters, self._adapters = list(self._adapters.values()), {}
        for adapter in adapters:
            await adapter.aclose()


__all__ = [
    "ENTRY_POINT_GROUP",
    "AdapterCache",
    "AdapterFactory",
    "ProviderRegistry",
    "get_registry",
]
