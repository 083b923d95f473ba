"""Provider adapters and registry utilities."""

from .base import (
    DoctorResult,
    ErrorType,
    GenerateRequest,
    GenerateResponse,
    Message,
    ProviderAdapter,
    ProviderCapabilities,
    ProviderCapabilityName,
    classify_error,
)
from .registry import AdapterCache, AdapterFactory, ProviderRegistry, get_registry

__all__ = [
    "AdapterCache",
    "AdapterFactory",
    "DoctorResult",
    "ErrorType",
    "GenerateRequest",
    "GenerateResponse",
    "Message",
    "ProviderAdapter",
    "ProviderCapabilityName",
    "ProviderCapabilities",
    "ProviderRegistry",
    "classify_error",
    "get_registry",
]
