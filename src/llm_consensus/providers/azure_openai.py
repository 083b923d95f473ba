"""
Azure OpenAI provider adapter.

Calls the Azure OpenAI chat completions REST endpoint directly over httpx.
The request's ``model`` is the deployment name.

Docs: https://learn.microsoft.com/azure/ai-services/openai/reference
"""

from __future__ import annotations

import contextlib
import logging
import os
import time
from typing import Any, ClassVar

import httpx

from llm_consensus.providers.base import (
    DoctorResult,
    GenerateRequest,
    GenerateResponse,
    ProviderAdapter,
    ProviderCapabilities,
)

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2024-12-01-preview"
DEFAULT_DEPLOYMENT = "gpt-5-mini"

# o-series deployments accept reasoning_effort and ignore temperature
REASONING_MODEL_PREFIXES = ("o1", "o3", "o4", "gpt-5")
FIXED_TEMPERATURE_PREFIXES = ("o1", "o3", "o4", "gpt-5")


def _make_schema_strict_compatible(schema: dict[str, Any]) -> dict[str, Any]:
    """Mark every object property required and closed, as strict mode demands."""
    result: dict[str, Any] = {}
    for key, value in schema.items():
        if key in ("$schema", "additionalProperties", "required"):
            continue
        if key == "properties" and isinstance(value, dict):
            result[key] = {
                name: _make_schema_strict_compatible(prop) if isinstance(prop, dict) else prop
                for name, prop in value.items()
            }
            result["required"] = list(value.keys())
        elif key == "items" and isinstance(value, dict):
            result[key] = _make_schema_strict_compatible(value)
        else:
            result[key] = value
    if schema.get("type") == "object":
        result["additionalProperties"] = False
    return result


class AzureOpenAIProvider(ProviderAdapter):
    """Azure OpenAI chat completions adapter.

    Environment variables:
        AZURE_OPENAI_ENDPOINT: Required. Resource endpoint, e.g.
            https://my-resource.openai.azure.com
        AZURE_OPENAI_API_KEY: Required. Resource key.
        AZURE_OPENAI_API_VERSION: Optional. REST API version.
    """

    name: ClassVar[str] = "azure-openai"
    capabilities: ClassVar[ProviderCapabilities] = ProviderCapabilities(
        structured_output=True,
        reasoning=True,
        confidence=False,
        max_tokens=None,  # Varies by deployment
    )

    def __init__(
        self,
        endpoint: str | None = None,
        api_key: str | None = None,
        api_version: str | None = None,
        default_deployment: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            endpoint: Resource endpoint. Falls back to AZURE_OPENAI_ENDPOINT.
            api_key: Resource key. Falls back to AZURE_OPENAI_API_KEY.
            api_version: REST API version. Falls back to AZURE_OPENAI_API_VERSION.
            default_deployment: Deployment used when a request names none.
            http_client: Optional custom HTTP client for testing.
        """
        self._endpoint = (endpoint or os.environ.get("AZURE_OPENAI_ENDPOINT") or "").rstrip("/")
        self._api_key = api_key or os.environ.get("AZURE_OPENAI_API_KEY")
        self._api_version = api_version or os.environ.get(
            "AZURE_OPENAI_API_VERSION", DEFAULT_API_VERSION
        )
        self._default_deployment = default_deployment or DEFAULT_DEPLOYMENT
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(120.0, connect=10.0))
        return self._http_client

    async def aclose(self) -> None:
        """Close the HTTP client if we own it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    def _get_headers(self) -> dict[str, str]:
        if not self._api_key:
            raise ValueError(
                "Azure OpenAI API key not configured. "
                "Set AZURE_OPENAI_API_KEY environment variable or pass api_key."
            )
        return {"api-key": self._api_key, "Content-Type": "application/json"}

    def _url(self, deployment: str) -> str:
        if not self._endpoint:
            raise ValueError(
                "Azure OpenAI endpoint not configured. "
                "Set AZURE_OPENAI_ENDPOINT environment variable or pass endpoint."
            )
        return (
            f"{self._endpoint}/openai/deployments/{deployment}/chat/completions"
            f"?api-version={self._api_version}"
        )

    def _build_request_body(self, request: GenerateRequest) -> dict[str, Any]:
        """Convert a GenerateRequest to the chat completions payload."""
        deployment = request.model or self._default_deployment
        body: dict[str, Any] = {
            "messages": [
                {"role": m.role, "content": m.content, **({"name": m.name} if m.name else {})}
                for m in request.messages
            ],
        }
        if request.max_tokens is not None:
            body["max_completion_tokens"] = request.max_tokens
        if request.temperature is not None and not deployment.startswith(
            FIXED_TEMPERATURE_PREFIXES
        ):
            body["temperature"] = request.temperature
        if request.stop:
            body["stop"] = list(request.stop)

        if request.structured_output:
            body["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": request.structured_output.name,
                    "strict": request.structured_output.strict,
                    "schema": _make_schema_strict_compatible(
                        dict(request.structured_output.json_schema)
                    ),
                },
            }

        if request.reasoning and request.reasoning.enabled and request.reasoning.effort:
            if deployment.startswith(REASONING_MODEL_PREFIXES):
                body["reasoning_effort"] = request.reasoning.effort
            else:
                logger.debug("Deployment %s ignores reasoning_effort", deployment)

        return body

    async def generate(self, request: GenerateRequest) -> GenerateResponse:
        """Complete one chat request.

        Raises:
            ValueError: If credentials are missing or the reply is empty.
            httpx.HTTPError: If the API call fails.
        """
        deployment = request.model or self._default_deployment
        client = await self._get_client()
        response = await client.post(
            self._url(deployment),
            headers=self._get_headers(),
            json=self._build_request_body(request),
        )
        response.raise_for_status()
        return self._parse_response(response.json(), deployment)

    def _parse_response(self, data: dict[str, Any], deployment: str) -> GenerateResponse:
        choices = data.get("choices") or [{}]
        choice = choices[0]
        text = (choice.get("message") or {}).get("content")
        if not text:
            raise ValueError(
                f"Empty response from deployment '{deployment}' "
                f"(finish_reason={choice.get('finish_reason')})"
            )

        usage = data.get("usage") or {}
        usage_dict = None
        if usage:
            usage_dict = {
                "prompt_tokens": usage.get("prompt_tokens", 0),
                "completion_tokens": usage.get("completion_tokens", 0),
                "total_tokens": usage.get("total_tokens", 0),
            }

        return GenerateResponse(
            text=text,
            usage=usage_dict,
            model=data.get("model") or deployment,
            finish_reason=choice.get("finish_reason"),
            raw=data,
        )

    async def supports(self, capability: str) -> bool:
        return self.declares(capability)

    async def doctor(self) -> DoctorResult:
        """Check credentials and that the resource answers."""
        start_time = time.time()

        if not self._endpoint or not self._api_key:
            return DoctorResult(
                ok=False,
                message="AZURE_OPENAI_ENDPOINT and AZURE_OPENAI_API_KEY must be set",
                details={"error": "missing_configuration"},
            )

        try:
            client = await self._get_client()
            response = await client.get(
                f"{self._endpoint}/openai/models?api-version={self._api_version}",
                headers=self._get_headers(),
            )
            response.raise_for_status()
            return DoctorResult(
                ok=True,
                message="Azure OpenAI endpoint is accessible",
                latency_ms=(time.time() - start_time) * 1000,
            )
        except httpx.HTTPStatusError as e:
            return DoctorResult(
                ok=False,
                message=f"API error: {e.response.status_code}",
                latency_ms=(time.time() - start_time) * 1000,
                details={"status_code": e.response.status_code},
            )
        except httpx.HTTPError as e:
            return DoctorResult(
                ok=False,
                message=f"Connection error: {e}",
                latency_ms=(time.time() - start_time) * 1000,
                details={"error": str(e)},
            )


def _register() -> None:
    """Register the adapter with the global registry."""
    from llm_consensus.providers.registry import get_registry

    with contextlib.suppress(ValueError):
        get_registry().register_provider(AzureOpenAIProvider.name, AzureOpenAIProvider)


_register()
