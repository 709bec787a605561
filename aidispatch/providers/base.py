from abc import ABC, abstractmethod
from typing import Any, Literal

import httpx
from pydantic import BaseModel, Field

from aidispatch.core.config import get_settings


class GenerationPayload(BaseModel):
    prompt: str = Field(min_length=1)
    system_prompt: str | None = None
    max_tokens: int | None = Field(default=None, ge=1)
    temperature: float | None = Field(default=None, ge=0, le=2)


class Credential(BaseModel):
    """API key used for one provider invocation."""

    vendor: str
    api_key: str = Field(repr=False)
    source: Literal["user", "system"]
    token_id: str | None = None


class Completion(BaseModel):
    text: str
    model: str
    tokens_used: int | None = None
    usage: dict[str, Any] | None = None


class ProviderError(Exception):
    """Provider invocation failed. ``retryable`` failures may move on to a fallback."""

    retryable = True
    kind = "provider_error"

    def __init__(self, message: str, vendor: str | None = None, status_code: int | None = None):
        self.message = message
        self.vendor = vendor
        self.status_code = status_code
        super().__init__(message)


class RateLimitedError(ProviderError):
    kind = "rate_limited"

    def __init__(self, message: str, vendor: str | None = None, retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(message, vendor=vendor, status_code=429)


class ProviderUnavailableError(ProviderError):
    kind = "unavailable"


class NonRetryableProviderError(ProviderError):
    """Bad key, bad request or malformed response: retrying the same provider cannot help."""

    retryable = False
    kind = "rejected"


class ProviderClient(ABC):
    vendor: str

    @abstractmethod
    async def invoke(self, model: str, credential: Credential, payload: GenerationPayload) -> Completion:
        """Send one generation request; raise a ProviderError subclass on failure."""
        ...


class HttpProviderClient(ProviderClient):
    """JSON-over-HTTPS vendor API with status codes mapped onto ProviderError."""

    def __init__(
        self,
        base_url: str,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or get_settings().provider_http_timeout
        self.transport = transport

    async def _post(self, path: str, headers: dict[str, str], body: dict[str, Any]) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                transport=self.transport,
            ) as client:
                response = await client.post(path, headers=headers, json=body)
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(f"{self.vendor} request timed out", vendor=self.vendor) from e
        except httpx.RequestError as e:
            raise ProviderUnavailableError(f"{self.vendor} request failed: {e}", vendor=self.vendor) from e

        if response.status_code == 429:
            raise RateLimitedError(
                f"{self.vendor} rate limit exceeded",
                vendor=self.vendor,
                retry_after=_retry_after(response),
            )
        if response.status_code >= 500:
            raise ProviderUnavailableError(
                f"{self.vendor} returned {response.status_code}",
                vendor=self.vendor,
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise NonRetryableProviderError(
                f"{self.vendor} rejected request ({response.status_code}): {_error_message(response)}",
                vendor=self.vendor,
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise NonRetryableProviderError(f"Invalid {self.vendor} response body", vendor=self.vendor) from e

    def _require_key(self, credential: Credential) -> str:
        if not credential.api_key:
            raise NonRetryableProviderError(f"{self.vendor} API key not configured", vendor=self.vendor)
        return credential.api_key


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    try:
        return float(value) if value else None
    except ValueError:
        return None


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("type") or "")
    return str(error or "")[:200]


def get_provider_client(vendor: str) -> ProviderClient:
    settings = get_settings()
    if vendor == "openai":
        from aidispatch.providers.openai import OpenAIClient
        return OpenAIClient(settings.openai_base_url)
    if vendor == "anthropic":
        from aidispatch.providers.anthropic import AnthropicClient
        return AnthropicClient(settings.anthropic_base_url)
    if vendor == "mock":
        from aidispatch.providers.mock import MockClient
        return MockClient()
    raise NonRetryableProviderError(f"Unsupported AI vendor: {vendor}", vendor=vendor)
