from aidispatch.core.config import get_settings
from aidispatch.providers.base import (
    Completion,
    Credential,
    GenerationPayload,
    HttpProviderClient,
    NonRetryableProviderError,
)

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicClient(HttpProviderClient):
    """Messages API."""

    vendor = "anthropic"

    async def invoke(self, model: str, credential: Credential, payload: GenerationPayload) -> Completion:
        api_key = self._require_key(credential)
        body = {
            "model": model,
            "max_tokens": payload.max_tokens or get_settings().provider_max_tokens,
            "messages": [{"role": "user", "content": payload.prompt}],
        }
        if payload.system_prompt:
            body["system"] = payload.system_prompt
        if payload.temperature is not None:
            body["temperature"] = payload.temperature
        data = await self._post(
            "/messages",
            headers={"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION},
            body=body,
        )
        try:
            text = data["content"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise NonRetryableProviderError("Invalid Anthropic response format", vendor=self.vendor) from e

        usage = data.get("usage") or None
        tokens = None
        if usage:
            tokens = (usage.get("input_tokens") or 0) + (usage.get("output_tokens") or 0)
        return Completion(
            text=text,
            model=data.get("model") or model,
            tokens_used=tokens,
            usage=usage,
        )
