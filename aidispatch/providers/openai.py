from aidispatch.core.config import get_settings
from aidispatch.providers.base import (
    Completion,
    Credential,
    GenerationPayload,
    HttpProviderClient,
    NonRetryableProviderError,
)

DEFAULT_TEMPERATURE = 0.7


class OpenAIClient(HttpProviderClient):
    """Chat Completions API."""

    vendor = "openai"

    async def invoke(self, model: str, credential: Credential, payload: GenerationPayload) -> Completion:
        api_key = self._require_key(credential)
        messages = []
        if payload.system_prompt:
            messages.append({"role": "system", "content": payload.system_prompt})
        messages.append({"role": "user", "content": payload.prompt})
        body = {
            "model": model,
            "messages": messages,
            "max_tokens": payload.max_tokens or get_settings().provider_max_tokens,
            "temperature": payload.temperature if payload.temperature is not None else DEFAULT_TEMPERATURE,
        }
        data = await self._post(
            "/chat/completions",
            headers={"Authorization": f"Bearer {api_key}"},
            body=body,
        )
        try:
            text = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise NonRetryableProviderError("Invalid OpenAI response format", vendor=self.vendor) from e
        if not isinstance(text, str):
            raise NonRetryableProviderError("Invalid OpenAI response format", vendor=self.vendor)

        usage = data.get("usage") or None
        tokens = usage.get("total_tokens") if usage else None
        return Completion(
            text=text,
            model=data.get("model") or model,
            tokens_used=tokens,
            usage=usage,
        )
