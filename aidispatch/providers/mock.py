from aidispatch.providers.base import Completion, Credential, GenerationPayload, ProviderClient


class MockClient(ProviderClient):
    """Free, offline, deterministic. Last link of the default fallback chain."""

    vendor = "mock"

    async def invoke(self, model: str, credential: Credential, payload: GenerationPayload) -> Completion:
        preview = payload.prompt.strip().splitlines()[0][:120] if payload.prompt.strip() else ""
        return Completion(
            text=f"[{model}] Mock response for: {preview}",
            model=model,
            tokens_used=None,
            usage=None,
        )
