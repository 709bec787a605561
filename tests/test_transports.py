import json

import httpx
import pytest

from aidispatch.providers.anthropic import ANTHROPIC_VERSION, AnthropicClient
from aidispatch.providers.base import (
    Credential,
    GenerationPayload,
    NonRetryableProviderError,
    ProviderUnavailableError,
    RateLimitedError,
    get_provider_client,
)
from aidispatch.providers.mock import MockClient
from aidispatch.providers.openai import OpenAIClient

PAYLOAD = GenerationPayload(prompt="Summarise the README", system_prompt="Be brief")


def _openai(handler) -> OpenAIClient:
    return OpenAIClient("https://openai.test/v1", timeout=5, transport=httpx.MockTransport(handler))


def _anthropic(handler) -> AnthropicClient:
    return AnthropicClient("https://anthropic.test/v1", timeout=5, transport=httpx.MockTransport(handler))


def _key(vendor: str, api_key: str = "sk-test-key") -> Credential:
    return Credential(vendor=vendor, api_key=api_key, source="system")


async def test_openai_success_parses_text_and_tokens():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "model": "gpt-5",
                "choices": [{"message": {"role": "assistant", "content": "Short summary."}}],
                "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
            },
        )

    completion = await _openai(handler).invoke("gpt-5", _key("openai"), PAYLOAD)

    assert completion.text == "Short summary."
    assert completion.tokens_used == 15
    assert completion.model == "gpt-5"
    assert seen["url"] == "https://openai.test/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test-key"
    assert seen["body"]["messages"][0] == {"role": "system", "content": "Be brief"}
    assert seen["body"]["messages"][1]["content"] == "Summarise the README"
    assert seen["body"]["temperature"] == 0.7


async def test_anthropic_success_sums_input_and_output_tokens():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "model": "claude-3-5-sonnet-20241022",
                "content": [{"type": "text", "text": "Done."}],
                "usage": {"input_tokens": 12, "output_tokens": 30},
            },
        )

    completion = await _anthropic(handler).invoke("claude-3-5-sonnet-20241022", _key("anthropic"), PAYLOAD)

    assert completion.text == "Done."
    assert completion.tokens_used == 42
    assert seen["headers"]["x-api-key"] == "sk-test-key"
    assert seen["headers"]["anthropic-version"] == ANTHROPIC_VERSION
    assert seen["body"]["system"] == "Be brief"
    assert "temperature" not in seen["body"]


async def test_429_is_rate_limited_with_retry_after():
    client = _openai(lambda request: httpx.Response(429, headers={"retry-after": "2"}, json={}))
    with pytest.raises(RateLimitedError) as exc:
        await client.invoke("gpt-5", _key("openai"), PAYLOAD)
    assert exc.value.retry_after == 2.0
    assert exc.value.status_code == 429


@pytest.mark.parametrize("status", [500, 502, 503])
async def test_5xx_is_unavailable(status):
    client = _anthropic(lambda request: httpx.Response(status, text="overloaded"))
    with pytest.raises(ProviderUnavailableError) as exc:
        await client.invoke("claude-opus-4", _key("anthropic"), PAYLOAD)
    assert exc.value.retryable
    assert exc.value.status_code == status


async def test_401_is_not_retryable():
    client = _openai(lambda request: httpx.Response(401, json={"error": {"message": "Incorrect API key"}}))
    with pytest.raises(NonRetryableProviderError) as exc:
        await client.invoke("gpt-5", _key("openai"), PAYLOAD)
    assert not exc.value.retryable
    assert "Incorrect API key" in exc.value.message


async def test_network_failure_is_unavailable():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderUnavailableError):
        await _openai(handler).invoke("gpt-5", _key("openai"), PAYLOAD)


async def test_timeout_is_unavailable():
    def handler(request):
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(ProviderUnavailableError):
        await _anthropic(handler).invoke("claude-opus-4", _key("anthropic"), PAYLOAD)


async def test_malformed_body_is_rejected():
    client = _openai(lambda request: httpx.Response(200, json={"choices": []}))
    with pytest.raises(NonRetryableProviderError):
        await client.invoke("gpt-5", _key("openai"), PAYLOAD)

    client = _anthropic(lambda request: httpx.Response(200, text="<html>not json</html>"))
    with pytest.raises(NonRetryableProviderError):
        await client.invoke("claude-opus-4", _key("anthropic"), PAYLOAD)


async def test_missing_key_fails_before_any_request():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={})

    with pytest.raises(NonRetryableProviderError):
        await _openai(handler).invoke("gpt-5", _key("openai", api_key=""), PAYLOAD)
    assert calls == []


async def test_mock_client_echoes_first_line():
    completion = await MockClient().invoke(
        "mock-model",
        _key("mock", api_key=""),
        GenerationPayload(prompt="first line\nsecond line"),
    )
    assert completion.text == "[mock-model] Mock response for: first line"
    assert completion.tokens_used is None


def test_client_factory_by_vendor():
    assert isinstance(get_provider_client("openai"), OpenAIClient)
    assert isinstance(get_provider_client("anthropic"), AnthropicClient)
    assert isinstance(get_provider_client("mock"), MockClient)
    with pytest.raises(NonRetryableProviderError):
        get_provider_client("gemini")
