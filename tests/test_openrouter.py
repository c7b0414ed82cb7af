import json

import httpx
import pytest

from bulk_seo import config
from bulk_seo.openrouter import InvalidResponse, OpenRouterClient, ProviderError, parse_seo_json


def _completion(content: str, usage: dict | None = None) -> dict:
    return {
        "model": "google/gemini-2.5-flash-lite",
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": usage if usage is not None else {"prompt_tokens": 80, "completion_tokens": 43, "total_tokens": 123},
    }


def _client(handler) -> OpenRouterClient:
    return OpenRouterClient(api_key="test-key", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_generate_seo_parses_json_and_tokens() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        content = json.dumps({"title": "Organic Tee", "metaDescription": "Soft organic cotton tee.", "bullets": ["a", "b"]})
        return httpx.Response(200, json=_completion(content))

    result = await _client(handler).generate_seo("101", "de", title="Organic Tee")

    assert result.language == "de"
    assert result.total_tokens == 123
    assert result.data["title"] == "Organic Tee"
    assert result.data["faq"] == []
    assert seen["auth"] == "Bearer test-key"
    assert seen["body"]["response_format"] == {"type": "json_object"}
    assert "'de'" in seen["body"]["messages"][-1]["content"]


@pytest.mark.asyncio
async def test_tokens_fall_back_to_prompt_plus_completion() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_completion("hello", usage={"prompt_tokens": 10, "completion_tokens": 5}))

    result = await _client(handler).call("hi")
    assert result.content == "hello"
    assert result.total_tokens == 15


@pytest.mark.asyncio
async def test_empty_content_is_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_completion(""))

    with pytest.raises(ProviderError, match="empty_provider_content"):
        await _client(handler).call("hi")


@pytest.mark.asyncio
async def test_unparseable_seo_is_invalid_response() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_completion("Sure! Here is your SEO."))

    with pytest.raises(InvalidResponse):
        await _client(handler).generate_seo("101", "en")


@pytest.mark.asyncio
async def test_client_error_is_not_retried() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(400, json={"error": "bad model"})

    with pytest.raises(ProviderError, match="http_400"):
        await _client(handler).call("hi")
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_transient_error_is_retried(monkeypatch) -> None:
    monkeypatch.setattr(config.settings, "provider_max_attempts", 2)
    responses = [httpx.Response(503), httpx.Response(200, json=_completion("ok"))]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    result = await _client(handler).call("hi")
    assert result.content == "ok"
    assert responses == []


@pytest.mark.asyncio
async def test_missing_api_key() -> None:
    with pytest.raises(ProviderError):
        await OpenRouterClient(api_key="").call("hi")


def test_parse_seo_json_strips_fences_and_truncates() -> None:
    content = "```json\n" + json.dumps({"title": "x" * 100, "metaDescription": "m", "bullets": list("abcdefgh")}) + "\n```"
    parsed = parse_seo_json(content)
    assert len(parsed["title"]) == 70
    assert len(parsed["bullets"]) == 6


def test_parse_seo_json_requires_title_and_description() -> None:
    with pytest.raises(InvalidResponse, match="metaDescription"):
        parse_seo_json(json.dumps({"title": "only title"}))


@pytest.mark.asyncio
async def test_null_usage_fields_count_as_zero() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_completion("hello", usage={"prompt_tokens": None, "completion_tokens": 7}))

    result = await _client(handler).call("hi")
    assert result.total_tokens == 7
