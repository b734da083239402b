import json

import httpx
import pytest
from core.errors import ProviderError
from core.providers import GeminiAdapter, OpenAIChatAdapter, classify_transport_error


def _transport(handler):
    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_openai_adapter_returns_message_content():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200, json={"choices": [{"message": {"content": '{"npc_text": "Hi."}'}}]}
        )

    adapter = OpenAIChatAdapter(
        "sk-test", "gpt-test", "https://api.example.test/v1/", transport=_transport(handler)
    )
    result = await adapter.complete("say hi")
    await adapter.aclose()

    assert result.provider == "openai"
    assert result.text == '{"npc_text": "Hi."}'
    assert seen["url"] == "https://api.example.test/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["model"] == "gpt-test"
    assert seen["body"]["messages"][-1] == {"role": "user", "content": "say hi"}


@pytest.mark.asyncio
async def test_openai_rate_limit_is_quota_error():
    adapter = OpenAIChatAdapter(
        "sk-test",
        "gpt-test",
        "https://api.example.test/v1",
        transport=_transport(lambda request: httpx.Response(429, text="slow down")),
    )
    with pytest.raises(ProviderError) as excinfo:
        await adapter.complete("hi")
    assert excinfo.value.reason == "quota_429"
    assert excinfo.value.status == 429
    assert excinfo.value.provider == "openai"


@pytest.mark.asyncio
async def test_gemini_adapter_joins_parts_and_sends_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["key"] = request.url.params.get("key")
        seen["path"] = request.url.path
        return httpx.Response(
            200,
            json={"candidates": [{"content": {"parts": [{"text": "one"}, {"text": "two"}]}}]},
        )

    adapter = GeminiAdapter(
        "g-key", "gemini-test", "https://gemini.example.test/v1beta", transport=_transport(handler)
    )
    result = await adapter.complete("hi")
    assert result.text == "one\ntwo"
    assert seen["key"] == "g-key"
    assert seen["path"] == "/v1beta/models/gemini-test:generateContent"


@pytest.mark.asyncio
async def test_missing_key_is_permanent_error():
    adapter = OpenAIChatAdapter("", "gpt-test", "https://api.example.test/v1")
    assert adapter.is_configured() is False
    with pytest.raises(ProviderError) as excinfo:
        await adapter.complete("hi")
    assert excinfo.value.reason == "openai_key_missing"
    assert excinfo.value.kind == "permanent"


@pytest.mark.asyncio
async def test_non_json_body_is_rejected():
    adapter = GeminiAdapter(
        "g-key",
        "gemini-test",
        "https://gemini.example.test/v1beta",
        transport=_transport(lambda request: httpx.Response(200, text="<html>")),
    )
    with pytest.raises(ProviderError) as excinfo:
        await adapter.complete("hi")
    assert excinfo.value.reason == "invalid_json_body"


@pytest.mark.asyncio
async def test_connection_reset_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection reset by peer", request=request)

    adapter = OpenAIChatAdapter(
        "sk-test", "gpt-test", "https://api.example.test/v1", transport=_transport(handler)
    )
    with pytest.raises(ProviderError) as excinfo:
        await adapter.complete("hi")
    assert excinfo.value.reason == "transport_conn_reset"
    assert excinfo.value.is_transient


def test_classify_transport_error_reasons():
    request = httpx.Request("POST", "https://api.example.test")
    assert (
        classify_transport_error(httpx.ReadTimeout("slow", request=request)).reason
        == "transport_timeout"
    )
    assert (
        classify_transport_error(
            httpx.ConnectError("[Errno -2] Name or service not known", request=request)
        ).reason
        == "transport_dns_not_found"
    )
    assert (
        classify_transport_error(
            httpx.RemoteProtocolError("peer closed connection", request=request)
        ).reason
        == "transport_terminated"
    )


def test_status_classification():
    assert ProviderError.from_status(503).kind == "transient"
    assert ProviderError.from_status(401).kind == "permanent"
    assert ProviderError.from_status(429).is_quota
