from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import aiohttp
import pytest
from aiohttp import test_utils, web


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from companion_core.services.anthropic_client import AnthropicClient  # noqa: E402
from companion_core.services.base import ProviderError, strip_json_fences  # noqa: E402
from companion_core.services.deepseek_client import DeepSeekClient  # noqa: E402
from companion_core.services.gemini_client import GeminiClient  # noqa: E402
from companion_core.services.openai_client import OpenAIClient  # noqa: E402


def _capture(client, response):  # type: ignore[no-untyped-def]
    captured: dict[str, object] = {}

    async def fake_post_json(url, payload, *, headers=None):  # type: ignore[no-untyped-def]
        captured["url"] = url
        captured["payload"] = payload
        captured["headers"] = headers
        return response

    client._post_json = fake_post_json  # type: ignore[method-assign]
    return captured


_CONVERSATION = [
    {"role": "system", "content": "Be kind."},
    {"role": "system", "content": "USER_CONTEXT_START\n\nsomething\n\nUSER_CONTEXT_END"},
    {"role": "user", "content": "Hi there"},
    {"role": "assistant", "content": "Hello!"},
    {"role": "user", "content": "How are you?"},
]


def test_strip_json_fences_handles_leading_and_embedded_blocks() -> None:
    assert strip_json_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_json_fences('```\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_json_fences('Here you go:\n```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_json_fences('  {"a": 1}  ') == '{"a": 1}'


def test_openai_client_sends_inline_system_messages_with_bearer_auth() -> None:
    client = OpenAIClient(api_key="sk-test", base_url="https://api.openai.com/v1/", temperature=0.7, max_output_tokens=400)
    captured = _capture(
        client,
        {"choices": [{"message": {"content": "  I'm well, thanks!  "}}], "usage": {"total_tokens": 42}},
    )

    reply = asyncio.run(client.invoke(_CONVERSATION, "chatgpt-4o-latest"))

    assert reply == "I'm well, thanks!"
    assert captured["url"] == "https://api.openai.com/v1/chat/completions"
    headers = captured["headers"]
    assert isinstance(headers, dict)
    assert headers["Authorization"] == "Bearer sk-test"
    payload = captured["payload"]
    assert isinstance(payload, dict)
    assert payload["model"] == "chatgpt-4o-latest"
    assert payload["temperature"] == 0.7
    assert payload["max_tokens"] == 400
    assert [m["role"] for m in payload["messages"]] == ["system", "system", "user", "assistant", "user"]


def test_openai_client_json_mode_lowers_temperature_and_strips_fences() -> None:
    client = OpenAIClient(api_key="sk-test", json_temperature=0.1)
    captured = _capture(client, {"choices": [{"message": {"content": '```json\n{"ok": true}\n```'}}]})

    reply = asyncio.run(client.invoke([{"role": "user", "content": "json please"}], "gpt-4o-mini", expect_json=True))

    assert reply == '{"ok": true}'
    payload = captured["payload"]
    assert isinstance(payload, dict)
    assert payload["temperature"] == 0.1


def test_openai_client_missing_content_raises_provider_error() -> None:
    client = OpenAIClient(api_key="sk-test")
    _capture(client, {"choices": []})

    with pytest.raises(ProviderError):
        asyncio.run(client.invoke([{"role": "user", "content": "hi"}], "gpt-4o-mini"))


def test_missing_api_key_raises_provider_error() -> None:
    client = OpenAIClient(api_key="")

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(client.invoke([{"role": "user", "content": "hi"}], "gpt-4o-mini"))

    assert exc_info.value.vendor == "openai"
    assert "OPENAI_API_KEY" in str(exc_info.value)


def test_deepseek_client_uses_openai_dialect_on_its_own_host() -> None:
    client = DeepSeekClient(api_key="ds-test")
    captured = _capture(
        client,
        {
            "choices": [{"message": {"content": "hello"}}],
            "usage": {"prompt_cache_hit_tokens": 3, "prompt_cache_miss_tokens": 7, "completion_tokens": 2},
        },
    )

    reply = asyncio.run(client.invoke([{"role": "user", "content": "hi"}], "deepseek-chat"))

    assert reply == "hello"
    assert captured["url"] == "https://api.deepseek.com/chat/completions"
    headers = captured["headers"]
    assert isinstance(headers, dict)
    assert headers["Authorization"] == "Bearer ds-test"


def test_anthropic_client_moves_system_messages_to_top_level_field() -> None:
    client = AnthropicClient(api_key="ak-test", max_output_tokens=300)
    captured = _capture(
        client,
        {
            "content": [
                {"type": "text", "text": "Doing well. "},
                {"type": "tool_use", "id": "x"},
                {"type": "text", "text": "And you?"},
            ],
            "usage": {"input_tokens": 10, "output_tokens": 5},
        },
    )

    reply = asyncio.run(client.invoke(_CONVERSATION, "claude-3-5-sonnet-latest"))

    assert reply == "Doing well. And you?"
    assert captured["url"] == "https://api.anthropic.com/v1/messages"
    headers = captured["headers"]
    assert isinstance(headers, dict)
    assert headers["x-api-key"] == "ak-test"
    assert headers["anthropic-version"] == "2023-06-01"
    payload = captured["payload"]
    assert isinstance(payload, dict)
    assert payload["system"] == "Be kind.\n\nUSER_CONTEXT_START\n\nsomething\n\nUSER_CONTEXT_END"
    assert [m["role"] for m in payload["messages"]] == ["user", "assistant", "user"]
    assert payload["max_tokens"] == 300


def test_anthropic_client_without_text_blocks_raises() -> None:
    client = AnthropicClient(api_key="ak-test")
    _capture(client, {"content": [{"type": "tool_use", "id": "x"}], "stop_reason": "tool_use"})

    with pytest.raises(ProviderError):
        asyncio.run(client.invoke([{"role": "user", "content": "hi"}], "claude-3-haiku"))


def test_gemini_client_maps_roles_and_system_instruction() -> None:
    client = GeminiClient(api_key="g-test", max_output_tokens=256)
    captured = _capture(
        client,
        {
            "candidates": [{"content": {"parts": [{"text": '{"a": 1}'}]}}],
            "usageMetadata": {"promptTokenCount": 5, "candidatesTokenCount": 3},
        },
    )

    reply = asyncio.run(client.invoke(_CONVERSATION, "gemini-1.5-pro", expect_json=True))

    assert reply == '{"a": 1}'
    assert captured["url"] == (
        "https://generativelanguage.googleapis.com/v1beta/models/gemini-1.5-pro:generateContent?key=g-test"
    )
    payload = captured["payload"]
    assert isinstance(payload, dict)
    assert [c["role"] for c in payload["contents"]] == ["user", "model", "user"]
    assert payload["contents"][1]["parts"][0]["text"] == "Hello!"
    assert payload["systemInstruction"]["parts"][0]["text"].startswith("Be kind.")
    assert payload["generationConfig"]["responseMimeType"] == "application/json"
    assert payload["generationConfig"]["maxOutputTokens"] == 256


def test_gemini_client_blocked_prompt_raises_with_reason() -> None:
    client = GeminiClient(api_key="g-test")
    _capture(client, {"promptFeedback": {"blockReason": "SAFETY"}})

    with pytest.raises(ProviderError, match="SAFETY"):
        asyncio.run(client.invoke([{"role": "user", "content": "hi"}], "gemini-1.5-flash"))


@pytest.mark.parametrize(
    "body",
    [
        {"candidates": ["oops"]},
        {"candidates": [{"content": ["x"]}]},
        {"candidates": [{"content": {"parts": "text"}}]},
        {"candidates": {"first": {}}},
        {"promptFeedback": "blocked"},
        {"candidates": [{"content": {"parts": ["bare string", 3]}}]},
    ],
)
def test_gemini_client_malformed_body_raises_provider_error(body: dict[str, object]) -> None:
    client = GeminiClient(api_key="g-test")
    _capture(client, body)

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(client.invoke([{"role": "user", "content": "hi"}], "gemini-1.5-flash"))

    assert exc_info.value.vendor == "gemini"


def test_gemini_client_requires_a_turn_besides_system() -> None:
    client = GeminiClient(api_key="g-test")
    _capture(client, {})

    with pytest.raises(ProviderError, match="No user message found"):
        asyncio.run(client.invoke([{"role": "system", "content": "only system"}], "gemini-1.5-flash"))


async def _post_to_stub(status: int, body: str, content_type: str = "application/json"):  # type: ignore[no-untyped-def]
    hits: list[dict[str, object]] = []

    async def handler(request: web.Request) -> web.Response:
        hits.append(await request.json())
        return web.Response(status=status, text=body, content_type=content_type)

    app = web.Application()
    app.router.add_post("/v1/chat/completions", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    client = OpenAIClient(api_key="sk-test", base_url=str(server.make_url("/v1")))
    try:
        result = await client._post_json(f"{client.base_url}/chat/completions", {"model": "m"})
        return result, hits
    finally:
        await client.close()
        await server.close()


def test_post_json_returns_decoded_object_on_200() -> None:
    result, hits = asyncio.run(_post_to_stub(200, '{"choices": []}'))

    assert result == {"choices": []}
    assert hits == [{"model": "m"}]


@pytest.mark.parametrize("status", [400, 401, 503])
def test_post_json_non_2xx_raises_with_status(status: int) -> None:
    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(_post_to_stub(status, '{"error": {"message": "nope"}}'))

    assert exc_info.value.status == status
    assert exc_info.value.vendor == "openai"
    assert f"API error {status}" in str(exc_info.value)
    assert "nope" in str(exc_info.value)


def test_post_json_rejects_non_json_body() -> None:
    with pytest.raises(ProviderError, match="invalid JSON body"):
        asyncio.run(_post_to_stub(200, "<html>gateway</html>", content_type="text/html"))


def test_post_json_rejects_json_array_body() -> None:
    with pytest.raises(ProviderError, match="non-object JSON"):
        asyncio.run(_post_to_stub(200, "[1, 2, 3]"))


class _BrokenSession:
    closed = False

    def post(self, url, json=None, headers=None):  # type: ignore[no-untyped-def]
        raise aiohttp.ClientConnectionError("connection refused")


def test_post_json_wraps_transport_errors() -> None:
    client = OpenAIClient(api_key="sk-test")
    client._session = _BrokenSession()  # type: ignore[assignment]

    with pytest.raises(ProviderError, match="transport error: connection refused") as exc_info:
        asyncio.run(client._post_json("https://api.openai.com/v1/chat/completions", {}))

    assert isinstance(exc_info.value.__cause__, aiohttp.ClientConnectionError)
    assert exc_info.value.status is None
