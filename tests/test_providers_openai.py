from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from src.folio.errors import (
    AuthenticationError,
    ConversationFormatError,
    MisconfiguredProvider,
    ProviderUnavailable,
    RateLimited,
)
from src.folio.providers import INVOCATION_MODES, build
from src.folio.providers.openai import OpenAICompatProvider
from src.folio.registry import ProviderId, build_catalog
from src.folio.types import StreamEvent


def sse(*payloads: Any) -> bytes:
    chunks = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        chunks.append(f"data: {data}\n\n")
    return "".join(chunks).encode("utf-8")


def make_provider(provider_id: ProviderId, env: dict[str, str], **kwargs: Any) -> OpenAICompatProvider:
    catalog = build_catalog(env)
    provider = build(provider_id, catalog[provider_id], **kwargs)
    assert isinstance(provider, OpenAICompatProvider)
    return provider


def collect(provider: OpenAICompatProvider, **kwargs: Any) -> list[StreamEvent]:
    async def run() -> list[StreamEvent]:
        return [event async for event in provider.chat_stream([{"role": "user", "content": "hi"}], **kwargs)]

    return asyncio.run(run())


def test_invocation_modes_cover_every_provider() -> None:
    assert set(INVOCATION_MODES) == set(ProviderId)
    assert INVOCATION_MODES[ProviderId.OPENAI] == "stream"
    assert INVOCATION_MODES[ProviderId.OPENAI_COMPATIBLE] == "single"
    assert INVOCATION_MODES[ProviderId.CUSTOM] == "single"


def test_build_binds_default_or_override_model() -> None:
    catalog = build_catalog({"MISTRAL_API_KEY": "m"})
    assert build(ProviderId.MISTRAL, catalog[ProviderId.MISTRAL]).model == "mistral-large-latest"
    overridden = build(ProviderId.MISTRAL, catalog[ProviderId.MISTRAL], "mistral-small")
    assert overridden.model == "mistral-small"
    assert overridden.base_url == "https://api.mistral.ai/v1"


@pytest.mark.parametrize("provider_id", [ProviderId.OPENAI_COMPATIBLE, ProviderId.CUSTOM])
def test_build_requires_base_url_for_generic_endpoints(provider_id: ProviderId) -> None:
    catalog = build_catalog({"OPENAI_COMPATIBLE_API_KEY": "k", "CUSTOM_AI_API_KEY": "k"})
    with pytest.raises(MisconfiguredProvider):
        build(provider_id, catalog[provider_id])


def test_openrouter_sends_site_headers(provider_transport) -> None:
    seen = provider_transport(
        lambda request: httpx.Response(
            200,
            content=sse(
                {"choices": [{"index": 0, "delta": {"content": "hey"}}]},
                {"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]},
                "[DONE]",
            ),
        )
    )
    provider = make_provider(
        ProviderId.OPENROUTER,
        {"OPENROUTER_API_KEY": "or-key"},
        site_url="https://me.dev",
        site_title="Me",
    )

    events = collect(provider)

    request = seen[0]
    assert str(request.url) == "https://openrouter.ai/api/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer or-key"
    assert request.headers["HTTP-Referer"] == "https://me.dev"
    assert request.headers["X-Title"] == "Me"
    body = json.loads(request.content)
    assert body["model"] == "anthropic/claude-3.5-sonnet"
    assert body["stream"] is True
    assert [event.kind for event in events] == ["text", "finish"]
    assert events[-1].finish_reason == "stop"


def test_stream_assembles_tool_call_fragments(provider_transport) -> None:
    provider_transport(
        lambda request: httpx.Response(
            200,
            content=sse(
                {
                    "choices": [
                        {
                            "index": 0,
                            "delta": {
                                "tool_calls": [
                                    {"index": 0, "id": "call_1", "function": {"name": "getSkills", "arguments": ""}}
                                ]
                            },
                        }
                    ]
                },
                {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": "{\"lim"}}]}}]},
                {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": "it\": 2}"}}]}}]},
                {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}], "usage": {"prompt_tokens": 9, "completion_tokens": 4}},
                "[DONE]",
            ),
        )
    )
    provider = make_provider(ProviderId.OPENAI, {"OPENAI_API_KEY": "sk"})
    tools = [{"type": "function", "function": {"name": "getSkills", "parameters": {"type": "object", "properties": {}}}}]

    events = collect(provider, tools=tools)

    assert [event.kind for event in events] == ["tool_call", "finish"]
    call = events[0].tool_call
    assert call is not None
    assert (call.id, call.name, call.arguments) == ("call_1", "getSkills", {"limit": 2})
    assert events[1].finish_reason == "tool_calls"
    assert events[1].usage is not None and events[1].usage.prompt_tokens == 9


def test_stream_error_payload_raises_provider_unavailable(provider_transport) -> None:
    provider_transport(
        lambda request: httpx.Response(
            200,
            content=sse(
                {"choices": [{"index": 0, "delta": {"content": "par"}}]},
                {"error": {"message": "upstream overloaded"}},
            ),
        )
    )
    provider = make_provider(ProviderId.OPENAI, {"OPENAI_API_KEY": "sk"})

    with pytest.raises(ProviderUnavailable, match="upstream overloaded"):
        collect(provider)


def test_single_shot_chat_against_custom_base_url(provider_transport) -> None:
    seen = provider_transport(
        lambda request: httpx.Response(
            200,
            json={
                "model": "local-model",
                "choices": [{"index": 0, "message": {"role": "assistant", "content": "hello"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 3, "completion_tokens": 1},
            },
        )
    )
    provider = make_provider(
        ProviderId.CUSTOM,
        {"CUSTOM_AI_API_KEY": "c", "CUSTOM_AI_BASE_URL": "http://localhost:1234/v1", "CUSTOM_AI_MODEL": "local-model"},
    )

    response = asyncio.run(provider.chat([{"role": "user", "content": "hi"}]))

    assert str(seen[0].url) == "http://localhost:1234/v1/chat/completions"
    assert json.loads(seen[0].content)["stream"] is False
    assert response.content == "hello"
    assert response.model == "local-model"
    assert response.usage_prompt_tokens == 3


def test_base_url_with_chat_completions_suffix_is_kept(provider_transport) -> None:
    seen = provider_transport(
        lambda request: httpx.Response(
            200, json={"choices": [{"message": {"content": "ok"}}]}
        )
    )
    provider = make_provider(
        ProviderId.OPENAI_COMPATIBLE,
        {
            "OPENAI_COMPATIBLE_API_KEY": "k",
            "OPENAI_COMPATIBLE_BASE_URL": "https://llm.example.com/api/chat/completions",
        },
    )
    asyncio.run(provider.chat([{"role": "user", "content": "hi"}]))
    assert str(seen[0].url) == "https://llm.example.com/api/chat/completions"


@pytest.mark.parametrize(
    ("status", "body", "headers", "expected"),
    [
        (401, {"error": {"message": "bad key"}}, {}, AuthenticationError),
        (403, {"error": {"message": "forbidden"}}, {}, AuthenticationError),
        (429, {"error": {"message": "slow down"}}, {"Retry-After": "7"}, RateLimited),
        (
            400,
            {"error": {"message": "Invalid 'messages[2].role': unexpected role", "param": "messages[2].role"}},
            {},
            ConversationFormatError,
        ),
        (
            400,
            {"object": "error", "message": "Unexpected role 'user' after role 'tool'", "type": "invalid_request_message_order"},
            {},
            ConversationFormatError,
        ),
        (400, {"error": {"message": "max_tokens too large", "param": "max_tokens"}}, {}, ProviderUnavailable),
        (500, {"error": {"message": "boom"}}, {}, ProviderUnavailable),
    ],
)
def test_http_errors_are_tagged_at_detection(
    provider_transport, status: int, body: dict[str, Any], headers: dict[str, str], expected: type
) -> None:
    provider_transport(lambda request: httpx.Response(status, json=body, headers=headers))
    provider = make_provider(ProviderId.OPENAI, {"OPENAI_API_KEY": "sk"})

    with pytest.raises(expected) as excinfo:
        collect(provider)

    assert excinfo.value.provider == "openai"
    if expected is RateLimited:
        assert excinfo.value.retry_after == 7


def test_transport_errors_become_provider_unavailable(provider_transport) -> None:
    def fail(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider_transport(fail)
    provider = make_provider(ProviderId.OPENAI, {"OPENAI_API_KEY": "sk"})

    with pytest.raises(ProviderUnavailable, match="connection refused"):
        asyncio.run(provider.chat([{"role": "user", "content": "hi"}]))
