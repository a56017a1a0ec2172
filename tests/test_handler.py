from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import pytest

from src.folio.errors import (
    AllProvidersExhausted,
    AuthenticationError,
    ConversationFormatError,
    InvalidFallbackIndex,
    InvalidInput,
    NoProviderConfigured,
    RateLimited,
)
from src.folio.framing import FrameType, iter_frames
from src.folio.handler import ChatHandler, error_response, sanitize_messages, to_provider_messages
from src.folio.orchestrator import FallbackOrchestrator
from src.folio.registry import ProviderConfig, ProviderId, ProviderRegistry
from src.folio.tools import ToolSet, ToolSpec
from src.folio.types import StreamEvent, ToolCall


class ScriptedOrchestrator(FallbackOrchestrator):
    """Orchestrator whose adapters replay queued stream scripts per provider."""

    def __init__(self, registry: ProviderRegistry, scripts: dict[ProviderId, list[list[Any]]]) -> None:
        self.calls: list[dict[str, Any]] = []

        def factory(provider_id: ProviderId, config: ProviderConfig, model_override: str | None = None, **_: Any):
            return _Adapter(provider_id, model_override or config.default_model, scripts[provider_id], self.calls)

        super().__init__(registry, adapter_factory=factory)


class _Adapter:
    def __init__(self, provider_id: ProviderId, model: str, queue: list[list[Any]], calls: list[dict[str, Any]]) -> None:
        self.provider_id = provider_id
        self.model = model
        self._queue = queue
        self._calls = calls

    async def chat_stream(self, messages: list[dict[str, Any]], **kwargs: Any) -> AsyncIterator[StreamEvent]:
        self._calls.append({"provider": self.provider_id.value, "messages": list(messages), **kwargs})
        script = self._queue.pop(0)
        for item in script:
            if isinstance(item, Exception):
                raise item
            yield item


def make_handler(
    scripts: dict[ProviderId, list[list[Any]]],
    *,
    env: dict[str, str] | None = None,
    tools: ToolSet | None = None,
    max_steps: int = 2,
) -> tuple[ChatHandler, ScriptedOrchestrator]:
    registry = ProviderRegistry.from_environment(env or {"OPENAI_API_KEY": "o"})
    orchestrator = ScriptedOrchestrator(registry, scripts)
    handler = ChatHandler(orchestrator, registry, tools, "SYSTEM PROMPT", max_steps=max_steps)
    return handler, orchestrator


def run_turn(handler: ChatHandler, payload: Any) -> list[Any]:
    async def run() -> list[Any]:
        turn = await handler.prepare(payload)
        chunks = [chunk async for chunk in turn.frames()]
        return iter_frames(b"".join(chunks).decode("utf-8").splitlines())

    return asyncio.run(run())


def test_sanitize_drops_malformed_entries(caplog: pytest.LogCaptureFixture) -> None:
    raw = [
        {"role": "user", "content": "hi"},
        {"role": "bogus", "content": "x"},
        "not a message",
        {"role": "assistant", "content": "   "},
        {"role": "user", "content": 42},
        {"content": "no role"},
    ]

    with caplog.at_level(logging.WARNING, logger="src.folio.handler"):
        cleaned = sanitize_messages(raw)

    assert [(message.role, message.content) for message in cleaned] == [("user", "hi")]
    skipped = [record.getMessage() for record in caplog.records]
    assert len(skipped) == 5
    assert any("index=1" in line for line in skipped)


def test_sanitize_is_idempotent_on_clean_input() -> None:
    raw = [{"role": "user", "content": "a"}, {"role": "assistant", "content": "b"}]
    once = sanitize_messages(raw)
    twice = sanitize_messages([message.model_dump(exclude_none=True) for message in once])
    assert once == twice


@pytest.mark.parametrize("raw", [[], None, "hello", [{"role": "bogus", "content": "x"}]])
def test_sanitize_rejects_empty_or_invalid_payloads(raw: Any) -> None:
    with pytest.raises(InvalidInput):
        sanitize_messages(raw)


def test_tool_invocation_parts_expand_into_calls_and_results() -> None:
    messages = sanitize_messages(
        [
            {"role": "user", "content": "projects?"},
            {
                "role": "assistant",
                "content": "Here they are.",
                "parts": [
                    {"type": "text", "text": "Here they are."},
                    {
                        "type": "tool-invocation",
                        "toolInvocation": {
                            "state": "result",
                            "toolCallId": "call_1",
                            "toolName": "getProjects",
                            "args": {},
                            "result": "Trailhead",
                        },
                    },
                ],
            },
        ]
    )

    converted = to_provider_messages(messages)

    assert converted[1]["tool_calls"] == [
        {"id": "call_1", "type": "function", "function": {"name": "getProjects", "arguments": "{}"}}
    ]
    assert converted[2] == {
        "role": "tool",
        "tool_call_id": "call_1",
        "name": "getProjects",
        "content": "Trailhead",
    }


def test_bogus_message_is_filtered_and_request_proceeds() -> None:
    handler, orchestrator = make_handler(
        {ProviderId.OPENAI: [[StreamEvent.text_delta("Hello!"), StreamEvent.finish("stop")]]}
    )

    frames = run_turn(
        handler,
        {"messages": [{"role": "user", "content": "hi"}, {"role": "bogus", "content": "x"}]},
    )

    sent = orchestrator.calls[0]["messages"]
    assert sent == [
        {"role": "system", "content": "SYSTEM PROMPT"},
        {"role": "user", "content": "hi"},
    ]
    assert [frame.type for frame in frames] == [
        FrameType.START,
        FrameType.TEXT,
        FrameType.STEP_FINISH,
        FrameType.FINISH,
    ]
    assert frames[1].value == "Hello!"
    assert frames[-1].value["finishReason"] == "stop"


def test_empty_message_list_is_invalid_input() -> None:
    handler, orchestrator = make_handler({ProviderId.OPENAI: []})

    with pytest.raises(InvalidInput):
        asyncio.run(handler.prepare({"messages": []}))
    assert orchestrator.calls == []


def test_fallback_index_selects_configured_provider() -> None:
    env = {"OPENAI_API_KEY": "o", "ANTHROPIC_API_KEY": "a", "AI_FALLBACK_PROVIDERS": "anthropic"}
    handler, orchestrator = make_handler(
        {ProviderId.ANTHROPIC: [[StreamEvent.text_delta("claude"), StreamEvent.finish("stop")]]},
        env=env,
    )

    async def run() -> str:
        turn = await handler.prepare({"messages": [{"role": "user", "content": "hi"}], "fallbackIndex": 1})
        return turn.provider

    assert asyncio.run(run()) == "anthropic"
    assert orchestrator.calls[0]["provider"] == "anthropic"


@pytest.mark.parametrize("index", [2, -1, "1", 1.5])
def test_invalid_fallback_index_is_rejected(index: Any) -> None:
    env = {"OPENAI_API_KEY": "o", "AI_FALLBACK_PROVIDERS": "openai"}
    handler, orchestrator = make_handler({ProviderId.OPENAI: []}, env=env)

    with pytest.raises(InvalidFallbackIndex):
        asyncio.run(handler.prepare({"messages": [{"role": "user", "content": "hi"}], "fallbackIndex": index}))
    assert orchestrator.calls == []


def test_tool_calls_run_a_second_step_on_the_same_provider() -> None:
    executed: list[dict[str, Any]] = []

    async def get_skills(**kwargs: Any) -> str:
        executed.append(kwargs)
        return "Python, SQL"

    tools = ToolSet([ToolSpec(name="getSkills", description="skills", execute=get_skills)])
    handler, orchestrator = make_handler(
        {
            ProviderId.OPENAI: [
                [StreamEvent.call(ToolCall(id="call_1", name="getSkills")), StreamEvent.finish("tool_calls")],
                [StreamEvent.text_delta("I know Python."), StreamEvent.finish("stop")],
            ]
        },
        tools=tools,
    )

    frames = run_turn(handler, {"messages": [{"role": "user", "content": "skills?"}]})

    assert [frame.type for frame in frames] == [
        FrameType.START,
        FrameType.TOOL_CALL,
        FrameType.TOOL_RESULT,
        FrameType.STEP_FINISH,
        FrameType.TEXT,
        FrameType.STEP_FINISH,
        FrameType.FINISH,
    ]
    assert frames[1].value == {"toolCallId": "call_1", "toolName": "getSkills", "args": {}}
    assert frames[2].value == {"toolCallId": "call_1", "result": "Python, SQL"}
    assert frames[3].value["isContinued"] is True
    assert executed == [{}]
    second_step = orchestrator.calls[1]
    assert second_step["provider"] == "openai"
    assert second_step["tools"] == tools.definitions()
    assert second_step["messages"][-2]["tool_calls"][0]["function"]["name"] == "getSkills"
    assert second_step["messages"][-1] == {
        "role": "tool",
        "tool_call_id": "call_1",
        "name": "getSkills",
        "content": "Python, SQL",
    }


def test_last_step_executes_tools_without_continuing() -> None:
    tools = ToolSet([ToolSpec(name="getContact", description="contact", execute=lambda: "me@example.com")])
    handler, orchestrator = make_handler(
        {
            ProviderId.OPENAI: [
                [StreamEvent.call(ToolCall(id="c", name="getContact")), StreamEvent.finish("tool_calls")],
            ]
        },
        tools=tools,
        max_steps=1,
    )

    frames = run_turn(handler, {"messages": [{"role": "user", "content": "contact?"}]})

    assert frames[2].value["result"] == "me@example.com"
    assert frames[3].value["isContinued"] is False
    assert frames[-1].type is FrameType.FINISH
    assert len(orchestrator.calls) == 1


def test_mid_stream_failure_is_framed_not_raised() -> None:
    from src.folio.errors import ProviderUnavailable

    handler, _ = make_handler(
        {ProviderId.OPENAI: [[StreamEvent.text_delta("Hal"), ProviderUnavailable("connection reset")]]}
    )

    frames = run_turn(handler, {"messages": [{"role": "user", "content": "hi"}]})

    assert [frame.type for frame in frames] == [FrameType.START, FrameType.TEXT, FrameType.ERROR]
    assert "connection reset" not in frames[-1].value["message"]
    assert frames[-1].value["code"] == "provider_unavailable"


@pytest.mark.parametrize(
    ("exc", "status", "fallback_available", "code"),
    [
        (InvalidInput("bad"), 400, False, "invalid_input"),
        (InvalidFallbackIndex("bad"), 400, False, "invalid_fallback_index"),
        (ConversationFormatError("roles"), 422, False, "conversation_format_error"),
        (AuthenticationError("401"), 503, False, "authentication_error"),
        (RateLimited("429", retry_after=12), 429, False, "rate_limited"),
        (AllProvidersExhausted("google", "boom"), 503, True, "all_providers_exhausted"),
        (NoProviderConfigured("none"), 503, False, "no_provider_configured"),
    ],
)
def test_error_response_maps_every_kind(exc: Exception, status: int, fallback_available: bool, code: str) -> None:
    actual_status, body = error_response(exc)

    assert actual_status == status
    assert body["status"] == status
    assert body["fallbackAvailable"] is fallback_available
    assert body["code"] == code
    assert isinstance(body["error"], str) and body["error"]
    if isinstance(exc, RateLimited):
        assert body["retryAfter"] == 12


def test_error_response_never_leaks_provider_text() -> None:
    _, body = error_response(AuthenticationError("Incorrect API key provided: sk-live-123"))
    assert "sk-live-123" not in json.dumps(body)


def test_unknown_errors_map_to_500_with_message() -> None:
    status, body = error_response(RuntimeError("something odd"))
    assert status == 500
    assert body["error"] == "something odd"
    assert body["fallbackAvailable"] is False
