from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, List
from urllib.parse import urlparse, urlunparse

from ..errors import ProviderUnavailable
from ..types import ProviderChatResponse, StreamEvent, ToolCall, Usage
from . import BaseProvider, _parse_arguments

_ORDERING_ERROR_TYPES = frozenset({"invalid_request_message_order"})


class OpenAICompatProvider(BaseProvider):
    """Chat-completions adapter for OpenAI and the APIs that mirror it."""

    def _chat_completions_url(self) -> str:
        parsed = urlparse(self.base_url.strip())
        segments = [segment for segment in (parsed.path or "").split("/") if segment]
        lowered = [segment.lower() for segment in segments]
        if lowered[-2:] == ["chat", "completions"]:
            suffix: list[str] = []
        elif lowered[-1:] == ["chat"]:
            suffix = ["completions"]
        else:
            suffix = ["chat", "completions"]
        return urlunparse(parsed._replace(path="/" + "/".join(segments + suffix)))

    def _build_chat_request(
        self,
        messages: List[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None,
        max_tokens: int,
        temperature: float,
        stream: bool,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        key = self.config.credential.strip()
        if key:
            headers["Authorization"] = f"Bearer {key}"
        headers.update(self.extra_headers)
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": stream,
        }
        if tools:
            payload["tools"] = tools
        return self._chat_completions_url(), headers, payload

    def _is_conversation_format_error(self, status: int, payload: dict[str, Any] | None) -> bool:
        if payload is None:
            return False
        error = payload.get("error")
        if not isinstance(error, dict):
            # Mistral reports the error fields at the top level.
            error = payload
        if error.get("type") in _ORDERING_ERROR_TYPES or error.get("code") in _ORDERING_ERROR_TYPES:
            return True
        param = error.get("param")
        message = str(error.get("message") or "").lower()
        if isinstance(param, str) and param.startswith("messages"):
            return "role" in message or "tool_call" in message
        return "roles must alternate" in message or "unexpected role" in message

    @staticmethod
    def _tool_calls_from_message(raw_calls: Any, *, provider: str) -> list[ToolCall]:
        calls: list[ToolCall] = []
        if not isinstance(raw_calls, list):
            return calls
        for position, raw_call in enumerate(raw_calls):
            if not isinstance(raw_call, dict):
                continue
            function = raw_call.get("function")
            if not isinstance(function, dict):
                continue
            name = function.get("name")
            if not isinstance(name, str) or not name:
                raise ProviderUnavailable(
                    f"{provider} returned a tool call without a name",
                    provider=provider,
                    malformed=True,
                )
            calls.append(
                ToolCall(
                    id=raw_call.get("id") or f"call_{position}",
                    name=name,
                    arguments=_parse_arguments(function.get("arguments"), provider=provider),
                )
            )
        return calls

    async def chat(
        self,
        messages: List[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int = 4000,
        temperature: float = 0.7,
    ) -> ProviderChatResponse:
        url, headers, payload = self._build_chat_request(
            messages, tools=tools, max_tokens=max_tokens, temperature=temperature, stream=False
        )
        status_code, data = await self._post_json(url, headers, payload)
        raw_choices = data.get("choices") or []
        first_choice = raw_choices[0] if raw_choices and isinstance(raw_choices[0], dict) else {}
        message = first_choice.get("message")
        if not isinstance(message, dict):
            message = {}
        content = message.get("content")
        usage = data.get("usage") or {}
        return ProviderChatResponse(
            status_code=status_code,
            model=data.get("model") or self.model,
            content=content if isinstance(content, str) else None,
            finish_reason=first_choice.get("finish_reason"),
            tool_calls=self._tool_calls_from_message(message.get("tool_calls"), provider=self.name)
            or None,
            usage_prompt_tokens=usage.get("prompt_tokens", 0),
            usage_completion_tokens=usage.get("completion_tokens", 0),
        )

    async def chat_stream(
        self,
        messages: List[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int = 4000,
        temperature: float = 0.7,
    ) -> AsyncIterator[StreamEvent]:
        url, headers, payload = self._build_chat_request(
            messages, tools=tools, max_tokens=max_tokens, temperature=temperature, stream=True
        )
        usage = Usage()
        finish_reason: str | None = None
        # Tool call fragments arrive keyed by index; name and id come first,
        # arguments are concatenated across chunks.
        fragments: dict[int, dict[str, Any]] = {}
        async for _, chunk in self._stream_sse(url, headers, payload):
            error_payload = chunk.get("error")
            if isinstance(error_payload, dict):
                raise ProviderUnavailable(
                    str(error_payload.get("message") or f"{self.name} stream reported an error"),
                    provider=self.name,
                )
            usage_payload = chunk.get("usage")
            if isinstance(usage_payload, dict):
                usage.merge(
                    Usage(
                        prompt_tokens=usage_payload.get("prompt_tokens") or 0,
                        completion_tokens=usage_payload.get("completion_tokens") or 0,
                    )
                )
            choices = chunk.get("choices")
            if not isinstance(choices, list) or not choices:
                continue
            choice = choices[0]
            if not isinstance(choice, dict):
                continue
            delta = choice.get("delta")
            if isinstance(delta, dict):
                text_value = delta.get("content")
                if isinstance(text_value, str) and text_value:
                    yield StreamEvent.text_delta(text_value)
                for raw_call in delta.get("tool_calls") or []:
                    if not isinstance(raw_call, dict):
                        continue
                    index = raw_call.get("index")
                    if not isinstance(index, int):
                        index = len(fragments)
                    fragment = fragments.setdefault(index, {"id": None, "name": "", "arguments": []})
                    if raw_call.get("id"):
                        fragment["id"] = raw_call["id"]
                    function = raw_call.get("function")
                    if isinstance(function, dict):
                        if function.get("name"):
                            fragment["name"] = function["name"]
                        if isinstance(function.get("arguments"), str):
                            fragment["arguments"].append(function["arguments"])
            if isinstance(choice.get("finish_reason"), str):
                finish_reason = choice["finish_reason"]
        for index in sorted(fragments):
            fragment = fragments[index]
            if not fragment["name"]:
                raise ProviderUnavailable(
                    f"{self.name} streamed a tool call without a name",
                    provider=self.name,
                    malformed=True,
                )
            yield StreamEvent.call(
                ToolCall(
                    id=fragment["id"] or f"call_{index}",
                    name=fragment["name"],
                    arguments=_parse_arguments("".join(fragment["arguments"]), provider=self.name),
                )
            )
        if finish_reason is None and fragments:
            finish_reason = "tool_calls"
        yield StreamEvent.finish(finish_reason, usage)
