"""Gemini adapter.

Gemini calls the assistant role ``model``, carries the system prompt in
``systemInstruction`` and returns tool calls as ``functionCall`` parts
without identifiers, so ids are minted here.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from typing import Any, List

from ..errors import ProviderUnavailable
from ..types import ProviderChatResponse, StreamEvent, ToolCall, Usage
from . import BaseProvider, _parse_arguments

_FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content-filter",
    "RECITATION": "content-filter",
    "BLOCKLIST": "content-filter",
    "PROHIBITED_CONTENT": "content-filter",
}


def _function_declaration(tool: dict[str, Any]) -> dict[str, Any] | None:
    function = tool.get("function") if tool.get("type") == "function" else tool
    if not isinstance(function, dict):
        return None
    name = function.get("name")
    if not isinstance(name, str) or not name:
        return None
    declaration: dict[str, Any] = {"name": name}
    description = function.get("description")
    if isinstance(description, str) and description:
        declaration["description"] = description
    parameters = function.get("parameters")
    # Gemini rejects OBJECT schemas with no properties.
    if isinstance(parameters, dict) and parameters.get("properties"):
        declaration["parameters"] = {
            key: value for key, value in parameters.items() if key != "additionalProperties"
        }
    return declaration


class GeminiProvider(BaseProvider):
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    def _model_url(self, *, stream: bool) -> str:
        base = self.base_url.rstrip("/")
        if stream:
            return f"{base}/models/{self.model}:streamGenerateContent?alt=sse"
        return f"{base}/models/{self.model}:generateContent"

    def _build_chat_request(
        self,
        messages: List[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None,
        max_tokens: int,
        temperature: float,
        stream: bool,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers = {
            "x-goog-api-key": self.config.credential.strip(),
            "Content-Type": "application/json",
        }
        headers.update(self.extra_headers)
        system_parts: list[dict[str, str]] = []
        contents: list[dict[str, Any]] = []
        call_names: dict[str, str] = {}
        for message in messages:
            role = message.get("role")
            content = message.get("content")
            text = content if isinstance(content, str) else ""
            if role == "system":
                if text:
                    system_parts.append({"text": text})
                continue
            if role == "tool":
                call_id = message.get("tool_call_id") or ""
                name = message.get("name") or call_names.get(call_id) or "tool"
                part = {"functionResponse": {"name": name, "response": {"content": text}}}
                if contents and contents[-1]["role"] == "user" and all(
                    "functionResponse" in item for item in contents[-1]["parts"]
                ):
                    contents[-1]["parts"].append(part)
                else:
                    contents.append({"role": "user", "parts": [part]})
                continue
            parts: list[dict[str, Any]] = []
            if text:
                parts.append({"text": text})
            for tool_call in message.get("tool_calls") or []:
                function = tool_call.get("function") if isinstance(tool_call, dict) else None
                if not isinstance(function, dict) or not function.get("name"):
                    continue
                call_names[tool_call.get("id") or ""] = function["name"]
                args = function.get("arguments")
                parts.append(
                    {
                        "functionCall": {
                            "name": function["name"],
                            "args": _parse_arguments(args, provider=self.name),
                        }
                    }
                )
            if not parts:
                parts.append({"text": ""})
            contents.append({"role": "model" if role == "assistant" else "user", "parts": parts})
        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {"maxOutputTokens": max_tokens, "temperature": temperature},
        }
        if system_parts:
            body["systemInstruction"] = {"parts": system_parts}
        if tools:
            declarations = [decl for decl in map(_function_declaration, tools) if decl is not None]
            if declarations:
                body["tools"] = [{"functionDeclarations": declarations}]
        return self._model_url(stream=stream), headers, body

    def _is_conversation_format_error(self, status: int, payload: dict[str, Any] | None) -> bool:
        if payload is None:
            return False
        error = payload.get("error")
        if not isinstance(error, dict) or error.get("status") != "INVALID_ARGUMENT":
            return False
        message = str(error.get("message") or "").lower()
        return (
            "alternate between user and model" in message
            or "function call turn" in message
            or "function response turn" in message
        )

    @staticmethod
    def _usage(data: dict[str, Any]) -> Usage | None:
        metadata = data.get("usageMetadata")
        if not isinstance(metadata, dict):
            return None
        return Usage(
            prompt_tokens=metadata.get("promptTokenCount") or 0,
            completion_tokens=metadata.get("candidatesTokenCount") or 0,
        )

    def _split_parts(self, candidate: dict[str, Any]) -> tuple[str, list[ToolCall]]:
        content = candidate.get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        text_parts: list[str] = []
        calls: list[ToolCall] = []
        for part in parts or []:
            if not isinstance(part, dict):
                continue
            if isinstance(part.get("text"), str):
                text_parts.append(part["text"])
            function_call = part.get("functionCall")
            if isinstance(function_call, dict):
                name = function_call.get("name")
                if not isinstance(name, str) or not name:
                    raise ProviderUnavailable(
                        "Gemini returned a functionCall without a name",
                        provider=self.name,
                        malformed=True,
                    )
                calls.append(
                    ToolCall(
                        id=f"call_{uuid.uuid4().hex[:12]}",
                        name=name,
                        arguments=_parse_arguments(function_call.get("args"), provider=self.name),
                    )
                )
        return "".join(text_parts), calls

    @staticmethod
    def _map_finish_reason(raw: Any, has_calls: bool) -> str | None:
        if has_calls:
            return "tool_calls"
        if not isinstance(raw, str):
            return None
        return _FINISH_REASONS.get(raw, raw.lower())

    async def chat(
        self,
        messages: List[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int = 4000,
        temperature: float = 0.7,
    ) -> ProviderChatResponse:
        url, headers, body = self._build_chat_request(
            messages, tools=tools, max_tokens=max_tokens, temperature=temperature, stream=False
        )
        status_code, data = await self._post_json(url, headers, body)
        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
            raise ProviderUnavailable(
                "Gemini response missing candidates",
                provider=self.name,
                status_code=status_code,
                malformed=True,
            )
        candidate = candidates[0]
        text, calls = self._split_parts(candidate)
        usage = self._usage(data) or Usage()
        return ProviderChatResponse(
            status_code=status_code,
            model=data.get("modelVersion") or self.model,
            content=text or None,
            finish_reason=self._map_finish_reason(candidate.get("finishReason"), bool(calls)),
            tool_calls=calls or None,
            usage_prompt_tokens=usage.prompt_tokens,
            usage_completion_tokens=usage.completion_tokens,
        )

    async def chat_stream(
        self,
        messages: List[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int = 4000,
        temperature: float = 0.7,
    ) -> AsyncIterator[StreamEvent]:
        url, headers, body = self._build_chat_request(
            messages, tools=tools, max_tokens=max_tokens, temperature=temperature, stream=True
        )
        usage = Usage()
        raw_finish: Any = None
        saw_calls = False
        async for _, data in self._stream_sse(url, headers, body):
            error_payload = data.get("error")
            if isinstance(error_payload, dict):
                raise ProviderUnavailable(
                    str(error_payload.get("message") or "Gemini stream reported an error"),
                    provider=self.name,
                )
            usage.merge(self._usage(data))
            candidates = data.get("candidates")
            if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
                continue
            candidate = candidates[0]
            text, calls = self._split_parts(candidate)
            if text:
                yield StreamEvent.text_delta(text)
            for call in calls:
                saw_calls = True
                yield StreamEvent.call(call)
            if candidate.get("finishReason"):
                raw_finish = candidate["finishReason"]
        yield StreamEvent.finish(self._map_finish_reason(raw_finish, saw_calls), usage)
