import json
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, List

import httpx

from ..errors import (
    AuthenticationError,
    ConversationFormatError,
    FolioError,
    MisconfiguredProvider,
    ProviderUnavailable,
    RateLimited,
)
from ..registry import ProviderConfig, ProviderId
from ..types import InvocationMode, ProviderChatResponse, StreamEvent, ToolCall, Usage

DEFAULT_TIMEOUT_SECONDS = 60.0


def _retry_after_seconds(response: httpx.Response | None) -> int | None:
    if response is None:
        return None
    header = response.headers.get("Retry-After")
    if not header:
        return None
    value = header.strip()
    if not value:
        return None
    if value.isdigit():
        return max(int(value), 0)
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    delta = (parsed - datetime.now(timezone.utc)).total_seconds()
    return max(int(delta), 0)


def _error_payload(response: httpx.Response) -> dict[str, Any] | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def _error_message(response: httpx.Response, payload: dict[str, Any] | None) -> str:
    if payload is not None:
        error_field = payload.get("error")
        if isinstance(error_field, dict):
            error_message = error_field.get("message")
            if isinstance(error_message, str) and error_message:
                return error_message
        elif isinstance(error_field, str) and error_field:
            return error_field
        nested_message = payload.get("message")
        if isinstance(nested_message, str) and nested_message:
            return nested_message
    text = response.text
    if text:
        return text
    return response.reason_phrase or f"HTTP {response.status_code}"


def _parse_arguments(raw: Any, *, provider: str) -> dict[str, Any]:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ProviderUnavailable(
                f"{provider} returned tool arguments that are not valid JSON",
                provider=provider,
                malformed=True,
            ) from exc
        if isinstance(parsed, dict):
            return parsed
    raise ProviderUnavailable(
        f"{provider} returned tool arguments that are not an object",
        provider=provider,
        malformed=True,
    )


async def _iter_sse_payloads(response: httpx.Response) -> AsyncIterator[tuple[str | None, dict[str, Any]]]:
    data_lines: list[str] = []
    event_name: str | None = None
    async for raw_line in response.aiter_lines():
        if raw_line is None:
            continue
        line = raw_line.strip("\r")
        if line == "":
            if not data_lines:
                event_name = None
                continue
            data_text = "\n".join(data_lines)
            data_lines.clear()
            current_event, event_name = event_name, None
            if data_text == "[DONE]":
                return
            try:
                payload = json.loads(data_text)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                yield current_event, payload
            continue
        if line.startswith(":"):
            continue
        if line.startswith("event:"):
            event_name = line[6:].strip() or None
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    if data_lines:
        data_text = "\n".join(data_lines)
        if data_text and data_text != "[DONE]":
            try:
                payload = json.loads(data_text)
            except json.JSONDecodeError:
                return
            if isinstance(payload, dict):
                yield event_name, payload


class BaseProvider:
    default_base_url: str | None = None

    def __init__(
        self,
        provider_id: ProviderId,
        config: ProviderConfig,
        model: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        extra_headers: dict[str, str] | None = None,
    ):
        self.provider_id = provider_id
        self.config = config
        self.model = model
        self.timeout = timeout
        self.extra_headers = dict(extra_headers or {})
        self.base_url = (config.base_url or self.default_base_url or "").strip()

    @property
    def mode(self) -> InvocationMode:
        return INVOCATION_MODES[self.provider_id]

    @property
    def name(self) -> str:
        return self.provider_id.value

    async def chat(
        self,
        messages: List[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int = 4000,
        temperature: float = 0.7,
    ) -> ProviderChatResponse:
        raise NotImplementedError

    def chat_stream(
        self,
        messages: List[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int = 4000,
        temperature: float = 0.7,
    ) -> AsyncIterator[StreamEvent]:
        raise NotImplementedError

    def _is_conversation_format_error(self, status: int, payload: dict[str, Any] | None) -> bool:
        return False

    def classify_http_error(self, response: httpx.Response) -> FolioError:
        status = response.status_code
        payload = _error_payload(response)
        message = _error_message(response, payload)
        provider = self.name
        if status in (401, 403):
            return AuthenticationError(message, provider=provider)
        if status == 429:
            return RateLimited(message, provider=provider, retry_after=_retry_after_seconds(response))
        if status in (400, 422) and self._is_conversation_format_error(status, payload):
            return ConversationFormatError(message, provider=provider)
        return ProviderUnavailable(
            message,
            provider=provider,
            status_code=status,
            retry_after=_retry_after_seconds(response),
        )

    async def _raise_for_status(self, response: httpx.Response) -> None:
        if not response.is_error:
            return
        await response.aread()
        raise self.classify_http_error(response)

    async def _post_json(
        self, url: str, headers: dict[str, str], payload: dict[str, Any]
    ) -> tuple[int, dict[str, Any]]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.post(url, headers=headers, json=payload)
                await self._raise_for_status(r)
                try:
                    data = r.json()
                except ValueError as exc:
                    raise ProviderUnavailable(
                        f"{self.name} returned a body that is not JSON",
                        provider=self.name,
                        status_code=r.status_code,
                        malformed=True,
                    ) from exc
        except httpx.TransportError as exc:
            raise ProviderUnavailable(
                f"{self.name} request failed: {exc!s}" if str(exc) else f"{self.name} request failed: {type(exc).__name__}",
                provider=self.name,
            ) from exc
        if not isinstance(data, dict):
            raise ProviderUnavailable(
                f"{self.name} returned an unexpected payload",
                provider=self.name,
                status_code=r.status_code,
                malformed=True,
            )
        return r.status_code, data

    async def _stream_sse(
        self, url: str, headers: dict[str, str], payload: dict[str, Any]
    ) -> AsyncIterator[tuple[str | None, dict[str, Any]]]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream("POST", url, headers=headers, json=payload) as response:
                    await self._raise_for_status(response)
                    async for item in _iter_sse_payloads(response):
                        yield item
        except httpx.TransportError as exc:
            raise ProviderUnavailable(
                f"{self.name} stream failed: {exc!s}" if str(exc) else f"{self.name} stream failed: {type(exc).__name__}",
                provider=self.name,
            ) from exc


def _normalize_anthropic_tool(tool: dict[str, Any]) -> dict[str, Any]:
    tool_type = tool.get("type")
    if tool_type is None:
        return dict(tool)
    if tool_type != "function":
        raise ValueError("Anthropic tools only support OpenAI function tool definitions.")
    function = tool.get("function")
    if not isinstance(function, dict):
        raise ValueError("Anthropic function tools require a 'function' dictionary definition.")
    name = function.get("name")
    if not isinstance(name, str) or not name:
        raise ValueError("Anthropic tools require a non-empty function name.")
    parameters = function.get("parameters")
    input_schema = parameters if isinstance(parameters, dict) else {"type": "object", "properties": {}}
    normalized: dict[str, Any] = {"name": name, "input_schema": input_schema}
    description = function.get("description")
    if isinstance(description, str) and description:
        normalized["description"] = description
    return normalized


class AnthropicProvider(BaseProvider):
    default_base_url = "https://api.anthropic.com"
    api_version = "2023-06-01"

    @staticmethod
    def _map_tool_call(tool_call: Any) -> dict[str, Any]:
        if not isinstance(tool_call, dict):
            raise ValueError("Anthropic tool calls must be dictionaries.")
        identifier = tool_call.get("id")
        if not isinstance(identifier, str) or not identifier:
            raise ValueError("Anthropic tool calls require a non-empty string 'id'.")
        function = tool_call.get("function")
        if not isinstance(function, dict):
            raise ValueError("Anthropic tool calls require a 'function' definition.")
        name = function.get("name")
        if not isinstance(name, str) or not name:
            raise ValueError("Anthropic tool call functions require a non-empty string 'name'.")
        raw_arguments = function.get("arguments")
        if isinstance(raw_arguments, str):
            try:
                input_payload: Any = json.loads(raw_arguments) if raw_arguments else {}
            except json.JSONDecodeError as exc:
                raise ValueError("Anthropic tool call arguments must be valid JSON strings.") from exc
        elif isinstance(raw_arguments, dict):
            input_payload = raw_arguments
        else:
            input_payload = {}
        return {"type": "tool_use", "id": identifier, "name": name, "input": input_payload}

    def _build_chat_request(
        self,
        messages: List[dict[str, Any]],
        *,
        tools: list[dict[str, Any]] | None,
        max_tokens: int,
        temperature: float,
        stream: bool,
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        base = self.base_url.rstrip("/")
        url = base if base.endswith("/messages") else f"{base}/v1/messages"
        headers: dict[str, str] = {
            "anthropic-version": self.api_version,
            "Content-Type": "application/json",
            "x-api-key": self.config.credential.strip(),
        }
        headers.update(self.extra_headers)
        system_messages: list[str] = []
        mapped: list[dict[str, Any]] = []
        for message in messages:
            role = message.get("role")
            content = message.get("content")
            if role == "system":
                if isinstance(content, str) and content:
                    system_messages.append(content)
                continue
            if role == "tool":
                block = {
                    "type": "tool_result",
                    "tool_use_id": message.get("tool_call_id") or "",
                    "content": [{"type": "text", "text": content if isinstance(content, str) else ""}],
                }
                # Consecutive tool results belong to one user turn.
                if mapped and mapped[-1]["role"] == "user" and all(
                    item.get("type") == "tool_result" for item in mapped[-1]["content"]
                ):
                    mapped[-1]["content"].append(block)
                else:
                    mapped.append({"role": "user", "content": [block]})
                continue
            if role not in ("user", "assistant"):
                continue
            content_blocks: list[dict[str, Any]] = []
            if isinstance(content, str) and content:
                content_blocks.append({"type": "text", "text": content})
            for tool_call in message.get("tool_calls") or []:
                content_blocks.append(self._map_tool_call(tool_call))
            if not content_blocks:
                content_blocks.append({"type": "text", "text": ""})
            mapped.append({"role": role, "content": content_blocks})
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": mapped,
            "stream": stream,
        }
        if system_messages:
            payload["system"] = "\n\n".join(system_messages)
        if tools:
            payload["tools"] = [_normalize_anthropic_tool(tool) for tool in tools]
        return url, headers, payload

    @staticmethod
    def _map_stop_reason(raw: str | None) -> str | None:
        if raw is None:
            return None
        if raw == "tool_use":
            return "tool_calls"
        if raw in {"max_tokens", "message_limit"}:
            return "length"
        if raw in {"end_turn", "stop_sequence"}:
            return "stop"
        return raw

    def _is_conversation_format_error(self, status: int, payload: dict[str, Any] | None) -> bool:
        if payload is None:
            return False
        error = payload.get("error")
        if not isinstance(error, dict) or error.get("type") != "invalid_request_error":
            return False
        message = str(error.get("message") or "").lower()
        return message.startswith("messages") and (
            "alternate" in message or "tool_result" in message or "tool_use" in message
        )

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
        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in data.get("content") or []:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                text_value = block.get("text")
                if isinstance(text_value, str):
                    text_parts.append(text_value)
            elif block_type == "tool_use":
                identifier = block.get("id")
                name = block.get("name")
                if not isinstance(identifier, str) or not isinstance(name, str) or not name:
                    raise ProviderUnavailable(
                        "Anthropic tool_use blocks require 'id' and 'name'",
                        provider=self.name,
                        malformed=True,
                    )
                tool_calls.append(
                    ToolCall(
                        id=identifier,
                        name=name,
                        arguments=_parse_arguments(block.get("input"), provider=self.name),
                    )
                )
        usage = data.get("usage") or {}
        raw_stop = data.get("stop_reason")
        return ProviderChatResponse(
            status_code=status_code,
            model=data.get("model") or self.model,
            content="".join(text_parts) or None,
            finish_reason=self._map_stop_reason(raw_stop if isinstance(raw_stop, str) else None),
            tool_calls=tool_calls or None,
            usage_prompt_tokens=usage.get("input_tokens", 0),
            usage_completion_tokens=usage.get("output_tokens", 0),
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
        stop_reason: str | None = None
        pending_tools: dict[int, dict[str, Any]] = {}
        async for _, event in self._stream_sse(url, headers, payload):
            event_type = event.get("type")
            if event_type == "message_start":
                message = event.get("message")
                message_usage = message.get("usage") if isinstance(message, dict) else None
                if isinstance(message_usage, dict) and isinstance(message_usage.get("input_tokens"), int):
                    usage.prompt_tokens = message_usage["input_tokens"]
                continue
            if event_type == "content_block_start":
                block = event.get("content_block")
                index = event.get("index")
                if isinstance(block, dict) and block.get("type") == "tool_use" and isinstance(index, int):
                    pending_tools[index] = {
                        "id": block.get("id") or f"toolu_{index}",
                        "name": block.get("name") or "",
                        "json": [],
                    }
                continue
            if event_type == "content_block_delta":
                delta = event.get("delta")
                if not isinstance(delta, dict):
                    continue
                if delta.get("type") == "text_delta":
                    text_value = delta.get("text")
                    if isinstance(text_value, str) and text_value:
                        yield StreamEvent.text_delta(text_value)
                elif delta.get("type") == "input_json_delta":
                    pending = pending_tools.get(event.get("index"))
                    partial = delta.get("partial_json")
                    if pending is not None and isinstance(partial, str):
                        pending["json"].append(partial)
                continue
            if event_type == "content_block_stop":
                pending = pending_tools.pop(event.get("index"), None)
                if pending is not None:
                    yield StreamEvent.call(
                        ToolCall(
                            id=pending["id"],
                            name=pending["name"],
                            arguments=_parse_arguments("".join(pending["json"]), provider=self.name),
                        )
                    )
                continue
            if event_type == "message_delta":
                delta = event.get("delta")
                if isinstance(delta, dict) and isinstance(delta.get("stop_reason"), str):
                    stop_reason = delta["stop_reason"]
                delta_usage = event.get("usage")
                if isinstance(delta_usage, dict) and isinstance(delta_usage.get("output_tokens"), int):
                    usage.completion_tokens = delta_usage["output_tokens"]
                continue
            if event_type == "message_stop":
                yield StreamEvent.finish(self._map_stop_reason(stop_reason), usage)
                return
            if event_type == "error":
                error_info = event.get("error")
                message = error_info.get("message") if isinstance(error_info, dict) else None
                raise ProviderUnavailable(
                    message or "Anthropic stream reported an error",
                    provider=self.name,
                )
        yield StreamEvent.finish(self._map_stop_reason(stop_reason), usage)


from .google import GeminiProvider  # noqa: E402
from .openai import OpenAICompatProvider  # noqa: E402

_PROVIDER_FACTORIES: dict[ProviderId, type[BaseProvider]] = {
    ProviderId.MISTRAL: OpenAICompatProvider,
    ProviderId.OPENAI: OpenAICompatProvider,
    ProviderId.GOOGLE: GeminiProvider,
    ProviderId.OPENROUTER: OpenAICompatProvider,
    ProviderId.ANTHROPIC: AnthropicProvider,
    ProviderId.OPENAI_COMPATIBLE: OpenAICompatProvider,
    ProviderId.CUSTOM: OpenAICompatProvider,
}

DEFAULT_BASE_URLS: dict[ProviderId, str | None] = {
    ProviderId.MISTRAL: "https://api.mistral.ai/v1",
    ProviderId.OPENAI: "https://api.openai.com/v1",
    ProviderId.GOOGLE: None,
    ProviderId.OPENROUTER: "https://openrouter.ai/api/v1",
    ProviderId.ANTHROPIC: None,
    ProviderId.OPENAI_COMPATIBLE: None,
    ProviderId.CUSTOM: None,
}

REQUIRES_BASE_URL: frozenset[ProviderId] = frozenset(
    {ProviderId.OPENAI_COMPATIBLE, ProviderId.CUSTOM}
)

# Generic compatible servers are called single-shot: their chunk framing is
# not reliably compatible with the streaming parser.
INVOCATION_MODES: dict[ProviderId, InvocationMode] = {
    ProviderId.MISTRAL: "stream",
    ProviderId.OPENAI: "stream",
    ProviderId.GOOGLE: "stream",
    ProviderId.OPENROUTER: "stream",
    ProviderId.ANTHROPIC: "stream",
    ProviderId.OPENAI_COMPATIBLE: "single",
    ProviderId.CUSTOM: "single",
}


def build(
    provider_id: ProviderId,
    config: ProviderConfig,
    model_override: str | None = None,
    *,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    site_url: str | None = None,
    site_title: str | None = None,
) -> BaseProvider:
    factory = _PROVIDER_FACTORIES[provider_id]
    if provider_id in REQUIRES_BASE_URL and not (config.base_url or "").strip():
        raise MisconfiguredProvider(
            f"{config.name} provider requires a base URL",
            provider=provider_id.value,
        )
    extra_headers: dict[str, str] = {}
    if provider_id is ProviderId.OPENROUTER:
        if site_url:
            extra_headers["HTTP-Referer"] = site_url
        if site_title:
            extra_headers["X-Title"] = site_title
    provider = factory(
        provider_id,
        config,
        model_override or config.default_model,
        timeout=timeout,
        extra_headers=extra_headers,
    )
    if not provider.base_url:
        provider.base_url = DEFAULT_BASE_URLS[provider_id] or provider.base_url
    return provider


__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "DEFAULT_BASE_URLS",
    "GeminiProvider",
    "INVOCATION_MODES",
    "OpenAICompatProvider",
    "build",
]
