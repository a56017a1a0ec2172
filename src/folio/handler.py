import json
import logging
import uuid
from collections.abc import AsyncIterator, Sequence
from typing import Any, List

from pydantic import ValidationError

from .errors import (
    FALLBACK_AVAILABLE_KINDS,
    INTERNAL_ERROR_STATUS,
    STATUS_BY_KIND,
    USER_MESSAGES,
    ErrorKind,
    FolioError,
    InvalidFallbackIndex,
    InvalidInput,
)
from .framing import FrameType, encode_frame, error_frame, text_frame
from .orchestrator import FallbackOrchestrator, log_request_event
from .registry import ProviderRegistry
from .tools import ToolSet
from .types import VALID_ROLES, ChatMessage, GenerationResult, Usage

logger = logging.getLogger(__name__)

TOOL_INVOCATION_PART = "tool-invocation"
STREAM_FAILURE_MESSAGE = "The response was interrupted. Please try again."


def sanitize_messages(raw: Any) -> list[ChatMessage]:
    if not isinstance(raw, list):
        raise InvalidInput("messages must be a list")
    cleaned: list[ChatMessage] = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            logger.warning("skipping message index=%d reason=not an object", index)
            continue
        role = item.get("role")
        content = item.get("content")
        if not isinstance(role, str) or role.strip() not in VALID_ROLES:
            logger.warning("skipping message index=%d reason=invalid role %r", index, role)
            continue
        if not isinstance(content, str) or not content.strip():
            logger.warning("skipping message index=%d reason=missing content", index)
            continue
        candidate = dict(item)
        candidate["role"] = role.strip()
        try:
            cleaned.append(ChatMessage.model_validate(candidate))
        except ValidationError as exc:
            logger.warning("skipping message index=%d reason=%s", index, exc.errors()[0].get("msg"))
    if not cleaned:
        raise InvalidInput("no valid messages in request")
    return cleaned


def _tool_invocations(parts: Sequence[Any] | None) -> list[dict[str, Any]]:
    invocations: list[dict[str, Any]] = []
    for part in parts or []:
        if not isinstance(part, dict) or part.get("type") != TOOL_INVOCATION_PART:
            continue
        invocation = part.get("toolInvocation")
        if not isinstance(invocation, dict) or invocation.get("state") != "result":
            continue
        if not invocation.get("toolCallId") or not invocation.get("toolName"):
            continue
        invocations.append(invocation)
    return invocations


def _result_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def to_provider_messages(messages: Sequence[ChatMessage]) -> List[dict[str, Any]]:
    converted: List[dict[str, Any]] = []
    for message in messages:
        entry: dict[str, Any] = {"role": message.role, "content": message.content}
        if message.name:
            entry["name"] = message.name
        if message.tool_call_id:
            entry["tool_call_id"] = message.tool_call_id
        if message.tool_calls:
            entry["tool_calls"] = message.tool_calls
        invocations = _tool_invocations(message.parts) if message.role == "assistant" else []
        if not invocations:
            converted.append(entry)
            continue
        entry["tool_calls"] = [
            {
                "id": invocation["toolCallId"],
                "type": "function",
                "function": {
                    "name": invocation["toolName"],
                    "arguments": json.dumps(invocation.get("args") or {}),
                },
            }
            for invocation in invocations
        ]
        converted.append(entry)
        for invocation in invocations:
            converted.append(
                {
                    "role": "tool",
                    "tool_call_id": invocation["toolCallId"],
                    "name": invocation["toolName"],
                    "content": _result_text(invocation.get("result")),
                }
            )
    return converted


def parse_fallback_index(raw: Any) -> int:
    if raw is None:
        return 0
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise InvalidFallbackIndex(f"fallbackIndex must be an integer, got {raw!r}")
    if raw < 0:
        raise InvalidFallbackIndex(f"fallbackIndex must be non-negative, got {raw}")
    return raw


def error_response(exc: BaseException) -> tuple[int, dict[str, Any]]:
    """Map an exception to the HTTP status and JSON body sent to the client."""
    if isinstance(exc, FolioError):
        kind = exc.kind
        status = STATUS_BY_KIND[kind]
        body: dict[str, Any] = {
            "error": USER_MESSAGES[kind],
            "status": status,
            "fallbackAvailable": kind in FALLBACK_AVAILABLE_KINDS,
            "code": kind.value,
        }
        if exc.retry_after is not None:
            body["retryAfter"] = exc.retry_after
        return status, body
    return INTERNAL_ERROR_STATUS, {
        "error": str(exc) or "Internal server error",
        "status": INTERNAL_ERROR_STATUS,
        "fallbackAvailable": False,
        "code": "internal_error",
    }


class PreparedTurn:
    """A generation that already has a serving provider, ready to be framed."""

    def __init__(
        self,
        handler: "ChatHandler",
        result: GenerationResult,
        messages: List[dict[str, Any]],
        *,
        req_id: str,
    ) -> None:
        self._handler = handler
        self.result = result
        self.messages = messages
        self.req_id = req_id

    @property
    def provider(self) -> str:
        return self.result.provider

    @property
    def attempts(self) -> int:
        return self.result.attempts

    async def frames(self) -> AsyncIterator[bytes]:
        handler = self._handler
        tools = handler.tools
        messages = list(self.messages)
        result = self.result
        total_usage = Usage()
        step = 1
        yield encode_frame(FrameType.START, {"messageId": f"msg-{uuid.uuid4().hex}"})
        try:
            while True:
                async for event in result:
                    if event.kind == "text" and event.text:
                        yield text_frame(event.text)
                    elif event.kind == "tool_call" and event.tool_call is not None:
                        yield encode_frame(
                            FrameType.TOOL_CALL,
                            {
                                "toolCallId": event.tool_call.id,
                                "toolName": event.tool_call.name,
                                "args": event.tool_call.arguments,
                            },
                        )
                total_usage.prompt_tokens += result.usage.prompt_tokens
                total_usage.completion_tokens += result.usage.completion_tokens
                calls = list(result.tool_calls)
                if calls and tools is not None:
                    messages.append(
                        {
                            "role": "assistant",
                            "content": result.text,
                            "tool_calls": [call.to_openai() for call in calls],
                        }
                    )
                    for call in calls:
                        output = await tools.execute(call.name, call.arguments)
                        yield encode_frame(
                            FrameType.TOOL_RESULT, {"toolCallId": call.id, "result": output}
                        )
                        messages.append(
                            {
                                "role": "tool",
                                "tool_call_id": call.id,
                                "name": call.name,
                                "content": output,
                            }
                        )
                continued = bool(calls) and tools is not None and step < handler.max_steps
                yield encode_frame(
                    FrameType.STEP_FINISH,
                    {
                        "finishReason": result.finish_reason,
                        "usage": result.usage.to_payload(),
                        "isContinued": continued,
                    },
                )
                if not continued:
                    break
                step += 1
                # Later steps start on the provider that served the previous one.
                result = await handler.orchestrator.generate(
                    messages,
                    handler.tool_definitions,
                    preferred_provider=result.provider,
                    preferred_model=result.model,
                    req_id=self.req_id,
                )
                self.result = result
            yield encode_frame(
                FrameType.FINISH,
                {"finishReason": result.finish_reason, "usage": total_usage.to_payload()},
            )
        except Exception as exc:
            detail = exc.message if isinstance(exc, FolioError) else (str(exc) or type(exc).__name__)
            log_request_event(
                logging.ERROR,
                event="chat stream failed",
                req_id=self.req_id,
                provider=result.provider,
                attempts=result.attempts,
                detail=detail,
            )
            if isinstance(exc, FolioError):
                yield error_frame(USER_MESSAGES[exc.kind], code=exc.kind.value)
            else:
                yield error_frame(STREAM_FAILURE_MESSAGE, code=ErrorKind.PROVIDER_UNAVAILABLE.value)
        finally:
            await result.aclose()


class ChatHandler:
    def __init__(
        self,
        orchestrator: FallbackOrchestrator,
        registry: ProviderRegistry,
        tools: ToolSet | None,
        system_prompt: str,
        *,
        max_steps: int = 2,
    ) -> None:
        self.orchestrator = orchestrator
        self.registry = registry
        self.tools = tools if tools is not None and len(tools) else None
        self.system_prompt = system_prompt
        self.max_steps = max(1, max_steps)

    @property
    def tool_definitions(self) -> list[dict[str, Any]] | None:
        if self.tools is None:
            return None
        return self.tools.definitions()

    async def prepare(self, payload: Any, *, req_id: str | None = None) -> PreparedTurn:
        req_id = req_id or str(uuid.uuid4())
        if not isinstance(payload, dict):
            raise InvalidInput("request body must be a JSON object")
        messages = sanitize_messages(payload.get("messages"))
        fallback_index = parse_fallback_index(payload.get("fallbackIndex"))
        preferred = self.registry.fallback_provider_at(fallback_index)
        provider_messages: List[dict[str, Any]] = []
        if self.system_prompt:
            provider_messages.append({"role": "system", "content": self.system_prompt})
        provider_messages.extend(to_provider_messages(messages))
        if fallback_index:
            log_request_event(
                logging.INFO,
                event="client fallback requested",
                req_id=req_id,
                provider=preferred,
                attempts=0,
                detail=f"fallbackIndex={fallback_index}",
            )
        result = await self.orchestrator.generate(
            provider_messages,
            self.tool_definitions,
            preferred_provider=preferred,
            req_id=req_id,
        )
        return PreparedTurn(self, result, provider_messages, req_id=req_id)
