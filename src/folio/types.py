import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict

from .errors import ProviderUnavailable

Role = Literal["system", "user", "assistant", "tool"]
VALID_ROLES: frozenset[str] = frozenset({"system", "user", "assistant", "tool"})
InvocationMode = Literal["stream", "single"]


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Role
    content: str
    parts: Optional[List[Dict[str, Any]]] = None
    name: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_calls: Optional[List[Dict[str, Any]]] = None


@dataclass(slots=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_openai(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments)},
        }


@dataclass(slots=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def merge(self, other: "Usage | None") -> None:
        if other is None:
            return
        self.prompt_tokens = max(self.prompt_tokens, other.prompt_tokens)
        self.completion_tokens = max(self.completion_tokens, other.completion_tokens)

    def to_payload(self) -> dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
        }


@dataclass(slots=True)
class StreamEvent:
    kind: Literal["text", "tool_call", "finish"]
    text: str = ""
    tool_call: ToolCall | None = None
    finish_reason: str | None = None
    usage: Usage | None = None

    @classmethod
    def text_delta(cls, text: str) -> "StreamEvent":
        return cls(kind="text", text=text)

    @classmethod
    def call(cls, tool_call: ToolCall) -> "StreamEvent":
        return cls(kind="tool_call", tool_call=tool_call)

    @classmethod
    def finish(cls, finish_reason: str | None, usage: Usage | None = None) -> "StreamEvent":
        return cls(kind="finish", finish_reason=finish_reason or "stop", usage=usage)


class ProviderChatResponse(BaseModel):
    status_code: int = 200
    model: str
    content: str | None = None
    finish_reason: str | None = None
    tool_calls: list[ToolCall] | None = None
    usage_prompt_tokens: Optional[int] = 0
    usage_completion_tokens: Optional[int] = 0


class GenerationResult:
    """Output of one successful provider attempt.

    Iterating yields ``StreamEvent`` objects exactly once; the terminal
    metadata (``finish_reason``, ``usage``, ``tool_calls``) is filled in as
    the events are consumed. A consumed result cannot be replayed: a new
    attempt has to go through the orchestrator again.
    """

    mode: ClassVar[InvocationMode]

    def __init__(self, *, provider: str, model: str, attempts: int = 1) -> None:
        self.provider = provider
        self.model = model
        self.attempts = attempts
        self.finish_reason: str | None = None
        self.usage = Usage()
        self.tool_calls: list[ToolCall] = []
        self._text_parts: list[str] = []
        self._consumed = False

    @property
    def text(self) -> str:
        return "".join(self._text_parts)

    @property
    def consumed(self) -> bool:
        return self._consumed

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        if self._consumed:
            raise RuntimeError("generation result already consumed")
        self._consumed = True
        return self._observe()

    async def _observe(self) -> AsyncIterator[StreamEvent]:
        async for event in self._events():
            if event.kind == "text":
                self._text_parts.append(event.text)
            elif event.kind == "tool_call" and event.tool_call is not None:
                self.tool_calls.append(event.tool_call)
            elif event.kind == "finish":
                self.finish_reason = event.finish_reason
                self.usage.merge(event.usage)
            yield event

    async def text_fragments(self) -> AsyncIterator[str]:
        async for event in self:
            if event.kind == "text" and event.text:
                yield event.text

    def _events(self) -> AsyncIterator[StreamEvent]:
        raise NotImplementedError

    async def aclose(self) -> None:
        self._consumed = True


class StreamedGeneration(GenerationResult):
    mode = "stream"

    def __init__(
        self,
        events: AsyncIterator[StreamEvent],
        *,
        head: StreamEvent,
        provider: str,
        model: str,
        attempts: int = 1,
    ) -> None:
        super().__init__(provider=provider, model=model, attempts=attempts)
        self._iterator = events
        self._head = head

    async def _events(self) -> AsyncIterator[StreamEvent]:
        saw_finish = self._head.kind == "finish"
        try:
            yield self._head
            if not saw_finish:
                async for event in self._iterator:
                    yield event
                    if event.kind == "finish":
                        saw_finish = True
                        break
        finally:
            await self._close_iterator()
        if not saw_finish:
            yield StreamEvent.finish("stop")

    async def _close_iterator(self) -> None:
        close = getattr(self._iterator, "aclose", None)
        if close is not None:
            await close()

    async def aclose(self) -> None:
        await super().aclose()
        await self._close_iterator()


class BufferedGeneration(GenerationResult):
    mode = "single"

    def __init__(
        self,
        response: ProviderChatResponse,
        *,
        provider: str,
        attempts: int = 1,
    ) -> None:
        super().__init__(provider=provider, model=response.model, attempts=attempts)
        self._response = response

    @classmethod
    def from_response(
        cls, response: ProviderChatResponse, *, provider: str
    ) -> "BufferedGeneration":
        content = response.content if isinstance(response.content, str) else ""
        if not content.strip() and not response.tool_calls:
            raise ProviderUnavailable(
                f"{provider} returned an empty completion",
                provider=provider,
                status_code=response.status_code,
                malformed=True,
            )
        return cls(response, provider=provider)

    async def _events(self) -> AsyncIterator[StreamEvent]:
        response = self._response
        if response.content:
            yield StreamEvent.text_delta(response.content)
        for tool_call in response.tool_calls or []:
            yield StreamEvent.call(tool_call)
        finish_reason = response.finish_reason
        if finish_reason is None:
            finish_reason = "tool_calls" if response.tool_calls else "stop"
        yield StreamEvent.finish(
            finish_reason,
            Usage(
                prompt_tokens=response.usage_prompt_tokens or 0,
                completion_tokens=response.usage_completion_tokens or 0,
            ),
        )
