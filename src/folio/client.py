"""Client side of the chat protocol.

``RetryCoordinator`` owns the conversation and the fallback pointer. It
detects the failures the server cannot report synchronously (hung or
disguised responses, streams that end in an error frame, empty answers)
and resubmits the same turn against the next configured fallback provider.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

import httpx

from .errors import USER_MESSAGES, ErrorKind
from .framing import (
    STREAM_HEADER,
    STREAM_HEADER_VALUE,
    FrameDecodeError,
    FrameType,
    decode_frame,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RESPONSE_TIMEOUT = 30.0
DEFAULT_PENDING_TTL = 30.0

EXHAUSTED_NOTICE = (
    "All AI services are currently unavailable. Please try again in a few minutes."
)
TIMEOUT_MESSAGE = "The assistant took too long to respond."
EMPTY_MESSAGE = "The assistant returned an empty answer."
DISGUISED_MESSAGE = "The assistant returned an unexpected response."
NETWORK_MESSAGE = "Could not reach the assistant."

# Failures that another provider cannot fix.
TERMINAL_KINDS: frozenset[ErrorKind] = frozenset(
    {
        ErrorKind.AUTHENTICATION,
        ErrorKind.RATE_LIMITED,
        ErrorKind.NO_PROVIDER_CONFIGURED,
        ErrorKind.INVALID_INPUT,
        ErrorKind.CONVERSATION_FORMAT,
    }
)

TurnStatus = Literal["completed", "duplicate", "rejected", "failed", "exhausted"]


class Phase(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


@dataclass
class FallbackAttemptState:
    fallback_index: int = 0
    is_retrying: bool = False


@dataclass
class TurnOutcome:
    status: TurnStatus
    message: dict[str, Any] | None = None
    notice: str | None = None
    fallback_index: int = 0
    attempts: int = 0


@dataclass
class _Failure:
    message: str
    kind: ErrorKind | None = None
    status: int | None = None
    retry_after: int | None = None


@dataclass
class _Attempt:
    text: str = ""
    parts: list[dict[str, Any]] = field(default_factory=list)
    failure: _Failure | None = None


class PendingSubmissions:
    """Texts currently in flight; entries expire so a lost turn cannot block forever."""

    def __init__(
        self, ttl: float = DEFAULT_PENDING_TTL, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, float] = {}

    def _expire(self) -> None:
        now = self._clock()
        for text, added_at in list(self._entries.items()):
            if now - added_at >= self._ttl:
                del self._entries[text]

    def __contains__(self, text: object) -> bool:
        self._expire()
        return isinstance(text, str) and text.strip() in self._entries

    def __len__(self) -> int:
        self._expire()
        return len(self._entries)

    def add(self, text: str) -> None:
        self._entries[text.strip()] = self._clock()

    def discard(self, text: str) -> None:
        self._entries.pop(text.strip(), None)

    def clear(self) -> None:
        self._entries.clear()


class RetryCoordinator:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        endpoint: str = "/api/chat",
        health_endpoint: str = "/api/health",
        max_retries: int = DEFAULT_MAX_RETRIES,
        fallback_limit: int | None = None,
        response_timeout: float = DEFAULT_RESPONSE_TIMEOUT,
        pending_ttl: float = DEFAULT_PENDING_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self.endpoint = endpoint
        self.health_endpoint = health_endpoint
        self.max_retries = max_retries
        self.fallback_limit = fallback_limit
        self.response_timeout = response_timeout
        self.pending = PendingSubmissions(pending_ttl, clock)
        self.state = FallbackAttemptState()
        self.phase = Phase.IDLE
        self.messages: list[dict[str, Any]] = []

    @property
    def retry_budget(self) -> int:
        if self.fallback_limit is None:
            return self.max_retries
        return min(self.max_retries, self.fallback_limit)

    async def preflight(self) -> dict[str, Any] | None:
        """Read the provider status and learn how many fallbacks exist."""
        try:
            response = await self._client.get(self.health_endpoint, timeout=self.response_timeout)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("health preflight failed detail=%s", exc)
            return None
        providers = payload.get("providers") if isinstance(payload, dict) else None
        if isinstance(providers, dict) and isinstance(providers.get("fallbackProviders"), list):
            self.fallback_limit = len(providers["fallbackProviders"])
        return payload

    async def submit(self, query: str) -> TurnOutcome:
        text = query.strip()
        if not text:
            return TurnOutcome("rejected", notice="Please type a message first.")
        if text in self.pending:
            logger.info("duplicate submission ignored")
            return TurnOutcome("duplicate", fallback_index=self.state.fallback_index)
        if self.phase is not Phase.IDLE:
            return TurnOutcome(
                "rejected",
                notice="Please wait for the current answer.",
                fallback_index=self.state.fallback_index,
            )

        self.pending.add(text)
        self.messages.append({"role": "user", "content": text})
        attempts = 0
        format_recovered = False
        try:
            while True:
                attempts += 1
                self.phase = Phase.SUBMITTING
                attempt = await self._attempt()
                self.state.is_retrying = False
                failure = attempt.failure
                if failure is None:
                    self.phase = Phase.COMPLETED
                    message = {"role": "assistant", "content": attempt.text, "parts": attempt.parts}
                    self.messages.append(message)
                    served_index = self.state.fallback_index
                    self.state = FallbackAttemptState()
                    return TurnOutcome(
                        "completed", message=message, fallback_index=served_index, attempts=attempts
                    )

                self.phase = Phase.FAILED
                logger.warning(
                    "turn failed attempt=%d fallback_index=%d kind=%s detail=%s",
                    attempts,
                    self.state.fallback_index,
                    failure.kind.value if failure.kind else "-",
                    failure.message,
                )
                if failure.kind is ErrorKind.CONVERSATION_FORMAT and not format_recovered:
                    format_recovered = True
                    self._keep_last_user_message()
                    continue
                if failure.kind in TERMINAL_KINDS:
                    self._drop_pending_user_turn()
                    return TurnOutcome(
                        "failed",
                        notice=failure.message,
                        fallback_index=self.state.fallback_index,
                        attempts=attempts,
                    )
                if failure.kind is ErrorKind.INVALID_FALLBACK_INDEX or not self._advance():
                    return self._exhaust(attempts)
        finally:
            self.pending.discard(text)
            self.phase = Phase.IDLE

    def _advance(self) -> bool:
        if self.state.is_retrying:
            return False
        # The index moves past the last usable slot before the budget check,
        # so an exhausted turn reports the index it could not use.
        self.state.fallback_index += 1
        if self.state.fallback_index > self.retry_budget:
            return False
        self.state.is_retrying = True
        self._strip_empty_assistant_turns()
        return True

    def _exhaust(self, attempts: int) -> TurnOutcome:
        self.phase = Phase.EXHAUSTED
        last_index = self.state.fallback_index
        self._drop_pending_user_turn()
        self.state = FallbackAttemptState()
        return TurnOutcome(
            "exhausted", notice=EXHAUSTED_NOTICE, fallback_index=last_index, attempts=attempts
        )

    def _strip_empty_assistant_turns(self) -> None:
        self.messages = [
            message
            for message in self.messages
            if not (message.get("role") == "assistant" and not str(message.get("content") or "").strip())
        ]

    def _keep_last_user_message(self) -> None:
        for message in reversed(self.messages):
            if message.get("role") == "user":
                self.messages = [message]
                return
        self.messages = []

    def _drop_pending_user_turn(self) -> None:
        if self.messages and self.messages[-1].get("role") == "user":
            self.messages.pop()

    async def _attempt(self) -> _Attempt:
        payload = {"messages": list(self.messages), "fallbackIndex": self.state.fallback_index}
        try:
            return await self._exchange(payload)
        except asyncio.TimeoutError:
            return _Attempt(failure=_Failure(TIMEOUT_MESSAGE))
        except httpx.HTTPError as exc:
            return _Attempt(failure=_Failure(f"{NETWORK_MESSAGE} ({type(exc).__name__})"))

    async def _exchange(self, payload: dict[str, Any]) -> _Attempt:
        request = self._client.build_request("POST", self.endpoint, json=payload)
        # The timer covers the wait for the response and each gap between lines.
        response = await asyncio.wait_for(
            self._client.send(request, stream=True), self.response_timeout
        )
        try:
            if response.is_error:
                await asyncio.wait_for(response.aread(), self.response_timeout)
                return _Attempt(failure=self._error_failure(response))
            content_type = response.headers.get("content-type", "")
            if (
                not content_type.startswith("text/plain")
                or response.headers.get(STREAM_HEADER) != STREAM_HEADER_VALUE
            ):
                return _Attempt(failure=_Failure(DISGUISED_MESSAGE, status=response.status_code))
            self.phase = Phase.STREAMING
            return await self._read_stream(response)
        finally:
            await response.aclose()

    async def _read_stream(self, response: httpx.Response) -> _Attempt:
        text_parts: list[str] = []
        parts: list[dict[str, Any]] = []
        invocations: dict[str, dict[str, Any]] = {}
        finished = False
        lines = response.aiter_lines()
        while True:
            line = await asyncio.wait_for(anext(lines, None), self.response_timeout)
            if line is None:
                break
            if not line.strip():
                continue
            try:
                frame = decode_frame(line)
            except FrameDecodeError as exc:
                return _Attempt(failure=_Failure(f"{DISGUISED_MESSAGE} ({exc})"))
            if frame.type is FrameType.TEXT:
                text_parts.append(frame.value)
            elif frame.type is FrameType.TOOL_CALL and isinstance(frame.value, dict):
                invocation = {
                    "state": "call",
                    "toolCallId": frame.value.get("toolCallId"),
                    "toolName": frame.value.get("toolName"),
                    "args": frame.value.get("args") or {},
                }
                invocations[str(invocation["toolCallId"])] = invocation
                parts.append({"type": "tool-invocation", "toolInvocation": invocation})
            elif frame.type is FrameType.TOOL_RESULT and isinstance(frame.value, dict):
                invocation = invocations.get(str(frame.value.get("toolCallId")))
                if invocation is not None:
                    invocation["state"] = "result"
                    invocation["result"] = frame.value.get("result")
            elif frame.type is FrameType.FINISH:
                finished = True
            elif frame.type is FrameType.ERROR:
                return _Attempt(failure=self._frame_failure(frame.value))
        if not finished:
            # A body cut off before its finish frame is a truncated answer.
            return _Attempt(failure=_Failure(DISGUISED_MESSAGE))
        text = "".join(text_parts)
        has_results = any(item["state"] == "result" for item in invocations.values())
        if not text.strip() and not has_results:
            return _Attempt(failure=_Failure(EMPTY_MESSAGE))
        return _Attempt(text=text, parts=parts)

    @staticmethod
    def _frame_failure(value: Any) -> _Failure:
        if not isinstance(value, dict):
            return _Failure(str(value))
        kind = ErrorKind.from_code(value.get("code"))
        message = value.get("message")
        if not isinstance(message, str) or not message:
            message = USER_MESSAGES[kind] if kind is not None else DISGUISED_MESSAGE
        return _Failure(message, kind=kind)

    @staticmethod
    def _error_failure(response: httpx.Response) -> _Failure:
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            return _Failure(DISGUISED_MESSAGE, status=response.status_code)
        kind = ErrorKind.from_code(body.get("code"))
        message = body.get("error")
        if not isinstance(message, str) or not message:
            message = USER_MESSAGES[kind] if kind is not None else DISGUISED_MESSAGE
        retry_after = body.get("retryAfter")
        return _Failure(
            message,
            kind=kind,
            status=response.status_code,
            retry_after=retry_after if isinstance(retry_after, int) else None,
        )
