"""Line-oriented framing for streamed chat responses.

Every frame is one line: a single-character prefix, a colon, and a JSON
value. ``0`` carries a text fragment, ``9`` a tool call, ``a`` a tool result,
``e`` the end of one generation step, ``d`` the completion record and ``3``
an error raised after streaming began.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

STREAM_MEDIA_TYPE = "text/plain; charset=utf-8"
STREAM_HEADER = "x-folio-stream"
STREAM_HEADER_VALUE = "v1"


class FrameType(str, Enum):
    START = "f"
    TEXT = "0"
    TOOL_CALL = "9"
    TOOL_RESULT = "a"
    STEP_FINISH = "e"
    FINISH = "d"
    ERROR = "3"


class FrameDecodeError(ValueError):
    """Raised when a line does not follow the stream framing."""


@dataclass(frozen=True)
class Frame:
    type: FrameType
    value: Any


def encode_frame(frame_type: FrameType, value: Any) -> bytes:
    return f"{frame_type.value}:{json.dumps(value, separators=(',', ':'))}\n".encode("utf-8")


def text_frame(text: str) -> bytes:
    return encode_frame(FrameType.TEXT, text)


def error_frame(message: str, code: str | None = None) -> bytes:
    return encode_frame(FrameType.ERROR, {"message": message, "code": code})


def decode_frame(line: str) -> Frame:
    stripped = line.rstrip("\r\n")
    prefix, separator, body = stripped.partition(":")
    if not separator:
        raise FrameDecodeError(f"missing frame prefix in line {stripped[:40]!r}")
    try:
        frame_type = FrameType(prefix)
    except ValueError as exc:
        raise FrameDecodeError(f"unknown frame prefix {prefix!r}") from exc
    try:
        value = json.loads(body)
    except json.JSONDecodeError as exc:
        raise FrameDecodeError(f"invalid JSON payload for frame {prefix!r}") from exc
    if frame_type is FrameType.TEXT and not isinstance(value, str):
        raise FrameDecodeError("text frames must carry a JSON string")
    return Frame(type=frame_type, value=value)


def iter_frames(lines: Iterable[str]) -> list[Frame]:
    return [decode_frame(line) for line in lines if line.strip()]


async def aiter_frames(lines: AsyncIterator[str]) -> AsyncIterator[Frame]:
    async for line in lines:
        if not line.strip():
            continue
        yield decode_frame(line)
