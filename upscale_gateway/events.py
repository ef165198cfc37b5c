"""Event channel messages pushed by ComfyUI while a prompt runs."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Union


@dataclass(frozen=True)
class Progress:
    value: float
    max: float

    def percentage(self) -> int:
        # Half-up rounding, so 0.5% reports as 1% rather than 0%.
        return int(min(self.value * 100 / self.max, 100) + 0.5)


@dataclass(frozen=True)
class Executing:
    node: Optional[str]
    job_id: Optional[str]

    def is_completion_of(self, job_id: str) -> bool:
        return self.node is None and self.job_id == job_id


@dataclass(frozen=True)
class ExecutionError:
    job_id: Optional[str] = None
    message: Optional[str] = None


ProgressEvent = Union[Progress, Executing, ExecutionError]


def parse_event(raw: Union[str, bytes]) -> Optional[ProgressEvent]:
    """
    Decode one channel message into a ProgressEvent.

    Returns None for anything that is not one of the three events we track:
    binary preview frames, invalid UTF-8, invalid JSON, unknown message types
    and messages with missing, mistyped or non-finite fields.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        message = json.loads(raw)
    except (TypeError, ValueError, RecursionError):
        return None
    if not isinstance(message, dict):
        return None

    kind = message.get("type")
    data = message.get("data")
    if not isinstance(data, dict):
        data = {}

    if kind == "progress":
        value, maximum = data.get("value"), data.get("max")
        if not _is_number(value) or not _is_number(maximum) or maximum <= 0:
            return None
        # Progress never runs backwards or past its maximum.
        if value < 0 or value > maximum:
            return None
        return Progress(value=value, max=maximum)

    if kind == "executing":
        if "node" not in data:
            return None
        node = data.get("node")
        return Executing(
            node=None if node is None else str(node),
            job_id=data.get("prompt_id"),
        )

    if kind == "execution_error":
        message_text = data.get("exception_message")
        return ExecutionError(
            job_id=data.get("prompt_id"),
            message=message_text.strip() if isinstance(message_text, str) else None,
        )

    return None


def _is_number(value: object) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        # Integers too large to convert to float
        return False


class EventChannel:
    """
    Inbound stream of raw channel messages for one client id.

    Iterating yields text or binary messages in arrival order and stops when
    the remote side closes. Transport failures surface as ChannelError.
    """

    def __aiter__(self) -> AsyncIterator[Union[str, bytes]]:
        return self.messages()

    def messages(self) -> AsyncIterator[Union[str, bytes]]:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError
