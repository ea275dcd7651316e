"""
Push stream framing and message decoding.

This module provides:
- Line framing for both NDJSON and Server-Sent Events
- Heartbeat detection (SSE comments and ``ping`` messages)
- Message envelope validation
- A bounded record of recently seen message ids for deduplication
"""

import json
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from ..utils.errors import MalformedMessageError


HEARTBEAT_TYPE = "ping"


class FrameKind(Enum):
    DATA = "data"
    HEARTBEAT = "heartbeat"
    CONTROL = "control"


@dataclass(frozen=True)
class Frame:
    """One complete unit read off the wire."""
    kind: FrameKind
    text: str = ""


class FrameDecoder:
    """
    Turns transport lines into frames.

    NDJSON lines (starting with ``{``) are complete data frames on their own.
    SSE ``data:`` lines are accumulated until the blank line that ends the
    event. Lines starting with ``:`` are SSE comments, used as heartbeats.
    """

    def __init__(self):
        self._data_lines: List[str] = []
        self.retry_ms: Optional[int] = None
        self.last_event_id: Optional[str] = None
        self._line_count = 0

    def feed(self, line: str) -> Optional[Frame]:
        """
        Feed one line (with or without its terminator).

        Returns:
            A frame when the line completes one, else None
        """
        self._line_count += 1
        line = line.rstrip("\r\n")

        if not line:
            return self._flush_event()

        if line.lstrip().startswith(("{", "[")):
            return Frame(FrameKind.DATA, line)

        if line.startswith(":"):
            return Frame(FrameKind.HEARTBEAT)

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if field == "data":
            self._data_lines.append(value)
            return None
        if field == "id":
            self.last_event_id = value
            return Frame(FrameKind.CONTROL, line)
        if field == "retry":
            if value.isdigit():
                self.retry_ms = int(value)
            return Frame(FrameKind.CONTROL, line)
        if field == "event":
            return Frame(FrameKind.CONTROL, line)

        # Anything else is handed on and rejected by decode_message
        return Frame(FrameKind.DATA, line)

    def flush(self) -> Optional[Frame]:
        """Emit a pending SSE event at end of stream."""
        return self._flush_event()

    def _flush_event(self) -> Optional[Frame]:
        if not self._data_lines:
            return None
        text = "\n".join(self._data_lines)
        self._data_lines = []
        return Frame(FrameKind.DATA, text)

    def reset_stats(self) -> Dict[str, int]:
        stats = {"lines": self._line_count, "pending_data_lines": len(self._data_lines)}
        self._line_count = 0
        return stats


class StreamMessage(BaseModel):
    """Envelope of a push event: ``{id, type, payload, createdAt}``."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    payload: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(alias="createdAt")

    @property
    def is_heartbeat(self) -> bool:
        return self.type == HEARTBEAT_TYPE


def decode_message(text: str) -> Optional[StreamMessage]:
    """
    Decode one data frame into a message.

    Returns:
        The message, or None for a ``ping`` heartbeat

    Raises:
        MalformedMessageError: the frame is not a valid message envelope
    """
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedMessageError(f"invalid JSON at position {e.pos}: {e.msg}", raw=text) from e

    if not isinstance(raw, dict):
        raise MalformedMessageError(f"expected object, got {type(raw).__name__}", raw=text)

    if raw.get("type") == HEARTBEAT_TYPE:
        return None

    if isinstance(raw.get("id"), int) and not isinstance(raw.get("id"), bool):
        raw["id"] = str(raw["id"])
    if "createdAt" not in raw and "created_at" in raw:
        raw["createdAt"] = raw.pop("created_at")

    try:
        return StreamMessage.model_validate(raw)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(x) for x in first["loc"]) or "message"
        raise MalformedMessageError(f"{location}: {first['msg']}", raw=text) from e


class RecentIds:
    """Bounded, insertion-ordered set of message ids already applied."""

    def __init__(self, capacity: int = 500):
        self.capacity = capacity
        self._ids: "OrderedDict[str, None]" = OrderedDict()

    def seen(self, message_id: str) -> bool:
        """Return True if the id was already recorded; record it otherwise."""
        if message_id in self._ids:
            return True
        self._ids[message_id] = None
        while len(self._ids) > self.capacity:
            self._ids.popitem(last=False)
        return False

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def clear(self) -> None:
        self._ids.clear()


__all__ = [
    'FrameKind',
    'Frame',
    'FrameDecoder',
    'StreamMessage',
    'decode_message',
    'RecentIds',
    'HEARTBEAT_TYPE',
]
