"""Typed stream events and their Server-Sent-Events wire format."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

TEXT_DELTA = "text-delta"
REASONING = "reasoning"
TOOL_CALL = "tool-call"
TOOL_RESULT = "tool-result"
ERROR = "error"
DONE = "done"
APPEND_MESSAGE = "append-message"

TERMINAL_TYPES = frozenset({ERROR, DONE})

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@dataclass(frozen=True)
class StreamEvent:
    """One event of a generation. ``seq`` is ``None`` for synthesized events."""

    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    seq: Optional[int] = None

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_TYPES

    def to_dict(self) -> Dict[str, Any]:
        return {"seq": self.seq, "type": self.type, "data": self.data}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "StreamEvent":
        seq = d.get("seq")
        return cls(type=str(d["type"]), data=dict(d.get("data") or {}), seq=None if seq is None else int(seq))


def encode_sse(event: StreamEvent) -> bytes:
    lines = []
    if event.seq is not None:
        lines.append(f"id: {event.seq}")
    lines.append(f"event: {event.type}")
    lines.append("data: " + json.dumps(event.data, ensure_ascii=False, default=str))
    return ("\n".join(lines) + "\n\n").encode("utf-8")


def parse_last_event_id(value: Optional[str]) -> Optional[int]:
    """Parse an SSE ``Last-Event-ID`` header; garbage means "from the start"."""
    if value is None:
        return None
    try:
        seq = int(value.strip())
    except ValueError:
        return None
    return seq if seq >= 0 else None


def append_message_event(message: Dict[str, Any]) -> StreamEvent:
    """Synthesized snapshot of a persisted assistant message (JSON-encoded payload)."""
    return StreamEvent(type=APPEND_MESSAGE, data={"message": json.dumps(message, ensure_ascii=False)})
