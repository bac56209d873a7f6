"""Conversation, message and session records."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

Role = Literal["user", "assistant", "tool"]
Visibility = Literal["private", "public"]

ROLES = ("user", "assistant", "tool")
VISIBILITIES = ("private", "public")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.isoformat()


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Session:
    """Authenticated caller, as issued by the (external) auth layer."""

    user_id: str
    user_type: str = "regular"


@dataclass
class Conversation:
    id: str
    user_id: str
    title: str = ""
    visibility: Visibility = "private"
    created_at: datetime = field(default_factory=utc_now)

    def readable_by(self, user_id: Optional[str]) -> bool:
        return self.visibility == "public" or self.user_id == user_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "visibility": self.visibility,
            "createdAt": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Conversation":
        return cls(
            id=str(d["id"]),
            user_id=str(d["userId"]),
            title=str(d.get("title") or ""),
            visibility=d.get("visibility", "private"),
            created_at=_parse_ts(d["createdAt"]),
        )


@dataclass
class Message:
    """One chat message. ``parts`` holds text and tool-invocation records."""

    id: str
    conversation_id: str
    role: Role
    parts: List[Dict[str, Any]] = field(default_factory=list)
    attachments: List[Dict[str, Any]] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)

    @property
    def text(self) -> str:
        return "".join(p.get("text", "") for p in self.parts if p.get("type") == "text")

    def tool_invocations(self) -> List[Dict[str, Any]]:
        return [p["toolInvocation"] for p in self.parts if p.get("type") == "tool-invocation"]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "chatId": self.conversation_id,
            "role": self.role,
            "parts": self.parts,
            "attachments": self.attachments,
            "createdAt": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Message":
        return cls(
            id=str(d["id"]),
            conversation_id=str(d["chatId"]),
            role=d["role"],
            parts=list(d.get("parts") or []),
            attachments=list(d.get("attachments") or []),
            created_at=_parse_ts(d["createdAt"]),
        )


def text_part(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


def reasoning_part(text: str) -> Dict[str, Any]:
    return {"type": "reasoning", "reasoning": text}


def tool_invocation_part(call_id: str, name: str, args: Any, result: Any) -> Dict[str, Any]:
    return {
        "type": "tool-invocation",
        "toolInvocation": {
            "state": "result",
            "toolCallId": call_id,
            "toolName": name,
            "args": args,
            "result": result,
        },
    }
