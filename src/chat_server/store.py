"""Conversation store adapters: the core's only path to durability.

Two implementations share the :class:`ConversationStore` contract:

* :class:`InMemoryConversationStore` keeps everything in dicts (tests, demos).
* :class:`DiskConversationStore` keeps one JSON metadata file per
  conversation plus append-only JSONL logs for messages and stream ids.

Layout of the disk store::

    data_dir/
      conversations/<id>.json   # conversation metadata (atomic rewrite)
      messages/<id>.jsonl       # append-only message log
      streams/<id>.jsonl        # append-only stream-id index
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence
from urllib.parse import quote

from utils.io import append_jsonl, atomic_write_json, ensure_dir, read_json, read_jsonl

from .entities import Conversation, Message

logger = logging.getLogger(__name__)


class ConversationStore(Protocol):
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    async def save_conversation(self, conversation: Conversation) -> None: ...

    async def delete_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    async def list_messages(self, conversation_id: str) -> List[Message]: ...

    async def append_messages(self, messages: Sequence[Message]) -> None: ...

    async def count_user_messages(self, user_id: str, since: datetime) -> int: ...

    async def create_stream_id(self, stream_id: str, conversation_id: str) -> None: ...

    async def get_stream_ids(self, conversation_id: str) -> List[str]: ...


def _sorted(messages: List[Message]) -> List[Message]:
    # stable: equal timestamps keep append order
    return sorted(messages, key=lambda m: m.created_at)


# -----------------------------
# In-memory
# -----------------------------
class InMemoryConversationStore:
    def __init__(self) -> None:
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._streams: Dict[str, List[str]] = {}

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    async def save_conversation(self, conversation: Conversation) -> None:
        existing = self._conversations.get(conversation.id)
        if existing is not None and existing.user_id != conversation.user_id:
            raise ValueError("conversation owner is immutable")
        self._conversations[conversation.id] = conversation

    async def delete_conversation(self, conversation_id: str) -> Optional[Conversation]:
        self._messages.pop(conversation_id, None)
        self._streams.pop(conversation_id, None)
        return self._conversations.pop(conversation_id, None)

    async def list_messages(self, conversation_id: str) -> List[Message]:
        return _sorted(list(self._messages.get(conversation_id, [])))

    async def append_messages(self, messages: Sequence[Message]) -> None:
        for m in messages:
            self._messages.setdefault(m.conversation_id, []).append(m)

    async def count_user_messages(self, user_id: str, since: datetime) -> int:
        owned = {cid for cid, c in self._conversations.items() if c.user_id == user_id}
        return sum(
            1
            for cid in owned
            for m in self._messages.get(cid, [])
            if m.role == "user" and m.created_at >= since
        )

    async def create_stream_id(self, stream_id: str, conversation_id: str) -> None:
        self._streams.setdefault(conversation_id, []).append(stream_id)

    async def get_stream_ids(self, conversation_id: str) -> List[str]:
        return list(self._streams.get(conversation_id, []))


# -----------------------------
# Disk
# -----------------------------
def _safe_name(name: str) -> str:
    """File stem for a conversation id; distinct ids never share a file.

    Percent-encoded (dots too, so no id can end in ``.corrupt``). Stems too
    long for a file name become a digest under a ``%`` prefix no encoded id
    can start with.
    """
    s = quote(name, safe="-_").replace(".", "%2E")
    if len(s) > 180:
        s = "%sha256-" + hashlib.sha256(name.encode("utf-8")).hexdigest()
    return s


class DiskConversationStore:
    """JSON/JSONL store. Blocking file I/O runs in a worker thread."""

    def __init__(self, data_dir: str) -> None:
        self.root = Path(data_dir)
        self.conversations_dir = ensure_dir(self.root / "conversations")
        self.messages_dir = ensure_dir(self.root / "messages")
        self.streams_dir = ensure_dir(self.root / "streams")
        self._lock = threading.RLock()

    # --------- paths ----------
    def _conversation_path(self, conversation_id: str) -> Path:
        return self.conversations_dir / f"{_safe_name(conversation_id)}.json"

    def _messages_path(self, conversation_id: str) -> Path:
        return self.messages_dir / f"{_safe_name(conversation_id)}.jsonl"

    def _streams_path(self, conversation_id: str) -> Path:
        return self.streams_dir / f"{_safe_name(conversation_id)}.jsonl"

    # --------- sync internals ----------
    def _load_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return self._load_conversation_file(self._conversation_path(conversation_id))

    def _load_conversation_file(self, path: Path) -> Optional[Conversation]:
        if not path.exists():
            return None
        try:
            return Conversation.from_dict(read_json(path))
        except (ValueError, KeyError) as e:
            # Corruption fallback: keep a backup and treat the chat as gone.
            logger.error("Corrupt conversation file %s: %s", path, e)
            with self._lock:
                bad = path.with_suffix(".corrupt.json")
                try:
                    path.rename(bad)
                except OSError as rename_err:
                    logger.warning("Could not move aside %s: %s", path, rename_err)
            return None

    def _save_conversation(self, conversation: Conversation) -> None:
        with self._lock:
            existing = self._load_conversation(conversation.id)
            if existing is not None and existing.user_id != conversation.user_id:
                raise ValueError("conversation owner is immutable")
            atomic_write_json(self._conversation_path(conversation.id), conversation.to_dict())

    def _delete_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            conversation = self._load_conversation(conversation_id)
            if conversation is None:
                return None
            for path in (
                self._messages_path(conversation_id),
                self._streams_path(conversation_id),
                self._conversation_path(conversation_id),
            ):
                path.unlink(missing_ok=True)
            return conversation

    def _list_messages(self, conversation_id: str) -> List[Message]:
        rows = read_jsonl(self._messages_path(conversation_id))
        return _sorted([Message.from_dict(r) for r in rows])

    def _append_messages(self, messages: Sequence[Message]) -> None:
        with self._lock:
            for m in messages:
                append_jsonl(self._messages_path(m.conversation_id), m.to_dict())

    def _count_user_messages(self, user_id: str, since: datetime) -> int:
        total = 0
        for path in self.conversations_dir.glob("*.json"):
            if path.name.endswith(".corrupt.json"):
                continue
            conversation = self._load_conversation_file(path)
            if conversation is None or conversation.user_id != user_id:
                continue
            total += sum(
                1
                for m in self._list_messages(conversation.id)
                if m.role == "user" and m.created_at >= since
            )
        return total

    def _create_stream_id(self, stream_id: str, conversation_id: str) -> None:
        with self._lock:
            append_jsonl(self._streams_path(conversation_id), {"streamId": stream_id})

    def _get_stream_ids(self, conversation_id: str) -> List[str]:
        return [str(r["streamId"]) for r in read_jsonl(self._streams_path(conversation_id))]

    # --------- async API ----------
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return await asyncio.to_thread(self._load_conversation, conversation_id)

    async def save_conversation(self, conversation: Conversation) -> None:
        await asyncio.to_thread(self._save_conversation, conversation)

    async def delete_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return await asyncio.to_thread(self._delete_conversation, conversation_id)

    async def list_messages(self, conversation_id: str) -> List[Message]:
        return await asyncio.to_thread(self._list_messages, conversation_id)

    async def append_messages(self, messages: Sequence[Message]) -> None:
        await asyncio.to_thread(self._append_messages, list(messages))

    async def count_user_messages(self, user_id: str, since: datetime) -> int:
        return await asyncio.to_thread(self._count_user_messages, user_id, since)

    async def create_stream_id(self, stream_id: str, conversation_id: str) -> None:
        await asyncio.to_thread(self._create_stream_id, stream_id, conversation_id)

    async def get_stream_ids(self, conversation_id: str) -> List[str]:
        return await asyncio.to_thread(self._get_stream_ids, conversation_id)


def build_store(cfg: Dict) -> ConversationStore:
    storage = cfg.get("storage", {}) or {}
    backend = str(storage.get("backend", "memory")).lower()
    if backend == "disk":
        return DiskConversationStore(storage.get("data_dir") or "data")
    if backend != "memory":
        raise RuntimeError(f"Unknown storage backend: {backend!r}")
    return InMemoryConversationStore()
