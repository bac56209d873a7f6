"""Resumable stream manager.

Every generation writes its events once into a :class:`BroadcastChannel`
registered under a stream id. Any number of callers can attach to the id and
follow the live feed; a caller that reconnects with the last sequence number
it saw (the SSE ``Last-Event-ID``) receives only what it missed, taken from a
bounded buffer, and then continues live.

Three managers share one contract (``register`` / ``attach`` /
``mark_complete``):

* :class:`InMemoryStreamManager` -- resumption across client reconnects
  within one process.
* :class:`RedisStreamManager` -- events mirrored to a Redis stream so that
  another worker process can attach.
* :class:`DisabledStreamManager` -- no backing store configured. The
  originating request still streams live, but nothing can be attached by id
  and the resume route answers 204.

:func:`build_stream_manager` picks one at process start.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, List, Optional, Set

from .entities import Message, utc_now
from .errors import NotFound
from .events import StreamEvent, append_message_event

logger = logging.getLogger(__name__)

ACTIVE = "active"
COMPLETED = "completed"
EXPIRED = "expired"


@dataclass
class StreamHandle:
    stream_id: str
    conversation_id: str
    state: str = ACTIVE
    created_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


async def _no_events() -> AsyncIterator[StreamEvent]:
    return
    yield  # pragma: no cover


class Subscription:
    """An attacher's view of a stream: async-iterable events plus the handle."""

    def __init__(self, handle: StreamHandle, events: AsyncIterator[StreamEvent], *, live: bool) -> None:
        self.handle = handle
        self.live = live
        self._events = events

    @classmethod
    def completed(cls, handle: StreamHandle) -> "Subscription":
        return cls(handle, _no_events(), live=False)

    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        return self._events

    async def aclose(self) -> None:
        closer = getattr(self._events, "aclose", None)
        if closer is not None:
            await closer()


# -----------------------------
# Broadcast channel
# -----------------------------
_CLOSED = object()


class _Listener:
    """One consumer of a channel.

    Registered the moment it is created: the retained backlog is captured
    then, and everything published afterwards lands in its own queue, so a
    live listener never loses events to the buffer bound.
    """

    def __init__(self, channel: "BroadcastChannel", after: Optional[int]) -> None:
        cursor = -1 if after is None else after
        self._channel = channel
        self._backlog: Deque[StreamEvent] = deque(e for e in channel._buffer if e.seq > cursor)
        if self._backlog and self._backlog[0].seq > cursor + 1 and after is not None:
            logger.debug(
                "Stream %s: attacher at %d lost events before %d (buffer bound)",
                channel.handle.stream_id, cursor, self._backlog[0].seq,
            )
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._done = channel.closed
        if not self._done:
            channel._listeners.add(self)

    def _push(self, item: Any) -> None:
        self._queue.put_nowait(item)

    def __aiter__(self) -> "_Listener":
        return self

    async def __anext__(self) -> StreamEvent:
        if self._backlog:
            return self._backlog.popleft()
        if self._done:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            await self.aclose()
            raise StopAsyncIteration
        return item

    async def aclose(self) -> None:
        self._done = True
        self._backlog.clear()
        self._channel._listeners.discard(self)


class BroadcastChannel:
    """Single producer, many consumers, bounded replay buffer.

    Every listener sees events in publish order. ``buffer_size`` bounds only
    what a late attacher can catch up on.
    """

    def __init__(self, handle: StreamHandle, buffer_size: int = 2048) -> None:
        self.handle = handle
        self._buffer: Deque[StreamEvent] = deque(maxlen=max(1, int(buffer_size)))
        self._listeners: Set[_Listener] = set()
        self._next_seq = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def publish(self, type: str, data: Optional[Dict[str, Any]] = None) -> StreamEvent:
        if self._closed:
            raise RuntimeError(f"stream {self.handle.stream_id} is closed")
        event = StreamEvent(type=type, data=dict(data or {}), seq=self._next_seq)
        self._next_seq += 1
        self._buffer.append(event)
        for listener in list(self._listeners):
            listener._push(event)
        return event

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for listener in list(self._listeners):
            listener._push(_CLOSED)

    def drop_buffer(self) -> None:
        self._buffer.clear()

    def subscribe(self, after: Optional[int] = None) -> _Listener:
        """Events with ``seq > after`` (all retained events when ``after`` is None), then live."""
        return _Listener(self, after)



# -----------------------------
# In-memory manager
# -----------------------------
class InMemoryStreamManager:
    enabled = True

    def __init__(
        self,
        *,
        buffer_size: int = 2048,
        retention_seconds: float = 3600,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.buffer_size = int(buffer_size)
        self.retention = timedelta(seconds=float(retention_seconds))
        self._clock = clock
        self._channels: Dict[str, BroadcastChannel] = {}

    def _new_channel(self, stream_id: str, conversation_id: str) -> BroadcastChannel:
        handle = StreamHandle(stream_id=stream_id, conversation_id=conversation_id, created_at=self._clock())
        return BroadcastChannel(handle, self.buffer_size)

    async def register(self, stream_id: str, conversation_id: str) -> BroadcastChannel:
        self.prune()
        if stream_id in self._channels:
            raise ValueError(f"stream {stream_id} already registered")
        channel = self._new_channel(stream_id, conversation_id)
        self._channels[stream_id] = channel
        logger.debug("Registered stream %s for chat %s", stream_id, conversation_id)
        return channel

    async def attach(self, stream_id: str, after: Optional[int] = None) -> Subscription:
        channel = self._channels.get(stream_id)
        if channel is None or channel.handle.state == EXPIRED:
            raise NotFound("not_found:stream")
        if channel.handle.state == COMPLETED:
            return Subscription.completed(channel.handle)
        return Subscription(channel.handle, channel.subscribe(after), live=True)

    async def publish(self, stream_id: str, type: str, data: Optional[Dict[str, Any]] = None) -> StreamEvent:
        channel = self._channels.get(stream_id)
        if channel is None:
            raise NotFound("not_found:stream")
        return await channel.publish(type, data)

    async def mark_complete(self, stream_id: str) -> None:
        channel = self._channels.get(stream_id)
        if channel is None:
            logger.warning("mark_complete for unknown stream %s", stream_id)
            return
        if channel.handle.state == ACTIVE:
            channel.handle.state = COMPLETED
            channel.handle.completed_at = self._clock()
        await channel.close()

    def prune(self, now: Optional[datetime] = None) -> int:
        """Expire completed handles past retention. Returns how many were dropped."""
        now = now or self._clock()
        cutoff = now - self.retention
        stale = [
            sid
            for sid, ch in self._channels.items()
            if ch.handle.state == COMPLETED and ch.handle.completed_at and ch.handle.completed_at <= cutoff
        ]
        for sid in stale:
            channel = self._channels.pop(sid)
            channel.handle.state = EXPIRED
            channel.drop_buffer()
        return len(stale)

    async def close(self) -> None:
        return None


# -----------------------------
# Redis manager
# -----------------------------
class RedisChannel(BroadcastChannel):
    """Local channel that mirrors every event into a Redis stream."""

    def __init__(self, handle: StreamHandle, manager: "RedisStreamManager") -> None:
        super().__init__(handle, manager.buffer_size)
        self._manager = manager

    async def publish(self, type: str, data: Optional[Dict[str, Any]] = None) -> StreamEvent:
        event = await super().publish(type, data)
        await self._manager._mirror(self.handle.stream_id, event)
        return event


class RedisStreamManager(InMemoryStreamManager):
    """Stream state in Redis so any worker can resume any generation.

    Keys per stream id (events and meta expire after ``retention_seconds``)::

        <prefix><id>:events   XADD log of JSON-encoded events
        <prefix><id>:meta     hash {conversation_id, state, created_at}
        <prefix><id>:lease    producer liveness, refreshed while the stream is active

    The lease lives for ``lease_seconds`` and is refreshed by a heartbeat task
    in the producing process. A stream whose meta still says ``active`` but
    whose lease has lapsed lost its producer (crash, restart) and is treated as
    completed, so attachers fall through to the snapshot/empty resume path.
    """

    def __init__(
        self,
        client: Any,
        *,
        key_prefix: str = "chat-stream:",
        buffer_size: int = 2048,
        retention_seconds: float = 3600,
        lease_seconds: float = 10,
        block_ms: int = 1000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(buffer_size=buffer_size, retention_seconds=retention_seconds, clock=clock)
        self.redis = client
        self.key_prefix = key_prefix
        self.lease_ms = max(100, int(float(lease_seconds) * 1000))
        self.block_ms = max(1, min(int(block_ms), self.lease_ms))
        self._ttl = max(1, int(self.retention.total_seconds()))
        self._heartbeats: Dict[str, "asyncio.Task[None]"] = {}

    def _events_key(self, stream_id: str) -> str:
        return f"{self.key_prefix}{stream_id}:events"

    def _meta_key(self, stream_id: str) -> str:
        return f"{self.key_prefix}{stream_id}:meta"

    def _lease_key(self, stream_id: str) -> str:
        return f"{self.key_prefix}{stream_id}:lease"

    def _new_channel(self, stream_id: str, conversation_id: str) -> BroadcastChannel:
        handle = StreamHandle(stream_id=stream_id, conversation_id=conversation_id, created_at=self._clock())
        return RedisChannel(handle, self)

    async def register(self, stream_id: str, conversation_id: str) -> BroadcastChannel:
        channel = await super().register(stream_id, conversation_id)
        meta = self._meta_key(stream_id)
        await self._renew_lease(stream_id)
        await self.redis.hset(
            meta,
            mapping={
                "conversation_id": conversation_id,
                "state": ACTIVE,
                "created_at": channel.handle.created_at.isoformat(),
            },
        )
        await self.redis.expire(meta, self._ttl)
        self._heartbeats[stream_id] = asyncio.create_task(
            self._heartbeat(stream_id), name=f"stream-lease-{stream_id}"
        )
        return channel

    async def _renew_lease(self, stream_id: str) -> None:
        await self.redis.set(self._lease_key(stream_id), "1", px=self.lease_ms)

    async def _heartbeat(self, stream_id: str) -> None:
        interval = self.lease_ms / 3000.0
        while True:
            await asyncio.sleep(interval)
            try:
                await self._renew_lease(stream_id)
            except Exception:
                logger.exception("Could not renew lease for stream %s", stream_id)

    async def _stop_heartbeat(self, stream_id: str) -> None:
        task = self._heartbeats.pop(stream_id, None)
        if task is None:
            return
        task.cancel()
        await asyncio.wait([task])

    async def _producer_alive(self, stream_id: str) -> bool:
        return bool(await self.redis.exists(self._lease_key(stream_id)))

    async def _mirror(self, stream_id: str, event: StreamEvent) -> None:
        key = self._events_key(stream_id)
        await self.redis.xadd(
            key,
            {"event": json.dumps(event.to_dict(), ensure_ascii=False, default=str)},
            maxlen=self.buffer_size,
            approximate=True,
        )
        await self.redis.expire(key, self._ttl)
        await self._renew_lease(stream_id)

    async def mark_complete(self, stream_id: str) -> None:
        await self._stop_heartbeat(stream_id)
        await super().mark_complete(stream_id)
        meta = self._meta_key(stream_id)
        await self.redis.hset(meta, "state", COMPLETED)
        await self.redis.expire(meta, self._ttl)
        await self.redis.delete(self._lease_key(stream_id))

    async def attach(self, stream_id: str, after: Optional[int] = None) -> Subscription:
        if stream_id in self._channels:
            return await super().attach(stream_id, after)
        meta = await self.redis.hgetall(self._meta_key(stream_id))
        if not meta:
            raise NotFound("not_found:stream")
        handle = StreamHandle(
            stream_id=stream_id,
            conversation_id=meta.get("conversation_id", ""),
            state=meta.get("state", COMPLETED),
        )
        if handle.state == ACTIVE and not await self._producer_alive(stream_id):
            logger.warning("Stream %s lost its producer; treating it as completed", stream_id)
            handle.state = COMPLETED
        if handle.state != ACTIVE:
            return Subscription.completed(handle)
        return Subscription(handle, self._follow(stream_id, after), live=True)

    async def _read(self, stream_id: str, last_id: str, block: Optional[int]) -> List[Any]:
        resp = await self.redis.xread({self._events_key(stream_id): last_id}, count=256, block=block)
        entries: List[Any] = []
        for _key, items in resp or []:
            entries.extend(items)
        return entries

    async def _follow(self, stream_id: str, after: Optional[int]) -> AsyncIterator[StreamEvent]:
        last_id = "0-0"
        cursor = -1 if after is None else after
        draining = False
        while True:
            entries = await self._read(stream_id, last_id, None if draining else self.block_ms)
            for entry_id, fields in entries:
                last_id = entry_id
                event = StreamEvent.from_dict(json.loads(fields["event"]))
                if event.seq is not None and event.seq <= cursor:
                    continue
                cursor = event.seq if event.seq is not None else cursor
                yield event
                if event.terminal:
                    return
            if entries:
                continue
            if draining:
                return
            state = await self.redis.hget(self._meta_key(stream_id), "state")
            if state != ACTIVE:
                # The terminal event is written before the state flips; read once more.
                draining = True
            elif not await self._producer_alive(stream_id):
                logger.warning("Producer of stream %s went away mid-follow", stream_id)
                draining = True

    async def close(self) -> None:
        for stream_id in list(self._heartbeats):
            await self._stop_heartbeat(stream_id)
        await self.redis.aclose()


# -----------------------------
# Disabled manager
# -----------------------------
class DisabledStreamManager:
    """No-resume mode: every attach by id is "not found"."""

    enabled = False

    def __init__(self, *, buffer_size: int = 2048, clock: Callable[[], datetime] = utc_now) -> None:
        self.buffer_size = int(buffer_size)
        self._clock = clock
        self._private: Dict[str, BroadcastChannel] = {}
        logger.warning("Resumable streams are disabled (no stream backend configured).")

    async def register(self, stream_id: str, conversation_id: str) -> BroadcastChannel:
        handle = StreamHandle(stream_id=stream_id, conversation_id=conversation_id, created_at=self._clock())
        channel = BroadcastChannel(handle, self.buffer_size)
        self._private[stream_id] = channel
        return channel

    async def attach(self, stream_id: str, after: Optional[int] = None) -> Subscription:
        raise NotFound("not_found:stream")

    async def publish(self, stream_id: str, type: str, data: Optional[Dict[str, Any]] = None) -> StreamEvent:
        channel = self._private.get(stream_id)
        if channel is None:
            raise NotFound("not_found:stream")
        return await channel.publish(type, data)

    async def mark_complete(self, stream_id: str) -> None:
        channel = self._private.pop(stream_id, None)
        if channel is None:
            return
        channel.handle.state = COMPLETED
        channel.handle.completed_at = self._clock()
        await channel.close()

    async def close(self) -> None:
        return None


def build_stream_manager(cfg: Dict[str, Any], *, clock: Callable[[], datetime] = utc_now):
    """Create the process-wide stream manager from the ``streams`` config section."""
    s = cfg.get("streams", {}) or {}
    backend = str(s.get("backend") or "none").lower()
    buffer_size = int(s.get("buffer_size", 2048))
    retention = float(s.get("retention_seconds", 3600))

    if backend == "memory":
        return InMemoryStreamManager(buffer_size=buffer_size, retention_seconds=retention, clock=clock)
    if backend == "redis":
        url = s.get("redis_url")
        if not url:
            logger.warning("streams.backend is 'redis' but no redis_url/REDIS_URL is set.")
            return DisabledStreamManager(buffer_size=buffer_size, clock=clock)
        import redis.asyncio as redis

        client = redis.from_url(url, encoding="utf-8", decode_responses=True)
        logger.info("Resumable streams backed by Redis (prefix %s)", s.get("key_prefix"))
        return RedisStreamManager(
            client,
            key_prefix=str(s.get("key_prefix") or "chat-stream:"),
            buffer_size=buffer_size,
            retention_seconds=retention,
            lease_seconds=float(s.get("lease_seconds", 10)),
            clock=clock,
        )
    if backend not in ("none", "disabled", "off"):
        raise RuntimeError(f"Unknown streams backend: {backend!r}")
    return DisabledStreamManager(buffer_size=buffer_size, clock=clock)


# -----------------------------
# Resume resolution
# -----------------------------
@dataclass
class ResumeOutcome:
    """What a resume request gets: ``live`` feed, a ``snapshot`` event, or ``empty``."""

    kind: str
    events: AsyncIterator[StreamEvent]


async def _single(event: StreamEvent) -> AsyncIterator[StreamEvent]:
    yield event


async def resolve_resume(
    manager: Any,
    stream_id: str,
    load_messages: Callable[[], Awaitable[List[Message]]],
    *,
    after: Optional[int] = None,
    window_seconds: float = 15,
    now: Optional[datetime] = None,
) -> ResumeOutcome:
    """Decide between a live tail, a snapshot of the last reply, or nothing.

    * stream still active: attach and follow it live;
    * stream finished and the last message is an assistant message created
      within ``window_seconds`` of ``now``: one ``append-message`` event;
    * otherwise: no events at all.

    ``load_messages`` is only awaited when the stream is no longer active.
    """
    now = now or utc_now()
    try:
        subscription = await manager.attach(stream_id, after)
    except NotFound:
        subscription = None

    if subscription is not None and subscription.live:
        return ResumeOutcome("live", subscription.__aiter__())

    messages = await load_messages()
    last = messages[-1] if messages else None
    if last is None or last.role != "assistant":
        return ResumeOutcome("empty", _no_events())
    if (now - last.created_at).total_seconds() > float(window_seconds):
        return ResumeOutcome("empty", _no_events())
    return ResumeOutcome("snapshot", _single(append_message_event(last.to_dict())))
