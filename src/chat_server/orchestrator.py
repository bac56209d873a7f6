"""Turn orchestration: admit a user turn, drive the model, persist the reply.

A turn is admitted synchronously -- quota, ownership (or creation) of the
conversation, the user message appended to the store, a stream id recorded
and registered with the stream manager -- and then generated by a background
task that does not depend on the HTTP client staying connected.

Generation is a bounded state machine::

    GENERATING -> AWAITING_TOOL_RESULT -> GENERATING -> ... -> DONE

with at most ``max_rounds`` model calls. Every event is published once into
the turn's broadcast channel; the assistant message is persisted once,
before the terminal ``done`` event. Provider failures end the stream with an
``error`` event and nothing is persisted for the turn.
"""
from __future__ import annotations

import asyncio
import enum
import json
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from tools.gateway import ToolGateway

from .entities import (
    VISIBILITIES,
    Conversation,
    Message,
    Session,
    reasoning_part,
    text_part,
    tool_invocation_part,
    utc_now,
)
from .errors import BadRequest, Forbidden, InternalError, NotFound, UpstreamError
from .events import DONE, ERROR, REASONING, TEXT_DELTA, TOOL_CALL, TOOL_RESULT
from .llm import (
    ChatModel,
    ModelRegistry,
    ReasoningDelta,
    TextDelta,
    TitleGenerator,
    ToolCallRequest,
    WordChunker,
    assistant_round_messages,
    build_model_messages,
)
from .quota import QuotaGuard
from .store import ConversationStore
from .streams import BroadcastChannel, ResumeOutcome, Subscription, resolve_resume

logger = logging.getLogger(__name__)


class TurnPhase(enum.Enum):
    GENERATING = "generating"
    AWAITING_TOOL_RESULT = "awaiting_tool_result"
    DONE = "done"


@dataclass
class TurnRequest:
    conversation_id: str
    message: Message
    model_selector: Optional[str] = None
    visibility: str = "private"


@dataclass
class TurnStream:
    """What the submitting caller gets back: the stream id and its live feed."""

    stream_id: str
    conversation_id: str
    subscription: Subscription
    task: "asyncio.Task[None]"

    def __aiter__(self):
        return self.subscription.__aiter__()


def _decode_args(raw: str) -> Any:
    try:
        return json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        return raw


class TurnOrchestrator:
    def __init__(
        self,
        store: ConversationStore,
        streams: Any,
        models: ModelRegistry,
        tools: ToolGateway,
        quota: QuotaGuard,
        titles: Optional[TitleGenerator] = None,
        *,
        system_prompt: str = "",
        max_rounds: int = 5,
        deadline_seconds: Optional[float] = 60,
        chunking: str = "word",
        resume_window_seconds: float = 15,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ) -> None:
        if max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        self.store = store
        self.streams = streams
        self.models = models
        self.tools = tools
        self.quota = quota
        self.titles = titles or TitleGenerator()
        self.system_prompt = system_prompt
        self.max_rounds = int(max_rounds)
        self.deadline_seconds = float(deadline_seconds) if deadline_seconds else None
        self.chunking = chunking
        self.resume_window_seconds = float(resume_window_seconds)
        self._clock = clock
        self._new_id = id_factory
        self._tasks: Set["asyncio.Task[None]"] = set()

    # -------------------------
    # Admission
    # -------------------------
    async def submit_turn(self, session: Session, request: TurnRequest) -> TurnStream:
        model = self.models.get(request.model_selector)
        if request.message.role != "user" or not request.message.parts:
            raise BadRequest()
        if request.visibility not in VISIBILITIES:
            raise BadRequest()

        await self.quota.check_and_admit(session.user_id, session.user_type)

        cid = request.conversation_id
        conversation = await self.store.get_conversation(cid)
        if conversation is None:
            title = await self.titles.generate(request.message.text)
            conversation = Conversation(
                id=cid,
                user_id=session.user_id,
                title=title,
                visibility=request.visibility,  # type: ignore[arg-type]
                created_at=self._clock(),
            )
            await self.store.save_conversation(conversation)
            logger.info("Created chat %s for user %s", cid, session.user_id)
        elif conversation.user_id != session.user_id:
            raise Forbidden()

        history = await self.store.list_messages(cid)
        user_message = replace(request.message, conversation_id=cid, created_at=self._clock())
        await self.store.append_messages([user_message])

        stream_id = self._new_id()
        await self.store.create_stream_id(stream_id, cid)
        channel = await self.streams.register(stream_id, cid)
        # Subscribe before the producer starts so the submitter sees every event.
        subscription = Subscription(channel.handle, channel.subscribe(), live=True)

        task = asyncio.create_task(
            self._run_turn(channel, model, conversation, history + [user_message]),
            name=f"turn-{stream_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._forget_task)
        logger.info("Turn started: chat=%s stream=%s user=%s", cid, stream_id, session.user_id)
        return TurnStream(stream_id=stream_id, conversation_id=cid, subscription=subscription, task=task)

    def _forget_task(self, task: "asyncio.Task[None]") -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Turn task %s crashed", task.get_name(), exc_info=task.exception())

    # -------------------------
    # Generation
    # -------------------------
    async def _run_turn(
        self,
        channel: BroadcastChannel,
        model: ChatModel,
        conversation: Conversation,
        history: List[Message],
    ) -> None:
        stream_id = channel.handle.stream_id
        try:
            try:
                if self.deadline_seconds:
                    parts = await asyncio.wait_for(
                        self._generate(channel, model, history), timeout=self.deadline_seconds
                    )
                else:
                    parts = await self._generate(channel, model, history)
            except asyncio.TimeoutError:
                logger.warning("Stream %s cut off after %.0fs; nothing persisted", stream_id, self.deadline_seconds)
                await channel.publish(ERROR, UpstreamError("upstream:timeout").to_dict())
                return
            except UpstreamError as e:
                logger.warning("Stream %s ended with upstream error: %s", stream_id, e.message)
                await channel.publish(ERROR, e.to_dict())
                return
            except Exception:
                logger.exception("Model stream %s failed", stream_id)
                await channel.publish(ERROR, UpstreamError().to_dict())
                return
            await self._persist(channel, conversation, parts)
        finally:
            await self.streams.mark_complete(stream_id)
            logger.debug("Stream %s marked complete", stream_id)

    async def _generate(
        self, channel: BroadcastChannel, model: ChatModel, history: List[Message]
    ) -> List[Dict[str, Any]]:
        context = build_model_messages(self.system_prompt, history)
        tool_defs = self.tools.definitions() or None
        parts: List[Dict[str, Any]] = []
        phase = TurnPhase.GENERATING
        rounds = 0

        while phase is not TurnPhase.DONE:
            rounds += 1
            reasoning, text, calls = await self._model_round(channel, model, context, tool_defs)
            if reasoning:
                parts.append(reasoning_part(reasoning))
            if text:
                parts.append(text_part(text))
            if not calls:
                phase = TurnPhase.DONE
                continue

            phase = TurnPhase.AWAITING_TOOL_RESULT
            invocations = await self._resolve_tools(channel, calls)
            parts.extend(
                tool_invocation_part(inv["toolCallId"], inv["toolName"], inv["args"], inv["result"])
                for inv in invocations
            )
            context.extend(assistant_round_messages(text, invocations))

            if rounds >= self.max_rounds:
                logger.info("Stream %s used its %d-round budget", channel.handle.stream_id, self.max_rounds)
                phase = TurnPhase.DONE
            else:
                phase = TurnPhase.GENERATING
        return parts

    async def _model_round(
        self,
        channel: BroadcastChannel,
        model: ChatModel,
        context: List[Dict[str, Any]],
        tool_defs: Optional[List[Dict[str, Any]]],
    ) -> Tuple[str, str, List[ToolCallRequest]]:
        text: List[str] = []
        reasoning: List[str] = []
        calls: List[ToolCallRequest] = []
        chunker = WordChunker() if self.chunking == "word" else None
        try:
            async for chunk in model.stream(context, tool_defs):
                if isinstance(chunk, TextDelta):
                    text.append(chunk.text)
                    for piece in chunker.feed(chunk.text) if chunker else [chunk.text]:
                        await channel.publish(TEXT_DELTA, {"text": piece})
                elif isinstance(chunk, ReasoningDelta):
                    reasoning.append(chunk.text)
                    await channel.publish(REASONING, {"text": chunk.text})
                elif isinstance(chunk, ToolCallRequest):
                    calls.append(chunk)
                    await channel.publish(
                        TOOL_CALL,
                        {"toolCallId": chunk.call_id, "toolName": chunk.name, "args": _decode_args(chunk.arguments)},
                    )
        finally:
            # Text the model already produced is delivered even if the stream broke off.
            if chunker:
                for piece in chunker.flush():
                    await channel.publish(TEXT_DELTA, {"text": piece})
        return "".join(reasoning), "".join(text), calls

    async def _resolve_tools(
        self, channel: BroadcastChannel, calls: List[ToolCallRequest]
    ) -> List[Dict[str, Any]]:
        results = await asyncio.gather(*(self.tools.invoke(c.name, c.arguments) for c in calls))
        invocations: List[Dict[str, Any]] = []
        for call, result in zip(calls, results):
            invocations.append(
                {
                    "toolCallId": call.call_id,
                    "toolName": call.name,
                    "args": _decode_args(call.arguments),
                    "result": result,
                }
            )
            await channel.publish(
                TOOL_RESULT, {"toolCallId": call.call_id, "toolName": call.name, "result": result}
            )
        return invocations

    async def _persist(
        self, channel: BroadcastChannel, conversation: Conversation, parts: List[Dict[str, Any]]
    ) -> None:
        if not parts:
            logger.warning("Stream %s produced no content; nothing persisted", channel.handle.stream_id)
            await channel.publish(DONE, {"messageId": None})
            return
        message = Message(
            id=self._new_id(),
            conversation_id=conversation.id,
            role="assistant",
            parts=parts,
            created_at=self._clock(),
        )
        try:
            await self.store.append_messages([message])
        except Exception:
            logger.exception("Failed to save assistant message for chat %s", conversation.id)
            await channel.publish(ERROR, InternalError("internal:store").to_dict())
            return
        await channel.publish(DONE, {"messageId": message.id})

    # -------------------------
    # Resume / read / delete
    # -------------------------
    async def resume(
        self, session: Session, conversation_id: str, after: Optional[int] = None
    ) -> Optional[ResumeOutcome]:
        """``None`` when resumable streaming is disabled altogether."""
        if not self.streams.enabled:
            return None
        requested_at = self._clock()
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFound()
        if not conversation.readable_by(session.user_id):
            raise Forbidden()
        stream_ids = await self.store.get_stream_ids(conversation_id)
        if not stream_ids:
            raise NotFound("not_found:stream")
        return await resolve_resume(
            self.streams,
            stream_ids[-1],
            lambda: self.store.list_messages(conversation_id),
            after=after,
            window_seconds=self.resume_window_seconds,
            now=requested_at,
        )

    async def get_conversation(self, session: Session, conversation_id: str) -> Tuple[Conversation, List[Message]]:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFound()
        if not conversation.readable_by(session.user_id):
            raise Forbidden()
        return conversation, await self.store.list_messages(conversation_id)

    async def delete_conversation(self, session: Session, conversation_id: str) -> Conversation:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise NotFound()
        if conversation.user_id != session.user_id:
            raise Forbidden()
        deleted = await self.store.delete_conversation(conversation_id)
        if deleted is None:
            raise NotFound()
        logger.info("Deleted chat %s", conversation_id)
        return deleted

    # -------------------------
    # Lifecycle
    # -------------------------
    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight generations (used on shutdown)."""
        if not self._tasks:
            return
        logger.info("Waiting for %d in-flight turn(s)", len(self._tasks))
        _done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)
