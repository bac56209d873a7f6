from __future__ import annotations

import asyncio
import json
from typing import Any, List

import httpx
import pytest

from chat_server.entities import Message, Session, text_part
from chat_server.errors import Forbidden, NotFound, RateLimited
from chat_server.events import StreamEvent
from chat_server.llm import ModelRegistry, ReasoningModel, ScriptedModel, TextDelta, ToolCallRequest
from chat_server.orchestrator import TurnOrchestrator, TurnRequest
from chat_server.quota import QuotaGuard
from chat_server.store import InMemoryConversationStore
from chat_server.streams import DisabledStreamManager, InMemoryStreamManager
from conftest import FakeClock
from tools.company_registry import CompanyRegistryTool
from tools.gateway import ToolGateway

ALICE = Session("alice")


def _orchestrator(model: Any, *, tools: ToolGateway = None, streams: Any = None, clock=None, **kwargs):
    clock = clock or FakeClock()
    store = InMemoryConversationStore()
    return TurnOrchestrator(
        store,
        streams or InMemoryStreamManager(clock=clock),
        ModelRegistry({"chat-model": model}),
        tools or ToolGateway(),
        kwargs.pop("quota", None) or QuotaGuard(store, clock=clock),
        system_prompt="Be brief.",
        clock=clock,
        **kwargs,
    )


def _request(chat_id: str, text: str, message_id: str = "m1") -> TurnRequest:
    return TurnRequest(
        conversation_id=chat_id,
        message=Message(id=message_id, conversation_id=chat_id, role="user", parts=[text_part(text)]),
        model_selector="chat-model",
    )


async def _collect(events: Any) -> List[StreamEvent]:
    return [e async for e in events]


def _registry_tool() -> CompanyRegistryTool:
    def handler(request: httpx.Request) -> httpx.Response:
        krs = request.url.path.rsplit("/", 1)[-1]
        if krs == "0000012345":
            return httpx.Response(200, json={"krs": krs, "name": "ACME sp. z o.o."})
        return httpx.Response(404, json={"detail": "missing"})

    return CompanyRegistryTool("https://registry.example", "k", transport=httpx.MockTransport(handler))


def test_tool_round_then_answer():
    model = ScriptedModel(
        rounds=[
            [ToolCallRequest("call_1", "getCompanyByKRS", '{"krs_number": "0000012345"}')],
            ["ACME ", "registered."],
        ]
    )
    orch = _orchestrator(model, tools=ToolGateway([_registry_tool()]))

    async def main():
        turn = await orch.submit_turn(ALICE, _request("c1", "who is 0000012345?"))
        events = await _collect(turn)
        await turn.task
        return events, await orch.store.list_messages("c1")

    events, messages = asyncio.run(main())

    assert [e.type for e in events] == ["tool-call", "tool-result", "text-delta", "text-delta", "done"]
    assert [e.seq for e in events] == list(range(5))
    assert events[0].data["args"] == {"krs_number": "0000012345"}
    assert events[1].data["result"] == {"krs": "0000012345", "name": "ACME sp. z o.o."}

    reply = messages[-1]
    assert reply.role == "assistant"
    assert reply.id == events[-1].data["messageId"]
    assert [p["type"] for p in reply.parts] == ["tool-invocation", "text"]
    assert reply.tool_invocations()[0]["toolName"] == "getCompanyByKRS"
    assert reply.text == "ACME registered."

    # The second model call saw the tool call and its result.
    second = model.calls[1]
    assert second[-2]["tool_calls"][0]["id"] == "call_1"
    assert second[-1]["role"] == "tool"
    assert json.loads(second[-1]["content"])["name"] == "ACME sp. z o.o."


def test_tool_error_is_fed_back_not_raised():
    model = ScriptedModel(
        rounds=[
            [ToolCallRequest("call_1", "getCompanyByKRS", '{"krs_number": "123456789"}')],
            ["That number looks wrong."],
        ]
    )
    orch = _orchestrator(model, tools=ToolGateway([_registry_tool()]))

    async def main():
        turn = await orch.submit_turn(ALICE, _request("c1", "lookup 123456789"))
        events = await _collect(turn)
        await turn.task
        return events

    events = asyncio.run(main())
    result = [e for e in events if e.type == "tool-result"][0].data["result"]
    assert result["code"] == "invalid_input"
    assert "exactly 10 characters" in result["error"]
    assert events[-1].type == "done"


def test_round_budget_is_enforced():
    looping = ScriptedModel(rounds=[[ToolCallRequest("call_x", "getCompanyByKRS", '{"krs_number": "0000012345"}')]])
    orch = _orchestrator(looping, tools=ToolGateway([_registry_tool()]), max_rounds=3)

    async def main():
        turn = await orch.submit_turn(ALICE, _request("c1", "loop forever"))
        events = await _collect(turn)
        await turn.task
        return events, await orch.store.list_messages("c1")

    events, messages = asyncio.run(main())
    assert len(looping.calls) == 3
    assert events[-1].type == "done"
    assert len(messages[-1].tool_invocations()) == 3


def test_deadline_cuts_the_turn_off():
    slow = ScriptedModel(rounds=[["never ", "arrives"]], delay=5.0)
    orch = _orchestrator(slow, deadline_seconds=0.05)

    async def main():
        turn = await orch.submit_turn(ALICE, _request("c1", "hello"))
        events = await _collect(turn)
        await turn.task
        return events, await orch.store.list_messages("c1")

    events, messages = asyncio.run(main())
    assert [e.type for e in events] == ["error"]
    assert events[0].data["code"] == "upstream:timeout"
    assert [m.role for m in messages] == ["user"]


def test_empty_generation_is_not_persisted():
    orch = _orchestrator(ScriptedModel(rounds=[[]]))

    async def main():
        turn = await orch.submit_turn(ALICE, _request("c1", "hello"))
        events = await _collect(turn)
        await turn.task
        return events, await orch.store.list_messages("c1")

    events, messages = asyncio.run(main())
    assert [(e.type, e.data) for e in events] == [("done", {"messageId": None})]
    assert [m.role for m in messages] == ["user"]


def test_store_failure_reports_internal_error():
    class FlakyStore(InMemoryConversationStore):
        async def append_messages(self, messages):
            if any(m.role == "assistant" for m in messages):
                raise OSError("disk full")
            await super().append_messages(messages)

    clock = FakeClock()
    store = FlakyStore()
    orch = TurnOrchestrator(
        store,
        InMemoryStreamManager(clock=clock),
        ModelRegistry({"chat-model": ScriptedModel(reply="hi")}),
        ToolGateway(),
        QuotaGuard(store, clock=clock),
        clock=clock,
    )

    async def main():
        turn = await orch.submit_turn(ALICE, _request("c1", "hello"))
        return await _collect(turn)

    events = asyncio.run(main())
    assert events[-1].type == "error"
    assert events[-1].data["code"] == "internal:store"


def test_reconnect_mid_stream_gets_only_the_remaining_events():
    class GatedModel:
        def __init__(self) -> None:
            self.gate: asyncio.Event = None

        async def stream(self, messages, tools=None):
            yield TextDelta("Hello ")
            await self.gate.wait()
            yield TextDelta("world")

    model = GatedModel()
    orch = _orchestrator(model)

    async def main():
        model.gate = asyncio.Event()
        turn = await orch.submit_turn(ALICE, _request("c1", "greet me"))
        feed = turn.subscription.__aiter__()
        first = await feed.__anext__()
        await turn.subscription.aclose()  # client went away

        outcome = await orch.resume(ALICE, "c1", after=first.seq)
        model.gate.set()
        rest = await _collect(outcome.events)
        await turn.task
        return first, outcome.kind, rest, await orch.store.list_messages("c1")

    first, kind, rest, messages = asyncio.run(main())
    assert first.data == {"text": "Hello "}
    assert kind == "live"
    assert [(e.type, e.seq) for e in rest] == [("text-delta", 1), ("done", 2)]
    assert rest[0].data == {"text": "world"}
    # Generation kept going while nobody was attached.
    assert messages[-1].text == "Hello world"


def test_resume_is_disabled_without_a_stream_backend():
    orch = _orchestrator(ScriptedModel(reply="hi"), streams=DisabledStreamManager())

    async def main():
        turn = await orch.submit_turn(ALICE, _request("c1", "hello"))
        events = await _collect(turn)
        await turn.task
        return events, await orch.resume(ALICE, "c1")

    events, outcome = asyncio.run(main())
    assert events[-1].type == "done"
    assert outcome is None


def test_quota_is_checked_before_the_model_runs():
    model = ScriptedModel(reply="hi")
    clock = FakeClock()
    store = InMemoryConversationStore()
    orch = _orchestrator(model, clock=clock, quota=QuotaGuard(store, {"regular": 0}, clock=clock))

    with pytest.raises(RateLimited):
        asyncio.run(orch.submit_turn(ALICE, _request("c1", "hello")))
    assert model.calls == []
    assert asyncio.run(orch.store.get_conversation("c1")) is None


def test_ownership_rules():
    orch = _orchestrator(ScriptedModel(reply="hi"))

    async def main():
        turn = await orch.submit_turn(ALICE, _request("c1", "hello"))
        await _collect(turn)
        await turn.task
        with pytest.raises(Forbidden):
            await orch.submit_turn(Session("bob"), _request("c1", "hijack", "m2"))
        with pytest.raises(Forbidden):
            await orch.delete_conversation(Session("bob"), "c1")
        with pytest.raises(NotFound):
            await orch.get_conversation(ALICE, "nope")
        deleted = await orch.delete_conversation(ALICE, "c1")
        return deleted

    deleted = asyncio.run(main())
    assert deleted.id == "c1"
    assert deleted.user_id == "alice"


def test_deadline_keeps_the_partial_word_already_streamed():
    class StallingModel:
        async def stream(self, messages, tools=None):
            yield TextDelta("Half ")
            yield TextDelta("wor")
            await asyncio.sleep(5)
            yield TextDelta("ld")

    orch = _orchestrator(StallingModel(), deadline_seconds=0.05)

    async def main():
        turn = await orch.submit_turn(ALICE, _request("c1", "hello"))
        events = await _collect(turn)
        await turn.task
        return events

    events = asyncio.run(main())
    assert [e.type for e in events] == ["text-delta", "text-delta", "error"]
    assert [e.data["text"] for e in events[:2]] == ["Half ", "wor"]
    assert events[-1].data["code"] == "upstream:timeout"


def test_reasoning_is_streamed_and_stored_apart_from_the_answer():
    inner = ScriptedModel(rounds=[["<thi", "nk>plan it</th", "ink>\n\nAnswer ", "here."]])
    orch = _orchestrator(ReasoningModel(inner, "think"))

    async def main():
        turn = await orch.submit_turn(ALICE, _request("c1", "question"))
        events = await _collect(turn)
        await turn.task
        return events, await orch.store.list_messages("c1")

    events, messages = asyncio.run(main())
    assert [e.type for e in events] == ["reasoning", "text-delta", "text-delta", "done"]
    assert events[0].data == {"text": "plan it"}
    assert "<think>" not in "".join(e.data.get("text", "") for e in events)

    reply = messages[-1]
    assert reply.parts[0] == {"type": "reasoning", "reasoning": "plan it"}
    assert reply.text == "Answer here."
