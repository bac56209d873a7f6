from __future__ import annotations

import asyncio
import json
from typing import Any, List

import httpx
import pytest

from chat_server.entities import Message, text_part, tool_invocation_part
from chat_server.errors import BadRequest, UpstreamError
from chat_server.llm import (
    ModelRegistry,
    OpenAIChatModel,
    ReasoningDelta,
    ReasoningModel,
    ReasoningTagSplitter,
    ScriptedModel,
    TextDelta,
    TitleGenerator,
    ToolCallRequest,
    WordChunker,
    build_model_messages,
    create_from_config,
)


def _sse(*chunks: Any) -> bytes:
    lines = [f"data: {json.dumps(c)}\n\n" for c in chunks]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


async def _drain(model, messages=None, tools=None) -> List[Any]:
    return [c async for c in model.stream(messages or [{"role": "user", "content": "hi"}], tools)]


def _model(handler, **kwargs) -> OpenAIChatModel:
    kwargs.setdefault("base_url", "https://llm.example/v1")
    kwargs.setdefault("api_key", "sk-test")
    kwargs.setdefault("model", "gpt-test")
    return OpenAIChatModel(transport=httpx.MockTransport(handler), **kwargs)


def test_openai_stream_text_and_fragmented_tool_call():
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = _sse(
            {"choices": [{"delta": {"content": "Let me "}}]},
            {"choices": [{"delta": {"content": "check."}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "id": "call_9", "function": {"name": "getCompanyByKRS", "arguments": '{"krs_'}}]}}]},
            {"choices": [{"delta": {"tool_calls": [{"index": 0, "function": {"arguments": 'number": "0000012345"}'}}]}}]},
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    chunks = asyncio.run(_drain(_model(handler), tools=[{"type": "function", "function": {"name": "x"}}]))

    assert chunks[:2] == [TextDelta("Let me "), TextDelta("check.")]
    assert chunks[2] == ToolCallRequest("call_9", "getCompanyByKRS", '{"krs_number": "0000012345"}')
    payload = json.loads(seen[0].content)
    assert payload["model"] == "gpt-test"
    assert payload["stream"] is True
    assert payload["tools"][0]["function"]["name"] == "x"
    assert seen[0].headers["Authorization"] == "Bearer sk-test"
    assert str(seen[0].url) == "https://llm.example/v1/chat/completions"


def test_azure_request_shape():
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=_sse({"choices": [{"delta": {"content": "ok"}}]}))

    model = _model(
        handler,
        base_url="https://res.openai.azure.com/openai/deployments",
        model="gpt-4.1",
        azure=True,
        api_version="2025-01-01-preview",
    )
    asyncio.run(_drain(model))
    request = seen[0]
    assert request.url.path == "/openai/deployments/gpt-4.1/chat/completions"
    assert request.url.params["api-version"] == "2025-01-01-preview"
    assert request.headers["api-key"] == "sk-test"
    assert "model" not in json.loads(request.content)


def test_provider_error_status_is_upstream_error():
    model = _model(lambda request: httpx.Response(500, text="kaboom at 10.0.0.1"))
    with pytest.raises(UpstreamError) as exc:
        asyncio.run(_drain(model))
    assert exc.value.code == "upstream:model"
    assert "10.0.0.1" not in exc.value.message


def test_provider_unreachable_is_upstream_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(UpstreamError):
        asyncio.run(_drain(_model(handler)))


def test_scripted_model_rounds():
    model = ScriptedModel(rounds=[["a ", ToolCallRequest("c", "t", "{}")], ["done"]])
    first = asyncio.run(_drain(model, [{"role": "user", "content": "go"}]))
    second = asyncio.run(
        _drain(model, [{"role": "user", "content": "go"}, {"role": "assistant", "content": "a "}, {"role": "tool", "content": "{}"}])
    )
    assert first == [TextDelta("a "), ToolCallRequest("c", "t", "{}")]
    assert second == [TextDelta("done")]
    assert len(model.calls) == 2


def test_history_becomes_provider_messages():
    history = [
        Message(
            id="u1",
            conversation_id="c",
            role="user",
            parts=[text_part("look")],
            attachments=[{"url": "https://img.example/a.png", "name": "a.png", "contentType": "image/png"}],
        ),
        Message(
            id="a1",
            conversation_id="c",
            role="assistant",
            parts=[tool_invocation_part("call_1", "getCompanyByKRS", {"krs_number": "1"}, {"name": "X"}), text_part("X it is.")],
        ),
    ]
    msgs = build_model_messages("sys", history)
    assert [m["role"] for m in msgs] == ["system", "user", "assistant", "tool", "assistant"]
    assert msgs[1]["content"][1] == {"type": "image_url", "image_url": {"url": "https://img.example/a.png"}}
    assert msgs[2]["tool_calls"][0]["function"]["name"] == "getCompanyByKRS"
    assert json.loads(msgs[3]["content"]) == {"name": "X"}
    assert msgs[4]["content"] == "X it is."


def test_word_chunker():
    chunker = WordChunker()
    out: List[str] = []
    for piece in ["Hel", "lo wor", "ld, how", " are you"]:
        out.extend(chunker.feed(piece))
    out.extend(chunker.flush())
    assert out == ["Hello ", "world, ", "how ", "are ", "you"]
    assert "".join(out) == "Hello world, how are you"


def test_title_generator():
    assert asyncio.run(TitleGenerator().generate("What is KRS 0000012345?\nthanks")) == "What is KRS 0000012345?"
    titled = TitleGenerator(ScriptedModel(reply='"Company: lookup"'))
    assert asyncio.run(titled.generate("anything")) == "Company lookup"
    failing = TitleGenerator(ScriptedModel(rounds=[[UpstreamError()]]))
    assert asyncio.run(failing.generate("fallback please")) == "fallback please"
    long = asyncio.run(TitleGenerator(max_length=10).generate("x" * 50))
    assert len(long) == 10


def test_registry_and_config(clean_env):
    registry = create_from_config({"models": {"default": "chat-model", "providers": {}}})
    assert registry.selectors == ["chat-model"]
    assert isinstance(registry.get(None), ScriptedModel)
    with pytest.raises(BadRequest):
        registry.get("unknown")

    registry = create_from_config(
        {
            "models": {
                "default": "chat-model",
                "providers": {
                    "chat-model": {"kind": "openai", "base_url": "https://llm.example/v1", "api_key": "k", "model": "m"},
                    "title-model": {"kind": "scripted", "reply": "A title"},
                },
            }
        }
    )
    assert isinstance(registry.get("chat-model"), OpenAIChatModel)
    assert "title-model" in registry
    assert registry.find("missing") is None
    assert isinstance(ModelRegistry({"a": ScriptedModel()}).get(None), ScriptedModel)


def test_reasoning_tags_split_across_deltas():
    splitter = ReasoningTagSplitter("think")
    out: List[Any] = []
    for delta in ["<thi", "nk>plan it</th", "ink>\n\nAnswer ", "a < b"]:
        out.extend(splitter.feed(delta))
    out.extend(splitter.flush())

    assert out == [ReasoningDelta("plan it"), TextDelta("Answer "), TextDelta("a < b")]


def test_unclosed_reasoning_stays_out_of_text():
    splitter = ReasoningTagSplitter("think")
    out = splitter.feed("<think>still thinking") + splitter.flush()
    assert out == [ReasoningDelta("still thinking")]


def test_reasoning_tag_wraps_configured_model(clean_env):
    registry = create_from_config(
        {
            "models": {
                "providers": {
                    "chat-model-reasoning": {"kind": "scripted", "reply": "<think>hm</think> ok", "reasoning_tag": "think"},
                },
            }
        }
    )
    model = registry.get("chat-model-reasoning")
    assert isinstance(model, ReasoningModel)

    async def main():
        return [c async for c in model.stream([{"role": "user", "content": "hi"}])]

    chunks = asyncio.run(main())
    assert [c for c in chunks if isinstance(c, ReasoningDelta)] == [ReasoningDelta("hm")]
    assert "".join(c.text for c in chunks if isinstance(c, TextDelta)) == "ok"
