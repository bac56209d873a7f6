"""Streaming chat-model providers with tool calling, plus chat-style helpers."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterator,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Union,
)

import httpx

from .entities import Message
from .errors import BadRequest, UpstreamError

logger = logging.getLogger(__name__)


# -----------------------------
# Types & defaults
# -----------------------------

@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ReasoningDelta:
    text: str


@dataclass(frozen=True)
class ToolCallRequest:
    call_id: str
    name: str
    arguments: str  # raw JSON as produced by the model


ModelChunk = Union[TextDelta, ReasoningDelta, ToolCallRequest]


class ChatModel(Protocol):
    def stream(
        self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None
    ) -> AsyncIterator[ModelChunk]: ...


@dataclass
class GenerationConfig:
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None


def _bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(v)


# -----------------------------
# History -> provider messages
# -----------------------------

def _tool_content(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, ensure_ascii=False, default=str)


def assistant_round_messages(
    text: str, invocations: Sequence[Mapping[str, Any]]
) -> List[Dict[str, Any]]:
    """Render one assistant step (text and resolved tool calls) as provider messages."""
    if not invocations:
        return [{"role": "assistant", "content": text}] if text else []
    out: List[Dict[str, Any]] = [
        {
            "role": "assistant",
            "content": text or None,
            "tool_calls": [
                {
                    "id": inv["toolCallId"],
                    "type": "function",
                    "function": {
                        "name": inv["toolName"],
                        "arguments": json.dumps(inv.get("args") or {}, ensure_ascii=False),
                    },
                }
                for inv in invocations
            ],
        }
    ]
    for inv in invocations:
        out.append(
            {"role": "tool", "tool_call_id": inv["toolCallId"], "content": _tool_content(inv.get("result"))}
        )
    return out


def _assistant_messages(message: Message) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    text: List[str] = []
    invocations: List[Dict[str, Any]] = []
    for part in message.parts:
        kind = part.get("type")
        if kind == "text":
            if invocations:
                out.extend(assistant_round_messages("".join(text), invocations))
                text, invocations = [], []
            text.append(part.get("text", ""))
        elif kind == "tool-invocation":
            invocations.append(part["toolInvocation"])
    out.extend(assistant_round_messages("".join(text), invocations))
    return out


def _user_content(message: Message) -> Union[str, List[Dict[str, Any]]]:
    if not message.attachments:
        return message.text
    content: List[Dict[str, Any]] = [{"type": "text", "text": message.text}]
    for a in message.attachments:
        if str(a.get("contentType", "")).startswith("image/") and a.get("url"):
            content.append({"type": "image_url", "image_url": {"url": a["url"]}})
    return content


def build_model_messages(system_prompt: str, history: Iterable[Message]) -> List[Dict[str, Any]]:
    msgs: List[Dict[str, Any]] = []
    if system_prompt:
        msgs.append({"role": "system", "content": system_prompt})
    for m in history:
        if m.role == "user":
            msgs.append({"role": "user", "content": _user_content(m)})
        elif m.role == "assistant":
            msgs.extend(_assistant_messages(m))
        elif m.role == "tool":
            for inv in m.tool_invocations():
                msgs.append(
                    {"role": "tool", "tool_call_id": inv["toolCallId"], "content": _tool_content(inv.get("result"))}
                )
    return msgs


# -----------------------------
# OpenAI-compatible provider
# -----------------------------

class OpenAIChatModel:
    """Streams ``/chat/completions`` from an OpenAI-compatible or Azure OpenAI endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model: Optional[str] = None,
        azure: bool = False,
        api_version: Optional[str] = None,
        generation: Optional[GenerationConfig] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.azure = azure
        self.api_version = api_version
        self.generation = generation or GenerationConfig()
        self._api_key = api_key or ""
        self._timeout = httpx.Timeout(timeout, connect=10.0)
        self._transport = transport

    def _request(self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]]):
        payload: Dict[str, Any] = {"messages": messages, "stream": True}
        if not self.azure and self.model:
            payload["model"] = self.model
        if tools:
            payload["tools"] = tools
        for key in ("max_tokens", "temperature", "top_p"):
            value = getattr(self.generation, key)
            if value is not None:
                payload[key] = value

        if self.azure:
            # base_url: https://<resource>.openai.azure.com/openai/deployments
            url = f"{self.base_url}/{self.model}/chat/completions"
            headers = {"api-key": self._api_key}
            params = {"api-version": self.api_version} if self.api_version else {}
        else:
            url = f"{self.base_url}/chat/completions"
            headers = {"Authorization": f"Bearer {self._api_key}"}
            params = {}
        headers["Accept"] = "text/event-stream"
        return url, payload, headers, params

    async def stream(
        self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None
    ) -> AsyncIterator[ModelChunk]:
        url, payload, headers, params = self._request(messages, tools)
        pending: Dict[int, Dict[str, Any]] = {}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                async with client.stream("POST", url, json=payload, headers=headers, params=params) as r:
                    if r.status_code >= 400:
                        await r.aread()
                        logger.error("Model provider returned %d", r.status_code)
                        raise UpstreamError(
                            "upstream:model", f"The model provider returned status {r.status_code}."
                        )
                    async for line in r.aiter_lines():
                        line = line.strip()
                        if not line.startswith("data:"):
                            continue
                        data = line[len("data:"):].strip()
                        if data == "[DONE]":
                            break
                        for chunk in self._parse_chunk(data, pending):
                            yield chunk
        except httpx.TimeoutException as e:
            logger.warning("Model provider timed out: %s", type(e).__name__)
            raise UpstreamError("upstream:model", "The model provider did not respond in time.")
        except httpx.RequestError as e:
            logger.warning("Model provider unreachable: %s", type(e).__name__)
            raise UpstreamError("upstream:model", "The model provider is unreachable.")

        for idx in sorted(pending):
            slot = pending[idx]
            yield ToolCallRequest(
                call_id=slot["id"] or f"call_{idx}",
                name=slot["name"],
                arguments="".join(slot["arguments"]),
            )

    @staticmethod
    def _parse_chunk(data: str, pending: Dict[int, Dict[str, Any]]) -> List[ModelChunk]:
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            logger.error("Undecodable chunk from model provider")
            raise UpstreamError("upstream:model", "The model provider sent a malformed stream.")
        if chunk.get("error"):
            raise UpstreamError("upstream:model")
        out: List[ModelChunk] = []
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            content = delta.get("content")
            if content:
                out.append(TextDelta(content))
            # Tool calls arrive fragmented; assemble by index.
            for tc in delta.get("tool_calls") or []:
                slot = pending.setdefault(int(tc.get("index", 0)), {"id": "", "name": "", "arguments": []})
                if tc.get("id"):
                    slot["id"] = tc["id"]
                fn = tc.get("function") or {}
                if fn.get("name"):
                    slot["name"] += fn["name"]
                if fn.get("arguments"):
                    slot["arguments"].append(fn["arguments"])
        return out


# -----------------------------
# Scripted provider
# -----------------------------

def _round_index(messages: Sequence[Mapping[str, Any]]) -> int:
    """Number of assistant steps since the last user message."""
    n = 0
    for m in reversed(messages):
        if m.get("role") == "user":
            break
        if m.get("role") == "assistant":
            n += 1
    return n


def _last_user_text(messages: Sequence[Mapping[str, Any]]) -> str:
    for m in reversed(messages):
        if m.get("role") == "user":
            content = m.get("content")
            if isinstance(content, list):
                return " ".join(str(c.get("text", "")) for c in content if c.get("type") == "text")
            return str(content or "")
    return ""


class ScriptedModel:
    """Deterministic model for local development and tests.

    ``rounds[i]`` is what the model emits on its i-th step of a turn: strings
    become text deltas, :class:`ToolCallRequest` items are tool calls and
    exception instances are raised at that point of the stream. Without
    rounds it replies with ``reply`` (or echoes the user when ``echo``).
    """

    def __init__(
        self,
        rounds: Sequence[Sequence[Any]] = (),
        *,
        reply: str = "",
        echo: bool = False,
        delay: float = 0.0,
    ) -> None:
        self.rounds = [list(r) for r in rounds]
        self.reply = reply
        self.echo = echo
        self.delay = float(delay)
        self.calls: List[List[Dict[str, Any]]] = []

    def _script(self, messages: List[Dict[str, Any]]) -> List[Any]:
        if self.rounds:
            return self.rounds[min(_round_index(messages), len(self.rounds) - 1)]
        text = _last_user_text(messages) if self.echo else self.reply
        return re.findall(r"\S+\s*", text)

    async def stream(
        self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None
    ) -> AsyncIterator[ModelChunk]:
        self.calls.append(list(messages))
        for item in self._script(messages):
            if self.delay:
                await asyncio.sleep(self.delay)
            if isinstance(item, BaseException):
                raise item
            yield TextDelta(item) if isinstance(item, str) else item


# -----------------------------
# Inline reasoning extraction
# -----------------------------

def _partial_suffix(text: str, marker: str) -> int:
    """Length of the longest suffix of ``text`` that could start ``marker``."""
    for k in range(min(len(text), len(marker) - 1), 0, -1):
        if text.endswith(marker[:k]):
            return k
    return 0


class ReasoningTagSplitter:
    """Split ``<tag>...</tag>`` spans out of streamed text.

    Tags may be cut across deltas; a possible tag prefix at the end of the
    buffer is held back until the next delta decides it.
    """

    def __init__(self, tag: str = "think") -> None:
        self.open_tag = f"<{tag}>"
        self.close_tag = f"</{tag}>"
        self._buf = ""
        self._inside = False
        self._after_close = False

    def _emit(self, out: List[ModelChunk], piece: str) -> None:
        if self._inside:
            if piece:
                out.append(ReasoningDelta(piece))
            return
        if self._after_close:
            piece = piece.lstrip()
            if piece:
                self._after_close = False
        if piece:
            out.append(TextDelta(piece))

    def feed(self, text: str) -> List[ModelChunk]:
        self._buf += text
        out: List[ModelChunk] = []
        while self._buf:
            marker = self.close_tag if self._inside else self.open_tag
            idx = self._buf.find(marker)
            if idx >= 0:
                self._emit(out, self._buf[:idx])
                self._buf = self._buf[idx + len(marker):]
                self._after_close = self._inside
                self._inside = not self._inside
                continue
            cut = len(self._buf) - _partial_suffix(self._buf, marker)
            self._emit(out, self._buf[:cut])
            self._buf = self._buf[cut:]
            break
        return out

    def flush(self) -> List[ModelChunk]:
        out: List[ModelChunk] = []
        rest, self._buf = self._buf, ""
        self._emit(out, rest)
        return out


class ReasoningModel:
    """Wrap a model that writes its reasoning inline between ``<tag>`` markers."""

    def __init__(self, model: ChatModel, tag: str = "think") -> None:
        self.model = model
        self.tag = tag

    async def stream(
        self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None
    ) -> AsyncIterator[ModelChunk]:
        splitter = ReasoningTagSplitter(self.tag)
        async for chunk in self.model.stream(messages, tools):
            if isinstance(chunk, TextDelta):
                for piece in splitter.feed(chunk.text):
                    yield piece
            else:
                yield chunk
        for piece in splitter.flush():
            yield piece


# -----------------------------
# Registry
# -----------------------------

class ModelRegistry:
    def __init__(self, models: Mapping[str, ChatModel], default: Optional[str] = None) -> None:
        self._models = dict(models)
        self.default = default or next(iter(self._models), None)

    @property
    def selectors(self) -> List[str]:
        return sorted(self._models)

    def __contains__(self, selector: str) -> bool:
        return selector in self._models

    def get(self, selector: Optional[str]) -> ChatModel:
        key = selector or self.default
        if key not in self._models:
            raise BadRequest("bad_request:api", f"Unknown chat model: {key}.")
        return self._models[key]

    def find(self, selector: Optional[str]) -> Optional[ChatModel]:
        return self._models.get(selector) if selector else None


def _model_from_entry(name: str, entry: Mapping[str, Any]) -> ChatModel:
    model = _provider_model(name, entry)
    tag = entry.get("reasoning_tag")
    if tag:
        return ReasoningModel(model, str(tag))
    return model


def _provider_model(name: str, entry: Mapping[str, Any]) -> ChatModel:
    kind = str(entry.get("kind", "openai")).lower()
    if kind == "scripted":
        return ScriptedModel(
            reply=str(entry.get("reply", "")),
            echo=_bool(entry.get("echo"), False),
            delay=float(entry.get("delay", 0.0)),
        )
    generation = GenerationConfig(
        max_tokens=entry.get("max_tokens"),
        temperature=entry.get("temperature"),
        top_p=entry.get("top_p"),
    )
    timeout = float(entry.get("timeout", 60.0))
    if kind == "azure":
        return OpenAIChatModel(
            base_url=entry.get("base_url") or os.environ.get("AZURE_OPENAI_ENDPOINT", ""),
            api_key=entry.get("api_key") or os.environ.get("AZURE_OPENAI_API_KEY", ""),
            model=entry.get("deployment") or os.environ.get("AZURE_OPENAI_DEPLOYMENT_NAME", "gpt-4.1"),
            azure=True,
            api_version=entry.get("api_version") or os.environ.get("AZURE_OPENAI_API_VERSION"),
            generation=generation,
            timeout=timeout,
        )
    if kind == "openai":
        return OpenAIChatModel(
            base_url=entry.get("base_url") or "https://api.openai.com/v1",
            api_key=entry.get("api_key") or os.environ.get("OPENAI_API_KEY", ""),
            model=entry.get("model"),
            generation=generation,
            timeout=timeout,
        )
    raise RuntimeError(f"Unknown model kind {kind!r} for {name!r}")


def create_from_config(cfg: Dict[str, Any]) -> ModelRegistry:
    """Build the selector -> model registry from the ``models`` config section."""
    m = (cfg or {}).get("models", {}) or {}
    providers = m.get("providers") or {}
    models: Dict[str, ChatModel] = {}
    for name, entry in providers.items():
        try:
            models[str(name)] = _model_from_entry(str(name), entry or {})
        except ValueError as e:
            logger.warning("Skipping model %s: %s", name, e)
    default = m.get("default") or "chat-model"
    if not models:
        logger.warning("No model providers configured; '%s' is an echo model.", default)
        models[default] = ScriptedModel(echo=True)
    return ModelRegistry(models, default=default)


# -----------------------------
# Titles
# -----------------------------

TITLE_PROMPT = (
    "- you will generate a short title based on the first message a user begins a conversation with\n"
    "- ensure it is not more than 80 characters long\n"
    "- the title should be a summary of the user's message\n"
    "- do not use quotes or colons"
)


def _fallback_title(text: str, max_length: int) -> str:
    first = (text or "").strip().splitlines()[0] if (text or "").strip() else "New chat"
    first = re.sub(r"\s+", " ", first)
    if len(first) <= max_length:
        return first
    return first[: max_length - 1].rstrip() + "…"


class TitleGenerator:
    """Summarize a first user message into a conversation title."""

    def __init__(self, model: Optional[ChatModel] = None, max_length: int = 80) -> None:
        self.model = model
        self.max_length = int(max_length)

    async def generate(self, text: str) -> str:
        fallback = _fallback_title(text, self.max_length)
        if self.model is None:
            return fallback
        parts: List[str] = []
        try:
            async for chunk in self.model.stream(
                [{"role": "system", "content": TITLE_PROMPT}, {"role": "user", "content": text}]
            ):
                if isinstance(chunk, TextDelta):
                    parts.append(chunk.text)
        except (UpstreamError, httpx.HTTPError) as e:
            logger.warning("Title generation failed, using fallback: %s", e)
            return fallback
        title = re.sub(r"[\"':]", "", "".join(parts)).strip()
        return _fallback_title(title, self.max_length) if title else fallback


# -----------------------------
# Word chunking
# -----------------------------

class WordChunker:
    """Re-chunk text deltas so each emitted piece is a whole word plus trailing space."""

    _SPLIT = re.compile(r"^(.*\s)(\S*)$", re.S)
    _WORD = re.compile(r"\S*\s+")

    def __init__(self) -> None:
        self._buf = ""

    def feed(self, text: str) -> List[str]:
        self._buf += text
        m = self._SPLIT.match(self._buf)
        if not m:
            return []
        self._buf = m.group(2)
        return self._WORD.findall(m.group(1))

    def flush(self) -> List[str]:
        rest, self._buf = self._buf, ""
        return [rest] if rest else []
