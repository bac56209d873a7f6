"""FastAPI application: resumable streaming chat with tool calls."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field

from tools.company_registry import build_company_registry_tool
from tools.gateway import ToolGateway

from .auth import TokenSessionResolver
from .config import configure_logging, load_config, redact_config
from .entities import Message, Session, utc_now
from .errors import BadRequest, ChatError, InternalError
from .events import SSE_HEADERS, encode_sse, parse_last_event_id
from .llm import ModelRegistry, TitleGenerator, create_from_config
from .orchestrator import TurnOrchestrator, TurnRequest
from .quota import build_quota_guard
from .store import ConversationStore, build_store
from .streams import build_stream_manager

logger = logging.getLogger(__name__)

SHUTDOWN_DRAIN_SECONDS = 30.0
# Client-chosen conversation ids; anything else is rejected before it reaches the store.
CHAT_ID_PATTERN = r"^[\w.-]{1,128}$"


# -----------------------------
# Pydantic request models
# -----------------------------
class TextPartIn(BaseModel):
    type: Literal["text"]
    text: str = Field(..., min_length=1, max_length=2000)


class AttachmentIn(BaseModel):
    url: str
    name: str = Field(..., min_length=1, max_length=2000)
    contentType: Literal["image/png", "image/jpeg"]


class MessageIn(BaseModel):
    id: str = Field(..., min_length=1)
    createdAt: Optional[datetime] = None
    role: Literal["user"]
    content: str = Field(..., min_length=1, max_length=2000)
    parts: List[TextPartIn] = Field(..., min_length=1)
    experimental_attachments: List[AttachmentIn] = Field(default_factory=list)


class ChatRequest(BaseModel):
    id: str = Field(..., pattern=CHAT_ID_PATTERN, description="Conversation id (client-generated).")
    message: MessageIn
    selectedChatModel: str
    selectedVisibilityType: Literal["public", "private"] = "private"

    def to_turn(self) -> TurnRequest:
        m = self.message
        message = Message(
            id=m.id,
            conversation_id=self.id,
            role="user",
            parts=[p.model_dump() for p in m.parts],
            attachments=[a.model_dump() for a in m.experimental_attachments],
        )
        return TurnRequest(
            conversation_id=self.id,
            message=message,
            model_selector=self.selectedChatModel,
            visibility=self.selectedVisibilityType,
        )


# -----------------------------
# Utilities
# -----------------------------
async def _sse_body(events: Any) -> AsyncIterator[bytes]:
    """Encode events as SSE frames; detach (without cancelling the turn) on disconnect."""
    try:
        async for event in events:
            yield encode_sse(event)
    finally:
        closer = getattr(events, "aclose", None)
        if closer is not None:
            await closer()


def _sse_response(events: Any, headers: Optional[Dict[str, str]] = None) -> StreamingResponse:
    return StreamingResponse(
        _sse_body(events),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, **(headers or {})},
    )


def _error_response(err: ChatError) -> JSONResponse:
    return JSONResponse(err.to_dict(), status_code=err.status_code)


def _make_tools(cfg: Dict[str, Any]) -> ToolGateway:
    return ToolGateway([build_company_registry_tool(cfg)])


def _make_titles(cfg: Dict[str, Any], models: ModelRegistry) -> TitleGenerator:
    selector = (cfg.get("models", {}) or {}).get("title_model")
    return TitleGenerator(models.find(selector) if selector else None)


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    *,
    config: Optional[Dict[str, Any]] = None,
    store: Optional[ConversationStore] = None,
    models: Optional[ModelRegistry] = None,
    streams: Any = None,
    tools: Optional[ToolGateway] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> FastAPI:
    cfg = config if config is not None else load_config(config_path)
    configure_logging(cfg)
    clock = clock or utc_now

    # Services
    store = store or build_store(cfg)
    streams = streams or build_stream_manager(cfg, clock=clock)
    models = models or create_from_config(cfg)
    tools = tools or _make_tools(cfg)
    sessions = TokenSessionResolver((cfg.get("auth", {}) or {}).get("tokens") or {})
    turns_cfg = cfg.get("turns", {}) or {}
    orchestrator = TurnOrchestrator(
        store,
        streams,
        models,
        tools,
        build_quota_guard(cfg, store, clock=clock),
        _make_titles(cfg, models),
        system_prompt=str(turns_cfg.get("system_prompt") or "").strip(),
        max_rounds=int(turns_cfg.get("max_rounds", 5)),
        deadline_seconds=turns_cfg.get("deadline_seconds", 60),
        chunking=str(turns_cfg.get("chunking") or "word"),
        resume_window_seconds=float((cfg.get("streams", {}) or {}).get("resume_window_seconds", 15)),
        clock=clock,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Chat server ready: models=%s tools=%s resumable=%s",
            models.selectors, tools.names, streams.enabled,
        )
        yield
        await orchestrator.drain(timeout=SHUTDOWN_DRAIN_SECONDS)
        await streams.close()

    app = FastAPI(title="Resumable Chat Server", version="0.3.0", lifespan=lifespan)
    app.state.config = cfg
    app.state.orchestrator = orchestrator

    cors_origins = (cfg.get("server", {}) or {}).get("cors_origins", ["*"])
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Errors
    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("Rejected malformed request to %s: %d error(s)", request.url.path, len(exc.errors()))
        return _error_response(BadRequest())

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _error_response(InternalError("internal:server"))

    # Auth
    def current_session(authorization: Optional[str] = Header(default=None)) -> Session:
        return sessions.resolve(authorization)

    # Routes
    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "models": models.selectors,
            "tools": tools.names,
            "resumable_streams": bool(streams.enabled),
            "in_flight": orchestrator.in_flight,
        }

    @app.get("/config")
    def get_config() -> JSONResponse:
        return JSONResponse(redact_config(cfg))

    @app.post("/api/chat")
    async def submit_chat(req: ChatRequest, session: Session = Depends(current_session)) -> StreamingResponse:
        turn = await orchestrator.submit_turn(session, req.to_turn())
        return _sse_response(turn.subscription, {"X-Stream-Id": turn.stream_id})

    @app.get("/api/chat")
    async def resume_chat(
        chat_id: Optional[str] = Query(default=None, alias="chatId"),
        last_event_id: Optional[str] = Header(default=None, alias="Last-Event-ID"),
        session: Session = Depends(current_session),
    ) -> Response:
        if not chat_id:
            raise BadRequest()
        outcome = await orchestrator.resume(session, chat_id, parse_last_event_id(last_event_id))
        if outcome is None:
            return Response(status_code=204)
        logger.debug("Resume for chat %s: %s", chat_id, outcome.kind)
        return _sse_response(outcome.events)

    @app.delete("/api/chat")
    async def delete_chat(
        chat_id: Optional[str] = Query(default=None, alias="id"),
        session: Session = Depends(current_session),
    ) -> Dict[str, Any]:
        if not chat_id:
            raise BadRequest()
        deleted = await orchestrator.delete_conversation(session, chat_id)
        return deleted.to_dict()

    @app.get("/api/chat/{chat_id}")
    async def get_chat(chat_id: str, session: Session = Depends(current_session)) -> Dict[str, Any]:
        conversation, messages = await orchestrator.get_conversation(session, chat_id)
        return {"chat": conversation.to_dict(), "messages": [m.to_dict() for m in messages]}

    return app
