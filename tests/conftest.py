"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import json
import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from chat_server.config import DEFAULTS, deep_merge  # noqa: E402
from chat_server.llm import ModelRegistry, ScriptedModel  # noqa: E402
from chat_server.server import create_app  # noqa: E402
from chat_server.store import InMemoryConversationStore  # noqa: E402
from tools.gateway import ToolGateway  # noqa: E402

TOKENS = {
    "tok-alice": {"id": "alice", "type": "regular"},
    "tok-bob": {"id": "bob", "type": "regular"},
    "tok-guest": {"id": "guest-1", "type": "guest"},
}


class FakeClock:
    """Settable UTC clock shared by the store, quota and stream manager."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def auth(token: str = "tok-alice") -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def chat_body(chat_id: str, text: str, *, model: str = "chat-model", visibility: str = "private") -> Dict[str, Any]:
    return {
        "id": chat_id,
        "message": {
            "id": str(uuid.uuid4()),
            "role": "user",
            "content": text,
            "parts": [{"type": "text", "text": text}],
        },
        "selectedChatModel": model,
        "selectedVisibilityType": visibility,
    }


def parse_sse(body: str) -> List[Dict[str, Any]]:
    """Split an SSE body into ``{"id", "event", "data"}`` dicts."""
    events: List[Dict[str, Any]] = []
    for block in body.strip().split("\n\n"):
        if not block.strip():
            continue
        ev: Dict[str, Any] = {"id": None, "event": None, "data": None}
        for line in block.splitlines():
            field, _, value = line.partition(": ")
            if field == "id":
                ev["id"] = int(value)
            elif field == "event":
                ev["event"] = value
            elif field == "data":
                ev["data"] = json.loads(value)
        events.append(ev)
    return events


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Return the root directory of the project."""
    return Path(__file__).resolve().parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Shipped default config."""
    return project_root / "config" / "default.yaml"


@pytest.fixture(scope="function")
def tmp_data_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for the disk store during tests."""
    d = tmp_path / "data"
    d.mkdir(parents=True, exist_ok=True)
    return d


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    for var in [
        "CHAT_SERVER_CONFIG",
        "REDIS_URL",
        "PLATFORM_API_BASE_URL",
        "PLATFORM_API_KEY",
        "OPENAI_API_KEY",
        "AZURE_OPENAI_API_KEY",
        "AZURE_OPENAI_ENDPOINT",
    ]:
        monkeypatch.delenv(var, raising=False)
    for var in list(os.environ):
        if var.startswith("CHAT_SERVER__"):
            monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(scope="function")
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="function")
def store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture(scope="function")
def make_app(clean_env, clock: FakeClock, store: InMemoryConversationStore):
    """App factory: scripted models, token table, in-memory store, fake clock."""

    def _make(model: Any = None, *, overrides: Optional[Dict[str, Any]] = None, **kwargs: Any):
        cfg = deep_merge(
            DEFAULTS,
            deep_merge({"auth": {"tokens": TOKENS}, "logging": {"level": "DEBUG"}}, overrides or {}),
        )
        models = ModelRegistry({"chat-model": model or ScriptedModel(reply="hi")}, default="chat-model")
        kwargs.setdefault("tools", ToolGateway())
        return create_app(config=cfg, store=store, models=models, clock=clock, **kwargs)

    return _make
