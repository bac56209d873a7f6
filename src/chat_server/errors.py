"""Error taxonomy shared by the orchestrator, the stream manager and the routes.

Every failure that can reach a client is a :class:`ChatError` carrying a
stable ``code`` of the form ``"<type>:<surface>"``, a fixed human-readable
message and an HTTP status. Messages are looked up from a table instead of
being built from exception text, so credentials and internal addresses never
end up in a response body.
"""
from __future__ import annotations

import re
from typing import Any, Dict, Optional


# -----------------------------
# Stable (code -> message) table
# -----------------------------
MESSAGES: Dict[str, str] = {
    "bad_request:api": "The request couldn't be processed. Please check your input and try again.",
    "unauthorized:chat": "You need to sign in to continue.",
    "forbidden:chat": "This chat belongs to another user.",
    "not_found:chat": "The requested chat was not found.",
    "not_found:stream": "There is no stream to resume for this chat.",
    "rate_limit:chat": "You have exceeded your maximum number of messages for the day.",
    "upstream:model": "The model provider failed while generating a response.",
    "upstream:timeout": "The response took too long and was cut off.",
    "internal:store": "The response could not be saved.",
    "internal:server": "An unexpected server error occurred.",
}


class ChatError(Exception):
    """Base class for client-visible failures."""

    status_code: int = 500
    default_code: str = "internal:server"

    def __init__(self, code: Optional[str] = None, message: Optional[str] = None) -> None:
        self.code = code or self.default_code
        self.message = message or MESSAGES.get(self.code) or MESSAGES[self.default_code]
        super().__init__(self.message)

    @property
    def kind(self) -> str:
        return self.code.split(":", 1)[0]

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class BadRequest(ChatError):
    status_code = 400
    default_code = "bad_request:api"


class Unauthorized(ChatError):
    status_code = 401
    default_code = "unauthorized:chat"


class Forbidden(ChatError):
    status_code = 403
    default_code = "forbidden:chat"


class NotFound(ChatError):
    status_code = 404
    default_code = "not_found:chat"


class RateLimited(ChatError):
    status_code = 429
    default_code = "rate_limit:chat"


class UpstreamError(ChatError):
    """Model provider failure. Reported as a terminal stream event, not raised to HTTP."""

    status_code = 502
    default_code = "upstream:model"


class InternalError(ChatError):
    status_code = 500
    default_code = "internal:store"


# -----------------------------
# Tool errors (never reach HTTP)
# -----------------------------
TOOL_ERROR_KINDS = frozenset(
    {"not_found", "forbidden", "invalid_input", "upstream_unavailable", "internal"}
)


class ToolError(Exception):
    """Structured, recoverable tool failure fed back to the model."""

    def __init__(self, kind: str, message: str) -> None:
        if kind not in TOOL_ERROR_KINDS:
            raise ValueError(f"unknown tool error kind: {kind!r}")
        self.kind = kind
        self.message = message
        super().__init__(message)

    def to_result(self) -> Dict[str, str]:
        return {"error": scrub(self.message), "code": self.kind}


# -----------------------------
# Sanitizing
# -----------------------------
_URL_RE = re.compile(r"\b[a-z][a-z0-9+.\-]*://\S+", re.I)
_BEARER_RE = re.compile(r"(bearer|api[-_ ]?key|token)\s*[:=]?\s*\S+", re.I)
_HOST_RE = re.compile(r"\b(?:\d{1,3}\.){3}\d{1,3}(?::\d+)?\b|\b[\w\-]+(?:\.[\w\-]+)+:\d+\b")


def scrub(text: str) -> str:
    """Remove URLs, host:port pairs and credential-looking tokens from ``text``."""
    text = _URL_RE.sub("[redacted-url]", text)
    text = _BEARER_RE.sub(r"\1 [redacted]", text)
    return _HOST_RE.sub("[redacted-host]", text)

