"""Bearer-token session resolution.

Identity is issued elsewhere; this module only maps an opaque bearer token to
a :class:`~chat_server.entities.Session` using the ``auth.tokens`` table::

    auth:
      tokens:
        "s3cr3t-token": {id: "user-1", type: "regular"}
"""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from .entities import Session
from .errors import Unauthorized


class TokenSessionResolver:
    def __init__(self, tokens: Mapping[str, Any]) -> None:
        self._sessions: Dict[str, Session] = {}
        for token, entry in (tokens or {}).items():
            if isinstance(entry, Mapping):
                self._sessions[str(token)] = Session(
                    user_id=str(entry["id"]), user_type=str(entry.get("type", "regular"))
                )
            else:
                self._sessions[str(token)] = Session(user_id=str(entry))

    def resolve(self, authorization: Optional[str]) -> Session:
        if not authorization:
            raise Unauthorized()
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise Unauthorized()
        session = self._sessions.get(token.strip())
        if session is None:
            raise Unauthorized()
        return session
