"""Resumable streaming chat server.

This package provides a FastAPI application factory named ``create_app``
inside ``chat_server/server.py`` (see :func:`create_app`).

Typical usage
-------------
from chat_server import create_app
app = create_app("config/default.yaml")

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

__all__ = ["create_app", "__version__", "get_version"]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.3.0"


def get_version() -> str:
    """Return the package version."""
    return __version__


from .server import create_app  # noqa: E402
