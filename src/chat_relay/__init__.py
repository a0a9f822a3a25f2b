"""Chat relay: forwards chat turns to a hosted model and keeps per-session memory.

This package provides a FastAPI application factory named ``create_app``
inside ``chat_relay/server.py`` (see :func:`create_app`).

Typical usage
-------------
from chat_relay import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

from typing import Any

__all__ = ["create_app", "__version__", "get_version"]

# ---------------------------------------------------------------------
# Version handling
# ---------------------------------------------------------------------
__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__


# ---------------------------------------------------------------------
# App factory export (imported lazily so submodules can read __version__)
# ---------------------------------------------------------------------
def create_app(*args: Any, **kwargs: Any):
    from .server import create_app as _create_app

    return _create_app(*args, **kwargs)
