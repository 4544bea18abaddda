"""Echo handler: the simplest possible PoolForge handler.

Every request body comes back unchanged, prefixed with the pid of the
worker that served it so round-robin dispatch is visible. Run it with:

    poolforge serve examples/echo.py:handle --workers 4

then:

    curl -d hello http://127.0.0.1:8000/
"""

from __future__ import annotations

import os


def handle(payload: bytes) -> bytes:
    """Return the payload tagged with this worker's pid."""
    return f"[{os.getpid()}] ".encode() + payload
