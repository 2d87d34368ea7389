"""Server-Sent Events transport backed by an asyncio queue.

Supervisors call ``send`` synchronously from the event loop; the HTTP
handler drains the queue into the ``StreamResponse`` with ``pump``. The
queue is unbounded: replaying a large cache must not drop events.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from aiohttp import web

logger = logging.getLogger(__name__)

_CLOSE = object()


def format_sse(data: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n".encode("utf-8")


class SseTransport:
    """One client connection's outbound event queue."""

    def __init__(self, label: str = "") -> None:
        self.label = label
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self.sent = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, data: dict[str, Any]) -> bool:
        if self._closed:
            return False
        self._queue.put_nowait(data)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSE)

    async def pump(
        self,
        request: web.Request,
        response: web.StreamResponse,
        keepalive_seconds: float = 30.0,
    ) -> None:
        """Write queued events until the transport closes or the client leaves."""
        while True:
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                if request.transport is None or request.transport.is_closing():
                    logger.debug("SSE %s: peer transport closed during idle wait", self.label)
                    break
                try:
                    await response.write(b": keepalive\n\n")
                except ConnectionResetError:
                    break
                continue
            if item is _CLOSE:
                break
            try:
                await response.write(format_sse(item))
            except ConnectionResetError:
                break
            self.sent += 1
        self._closed = True
