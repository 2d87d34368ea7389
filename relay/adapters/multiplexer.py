"""Per-session output fan-out with a replay cache.

Every event a session produces is appended to an ordered cache first
and then handed to the attached transport, if there is one. A newly
attached transport receives its greeting, the full cache, then live
events, all in production order.
"""
from __future__ import annotations

import logging
from collections import deque
from typing import Any, Protocol, runtime_checkable

from relay.adapters.events import RelayEvent, event_to_dict

logger = logging.getLogger(__name__)


@runtime_checkable
class Transport(Protocol):
    """A client-facing channel. ``send`` returns False once the client is gone."""

    @property
    def closed(self) -> bool: ...

    def send(self, data: dict[str, Any]) -> bool: ...

    def close(self) -> None: ...


class OutputMultiplexer:
    """Fans events out to zero-or-one transport and records them for replay."""

    def __init__(self, session_id: int, max_cached_events: int | None = None) -> None:
        self._session_id = session_id
        self._cache: deque[dict[str, Any]] = deque(maxlen=max_cached_events)
        self._transport: Transport | None = None
        self._dropped = 0

    @property
    def transport(self) -> Transport | None:
        return self._transport

    @property
    def cache(self) -> list[dict[str, Any]]:
        return list(self._cache)

    @property
    def has_client(self) -> bool:
        return self._transport is not None and not self._transport.closed

    def emit(self, event: RelayEvent | dict[str, Any]) -> dict[str, Any]:
        data = event_to_dict(event) if isinstance(event, RelayEvent) else event
        self._cache.append(data)
        self._deliver(data)
        return data

    def attach(self, transport: Transport, greeting: RelayEvent | None = None) -> int:
        """Swap in ``transport`` and replay the cache to it.

        The previous transport, if different, is closed. Returns the
        number of cached events replayed.
        """
        previous = self._transport
        if previous is not None and previous is not transport:
            logger.info("Session %s: replacing attached transport", self._session_id)
            previous.close()

        greeting_data = event_to_dict(greeting) if greeting is not None else None
        if greeting_data is not None:
            transport.send(greeting_data)
        backlog = list(self._cache)
        for data in backlog:
            if not transport.send(data):
                break
        if backlog:
            logger.info("Session %s: replayed %d cached events", self._session_id, len(backlog))
        # Greeting is sent before it is cached; caching it first would replay it twice here.
        if greeting_data is not None:
            self._cache.append(greeting_data)
        self._transport = transport
        return len(backlog)

    def detach(self, transport: Transport | None = None) -> bool:
        """Drop the current transport; with ``transport`` given, only if it is current."""
        if self._transport is None:
            return False
        if transport is not None and transport is not self._transport:
            return False
        self._transport = None
        return True

    def _deliver(self, data: dict[str, Any]) -> None:
        transport = self._transport
        if transport is None or transport.closed:
            return
        if not transport.send(data):
            self._dropped += 1
            logger.debug(
                "Session %s: client gone, event kept in cache only (dropped=%d)",
                self._session_id, self._dropped,
            )
