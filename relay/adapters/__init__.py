"""Adapters package - client-facing event types and per-session fan-out."""
from __future__ import annotations

__all__ = [
    "OutputMultiplexer",
    "Transport",
    "event_to_dict",
]

from relay.adapters.events import event_to_dict
from relay.adapters.multiplexer import OutputMultiplexer, Transport
