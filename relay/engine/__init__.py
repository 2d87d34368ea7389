"""Relay engine: agent process lifecycle, output framing and session routing.

Only the dependency-free building blocks are re-exported here. Import
``relay.engine.supervisor`` and ``relay.engine.registry`` directly.
"""
from .models import Pool, RetryPolicy, SessionStatus
from .config import RelayConfig, load_config
from .errors import (
    AgentBinaryNotFoundError,
    AgentLaunchError,
    ConfigError,
    ProjectNotFoundError,
    ProjectValidationError,
    RelayError,
    SessionNotFoundError,
)
from .framer import Line, LineFramer, RawLine, StructuredLine
from .lifecycle import VALID_TRANSITIONS, validate_transition

__all__ = [
    "AgentBinaryNotFoundError",
    "AgentLaunchError",
    "ConfigError",
    "Line",
    "LineFramer",
    "Pool",
    "ProjectNotFoundError",
    "ProjectValidationError",
    "RawLine",
    "RelayConfig",
    "RelayError",
    "RetryPolicy",
    "SessionNotFoundError",
    "SessionStatus",
    "StructuredLine",
    "VALID_TRANSITIONS",
    "load_config",
    "validate_transition",
]
