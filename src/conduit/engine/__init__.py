"""Client and event stream for the remote session engine."""

from conduit.engine.client import (
    EngineClient,
    EngineError,
    EngineHealth,
    PermissionReply,
    PromptResult,
    build_permission_rules,
)
from conduit.engine.events import EventDemultiplexer, normalize_event

__all__ = [
    "EngineClient",
    "EngineError",
    "EngineHealth",
    "EventDemultiplexer",
    "PermissionReply",
    "PromptResult",
    "build_permission_rules",
    "normalize_event",
]
