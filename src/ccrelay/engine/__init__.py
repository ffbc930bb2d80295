"""Query engine client and session recovery."""

from ccrelay.engine.client import ClaudeCliClient, EngineEvent, QueryEngineClient, QueryOptions, StreamChunk
from ccrelay.engine.recovery import SessionRecoveryController, SessionState

__all__ = [
    "ClaudeCliClient",
    "EngineEvent",
    "QueryEngineClient",
    "QueryOptions",
    "SessionRecoveryController",
    "SessionState",
    "StreamChunk",
]
