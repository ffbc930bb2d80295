"""Bus actors."""

from ccrelay.actors.assistant import AssistantActor
from ccrelay.actors.auto_responder import AutoResponderActor
from ccrelay.actors.base import Actor, BaseActor
from ccrelay.actors.router import InputRouterActor, classify_text, parse_command

__all__ = [
    "Actor",
    "AssistantActor",
    "AutoResponderActor",
    "BaseActor",
    "InputRouterActor",
    "classify_text",
    "parse_command",
]
