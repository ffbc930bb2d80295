"""Chat-side adapters."""

from ccrelay.channels.console import ConsoleRenderer
from ccrelay.channels.dispatcher import TurnDispatcher, TurnOutcome

__all__ = ["ConsoleRenderer", "TurnDispatcher", "TurnOutcome"]
