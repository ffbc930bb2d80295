"""ccrelay - relay Claude Code sessions to Discord."""

from ccrelay.bus import MessageBus
from ccrelay.config import Settings, StreamingSettings, get_settings
from ccrelay.streaming import StreamBufferEngine
from ccrelay.types import BusMessage

__version__ = "0.1.0"

__all__ = ["BusMessage", "MessageBus", "Settings", "StreamBufferEngine", "StreamingSettings", "get_settings"]
