"""Actor contract shared by every bus-addressable unit."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from ccrelay.types import ERROR, BusMessage, ErrorPayload


@runtime_checkable
class Actor(Protocol):
    """Anything with a name, a lifecycle and a message handler can be registered."""

    name: str

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def handle_message(self, message: BusMessage) -> BusMessage | None: ...


class BaseActor(ABC):
    """Convenience base with lifecycle logging and reply builders."""

    name: str = "actor"

    def __init__(self, name: str | None = None) -> None:
        if name is not None:
            self.name = name
        self.running = False

    async def start(self) -> None:
        self.running = True
        logger.info("actor.started name={}", self.name)

    async def stop(self) -> None:
        self.running = False
        logger.info("actor.stopped name={}", self.name)

    @abstractmethod
    async def handle_message(self, message: BusMessage) -> BusMessage | None:
        """Handle one addressed message and return the reply, if any."""

    def reply(self, message: BusMessage, type: str, payload: dict[str, Any] | None = None) -> BusMessage:
        return message.reply(self.name, type, payload)

    def error(self, message: BusMessage, error: str) -> BusMessage:
        return message.reply(self.name, ERROR, ErrorPayload(error=error).to_wire())
