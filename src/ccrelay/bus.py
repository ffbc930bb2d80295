"""In-process message bus routing requests to actors and events to listeners."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, TypeAlias

from blinker import Signal
from loguru import logger

from ccrelay.errors import ActorLifecycleError
from ccrelay.types import BusMessage

if TYPE_CHECKING:
    from ccrelay.actors.base import Actor

Listener: TypeAlias = Callable[[BusMessage], Awaitable[None] | None]


class MessageBus:
    """Name-addressed request/response router with a listener side channel.

    ``send`` and ``broadcast`` invoke actors and return their replies. ``emit``
    only reaches listeners and is reserved for progress notifications.
    """

    def __init__(self) -> None:
        self._actors: dict[str, Actor] = {}
        self._events = Signal("ccrelay.events")
        self._receivers: dict[Listener, Callable[..., Awaitable[None]]] = {}

    def register(self, actor: Actor) -> None:
        logger.info("bus.register actor={}", actor.name)
        # Re-registering a name keeps its original slot in the ordering.
        self._actors[actor.name] = actor

    def unregister(self, name: str) -> None:
        if self._actors.pop(name, None) is not None:
            logger.info("bus.unregister actor={}", name)

    def get(self, name: str) -> Actor | None:
        return self._actors.get(name)

    def has_actor(self, name: str) -> bool:
        return name in self._actors

    def actor_names(self) -> list[str]:
        return list(self._actors)

    async def send(self, message: BusMessage) -> BusMessage | None:
        actor = self._actors.get(message.recipient)
        if actor is None:
            logger.warning("bus.send unknown actor to={} from={}", message.recipient, message.sender)
            return None
        logger.debug("bus.send from={} to={} type={}", message.sender, message.recipient, message.type)
        return await actor.handle_message(message)

    async def broadcast(self, message: BusMessage) -> list[BusMessage]:
        logger.debug("bus.broadcast from={} type={}", message.sender, message.type)
        responses: list[BusMessage] = []
        for name, actor in list(self._actors.items()):
            if name == message.sender:
                continue
            response = await actor.handle_message(message.with_recipient(name))
            if response is not None:
                responses.append(response)
        return responses

    def add_listener(self, listener: Listener) -> None:
        if listener in self._receivers:
            return

        async def _receiver(sender: Any, *, message: BusMessage) -> None:
            try:
                result = listener(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("bus.listener.error type={} id={}", message.type, message.id)

        self._receivers[listener] = _receiver
        self._events.connect(_receiver, weak=False)

    def remove_listener(self, listener: Listener) -> None:
        receiver = self._receivers.pop(listener, None)
        if receiver is not None:
            self._events.disconnect(receiver)

    async def emit(self, message: BusMessage) -> None:
        if not self._receivers:
            return
        await self._events.send_async(self, message=message)

    async def start_all(self) -> None:
        """Start every actor in registration order.

        All actors are attempted; failures are raised together afterwards.
        """
        await self._fan_out("start")

    async def stop_all(self) -> None:
        await self._fan_out("stop")

    async def _fan_out(self, phase: str) -> None:
        logger.info("bus.{}_all actors={}", phase, len(self._actors))
        failures: dict[str, BaseException] = {}
        for name, actor in list(self._actors.items()):
            try:
                await getattr(actor, phase)()
            except Exception as exc:
                logger.exception("bus.{}.error actor={}", phase, name)
                failures[name] = exc
        if failures:
            raise ActorLifecycleError(phase, failures)
