from __future__ import annotations

import pytest

from ccrelay.actors.base import BaseActor
from ccrelay.bus import MessageBus
from ccrelay.errors import ActorLifecycleError
from ccrelay.types import BusMessage


class EchoActor(BaseActor):
    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.received: list[BusMessage] = []

    async def handle_message(self, message: BusMessage) -> BusMessage | None:
        self.received.append(message)
        return self.reply(message, "echo", {"text": message.payload.get("text")})


class SilentActor(BaseActor):
    async def handle_message(self, message: BusMessage) -> BusMessage | None:
        return None


class BrokenStartActor(SilentActor):
    async def start(self) -> None:
        raise RuntimeError("cannot start")


class HalfActor(BaseActor):
    pass


def test_base_actor_requires_a_message_handler() -> None:
    with pytest.raises(TypeError):
        HalfActor()


def _message(to: str, sender: str = "tester", **payload: object) -> BusMessage:
    return BusMessage(id="m1", sender=sender, recipient=to, type="ping", payload=dict(payload))


def test_bus_message_requires_sender_and_recipient() -> None:
    with pytest.raises(ValueError):
        BusMessage(id="m1", sender="", recipient="router", type="ping")
    with pytest.raises(ValueError):
        BusMessage(id="m1", sender="chat", recipient="", type="ping")


def test_reply_addresses_original_sender() -> None:
    message = _message("router", sender="chat")
    reply = message.reply("router", "pong")

    assert reply.id == "m1-response"
    assert reply.sender == "router"
    assert reply.recipient == "chat"


@pytest.mark.asyncio
async def test_send_to_unknown_actor_returns_none() -> None:
    bus = MessageBus()

    assert await bus.send(_message("nobody")) is None


@pytest.mark.asyncio
async def test_send_returns_actor_reply() -> None:
    bus = MessageBus()
    echo = EchoActor("echo")
    bus.register(echo)

    reply = await bus.send(_message("echo", text="hi"))

    assert reply is not None
    assert reply.type == "echo"
    assert reply.payload == {"text": "hi"}
    assert reply.recipient == "tester"
    assert len(echo.received) == 1


@pytest.mark.asyncio
async def test_broadcast_skips_sender_and_keeps_registration_order() -> None:
    bus = MessageBus()
    first, second, sender = EchoActor("first"), EchoActor("second"), EchoActor("sender")
    for actor in (first, sender, second):
        bus.register(actor)
    bus.register(SilentActor("silent"))

    replies = await bus.broadcast(_message("*", sender="sender"))

    assert [reply.sender for reply in replies] == ["first", "second"]
    assert sender.received == []
    assert first.received[0].recipient == "first"


@pytest.mark.asyncio
async def test_emit_isolates_listener_failures() -> None:
    bus = MessageBus()
    seen: list[str] = []

    def broken(message: BusMessage) -> None:
        raise RuntimeError("listener failed")

    async def recorder(message: BusMessage) -> None:
        seen.append(message.type)

    bus.add_listener(broken)
    bus.add_listener(recorder)

    await bus.emit(_message("chat"))

    assert seen == ["ping"]


@pytest.mark.asyncio
async def test_emit_does_not_reach_actors_and_removed_listeners() -> None:
    bus = MessageBus()
    echo = EchoActor("chat")
    bus.register(echo)
    seen: list[BusMessage] = []
    bus.add_listener(seen.append)

    await bus.emit(_message("chat"))
    bus.remove_listener(seen.append)
    await bus.emit(_message("chat"))

    assert len(seen) == 1
    assert echo.received == []


@pytest.mark.asyncio
async def test_start_all_attempts_every_actor_before_raising() -> None:
    bus = MessageBus()
    first, broken, last = EchoActor("first"), BrokenStartActor("broken"), EchoActor("last")
    for actor in (first, broken, last):
        bus.register(actor)

    with pytest.raises(ActorLifecycleError) as exc_info:
        await bus.start_all()

    assert exc_info.value.phase == "start"
    assert list(exc_info.value.failures) == ["broken"]
    assert first.running is True
    assert last.running is True


@pytest.mark.asyncio
async def test_stop_all_stops_registered_actors() -> None:
    bus = MessageBus()
    echo = EchoActor("echo")
    bus.register(echo)
    await bus.start_all()

    await bus.stop_all()

    assert echo.running is False
    bus.unregister("echo")
    assert not bus.has_actor("echo")
