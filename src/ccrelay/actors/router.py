"""Input routing: command detection and keyword classification."""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger
from pydantic import ValidationError

from ccrelay.actors.base import BaseActor
from ccrelay.types import (
    ASSISTANT,
    AUTO_RESPONDER,
    CHAT_MESSAGE,
    DEBUG,
    EXECUTE_COMMAND,
    RESET_SESSION,
    ROUTER,
    SHUTDOWN,
    STOP_TASKS,
    SYSTEM,
    BusMessage,
    ChatPayload,
    CommandPayload,
)

DEFAULT_COMMAND_PREFIX = "!"

COMMAND_TYPES: dict[str, str] = {
    "reset": RESET_SESSION,
    "clear": RESET_SESSION,
    "stop": STOP_TASKS,
    "exit": SHUTDOWN,
    "quit": SHUTDOWN,
    "shutdown": SHUTDOWN,
}

# Ordered; the first target with a matching keyword wins.
ROUTE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (DEBUG, ("debug",)),
    (AUTO_RESPONDER, ("task", "todo")),
)


@dataclass(frozen=True)
class ParsedCommand:
    """Command parsed from a prefixed chat line."""

    type: str
    name: str
    args: str


def parse_command(text: str, prefix: str = DEFAULT_COMMAND_PREFIX) -> ParsedCommand | None:
    stripped = text.strip()
    if not stripped.startswith(prefix):
        return None
    body = stripped[len(prefix) :].strip()
    name, _, args = body.partition(" ")
    command_type = COMMAND_TYPES.get(name.lower())
    if command_type is None:
        return ParsedCommand(type=EXECUTE_COMMAND, name=name, args=body)
    return ParsedCommand(type=command_type, name=name.lower(), args=args.strip())


def classify_text(text: str, fallback: str = ASSISTANT) -> str:
    lowered = text.lower()
    for target, keywords in ROUTE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return target
    return fallback


class InputRouterActor(BaseActor):
    """Turns inbound chat text into a system command or a routed chat message."""

    name = ROUTER

    def __init__(self, name: str | None = None, *, command_prefix: str = DEFAULT_COMMAND_PREFIX) -> None:
        super().__init__(name)
        self.command_prefix = command_prefix

    async def handle_message(self, message: BusMessage) -> BusMessage | None:
        try:
            payload = ChatPayload.of(message)
        except ValidationError as exc:
            return self.error(message, f"Invalid chat payload: {exc.error_count()} error(s)")
        text = (payload.text or "").strip()
        if not text:
            return self.error(message, "No text provided")

        original_id = payload.original_message_id or message.id
        command = parse_command(text, self.command_prefix)
        if command is not None:
            logger.info("router.command type={} name={}", command.type, command.name)
            return BusMessage(
                id=f"{message.id}-response",
                sender=self.name,
                recipient=SYSTEM,
                type=command.type,
                payload=CommandPayload(
                    command=command.name,
                    args=command.args,
                    original_message_id=original_id,
                    channel_id=payload.channel_id,
                ).to_wire(),
            )

        target = classify_text(text)
        logger.info("router.route target={} id={}", target, original_id)
        return BusMessage(
            id=f"{message.id}-response",
            sender=self.name,
            recipient=target,
            type=CHAT_MESSAGE,
            payload=ChatPayload(
                text=text,
                author_id=payload.author_id,
                channel_id=payload.channel_id,
                original_message_id=original_id,
            ).to_wire(),
        )
