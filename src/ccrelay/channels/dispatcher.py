"""Chat-side turn dispatch against the message bus."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeAlias

from loguru import logger
from pydantic import ValidationError

from ccrelay.bus import MessageBus
from ccrelay.streaming import Renderer, StreamBufferEngine, chunk_message
from ccrelay.types import (
    ASSISTANT,
    CHAT_MESSAGE,
    ERROR,
    EXECUTE_COMMAND,
    RESET_SESSION,
    ROUTER,
    SHUTDOWN,
    STOP_TASKS,
    SYSTEM,
    AssistantReplyPayload,
    BusMessage,
    ChatPayload,
    CommandPayload,
    ErrorPayload,
    new_message_id,
)

DEFAULT_ADAPTER_NAME = "chat"
SESSION_RESET_NOTICE = "🔄 Session reset. The next message starts a new conversation."
TASKS_STOPPED_NOTICE = "⏹️ Stopped the running task."
SHUTDOWN_NOTICE = "👋 Shutting down."
SHELL_DISABLED_NOTICE = "🚫 Shell command execution is disabled."

ShutdownCallback: TypeAlias = Callable[[], Awaitable[None] | None]


@dataclass(frozen=True)
class TurnOutcome:
    """What one dispatched chat message produced."""

    turn_id: str
    response: BusMessage | None = None
    rendered: str | None = None


class TurnDispatcher:
    """Plays the chat-adapter role: routes text, forwards it, renders replies.

    Final replies are skipped when the stream engine already rendered, or is
    still rendering, the same turn.
    """

    def __init__(
        self,
        bus: MessageBus,
        renderer: Renderer,
        *,
        name: str = DEFAULT_ADAPTER_NAME,
        stream_engine: StreamBufferEngine | None = None,
        assistant: str = ASSISTANT,
        on_shutdown: ShutdownCallback | None = None,
        max_chunk_length: int = 1900,
    ) -> None:
        self.bus = bus
        self.renderer = renderer
        self.name = name
        self.stream_engine = stream_engine
        self.assistant = assistant
        self.on_shutdown = on_shutdown
        self.max_chunk_length = max_chunk_length

    async def dispatch(
        self,
        text: str,
        *,
        channel_id: str,
        author_id: str | None = None,
        message_id: str | None = None,
    ) -> TurnOutcome:
        turn_id = message_id or new_message_id()
        request = BusMessage(
            id=turn_id,
            sender=self.name,
            recipient=ROUTER,
            type=CHAT_MESSAGE,
            payload=ChatPayload(text=text, author_id=author_id, channel_id=channel_id).to_wire(),
        )
        routed = await self.bus.send(request)
        if routed is None:
            logger.warning("dispatch.unrouted turn={}", turn_id)
            return TurnOutcome(turn_id)
        if routed.type == ERROR:
            rendered = await self._render_error(channel_id, routed)
            return TurnOutcome(turn_id, routed, rendered)
        if routed.recipient == SYSTEM:
            rendered = await self._handle_command(routed, channel_id)
            return TurnOutcome(turn_id, routed, rendered)

        logger.info("dispatch.forward turn={} to={}", turn_id, routed.recipient)
        response = await self.bus.send(routed)
        if response is None:
            notice = f"⚠️ Nothing handles `{routed.recipient}` messages."
            await self._send(channel_id, notice)
            return TurnOutcome(turn_id, None, notice)
        if self._streamed(turn_id) and not self._needs_error_notice(response):
            logger.debug("dispatch.final.skipped turn={}", turn_id)
            return TurnOutcome(turn_id, response)
        if response.type == ERROR:
            rendered = await self._render_error(channel_id, response)
            return TurnOutcome(turn_id, response, rendered)
        try:
            reply = AssistantReplyPayload.of(response)
        except ValidationError:
            logger.warning("dispatch.reply.invalid turn={} type={}", turn_id, response.type)
            return TurnOutcome(turn_id, response)
        await self._send(channel_id, reply.text)
        return TurnOutcome(turn_id, response, reply.text)

    def _streamed(self, turn_id: str) -> bool:
        return self.stream_engine is not None and self.stream_engine.should_skip_final(turn_id)

    def _needs_error_notice(self, response: BusMessage) -> bool:
        """Streamed failures reach the user only through the abort notice, when that is enabled."""
        return (
            response.type == ERROR and self.stream_engine is not None and not self.stream_engine.settings.show_abort
        )

    async def _handle_command(self, routed: BusMessage, channel_id: str) -> str | None:
        command = CommandPayload.of(routed)
        logger.info("dispatch.command type={} name={}", routed.type, command.command)
        if routed.type == RESET_SESSION:
            await self._to_assistant(RESET_SESSION, routed)
            notice = SESSION_RESET_NOTICE
        elif routed.type == STOP_TASKS:
            await self._to_assistant(STOP_TASKS, routed)
            notice = TASKS_STOPPED_NOTICE
        elif routed.type == SHUTDOWN:
            await self._send(channel_id, SHUTDOWN_NOTICE)
            if self.on_shutdown is not None:
                result = self.on_shutdown()
                if inspect.isawaitable(result):
                    await result
            return SHUTDOWN_NOTICE
        elif routed.type == EXECUTE_COMMAND:
            notice = SHELL_DISABLED_NOTICE
        else:
            logger.warning("dispatch.command.unknown type={}", routed.type)
            return None
        await self._send(channel_id, notice)
        return notice

    async def _to_assistant(self, type: str, routed: BusMessage) -> BusMessage | None:
        return await self.bus.send(
            BusMessage(
                id=new_message_id(),
                sender=self.name,
                recipient=self.assistant,
                type=type,
                payload=routed.payload,
            )
        )

    async def _render_error(self, channel_id: str, response: BusMessage) -> str:
        try:
            error = ErrorPayload.of(response).error
        except ValidationError:
            error = "Unknown error"
        text = f"❌ Error: {error}"
        await self._send(channel_id, text)
        return text

    async def _send(self, channel_id: str, text: str) -> None:
        for chunk in chunk_message(text, limit=self.max_chunk_length):
            try:
                await self.renderer.send(channel_id, chunk)
            except Exception:
                logger.exception("dispatch.send.error channel={}", channel_id)
                return
