"""AI-query actor: runs one engine turn per message and streams its progress."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

from loguru import logger
from pydantic import ValidationError

from ccrelay.actors.base import BaseActor
from ccrelay.engine.client import EngineEvent, TurnTranscript
from ccrelay.logging_utils import turn_context
from ccrelay.types import (
    ASSISTANT,
    ASSISTANT_RESPONSE,
    MESSAGE_ACCEPTED,
    MESSAGE_COMPLETED,
    RESET_SESSION,
    SESSION_RESET,
    STOP_TASKS,
    STREAM_COMPLETED,
    STREAM_ERROR,
    STREAM_PARTIAL,
    STREAM_STARTED,
    TASKS_STOPPED,
    AssistantReplyPayload,
    BusMessage,
    ChatPayload,
    NoticePayload,
    Payload,
    StreamCompletedPayload,
    StreamErrorPayload,
    StreamPartialPayload,
    StreamStartedPayload,
    new_message_id,
)

if TYPE_CHECKING:
    from ccrelay.bus import MessageBus
    from ccrelay.engine.recovery import SessionRecoveryController

DEFAULT_NOTIFY_TARGET = "chat"
MAX_EMBED_LINES = 50
HEAD_LINES = 25
TAIL_LINES = 10


def truncate_lines(text: str, max_lines: int = MAX_EMBED_LINES) -> str:
    """Keep the head and tail of long multi-line text."""
    lines = text.split("\n")
    if len(lines) <= max_lines:
        return text
    omitted = len(lines) - HEAD_LINES - TAIL_LINES
    return "\n".join([*lines[:HEAD_LINES], f"\n... {omitted} lines omitted ...\n", *lines[-TAIL_LINES:]])


def format_tool_use(block: dict[str, Any]) -> str:
    chunk = f"🔧 **Tool**: `{block.get('name') or 'unknown'}`\n"
    tool_input = block.get("input")
    if tool_input:
        params = json.dumps(tool_input, indent=2, ensure_ascii=False)
        chunk += f"📋 **Parameters**:\n```json\n{truncate_lines(params)}\n```\n"
    return chunk


def format_tool_result(item: dict[str, Any]) -> str:
    tool_id = item.get("tool_use_id") or "unknown"
    if item.get("is_error"):
        header = f"❌ **Tool error** (ID: {tool_id}):\n"
    else:
        header = f"✅ **Tool result** (ID: {tool_id}):\n"
    content = item.get("content")
    raw = content if isinstance(content, str) else json.dumps(content, ensure_ascii=False)
    return f"{header}```\n{truncate_lines(raw or '')}\n```\n"


def partials_for(event: EngineEvent) -> list[tuple[str | None, str | None]]:
    """``(text_delta, tool_chunk)`` pairs for one engine event, one side set per pair."""
    partials: list[tuple[str | None, str | None]] = []
    delta = event.text()
    if delta:
        partials.append((delta, None))
    partials.extend((None, format_tool_use(block)) for block in event.tool_uses())
    partials.extend((None, format_tool_result(item)) for item in event.tool_results())
    return partials


class AssistantActor(BaseActor):
    """Queries the engine for chat messages.

    Every query returns exactly one ``assistant-response`` or ``error`` reply.
    When streaming is enabled and a bus is attached, progress is also emitted
    as ``stream-*`` events addressed to ``notify_target``. Turns are queued so
    one engine session never serves two turns at once.
    """

    name = ASSISTANT

    def __init__(
        self,
        controller: SessionRecoveryController,
        *,
        name: str | None = None,
        bus: MessageBus | None = None,
        streaming_enabled: bool = True,
        notify_target: str = DEFAULT_NOTIFY_TARGET,
    ) -> None:
        super().__init__(name)
        self.controller = controller
        self.bus = bus
        self.streaming_enabled = streaming_enabled
        self.notify_target = notify_target
        self._turn_lock = asyncio.Lock()

    def set_message_bus(self, bus: MessageBus) -> None:
        self.bus = bus

    @property
    def can_stream(self) -> bool:
        return self.streaming_enabled and self.bus is not None

    @property
    def session_id(self) -> str | None:
        return self.controller.session_id

    async def start(self) -> None:
        await super().start()
        if self.controller.session_id:
            logger.info("assistant.resume session_id={}", self.controller.session_id)

    async def stop(self) -> None:
        self.controller.abort()
        await super().stop()

    async def handle_message(self, message: BusMessage) -> BusMessage | None:
        if message.type == STOP_TASKS:
            # Bypasses the turn queue so it can interrupt the running turn.
            self.controller.abort()
            return self.reply(message, TASKS_STOPPED)
        async with self._turn_lock:
            if message.type == RESET_SESSION:
                self.controller.reset()
                return self.reply(message, SESSION_RESET)
            return await self._handle_query(message)

    async def _handle_query(self, message: BusMessage) -> BusMessage:
        try:
            payload = ChatPayload.of(message)
        except ValidationError:
            return self.error(message, "Invalid chat payload")
        if not payload.text:
            return self.error(message, "No text provided for assistant")

        turn_id = payload.original_message_id or message.id
        channel_id = payload.channel_id or ""
        with turn_context(turn_id):
            logger.info("assistant.turn.start streaming={}", self.can_stream)
            if payload.channel_id:
                await self._emit(
                    MESSAGE_ACCEPTED,
                    NoticePayload(original_message_id=turn_id, channel_id=channel_id, text="[accepted]"),
                )
            if not self.can_stream:
                return await self._query_blocking(message, payload.text)
            return await self._query_streaming(message, payload.text, turn_id, channel_id)

    async def _query_blocking(self, message: BusMessage, prompt: str) -> BusMessage:
        try:
            text = await self.controller.query(prompt)
        except Exception as exc:
            logger.exception("assistant.query.error")
            return self.error(message, str(exc))
        return self._success(message, text)

    async def _query_streaming(self, message: BusMessage, prompt: str, turn_id: str, channel_id: str) -> BusMessage:
        session_id = self.controller.session_id
        await self._emit(
            STREAM_STARTED,
            StreamStartedPayload(
                original_message_id=turn_id,
                channel_id=channel_id,
                meta={"sessionId": session_id} if session_id else {},
            ),
        )
        transcript = TurnTranscript()
        try:
            async for event in self.controller.events(prompt):
                transcript.add(event)
                for text_delta, tool_chunk in partials_for(event):
                    await self._emit(
                        STREAM_PARTIAL,
                        StreamPartialPayload(
                            original_message_id=turn_id,
                            channel_id=channel_id,
                            text_delta=text_delta,
                            tool_chunk=tool_chunk,
                        ),
                    )
        except Exception as exc:
            logger.exception("assistant.query.error")
            await self._emit(
                STREAM_ERROR,
                StreamErrorPayload(original_message_id=turn_id, channel_id=channel_id, message=str(exc), fatal=True),
            )
            return self.error(message, str(exc))

        full_text = transcript.render()
        await self._emit(
            STREAM_COMPLETED,
            StreamCompletedPayload(
                original_message_id=turn_id,
                channel_id=channel_id,
                full_text=full_text,
                session_id=self.controller.session_id,
            ),
        )
        if channel_id:
            await self._emit(
                MESSAGE_COMPLETED,
                NoticePayload(original_message_id=turn_id, channel_id=channel_id, text="[done]"),
            )
        return self._success(message, full_text)

    def _success(self, message: BusMessage, text: str) -> BusMessage:
        payload = AssistantReplyPayload(text=text, session_id=self.controller.session_id)
        logger.info("assistant.turn.done chars={} session_id={}", len(text), payload.session_id)
        return self.reply(message, ASSISTANT_RESPONSE, payload.to_wire())

    async def _emit(self, type: str, payload: Payload) -> None:
        if self.bus is None:
            return
        try:
            await self.bus.emit(
                BusMessage(
                    id=new_message_id(),
                    sender=self.name,
                    recipient=self.notify_target,
                    type=type,
                    payload=payload.to_wire(),
                )
            )
        except Exception:
            logger.exception("assistant.emit.error type={}", type)
