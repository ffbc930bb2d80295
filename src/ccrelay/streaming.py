"""Per-turn buffering and throttled rendering of streamed assistant output."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from loguru import logger
from pydantic import ValidationError

from ccrelay.config import StreamingSettings
from ccrelay.types import (
    STREAM_COMPLETED,
    STREAM_ERROR,
    STREAM_PARTIAL,
    STREAM_STARTED,
    BusMessage,
    StreamCompletedPayload,
    StreamErrorPayload,
    StreamPartialPayload,
    StreamStartedPayload,
    UpdateMode,
)


class Renderer(Protocol):
    """Chat-side rendering capability used to externalize a turn."""

    async def create_placeholder(self, channel_id: str, text: str) -> Any | None: ...

    async def edit(self, handle: Any, text: str) -> None: ...

    async def delete(self, handle: Any) -> None: ...

    async def send(self, channel_id: str, text: str) -> None: ...


def chunk_message(text: str, *, limit: int = 1900) -> list[str]:
    """Split text on line boundaries into chunks of at most ``limit`` chars."""
    if len(text) <= limit:
        return [text] if text else []
    chunks: list[str] = []
    remaining = text
    while remaining:
        if len(remaining) <= limit:
            chunks.append(remaining)
            break
        split_at = remaining.rfind("\n", 0, limit)
        if split_at <= 0:
            split_at = limit
        chunks.append(remaining[:split_at].rstrip())
        remaining = remaining[split_at:].lstrip("\n")
    return [chunk for chunk in chunks if chunk]


def cap_content(text: str, limit: int = 1900) -> str:
    return text[: limit - 3] + "..." if len(text) > limit else text


@dataclass
class StreamTurnState:
    """Buffered, not yet rendered output of one turn."""

    channel_id: str
    mode: UpdateMode
    text_buffer: str = ""
    tool_buffer: str = ""
    timer: asyncio.TimerHandle | None = None
    placeholder: Any = None
    closed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def append(self, text_delta: str | None, tool_chunk: str | None) -> None:
        if tool_chunk:
            self.tool_buffer += ("\n" if self.tool_buffer else "") + tool_chunk
        if text_delta:
            self.text_buffer += text_delta

    def drain(self) -> str:
        separator = "\n" if self.tool_buffer and self.text_buffer else ""
        out = f"{self.tool_buffer}{separator}{self.text_buffer}".strip()
        self.tool_buffer = ""
        self.text_buffer = ""
        return out

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class StreamBufferEngine:
    """Listens to stream events and renders them at most once per interval.

    Turns are keyed by ``originalMessageId``. Finalized turn ids are
    remembered for ``completed_ttl_seconds`` so a non-streaming fallback for
    the same turn can be skipped.
    """

    def __init__(
        self,
        renderer: Renderer,
        settings: StreamingSettings | None = None,
        *,
        target: str | None = None,
        accepts_channel: Callable[[str], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.renderer = renderer
        self.settings = settings or StreamingSettings()
        self.target = target
        self._accepts_channel = accepts_channel
        self._clock = clock
        self._states: dict[str, StreamTurnState] = {}
        self._completed: dict[str, float] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def is_active(self, turn_id: str) -> bool:
        return turn_id in self._states

    def was_completed(self, turn_id: str) -> bool:
        self._prune_completed()
        return turn_id in self._completed

    def should_skip_final(self, turn_id: str) -> bool:
        """True when streaming already owns or finalized this turn's output."""
        return self.settings.enabled and (self.is_active(turn_id) or self.was_completed(turn_id))

    async def handle_event(self, message: BusMessage) -> None:
        """Bus listener entry point."""
        if not self.settings.enabled or not message.is_stream_event:
            return
        if self.target is not None and message.recipient != self.target:
            return
        try:
            if message.type == STREAM_STARTED:
                started = StreamStartedPayload.of(message)
                if self._accepts(started.channel_id):
                    await self.on_started(started.original_message_id, started.channel_id)
            elif message.type == STREAM_PARTIAL:
                partial = StreamPartialPayload.of(message)
                if self._accepts(partial.channel_id):
                    await self.on_partial(
                        partial.original_message_id, partial.channel_id, partial.text_delta, partial.tool_chunk
                    )
            elif message.type == STREAM_COMPLETED:
                completed = StreamCompletedPayload.of(message)
                if self._accepts(completed.channel_id):
                    await self.on_completed(completed.original_message_id, completed.full_text)
            elif message.type == STREAM_ERROR:
                failed = StreamErrorPayload.of(message)
                if self._accepts(failed.channel_id):
                    await self.on_error(failed.original_message_id, failed.message)
        except ValidationError as exc:
            logger.warning("stream.event.invalid type={} errors={}", message.type, exc.error_count())

    def _accepts(self, channel_id: str) -> bool:
        return self._accepts_channel is None or not channel_id or self._accepts_channel(channel_id)

    async def on_started(self, turn_id: str, channel_id: str) -> StreamTurnState:
        existing = self._states.get(turn_id)
        if existing is not None:
            return existing
        state = StreamTurnState(channel_id=channel_id, mode=self.settings.update_mode)
        self._states[turn_id] = state
        if self.settings.show_thinking and state.mode == "edit":
            try:
                state.placeholder = await self.renderer.create_placeholder(channel_id, self.settings.thinking_text)
            except Exception:
                logger.exception("stream.placeholder.error turn={}", turn_id)
        return state

    async def on_partial(
        self, turn_id: str, channel_id: str, text_delta: str | None = None, tool_chunk: str | None = None
    ) -> None:
        state = self._states.get(turn_id)
        if state is None:
            state = await self.on_started(turn_id, channel_id)
        state.append(text_delta, tool_chunk)
        if state.timer is None:
            loop = asyncio.get_running_loop()
            state.timer = loop.call_later(self.settings.interval_seconds, self._on_timer, turn_id, state)

    def _on_timer(self, turn_id: str, state: StreamTurnState) -> None:
        state.timer = None
        task = asyncio.create_task(self._flush_state(turn_id, state))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def flush(self, turn_id: str) -> None:
        state = self._states.get(turn_id)
        if state is not None:
            await self._flush_state(turn_id, state)

    async def _flush_state(self, turn_id: str, state: StreamTurnState) -> None:
        async with state.lock:
            if state.closed:
                return
            await self._render_buffered(turn_id, state)

    async def _render_buffered(self, turn_id: str, state: StreamTurnState) -> None:
        out = state.drain()
        if not out:
            return
        content = cap_content(out, self.settings.max_chunk_length)
        try:
            if state.mode == "edit" and state.placeholder is not None:
                await self.renderer.edit(state.placeholder, content)
            else:
                await self.renderer.send(state.channel_id, content)
        except Exception:
            logger.exception("stream.flush.error turn={}", turn_id)

    async def on_completed(self, turn_id: str, full_text: str) -> None:
        state = self._states.get(turn_id)
        if state is None:
            logger.debug("stream.completed.unknown turn={}", turn_id)
            self._mark_completed(turn_id)
            return
        state.cancel_timer()
        async with state.lock:
            try:
                await self._render_buffered(turn_id, state)
                await self._drop_placeholder(turn_id, state)
                if state.mode == "edit":
                    for chunk in chunk_message(full_text, limit=self.settings.max_chunk_length):
                        await self.renderer.send(state.channel_id, chunk)
                if self.settings.show_done:
                    await self.renderer.send(state.channel_id, self.settings.done_text)
            except Exception:
                logger.exception("stream.final.error turn={}", turn_id)
            finally:
                self._finalize(turn_id, state)

    async def on_error(self, turn_id: str, error: str) -> None:
        state = self._states.get(turn_id)
        if state is None:
            self._mark_completed(turn_id)
            return
        state.cancel_timer()
        async with state.lock:
            state.drain()
            try:
                await self._drop_placeholder(turn_id, state)
                if self.settings.show_abort:
                    await self.renderer.send(state.channel_id, f"{self.settings.abort_prefix}{error}")
            except Exception:
                logger.exception("stream.abort_notice.error turn={}", turn_id)
            finally:
                self._finalize(turn_id, state)

    async def _drop_placeholder(self, turn_id: str, state: StreamTurnState) -> None:
        if state.placeholder is None:
            return
        placeholder, state.placeholder = state.placeholder, None
        try:
            await self.renderer.delete(placeholder)
        except Exception:
            logger.debug("stream.placeholder.delete_failed turn={}", turn_id)

    def _finalize(self, turn_id: str, state: StreamTurnState) -> None:
        state.closed = True
        if self._states.get(turn_id) is state:
            del self._states[turn_id]
        self._mark_completed(turn_id)

    def _mark_completed(self, turn_id: str) -> None:
        self._prune_completed()
        self._completed[turn_id] = self._clock() + self.settings.completed_ttl_seconds

    def _prune_completed(self) -> None:
        now = self._clock()
        for turn_id in [key for key, expires_at in self._completed.items() if expires_at <= now]:
            del self._completed[turn_id]

    def close(self) -> None:
        """Cancel every pending flush and forget active turns."""
        for state in self._states.values():
            state.cancel_timer()
            state.closed = True
        self._states.clear()
        for task in self._tasks:
            task.cancel()
