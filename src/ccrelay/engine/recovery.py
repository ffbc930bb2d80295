"""Session bookkeeping and transparent recovery from engine-side session loss."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import TypeAlias

from loguru import logger

from ccrelay.config import Settings
from ccrelay.engine.client import EngineEvent, QueryEngineClient, QueryOptions, StreamChunk, TurnTranscript, preview
from ccrelay.engine.diagnostics import collect_hints, format_hints, is_session_loss, log_process_exit
from ccrelay.errors import EngineQueryError, QueryAbortedError
from ccrelay.history import SessionHistoryRepository, render_history_prompt

ProgressCallback: TypeAlias = Callable[[EngineEvent], Awaitable[None] | None]


@dataclass
class SessionState:
    """Engine session bookkeeping for one client."""

    session_id: str | None = None
    is_first_query: bool = True
    continue_requested: bool = False

    def reset(self) -> None:
        self.session_id = None
        self.is_first_query = True
        self.continue_requested = False


class SessionRecoveryController:
    """Wraps engine calls with session hints and a single retry on session loss.

    A call that used a resume/continue hint and fails with a session-loss
    message resets the state and is replayed once without hints. Anything
    else, including a failed replay, raises :class:`EngineQueryError` with
    diagnostic hints. Aborts are re-raised untouched.
    """

    def __init__(
        self,
        client: QueryEngineClient,
        settings: Settings,
        *,
        history: SessionHistoryRepository | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._history = history
        self._aborted = False
        self.state = SessionState(
            session_id=settings.resume_session_id,
            continue_requested=settings.continue_session,
        )

    @property
    def session_id(self) -> str | None:
        return self.state.session_id

    @property
    def has_active_session(self) -> bool:
        return self.state.session_id is not None

    def reset(self) -> None:
        self.state.reset()
        logger.info("engine.session.reset")

    def abort(self) -> None:
        """Abort the current logical call, including the window before the engine is reached."""
        self._aborted = True
        self._client.abort()

    def build_options(self) -> QueryOptions:
        state = self.state
        resume: str | None = None
        continue_ = False
        if not state.is_first_query:
            continue_ = True
        elif state.session_id:
            resume = state.session_id
        elif state.continue_requested:
            continue_ = True
        return QueryOptions(
            model=self._settings.model,
            max_turns=self._settings.max_turns,
            permission_mode=self._settings.permission_mode,
            resume=resume,
            continue_=continue_,
        )

    async def _build_prompt(self, prompt: str) -> str:
        state = self.state
        if self._history is None or not (state.continue_requested and state.is_first_query and not state.session_id):
            return prompt
        latest = await asyncio.to_thread(self._history.get_latest_session_id)
        if latest is None:
            return prompt
        messages = await asyncio.to_thread(self._history.get_conversation_history, latest, self._settings.history_limit)
        if messages:
            logger.info("engine.prompt.history session_id={} messages={}", latest, len(messages))
        return render_history_prompt(messages, prompt)

    def _observe(self, event: EngineEvent) -> None:
        if event.is_init:
            self.state.session_id = event.session_id
            self.state.is_first_query = False
            logger.info("engine.session.started session_id={}", event.session_id)
        elif event.type == "result" and event.session_id:
            self.state.session_id = event.session_id

    def events(self, prompt: str) -> AsyncIterator[EngineEvent]:
        """Engine events for one logical call, including at most one replay."""
        return self._run(prompt, retry=False)

    async def _run(self, prompt: str, *, retry: bool) -> AsyncIterator[EngineEvent]:
        if not retry:
            self._aborted = False
        options = self.build_options()
        actual_prompt = await self._build_prompt(prompt)
        if self._aborted:
            logger.info("engine.query.aborted before=engine")
            raise QueryAbortedError()
        try:
            async for event in self._client.events(actual_prompt, options):
                self._observe(event)
                yield event
        except QueryAbortedError:
            logger.info("engine.query.aborted")
            raise
        except Exception as exc:
            message = str(exc)
            if not retry and options.uses_session and is_session_loss(message):
                logger.warning("engine.session.lost retrying without session hints error={}", message)
                self.reset()
                async for event in self._run(prompt, retry=True):
                    yield event
                return
            log_process_exit(message, prompt_length=len(actual_prompt), options=options)
            hints = await collect_hints(
                message,
                permission_mode=self._settings.permission_mode,
                executable=self._settings.claude_executable,
            )
            raise EngineQueryError(f"engine query failed: {message}\n{format_hints(hints)}", hints=hints) from exc
        self.state.is_first_query = False

    async def query(self, prompt: str, on_progress: ProgressCallback | None = None) -> str:
        transcript = TurnTranscript()
        async for event in self.events(prompt):
            transcript.add(event)
            if on_progress is not None:
                result = on_progress(event)
                if inspect.isawaitable(result):
                    await result
        return transcript.render()

    async def stream(self, prompt: str) -> AsyncIterator[StreamChunk]:
        async for event in self.events(prompt):
            if event.is_init:
                yield StreamChunk(type="system", content=f"session:{event.session_id}", raw=event.raw)
                continue
            if event.type == "assistant":
                if isinstance(event.content, str):
                    if event.content:
                        yield StreamChunk(type="text", content=event.content, raw=event.raw)
                    continue
                for block in event.blocks():
                    if block.get("type") == "text" and block.get("text"):
                        yield StreamChunk(type="text", content=str(block["text"]), raw=block)
                continue
            for item in event.tool_results():
                content = item.get("content")
                if isinstance(content, str):
                    yield StreamChunk(
                        type="tool", content=f"📋 Tool execution result:\n```\n{preview(content)}\n```\n", raw=item
                    )
        yield StreamChunk(type="done", content="")
