"""Query engine client contract and the Claude Code CLI implementation."""

from __future__ import annotations

import asyncio
import contextlib
import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Protocol

from loguru import logger

from ccrelay.errors import EngineProcessError, QueryAbortedError

STREAM_LIMIT_BYTES = 16 * 1024 * 1024
TOOL_RESULT_PREVIEW_CHARS = 300
NO_RESPONSE_TEXT = "No response received."


@dataclass(frozen=True)
class QueryOptions:
    """Per-call engine options; ``resume`` and ``continue_`` are exclusive."""

    model: str
    max_turns: int
    permission_mode: str | None = None
    resume: str | None = None
    continue_: bool = False

    def __post_init__(self) -> None:
        if self.resume and self.continue_:
            raise ValueError("resume and continue_ cannot be combined")

    @property
    def uses_session(self) -> bool:
        return bool(self.resume) or self.continue_


@dataclass(frozen=True)
class EngineEvent:
    """One progress unit reported by the engine."""

    type: str
    subtype: str | None = None
    session_id: str | None = None
    content: Any = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> EngineEvent:
        message = data.get("message")
        content = message.get("content") if isinstance(message, dict) else None
        return cls(
            type=str(data.get("type", "")),
            subtype=data.get("subtype"),
            session_id=data.get("session_id"),
            content=content,
            raw=data,
        )

    @property
    def is_init(self) -> bool:
        return self.type == "system" and self.subtype == "init"

    def blocks(self) -> list[dict[str, Any]]:
        if isinstance(self.content, list):
            return [block for block in self.content if isinstance(block, dict)]
        return []

    def text(self) -> str:
        """Concatenated assistant text carried by this event."""
        if self.type != "assistant":
            return ""
        if isinstance(self.content, str):
            return self.content
        parts = [block.get("text") for block in self.blocks() if block.get("type") == "text"]
        return "".join(part for part in parts if isinstance(part, str))

    def tool_uses(self) -> list[dict[str, Any]]:
        if self.type != "assistant":
            return []
        return [block for block in self.blocks() if block.get("type") == "tool_use"]

    def tool_results(self) -> list[dict[str, Any]]:
        if self.type != "user":
            return []
        return [block for block in self.blocks() if block.get("type") == "tool_result"]


@dataclass(frozen=True)
class StreamChunk:
    """Simplified chunk for consumers that only need text."""

    type: Literal["text", "tool", "system", "done"]
    content: str
    raw: Any = None


@dataclass
class TurnTranscript:
    """Accumulates the final answer of one query from its engine events."""

    text: str = ""
    tool_results: str = ""

    def add(self, event: EngineEvent) -> None:
        self.text += event.text()
        for item in event.tool_results():
            content = item.get("content")
            if isinstance(content, str):
                self.tool_results += f"\n📋 Tool execution result:\n```\n{preview(content)}\n```\n"

    def render(self) -> str:
        full = self.text
        if self.tool_results:
            full = self.tool_results + (f"\n{full}" if full else "")
        return full or NO_RESPONSE_TEXT


def preview(content: str, limit: int = TOOL_RESULT_PREVIEW_CHARS) -> str:
    return content[:limit] + "..." if len(content) > limit else content


class QueryEngineClient(Protocol):
    """Boundary to the external AI engine."""

    def events(self, prompt: str, options: QueryOptions) -> AsyncIterator[EngineEvent]: ...

    def abort(self) -> None: ...


@dataclass
class _CliCall:
    """One in-flight ``events()`` call; aborts land here even before the spawn completes."""

    process: asyncio.subprocess.Process | None = None
    aborted: bool = False


class ClaudeCliClient:
    """Drives ``claude -p`` in ``stream-json`` mode, one process per query."""

    def __init__(self, executable: str = "claude", *, cwd: Path | None = None) -> None:
        self.executable = executable
        self.cwd = cwd
        self._call: _CliCall | None = None

    def build_args(self, prompt: str, options: QueryOptions) -> list[str]:
        args = [
            self.executable,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--model",
            options.model,
            "--max-turns",
            str(options.max_turns),
        ]
        if options.permission_mode:
            args += ["--permission-mode", options.permission_mode]
        if options.resume:
            args += ["--resume", options.resume]
        elif options.continue_:
            args.append("--continue")
        return args

    async def events(self, prompt: str, options: QueryOptions) -> AsyncIterator[EngineEvent]:
        call = _CliCall()
        self._call = call
        try:
            async with contextlib.aclosing(self._stream(call, prompt, options)) as stream:
                async for event in stream:
                    yield event
        finally:
            if self._call is call:
                self._call = None

    async def _stream(self, call: _CliCall, prompt: str, options: QueryOptions) -> AsyncIterator[EngineEvent]:
        args = self.build_args(prompt, options)
        logger.debug(
            "engine.cli.spawn executable={} resume={} continue={}", self.executable, options.resume, options.continue_
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(self.cwd) if self.cwd else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
            )
        except OSError as exc:
            raise EngineProcessError(f"failed to spawn {self.executable}: {exc}") from exc

        call.process = process
        if call.aborted:
            logger.info("engine.cli.aborted pid={} during=spawn", process.pid)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            raise QueryAbortedError()

        assert process.stdout is not None
        assert process.stderr is not None
        stderr_task = asyncio.create_task(process.stderr.read())
        try:
            async for line in process.stdout:
                if call.aborted:
                    break
                event = _parse_line(line)
                if event is not None:
                    yield event
            returncode = await process.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
        finally:
            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
            if not stderr_task.done():
                stderr_task.cancel()

        if call.aborted:
            raise QueryAbortedError()
        if returncode != 0:
            message = f"Claude Code process exited with code {returncode}"
            if stderr:
                message += f"\nstderr: {stderr}"
            raise EngineProcessError(message, exit_code=returncode, stderr=stderr)

    def abort(self) -> None:
        """Abort the in-flight call, if any. A no-op between calls."""
        call = self._call
        if call is None:
            logger.debug("engine.cli.abort idle")
            return
        call.aborted = True
        process = call.process
        if process is not None and process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            logger.info("engine.cli.aborted pid={}", process.pid)


def _parse_line(line: bytes) -> EngineEvent | None:
    text = line.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.debug("engine.cli.non_json line={}", text[:200])
        return None
    if not isinstance(data, dict):
        return None
    return EngineEvent.from_json(data)
