from __future__ import annotations

import asyncio
import json
import stat
import time
from pathlib import Path

import pytest

from ccrelay.engine.client import (
    NO_RESPONSE_TEXT,
    ClaudeCliClient,
    EngineEvent,
    QueryOptions,
    TurnTranscript,
    _parse_line,
)
from ccrelay.errors import EngineProcessError, QueryAbortedError


def _script(tmp_path: Path, body: str) -> str:
    path = tmp_path / "fake-claude"
    path.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return str(path)


def test_build_args_with_resume_and_permission_mode() -> None:
    client = ClaudeCliClient("claude")
    options = QueryOptions(model="claude-opus-4-20250514", max_turns=300, permission_mode="plan", resume="abc")

    args = client.build_args("hello", options)

    assert args == [
        "claude",
        "-p",
        "hello",
        "--output-format",
        "stream-json",
        "--verbose",
        "--model",
        "claude-opus-4-20250514",
        "--max-turns",
        "300",
        "--permission-mode",
        "plan",
        "--resume",
        "abc",
    ]


def test_build_args_with_continue() -> None:
    args = ClaudeCliClient("claude").build_args("hi", QueryOptions(model="m", max_turns=5, continue_=True))

    assert args[-1] == "--continue"
    assert "--resume" not in args
    assert "--permission-mode" not in args


def test_parse_line_skips_blank_and_non_json() -> None:
    assert _parse_line(b"   \n") is None
    assert _parse_line(b"not json\n") is None
    assert _parse_line(b"[1, 2]\n") is None

    event = _parse_line(b'{"type": "system", "subtype": "init", "session_id": "s1"}\n')

    assert event is not None
    assert event.is_init
    assert event.session_id == "s1"


def test_engine_event_accessors() -> None:
    event = EngineEvent.from_json(
        {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "text", "text": "Hello, "},
                    {"type": "tool_use", "name": "Read", "input": {"path": "a.txt"}},
                    {"type": "text", "text": "world"},
                ]
            },
        }
    )

    assert event.text() == "Hello, world"
    assert [block["name"] for block in event.tool_uses()] == ["Read"]
    assert event.tool_results() == []


def test_transcript_without_output_has_placeholder_text() -> None:
    assert TurnTranscript().render() == NO_RESPONSE_TEXT


@pytest.mark.asyncio
async def test_events_streams_json_lines(tmp_path: Path) -> None:
    lines = [
        {"type": "system", "subtype": "init", "session_id": "s1"},
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "hi"}]}},
    ]
    body = "\n".join(f"echo '{json.dumps(line)}'" for line in lines)
    client = ClaudeCliClient(_script(tmp_path, body), cwd=tmp_path)

    events = [event async for event in client.events("prompt", QueryOptions(model="m", max_turns=1))]

    assert [event.type for event in events] == ["system", "assistant"]
    assert events[1].text() == "hi"


@pytest.mark.asyncio
async def test_non_zero_exit_raises_process_error(tmp_path: Path) -> None:
    client = ClaudeCliClient(_script(tmp_path, "echo 'bad things' >&2\nexit 3"))

    with pytest.raises(EngineProcessError) as exc_info:
        async for _ in client.events("prompt", QueryOptions(model="m", max_turns=1)):
            pass

    error = exc_info.value
    assert error.exit_code == 3
    assert error.stderr == "bad things"
    assert str(error) == "Claude Code process exited with code 3\nstderr: bad things"


@pytest.mark.asyncio
async def test_missing_executable_raises_process_error(tmp_path: Path) -> None:
    client = ClaudeCliClient(str(tmp_path / "missing-claude"))

    with pytest.raises(EngineProcessError, match="failed to spawn"):
        async for _ in client.events("prompt", QueryOptions(model="m", max_turns=1)):
            pass


@pytest.mark.asyncio
async def test_abort_during_spawn_kills_the_process(tmp_path: Path) -> None:
    client = ClaudeCliClient(_script(tmp_path, "exec sleep 2"))
    stream = client.events("prompt", QueryOptions(model="m", max_turns=1))
    started = time.monotonic()

    pending = asyncio.create_task(stream.__anext__())
    await asyncio.sleep(0)
    client.abort()

    with pytest.raises(QueryAbortedError):
        await pending
    assert time.monotonic() - started < 1.5


@pytest.mark.asyncio
async def test_abort_between_calls_does_not_cancel_the_next_call(tmp_path: Path) -> None:
    line = json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "ok"}]}})
    client = ClaudeCliClient(_script(tmp_path, f"echo '{line}'"))
    client.abort()

    events = [event async for event in client.events("prompt", QueryOptions(model="m", max_turns=1))]

    assert [event.text() for event in events] == ["ok"]
