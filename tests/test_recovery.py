from __future__ import annotations

import asyncio
import json
import threading
from pathlib import Path

import pytest
from fakes import FakeEngineClient, Script, init_event, result_event, text_event, tool_result_event

from ccrelay.engine import diagnostics
from ccrelay.engine.client import QueryOptions
from ccrelay.engine.recovery import SessionRecoveryController
from ccrelay.errors import EngineProcessError, EngineQueryError, QueryAbortedError
from ccrelay.history import SessionHistoryRepository


@pytest.fixture(autouse=True)
def _fake_cli_probe(monkeypatch: pytest.MonkeyPatch) -> list[str]:
    probed: list[str] = []

    async def fake_run_version(executable: str) -> str:
        probed.append(executable)
        return "1.0.0 (Claude Code)"

    monkeypatch.setattr(diagnostics, "_probe_results", {})
    monkeypatch.setattr(diagnostics, "_run_version", fake_run_version)
    return probed


def test_options_never_combine_resume_and_continue() -> None:
    with pytest.raises(ValueError):
        QueryOptions(model="m", max_turns=1, resume="abc", continue_=True)


def test_first_query_resumes_configured_session(make_settings) -> None:
    controller = SessionRecoveryController(FakeEngineClient(), make_settings(resume_session_id="abc"))

    options = controller.build_options()

    assert options.resume == "abc"
    assert options.continue_ is False
    assert options.model == controller._settings.model


def test_first_query_continues_when_requested(make_settings) -> None:
    controller = SessionRecoveryController(FakeEngineClient(), make_settings(continue_session=True))

    options = controller.build_options()

    assert options.resume is None
    assert options.continue_ is True


@pytest.mark.asyncio
async def test_follow_up_queries_continue_the_session(settings) -> None:
    client = FakeEngineClient(
        Script([init_event("s1"), text_event("one"), result_event("s1")]),
        Script([text_event("two")]),
    )
    controller = SessionRecoveryController(client, settings)

    assert await controller.query("first") == "one"
    assert controller.session_id == "s1"
    assert await controller.query("second") == "two"

    first_options, second_options = (options for _, options in client.calls)
    assert first_options.uses_session is False
    assert second_options.continue_ is True
    assert second_options.resume is None


@pytest.mark.asyncio
async def test_session_loss_is_retried_once_without_hints(make_settings) -> None:
    client = FakeEngineClient(
        Script(error=EngineProcessError("No conversation found with session ID: abc")),
        Script([init_event("fresh"), text_event("recovered")]),
    )
    controller = SessionRecoveryController(client, make_settings(resume_session_id="abc"))

    text = await controller.query("hello")

    assert text == "recovered"
    assert len(client.calls) == 2
    (_, first), (prompt, retry) = client.calls
    assert first.resume == "abc"
    assert retry.uses_session is False
    assert prompt == "hello"
    assert controller.session_id == "fresh"


@pytest.mark.asyncio
async def test_failed_retry_surfaces_with_hints(make_settings, _fake_cli_probe: list[str]) -> None:
    client = FakeEngineClient(
        Script(error=EngineProcessError("Session not found")),
        Script(error=EngineProcessError("Session not found")),
    )
    controller = SessionRecoveryController(
        client, make_settings(resume_session_id="abc", permission_mode="plan", claude_executable="claude-x")
    )

    with pytest.raises(EngineQueryError) as exc_info:
        await controller.query("hello")

    assert len(client.calls) == 2
    error = exc_info.value
    assert str(error).startswith("engine query failed: Session not found\nhint: permissionMode=plan, cwd=")
    assert error.hints["cli"] == "1.0.0 (Claude Code)"
    assert error.hints["rate_limited"] == "false"
    assert _fake_cli_probe == ["claude-x"]


@pytest.mark.asyncio
async def test_plain_failures_are_not_retried(settings, _fake_cli_probe: list[str]) -> None:
    client = FakeEngineClient(Script(error=EngineProcessError("429 Too Many Requests")))
    controller = SessionRecoveryController(client, settings)

    with pytest.raises(EngineQueryError) as exc_info:
        await controller.query("hello")

    assert len(client.calls) == 1
    assert exc_info.value.hints["permissionMode"] == "default"
    assert exc_info.value.hints["rate_limited"] == "true"
    assert exc_info.value.hints["cli"] == "unknown"
    assert _fake_cli_probe == []


@pytest.mark.asyncio
async def test_session_loss_without_hints_is_not_retried(settings) -> None:
    client = FakeEngineClient(Script(error=EngineProcessError("invalid session")))
    controller = SessionRecoveryController(client, settings)

    with pytest.raises(EngineQueryError):
        await controller.query("hello")

    assert len(client.calls) == 1


@pytest.mark.asyncio
async def test_abort_is_never_retried(make_settings) -> None:
    client = FakeEngineClient(Script(error=QueryAbortedError()))
    controller = SessionRecoveryController(client, make_settings(resume_session_id="abc"))

    with pytest.raises(QueryAbortedError):
        await controller.query("hello")

    assert len(client.calls) == 1
    assert controller.session_id == "abc"


@pytest.mark.asyncio
async def test_query_reports_progress_and_tool_results_first(settings) -> None:
    client = FakeEngineClient(Script([text_event("done"), tool_result_event("file.txt")]))
    controller = SessionRecoveryController(client, settings)
    seen: list[str] = []

    async def on_progress(event) -> None:
        seen.append(event.type)

    text = await controller.query("ls", on_progress=on_progress)

    assert seen == ["assistant", "user"]
    assert text.startswith("\n📋 Tool execution result:\n```\nfile.txt\n```\n")
    assert text.endswith("\ndone")


@pytest.mark.asyncio
async def test_stream_yields_simplified_chunks(settings) -> None:
    client = FakeEngineClient(Script([init_event("s9"), text_event("hi"), tool_result_event("out")]))
    controller = SessionRecoveryController(client, settings)

    chunks = [chunk async for chunk in controller.stream("go")]

    assert [chunk.type for chunk in chunks] == ["system", "text", "tool", "done"]
    assert chunks[0].content == "session:s9"
    assert chunks[1].content == "hi"


@pytest.mark.asyncio
async def test_continue_without_session_replays_recent_history(make_settings, tmp_path: Path) -> None:
    project = tmp_path / "project"
    project.mkdir()
    rows = [
        {"sessionId": "old", "timestamp": "2025-01-01T10:00:00", "type": "user", "message": {"content": "earlier"}},
        {"type": "assistant", "message": {"content": [{"type": "text", "text": "sure"}]}},
    ]
    (project / "old.jsonl").write_text("\n".join(json.dumps(row) for row in rows), encoding="utf-8")
    client = FakeEngineClient(Script([text_event("ok")]))
    controller = SessionRecoveryController(
        client, make_settings(continue_session=True), history=SessionHistoryRepository(project)
    )

    await controller.query("hi")

    prompt, options = client.calls[0]
    assert options.continue_ is True
    assert "[User]: earlier" in prompt
    assert "[Assistant]: sure" in prompt
    assert prompt.endswith("Current message: hi")


@pytest.mark.asyncio
async def test_reset_clears_session(make_settings) -> None:
    controller = SessionRecoveryController(FakeEngineClient(), make_settings(resume_session_id="abc"))

    controller.reset()

    assert controller.has_active_session is False
    assert controller.build_options().uses_session is False


class GatedHistory:
    """History whose lookup blocks until released, holding a query before the engine call."""

    def __init__(self) -> None:
        self.entered = threading.Event()
        self.release = threading.Event()

    def get_latest_session_id(self) -> str | None:
        self.entered.set()
        self.release.wait(timeout=5)
        return None


@pytest.mark.asyncio
async def test_abort_while_preparing_prompt_skips_the_engine(make_settings) -> None:
    history = GatedHistory()
    client = FakeEngineClient(Script([text_event("ran anyway")]))
    controller = SessionRecoveryController(client, make_settings(continue_session=True), history=history)

    pending = asyncio.create_task(controller.query("hi"))
    assert await asyncio.to_thread(history.entered.wait, 5)
    controller.abort()
    history.release.set()

    with pytest.raises(QueryAbortedError):
        await pending
    assert client.calls == []


@pytest.mark.asyncio
async def test_abort_between_queries_does_not_cancel_the_next_one(settings) -> None:
    client = FakeEngineClient(Script([text_event("ok")]))
    controller = SessionRecoveryController(client, settings)

    controller.abort()

    assert await controller.query("hi") == "ok"
