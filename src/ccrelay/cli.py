"""ccrelay command line interface."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path

import typer
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from ccrelay.channels.console import ConsoleRenderer
from ccrelay.channels.discord import DiscordRelay
from ccrelay.config import Settings, StreamingSettings, get_settings
from ccrelay.engine.diagnostics import CLI_MISSING, probe_cli
from ccrelay.errors import ConfigurationError
from ccrelay.history import SessionHistoryRepository, default_project_dir
from ccrelay.logging_utils import configure_logging
from ccrelay.runtime import RelayRuntime
from ccrelay.types import ERROR

app = typer.Typer(name="ccrelay", help="Relay Claude Code sessions to Discord.", add_completion=False)
console = Console()

CONSOLE_CHANNEL = "console"


def _load_settings(**overrides: object) -> Settings:
    try:
        return get_settings(**overrides)
    except ValidationError as exc:
        typer.echo(f"Invalid configuration: {exc}", err=True)
        raise typer.Exit(2) from exc


def _with_streaming(settings: Settings, **updates: object) -> Settings:
    updates = {key: value for key, value in updates.items() if value is not None}
    if not updates:
        return settings
    streaming = StreamingSettings.model_validate({**settings.streaming.model_dump(), **updates})
    return settings.model_copy(update={"streaming": streaming})


async def _serve_discord(settings: Settings) -> None:
    history = SessionHistoryRepository(default_project_dir(settings.resolve_workspace()))
    relay = DiscordRelay(settings, history=history)
    runtime = RelayRuntime(
        settings,
        relay,
        adapter_name=relay.name,
        history=history,
        accepts_channel=relay.serves,
        on_shutdown=relay.stop,
    )
    relay.attach(runtime.dispatcher)
    async with runtime:
        await relay.start()


@app.command()
def run(
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Engine working directory"),  # noqa: B008
    continue_session: bool = typer.Option(False, "--continue", "-c", help="Continue the latest session"),
    resume: str | None = typer.Option(None, "--resume", "-r", help="Session id to resume"),
    permission_mode: str | None = typer.Option(None, "--permission-mode", help="Engine permission mode"),
    model: str | None = typer.Option(None, "--model", "-m", help="Model passed to Claude Code"),
    max_turns: int | None = typer.Option(None, "--max-turns", help="Maximum agentic turns per query"),
    stream: bool | None = typer.Option(None, "--stream/--no-stream", help="Stream partial output"),
    update_mode: str | None = typer.Option(None, "--update-mode", help="edit or append"),
) -> None:
    """Start the Discord relay."""
    configure_logging()
    if continue_session and resume:
        typer.echo("--continue and --resume cannot be combined", err=True)
        raise typer.Exit(2)
    settings = _load_settings(
        workspace_path=workspace,
        continue_session=continue_session or None,
        resume_session_id=resume,
        permission_mode=permission_mode,
        model=model,
        max_turns=max_turns,
    )
    settings = _with_streaming(settings, enabled=stream, update_mode=update_mode)
    try:
        settings.require_discord()
    except ConfigurationError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(1) from exc

    try:
        asyncio.run(_serve_discord(settings))
    except KeyboardInterrupt:
        logger.info("cli.interrupted")


async def _ask(settings: Settings, prompt: str) -> bool:
    renderer = ConsoleRenderer(console)
    async with RelayRuntime(settings, renderer, adapter_name=renderer.name) as runtime:
        outcome = await runtime.handle_text(prompt, channel_id=CONSOLE_CHANNEL)
    return outcome.response is not None and outcome.response.type != ERROR


@app.command()
def ask(
    prompt: str = typer.Argument(..., help="Message to relay"),
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Engine working directory"),  # noqa: B008
    continue_session: bool = typer.Option(False, "--continue", "-c", help="Continue the latest session"),
    resume: str | None = typer.Option(None, "--resume", "-r", help="Session id to resume"),
    model: str | None = typer.Option(None, "--model", "-m", help="Model passed to Claude Code"),
    stream: bool = typer.Option(True, "--stream/--no-stream", help="Stream partial output"),
) -> None:
    """Run one message through the relay and print the reply."""
    configure_logging(profile="chat", level=os.getenv("CCRELAY_LOG_LEVEL", "WARNING"))
    settings = _load_settings(
        workspace_path=workspace,
        continue_session=continue_session or None,
        resume_session_id=resume,
        model=model,
    )
    settings = _with_streaming(settings, enabled=stream, update_mode="append", show_thinking=False)
    if not asyncio.run(_ask(settings, prompt)):
        raise typer.Exit(1)


@app.command()
def sessions(
    workspace: Path | None = typer.Option(None, "--workspace", "-w", help="Project working directory"),  # noqa: B008
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Maximum sessions to list"),
) -> None:
    """List saved Claude Code sessions, most recent first."""
    project_dir = default_project_dir(workspace)
    repository = SessionHistoryRepository(project_dir)
    found = repository.get_session_list()
    if not found:
        typer.echo(f"No sessions found in {project_dir}")
        return
    table = Table(title=str(project_dir))
    table.add_column("Session")
    table.add_column("Started")
    table.add_column("Last query")
    for info in found[:limit]:
        table.add_row(info.session_id, info.timestamp, info.last_query or "")
    console.print(table)


@app.command()
def diagnose(
    executable: str | None = typer.Option(None, "--executable", help="Claude Code CLI executable"),
) -> None:
    """Check the Claude Code CLI and print environment hints."""
    settings = _load_settings(claude_executable=executable)
    version = asyncio.run(probe_cli(settings.claude_executable))
    workspace = settings.resolve_workspace()
    project_dir = default_project_dir(workspace)
    rows = {
        "cli": f"{settings.claude_executable} ({version})",
        "model": settings.model,
        "permissionMode": settings.permission_mode or "default",
        "cwd": str(workspace),
        "PATH[0]": os.environ.get("PATH", "").split(os.pathsep)[0],
        "history": f"{project_dir} ({'found' if project_dir.is_dir() else 'missing'})",
        "discord": "configured" if settings.discord_token and settings.discord_channel_id else "not configured",
    }
    for key, value in rows.items():
        typer.echo(f"{key}: {value}")
    if version == CLI_MISSING:
        raise typer.Exit(1)
