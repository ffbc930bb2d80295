"""Failure classification and best-effort diagnostic hints for engine errors."""

from __future__ import annotations

import asyncio
import os
import re

from loguru import logger

SESSION_LOSS_PHRASES: tuple[str, ...] = (
    "no conversation found with session id",
    "session not found",
    "invalid session",
    "session does not exist",
)
SPAWN_FAILURE_MARKERS: tuple[str, ...] = ("exited with code", "spawn", "enoent", "not found", "eacces")
RATE_LIMIT_RE = re.compile(r"429|rate[ -]?limit|too many requests", re.IGNORECASE)
EXIT_CODE_RE = re.compile(r"exited with code (-?\d+)")
STDERR_RE = re.compile(r"stderr: (.+)", re.DOTALL)
PROBE_TIMEOUT_SECONDS = 10
CLI_MISSING = "not_found_or_failed"

# One probe per executable per process.
_probe_results: dict[str, str] = {}


def is_session_loss(message: str) -> bool:
    lowered = message.lower()
    return any(phrase in lowered for phrase in SESSION_LOSS_PHRASES)


def is_rate_limited(message: str) -> bool:
    return RATE_LIMIT_RE.search(message) is not None


def suggests_spawn_failure(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in SPAWN_FAILURE_MARKERS)


async def probe_cli(executable: str) -> str:
    """Return the CLI version string, or ``not_found_or_failed``."""
    cached = _probe_results.get(executable)
    if cached is not None:
        return cached
    _probe_results[executable] = result = await _run_version(executable)
    logger.debug("engine.diagnostics.probe executable={} result={}", executable, result)
    return result


async def _run_version(executable: str) -> str:
    try:
        process = await asyncio.create_subprocess_exec(
            executable,
            "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        async with asyncio.timeout(PROBE_TIMEOUT_SECONDS):
            stdout, _ = await process.communicate()
    except (OSError, TimeoutError):
        return CLI_MISSING
    if process.returncode != 0:
        return CLI_MISSING
    return stdout.decode("utf-8", errors="replace").strip() or "present"


def _cwd() -> str:
    try:
        return os.getcwd()
    except OSError:
        return "unknown"


async def collect_hints(message: str, *, permission_mode: str | None, executable: str) -> dict[str, str]:
    cli = "unknown"
    if suggests_spawn_failure(message):
        cli = await probe_cli(executable)
    return {
        "permissionMode": permission_mode or "default",
        "cwd": _cwd(),
        "PATH[0]": os.environ.get("PATH", "").split(os.pathsep)[0],
        "cli": cli,
        "rate_limited": str(is_rate_limited(message)).lower(),
    }


def format_hints(hints: dict[str, str]) -> str:
    return "hint: " + ", ".join(f"{key}={value}" for key, value in hints.items())


def log_process_exit(message: str, *, prompt_length: int, options: object) -> None:
    match = EXIT_CODE_RE.search(message)
    if match is None:
        return
    logger.error("engine.process.exit code={} prompt_length={} options={}", match.group(1), prompt_length, options)
    stderr = STDERR_RE.search(message)
    if stderr is not None:
        logger.error("engine.process.stderr {}", stderr.group(1).strip())
