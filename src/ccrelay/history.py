"""Read-only access to the engine's saved session transcripts."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from loguru import logger

PREVIEW_CHARS = 100
LAST_QUERY_CHARS = 50
UNKNOWN_TIMESTAMP = "N/A"


@dataclass(frozen=True)
class SessionInfo:
    session_id: str
    timestamp: str
    last_query: str | None = None
    title: str | None = None


@dataclass(frozen=True)
class ConversationMessage:
    type: Literal["user", "assistant"]
    content: str
    timestamp: str | None = None


def default_project_dir(cwd: Path | None = None, home: Path | None = None) -> Path:
    """Engine project directory for a working directory, e.g. ``-home-me-repo``."""
    cwd = (cwd or Path.cwd()).resolve()
    slug = "-" + str(cwd).lstrip("/").replace("/", "-")
    return (home or Path.home()) / ".claude" / "projects" / slug


def _clip(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def _user_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "text":
                return str(block.get("text") or "")
    return ""


def _assistant_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            str(block.get("text") or "") if block.get("type") == "text" else "[tool use]"
            for block in content
            if isinstance(block, dict)
        ]
        return " ".join(parts)
    return ""


def _sort_key(info: SessionInfo) -> tuple[int, float]:
    if info.timestamp == UNKNOWN_TIMESTAMP:
        return (1, 0.0)
    try:
        return (0, -datetime.fromisoformat(info.timestamp).timestamp())
    except ValueError:
        return (1, 0.0)


class SessionHistoryRepository:
    """Session transcripts stored as one JSONL file per session."""

    def __init__(self, project_dir: Path | None = None) -> None:
        self.project_dir = project_dir or default_project_dir()

    def _session_files(self) -> list[Path]:
        if not self.project_dir.is_dir():
            return []
        return sorted(path for path in self.project_dir.iterdir() if path.is_file() and path.suffix == ".jsonl")

    def get_session_list(self) -> list[SessionInfo]:
        """Saved sessions, most recent first."""
        sessions = [info for path in self._session_files() if (info := self._parse_session_file(path)) is not None]
        return sorted(sessions, key=_sort_key)

    def get_latest_session_id(self) -> str | None:
        sessions = self.get_session_list()
        return sessions[0].session_id if sessions else None

    def get_conversation_history(self, session_id: str, limit: int = 10) -> list[ConversationMessage]:
        target = next((path for path in self._session_files() if session_id in path.name), None)
        if target is None:
            logger.info("history.session.missing session_id={}", session_id)
            return []

        messages: list[ConversationMessage] = []
        for data in _read_lines(target):
            message = data.get("message")
            if not isinstance(message, dict) or not message.get("content"):
                continue
            kind = data.get("type")
            if kind == "user":
                text = _user_text(message["content"])
            elif kind == "assistant":
                text = _assistant_text(message["content"])
            else:
                continue
            if text:
                messages.append(
                    ConversationMessage(type=kind, content=_clip(text, PREVIEW_CHARS), timestamp=data.get("timestamp"))
                )
        return messages[-limit:] if limit > 0 else []

    def _parse_session_file(self, path: Path) -> SessionInfo | None:
        rows = _read_lines(path)
        if not rows or not rows[0].get("sessionId"):
            return None
        first = rows[0]
        last_query = None
        for data in reversed(rows):
            message = data.get("message")
            if data.get("type") == "user" and isinstance(message, dict):
                text = _user_text(message.get("content"))
                if text:
                    last_query = _clip(text, LAST_QUERY_CHARS)
                    break
        return SessionInfo(
            session_id=str(first["sessionId"]),
            timestamp=str(first.get("timestamp") or UNKNOWN_TIMESTAMP),
            last_query=last_query,
            title=first.get("title"),
        )


def _read_lines(path: Path) -> list[dict[str, Any]]:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError:
        logger.exception("history.read.error path={}", path)
        return []
    rows: list[dict[str, Any]] = []
    for line in raw.splitlines():
        if not line.strip():
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            rows.append(data)
    return rows


def render_history_prompt(messages: list[ConversationMessage], prompt: str) -> str:
    """Prefix a prompt with recent history so a fresh session can pick up the thread."""
    if not messages:
        return prompt
    history = "\n".join(f"[{'User' if msg.type == 'user' else 'Assistant'}]: {msg.content}" for msg in messages)
    return f"The following continues a previous conversation:\n\n{history}\n\n---\n\nCurrent message: {prompt}"


def format_for_chat(messages: list[ConversationMessage]) -> str:
    if not messages:
        return ""
    lines = ["## 📋 Recent conversation", ""]
    for msg in messages:
        role = "👤 **User**" if msg.type == "user" else "🤖 **Assistant**"
        time = ""
        if msg.timestamp:
            try:
                time = datetime.fromisoformat(msg.timestamp).strftime("%H:%M:%S")
            except ValueError:
                time = msg.timestamp
        quoted = msg.content.replace("\n", "\n> ")
        lines += [f"{role} `{time}`", f"> {quoted}", ""]
    lines += ["---", ""]
    return "\n".join(lines)
