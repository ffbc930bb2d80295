"""Configuration management for ccrelay."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from loguru import logger
from pydantic import AliasChoices, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ccrelay.errors import MissingSettingError

PERMISSION_MODES = frozenset({"acceptEdits", "bypassPermissions", "plan"})
DEFAULT_MODEL = "claude-opus-4-20250514"


class StreamingSettings(BaseModel):
    """Streaming delivery options."""

    enabled: bool = Field(default=True, description="Emit incremental stream events")
    update_mode: Literal["edit", "append"] = Field(default="append", description="Edit a placeholder or append")
    interval_ms: int = Field(default=1000, ge=0, description="Flush interval for buffered partial output")
    max_chunk_length: int = Field(default=1900, gt=0, description="Maximum characters per rendered message")
    completed_ttl_seconds: float = Field(default=60.0, ge=0, description="How long finalized turns are remembered")
    show_thinking: bool = Field(default=True, description="Post a placeholder when a turn starts")
    show_done: bool = Field(default=True, description="Post a notice when a turn completes")
    show_abort: bool = Field(default=True, description="Post a notice when a turn fails")
    thinking_text: str = "🤔 Thinking..."
    done_text: str = "✅ done"
    abort_prefix: str = "⚠️ Streaming aborted: "

    @property
    def interval_seconds(self) -> float:
        return self.interval_ms / 1000


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="CCRELAY_",
        env_nested_delimiter="__",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Discord
    discord_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CCRELAY_DISCORD_TOKEN", "DISCORD_BOT_TOKEN"),
    )
    discord_channel_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CCRELAY_DISCORD_CHANNEL_ID", "DISCORD_CHANNEL_ID"),
    )
    discord_user_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CCRELAY_DISCORD_USER_ID", "DISCORD_CLIENT_ID"),
    )
    discord_allowed_users: str = Field(
        default="",
        description="Comma-separated user ids allowed to talk to the relay",
        validation_alias=AliasChoices("CCRELAY_DISCORD_ALLOWED_USERS", "DISCORD_ALLOWED_USERS"),
    )
    command_prefix: str = Field(default="!", min_length=1)

    # Engine
    model: str = Field(default=DEFAULT_MODEL, description="Model passed to the engine")
    max_turns: int = Field(default=300, gt=0, description="Maximum agentic turns per query")
    permission_mode: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CCRELAY_PERMISSION_MODE", "CLAUDE_PERMISSION_MODE"),
    )
    claude_executable: str = Field(default="claude", description="Engine CLI executable")
    workspace_path: Path | None = Field(default=None, description="Working directory for the engine")
    resume_session_id: str | None = Field(default=None, description="Session id to resume on the first query")
    continue_session: bool = Field(default=False, description="Continue the latest session")
    history_limit: int = Field(default=5, ge=0, description="History messages replayed for continued sessions")

    # Actors
    auto_reply_template: str = "📝 Noted: {text}"

    streaming: StreamingSettings = Field(default_factory=StreamingSettings)

    log_level: str = Field(default="INFO", description="Log level")

    @field_validator("permission_mode", mode="before")
    @classmethod
    def _normalize_permission_mode(cls, value: object) -> str | None:
        if value is None:
            return None
        mode = str(value).strip()
        if not mode or mode == "default":
            return None
        if mode not in PERMISSION_MODES:
            logger.warning("config.permission_mode.invalid value={} fallback=default", mode)
            return None
        return mode

    @property
    def allowed_users(self) -> list[str]:
        return [item.strip() for item in self.discord_allowed_users.split(",") if item.strip()]

    def resolve_workspace(self) -> Path:
        return (self.workspace_path or Path.cwd()).resolve()

    def require_discord(self) -> None:
        """Validate the settings needed by the Discord relay."""
        missing: list[str] = []
        if not self.discord_token:
            missing.append("DISCORD_BOT_TOKEN")
        if not self.discord_channel_id:
            missing.append("DISCORD_CHANNEL_ID")
        if not self.discord_user_id and not self.allowed_users:
            missing.append("DISCORD_CLIENT_ID")
        if missing:
            raise MissingSettingError(missing)


def get_settings(**overrides: object) -> Settings:
    """Load settings from the environment and ``.env`` with explicit overrides."""
    return Settings(**{key: value for key, value in overrides.items() if value is not None})
