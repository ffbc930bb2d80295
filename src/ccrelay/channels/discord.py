"""Discord channel adapter."""

from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime
from typing import Any

import discord
from loguru import logger

from ccrelay.channels.dispatcher import TurnDispatcher
from ccrelay.config import Settings
from ccrelay.history import SessionHistoryRepository, format_for_chat
from ccrelay.streaming import chunk_message

THREAD_ARCHIVE_MINUTES = 1440
NOT_ALLOWED_REPLY = "You are not authorized to use this bot."


def session_intro(settings: Settings, history_text: str = "", *, now: datetime | None = None) -> str:
    """First message posted into a fresh session thread."""
    prefix = settings.command_prefix
    started = (now or datetime.now(UTC)).isoformat()
    info = [
        "## Claude Code session",
        "",
        f"**Started**: {started}",
        f"**Working directory**: `{settings.resolve_workspace()}`",
        f"**Model**: {settings.model}",
    ]
    if settings.continue_session:
        info.append("**Continue mode**: Enabled")
    if settings.resume_session_id:
        info.append(f"**Resumed session**: {settings.resume_session_id}")
    instructions = [
        "**Commands**",
        f"- `{prefix}reset` or `{prefix}clear`: start a new conversation",
        f"- `{prefix}stop`: stop the running task",
        f"- `{prefix}exit`: shut the relay down",
        "- Anything else is sent to Claude Code",
    ]
    return f"{history_text}" + "\n".join(info) + "\n\n---\n\n" + "\n".join(instructions)


class DiscordRelay:
    """Discord adapter based on discord.py.

    Opens one thread per process in the configured channel and relays the
    messages of allowed users posted in it. Also renders stream output.
    """

    name = "discord"

    def __init__(self, settings: Settings, *, history: SessionHistoryRepository | None = None) -> None:
        self.settings = settings
        self.history = history
        self.dispatcher: TurnDispatcher | None = None
        self._client: discord.Client | None = None
        self._thread: discord.Thread | None = None

    def attach(self, dispatcher: TurnDispatcher) -> None:
        self.dispatcher = dispatcher

    @property
    def thread_id(self) -> str | None:
        return str(self._thread.id) if self._thread is not None else None

    def serves(self, channel_id: str) -> bool:
        return self._thread is not None and channel_id == str(self._thread.id)

    def is_allowed(self, user_id: str) -> bool:
        allowed = self.settings.allowed_users
        if allowed:
            return user_id in allowed
        return user_id == self.settings.discord_user_id

    async def start(self) -> None:
        self.settings.require_discord()
        intents = discord.Intents.default()
        intents.messages = True
        intents.message_content = True
        client = discord.Client(intents=intents)
        self._client = client

        @client.event
        async def on_ready() -> None:
            logger.info("discord.ready user={} id={}", str(client.user), client.user.id if client.user else "<unknown>")
            await self._open_thread()

        @client.event
        async def on_message(message: discord.Message) -> None:
            await self._on_message(message)

        logger.info(
            "discord.start channel_id={} allowed_users={}",
            self.settings.discord_channel_id,
            len(self.settings.allowed_users),
        )
        try:
            async with client:
                await client.start(self.settings.discord_token or "")
        finally:
            self._client = None
            self._thread = None
            logger.info("discord.stopped")

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.close()

    async def _open_thread(self) -> None:
        channel_id = self.settings.discord_channel_id or ""
        channel = await self._resolve_channel(channel_id)
        if not isinstance(channel, discord.TextChannel):
            logger.error("discord.setup.failed channel_id={} reason=not_text_channel", channel_id)
            return
        thread_name = f"Claude Session - {datetime.now().strftime('%Y/%m/%d %H:%M:%S')}"
        try:
            self._thread = await channel.create_thread(
                name=thread_name,
                type=discord.ChannelType.public_thread,
                auto_archive_duration=THREAD_ARCHIVE_MINUTES,
                reason="Claude session thread",
            )
            intro = session_intro(self.settings, await self._history_text())
            for chunk in self._chunks(intro):
                await self._thread.send(chunk)
        except discord.DiscordException:
            logger.exception("discord.thread.create_failed name={}", thread_name)
            return
        logger.info("discord.thread.created name={} id={}", thread_name, self._thread.id)

    async def _history_text(self) -> str:
        settings = self.settings
        if self.history is None or not (settings.continue_session or settings.resume_session_id):
            return ""
        session_id = settings.resume_session_id
        if session_id is None:
            session_id = await asyncio.to_thread(self.history.get_latest_session_id)
        if session_id is None:
            return ""
        messages = await asyncio.to_thread(self.history.get_conversation_history, session_id, settings.history_limit)
        return format_for_chat(messages)

    async def _on_message(self, message: discord.Message) -> None:
        if message.author.bot:
            return
        if not self.serves(str(message.channel.id)):
            return
        if not self.is_allowed(str(message.author.id)):
            logger.warning(
                "discord.inbound.denied channel_id={} sender_id={}", message.channel.id, message.author.id
            )
            await message.reply(NOT_ALLOWED_REPLY)
            return
        content = message.content.strip()
        if not content:
            return
        if self.dispatcher is None:
            logger.warning("discord.inbound no dispatcher attached")
            return

        logger.info(
            "discord.inbound channel_id={} sender_id={} username={} content={}",
            message.channel.id,
            message.author.id,
            message.author.name,
            content[:100],
        )
        async with message.channel.typing():
            await self.dispatcher.dispatch(
                content,
                channel_id=str(message.channel.id),
                author_id=str(message.author.id),
                message_id=str(message.id),
            )

    async def _resolve_channel(self, channel_id: str) -> Any:
        if self._client is None or not channel_id.isdigit():
            return None
        if self._thread is not None and channel_id == str(self._thread.id):
            return self._thread
        channel = self._client.get_channel(int(channel_id))
        if channel is not None:
            return channel
        with contextlib.suppress(discord.DiscordException):
            return await self._client.fetch_channel(int(channel_id))
        return None

    def _chunks(self, text: str) -> list[str]:
        return chunk_message(text, limit=self.settings.streaming.max_chunk_length)

    # Renderer

    async def create_placeholder(self, channel_id: str, text: str) -> discord.Message | None:
        channel = await self._resolve_channel(channel_id)
        if not isinstance(channel, discord.abc.Messageable):
            return None
        return await channel.send(text)

    async def edit(self, handle: discord.Message, text: str) -> None:
        await handle.edit(content=text)

    async def delete(self, handle: discord.Message) -> None:
        await handle.delete()

    async def send(self, channel_id: str, text: str) -> None:
        channel = await self._resolve_channel(channel_id)
        if not isinstance(channel, discord.abc.Messageable):
            logger.warning("discord.outbound unresolved channel channel_id={}", channel_id)
            return
        await channel.send(text)
